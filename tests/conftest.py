from __future__ import annotations

from typing import Any, Optional

import pytest

from src.dispatch.models.domain import Job, Lane, LaneKind
from src.dispatch.persistence.filesystem import FileStorage
from src.dispatch.services.geocoding import GeocodeCache, Geocoder
from src.dispatch.services.schedule.persistence import SchedulePersistence


class DummyGeocodingProvider:
    """Resolves addresses from a fixed table; unknown addresses are not found."""

    def __init__(self, known: dict[str, tuple[float, float]] | None = None, failing: set[str] | None = None) -> None:
        self.known = {key.lower(): value for key, value in (known or {}).items()}
        self.failing = {item.lower() for item in (failing or set())}
        self.calls: list[str] = []

    async def lookup(self, address: str) -> Optional[tuple[float, float]]:
        self.calls.append(address)
        if address.lower() in self.failing:
            raise ConnectionError("geocoder offline")
        return self.known.get(address.lower())


class DummyTravelTimeProvider:
    """Manhattan distance in degrees times 1000 seconds."""

    def __init__(self) -> None:
        self.calls = 0

    async def durations(self, origins, destinations):
        self.calls += 1
        return [
            [(abs(o[0] - d[0]) + abs(o[1] - d[1])) * 1000.0 for d in destinations]
            for o in origins
        ]


class FakeRepository:
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.documents: dict[str, dict[str, Any]] = {}
        self.finalized: set[str] = set()
        self.technician_records: dict[str, list[dict[str, Any]]] = {}
        self.roster_rows: list[dict[str, Any]] = []
        self.pre_scheduled: dict[str, list[dict[str, Any]]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.fail_saves = 0
        self.save_calls = 0

    def load_schedule(self, schedule_date):
        if schedule_date not in self.documents:
            return None
        return {
            "schedule_date": schedule_date,
            "schedule_data": self.documents[schedule_date],
            "finalized": schedule_date in self.finalized,
        }

    def save_schedule(self, schedule_date, document, user_id=None):
        from src.dispatch.persistence.database import PersistenceError

        self.save_calls += 1
        if self.fail_saves:
            self.fail_saves -= 1
            raise PersistenceError("database unreachable")
        self.documents[schedule_date] = document

    def mark_finalized(self, schedule_date, user_id=None):
        self.finalized.add(schedule_date)

    def replace_technician_records(self, schedule_date, records):
        self.technician_records[schedule_date] = list(records)
        return len(records)

    def load_range(self, start_date, end_date):
        return [
            {"schedule_date": key, "schedule_data": value}
            for key, value in sorted(self.documents.items())
            if start_date <= key <= end_date
        ]

    def load_roster_rows(self):
        return list(self.roster_rows)

    def load_pre_scheduled(self, schedule_date):
        return list(self.pre_scheduled.get(schedule_date, []))

    def lookup_job(self, job_number):
        return self.jobs.get(job_number.strip().lower())


def make_job(job_id: str, hours: float = 1.0, **kwargs: Any) -> Job:
    return Job(id=job_id, hours=hours, **kwargs)


@pytest.fixture
def crew_lanes() -> list[Lane]:
    return [
        Lane(id="crew-0", name="Gabriel", color="#ef4444"),
        Lane(id="crew-1", name="David", color="#f97316"),
        Lane(id="crew-2", name="Michael", color="#eab308"),
    ]


@pytest.fixture
def lanes_with_manager(crew_lanes) -> list[Lane]:
    return [Lane(id="manager-0", name="Kevin", color="#3b82f6", kind=LaneKind.MANAGER), *crew_lanes]


@pytest.fixture
def fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def persistence(tmp_path, fake_repository) -> SchedulePersistence:
    return SchedulePersistence(repository=fake_repository, storage=FileStorage(root=tmp_path))


@pytest.fixture
def geocoder() -> Geocoder:
    return Geocoder(provider=DummyGeocodingProvider(), cache=GeocodeCache())
