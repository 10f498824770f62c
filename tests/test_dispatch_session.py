import threading
from datetime import date

import pytest

from src.dispatch.models.domain import UNASSIGNED, Job, LaneKind
from src.dispatch.persistence.filesystem import FileStorage
from src.dispatch.schemas.dispatch import ScheduleDocument
from src.dispatch.services.geocoding import GeocodeCache, Geocoder
from src.dispatch.services.routing.matrix import TravelTimeMatrixBuilder
from src.dispatch.services.schedule.persistence import SchedulePersistence
from src.dispatch.services.schedule.session import (
    PERSISTENCE,
    PROVIDER,
    DispatchSession,
    SessionRegistry,
    job_from_pre_scheduled,
    month_bounds,
    week_bounds,
)

from conftest import DummyGeocodingProvider, DummyTravelTimeProvider, FakeRepository

DAY = "2024-03-04"

ROSTER_ROWS = [
    {"pm_name": "Kevin", "pm_title": "Sr. Production Manager", "crew_name": "Gabriel", "color": "#3b82f6"},
    {"pm_name": "Kevin", "pm_title": "Sr. Production Manager", "crew_name": "David", "color": "#3b82f6"},
    {"pm_name": "Leo", "pm_title": "Production Manager", "crew_name": "Ramon", "color": "#8b5cf6"},
]

PRE_SCHEDULED = [
    {
        "id": 11,
        "technician_name": "gabriel",
        "scheduled_time": "10:30:00",
        "duration_minutes": 90,
        "job_id": 501,
        "jobs": {
            "job_number": "WF-1",
            "customers": {"name": "Acme"},
            "properties": {"address1": "1 Main", "city": "Lebanon", "state": "TN"},
        },
    },
    {
        "id": 12,
        "technician_name": "Temp Crew",
        "scheduled_time": "13:00",
        "job_number": "WF-2",
        "customer_name": "Bolt",
        "address": "2 Elm",
    },
]


@pytest.fixture
def repository(fake_repository):
    fake_repository.roster_rows = list(ROSTER_ROWS)
    return fake_repository


def _session(persistence, schedule_date=DAY, geocoding_provider=None) -> DispatchSession:
    return DispatchSession(
        schedule_date,
        persistence,
        geocoder=Geocoder(provider=geocoding_provider or DummyGeocodingProvider(), cache=GeocodeCache()),
        matrix_builder=TravelTimeMatrixBuilder(provider=DummyTravelTimeProvider()),
        autosave_delay=0.01,
        user_id="dispatcher-1",
    )


def _crew_ids(session, lane_id):
    return [job.id for job in session.store.schedule.lanes[lane_id]]


def test_new_day_starts_from_roster(repository, persistence) -> None:
    session = _session(persistence)

    assert session.source == "defaults"
    assert [lane.id for lane in session.store.lanes] == ["manager-0", "manager-1", "crew-0", "crew-1", "crew-2"]
    assert session.store.lane("crew-2").name == "Ramon"
    assert not session.finalized


def test_pre_scheduled_row_becomes_pinned_walkthrough() -> None:
    job = job_from_pre_scheduled(PRE_SCHEDULED[0])

    assert job.job_type == "walkthrough"
    assert job.hours == 1.5
    assert job.pinned_start == 10.5
    assert job.address == "1 Main, Lebanon, TN"
    assert job.customer == "Acme"
    assert job.db_job_id == "501"
    assert job.pre_scheduled and job.pre_scheduled_id == "11"

    assert job_from_pre_scheduled(PRE_SCHEDULED[1]).hours == 1.0


def test_merge_is_idempotent(repository, persistence) -> None:
    session = _session(persistence)

    added = session.merge_pre_scheduled(PRE_SCHEDULED)

    assert len(added) == 2
    (gabriel_job,) = session.store.schedule.lanes["crew-0"]
    assert gabriel_job.job_number == "WF-1"
    assert [job.job_number for job in session.store.schedule.unassigned] == ["WF-2"]
    assert session.store.undo_size == 1

    assert session.merge_pre_scheduled(PRE_SCHEDULED) == []
    assert len(list(session.store.schedule.iter_jobs())) == 2


@pytest.mark.asyncio
async def test_merge_skips_jobs_already_on_saved_board(repository, persistence) -> None:
    session = _session(persistence)
    session.merge_pre_scheduled(PRE_SCHEDULED)
    assert await session.flush() is True

    reopened = _session(persistence)
    assert reopened.source == "database"
    assert reopened.merge_pre_scheduled(PRE_SCHEDULED) == []

    # same job number under a new appointment id is still a duplicate
    renumbered = [dict(PRE_SCHEDULED[1], id=99, job_number="wf-2 ")]
    assert reopened.merge_pre_scheduled(renumbered) == []


@pytest.mark.asyncio
async def test_merge_from_repository(repository, persistence) -> None:
    repository.pre_scheduled[DAY] = PRE_SCHEDULED
    session = _session(persistence)

    added = await session.merge_from_repository()

    assert len(added) == 2
    await session.flush()


@pytest.mark.asyncio
async def test_edits_are_autosaved(repository, persistence) -> None:
    session = _session(persistence)
    session.store.add_job("crew-1", Job(id="a", hours=2.0, job_number="WF-7"))

    assert session.autosaver.pending
    assert await session.flush() is True
    assert session.autosaver.version == 1

    saved = ScheduleDocument.model_validate(repository.documents[DAY])
    assert [job.id for job in saved.schedule["crew-1"]] == ["a"]
    assert persistence.storage.read_schedule(DAY) == repository.documents[DAY]


@pytest.mark.asyncio
async def test_finalize_writes_technician_records(repository, persistence) -> None:
    session = _session(persistence)
    session.merge_pre_scheduled(PRE_SCHEDULED)
    session.store.add_job("crew-1", Job(id="b", job_type="demo", hours=6.0, job_number="WF-3"))
    session.store.copy_job_to_lane("b", "manager-0", pinned_start=9.0)

    outcome = await session.finalize()

    assert outcome.persisted is True
    assert session.finalized is True
    assert DAY in repository.finalized
    assert repository.technician_records[DAY] == outcome.records

    by_name = {record["technician_name"]: record for record in outcome.records}
    assert set(by_name) == {"Gabriel", "David"}
    assert by_name["Gabriel"] == {
        "technician_name": "Gabriel",
        "scheduled_date": DAY,
        "scheduled_time": "10:30:00",
        "duration_minutes": 90,
        "status": "scheduled",
        "notes": "walkthrough - WF-1 - Acme",
        "job_id": "501",
    }
    assert by_name["David"]["scheduled_time"] == "08:30:00"
    assert by_name["David"]["duration_minutes"] == 360
    assert "job_id" not in by_name["David"]
    assert persistence.storage.read_schedule(DAY)["finalized"] is True


@pytest.mark.asyncio
async def test_finalize_failure_is_reported_not_raised(repository, persistence) -> None:
    session = _session(persistence)
    session.store.add_job("crew-0", Job(id="a", hours=1.0))
    repository.fail_saves = 1

    outcome = await session.finalize()

    assert outcome.persisted is False
    assert len(outcome.records) == 1
    assert [advisory.kind for advisory in session.advisories] == [PERSISTENCE]
    assert persistence.storage.read_schedule(DAY)["finalized"] is True
    # the next flush retries the remote write
    assert await session.flush() is True
    assert ScheduleDocument.model_validate(repository.documents[DAY]).finalized is True


@pytest.mark.asyncio
async def test_finalize_without_repository_keeps_local_flag(tmp_path) -> None:
    offline = SchedulePersistence(repository=FakeRepository(available=False), storage=FileStorage(root=tmp_path))
    session = _session(offline)

    outcome = await session.finalize()

    assert outcome.persisted is False
    assert session.advisories == []
    assert offline.storage.read_schedule(DAY)["finalized"] is True
    assert [g.manager for g in session.roster.groups] == ["Kevin", "Leo", "Aaron"]


@pytest.mark.asyncio
async def test_replace_document_keeps_finalized_flag(repository, persistence) -> None:
    session = _session(persistence)
    await session.finalize()

    document = ScheduleDocument.model_validate(
        {
            "lanes": [{"id": "crew-0", "name": "Gabriel", "color": "#ef4444"}],
            "schedule": {"crew-0": [{"id": "x", "hours": 2.0}], UNASSIGNED: []},
            "finalized": False,
        }
    )
    assert await session.replace_document(document) is True

    assert session.finalized is True
    assert session.store.lane("crew-0").kind == LaneKind.CREW
    assert _crew_ids(session, "crew-0") == ["x"]
    assert repository.documents[DAY]["finalized"] is True


def test_repository_document_wins_over_cache(repository, persistence) -> None:
    persistence.storage.write_schedule(DAY, {"lanes": [{"id": "crew-0", "name": "Cached"}]})
    repository.documents[DAY] = {
        "lanes": [{"id": "crew-0", "name": "Remote", "kind": "crew"}],
        "schedule": {"crew-0": [{"id": "r", "hours": 1.0}]},
    }

    session = _session(persistence)

    assert session.source == "database"
    assert session.store.lane("crew-0").name == "Remote"
    assert _crew_ids(session, "crew-0") == ["r"]


def test_job_number_lookup_uses_repository(repository, persistence) -> None:
    repository.jobs["wf-9"] = {"id": 9, "customer": "Acme", "address": "9 Oak"}
    session = _session(persistence)
    session.store.add_job("crew-0", Job(id="a"))

    updated = session.store.update_job("a", job_number="WF-9")

    assert updated.customer == "Acme"
    assert updated.db_job_id == "9"


def test_notification_payload_lists_crews_with_work(repository, persistence) -> None:
    session = _session(persistence)
    session.store.add_job("crew-2", Job(id="a", hours=1.0))
    session.store.add_job(UNASSIGNED, Job(id="u", hours=1.0))

    payload = session.notification_payload()

    assert list(payload) == ["Ramon"]
    assert [job.id for job in payload["Ramon"]] == ["a"]


@pytest.mark.asyncio
async def test_week_view_summarizes_saved_days(repository, persistence) -> None:
    other = _session(persistence, "2024-03-06")
    other.store.add_job("crew-0", Job(id="w", hours=2.0))
    await other.flush()

    session = _session(persistence)
    session.store.add_job(UNASSIGNED, Job(id="u", hours=1.0))
    await session.flush()

    view = await session.week_view()

    assert (view.start, view.end) == (date(2024, 3, 4), date(2024, 3, 10))
    assert sorted(view.days) == ["2024-03-04", "2024-03-06"]
    wednesday = view.days["2024-03-06"]
    assert [job["id"] for job in wednesday["jobs_by_crew_name"]["Gabriel"]["jobs"]] == ["w"]
    assert [job["id"] for job in view.days["2024-03-04"]["unassigned_jobs"]] == ["u"]

    assert await session.week_view() is view
    session.store.add_job("crew-1", Job(id="v", hours=1.0))
    await session.flush()
    assert await session.week_view() is not view

    with pytest.raises(ValueError):
        await session.range_view(date(2024, 3, 10), date(2024, 3, 4))


def test_week_bounds_start_on_monday() -> None:
    assert week_bounds(date(2024, 3, 7)) == (date(2024, 3, 4), date(2024, 3, 10))
    assert week_bounds(date(2024, 3, 4)) == (date(2024, 3, 4), date(2024, 3, 10))


def test_month_bounds_cover_whole_month() -> None:
    assert month_bounds(date(2024, 2, 14)) == (date(2024, 2, 1), date(2024, 2, 29))
    assert month_bounds(date(2023, 12, 31)) == (date(2023, 12, 1), date(2023, 12, 31))


@pytest.mark.asyncio
async def test_month_view_includes_saved_days(repository, persistence) -> None:
    other = _session(persistence, "2024-03-28")
    other.store.add_job("crew-1", Job(id="m", hours=1.0))
    await other.flush()

    view = await _session(persistence).month_view()

    assert (view.start, view.end) == (date(2024, 3, 1), date(2024, 3, 31))
    assert list(view.days) == ["2024-03-28"]
    assert "David" in view.days["2024-03-28"]["jobs_by_crew_name"]


@pytest.mark.asyncio
async def test_provider_failures_become_advisories(repository, persistence) -> None:
    session = _session(persistence, geocoding_provider=DummyGeocodingProvider(failing={"1 Main"}))

    assert await session.optimizer.geocoder.geocode("1 Main") is None

    (advisory,) = session.advisories
    assert advisory.kind == PROVIDER
    assert session.dismiss_advisory(advisory.id) is True
    assert session.dismiss_advisory(advisory.id) is False


@pytest.mark.asyncio
async def test_session_routing_uses_resolved_depot(repository, persistence) -> None:
    session = _session(persistence)
    session.store.add_job("crew-0", Job(id="a", hours=1.0, latitude=36.3, longitude=-86.3))
    session.store.add_job(UNASSIGNED, Job(id="b", hours=1.0, latitude=36.1, longitude=-86.2))

    assert await session.move_job_to_lane("b", "crew-0") is True

    assert sorted(_crew_ids(session, "crew-0")) == ["a", "b"]
    assert session.store.depot == session.optimizer.depot_fallback
    assert session.store.stale_lanes() == []
    await session.flush()


@pytest.mark.asyncio
async def test_registry_reuses_sessions(repository, persistence) -> None:
    registry = SessionRegistry(
        persistence,
        geocoder=Geocoder(provider=DummyGeocodingProvider(), cache=GeocodeCache()),
        autosave_delay=0.01,
    )

    session = await registry.get(date(2024, 3, 4))
    assert await registry.get(DAY) is session
    assert DAY in registry
    assert "2024-03-05" not in registry

    session.store.add_job("crew-0", Job(id="a", hours=1.0))
    await registry.close()
    assert DAY in repository.documents


class ThreadRecordingRepository(FakeRepository):
    """Records which thread each blocking read runs on."""

    def __init__(self) -> None:
        super().__init__()
        self.threads: dict[str, int] = {}

    def load_roster_rows(self):
        self.threads["roster"] = threading.get_ident()
        return super().load_roster_rows()

    def load_schedule(self, schedule_date):
        self.threads["schedule"] = threading.get_ident()
        return super().load_schedule(schedule_date)

    def load_range(self, start_date, end_date):
        self.threads["range"] = threading.get_ident()
        return super().load_range(start_date, end_date)


@pytest.mark.asyncio
async def test_open_and_range_view_read_off_the_event_loop(tmp_path) -> None:
    repository = ThreadRecordingRepository()
    repository.roster_rows = list(ROSTER_ROWS)
    persistence = SchedulePersistence(repository=repository, storage=FileStorage(root=tmp_path))
    registry = SessionRegistry(
        persistence,
        geocoder=Geocoder(provider=DummyGeocodingProvider(), cache=GeocodeCache()),
        matrix_builder=TravelTimeMatrixBuilder(provider=DummyTravelTimeProvider()),
        autosave_delay=0.01,
    )

    session = await registry.get(DAY)
    await session.week_view()

    loop_thread = threading.get_ident()
    assert set(repository.threads) == {"roster", "schedule", "range"}
    assert loop_thread not in repository.threads.values()
    assert [lane.name for lane in session.store.crew_lanes()] == ["Gabriel", "David", "Ramon"]
    await registry.close()
