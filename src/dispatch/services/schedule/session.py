"""One dispatcher's editing session for a single calendar date."""

from __future__ import annotations

import asyncio
import calendar
import itertools
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ...models.domain import UNASSIGNED, Job, JobType, Schedule
from ...schemas.dispatch import (
    ScheduleDocument,
    drive_time_from_model,
    drive_time_to_model,
    group_from_model,
    group_to_model,
    lane_from_model,
    lane_to_model,
    schedule_from_payload,
    schedule_to_payload,
)
from ...persistence.database import PersistenceError
from ..geocoding import Geocoder
from ..placement.engine import clock_to_hour, hour_to_clock
from ..routing.matrix import TravelTimeMatrixBuilder
from ..routing.service import DayOptimizationResult, ProgressCallback, RouteOptimizer
from .persistence import DebouncedAutosaver, SchedulePersistence, date_key
from .roster import Roster, find_lane_by_name
from .store import ScheduleStore

logger = logging.getLogger(__name__)

PROVIDER = "provider"
PERSISTENCE = "persistence"

NOTES_SEPARATOR = " - "

_advisory_ids = itertools.count(1)


@dataclass(slots=True)
class Advisory:
    """A dismissible, non-blocking notice about a degraded provider or a failed save."""

    kind: str
    message: str
    id: int = field(default_factory=lambda: next(_advisory_ids))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class FinalizeOutcome:
    records: List[dict[str, Any]]
    persisted: bool


@dataclass(slots=True)
class RangeView:
    """Per-date summary keyed by ISO date: crew name -> {jobs, drive} plus unassigned jobs."""

    start: date
    end: date
    version: int
    days: Dict[str, dict[str, Any]]


def week_bounds(anchor: date) -> tuple[date, date]:
    monday = anchor - timedelta(days=anchor.weekday())
    return monday, monday + timedelta(days=6)


def month_bounds(anchor: date) -> tuple[date, date]:
    last_day = calendar.monthrange(anchor.year, anchor.month)[1]
    return anchor.replace(day=1), anchor.replace(day=last_day)


def job_from_pre_scheduled(row: Mapping[str, Any]) -> Job:
    """Pinned walkthrough job from a pre-scheduled appointment row."""
    job_data = row.get("jobs") or {}
    customer = (job_data.get("customers") or {}).get("name") or row.get("customer_name") or ""
    properties = job_data.get("properties")
    if properties:
        address = ", ".join(
            str(part) for part in (properties.get("address1"), properties.get("city"), properties.get("state")) if part
        )
    else:
        address = row.get("address") or ""
    minutes = row.get("duration_minutes") or 60
    return Job(
        job_type=JobType.WALKTHROUGH.value,
        hours=float(minutes) / 60.0,
        job_number=job_data.get("job_number") or row.get("job_number") or "",
        customer=customer,
        address=address,
        pinned_start=clock_to_hour(row.get("scheduled_time")),
        db_job_id=str(row["job_id"]) if row.get("job_id") is not None else None,
        pre_scheduled=True,
        pre_scheduled_id=str(row["id"]) if row.get("id") is not None else None,
        notes=row.get("notes"),
    )


def summarize_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Range-view entry for one saved document."""
    parsed = ScheduleDocument.model_validate(document)
    crews: dict[str, dict[str, Any]] = {}
    for lane_model in parsed.lanes:
        lane = lane_from_model(lane_model)
        if not lane.is_crew:
            continue
        drive = parsed.drive_time_by_crew.get(lane.id)
        crews[lane.name] = {
            "jobs": [job.model_dump() for job in parsed.schedule.get(lane.id, [])],
            "drive": drive.total_seconds if drive else 0.0,
        }
    unassigned = [job.model_dump() for job in parsed.schedule.get(UNASSIGNED, [])]
    return {"jobs_by_crew_name": crews, "unassigned_jobs": unassigned, "finalized": parsed.finalized}


class DispatchSession:
    """Loads, edits, autosaves and finalizes the schedule for one date."""

    def __init__(
        self,
        schedule_date: date | str,
        persistence: SchedulePersistence | None = None,
        *,
        roster: Roster | None = None,
        geocoder: Geocoder | None = None,
        matrix_builder: TravelTimeMatrixBuilder | None = None,
        user_id: str | None = None,
        autosave_delay: float | None = None,
    ) -> None:
        self.schedule_date = date_key(schedule_date)
        self.persistence = persistence or SchedulePersistence()
        self.user_id = user_id
        self.advisories: list[Advisory] = []
        self.finalized = False
        self.source = "defaults"
        self._merged_ids: set[str] = set()
        self._range_cache: dict[tuple[str, str], RangeView] = {}

        self.roster = roster or self._load_roster()
        repository = self.persistence.repository
        job_directory = repository.lookup_job if repository.available else None
        self.store = ScheduleStore(self.roster.lanes, job_directory=job_directory)

        geocoder = geocoder or Geocoder()
        geocoder.on_failure = geocoder.on_failure or self._provider_failed
        matrix_builder = matrix_builder or TravelTimeMatrixBuilder()
        matrix_builder.on_failure = matrix_builder.on_failure or self._provider_failed
        self.optimizer = RouteOptimizer(geocoder=geocoder, matrix_builder=matrix_builder)
        self.store.depot = self.optimizer.depot_fallback

        self.autosaver = DebouncedAutosaver(self._persist, delay=autosave_delay, on_error=self._persistence_failed)
        self.load()
        self.store.subscribe(lambda _store: self.autosaver.schedule())

    @classmethod
    async def open(
        cls,
        schedule_date: date | str,
        persistence: SchedulePersistence | None = None,
        **options: Any,
    ) -> "DispatchSession":
        """Build a session in a worker thread; loading reads the roster and the saved day."""
        return await asyncio.to_thread(cls, schedule_date, persistence, **options)

    # ------------------------------------------------------------- advisories

    def add_advisory(self, kind: str, message: str) -> Advisory:
        advisory = Advisory(kind=kind, message=message)
        self.advisories.append(advisory)
        return advisory

    def dismiss_advisory(self, advisory_id: int) -> bool:
        for index, advisory in enumerate(self.advisories):
            if advisory.id == advisory_id:
                del self.advisories[index]
                return True
        return False

    def _provider_failed(self, message: str) -> None:
        self.add_advisory(PROVIDER, message)

    def _persistence_failed(self, exc: Exception) -> None:
        self.add_advisory(PERSISTENCE, f"Changes are saved locally but not yet to the server: {exc}")

    # ---------------------------------------------------------------- loading

    def _load_roster(self) -> Roster:
        repository = self.persistence.repository
        rows = repository.load_roster_rows() if repository.available else []
        return Roster.from_rows(rows)

    def load(self) -> None:
        """Load this date: repository, then local cache, then an empty roster-shaped day."""
        loaded = self.persistence.load(self.schedule_date)
        if loaded is None:
            self.source = "defaults"
            self.finalized = False
            self.store.load(Schedule.empty_for([lane.id for lane in self.roster.lanes]), {}, lanes=self.roster.lanes)
            return

        document = ScheduleDocument.model_validate(loaded.document)
        self.source = loaded.source
        self._apply_document(document, finalized=loaded.finalized or document.finalized)
        logger.info("Loaded schedule for %s from %s", self.schedule_date, loaded.source)

    def _apply_document(self, document: ScheduleDocument, finalized: bool) -> None:
        # lanes saved without a kind load as crew lanes
        lanes = [lane_from_model(lane) for lane in document.lanes] or self.roster.lanes
        if document.manager_groups:
            self.roster = Roster(groups=[group_from_model(g) for g in document.manager_groups], lanes=lanes)
        drive_times = {lane_id: drive_time_from_model(model) for lane_id, model in document.drive_time_by_crew.items()}
        self.finalized = finalized
        self.store.load(schedule_from_payload(document.schedule), drive_times, lanes=lanes)

    async def replace_document(self, document: ScheduleDocument) -> bool:
        """Overwrite the day with a client-supplied document and save it immediately.

        The finalized flag is sticky: a document cannot un-finalize a day.
        """
        self._apply_document(document, finalized=self.finalized or document.finalized)
        self.source = "client"
        return await self.flush()

    def to_document(self) -> dict[str, Any]:
        document = ScheduleDocument(
            lanes=[lane_to_model(lane) for lane in self.store.lanes],
            schedule=schedule_to_payload(self.store.schedule),
            drive_time_by_crew={lane_id: drive_time_to_model(drive) for lane_id, drive in self.store.drive_times.items()},
            manager_groups=[group_to_model(group) for group in self.roster.groups],
            finalized=self.finalized,
        )
        return document.model_dump(mode="json")

    async def _persist(self) -> None:
        await self.persistence.save(self.schedule_date, self.to_document(), self.user_id)

    async def flush(self) -> bool:
        return await self.autosaver.flush()

    # ------------------------------------------------------------ merging

    def merge_pre_scheduled(self, rows: Sequence[Mapping[str, Any]]) -> list[Job]:
        """Add appointments not yet on the board; repeated merges add nothing."""
        fresh = [row for row in rows if row.get("id") is None or str(row["id"]) not in self._merged_ids]
        for row in fresh:
            if row.get("id") is not None:
                self._merged_ids.add(str(row["id"]))

        board_ids: set[str] = set()
        board_numbers: set[str] = set()
        board_refs: set[str] = set()
        for job in self.store.schedule.iter_jobs():
            if job.db_job_id:
                board_ids.add(str(job.db_job_id))
            if job.normalized_job_number:
                board_numbers.add(job.normalized_job_number)
            if job.pre_scheduled_id:
                board_refs.add(job.pre_scheduled_id)

        items: list[tuple[str, Job]] = []
        for row in fresh:
            job = job_from_pre_scheduled(row)
            if job.pre_scheduled_id and job.pre_scheduled_id in board_refs:
                continue
            if job.db_job_id and job.db_job_id in board_ids:
                continue
            if job.normalized_job_number and job.normalized_job_number in board_numbers:
                continue
            lane = find_lane_by_name(self.store.lanes, row.get("technician_name"))
            items.append((lane.id if lane else UNASSIGNED, job))
            if job.db_job_id:
                board_ids.add(job.db_job_id)
            if job.normalized_job_number:
                board_numbers.add(job.normalized_job_number)

        added = self.store.add_jobs(items)
        if added:
            logger.info("Merged %d pre-scheduled items into %s", len(added), self.schedule_date)
        return added

    async def merge_from_repository(self) -> list[Job]:
        repository = self.persistence.repository
        if not repository.available:
            return []
        rows = await asyncio.to_thread(repository.load_pre_scheduled, self.schedule_date)
        return self.merge_pre_scheduled(rows)

    # ----------------------------------------------------------- finalizing

    def finalize_records(self) -> list[dict[str, Any]]:
        """Technician schedule rows for every crew job, timed by the placement engine."""
        records: list[dict[str, Any]] = []
        for lane in self.store.crew_lanes():
            for placement in self.store.placements(lane.id):
                job = placement.job
                hours = job.duration_hours
                notes = NOTES_SEPARATOR.join(part for part in (job.job_type, job.job_number, job.customer) if part)
                record = {
                    "technician_name": lane.name,
                    "scheduled_date": self.schedule_date,
                    "scheduled_time": hour_to_clock(placement.start_hour),
                    "duration_minutes": round(hours * 60),
                    "status": "scheduled",
                    "notes": notes,
                }
                if job.db_job_id:
                    record["job_id"] = job.db_job_id
                records.append(record)
        return records

    async def finalize(self, user_id: str | None = None) -> FinalizeOutcome:
        """Save, mark final and replace the date's technician rows.

        Conflicts never block finalizing. Without a repository the flag is kept
        in the local cache only.
        """
        user_id = user_id or self.user_id
        self.finalized = True
        records = self.finalize_records()
        # a failed save is already reported through the autosaver and retried on the next flush
        if not await self.autosaver.save_now():
            return FinalizeOutcome(records=records, persisted=False)
        repository = self.persistence.repository
        if not repository.available:
            return FinalizeOutcome(records=records, persisted=False)
        try:
            await asyncio.to_thread(repository.mark_finalized, self.schedule_date, user_id)
            await asyncio.to_thread(repository.replace_technician_records, self.schedule_date, records)
        except PersistenceError as exc:
            logger.warning("Finalize for %s was not fully persisted: %s", self.schedule_date, exc)
            self._persistence_failed(exc)
            return FinalizeOutcome(records=records, persisted=False)
        return FinalizeOutcome(records=records, persisted=True)

    def notification_payload(self) -> dict[str, list[Job]]:
        """Technician name -> ordered jobs for the day; crews without work are left out."""
        payload: dict[str, list[Job]] = {}
        for lane in self.store.crew_lanes():
            jobs = list(self.store.schedule.lanes.get(lane.id, []))
            if jobs:
                payload[lane.name] = jobs
        return payload

    # ----------------------------------------------------------- range views

    async def range_view(self, start: date, end: date) -> RangeView:
        if end < start:
            raise ValueError("Range end must not be before its start.")
        key = (start.isoformat(), end.isoformat())
        cached = self._range_cache.get(key)
        if cached is not None and cached.version == self.autosaver.version:
            return cached
        documents = await asyncio.to_thread(self.persistence.load_range, start, end)
        view = RangeView(
            start=start,
            end=end,
            version=self.autosaver.version,
            days={day: summarize_document(document) for day, document in sorted(documents.items())},
        )
        self._range_cache[key] = view
        return view

    async def week_view(self, anchor: date | None = None) -> RangeView:
        start, end = week_bounds(anchor or date.fromisoformat(self.schedule_date))
        return await self.range_view(start, end)

    async def month_view(self, anchor: date | None = None) -> RangeView:
        start, end = month_bounds(anchor or date.fromisoformat(self.schedule_date))
        return await self.range_view(start, end)

    # ------------------------------------------------------------ routing

    async def resolve_depot(self) -> tuple[float, float]:
        depot = await self.optimizer.depot()
        self.store.depot = depot
        return depot

    async def move_job_to_lane(self, job_id: str, lane_id: str) -> bool:
        await self.resolve_depot()
        return await self.optimizer.move_job_to_lane(self.store, job_id, lane_id)

    async def refresh_drive_times(self) -> list[str]:
        return await self.optimizer.refresh_stale(self.store)

    async def optimize_day(self, on_progress: ProgressCallback | None = None) -> DayOptimizationResult:
        await self.resolve_depot()
        return await self.optimizer.optimize_day(self.store, on_progress)


class SessionRegistry:
    """Open sessions by date; one editing session owns each date in this process."""

    def __init__(self, persistence: SchedulePersistence | None = None, **session_options: Any) -> None:
        self.persistence = persistence or SchedulePersistence()
        self.session_options = session_options
        self._sessions: dict[str, DispatchSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, schedule_date: date | str) -> DispatchSession:
        key = date_key(schedule_date)
        async with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = await DispatchSession.open(key, self.persistence, **self.session_options)
                self._sessions[key] = session
        return session

    def __contains__(self, schedule_date: date | str) -> bool:
        return date_key(schedule_date) in self._sessions

    async def close(self) -> None:
        for session in self._sessions.values():
            await session.flush()
