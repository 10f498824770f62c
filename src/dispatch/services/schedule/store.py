"""In-memory schedule state with undo/redo and change notification."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ...config import settings
from ...models.domain import (
    UNASSIGNED,
    DriveTime,
    Job,
    Lane,
    LaneKind,
    LinkedJobCopy,
    Schedule,
    Snapshot,
    hours_for_job_type,
    new_job_id,
)
from ..balancing.redistribution import RedistributionResult, TargetLane, redistribute_jobs
from ..conflicts.detector import ConflictWarning, detect_conflicts
from ..placement.engine import Placement, PlacementWindow, place_jobs
from ..routing.sequencer import find_best_insertion_index

logger = logging.getLogger(__name__)

JobDirectory = Callable[[str], Optional[Mapping[str, Any]]]
Listener = Callable[["ScheduleStore"], None]
LaneFingerprint = tuple[tuple[str, Optional[float], Optional[float]], ...]

_EDITABLE_FIELDS = {f.name for f in fields(Job)} - {"id"}


class ScheduleStore:
    """Owns one date's Schedule and DriveTime map.

    Structural mutations snapshot the previous state for undo. Methods that
    target a lane or job that no longer exists are no-ops and return ``False``
    or ``None``. Route and coordinate write-backs from async work are checked
    against the current state and do not create undo entries.
    """

    def __init__(
        self,
        lanes: Sequence[Lane],
        schedule: Schedule | None = None,
        drive_times: Mapping[str, DriveTime] | None = None,
        *,
        undo_depth: int | None = None,
        job_directory: JobDirectory | None = None,
        depot: tuple[float, float] | None = None,
        window: PlacementWindow | None = None,
    ) -> None:
        self._lanes: list[Lane] = list(lanes)
        self._schedule = schedule or Schedule.empty_for([lane.id for lane in self._lanes])
        self._drive_times: dict[str, DriveTime] = dict(drive_times or {})
        depth = undo_depth or settings.undo_depth
        self._undo: deque[Snapshot] = deque(maxlen=depth)
        self._redo: deque[Snapshot] = deque(maxlen=depth)
        self._listeners: list[Listener] = []
        self.job_directory = job_directory
        self.depot = depot
        self.window = window or PlacementWindow.from_settings()
        self.revision = 0
        self._ensure_lane_lists()
        self.conflicts: list[ConflictWarning] = self._detect()

    # ------------------------------------------------------------------ state

    @property
    def lanes(self) -> list[Lane]:
        return list(self._lanes)

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def drive_times(self) -> dict[str, DriveTime]:
        return self._drive_times

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_size(self) -> int:
        return len(self._undo)

    def lane(self, lane_id: str) -> Optional[Lane]:
        return next((lane for lane in self._lanes if lane.id == lane_id), None)

    def crew_lanes(self) -> list[Lane]:
        return [lane for lane in self._lanes if lane.is_crew]

    def snapshot(self) -> Snapshot:
        return Snapshot.capture(self._schedule, self._drive_times)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _ensure_lane_lists(self) -> None:
        for lane in self._lanes:
            self._schedule.lanes.setdefault(lane.id, [])

    def _detect(self) -> list[ConflictWarning]:
        return detect_conflicts(self._schedule, self._lanes, self._drive_times, self.window.day_length)

    def _checkpoint(self) -> None:
        self._undo.append(self.snapshot())
        self._redo.clear()

    def _commit(self) -> None:
        self.revision += 1
        self.conflicts = self._detect()
        for listener in list(self._listeners):
            listener(self)

    def _is_lane(self, lane_id: str) -> bool:
        return lane_id == UNASSIGNED or self.lane(lane_id) is not None

    def _mark_stale(self, *lane_ids: str) -> None:
        for lane_id in lane_ids:
            lane = self.lane(lane_id)
            if lane is None or not lane.is_crew:
                continue
            current = self._drive_times.get(lane_id)
            if not self._schedule.lanes.get(lane_id):
                self._drive_times[lane_id] = DriveTime()
            elif current is None:
                self._drive_times[lane_id] = DriveTime(stale=True)
            else:
                # the total stays as an estimate until the route is recomputed
                self._drive_times[lane_id] = DriveTime(total_seconds=current.total_seconds, legs=[], stale=True)

    def lane_fingerprint(self, lane_id: str) -> LaneFingerprint:
        """Job ids and coordinates of a lane, in order; routes are computed against this."""
        return tuple((job.id, job.latitude, job.longitude) for job in self._schedule.lanes.get(lane_id, []))

    def stale_lanes(self) -> list[str]:
        result = []
        for lane in self.crew_lanes():
            jobs = self._schedule.lanes.get(lane.id, [])
            drive = self._drive_times.get(lane.id)
            if jobs and (drive is None or drive.stale):
                result.append(lane.id)
        return result

    # --------------------------------------------------------------- loading

    def load(self, schedule: Schedule, drive_times: Mapping[str, DriveTime], lanes: Sequence[Lane] | None = None) -> None:
        """Swap in a loaded state; history does not survive a load."""
        if lanes is not None:
            self._lanes = list(lanes)
        self._schedule = schedule
        self._drive_times = dict(drive_times)
        self._ensure_lane_lists()
        self._undo.clear()
        self._redo.clear()
        self._commit()

    def set_lanes(self, lanes: Sequence[Lane]) -> None:
        self._lanes = list(lanes)
        self._ensure_lane_lists()
        self._commit()

    # ------------------------------------------------------------ undo/redo

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self.snapshot())
        self._schedule, self._drive_times = self._undo.pop().restore()
        self._commit()
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self.snapshot())
        self._schedule, self._drive_times = self._redo.pop().restore()
        self._commit()
        return True

    # ------------------------------------------------------------ mutations

    def add_job(self, lane_id: str, job: Job | None = None, index: int | None = None) -> Optional[Job]:
        if not self._is_lane(lane_id):
            return None
        job = job or Job()
        if self._schedule.locate(job.id) is not None:
            raise ValueError(f"Job {job.id} is already scheduled.")
        self._checkpoint()
        jobs = self._schedule.jobs(lane_id)
        if index is None or index >= len(jobs):
            jobs.append(job)
        else:
            jobs.insert(max(0, index), job)
        self._mark_stale(lane_id)
        self._commit()
        return job

    def add_jobs(self, items: Sequence[tuple[str, Job]]) -> list[Job]:
        """Append several jobs as one undoable step; unknown lanes fall back to unassigned."""
        fresh: list[tuple[str, Job]] = []
        seen: set[str] = set()
        for lane_id, job in items:
            if job.id in seen or self._schedule.locate(job.id) is not None:
                continue
            seen.add(job.id)
            fresh.append((lane_id, job))
        if not fresh:
            return []
        self._checkpoint()
        touched = set()
        for lane_id, job in fresh:
            target = lane_id if self._is_lane(lane_id) else UNASSIGNED
            self._schedule.jobs(target).append(job)
            touched.add(target)
        self._mark_stale(*sorted(touched))
        self._commit()
        return [job for _, job in fresh]

    def update_job(self, job_id: str, **changes: Any) -> Optional[Job]:
        """Edit job fields in place.

        Picking a job type resets the hours to that type's default unless
        hours are given too. A job number found in the job directory fills in
        the customer, address and database id.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        location = self._schedule.locate(job_id)
        if location is None:
            return None
        lane_id, index = location
        job = self._schedule.jobs(lane_id)[index]

        updates = dict(changes)
        if "job_type" in updates and "hours" not in updates:
            updates["hours"] = hours_for_job_type(updates["job_type"])
        if "job_number" in updates and self.job_directory is not None:
            record = self.job_directory(str(updates["job_number"]).strip())
            if record:
                updates.setdefault("customer", record.get("customer") or job.customer)
                updates.setdefault("address", record.get("address") or job.address)
                if record.get("id") is not None:
                    updates.setdefault("db_job_id", str(record["id"]))
        address_changed = "address" in updates and (updates["address"] or "") != job.address
        if address_changed and "latitude" not in updates:
            updates["latitude"] = None
            updates["longitude"] = None

        self._checkpoint()
        updated = replace(job, **updates)
        self._schedule.jobs(lane_id)[index] = updated
        if address_changed or "latitude" in updates or "longitude" in updates:
            self._mark_stale(lane_id)
        self._commit()
        return updated

    def remove_job(self, job_id: str) -> bool:
        location = self._schedule.locate(job_id)
        if location is None:
            return False
        lane_id, index = location
        self._checkpoint()
        del self._schedule.jobs(lane_id)[index]
        self._mark_stale(lane_id)
        self._commit()
        return True

    def move_job(self, job_id: str, to_lane_id: str, index: int | None = None) -> bool:
        """Move a job to another lane (or position).

        Without an explicit index the job goes where it adds the least
        distance to the target lane's current route.
        """
        location = self._schedule.locate(job_id)
        if location is None or not self._is_lane(to_lane_id):
            return False
        from_lane_id, from_index = location
        job = self._schedule.jobs(from_lane_id)[from_index]
        if isinstance(job, LinkedJobCopy) and to_lane_id != from_lane_id:
            lane = self.lane(to_lane_id)
            if lane is not None and lane.is_crew:
                raise ValueError("Linked copies stay on manager lanes.")

        self._checkpoint()
        del self._schedule.jobs(from_lane_id)[from_index]
        target = self._schedule.jobs(to_lane_id)
        if index is None:
            if to_lane_id == UNASSIGNED:
                index = len(target)
            else:
                index = find_best_insertion_index([j.coordinates for j in target], job.coordinates, self.depot)
        target.insert(max(0, min(index, len(target))), job)
        self._mark_stale(from_lane_id, to_lane_id)
        self._commit()
        return True

    def move_job_to_unassigned(self, job_id: str) -> bool:
        return self.move_job(job_id, UNASSIGNED)

    def copy_job_to_lane(self, job_id: str, lane_id: str, pinned_start: float | None = None) -> Optional[LinkedJobCopy]:
        """Place a linked copy of a job on a manager lane, ordered by pinned start.

        Unpinned entries sort ahead of pinned ones. Crew lanes never take copies.
        """
        source = self._schedule.find(job_id)
        lane = self.lane(lane_id)
        if source is None or lane is None or lane.kind != LaneKind.MANAGER:
            return None
        values = {f.name: getattr(source, f.name) for f in fields(Job)}
        values["id"] = new_job_id()
        if pinned_start is not None:
            values["pinned_start"] = pinned_start
        linked = LinkedJobCopy(**values, source_job_id=source.id)

        self._checkpoint()
        jobs = self._schedule.jobs(lane_id)
        jobs.append(linked)
        jobs.sort(key=lambda j: j.pinned_start if j.pinned_start is not None else -1.0)
        self._mark_stale(lane_id)
        self._commit()
        return linked

    def swap_lanes(self, lane_a: str, lane_b: str) -> bool:
        """Exchange the job lists (and drive times) of two crew lanes."""
        if lane_a == lane_b or self.lane(lane_a) is None or self.lane(lane_b) is None:
            return False
        self._checkpoint()
        lanes = self._schedule.lanes
        lanes[lane_a], lanes[lane_b] = lanes.get(lane_b, []), lanes.get(lane_a, [])
        drive_a = self._drive_times.pop(lane_a, None)
        drive_b = self._drive_times.pop(lane_b, None)
        if drive_b is not None:
            self._drive_times[lane_a] = drive_b
        if drive_a is not None:
            self._drive_times[lane_b] = drive_a
        self._commit()
        return True

    def move_all_jobs(self, from_lane: str, to_lane: str) -> bool:
        if from_lane == to_lane or not self._is_lane(from_lane) or not self._is_lane(to_lane):
            return False
        self._checkpoint()
        moving = list(self._schedule.jobs(from_lane))
        self._schedule.jobs(from_lane).clear()
        self._schedule.jobs(to_lane).extend(moving)
        self._mark_stale(from_lane, to_lane)
        self._commit()
        return True

    def preview_redistribution(self, source_lane: str, target_lanes: Sequence[str] | None = None) -> Optional[RedistributionResult]:
        """Read-only redistribution plan for ``source_lane``'s jobs."""
        if self.lane(source_lane) is None:
            return None
        source_jobs = self._schedule.lanes.get(source_lane, [])
        if not source_jobs:
            return None
        if target_lanes is None:
            target_lanes = [lane.id for lane in self.crew_lanes() if lane.id != source_lane]
        targets = []
        for lane_id in target_lanes:
            lane = self.lane(lane_id)
            if lane is None or not lane.is_crew or lane_id == source_lane:
                continue
            drive = self._drive_times.get(lane_id)
            targets.append(
                TargetLane(
                    lane_id=lane_id,
                    jobs=list(self._schedule.lanes.get(lane_id, [])),
                    drive_seconds=drive.total_seconds if drive else 0.0,
                )
            )
        if not targets:
            return None
        return redistribute_jobs(source_jobs, targets, self.window.day_length)

    def apply_redistribution(self, source_lane: str, result: RedistributionResult) -> bool:
        """Move every planned job out of ``source_lane``; jobs no longer there are skipped."""
        source_jobs = self._schedule.lanes.get(source_lane)
        if not source_jobs:
            return False
        planned = [job for job in source_jobs if result.assignments.get(job.id) and self.lane(result.assignments[job.id])]
        if not planned:
            return False
        self._checkpoint()
        ordered = sorted(planned, key=lambda job: job.duration_hours, reverse=True)
        touched = {source_lane}
        for job in ordered:
            lane_id = result.assignments[job.id]
            source_jobs.remove(job)
            self._schedule.jobs(lane_id).append(job)
            touched.add(lane_id)
        self._mark_stale(*sorted(touched))
        self._commit()
        return True

    def redistribute(self, source_lane: str, target_lanes: Sequence[str] | None = None) -> Optional[RedistributionResult]:
        result = self.preview_redistribution(source_lane, target_lanes)
        if result is None or not self.apply_redistribution(source_lane, result):
            return None
        return result

    def reassign_lanes(self, lane_lists: Mapping[str, Sequence[str]]) -> bool:
        """Redistribute jobs among the given lanes in one undoable step.

        The job ids across ``lane_lists`` must be exactly the jobs those lanes
        hold now; otherwise the plan is stale and nothing changes.
        """
        current: Dict[str, Job] = {}
        for lane_id in lane_lists:
            if self.lane(lane_id) is None:
                return False
            for job in self._schedule.lanes.get(lane_id, []):
                current[job.id] = job
        planned = [job_id for ids in lane_lists.values() for job_id in ids]
        if len(planned) != len(current) or set(planned) != set(current):
            return False
        self._checkpoint()
        for lane_id, ids in lane_lists.items():
            self._schedule.lanes[lane_id] = [current[job_id] for job_id in ids]
        self._mark_stale(*lane_lists)
        self._commit()
        return True

    # ----------------------------------------------------- async write-backs

    def _fingerprint_matches(self, lane_id: str, fingerprint: LaneFingerprint | None) -> bool:
        if fingerprint is None:
            return True
        return sorted(self.lane_fingerprint(lane_id)) == sorted(fingerprint)

    def apply_route(
        self,
        lane_id: str,
        ordered_job_ids: Sequence[str],
        drive_time: DriveTime,
        fingerprint: LaneFingerprint | None = None,
    ) -> bool:
        """Reorder a lane to a computed route.

        Dropped when the lane's membership changed meanwhile, or when
        ``fingerprint`` no longer matches the lane's job coordinates.
        """
        jobs = self._schedule.lanes.get(lane_id)
        if jobs is None or self.lane(lane_id) is None:
            logger.debug("Discarding route for removed lane %s", lane_id)
            return False
        by_id: Dict[str, Job] = {job.id: job for job in jobs}
        if len(ordered_job_ids) != len(jobs) or set(ordered_job_ids) != set(by_id):
            logger.debug("Discarding stale route for lane %s", lane_id)
            return False
        if not self._fingerprint_matches(lane_id, fingerprint):
            logger.debug("Discarding route for lane %s; job locations changed", lane_id)
            return False
        self._schedule.lanes[lane_id] = [by_id[job_id] for job_id in ordered_job_ids]
        self._drive_times[lane_id] = drive_time
        self._commit()
        return True

    def set_drive_time(
        self,
        lane_id: str,
        job_ids: Sequence[str],
        drive_time: DriveTime,
        fingerprint: LaneFingerprint | None = None,
    ) -> bool:
        """Record drive time for a lane whose job order is still ``job_ids``."""
        jobs = self._schedule.lanes.get(lane_id)
        if jobs is None or [job.id for job in jobs] != list(job_ids):
            return False
        if not self._fingerprint_matches(lane_id, fingerprint):
            return False
        self._drive_times[lane_id] = drive_time
        self._commit()
        return True

    def set_coordinates(self, job_id: str, address: str, latitude: float | None, longitude: float | None) -> bool:
        """Store geocoder output if the job still exists with the same address."""
        location = self._schedule.locate(job_id)
        if location is None:
            return False
        lane_id, index = location
        job = self._schedule.jobs(lane_id)[index]
        if (job.address or "").strip() != (address or "").strip():
            return False
        if job.latitude == latitude and job.longitude == longitude:
            return False
        self._schedule.jobs(lane_id)[index] = replace(job, latitude=latitude, longitude=longitude)
        self._commit()
        return True

    # --------------------------------------------------------- derivations

    def placements(self, lane_id: str) -> List[Placement]:
        jobs = self._schedule.lanes.get(lane_id, [])
        drive = self._drive_times.get(lane_id) or DriveTime()
        return place_jobs(jobs, drive.preceding_legs(len(jobs)), self.window)
