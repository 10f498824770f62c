"""Domain models for lanes, jobs and the daily dispatch schedule."""

from __future__ import annotations

import copy
import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

UNASSIGNED = "unassigned"


class LaneKind(str, Enum):
    CREW = "crew"
    MANAGER = "manager"


class JobType(str, Enum):
    """Closed set of dispatchable job types."""

    DRY = "dry"
    MONITORING = "monitoring"
    STABILIZATION = "stabilization"
    WALKTHROUGH = "walkthrough"
    NEW_START = "new-start"
    CONTINUE_SERVICE = "continue-service"
    DEMO = "demo"
    PACKOUT = "packout"
    EQUIPMENT_PICKUP = "equipment-pickup"
    EMERGENCY = "emergency"
    ESTIMATE = "estimate"
    INSPECTION = "inspection"

    @property
    def default_hours(self) -> float:
        return JOB_TYPE_HOURS[self]


# Decimal hours (0.5 = 30 min) used when a job type is picked.
JOB_TYPE_HOURS: dict[JobType, float] = {
    JobType.DRY: 0.5,
    JobType.MONITORING: 1.0,
    JobType.STABILIZATION: 3.0,
    JobType.NEW_START: 0.5,
    JobType.CONTINUE_SERVICE: 0.5,
    JobType.DEMO: 6.0,
    JobType.EQUIPMENT_PICKUP: 1.5,
    JobType.WALKTHROUGH: 1.0,
    JobType.PACKOUT: 8.0,
    JobType.EMERGENCY: 0.5,
    JobType.ESTIMATE: 1.5,
    JobType.INSPECTION: 1.0,
}


def hours_for_job_type(value: str | JobType | None) -> float:
    """Default duration for a job type; unknown or blank types take no time."""

    if not value:
        return 0.0
    try:
        return JobType(value).default_hours
    except ValueError:
        return 0.0


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class Lane:
    """A scheduling track: a field crew or a supervising manager."""

    id: str
    name: str
    color: str
    kind: LaneKind = LaneKind.CREW

    @property
    def is_crew(self) -> bool:
        return self.kind == LaneKind.CREW


@dataclass(slots=True)
class ManagerGroup:
    """Roster entry: one manager and the crew chiefs reporting to them."""

    manager: str
    title: str
    color: str
    crews: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Job:
    """One dispatchable unit of field work."""

    id: str = field(default_factory=new_job_id)
    job_type: str = ""
    hours: float = 0.0
    job_number: str = ""
    customer: str = ""
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    pinned_start: Optional[float] = None
    db_job_id: Optional[str] = None
    pre_scheduled: bool = False
    pre_scheduled_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def coordinates(self) -> Optional[tuple[float, float]]:
        if not self.has_coordinates:
            return None
        return (self.latitude, self.longitude)

    @property
    def duration_hours(self) -> float:
        try:
            value = float(self.hours)
        except (TypeError, ValueError):
            return 0.0
        return value if math.isfinite(value) else 0.0

    @property
    def normalized_job_number(self) -> str:
        return (self.job_number or "").strip().lower()


@dataclass(slots=True)
class LinkedJobCopy(Job):
    """Display copy of a crew job placed on a manager lane.

    ``source_job_id`` is a relation only: the copy has its own identity and
    edits to either side are never propagated.
    """

    source_job_id: str = ""


@dataclass(slots=True)
class DriveTime:
    """Route drive time for one crew lane.

    ``legs`` holds depot->first stop, stop->stop ..., last stop->depot in
    seconds. ``stale`` marks a lane whose membership or order changed since
    the legs were computed; ``partial`` marks legs that were unreachable and
    counted as zero.
    """

    total_seconds: float = 0.0
    legs: list[float] = field(default_factory=list)
    stale: bool = False
    partial: bool = False

    @property
    def total_hours(self) -> float:
        return self.total_seconds / 3600.0

    def preceding_legs(self, job_count: int) -> list[float]:
        """Leg preceding each of ``job_count`` jobs; the return leg is dropped."""

        outbound = self.legs[:-1] if len(self.legs) > 1 else list(self.legs)
        padded = list(outbound[:job_count])
        padded.extend([0.0] * (job_count - len(padded)))
        return padded


@dataclass(slots=True)
class Schedule:
    """A day's lane -> ordered jobs mapping plus the unassigned pool."""

    lanes: dict[str, list[Job]] = field(default_factory=dict)
    unassigned: list[Job] = field(default_factory=list)

    @classmethod
    def empty_for(cls, lane_ids: list[str]) -> "Schedule":
        return cls(lanes={lane_id: [] for lane_id in lane_ids}, unassigned=[])

    def jobs(self, lane_id: str) -> list[Job]:
        """Mutable job list for a lane (created on demand) or the unassigned pool."""

        if lane_id == UNASSIGNED:
            return self.unassigned
        return self.lanes.setdefault(lane_id, [])

    def locate(self, job_id: str) -> Optional[tuple[str, int]]:
        for lane_id, jobs in self.iter_lists():
            for index, job in enumerate(jobs):
                if job.id == job_id:
                    return lane_id, index
        return None

    def find(self, job_id: str) -> Optional[Job]:
        location = self.locate(job_id)
        if location is None:
            return None
        lane_id, index = location
        return self.jobs(lane_id)[index]

    def iter_lists(self) -> Iterator[tuple[str, list[Job]]]:
        yield from self.lanes.items()
        yield UNASSIGNED, self.unassigned

    def iter_jobs(self) -> Iterator[Job]:
        for _, jobs in self.iter_lists():
            yield from jobs

    def copy(self) -> "Schedule":
        return copy.deepcopy(self)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable copy of the schedule and drive times used by undo/redo."""

    schedule: Schedule
    drive_times: dict[str, DriveTime]

    @classmethod
    def capture(cls, schedule: Schedule, drive_times: dict[str, DriveTime]) -> "Snapshot":
        return cls(schedule=copy.deepcopy(schedule), drive_times=copy.deepcopy(drive_times))

    def restore(self) -> tuple[Schedule, dict[str, DriveTime]]:
        return copy.deepcopy(self.schedule), copy.deepcopy(self.drive_times)
