"""Bulk reassignment of one crew's jobs across the remaining crews."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ...config import settings
from ...models.domain import Job
from ..geospatial import centroid, squared_degree_distance

GEO_WEIGHT = 0.6
CAPACITY_WEIGHT = 0.4
CAPACITY_SCALE = 0.0001


@dataclass(slots=True)
class TargetLane:
    lane_id: str
    jobs: List[Job] = field(default_factory=list)
    drive_seconds: float = 0.0


@dataclass(slots=True)
class LanePreview:
    lane_id: str
    job_count: int
    total_hours: float
    will_overflow: bool


@dataclass(slots=True)
class RedistributionResult:
    assignments: Dict[str, str]
    remaining_hours: Dict[str, float]
    previews: List[LanePreview]

    def jobs_for(self, lane_id: str, jobs: Sequence[Job]) -> List[Job]:
        return [job for job in jobs if self.assignments.get(job.id) == lane_id]


@dataclass(slots=True)
class _LaneState:
    lane_id: str
    remaining: float
    points: List[Tuple[float, float]]
    center: Optional[Tuple[float, float]]
    added_hours: float = 0.0
    added_count: int = 0


def remaining_capacity(jobs: Sequence[Job], drive_seconds: float, day_length: float) -> float:
    """Hours left in a lane's day after its jobs and drive time."""
    work = sum(job.duration_hours for job in jobs)
    return day_length - work - (drive_seconds or 0.0) / 3600.0


def _score(job: Job, state: _LaneState) -> float:
    point = job.coordinates
    if point is not None and state.center is not None:
        geo = squared_degree_distance(point, state.center)
        return geo * GEO_WEIGHT + (-state.remaining) * CAPACITY_SCALE * CAPACITY_WEIGHT
    return -state.remaining


def redistribute_jobs(
    source_jobs: Sequence[Job],
    targets: Sequence[TargetLane],
    day_length: float | None = None,
) -> RedistributionResult:
    """Greedy largest-first assignment of ``source_jobs`` to ``targets``.

    Every source job is assigned to exactly one target. A lane is passed over
    for a job only when it cannot fit the job and is already over capacity;
    when every lane is passed over the job goes to the lane with the most room.
    """
    if not targets:
        raise ValueError("At least one target lane is required for redistribution.")
    day_length = settings.day_length_hours if day_length is None else day_length

    states: list[_LaneState] = []
    for target in targets:
        points = [job.coordinates for job in target.jobs if job.has_coordinates]
        states.append(
            _LaneState(
                lane_id=target.lane_id,
                remaining=remaining_capacity(target.jobs, target.drive_seconds, day_length),
                points=points,
                center=centroid(points),
            )
        )

    # sorted() is stable, so equal durations keep their lane order
    ordered = sorted(source_jobs, key=lambda job: job.duration_hours, reverse=True)
    assignments: dict[str, str] = {}

    for job in ordered:
        hours = job.duration_hours
        best: Optional[_LaneState] = None
        best_score = float("inf")
        for state in states:
            if state.remaining < hours and state.remaining < 0:
                continue
            score = _score(job, state)
            if score < best_score:
                best_score = score
                best = state

        if best is None:
            best = max(states, key=lambda s: s.remaining)

        assignments[job.id] = best.lane_id
        best.remaining -= hours
        best.added_hours += hours
        best.added_count += 1
        if job.has_coordinates:
            best.points.append(job.coordinates)
            best.center = centroid(best.points)

    previews = [
        LanePreview(
            lane_id=state.lane_id,
            job_count=state.added_count,
            total_hours=state.added_hours,
            will_overflow=state.remaining < 0,
        )
        for state in states
    ]
    return RedistributionResult(
        assignments=assignments,
        remaining_hours={state.lane_id: state.remaining for state in states},
        previews=previews,
    )
