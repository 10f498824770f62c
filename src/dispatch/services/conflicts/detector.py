"""Advisory consistency checks over a day's schedule."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from ...config import settings
from ...models.domain import DriveTime, Lane, Schedule

OVERTIME = "overtime"
DUPLICATE_JOB = "duplicate_job"


@dataclass(frozen=True, slots=True)
class ConflictWarning:
    kind: str
    message: str
    lane_ids: tuple[str, ...] = field(default_factory=tuple)
    job_number: str | None = None
    overage_hours: float | None = None

    @property
    def key(self) -> tuple:
        return (self.kind, self.lane_ids, self.job_number or "")


def _format_hours(hours: float) -> str:
    return f"{hours:.1f}h"


def detect_conflicts(
    schedule: Schedule,
    lanes: Sequence[Lane],
    drive_times: Mapping[str, DriveTime],
    day_length: float | None = None,
) -> List[ConflictWarning]:
    """Overtime and duplicate-job warnings for crew lanes; never mutates its inputs."""

    day_length = settings.day_length_hours if day_length is None else day_length
    warnings: list[ConflictWarning] = []
    crew_lanes = [lane for lane in lanes if lane.is_crew]

    for lane in crew_lanes:
        jobs = schedule.lanes.get(lane.id, [])
        work = sum(job.duration_hours for job in jobs)
        drive = drive_times.get(lane.id)
        drive_hours = drive.total_hours if drive else 0.0
        total = work + drive_hours
        if total > day_length:
            overage = total - day_length
            warnings.append(
                ConflictWarning(
                    kind=OVERTIME,
                    message=(
                        f"{lane.name} is over by {_format_hours(overage)} "
                        f"({_format_hours(work)} work + {_format_hours(drive_hours)} drive)"
                    ),
                    lane_ids=(lane.id,),
                    overage_hours=round(overage, 4),
                )
            )

    seen: Dict[str, list[Lane]] = {}
    for lane in crew_lanes:
        for job in schedule.lanes.get(lane.id, []):
            number = job.normalized_job_number
            if not number:
                continue
            owners = seen.setdefault(number, [])
            if lane not in owners:
                owners.append(lane)

    for number, owners in seen.items():
        if len(owners) < 2:
            continue
        warnings.append(
            ConflictWarning(
                kind=DUPLICATE_JOB,
                message=f"Job {number.upper()} appears in {', '.join(lane.name for lane in owners)}",
                lane_ids=tuple(lane.id for lane in owners),
                job_number=number,
            )
        )

    return sorted(warnings, key=lambda warning: warning.key)
