"""Dispatch request/response schemas and the persisted schedule document."""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..models.domain import (
    UNASSIGNED,
    DriveTime,
    Job,
    Lane,
    LaneKind,
    LinkedJobCopy,
    ManagerGroup,
    Schedule,
)


class LaneModel(BaseModel):
    id: str
    name: str
    color: str = "#64748b"
    kind: Optional[LaneKind] = Field(default=None, description="Missing on documents saved before manager lanes existed.")


class JobModel(BaseModel):
    id: Optional[str] = None
    job_type: str = ""
    hours: float = 0.0
    job_number: str = ""
    customer: str = ""
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    pinned_start: Optional[float] = Field(default=None, ge=0.0, le=24.0)
    db_job_id: Optional[str] = None
    pre_scheduled: bool = False
    pre_scheduled_id: Optional[str] = None
    notes: Optional[str] = None
    source_job_id: Optional[str] = Field(default=None, description="Set on linked copies shown on manager lanes.")


class DriveTimeModel(BaseModel):
    total_seconds: float = 0.0
    legs: List[float] = Field(default_factory=list)
    stale: bool = False
    partial: bool = False


class ManagerGroupModel(BaseModel):
    manager: str
    title: str = ""
    color: str
    crews: List[str] = Field(default_factory=list)


class ScheduleDocument(BaseModel):
    """One calendar date's saved schedule."""

    lanes: List[LaneModel] = Field(default_factory=list)
    schedule: Dict[str, List[JobModel]] = Field(default_factory=dict)
    drive_time_by_crew: Dict[str, DriveTimeModel] = Field(default_factory=dict)
    manager_groups: List[ManagerGroupModel] = Field(default_factory=list)
    finalized: bool = False


class PlacementRequest(BaseModel):
    jobs: List[JobModel]
    legs: List[float] = Field(default_factory=list, description="Drive seconds immediately preceding each job.")
    opening_hour: Optional[float] = Field(default=None, ge=0.0, le=24.0)
    closing_hour: Optional[float] = Field(default=None, ge=0.0, le=24.0)
    slot_hours: Optional[float] = Field(default=None, gt=0.0)


class PlacementModel(BaseModel):
    job_id: str
    start_hour: float
    end_hour: float
    start_label: str
    overflow: bool
    drive_minutes: int
    start_row: Optional[int] = None
    row_span: int = 0


class PlacementResponse(BaseModel):
    placements: List[PlacementModel]


class ConflictRequest(BaseModel):
    lanes: List[LaneModel]
    schedule: Dict[str, List[JobModel]]
    drive_time_by_crew: Dict[str, DriveTimeModel] = Field(default_factory=dict)


class ConflictWarningModel(BaseModel):
    kind: str
    message: str
    lane_ids: List[str]
    job_number: Optional[str] = None
    overage_hours: Optional[float] = None


class ConflictResponse(BaseModel):
    warnings: List[ConflictWarningModel]


class TargetLaneModel(BaseModel):
    lane_id: str
    jobs: List[JobModel] = Field(default_factory=list)
    drive_seconds: float = Field(default=0.0, ge=0.0)


class RedistributeRequest(BaseModel):
    source_jobs: List[JobModel] = Field(..., min_length=1)
    targets: List[TargetLaneModel] = Field(..., min_length=1)
    day_length_hours: Optional[float] = Field(default=None, gt=0.0)


class LanePreviewModel(BaseModel):
    lane_id: str
    job_count: int
    total_hours: float
    will_overflow: bool


class RedistributeResponse(BaseModel):
    assignments: Dict[str, str]
    remaining_hours: Dict[str, float]
    previews: List[LanePreviewModel]


class SequenceRequest(BaseModel):
    """Either a travel-time matrix (null = unreachable) or depot-first points."""

    matrix: Optional[List[List[Optional[float]]]] = None
    points: Optional[List[Tuple[float, float]]] = Field(default=None, description="(lat, lon), depot first.")
    max_passes: Optional[int] = Field(default=None, ge=0)


class SequenceResponse(BaseModel):
    order: List[int]
    legs: List[float]
    total_seconds: float
    partial: bool


class TechnicianRecordModel(BaseModel):
    technician_name: str
    scheduled_date: str
    scheduled_time: str
    duration_minutes: int
    status: str
    notes: str
    job_id: Optional[str] = None


class FinalizeRequest(BaseModel):
    finalized_by: Optional[str] = None


class FinalizeResponse(BaseModel):
    schedule_date: str
    finalized: bool
    records: List[TechnicianRecordModel]
    persisted: bool
    notifications: Dict[str, List[JobModel]]


class ScheduleResponse(BaseModel):
    schedule_date: str
    source: str
    document: ScheduleDocument
    conflicts: List[ConflictWarningModel] = Field(default_factory=list)


class RosterResponse(BaseModel):
    manager_groups: List[ManagerGroupModel]
    lanes: List[LaneModel]


def matrix_from_payload(rows: List[List[Optional[float]]]) -> List[List[float]]:
    size = len(rows)
    if any(len(row) != size for row in rows):
        raise ValueError("Travel-time matrix must be square.")
    return [[math.inf if value is None else float(value) for value in row] for row in rows]


def job_from_model(model: JobModel) -> Job:
    values = model.model_dump(exclude={"source_job_id"}, exclude_none=False)
    if not values.get("id"):
        values.pop("id")
    if model.source_job_id:
        return LinkedJobCopy(**values, source_job_id=model.source_job_id)
    return Job(**values)


def job_to_model(job: Job) -> JobModel:
    return JobModel(
        id=job.id,
        job_type=job.job_type,
        hours=job.duration_hours,
        job_number=job.job_number,
        customer=job.customer,
        address=job.address,
        latitude=job.latitude,
        longitude=job.longitude,
        pinned_start=job.pinned_start,
        db_job_id=job.db_job_id,
        pre_scheduled=job.pre_scheduled,
        pre_scheduled_id=job.pre_scheduled_id,
        notes=job.notes,
        source_job_id=job.source_job_id if isinstance(job, LinkedJobCopy) else None,
    )


def lane_from_model(model: LaneModel) -> Lane:
    return Lane(id=model.id, name=model.name, color=model.color, kind=model.kind or LaneKind.CREW)


def lane_to_model(lane: Lane) -> LaneModel:
    return LaneModel(id=lane.id, name=lane.name, color=lane.color, kind=lane.kind)


def drive_time_from_model(model: DriveTimeModel) -> DriveTime:
    return DriveTime(total_seconds=model.total_seconds, legs=list(model.legs), stale=model.stale, partial=model.partial)


def drive_time_to_model(drive: DriveTime) -> DriveTimeModel:
    return DriveTimeModel(
        total_seconds=drive.total_seconds,
        legs=[leg if math.isfinite(leg) else 0.0 for leg in drive.legs],
        stale=drive.stale,
        partial=drive.partial,
    )


def group_from_model(model: ManagerGroupModel) -> ManagerGroup:
    return ManagerGroup(manager=model.manager, title=model.title, color=model.color, crews=list(model.crews))


def group_to_model(group: ManagerGroup) -> ManagerGroupModel:
    return ManagerGroupModel(manager=group.manager, title=group.title, color=group.color, crews=list(group.crews))


def schedule_from_payload(payload: Dict[str, List[JobModel]]) -> Schedule:
    schedule = Schedule()
    for lane_id, jobs in payload.items():
        converted = [job_from_model(job) for job in jobs]
        if lane_id == UNASSIGNED:
            schedule.unassigned = converted
        else:
            schedule.lanes[lane_id] = converted
    return schedule


def schedule_to_payload(schedule: Schedule) -> Dict[str, List[JobModel]]:
    payload = {lane_id: [job_to_model(job) for job in jobs] for lane_id, jobs in schedule.lanes.items()}
    payload[UNASSIGNED] = [job_to_model(job) for job in schedule.unassigned]
    return payload
