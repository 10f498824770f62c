"""Dispatch board endpoints."""

from __future__ import annotations

import logging
from datetime import date
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status

from ...models.domain import Lane
from ...schemas.dispatch import (
    ConflictRequest,
    ConflictResponse,
    ConflictWarningModel,
    FinalizeRequest,
    FinalizeResponse,
    LanePreviewModel,
    PlacementModel,
    PlacementRequest,
    PlacementResponse,
    RedistributeRequest,
    RedistributeResponse,
    RosterResponse,
    ScheduleDocument,
    ScheduleResponse,
    SequenceRequest,
    SequenceResponse,
    TechnicianRecordModel,
    drive_time_from_model,
    group_to_model,
    job_from_model,
    job_to_model,
    lane_from_model,
    lane_to_model,
    matrix_from_payload,
    schedule_from_payload,
)
from ...services.balancing.redistribution import TargetLane, redistribute_jobs
from ...services.conflicts.detector import ConflictWarning, detect_conflicts
from ...services.placement.engine import PlacementWindow, hour_to_label, place_jobs
from ...services.routing.matrix import TravelTimeMatrixBuilder
from ...services.routing.sequencer import sequence_route
from ...services.schedule.session import DispatchSession, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


@lru_cache()
def get_session_registry() -> SessionRegistry:
    return SessionRegistry()


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def _warning_model(warning: ConflictWarning) -> ConflictWarningModel:
    return ConflictWarningModel(
        kind=warning.kind,
        message=warning.message,
        lane_ids=list(warning.lane_ids),
        job_number=warning.job_number,
        overage_hours=warning.overage_hours,
    )


def _schedule_response(session: DispatchSession) -> ScheduleResponse:
    return ScheduleResponse(
        schedule_date=session.schedule_date,
        source=session.source,
        document=ScheduleDocument.model_validate(session.to_document()),
        conflicts=[_warning_model(warning) for warning in session.store.conflicts],
    )


def _server_error(action: str, exc: Exception) -> HTTPException:
    logging.exception(f"Error while trying to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}",
    )


@router.post("/placements", response_model=PlacementResponse, status_code=status.HTTP_200_OK)
def placements(payload: PlacementRequest) -> PlacementResponse:
    defaults = PlacementWindow.from_settings()
    window = PlacementWindow(
        opening_hour=payload.opening_hour if payload.opening_hour is not None else defaults.opening_hour,
        closing_hour=payload.closing_hour if payload.closing_hour is not None else defaults.closing_hour,
        slot_hours=payload.slot_hours or defaults.slot_hours,
    )
    if window.closing_hour <= window.opening_hour:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="closing_hour must be after opening_hour")
    jobs = [job_from_model(job) for job in payload.jobs]
    result = place_jobs(jobs, payload.legs, window)
    return PlacementResponse(
        placements=[
            PlacementModel(
                job_id=placement.job.id,
                start_hour=placement.start_hour,
                end_hour=placement.end_hour,
                start_label=hour_to_label(placement.start_hour),
                overflow=placement.overflow,
                drive_minutes=placement.drive_minutes,
                start_row=placement.start_row,
                row_span=placement.row_span,
            )
            for placement in result
        ]
    )


@router.post("/conflicts", response_model=ConflictResponse, status_code=status.HTTP_200_OK)
def conflicts(payload: ConflictRequest) -> ConflictResponse:
    lanes: list[Lane] = [lane_from_model(lane) for lane in payload.lanes]
    schedule = schedule_from_payload(payload.schedule)
    drive_times = {lane_id: drive_time_from_model(model) for lane_id, model in payload.drive_time_by_crew.items()}
    warnings = detect_conflicts(schedule, lanes, drive_times)
    return ConflictResponse(warnings=[_warning_model(warning) for warning in warnings])


@router.post("/redistribute", response_model=RedistributeResponse, status_code=status.HTTP_200_OK)
def redistribute(payload: RedistributeRequest) -> RedistributeResponse:
    try:
        result = redistribute_jobs(
            [job_from_model(job) for job in payload.source_jobs],
            [
                TargetLane(
                    lane_id=target.lane_id,
                    jobs=[job_from_model(job) for job in target.jobs],
                    drive_seconds=target.drive_seconds,
                )
                for target in payload.targets
            ],
            day_length=payload.day_length_hours,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RedistributeResponse(
        assignments=result.assignments,
        remaining_hours=result.remaining_hours,
        previews=[
            LanePreviewModel(
                lane_id=preview.lane_id,
                job_count=preview.job_count,
                total_hours=preview.total_hours,
                will_overflow=preview.will_overflow,
            )
            for preview in result.previews
        ],
    )


@router.post("/routes/sequence", response_model=SequenceResponse, status_code=status.HTTP_200_OK)
async def sequence(payload: SequenceRequest) -> SequenceResponse:
    try:
        if payload.matrix is not None:
            matrix = matrix_from_payload(payload.matrix)
        elif payload.points:
            matrix = await TravelTimeMatrixBuilder().build(payload.points)
        else:
            raise ValueError("Provide either a travel-time matrix or a depot-first point list.")
        route = sequence_route(matrix, max_passes=payload.max_passes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("sequence route", exc) from exc
    return SequenceResponse(order=route.order, legs=route.legs, total_seconds=route.total_seconds, partial=route.partial)


@router.get("/schedules/{schedule_date}", response_model=ScheduleResponse, status_code=status.HTTP_200_OK)
async def get_schedule(
    schedule_date: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> ScheduleResponse:
    day = _parse_date(schedule_date)
    try:
        session = await registry.get(day)
        await session.merge_from_repository()
        return _schedule_response(session)
    except Exception as exc:
        raise _server_error("load schedule", exc) from exc


@router.put("/schedules/{schedule_date}", response_model=ScheduleResponse, status_code=status.HTTP_200_OK)
async def save_schedule(
    schedule_date: str,
    payload: ScheduleDocument,
    registry: SessionRegistry = Depends(get_session_registry),
) -> ScheduleResponse:
    day = _parse_date(schedule_date)
    try:
        session = await registry.get(day)
        await session.replace_document(payload)
        return _schedule_response(session)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("save schedule", exc) from exc


@router.post("/schedules/{schedule_date}/finalize", response_model=FinalizeResponse, status_code=status.HTTP_200_OK)
async def finalize_schedule(
    schedule_date: str,
    payload: FinalizeRequest | None = None,
    registry: SessionRegistry = Depends(get_session_registry),
) -> FinalizeResponse:
    day = _parse_date(schedule_date)
    try:
        session = await registry.get(day)
        outcome = await session.finalize(payload.finalized_by if payload else None)
    except Exception as exc:
        raise _server_error("finalize schedule", exc) from exc
    return FinalizeResponse(
        schedule_date=session.schedule_date,
        finalized=session.finalized,
        records=[TechnicianRecordModel(**record) for record in outcome.records],
        persisted=outcome.persisted,
        notifications={
            name: [job_to_model(job) for job in jobs] for name, jobs in session.notification_payload().items()
        },
    )


@router.get("/roster", response_model=RosterResponse, status_code=status.HTTP_200_OK)
async def roster(
    schedule_date: str | None = None,
    registry: SessionRegistry = Depends(get_session_registry),
) -> RosterResponse:
    day = _parse_date(schedule_date) if schedule_date else date.today()
    session = await registry.get(day)
    return RosterResponse(
        manager_groups=[group_to_model(group) for group in session.roster.groups],
        lanes=[lane_to_model(lane) for lane in session.roster.columns()],
    )
