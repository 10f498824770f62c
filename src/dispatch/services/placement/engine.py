"""Temporal layout of a lane's jobs on the working-day grid."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from ...config import settings
from ...models.domain import Job

GRID_TOLERANCE = 0.01


@dataclass(slots=True)
class PlacementWindow:
    opening_hour: float
    closing_hour: float
    slot_hours: float

    @classmethod
    def from_settings(cls) -> "PlacementWindow":
        return cls(
            opening_hour=settings.day_start_hour,
            closing_hour=settings.day_end_hour,
            slot_hours=settings.slot_interval_hours,
        )

    @property
    def day_length(self) -> float:
        return self.closing_hour - self.opening_hour

    def time_slots(self) -> list[float]:
        count = int(math.floor((self.closing_hour - self.opening_hour) / self.slot_hours + 1e-9)) + 1
        return [self.opening_hour + index * self.slot_hours for index in range(count)]


@dataclass(slots=True)
class Placement:
    job: Job
    start_hour: float
    end_hour: float
    overflow: bool
    drive_minutes: int
    start_row: Optional[int] = None
    row_span: int = 0

    @property
    def on_grid(self) -> bool:
        return self.start_row is not None


def _grid_position(start: float, end: float, window: PlacementWindow) -> tuple[Optional[int], int]:
    slots = window.time_slots()
    start_row = next((index for index, slot in enumerate(slots) if slot >= start - GRID_TOLERANCE), None)
    if start_row is None:
        return None, 0
    rows_needed = math.ceil((end - start) / window.slot_hours - 1e-9)
    rows_left = len(slots) - start_row
    return start_row, min(max(1, rows_needed), rows_left)


def place_jobs(
    jobs: Sequence[Job],
    legs: Sequence[float],
    window: PlacementWindow | None = None,
) -> list[Placement]:
    """Lay out ``jobs`` in order starting at the opening hour.

    ``legs[i]`` is the drive (seconds) immediately preceding ``jobs[i]``. A
    pinned job starts exactly at its pin and ignores its leg. Jobs starting at
    or after the closing hour are flagged ``overflow`` and left off the grid;
    they still appear in the result. Jobs without a duration are reported in
    place, or at their pin when pinned, but neither drive nor occupy time.
    """
    window = window or PlacementWindow.from_settings()
    cursor = window.opening_hour
    placements: list[Placement] = []

    for index, job in enumerate(jobs):
        hours = job.duration_hours
        if hours <= 0:
            if job.pinned_start is not None:
                cursor = float(job.pinned_start)
            placements.append(
                Placement(job=job, start_hour=cursor, end_hour=cursor, overflow=cursor >= window.closing_hour, drive_minutes=0)
            )
            continue

        leg_seconds = legs[index] if index < len(legs) else 0.0
        if leg_seconds is None or not math.isfinite(leg_seconds):
            leg_seconds = 0.0

        if job.pinned_start is not None:
            cursor = float(job.pinned_start)
            drive_minutes = 0
        else:
            cursor += leg_seconds / 3600.0
            drive_minutes = round(leg_seconds / 60.0)

        start = cursor
        end = start + hours
        cursor = end

        overflow = start >= window.closing_hour
        placement = Placement(
            job=job,
            start_hour=start,
            end_hour=min(end, window.closing_hour),
            overflow=overflow,
            drive_minutes=drive_minutes,
        )
        if not overflow:
            placement.start_row, placement.row_span = _grid_position(start, placement.end_hour, window)
        placements.append(placement)

    return placements


def hour_to_label(hours: float) -> str:
    whole = int(math.floor(hours))
    minutes = int(round((hours - whole) * 60))
    if minutes == 60:
        whole, minutes = whole + 1, 0
    period = "PM" if whole >= 12 else "AM"
    display = whole - 12 if whole > 12 else (12 if whole == 0 else whole)
    return f"{display}:{minutes:02d} {period}"


def hour_to_clock(hours: float) -> str:
    """``HH:MM:00`` string for a decimal hour."""
    whole = int(math.floor(hours))
    minutes = int(round((hours - whole) * 60))
    if minutes == 60:
        whole, minutes = whole + 1, 0
    return f"{whole:02d}:{minutes:02d}:00"


def clock_to_hour(value: str | None) -> Optional[float]:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a decimal hour."""
    if not value:
        return None
    parts = str(value).strip().split(":")
    try:
        hours = int(parts[0])
        minutes = int(parts[1]) if len(parts) > 1 else 0
        seconds = int(float(parts[2])) if len(parts) > 2 else 0
    except ValueError:
        return None
    return hours + minutes / 60.0 + seconds / 3600.0


def format_drive_time(seconds: float | None) -> str:
    if seconds is None or seconds < 0:
        return "-"
    total_minutes = round(seconds / 60)
    if total_minutes < 60:
        return f"{total_minutes} min"
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes} min" if minutes else f"{hours}h"
