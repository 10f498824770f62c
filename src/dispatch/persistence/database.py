"""Database persistence for dispatch schedules, rosters and technician records."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..db.supabase import get_supabase_client

logger = logging.getLogger(__name__)

SCHEDULES_TABLE = "dispatch_schedules"
TECHNICIAN_TABLE = "job_schedules"
TEAMS_TABLE = "dispatch_teams"
JOBS_TABLE = "jobs"

PRE_SCHEDULED_STATUSES = ("scheduled", "confirmed")
PRE_SCHEDULED_SELECT = "*, jobs(id, job_number, status, customers(name), properties(address1, city, state))"


class PersistenceError(RuntimeError):
    """A write to the schedule repository failed."""


class SupabaseScheduleRepository:
    """Schedule storage backed by the Supabase tables listed in ``db.supabase``.

    Reads degrade to empty results when the database is unavailable; writes
    raise ``PersistenceError`` so callers can retry.
    """

    def __init__(self, client_factory: Callable[[], Any] | None = None) -> None:
        self._client_factory = client_factory or get_supabase_client

    @property
    def client(self) -> Any:
        return self._client_factory()

    @property
    def available(self) -> bool:
        return self.client is not None

    def load_schedule(self, schedule_date: str) -> Optional[dict[str, Any]]:
        """Row for ``schedule_date`` (``schedule_data``, ``finalized`` ...) or None."""
        supabase = self.client
        if not supabase:
            return None
        try:
            response = (
                supabase.table(SCHEDULES_TABLE).select("*").eq("schedule_date", schedule_date).limit(1).execute()
            )
        except Exception as e:
            logger.warning(f"Failed to load dispatch schedule for {schedule_date}: {e}")
            return None
        rows = response.data or []
        return rows[0] if rows else None

    def save_schedule(self, schedule_date: str, document: dict[str, Any], user_id: str | None = None) -> None:
        supabase = self.client
        if not supabase:
            raise PersistenceError("Supabase is not configured.")
        try:
            existing = supabase.table(SCHEDULES_TABLE).select("id").eq("schedule_date", schedule_date).limit(1).execute()
            if existing.data:
                (
                    supabase.table(SCHEDULES_TABLE)
                    .update({"schedule_data": document, "updated_by": user_id})
                    .eq("id", existing.data[0]["id"])
                    .execute()
                )
            else:
                supabase.table(SCHEDULES_TABLE).insert(
                    {
                        "schedule_date": schedule_date,
                        "schedule_data": document,
                        "created_by": user_id,
                        "updated_by": user_id,
                    }
                ).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to save dispatch schedule for {schedule_date}: {e}") from e

    def mark_finalized(self, schedule_date: str, user_id: str | None = None) -> None:
        supabase = self.client
        if not supabase:
            raise PersistenceError("Supabase is not configured.")
        try:
            (
                supabase.table(SCHEDULES_TABLE)
                .update({"finalized": True, "updated_by": user_id})
                .eq("schedule_date", schedule_date)
                .execute()
            )
        except Exception as e:
            raise PersistenceError(f"Failed to finalize dispatch schedule for {schedule_date}: {e}") from e

    def replace_technician_records(self, schedule_date: str, records: list[dict[str, Any]]) -> int:
        """Replace the date's technician schedule rows; returns how many were written."""
        supabase = self.client
        if not supabase:
            raise PersistenceError("Supabase is not configured.")
        try:
            supabase.table(TECHNICIAN_TABLE).delete().eq("scheduled_date", schedule_date).execute()
            if records:
                supabase.table(TECHNICIAN_TABLE).insert(records).execute()
        except Exception as e:
            raise PersistenceError(f"Failed to write technician schedules for {schedule_date}: {e}") from e
        logger.info(f"Wrote {len(records)} technician schedule rows for {schedule_date}")
        return len(records)

    def load_range(self, start_date: str, end_date: str) -> list[dict[str, Any]]:
        supabase = self.client
        if not supabase:
            return []
        try:
            response = (
                supabase.table(SCHEDULES_TABLE)
                .select("*")
                .gte("schedule_date", start_date)
                .lte("schedule_date", end_date)
                .order("schedule_date")
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to load dispatch schedules {start_date}..{end_date}: {e}")
            return []
        return response.data or []

    def load_roster_rows(self) -> list[dict[str, Any]]:
        supabase = self.client
        if not supabase:
            return []
        try:
            response = supabase.table(TEAMS_TABLE).select("*").eq("active", True).order("sort_order").execute()
        except Exception as e:
            logger.warning(f"Failed to load dispatch teams, using defaults: {e}")
            return []
        return response.data or []

    def load_pre_scheduled(self, schedule_date: str) -> list[dict[str, Any]]:
        """Scheduled or confirmed appointments for the date, with job details embedded."""
        supabase = self.client
        if not supabase:
            return []
        try:
            response = (
                supabase.table(TECHNICIAN_TABLE)
                .select(PRE_SCHEDULED_SELECT)
                .eq("scheduled_date", schedule_date)
                .in_("status", list(PRE_SCHEDULED_STATUSES))
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to load pre-scheduled items for {schedule_date}: {e}")
            return []
        return response.data or []

    def lookup_job(self, job_number: str) -> Optional[dict[str, Any]]:
        """Job record by number as ``{id, job_number, customer, address}``."""
        supabase = self.client
        if not supabase or not job_number:
            return None
        try:
            response = (
                supabase.table(JOBS_TABLE)
                .select("id, job_number, customer_name, property_address")
                .ilike("job_number", job_number)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to look up job {job_number}: {e}")
            return None
        rows = response.data or []
        if not rows:
            return None
        row = rows[0]
        return {
            "id": row.get("id"),
            "job_number": row.get("job_number"),
            "customer": row.get("customer_name") or "",
            "address": row.get("property_address") or "",
        }
