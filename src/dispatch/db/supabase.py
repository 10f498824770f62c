"""Supabase client for the dispatch backend."""

import logging
from functools import lru_cache
from supabase import create_client, Client
from ..config import settings


@lru_cache()
def get_supabase_client() -> Client | None:
    """Get cached Supabase client instance.

    Returns:
        Supabase Client instance if configured, None otherwise.
        Note: This does not test the connection - schedule queries may still fail with network errors.
    """
    if not settings.supabase_url or not settings.supabase_key:
        logging.info("Supabase credentials not configured; schedules use the local cache only")
        return None

    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logging.error(f"Failed to create Supabase client: {e}")
        return None


# Tables used by the dispatch board:
#
# dispatch_schedules  schedule_date (unique), schedule_data (jsonb), created_by, updated_by
# job_schedules       technician_name, scheduled_date, scheduled_time, duration_minutes,
#                     status, notes, job_id, job_number, customer_name, address parts
# dispatch_teams      pm_name, pm_title, crew_name, color, sort_order, active
# jobs                id, job_number, customer_name, property_address
