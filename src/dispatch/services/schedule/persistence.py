"""Schedule persistence: local JSON cache, remote repository and debounced autosave."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from ...config import settings
from ...persistence.database import PersistenceError, SupabaseScheduleRepository
from ...persistence.filesystem import FileStorage

logger = logging.getLogger(__name__)


class ScheduleRepository(Protocol):
    @property
    def available(self) -> bool: ...

    def load_schedule(self, schedule_date: str) -> Optional[dict[str, Any]]: ...

    def save_schedule(self, schedule_date: str, document: dict[str, Any], user_id: str | None = None) -> None: ...

    def mark_finalized(self, schedule_date: str, user_id: str | None = None) -> None: ...

    def replace_technician_records(self, schedule_date: str, records: list[dict[str, Any]]) -> int: ...

    def load_range(self, start_date: str, end_date: str) -> list[dict[str, Any]]: ...

    def load_roster_rows(self) -> list[dict[str, Any]]: ...

    def load_pre_scheduled(self, schedule_date: str) -> list[dict[str, Any]]: ...

    def lookup_job(self, job_number: str) -> Optional[dict[str, Any]]: ...


@dataclass(slots=True)
class LoadedDocument:
    document: dict[str, Any]
    source: str
    finalized: bool = False


def date_key(value: date | str) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value)).isoformat()


class SchedulePersistence:
    """Reads and writes schedule documents.

    Writes always go to the local cache first, so an edit survives a failed
    remote write. Reads prefer the repository, then the local cache.
    """

    def __init__(self, repository: ScheduleRepository | None = None, storage: FileStorage | None = None) -> None:
        self.repository = repository or SupabaseScheduleRepository()
        self.storage = storage or FileStorage()

    def load(self, schedule_date: date | str) -> Optional[LoadedDocument]:
        key = date_key(schedule_date)
        if self.repository.available:
            row = self.repository.load_schedule(key)
            if row and isinstance(row.get("schedule_data"), dict):
                return LoadedDocument(document=row["schedule_data"], source="database", finalized=bool(row.get("finalized")))
        cached = self.storage.read_schedule(key)
        if cached:
            return LoadedDocument(document=cached, source="cache", finalized=bool(cached.get("finalized")))
        return None

    async def save(self, schedule_date: date | str, document: dict[str, Any], user_id: str | None = None) -> str:
        """Persist ``document``; returns where it ended up ("database" or "cache").

        Raises PersistenceError when the remote write fails.
        """
        key = date_key(schedule_date)
        try:
            self.storage.write_schedule(key, document)
        except OSError as e:
            raise PersistenceError(f"Failed to write local schedule cache for {key}: {e}") from e
        if not self.repository.available:
            return "cache"
        await asyncio.to_thread(self.repository.save_schedule, key, document, user_id)
        return "database"

    def load_range(self, start: date, end: date) -> dict[str, dict[str, Any]]:
        """Documents per ISO date in ``[start, end]``; the local cache fills gaps."""
        documents: dict[str, dict[str, Any]] = {}
        if self.repository.available:
            for row in self.repository.load_range(start.isoformat(), end.isoformat()):
                data = row.get("schedule_data")
                if isinstance(data, dict) and row.get("schedule_date"):
                    documents[str(row["schedule_date"])] = data
        day = start
        while day <= end:
            key = day.isoformat()
            if key not in documents:
                cached = self.storage.read_schedule(key)
                if cached:
                    documents[key] = cached
            day += timedelta(days=1)
        return documents


class DebouncedAutosaver:
    """Coalesces bursts of edits into one save after a quiet period.

    ``version`` advances only after a successful save. A failed save keeps the
    autosaver dirty, so the next ``schedule()`` or ``flush()`` retries it.
    """

    def __init__(
        self,
        save: Callable[[], Awaitable[Any]],
        delay: float | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self._save = save
        self.delay = settings.autosave_debounce_seconds if delay is None else delay
        self.on_error = on_error
        self.version = 0
        self.dirty = False
        self.last_error: Optional[Exception] = None
        self._timer: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self) -> None:
        """Mark dirty and (re)start the quiet-period timer."""
        self.dirty = True
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the next flush() writes the change.
            return
        self._timer = loop.create_task(self._wait_and_save())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _wait_and_save(self) -> None:
        await asyncio.sleep(self.delay)
        # detach so a new edit re-arms a timer instead of cancelling this save
        self._timer = None
        await self._save_now()

    async def _save_now(self) -> bool:
        async with self._lock:
            if not self.dirty:
                return True
            self.dirty = False
            try:
                await self._save()
            except Exception as exc:
                self.dirty = True
                self.last_error = exc
                logger.warning("Autosave failed; will retry on the next change: %s", exc)
                if self.on_error:
                    self.on_error(exc)
                return False
            self.last_error = None
            self.version += 1
            return True

    async def flush(self) -> bool:
        """Save now if anything is pending; returns False when the save failed."""
        self._cancel_timer()
        return await self._save_now()

    async def save_now(self) -> bool:
        """Save immediately even when nothing changed since the last save."""
        self._cancel_timer()
        self.dirty = True
        return await self._save_now()

    async def close(self) -> bool:
        return await self.flush()
