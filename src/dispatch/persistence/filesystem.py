"""File-based persistence: the local cache of schedule documents."""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Optional

from ..config import settings

logger = logging.getLogger(__name__)


class FileStorage:
    """Thin wrapper around the data root for storing schedule JSON per date."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = (root or settings.data_root).resolve()
        self.schedule_root = self.root / "schedules"
        self.schedule_root.mkdir(parents=True, exist_ok=True)

    def schedule_path(self, schedule_date: date | str) -> Path:
        return self.schedule_root / f"dispatch-{str(schedule_date)}.json"

    def write_json(self, path: Path, data: Any, *, indent: int = 2) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=indent)
        tmp_path.replace(path)

    def read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None

    def write_schedule(self, schedule_date: date | str, document: dict[str, Any]) -> Path:
        path = self.schedule_path(schedule_date)
        self.write_json(path, document)
        return path

    def read_schedule(self, schedule_date: date | str) -> Optional[dict[str, Any]]:
        data = self.read_json(self.schedule_path(schedule_date))
        return data if isinstance(data, dict) else None

    def cached_dates(self) -> list[str]:
        prefix = "dispatch-"
        return sorted(path.stem[len(prefix):] for path in self.schedule_root.glob(f"{prefix}*.json"))
