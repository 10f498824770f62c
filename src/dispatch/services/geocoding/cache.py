"""Append-only geocode cache shared by every geocoder in the process."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

Coordinates = tuple[float, float]


def normalize_address(address: str | None) -> str:
    return (address or "").strip().lower()


class GeocodeCache:
    """Address -> coordinates | not-found, keyed by normalized address.

    Entries are never overwritten or evicted: addresses do not move, and a
    negative result is remembered so the provider is not asked again.
    """

    def __init__(self) -> None:
        self._entries: dict[str, Optional[Coordinates]] = {}

    def __contains__(self, address: str) -> bool:
        return normalize_address(address) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, address: str) -> Optional[Coordinates]:
        return self._entries.get(normalize_address(address))

    def remember(self, address: str, coordinates: Optional[Coordinates]) -> Optional[Coordinates]:
        key = normalize_address(address)
        if not key:
            return None
        return self._entries.setdefault(key, coordinates)

    def stats(self) -> dict:
        misses = sum(1 for value in self._entries.values() if value is None)
        return {"size": len(self._entries), "not_found": misses, "entries": list(self._entries)}


@lru_cache()
def get_geocode_cache() -> GeocodeCache:
    """Process-wide cache instance; tests construct their own."""
    return GeocodeCache()
