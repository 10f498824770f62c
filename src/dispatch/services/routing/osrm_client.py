"""Travel-time providers: OSRM table service and a haversine estimator."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

import httpx

from ...config import settings
from ..geospatial import haversine_km

logger = logging.getLogger(__name__)

Point = tuple[float, float]
DurationBlock = list[list[Optional[float]]]


class TravelTimeProvider(Protocol):
    async def durations(self, origins: Sequence[Point], destinations: Sequence[Point]) -> DurationBlock:
        """Seconds from every origin to every destination (None when unreachable).

        Raises ConnectionError or ValueError when the request fails as a whole.
        """
        ...


class OSRMClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.base_url = base_url or settings.osrm_base_url
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.base_url = self.base_url.rstrip("/")
        self.profile = profile or settings.osrm_profile
        self.timeout = timeout if timeout is not None else settings.osrm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds

    def _get_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))

    async def durations(self, origins: Sequence[Point], destinations: Sequence[Point]) -> DurationBlock:
        """One OSRM table request for an origin block against a destination block."""
        if not origins or not destinations:
            raise ValueError("At least one origin and one destination are required for OSRM table.")

        coordinates = [*origins, *destinations]
        coordinate_str = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        params = {
            "annotations": "duration",
            "sources": ";".join(str(i) for i in range(len(origins))),
            "destinations": ";".join(str(i) for i in range(len(origins), len(coordinates))),
        }
        url = f"{self.base_url}/table/v1/{self.profile}/{coordinate_str}"

        async with self._get_client() as client:
            attempt = 0
            while True:
                try:
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    data = response.json()
                    if data.get("code", "Ok") != "Ok" or "durations" not in data:
                        raise ValueError(f"OSRM table request failed: {data.get('message', 'missing durations')}")
                    return data["durations"]
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 414:
                        raise ValueError(
                            f"OSRM request URL too large ({len(coordinates)} coordinates). "
                            f"Reduce the matrix chunk size."
                        ) from e
                    attempt += 1
                    if attempt > self.max_retries:
                        raise ConnectionError(f"OSRM returned HTTP {e.response.status_code}") from e
                    await asyncio.sleep(self.backoff_seconds * attempt)
                except (httpx.TimeoutException, httpx.NetworkError) as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise ConnectionError(
                            f"Failed to connect to OSRM service at {self.base_url}: {e}"
                        ) from e
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.debug(
                        "OSRM network error, retrying in %.1fs (attempt %d/%d): %s",
                        wait_time, attempt, self.max_retries, e,
                    )
                    await asyncio.sleep(wait_time)
                except (httpx.HTTPError, ValueError):
                    attempt += 1
                    if attempt > self.max_retries:
                        raise
                    await asyncio.sleep(self.backoff_seconds * attempt)


class HaversineTravelTimeProvider:
    """Straight-line estimate at a constant average speed.

    Used when no OSRM service is configured.
    """

    def __init__(self, average_speed_kmh: float | None = None) -> None:
        self.average_speed_kmh = average_speed_kmh or settings.fallback_speed_kmh

    async def durations(self, origins: Sequence[Point], destinations: Sequence[Point]) -> DurationBlock:
        block: DurationBlock = []
        for lat1, lon1 in origins:
            row: list[Optional[float]] = []
            for lat2, lon2 in destinations:
                distance_km = haversine_km(lat1, lon1, lat2, lon2)
                row.append(distance_km / self.average_speed_kmh * 3600.0)
            block.append(row)
        return block


def default_travel_time_provider() -> TravelTimeProvider:
    if settings.osrm_base_url:
        return OSRMClient()
    logger.info("OSRM base URL not configured; using haversine travel-time estimates")
    return HaversineTravelTimeProvider()


async def check_health(base_url: str | None = None) -> bool:
    """Check OSRM service health by making a minimal table request."""
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    try:
        test_coords = "-86.2911,36.2081;-86.7816,36.1627"
        url = f"{base.rstrip('/')}/table/v1/{settings.osrm_profile}/{test_coords}"
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(url, params={"annotations": "duration"})
            response.raise_for_status()
            data = response.json()
        return "durations" in data and isinstance(data.get("durations"), list)
    except (httpx.HTTPError, ValueError):
        return False
