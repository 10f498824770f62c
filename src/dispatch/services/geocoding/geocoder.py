"""Forward geocoding of job addresses with a shared cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol, Sequence

import httpx

from ...config import settings
from .cache import Coordinates, GeocodeCache, get_geocode_cache, normalize_address

logger = logging.getLogger(__name__)

GEOCODE_BATCH_SIZE = 10


class GeocodingProvider(Protocol):
    async def lookup(self, address: str) -> Optional[Coordinates]:
        """Return coordinates, None when the address is unknown, or raise ConnectionError."""
        ...


class NominatimGeocodingProvider:
    """Nominatim ``/search`` client (one result, JSON)."""

    def __init__(
        self,
        url: str | None = None,
        user_agent: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url or settings.geocoder_url
        self.user_agent = user_agent or settings.geocoder_user_agent
        self.timeout = timeout if timeout is not None else settings.geocoder_timeout_seconds
        self._client = client

    async def lookup(self, address: str) -> Optional[Coordinates]:
        params = {"q": address, "format": "json", "limit": "1"}
        headers = {"User-Agent": self.user_agent}
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        try:
            response = await client.get(self.url, params=params, headers=headers)
            response.raise_for_status()
            results = response.json()
        except httpx.HTTPError as exc:
            raise ConnectionError(f"Geocoding service unavailable: {exc}") from exc
        except ValueError as exc:
            raise ConnectionError(f"Geocoding service returned invalid JSON: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if not isinstance(results, list) or not results:
            return None
        try:
            first = results[0]
            return (float(first["lat"]), float(first["lon"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Unexpected geocoder payload for %r: %s", address, results[0])
            return None


class Geocoder:
    """Resolve addresses through a provider, consulting the cache first.

    Provider outages degrade to ``None`` and are reported through
    ``on_failure``; they are not cached, so a later call can still succeed.
    """

    def __init__(
        self,
        provider: GeocodingProvider | None = None,
        cache: GeocodeCache | None = None,
        on_failure: Callable[[str], None] | None = None,
    ) -> None:
        self.provider = provider or NominatimGeocodingProvider()
        self.cache = cache if cache is not None else get_geocode_cache()
        self.on_failure = on_failure

    async def geocode(self, address: str | None) -> Optional[Coordinates]:
        key = normalize_address(address)
        if not key:
            return None
        if key in self.cache:
            return self.cache.get(key)

        try:
            coordinates = await self.provider.lookup(address.strip())
        except ConnectionError as exc:
            logger.warning("Geocoding failed for %r: %s", address, exc)
            if self.on_failure:
                self.on_failure(f"Could not geocode '{address.strip()}': {exc}")
            return None

        if coordinates is None:
            logger.info("No geocoding result for %r", address)
        return self.cache.remember(key, coordinates)

    async def geocode_many(
        self,
        addresses: Sequence[str | None],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[Optional[Coordinates]]:
        """Geocode in batches of ``GEOCODE_BATCH_SIZE``, preserving input order."""

        results: list[Optional[Coordinates]] = []
        total = len(addresses)
        for start in range(0, total, GEOCODE_BATCH_SIZE):
            batch = addresses[start : start + GEOCODE_BATCH_SIZE]
            results.extend(await asyncio.gather(*(self.geocode(address) for address in batch)))
            if on_progress:
                on_progress(min(start + GEOCODE_BATCH_SIZE, total), total)
        return results

    async def resolve_depot(
        self,
        address: str | None = None,
        fallback: Coordinates | None = None,
    ) -> Coordinates:
        """Depot coordinates: as given, then with the country suffix, then the fallback."""

        depot = (address if address is not None else settings.depot_address).strip()
        fallback = fallback or (settings.depot_latitude, settings.depot_longitude)
        if not depot:
            return fallback

        coordinates = await self.geocode(depot)
        suffix = settings.geocoder_country_suffix
        if coordinates is None and suffix and not depot.endswith(suffix):
            coordinates = await self.geocode(depot + suffix)
        if coordinates is None:
            logger.warning("Depot %r could not be geocoded; using fallback %s", depot, fallback)
            return fallback
        return coordinates
