import httpx
import pytest

from src.dispatch.services.geocoding import GeocodeCache, Geocoder, NominatimGeocodingProvider, normalize_address

from conftest import DummyGeocodingProvider

KNOWN = {"1 Main St, Lebanon, TN": (36.2, -86.3)}


def test_cache_keys_are_normalized() -> None:
    cache = GeocodeCache()
    cache.remember("  1 Main St ", (36.2, -86.3))

    assert "1 MAIN ST" in cache
    assert cache.get("1 main st") == (36.2, -86.3)
    assert normalize_address(None) == ""


def test_cache_entries_are_never_overwritten() -> None:
    cache = GeocodeCache()
    cache.remember("Nowhere", None)
    assert cache.remember("nowhere", (1.0, 2.0)) is None
    assert cache.get("Nowhere") is None
    assert cache.stats() == {"size": 1, "not_found": 1, "entries": ["nowhere"]}
    assert cache.remember("   ", (1.0, 2.0)) is None
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_not_found_is_cached() -> None:
    provider = DummyGeocodingProvider(KNOWN)
    geocoder = Geocoder(provider=provider, cache=GeocodeCache())

    assert await geocoder.geocode("Nowhere") is None
    assert await geocoder.geocode("nowhere ") is None
    assert provider.calls == ["Nowhere"]


@pytest.mark.asyncio
async def test_outage_is_not_cached_and_reported() -> None:
    messages = []
    provider = DummyGeocodingProvider(KNOWN, failing={"1 Main St, Lebanon, TN"})
    geocoder = Geocoder(provider=provider, cache=GeocodeCache(), on_failure=messages.append)

    assert await geocoder.geocode("1 Main St, Lebanon, TN") is None
    assert "1 Main St, Lebanon, TN" not in geocoder.cache
    assert len(messages) == 1

    provider.failing.clear()
    assert await geocoder.geocode("1 Main St, Lebanon, TN") == (36.2, -86.3)
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_blank_address_is_skipped() -> None:
    provider = DummyGeocodingProvider(KNOWN)
    geocoder = Geocoder(provider=provider, cache=GeocodeCache())
    assert await geocoder.geocode("  ") is None
    assert await geocoder.geocode(None) is None
    assert provider.calls == []


@pytest.mark.asyncio
async def test_geocode_many_preserves_order_and_reports_batches() -> None:
    known = {f"{i} Elm St": (36.0 + i / 100, -86.0) for i in range(12)}
    geocoder = Geocoder(provider=DummyGeocodingProvider(known), cache=GeocodeCache())
    progress = []

    addresses = [f"{i} Elm St" for i in range(12)] + ["Unknown"]
    results = await geocoder.geocode_many(addresses, on_progress=lambda done, total: progress.append((done, total)))

    assert results[:12] == [(36.0 + i / 100, -86.0) for i in range(12)]
    assert results[12] is None
    assert progress == [(10, 13), (13, 13)]


@pytest.mark.asyncio
async def test_depot_resolution_tries_country_suffix() -> None:
    provider = DummyGeocodingProvider({"HQ, USA": (36.1, -86.1)})
    geocoder = Geocoder(provider=provider, cache=GeocodeCache())

    assert await geocoder.resolve_depot("HQ", fallback=(0.0, 0.0)) == (36.1, -86.1)
    assert provider.calls == ["HQ", "HQ, USA"]

    assert await geocoder.resolve_depot("Elsewhere", fallback=(1.0, 2.0)) == (1.0, 2.0)
    assert await geocoder.resolve_depot("", fallback=(1.0, 2.0)) == (1.0, 2.0)


@pytest.mark.asyncio
async def test_nominatim_provider_parses_first_result() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        seen["agent"] = request.headers.get("user-agent")
        return httpx.Response(200, json=[{"lat": "36.2081", "lon": "-86.2911"}])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = NominatimGeocodingProvider(url="http://geo.test/search", user_agent="dispatch-tests", client=client)
        assert await provider.lookup("2550 TN-109") == (36.2081, -86.2911)

    assert seen["params"] == {"q": "2550 TN-109", "format": "json", "limit": "1"}
    assert seen["agent"] == "dispatch-tests"


@pytest.mark.asyncio
async def test_nominatim_provider_empty_and_failing_responses() -> None:
    responses = iter([httpx.Response(200, json=[]), httpx.Response(500)])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = NominatimGeocodingProvider(url="http://geo.test/search", client=client)
        assert await provider.lookup("Nowhere") is None
        with pytest.raises(ConnectionError):
            await provider.lookup("Anywhere")
