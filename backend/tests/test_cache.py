import asyncio

import pytest

from tripchat.errors import UpstreamFetchError
from tripchat.services.cache import ExternalDataCache, make_cache_key
from tripchat.services.external_data import ExternalDataService


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_key_ignores_param_order():
    a = make_cache_key("weather", {"location": "Paris", "date": "2025-06-01"})
    b = make_cache_key("weather", {"date": "2025-06-01", "location": "Paris"})
    assert a == b == "weather:date=2025-06-01&location=paris"


def test_key_normalizes_location_case_and_whitespace():
    assert make_cache_key("hotels", {"city": "  New York "}) == make_cache_key("hotels", {"city": "new york"})
    # Only location-like params are case-folded.
    assert make_cache_key("hotels", {"category": "Museum"}) != make_cache_key("hotels", {"category": "museum"})


def test_key_null_guard():
    assert make_cache_key(None, {"location": "Paris"}) is None
    assert make_cache_key("", {"location": "Paris"}) is None
    assert make_cache_key("weather", None) is None


def test_key_renders_values():
    key = make_cache_key("flights", {"nonstop": True, "filters": {"b": 1, "a": 2}, "skip": None})
    assert key == 'flights:filters={"a":2,"b":1}&nonstop=true'


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ExternalDataCache(ttl_seconds=300, clock=clock)
    cache.set("weather:location=paris", {"temp": 20})

    clock.advance(299)
    assert cache.get("weather:location=paris") == {"temp": 20}

    clock.advance(2)
    assert cache.get("weather:location=paris") is ExternalDataCache.MISS
    assert "weather:location=paris" not in cache


def test_per_entry_ttl_override():
    clock = FakeClock()
    cache = ExternalDataCache(ttl_seconds=300, clock=clock)
    cache.set("k", "v", ttl=10)
    clock.advance(11)
    assert cache.get("k") is ExternalDataCache.MISS


def test_null_key_is_never_stored():
    cache = ExternalDataCache()
    cache.set(None, {"x": 1})
    assert len(cache) == 0
    assert cache.get(None) is ExternalDataCache.MISS


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_upstream_call():
    cache = ExternalDataCache()
    calls = 0
    release = asyncio.Event()

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"forecast": "sunny"}

    tasks = [asyncio.create_task(cache.get_or_fetch("weather:location=paris", fetch)) for _ in range(5)]
    await asyncio.sleep(0)
    assert cache.in_flight("weather:location=paris")
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert results == [{"forecast": "sunny"}] * 5
    assert not cache.in_flight("weather:location=paris")
    assert cache.get("weather:location=paris") == {"forecast": "sunny"}


@pytest.mark.asyncio
async def test_failures_reach_every_joiner_and_are_not_cached():
    cache = ExternalDataCache()
    calls = 0
    release = asyncio.Event()

    async def failing_fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        raise UpstreamFetchError("weather", "boom")

    tasks = [asyncio.create_task(cache.get_or_fetch("k", failing_fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls == 1
    assert all(isinstance(r, UpstreamFetchError) for r in results)
    assert "k" not in cache

    async def ok_fetch():
        return "fresh"

    assert await cache.get_or_fetch("k", ok_fetch) == "fresh"


@pytest.mark.asyncio
async def test_service_routes_through_cache_with_topic_ttl():
    clock = FakeClock()
    calls = []

    async def weather(params):
        calls.append(params)
        return {"location": params["location"]}

    service = ExternalDataService(
        {"weather": weather},
        cache=ExternalDataCache(ttl_seconds=300, clock=clock),
        ttl_overrides={"weather": 60},
    )
    await service.fetch("weather", {"location": "Paris"})
    await service.fetch("weather", {"location": "paris "})
    assert len(calls) == 1

    clock.advance(61)
    await service.fetch("weather", {"location": "Paris"})
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_service_rejects_unknown_topic():
    service = ExternalDataService({}, cache=ExternalDataCache())
    with pytest.raises(UpstreamFetchError) as exc_info:
        await service.fetch("currency", {"from": "USD"})
    assert exc_info.value.topic == "currency"


def test_set_sweeps_expired_entries():
    clock = FakeClock()
    cache = ExternalDataCache(ttl_seconds=300, clock=clock)
    for i in range(1000):
        cache.set(f"weather:location=city-{i}", {"i": i})

    clock.advance(301)
    cache.set("weather:location=paris", {"temp": 20})

    assert len(cache) == 1
    assert "weather:location=paris" in cache


@pytest.mark.asyncio
async def test_cancelled_first_caller_does_not_cancel_joiners():
    cache = ExternalDataCache()
    calls = 0
    release = asyncio.Event()

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"forecast": "sunny"}

    first = asyncio.create_task(cache.get_or_fetch("weather:location=paris", fetch))
    second = asyncio.create_task(cache.get_or_fetch("weather:location=paris", fetch))
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert cache.in_flight("weather:location=paris")

    release.set()
    assert await second == {"forecast": "sunny"}
    assert calls == 1
    assert cache.get("weather:location=paris") == {"forecast": "sunny"}
