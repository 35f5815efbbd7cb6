"""TTL response cache for slow external data providers.

Keys are built from the endpoint plus a normalized, sorted parameter string so
that equivalent requests collapse onto one entry. ``get_or_fetch`` adds the
singleflight guarantee: while a key is being populated, every other caller for
that key awaits the same upstream call instead of issuing its own.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60

# Values of these params are compared case-insensitively.
CASE_INSENSITIVE_PARAMS = frozenset({
    "location",
    "city",
    "country",
    "vacation_location",
    "destination",
    "region",
})

_MISS = object()


@dataclass
class CacheEntry:
    timestamp: float
    payload: Any
    ttl: float


def _normalize_value(name: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    text = str(value).strip()
    if name in CASE_INSENSITIVE_PARAMS:
        text = text.lower()
    return text


def make_cache_key(endpoint: str | None, params: dict[str, Any] | None) -> str | None:
    """Canonical ``endpoint:k1=v1&k2=v2`` key, or None to bypass the cache."""
    if not endpoint or params is None:
        return None
    normalized = {
        name.strip(): _normalize_value(name.strip(), value)
        for name, value in params.items()
        if value is not None
    }
    query = "&".join(f"{name}={normalized[name]}" for name in sorted(normalized))
    return f"{endpoint}:{query}"


def _retrieve_exception(task: asyncio.Task) -> None:
    # Marks a failure nobody awaited as handled.
    if not task.cancelled():
        task.exception()


class ExternalDataCache:
    """In-memory TTL cache with per-key singleflight population."""

    MISS = _MISS

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    key = staticmethod(make_cache_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str | None) -> Any:
        """Return the cached payload or ``ExternalDataCache.MISS``.

        Entries older than their TTL are evicted on read.
        """
        if key is None:
            return _MISS
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("[Cache] MISS %s", key)
            return _MISS
        age = self._clock() - entry.timestamp
        if age > entry.ttl:
            logger.info("[Cache] EXPIRED %s (age %.1fs)", key, age)
            del self._entries[key]
            return _MISS
        logger.debug("[Cache] HIT %s", key)
        return entry.payload

    def set(self, key: str | None, payload: Any, ttl: float | None = None) -> None:
        """Store ``payload`` under ``key`` and sweep out every expired entry."""
        if key is None:
            return
        self._evict_expired()
        if key in self._entries:
            logger.debug("[Cache] Replacing entry for %s", key)
        self._entries[key] = CacheEntry(
            timestamp=self._clock(),
            payload=payload,
            ttl=self.ttl_seconds if ttl is None else ttl,
        )

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.timestamp > entry.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("[Cache] Evicted %d expired entries", len(expired))

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def get_or_fetch(
        self,
        key: str | None,
        fetch: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Serve ``key`` from cache, joining or starting a single upstream call.

        A ``None`` key bypasses the cache entirely. Failures are not cached and
        are raised to every caller that joined the failing call.
        """
        if key is None:
            return await fetch()

        cached = self.get(key)
        if cached is not _MISS:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._populate(key, fetch, ttl))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
        else:
            logger.debug("[Cache] Joining in-flight request for %s", key)
        # The upstream call belongs to the cache; a cancelled caller only stops waiting.
        return await asyncio.shield(task)

    async def _populate(self, key: str, fetch: Callable[[], Awaitable[Any]], ttl: float | None) -> Any:
        try:
            payload = await fetch()
            self.set(key, payload, ttl=ttl)
            return payload
        finally:
            self._in_flight.pop(key, None)
