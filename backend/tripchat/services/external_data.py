"""Routes topic requests to their provider through the shared response cache."""
import logging
from typing import Any, Awaitable, Callable

from tripchat.config import settings
from tripchat.errors import UpstreamFetchError
from tripchat.services.cache import ExternalDataCache

logger = logging.getLogger(__name__)

Provider = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class ExternalDataService:
    def __init__(
        self,
        providers: dict[str, Provider],
        cache: ExternalDataCache | None = None,
        ttl_overrides: dict[str, float] | None = None,
    ):
        self.providers = dict(providers)
        self.cache = cache or ExternalDataCache(ttl_seconds=settings.cache_ttl_seconds)
        self.ttl_overrides = dict(settings.cache_ttl_overrides if ttl_overrides is None else ttl_overrides)

    async def fetch(self, topic: str, params: dict[str, Any]) -> dict[str, Any]:
        provider = self.providers.get(topic)
        if provider is None:
            raise UpstreamFetchError(topic, "No provider registered for this topic")

        key = self.cache.key(topic, params)
        logger.info("[ExternalData] %s request, cache key %s", topic, key)
        return await self.cache.get_or_fetch(
            key,
            lambda: provider(params),
            ttl=self.ttl_overrides.get(topic),
        )


def default_providers() -> dict[str, Provider]:
    from tripchat.tools.flights import fetch_flights
    from tripchat.tools.places import fetch_attractions, fetch_hotels
    from tripchat.tools.weather import fetch_weather

    return {
        "weather": fetch_weather,
        "hotels": fetch_hotels,
        "attractions": fetch_attractions,
        "flights": fetch_flights,
    }
