"""Hotel and attraction providers: Google Places text search.
Docs: https://developers.google.com/maps/documentation/places/web-service/search-text
"""
import httpx

from tripchat.config import settings
from tripchat.conversation.merge import normalize_budget
from tripchat.errors import UpstreamFetchError

MAX_RESULTS = 5

_PRICE_FALLBACK = {"low": "$", "moderate": "$$", "high": "$$$"}


async def _text_search(topic: str, query: str, place_type: str) -> list[dict]:
    if not settings.google_places_api_key:
        raise UpstreamFetchError(topic, "Google Places API not configured")
    async with httpx.AsyncClient(
        base_url=settings.google_places_base_url,
        timeout=settings.provider_timeout_seconds,
    ) as client:
        try:
            resp = await client.get(
                "/textsearch/json",
                params={"query": query, "type": place_type, "key": settings.google_places_api_key},
            )
        except httpx.TimeoutException as e:
            raise UpstreamFetchError(topic, "Places request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(topic, f"Places request failed: {e}") from e

    if resp.status_code != 200:
        raise UpstreamFetchError(topic, f"Places API returned status {resp.status_code}")
    data = resp.json()
    status = data.get("status")
    if status not in ("OK", "ZERO_RESULTS"):
        raise UpstreamFetchError(topic, f"Places API error: {status}")
    return data.get("results", [])[:MAX_RESULTS]


def _location(params: dict, topic: str) -> tuple[str, str]:
    location = (params.get("location") or params.get("city") or "").strip()
    if not location:
        raise UpstreamFetchError(topic, f"Location is required for {topic} search")
    return location, (params.get("country") or "").strip()


async def fetch_hotels(params: dict) -> dict:
    """Params: ``location``, optional ``country``, optional ``budget_level``/``budget``."""
    location, country = _location(params, "hotels")
    budget = normalize_budget(params.get("budget_level") or params.get("budget")) or "moderate"
    query = f"{location} {country} {budget} hotels".replace("  ", " ").strip()
    places = await _text_search("hotels", query, "lodging")
    hotels = [
        {
            "name": place.get("name"),
            "rating": place.get("rating", "N/A"),
            "price_range": "$" * place["price_level"] if place.get("price_level") else _PRICE_FALLBACK[budget],
            "address": place.get("formatted_address") or f"{location}, {country}".strip(", "),
            "place_id": place.get("place_id"),
        }
        for place in places
    ]
    return {"location": location, "country": country or None, "budget_level": budget, "hotels": hotels}


async def fetch_attractions(params: dict) -> dict:
    """Params: ``location``, optional ``country``, optional ``category``."""
    location, country = _location(params, "attractions")
    category = (params.get("category") or "tourist_attraction").strip()
    query = f"{location} {country} {category}".replace("  ", " ").strip()
    places = await _text_search("attractions", query, category)
    attractions = [
        {
            "name": place.get("name"),
            "rating": place.get("rating", "N/A"),
            "address": place.get("formatted_address"),
            "types": place.get("types", []),
            "place_id": place.get("place_id"),
        }
        for place in places
    ]
    return {"location": location, "country": country or None, "category": category, "attractions": attractions}
