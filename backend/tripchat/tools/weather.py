"""Weather provider: OpenWeather current conditions and 5-day forecast.
Docs: https://openweathermap.org/api
"""
from datetime import date as date_cls, datetime, timezone

import httpx

from tripchat.config import settings
from tripchat.errors import UpstreamFetchError

TOPIC = "weather"


def _location_query(params: dict) -> str:
    location = (params.get("location") or params.get("city") or "").strip()
    if not location:
        raise UpstreamFetchError(TOPIC, "Location is required for weather data")
    country = (params.get("country") or "").strip()
    return f"{location},{country}" if country else location


def _summarize(entry: dict) -> dict:
    main = entry.get("main", {})
    weather = (entry.get("weather") or [{}])[0]
    return {
        "temperature": {
            "current": main.get("temp"),
            "min": main.get("temp_min"),
            "max": main.get("temp_max"),
            "feels_like": main.get("feels_like"),
        },
        "conditions": weather.get("main"),
        "description": weather.get("description"),
        "humidity": main.get("humidity"),
        "wind_speed": entry.get("wind", {}).get("speed"),
    }


async def fetch_weather(params: dict) -> dict:
    """Current weather when no future date is given, else that day's forecast.

    Params: ``location`` (or ``city``), optional ``country``, optional ``date``
    in YYYY-MM-DD format.
    """
    if not settings.openweather_api_key:
        raise UpstreamFetchError(TOPIC, "Weather API not configured")
    query = _location_query(params)
    today = date_cls.today().isoformat()
    target = params.get("date") or today

    async with httpx.AsyncClient(
        base_url=settings.openweather_base_url,
        timeout=settings.provider_timeout_seconds,
    ) as client:
        request_params = {"q": query, "appid": settings.openweather_api_key, "units": "metric"}
        try:
            if target == today:
                resp = await client.get("/weather", params=request_params)
            else:
                resp = await client.get("/forecast", params=request_params)
        except httpx.TimeoutException as e:
            raise UpstreamFetchError(TOPIC, "Weather request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(TOPIC, f"Weather request failed: {e}") from e

    if resp.status_code == 404:
        raise UpstreamFetchError(TOPIC, f"Location {query} not found")
    if resp.status_code != 200:
        raise UpstreamFetchError(TOPIC, f"Weather API returned status {resp.status_code}")
    data = resp.json()

    result = {
        "location": params.get("location") or params.get("city"),
        "country": params.get("country"),
        "date": target,
    }
    if target == today:
        result["forecast"] = _summarize(data)
        return result

    day_entries = [
        entry for entry in data.get("list", [])
        if datetime.fromtimestamp(entry["dt"], tz=timezone.utc).date().isoformat() == target
    ]
    if not day_entries:
        raise UpstreamFetchError(TOPIC, f"No forecast available for {target}")
    result["forecasts"] = [
        {"time": datetime.fromtimestamp(e["dt"], tz=timezone.utc).isoformat(), **_summarize(e)}
        for e in day_entries
    ]
    return result
