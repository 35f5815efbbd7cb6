"""Flights provider: official Amadeus Python SDK.
Uses the test environment by default (free, no billing).
"""
import asyncio

from amadeus import Client, ResponseError

from tripchat.config import settings
from tripchat.errors import UpstreamFetchError

TOPIC = "flights"

_client: Client | None = None


def get_amadeus_client() -> Client:
    global _client
    if _client is None:
        if not (settings.amadeus_client_id and settings.amadeus_client_secret):
            raise UpstreamFetchError(TOPIC, "Amadeus API not configured")
        _client = Client(
            client_id=settings.amadeus_client_id,
            client_secret=settings.amadeus_client_secret,
            hostname=settings.amadeus_hostname,
        )
    return _client


def _summarize_offer(offer: dict) -> dict:
    price = offer.get("price", {})
    airline = (offer.get("validatingAirlineCodes") or ["?"])[0]
    legs = []
    for itinerary in offer.get("itineraries", []):
        segments = itinerary.get("segments", [])
        first_seg = segments[0] if segments else {}
        last_seg = segments[-1] if segments else {}
        legs.append({
            "departure": first_seg.get("departure", {}).get("at", "?"),
            "arrival": last_seg.get("arrival", {}).get("at", "?"),
            "duration": itinerary.get("duration", "PT?H").replace("PT", "").lower(),
            "stops": max(len(segments) - 1, 0),
        })
    return {
        "price": f"{price.get('grandTotal', '?')} {price.get('currency', 'USD')}",
        "airline_code": airline,
        "legs": legs,
    }


def _search(params: dict) -> dict:
    origin = (params.get("origin") or "").upper().strip()
    destination = (params.get("destination") or "").upper().strip()
    departure_date = params.get("departure_date") or params.get("date")
    if not (origin and destination and departure_date):
        raise UpstreamFetchError(TOPIC, "origin, destination and departure_date are required")

    query = {
        "originLocationCode": origin,
        "destinationLocationCode": destination,
        "departureDate": departure_date,
        "adults": int(params.get("adults") or 1),
        "max": int(params.get("max_results") or 3),
        "currencyCode": "USD",
    }
    if params.get("return_date"):
        query["returnDate"] = params["return_date"]

    try:
        response = get_amadeus_client().shopping.flight_offers_search.get(**query)
    except ResponseError as e:
        raise UpstreamFetchError(TOPIC, f"Amadeus API error: {e}") from e

    offers = [_summarize_offer(offer) for offer in response.data or []]
    return {"origin": origin, "destination": destination, "flights": offers, "count": len(offers)}


async def fetch_flights(params: dict) -> dict:
    """Params: ``origin``/``destination`` IATA codes, ``departure_date``,
    optional ``return_date``, ``adults``, ``max_results``.

    The SDK is blocking, so the search runs in a worker thread.
    """
    return await asyncio.to_thread(_search, params)
