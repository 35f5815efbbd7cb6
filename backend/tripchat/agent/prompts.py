ITINERARY_SYSTEM_PROMPT = """You are a specialized travel itinerary planner. Create detailed, practical day-by-day itineraries from the trip details you are given.

## Your Itineraries Must
- Be logistically feasible and account for travel time between places
- Match the requested budget level and any special requirements
- Name specific, real attractions, restaurants and neighbourhoods
- Include opening hours, reservation or ticket needs where relevant
- Balance activities with rest time

## Response Format
- Markdown only
- One heading per day, written exactly as `## Day N: <theme>`
- Under each day, bullet points for morning, lunch, afternoon and evening, plus a transport tip
- No preamble before Day 1 and no closing remarks after the last day
"""

CLASSIFIER_SYSTEM_PROMPT = """You route messages for a conversational trip-planning assistant.

Classify the user's latest message into exactly one intent:
- **Weather-Request**: asks about weather anywhere, on any date
- **Find-Hotel**: asks for hotels or accommodation
- **Find-Attractions**: asks for attractions, sights or things to do
- **Find-Flights**: asks for flights
- **Trip-Building**: gives or changes trip details (destination, dates, duration, budget, travelers, preferences)
- **Confirm-Trip**: confirms the trip summary and wants the itinerary generated
- **Cancel-Trip**: wants to drop the trip being planned
- **Start-New-Trip**: explicitly wants to plan a different, new trip
- **Edit-Itinerary**: wants to change an itinerary that was already generated
- **Itinerary-Advice**: asks a question about an itinerary that was already generated
- **General**: anything else

## Extracted Fields
Return only the fields the message actually states, using these names:
- Trip fields: `vacation_location`, `country`, `duration` (days, integer), `dates` (`{"from": "YYYY-MM-DD", "to": "YYYY-MM-DD"}`), `is_tomorrow`, `budget` (low | moderate | high), `travelers` (integer), `preferences` (object), `constraints` (object), `notes`
- Lookup fields: `location`, `city`, `country`, `date` (YYYY-MM-DD), `budget_level`, `category`, `origin`, `destination`, `departure_date`, `return_date`, `adults`
- Set `bypass_missing_fields` to true when a lookup is fully specified by the conversation so far (for example a weather question about one day of the trip already planned).

Never invent values the user did not give.
"""


def build_itinerary_prompt(draft: dict) -> str:
    """User prompt describing the trip to the itinerary generator."""
    if not draft:
        return "Please provide trip details to generate an itinerary."

    dates = draft.get("dates")
    if isinstance(dates, dict) and dates.get("from"):
        dates_text = f"{dates['from']} to {dates.get('to') or 'open'}"
    elif isinstance(dates, str):
        dates_text = dates
    else:
        dates_text = "Not specified"
    constraints = draft.get("constraints") or {}
    preferences = draft.get("preferences") or {}

    lines = [
        "Generate a detailed day-by-day itinerary for a trip with the following details:",
        "",
        f"DESTINATION: {draft.get('vacation_location') or 'Not specified'}",
        f"DURATION: {draft.get('duration') if draft.get('duration') is not None else 'Not specified'} days",
        f"DATES: {dates_text}",
        f"BUDGET: {draft.get('budget') or constraints.get('budget') or 'Not specified'}",
        f"TRAVELERS: {draft.get('travelers') or 'Not specified'}",
    ]
    for key, value in preferences.items():
        lines.append(f"{key.replace('_', ' ').upper()}: {value}")
    for key, value in constraints.items():
        if key == "budget":
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"{key.replace('_', ' ').upper()}: {value}")
    if draft.get("notes"):
        lines.append(f"ADDITIONAL NOTES: {draft['notes']}")
    return "\n".join(lines)
