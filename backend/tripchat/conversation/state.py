from enum import Enum
from typing import Any
from typing_extensions import TypedDict


class Phase(str, Enum):
    """Closed set of conversation phases. The machine starts in IDLE."""
    IDLE = "Idle"
    ANALYZING_INPUT = "AnalyzingInput"
    FETCHING_EXTERNAL_DATA = "FetchingExternalData"
    AWAITING_USER_TRIP_CONFIRMATION = "AwaitingUserTripConfirmation"
    GENERATING_ITINERARY = "GeneratingItinerary"
    DISPLAYING_ITINERARY = "DisplayingItinerary"
    EDITING_ITINERARY = "EditingItinerary"
    ADVISORY_MODE = "AdvisoryMode"
    TRIP_BUILDING_MODE = "TripBuildingMode"
    AWAITING_MISSING_INFO = "AwaitingMissingInfo"
    ITINERARY_ADVICE_MODE = "ItineraryAdviceMode"


# Requests that would restart drafting while a finished itinerary is shown.
REDIRECT_WHEN_ITINERARY_HELD = frozenset({
    Phase.TRIP_BUILDING_MODE,
    Phase.ANALYZING_INPUT,
    Phase.ADVISORY_MODE,
    Phase.GENERATING_ITINERARY,
})

# Phases in which the completion watcher validates the draft.
DRAFTING_PHASES = frozenset({Phase.TRIP_BUILDING_MODE, Phase.AWAITING_MISSING_INFO})

# Phases the completion watcher never pulls the conversation out of.
NO_AUTO_CONFIRM_PHASES = frozenset({
    Phase.AWAITING_USER_TRIP_CONFIRMATION,
    Phase.GENERATING_ITINERARY,
    Phase.DISPLAYING_ITINERARY,
})

# Context flags understood by transition().
FORCE_NEW_ITINERARY = "force_new_itinerary"
BYPASS_MISSING_FIELDS = "bypass_missing_fields"
FORCE_EXTERNAL_FETCH = "force_external_fetch"


class TripDraft(TypedDict, total=False):
    """Trip details collected so far. Always replaced, never mutated in place."""
    id: str
    vacation_location: str | None
    country: str | None
    duration: int | None
    dates: dict[str, Any] | str | None  # {"from", "to"} | {"from", "duration"} | "A to B"
    is_tomorrow: bool
    budget: str | None
    budget_level: str | None  # legacy spelling
    travelers: int | None
    preferences: dict[str, Any]
    constraints: dict[str, Any]
    notes: str


class CompletedTrip(TypedDict, total=False):
    """A draft promoted after a successful itinerary generation."""
    id: str
    chat_id: str | None
    draft: TripDraft
    itinerary: str
    structured_itinerary: dict[str, Any] | None
    metadata: dict[str, Any]
    itinerary_id: str | None
