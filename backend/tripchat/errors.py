"""Exception types shared across the conversation core and its collaborators."""


class TripChatError(Exception):
    """Base class for all tripchat failures."""


class UpstreamFetchError(TripChatError):
    """A data provider call failed or timed out."""

    def __init__(self, topic: str, message: str):
        super().__init__(f"{topic}: {message}")
        self.topic = topic
        self.message = message


class GenerationError(TripChatError):
    """The itinerary generator failed to return text."""


class PersistenceError(TripChatError):
    """Saving an itinerary or chat message failed."""


class ClassificationError(TripChatError):
    """The intent classifier could not interpret a user message."""
