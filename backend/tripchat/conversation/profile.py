"""Per-topic memory of the last parameters the user asked about."""
import copy
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

CATEGORIES = (
    "weather",
    "hotels",
    "attractions",
    "flights",
    "local_events",
    "travel_restrictions",
    "currency",
    "general",
)

DEFAULT_PREFERENCES = {"language": "en", "units": "metric"}


class UserProfile:
    """Last-known parameters per topic, plus user preferences and meta.

    Updates are copy-on-write per category: changing ``weather`` builds a new
    ``weather`` record and leaves every other record object untouched.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._categories: dict[str, dict[str, Any]] = {}
        self.preferences: dict[str, Any] = dict(DEFAULT_PREFERENCES)
        self.meta: dict[str, Any] = {"last_intent": None}

    @staticmethod
    def _check(category: str) -> None:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown profile category: {category!r}")

    def get(self, category: str) -> dict[str, Any] | None:
        self._check(category)
        record = self._categories.get(category)
        return copy.deepcopy(record) if record is not None else None

    def update(self, category: str, params: dict[str, Any], intent: str | None = None) -> dict[str, Any]:
        """Merge ``params`` into ``category`` and stamp ``last_updated``."""
        self._check(category)
        previous = self._categories.get(category, {})
        record = {**previous, **copy.deepcopy(params or {}), "last_updated": self._clock()}
        self._categories = {**self._categories, category: record}
        if intent:
            self.meta = {**self.meta, "last_intent": intent}
        logger.debug("[Profile] Updated %s with %s", category, sorted(params or {}))
        return copy.deepcopy(record)

    def record_intent(self, intent: str | None) -> None:
        self.meta = {**self.meta, "last_intent": intent}

    def set_preferences(self, **preferences: Any) -> None:
        self.preferences = {**self.preferences, **preferences}

    def clear(self, category: str | None = None) -> None:
        """Clear one category, or everything except user preferences."""
        if category is not None:
            self._check(category)
            self._categories = {k: v for k, v in self._categories.items() if k != category}
            return
        self._categories = {}
        self.meta = {"last_intent": None}
        logger.info("[Profile] Cleared all categories")

    def snapshot(self) -> dict[str, Any]:
        return {
            **copy.deepcopy(self._categories),
            "preferences": dict(self.preferences),
            "meta": dict(self.meta),
        }
