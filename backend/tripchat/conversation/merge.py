"""Incremental trip-draft updates.

``merge_trip_draft`` is the plain structural merge. ``normalize_trip_draft``
folds the legacy shapes users and the classifier produce into one canonical
shape, and is applied by the state machine right after each merge.
"""
import copy
from typing import Any

from tripchat.conversation.state import TripDraft

_DATE_RANGE_SEPARATOR = " to "

_LOW_BUDGET_WORDS = {"cheap", "budget", "economy", "low", "inexpensive"}
_HIGH_BUDGET_WORDS = {"expensive", "luxury", "high", "premium", "deluxe"}


def _deep_merge(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, (list, tuple)):
            target[key] = copy.deepcopy(list(value))
        elif isinstance(value, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            _deep_merge(target[key], value)
        else:
            target[key] = value


def merge_trip_draft(existing: dict | None, incoming: dict | None) -> TripDraft:
    """Deep-merge ``incoming`` onto a copy of ``existing``.

    Lists replace the existing list wholesale, nested dicts recurse and scalars
    (including ``None``) overwrite. ``existing`` is never modified.
    """
    merged = copy.deepcopy(existing) if existing else {}
    if incoming:
        _deep_merge(merged, incoming)
    return merged


def normalize_budget(value: Any) -> str | None:
    """Map free-form budget words onto the low/moderate/high tiers."""
    if value is None:
        return None
    word = str(value).strip().lower()
    if not word:
        return None
    if word in _LOW_BUDGET_WORDS:
        return "low"
    if word in _HIGH_BUDGET_WORDS:
        return "high"
    return "moderate"


def _split_date_range(text: str) -> dict | None:
    if _DATE_RANGE_SEPARATOR not in text:
        return None
    start, _, end = text.partition(_DATE_RANGE_SEPARATOR)
    start, end = start.strip(), end.strip()
    if not start or not end:
        return None
    return {"from": start, "to": end}


def normalize_trip_draft(draft: dict | None) -> TripDraft:
    """Return a copy of ``draft`` with dates and budget in canonical form."""
    result = copy.deepcopy(draft) if draft else {}

    # A lone ISO date string stays a string: it is already a valid shape and
    # has no end date to split into.
    dates = result.get("dates")
    if isinstance(dates, str):
        split = _split_date_range(dates.strip())
        if split:
            result["dates"] = split

    budget = result.get("budget")
    if not budget:
        constraints = result.get("constraints")
        if isinstance(constraints, dict) and constraints.get("budget"):
            budget = constraints["budget"]
        elif result.get("budget_level"):
            budget = result["budget_level"]
    if budget:
        result["budget"] = normalize_budget(budget)

    return result
