"""Trip draft completeness checks, follow-up prompts and summaries.

Everything in here is pure: the completion watcher calls ``validate_trip_draft``
after every debounced draft change.
"""
import re
from typing import Any

from pydantic import BaseModel, Field

REQUIRED_FIELDS = ("vacation_location", "duration", "dates", "budget")
RECOMMENDED_FIELDS = ("travelers", "preferences", "constraints")

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")

FOLLOW_UP_QUESTIONS = {
    "vacation_location": "Where would you like to travel to?",
    "duration": "How many days are you planning to travel?",
    "dates": "When are you planning to travel? I need the start and end dates.",
    "budget": "What's your budget for this trip? (low, moderate or high)",
    "travelers": "How many people are traveling?",
    "preferences": "What kind of activities, food or accommodation do you enjoy?",
    "constraints": "Do you have any special requirements for your trip?",
}


class TripCompletion(BaseModel):
    is_complete: bool
    missing_fields: list[str] = Field(default_factory=list)
    recommended_fields: list[str] = Field(default_factory=list)
    field_status: dict[str, bool] = Field(default_factory=dict)


def _has_location(draft: dict) -> bool:
    return bool(draft.get("vacation_location"))


def _has_duration(draft: dict) -> bool:
    return draft.get("duration") is not None


def _has_dates(draft: dict) -> bool:
    dates = draft.get("dates")
    if isinstance(dates, str):
        return " to " in dates or bool(_ISO_DATE.match(dates.strip()))
    if not isinstance(dates, dict) or not dates.get("from"):
        return False
    if dates.get("to"):
        return True
    if dates.get("duration") is not None or draft.get("duration") is not None:
        return True
    return bool(dates.get("is_tomorrow") or draft.get("is_tomorrow"))


def _has_budget(draft: dict) -> bool:
    if draft.get("budget"):
        return True
    constraints = draft.get("constraints")
    if isinstance(constraints, dict) and constraints.get("budget"):
        return True
    return bool(draft.get("budget_level"))


def _has_travelers(draft: dict) -> bool:
    return draft.get("travelers") is not None


def _has_preferences(draft: dict) -> bool:
    return bool(draft.get("preferences"))


def _has_constraints(draft: dict, budget_ok: bool) -> bool:
    constraints = draft.get("constraints")
    if not isinstance(constraints, dict):
        return False
    if any(key != "budget" for key in constraints):
        return True
    # A constraints object carrying only the budget is fine once budget passes.
    return budget_ok


def validate_trip_draft(draft: dict | None) -> TripCompletion:
    """Report which required and recommended trip fields are present."""
    if not draft:
        return TripCompletion(
            is_complete=False,
            missing_fields=list(REQUIRED_FIELDS),
            recommended_fields=list(RECOMMENDED_FIELDS),
            field_status={name: False for name in REQUIRED_FIELDS + RECOMMENDED_FIELDS},
        )

    budget_ok = _has_budget(draft)
    status = {
        "vacation_location": _has_location(draft),
        "duration": _has_duration(draft),
        "dates": _has_dates(draft),
        "budget": budget_ok,
        "travelers": _has_travelers(draft),
        "preferences": _has_preferences(draft),
        "constraints": _has_constraints(draft, budget_ok),
    }
    missing = [name for name in REQUIRED_FIELDS if not status[name]]
    recommended = [name for name in RECOMMENDED_FIELDS if not status[name]]
    return TripCompletion(
        is_complete=not missing,
        missing_fields=missing,
        recommended_fields=recommended,
        field_status=status,
    )


def follow_up_question(missing_fields: list[str] | None) -> str | None:
    """Question for the highest-priority missing field, or None."""
    if not missing_fields:
        return None
    return FOLLOW_UP_QUESTIONS.get(
        missing_fields[0], "Could you provide more details about your trip?"
    )


def _format_dates(dates: Any) -> str | None:
    if isinstance(dates, str):
        return dates
    if isinstance(dates, dict) and dates.get("from"):
        if dates.get("to"):
            return f"{dates['from']} to {dates['to']}"
        return f"from {dates['from']}"
    return None


def format_trip_summary(draft: dict | None) -> str:
    """Markdown summary of the trip details collected so far."""
    if not draft:
        return "No trip details available."

    lines = ["**Trip Summary**", ""]
    if draft.get("vacation_location"):
        lines.append(f"- **Destination**: {draft['vacation_location']}")
    if draft.get("duration") is not None:
        lines.append(f"- **Duration**: {draft['duration']} days")
    dates = _format_dates(draft.get("dates"))
    if dates:
        lines.append(f"- **Dates**: {dates}")
    budget = draft.get("budget") or (draft.get("constraints") or {}).get("budget") or draft.get("budget_level")
    if budget:
        lines.append(f"- **Budget**: {budget}")
    if draft.get("travelers") is not None:
        lines.append(f"- **Travelers**: {draft['travelers']}")

    preferences = draft.get("preferences") or {}
    for key, value in preferences.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"- **{label}**: {value}")

    constraints = {k: v for k, v in (draft.get("constraints") or {}).items() if k != "budget"}
    for key, value in constraints.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        lines.append(f"- **{label}**: {value}")

    if draft.get("notes"):
        lines.append(f"- **Additional Notes**: {draft['notes']}")
    return "\n".join(lines)
