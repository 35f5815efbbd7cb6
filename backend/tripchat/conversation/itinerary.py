"""Best-effort conversion of generated itinerary text into day-by-day data."""
import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?")
_DAY_HEADING = re.compile(r"^\s*(?:#+\s*)?\**\s*Day\s+(\d+)\s*[:\-–]?\s*(.*?)\**\s*$", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+\.)\s+(.*\S)\s*$")


def parse_itinerary(text: str | None) -> dict[str, Any] | None:
    """Return ``{"days": [...]}`` for ``text``, or None when nothing parses.

    JSON output from the generator is used as-is; otherwise Markdown is split
    on "Day N" headings, with bullet lines collected as activities.
    """
    if not text or not text.strip():
        return None
    cleaned = _FENCE.sub("", text).strip()

    if cleaned.startswith("{") and cleaned.endswith("}"):
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.info("[Itinerary] Text looked like JSON but did not parse, falling back to Markdown")
        else:
            if isinstance(parsed, dict):
                return parsed

    days: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for line in cleaned.splitlines():
        heading = _DAY_HEADING.match(line)
        if heading:
            current = {
                "day": int(heading.group(1)),
                "title": heading.group(2).strip(" *#") or None,
                "activities": [],
            }
            days.append(current)
            continue
        if current is None:
            continue
        bullet = _BULLET.match(line)
        if bullet:
            current["activities"].append(bullet.group(1).replace("**", "").strip())

    if not days:
        return None
    return {"days": days}
