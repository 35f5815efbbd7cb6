import pytest

from tripchat.conversation.validation import (
    REQUIRED_FIELDS,
    follow_up_question,
    format_trip_summary,
    validate_trip_draft,
)

COMPLETE_DRAFT = {
    "vacation_location": "Paris",
    "duration": 3,
    "dates": {"from": "2025-06-01", "to": "2025-06-03"},
    "budget": "moderate",
}


def test_complete_draft():
    result = validate_trip_draft(COMPLETE_DRAFT)
    assert result.is_complete
    assert result.missing_fields == []
    assert result.recommended_fields == ["travelers", "preferences", "constraints"]


@pytest.mark.parametrize("draft", [None, {}])
def test_empty_draft_is_fully_missing(draft):
    result = validate_trip_draft(draft)
    assert not result.is_complete
    assert result.missing_fields == list(REQUIRED_FIELDS)
    assert not any(result.field_status.values())


@pytest.mark.parametrize("field", REQUIRED_FIELDS)
def test_each_required_field_is_reported(field):
    draft = {k: v for k, v in COMPLETE_DRAFT.items() if k != field}
    result = validate_trip_draft(draft)
    assert not result.is_complete
    assert result.missing_fields == [field]


def test_missing_fields_keep_required_order():
    result = validate_trip_draft({"budget": "low"})
    assert result.missing_fields == ["vacation_location", "duration", "dates"]


def test_zero_duration_counts_as_present():
    result = validate_trip_draft({**COMPLETE_DRAFT, "duration": 0})
    assert result.field_status["duration"]


@pytest.mark.parametrize("dates, extra, ok", [
    ("2025-06-01 to 2025-06-05", {}, True),
    ("2025-06-01", {}, True),
    ("next summer", {}, False),
    ({"from": "2025-06-01", "to": "2025-06-05"}, {}, True),
    ({"from": "2025-06-01", "duration": 4}, {}, True),
    ({"from": "2025-06-01"}, {"is_tomorrow": True}, True),
    ({"to": "2025-06-05"}, {}, False),
])
def test_date_shapes(dates, extra, ok):
    draft = {k: v for k, v in COMPLETE_DRAFT.items() if k != "duration"}
    draft.update({"dates": dates, **extra})
    assert validate_trip_draft(draft).field_status["dates"] is ok


def test_from_date_with_draft_duration():
    draft = {**COMPLETE_DRAFT, "dates": {"from": "2025-06-01"}}
    assert validate_trip_draft(draft).field_status["dates"]


def test_legacy_budget_shapes():
    base = {k: v for k, v in COMPLETE_DRAFT.items() if k != "budget"}
    assert validate_trip_draft({**base, "constraints": {"budget": "low"}}).is_complete
    assert validate_trip_draft({**base, "budget_level": "high"}).is_complete


def test_budget_only_constraints_satisfy_recommendation():
    result = validate_trip_draft({**COMPLETE_DRAFT, "constraints": {"budget": "low"}})
    assert result.field_status["constraints"]
    assert validate_trip_draft({**COMPLETE_DRAFT, "constraints": {"accessibility": "wheelchair"}}).field_status["constraints"]


def test_follow_up_question_targets_first_missing_field():
    assert follow_up_question(["dates", "budget"]).startswith("When are you planning")
    assert follow_up_question([]) is None
    assert follow_up_question(["mystery"]) == "Could you provide more details about your trip?"


def test_trip_summary_lists_collected_details():
    summary = format_trip_summary({
        **COMPLETE_DRAFT,
        "travelers": 2,
        "preferences": {"activities": ["museums", "food"]},
        "notes": "Anniversary trip",
    })
    assert "**Destination**: Paris" in summary
    assert "**Dates**: 2025-06-01 to 2025-06-03" in summary
    assert "**Activities**: museums, food" in summary
    assert "Anniversary trip" in summary
    assert format_trip_summary(None) == "No trip details available."
