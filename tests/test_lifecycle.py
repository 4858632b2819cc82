"""Tests for referral status transitions and history."""

from datetime import datetime, timezone

import pytest

from fostercare.lifecycle import (
    InvalidTransitionError,
    ReferralStatus,
    append_status_change,
    can_transition,
    transition,
)


@pytest.mark.parametrize("current, target", [
    (None, "pending"),
    (None, "processing"),
    ("pending", "matched"),
    ("pending", "processing"),
    ("processing", "matched"),
    ("processing", "pending"),
    ("matched", "matched"),
    ("matched", "placed"),
    ("matched", "processing"),
])
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current, target", [
    (None, "matched"),
    ("pending", "placed"),
    ("processing", "placed"),
    ("placed", "matched"),
    ("declined", "pending"),
    ("closed", "matched"),
])
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)


@pytest.mark.parametrize("current", ["pending", "processing", "matched", "placed"])
def test_manual_override_from_any_state(current):
    assert can_transition(current, "closed")
    assert can_transition(current, "declined")


def test_override_to_same_state_rejected():
    assert not can_transition("closed", "closed")
    assert can_transition("declined", "closed")


def test_transition_describes_change():
    at = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
    change = transition(
        "pending",
        ReferralStatus.MATCHED.value,
        changed_by="matching-system",
        reason="Automatic matching completed",
        at=at,
    )

    assert change.to_dict() == {
        "from_status": "pending",
        "to_status": "matched",
        "timestamp": "2026-05-04T09:30:00+00:00",
        "changed_by": "matching-system",
        "reason": "Automatic matching completed",
        "notes": None,
    }


def test_initial_transition_has_empty_from_status():
    change = transition(None, "processing", changed_by="system")
    assert change.from_status == ""


def test_invalid_transition_raises():
    with pytest.raises(InvalidTransitionError, match="placed to matched"):
        transition("placed", "matched", changed_by="user-1")


def test_unknown_status_raises():
    with pytest.raises(InvalidTransitionError, match="Unknown referral status"):
        transition("pending", "archived", changed_by="user-1")


def test_history_is_append_only():
    first = transition(None, "pending", changed_by="system")
    second = transition("pending", "matched", changed_by="system")

    history = append_status_change(None, first)
    extended = append_status_change(history, second)

    assert len(history) == 1
    assert [h["to_status"] for h in extended] == ["pending", "matched"]
    assert extended[0] == history[0]
