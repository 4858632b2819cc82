"""Referral status lifecycle and its append-only history."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence


class ReferralStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    MATCHED = "matched"
    PLACED = "placed"
    DECLINED = "declined"
    CLOSED = "closed"


class InvalidTransitionError(Exception):
    """Raised when a referral cannot move to the requested status."""
    pass


# Manual override to declined/closed is allowed from every state
OVERRIDE_TARGETS = frozenset({ReferralStatus.DECLINED, ReferralStatus.CLOSED})

ALLOWED_TRANSITIONS: dict[ReferralStatus | None, frozenset[ReferralStatus]] = {
    None: frozenset({ReferralStatus.PENDING, ReferralStatus.PROCESSING}),
    ReferralStatus.PENDING: frozenset({ReferralStatus.PROCESSING, ReferralStatus.MATCHED}),
    ReferralStatus.PROCESSING: frozenset({ReferralStatus.PENDING, ReferralStatus.MATCHED}),
    ReferralStatus.MATCHED: frozenset({
        ReferralStatus.MATCHED,
        ReferralStatus.PLACED,
        ReferralStatus.PROCESSING,
    }),
    ReferralStatus.PLACED: frozenset(),
    ReferralStatus.DECLINED: frozenset(),
    ReferralStatus.CLOSED: frozenset(),
}

# Statuses from which the matcher may (re)run
MATCHABLE = frozenset({ReferralStatus.PENDING, ReferralStatus.PROCESSING, ReferralStatus.MATCHED})


@dataclass(frozen=True)
class StatusChange:
    """One entry of a referral's status history."""
    from_status: str
    to_status: str
    timestamp: str
    changed_by: str
    reason: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def can_transition(current: str | None, target: str) -> bool:
    current_status = ReferralStatus(current) if current else None
    target_status = ReferralStatus(target)
    if current_status is not None and target_status in OVERRIDE_TARGETS:
        return current_status != target_status
    return target_status in ALLOWED_TRANSITIONS[current_status]


def transition(
    current: str | None,
    target: str,
    *,
    changed_by: str,
    reason: str | None = None,
    notes: str | None = None,
    at: datetime | None = None,
) -> StatusChange:
    """Validate a status change and describe it.

    Raises:
        InvalidTransitionError: If the target is unknown or not reachable
    """
    try:
        allowed = can_transition(current, target)
    except ValueError as e:
        raise InvalidTransitionError(f"Unknown referral status: {e}") from e

    if not allowed:
        raise InvalidTransitionError(
            f"Cannot move referral from {current or '<new>'} to {target}"
        )

    return StatusChange(
        from_status=current or "",
        to_status=ReferralStatus(target).value,
        timestamp=(at or datetime.now(timezone.utc)).isoformat(),
        changed_by=changed_by,
        reason=reason,
        notes=notes,
    )


def append_status_change(
    history: Sequence[dict[str, Any]] | None,
    change: StatusChange,
) -> list[dict[str, Any]]:
    """Return a new history list with ``change`` appended.

    Earlier entries are copied as-is and never modified.
    """
    return [*(history or []), change.to_dict()]
