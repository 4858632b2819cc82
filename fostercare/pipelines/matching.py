"""Matching pipeline: Referral → ranked carers, persisted on the referral.

Every run replaces the referral's stored match list wholesale; results are
never merged with a previous run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..audit import AuditAction, EntityType, create_audit_log
from ..config import settings
from ..domain import CarerProfile, CarerStatus, ChildReferral
from ..lifecycle import (
    MATCHABLE,
    InvalidTransitionError,
    ReferralStatus,
    append_status_change,
    transition,
)
from ..rules import MatchingCriteria, MatchingEngine, MatchingResult, criteria_from_settings

logger = logging.getLogger(__name__)


class MatchingError(Exception):
    """Raised when the matching pipeline fails."""
    pass


@dataclass
class ReferralMatches:
    """Outcome of one persisted matching run."""
    referral_id: str
    matches: list[dict]
    computed_at: datetime


def build_engine(criteria: MatchingCriteria | None = None) -> MatchingEngine:
    """Matching engine configured from settings, with optional criteria override."""
    return MatchingEngine(
        criteria or criteria_from_settings(settings.matching),
        recommended_threshold=settings.matching.recommended_threshold,
        normalize_not_applicable=settings.matching.normalize_not_applicable,
    )


async def load_active_carers(session: AsyncSession) -> list[CarerProfile]:
    query = select(models.Carer).where(models.Carer.status == CarerStatus.ACTIVE.value)
    result = await session.execute(query)
    return [carer.to_profile() for carer in result.scalars().all()]


def to_matched_carers(
    results: list[MatchingResult],
    carers: list[CarerProfile],
) -> list[dict]:
    """Convert engine results into the stored match-list format."""
    names = {c.id: c.name for c in carers}
    return [
        {
            "carer_id": r.carer_id,
            "carer_name": names.get(r.carer_id) or "Unknown",
            "score": r.score,
            "max_possible_score": r.max_possible_score,
            "match_details": [
                {
                    "criterion": d.criterion,
                    "points": d.points,
                    "matched": d.matched,
                    "details": d.details,
                }
                for d in r.match_details
            ],
            "recommended": r.recommended,
            "contacted": False,
        }
        for r in results
    ]


async def preview_matches(
    session: AsyncSession,
    referral: ChildReferral,
    criteria: MatchingCriteria | None = None,
) -> list[MatchingResult]:
    """Rank a referral against the current pool without persisting anything."""
    carers = await load_active_carers(session)
    return build_engine(criteria).rank(referral, carers)


async def run_matching(
    session: AsyncSession,
    referral_id: str,
    *,
    changed_by: str,
    user_name: str,
    reason: str,
    criteria: MatchingCriteria | None = None,
) -> ReferralMatches:
    """Match a stored referral against all active carers and persist the result.

    The referral moves to ``matched``; its previous match list is replaced.
    Changes are left on the session for the caller to commit.

    Raises:
        MatchingError: If the referral is missing or cannot be matched in
            its current status
    """
    referral = await session.get(models.Referral, referral_id)
    if referral is None:
        raise MatchingError(f"Referral {referral_id} not found")

    if ReferralStatus(referral.status) not in MATCHABLE:
        raise MatchingError(
            f"Referral {referral_id} is {referral.status} and cannot be matched"
        )

    logger.info(f"Starting matching for referral {referral_id}")

    carers = await load_active_carers(session)
    results = build_engine(criteria).rank(referral.to_child_referral(), carers)
    matched_carers = to_matched_carers(results, carers)

    try:
        change = transition(
            referral.status,
            ReferralStatus.MATCHED.value,
            changed_by=changed_by,
            reason=reason,
            notes=f"Found {len(matched_carers)} potential matches",
        )
    except InvalidTransitionError as e:
        raise MatchingError(str(e)) from e

    computed_at = datetime.now(timezone.utc)
    referral.matched_carers = matched_carers
    referral.status = ReferralStatus.MATCHED.value
    referral.processed_at = computed_at
    referral.status_history = append_status_change(referral.status_history, change)

    create_audit_log(
        session,
        entity_type=EntityType.REFERRAL,
        entity_id=referral_id,
        action=AuditAction.UPDATED,
        user_id=changed_by,
        user_name=user_name,
        changes={"matched_carers": len(matched_carers), "status": ReferralStatus.MATCHED.value},
        notes=reason,
    )

    logger.info(
        f"Matching completed for referral {referral_id}: "
        f"{len(matched_carers)} matches, "
        f"{sum(1 for m in matched_carers if m['recommended'])} recommended"
    )
    return ReferralMatches(
        referral_id=referral_id,
        matches=matched_carers,
        computed_at=computed_at,
    )
