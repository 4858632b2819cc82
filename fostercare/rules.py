"""Weighted-criteria matching engine for referrals against carer profiles.

Each of the seven criteria is evaluated independently and produces a
MatchDetail, so every result carries a full explanation of its score.
Criteria are always evaluated in the fixed order of ``Criterion``.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Iterable

from .config import MatchingSettings
from .domain import CarerProfile, ChildReferral

logger = logging.getLogger(__name__)

RECOMMENDED_THRESHOLD = 0.70


class Criterion(str, Enum):
    """Matching criteria, in evaluation order."""
    AGE_RANGE = "age_range"
    SIBLINGS = "siblings"
    BEHAVIOURAL = "behavioural"
    LOCATION = "location"
    SEN = "sen"
    PETS = "pets"
    CAPACITY = "capacity"


CRITERION_LABELS: dict[Criterion, str] = {
    Criterion.AGE_RANGE: "Age Range",
    Criterion.SIBLINGS: "Sibling Group",
    Criterion.BEHAVIOURAL: "Behavioural Needs",
    Criterion.LOCATION: "Location",
    Criterion.SEN: "SEN Experience",
    Criterion.PETS: "Pet Compatibility",
    Criterion.CAPACITY: "Available Capacity",
}


@dataclass(frozen=True)
class CriterionWeight:
    """Weight and points for a single criterion."""
    weight: float = 1.0
    points: float = 0.0

    @property
    def value(self) -> float:
        return self.points * self.weight


@dataclass(frozen=True)
class MatchingCriteria:
    """Full criteria configuration passed explicitly into the engine."""
    age_range: CriterionWeight = CriterionWeight(points=30)
    siblings: CriterionWeight = CriterionWeight(points=20)
    behavioural: CriterionWeight = CriterionWeight(points=15)
    location: CriterionWeight = CriterionWeight(points=15)
    sen: CriterionWeight = CriterionWeight(points=10)
    pets: CriterionWeight = CriterionWeight(points=5)
    capacity: CriterionWeight = CriterionWeight(points=5)

    def __getitem__(self, criterion: Criterion) -> CriterionWeight:
        return getattr(self, Criterion(criterion).value)

    @property
    def max_possible_score(self) -> float:
        return sum(self[c].value for c in Criterion)

    def with_overrides(self, overrides: dict[str, dict[str, float]]) -> MatchingCriteria:
        """Return a copy with some criteria replaced.

        Raises:
            ValueError: If an override names an unknown criterion
        """
        changes = {}
        for name, values in overrides.items():
            criterion = Criterion(name)
            current = self[criterion]
            changes[criterion.value] = CriterionWeight(
                weight=values.get("weight", current.weight),
                points=values.get("points", current.points),
            )
        return replace(self, **changes)

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {f.name: asdict(getattr(self, f.name)) for f in fields(self)}


DEFAULT_MATCHING_CRITERIA = MatchingCriteria()


def criteria_from_settings(matching: MatchingSettings) -> MatchingCriteria:
    """Convert settings into an explicit MatchingCriteria value."""
    return MatchingCriteria(**{
        c.value: CriterionWeight(
            weight=getattr(matching, c.value).weight,
            points=getattr(matching, c.value).points,
        )
        for c in Criterion
    })


@dataclass
class MatchDetail:
    """Outcome of one criterion.

    ``matched`` is also True for criteria that do not apply to the child;
    ``applicable`` tells the two cases apart.
    """
    criterion: str
    points: float
    matched: bool
    details: str
    applicable: bool = True


@dataclass
class MatchingResult:
    """Scored compatibility between one referral and one carer."""
    carer_id: str
    score: float
    max_possible_score: float
    match_details: list[MatchDetail] = field(default_factory=list)
    recommended: bool = False

    @property
    def percentage(self) -> float:
        if not self.max_possible_score:
            return 0.0
        return self.score / self.max_possible_score * 100

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MatchingEngine:
    """Scores referrals against carers using a fixed set of weighted criteria.

    The engine is stateless apart from its configuration: the same inputs
    always produce the same results.
    """

    def __init__(
        self,
        criteria: MatchingCriteria = DEFAULT_MATCHING_CRITERIA,
        *,
        recommended_threshold: float = RECOMMENDED_THRESHOLD,
        normalize_not_applicable: bool = False,
    ):
        """Initialize matching engine.

        Args:
            criteria: Weight/points for each criterion
            recommended_threshold: Fraction of the maximum score a match
                needs to be flagged as recommended
            normalize_not_applicable: If True, criteria that do not apply
                to the child are left out of the maximum possible score
        """
        self.criteria = criteria
        self.recommended_threshold = recommended_threshold
        self.normalize_not_applicable = normalize_not_applicable

    def score(self, referral: ChildReferral, carer: CarerProfile) -> MatchingResult:
        """Score one referral against one carer."""
        details = [
            self._evaluate_criterion(criterion, referral, carer)
            for criterion in Criterion
        ]

        total_score = sum(d.points for d in details if d.matched)

        if self.normalize_not_applicable:
            max_possible = sum(
                self.criteria[criterion].value
                for criterion, detail in zip(Criterion, details)
                if detail.applicable
            )
        else:
            max_possible = self.criteria.max_possible_score

        recommended = bool(max_possible) and total_score / max_possible >= self.recommended_threshold

        return MatchingResult(
            carer_id=carer.id,
            score=total_score,
            max_possible_score=max_possible,
            match_details=details,
            recommended=recommended,
        )

    def rank(
        self,
        referral: ChildReferral,
        carers: Iterable[CarerProfile],
    ) -> list[MatchingResult]:
        """Score a referral against every active carer and rank the results."""
        active = [c for c in carers if c.is_active]
        results = [self.score(referral, carer) for carer in active]

        logger.debug(
            f"Ranked referral {referral.id or '<unsaved>'} against "
            f"{len(active)} active carers"
        )
        return sort_matches(results)

    def _evaluate_criterion(
        self,
        criterion: Criterion,
        referral: ChildReferral,
        carer: CarerProfile,
    ) -> MatchDetail:
        """Evaluate a single criterion.

        Bad input data never aborts scoring: the criterion is recorded as
        unmatched with zero points instead.
        """
        evaluators = {
            Criterion.AGE_RANGE: self._eval_age_range,
            Criterion.SIBLINGS: self._eval_siblings,
            Criterion.BEHAVIOURAL: self._eval_behavioural,
            Criterion.LOCATION: self._eval_location,
            Criterion.SEN: self._eval_sen,
            Criterion.PETS: self._eval_pets,
            Criterion.CAPACITY: self._eval_capacity,
        }
        try:
            return evaluators[criterion](referral, carer, self.criteria[criterion])
        except Exception as e:
            logger.warning(
                f"Criterion {criterion.value} failed for carer {getattr(carer, 'id', '?')}: {e}"
            )
            return MatchDetail(
                criterion=CRITERION_LABELS[criterion],
                points=0,
                matched=False,
                details=f"Evaluation error: {e}",
            )

    @staticmethod
    def _award(matched: bool, weight: CriterionWeight) -> float:
        return weight.value if matched else 0

    @staticmethod
    def _not_applicable(criterion: Criterion, details: str) -> MatchDetail:
        return MatchDetail(
            criterion=CRITERION_LABELS[criterion],
            points=0,
            matched=True,
            details=details,
            applicable=False,
        )

    def _eval_age_range(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        """Child's age must fall within the carer's inclusive range."""
        label = CRITERION_LABELS[Criterion.AGE_RANGE]
        carer_range = f"({carer.min_age}-{carer.max_age})"

        if referral.age is None:
            return MatchDetail(
                criterion=label,
                points=0,
                matched=False,
                details=f"Child age is unknown; carer's range is {carer_range}",
            )

        matched = carer.min_age <= referral.age <= carer.max_age
        return MatchDetail(
            criterion=label,
            points=self._award(matched, weight),
            matched=matched,
            details=(
                f"Child age {referral.age} is within carer's range {carer_range}"
                if matched
                else f"Child age {referral.age} is outside carer's range {carer_range}"
            ),
        )

    def _eval_siblings(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        if not referral.sibling_group:
            return self._not_applicable(Criterion.SIBLINGS, "Child is not part of a sibling group")

        matched = bool(carer.accepts_siblings)
        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.SIBLINGS],
            points=self._award(matched, weight),
            matched=matched,
            details=(
                "Carer accepts sibling groups and child is part of sibling group"
                if matched
                else "Carer does not accept sibling groups but child is part of sibling group"
            ),
        )

    def _eval_behavioural(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        if not referral.behavioural_needs:
            return self._not_applicable(Criterion.BEHAVIOURAL, "Child does not have behavioural needs")

        matched = bool(carer.experience_with_behavioural_needs)
        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.BEHAVIOURAL],
            points=self._award(matched, weight),
            matched=matched,
            details=(
                "Carer has experience with behavioural needs and child has behavioural needs"
                if matched
                else "Carer lacks experience with behavioural needs but child has behavioural needs"
            ),
        )

    def _eval_location(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        """Exclusions on either side override a positive location match."""
        carer_location = (carer.preferred_location or "").lower()
        child_preferred = [loc.lower() for loc in referral.preferred_locations]
        child_excluded = {loc.lower() for loc in referral.excluded_locations}
        carer_excluded = {loc.lower() for loc in carer.excluded_locations}

        if carer_location in child_excluded:
            matched = False
            details = f"Carer's location ({carer.preferred_location}) is in child's excluded locations"
        elif any(loc in carer_excluded for loc in child_preferred):
            matched = False
            details = "Child's preferred locations conflict with carer's excluded locations"
        elif carer_location in child_preferred:
            matched = True
            details = f"Location match found: {carer.preferred_location}"
        else:
            matched = False
            details = (
                f"No location match between child preferences "
                f"({', '.join(referral.preferred_locations)}) and carer location "
                f"({carer.preferred_location})"
            )

        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.LOCATION],
            points=self._award(matched, weight),
            matched=matched,
            details=details,
        )

    def _eval_sen(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        if not referral.sen_needs:
            return self._not_applicable(Criterion.SEN, "Child does not have SEN needs")

        matched = bool(carer.experience_with_sen)
        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.SEN],
            points=self._award(matched, weight),
            matched=matched,
            details=(
                "Carer has SEN experience and child has SEN needs"
                if matched
                else "Carer lacks SEN experience but child has SEN needs"
            ),
        )

    def _eval_pets(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        if not referral.pets_allowed:
            return self._not_applicable(Criterion.PETS, "Child does not require pets to be allowed")

        matched = bool(carer.allows_pets)
        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.PETS],
            points=self._award(matched, weight),
            matched=matched,
            details=(
                "Carer allows pets and child requires pets to be allowed"
                if matched
                else "Carer does not allow pets but child requires pets to be allowed"
            ),
        )

    def _eval_capacity(
        self,
        referral: ChildReferral,
        carer: CarerProfile,
        weight: CriterionWeight,
    ) -> MatchDetail:
        # Proxy only: live placements are not counted against capacity
        matched = carer.is_active and carer.capacity > 0
        return MatchDetail(
            criterion=CRITERION_LABELS[Criterion.CAPACITY],
            points=self._award(matched, weight),
            matched=matched,
            details=(
                f"Carer has available capacity ({carer.capacity})"
                if matched
                else "Carer does not have available capacity or is inactive"
            ),
        )


def sort_matches(results: Iterable[MatchingResult]) -> list[MatchingResult]:
    """Order by score (highest first); on equal scores recommended first."""
    return sorted(results, key=lambda r: (-r.score, not r.recommended))


def calculate_match_score(
    referral: ChildReferral,
    carer: CarerProfile,
    criteria: MatchingCriteria = DEFAULT_MATCHING_CRITERIA,
    **engine_options: Any,
) -> MatchingResult:
    return MatchingEngine(criteria, **engine_options).score(referral, carer)


def match_referral_to_carers(
    referral: ChildReferral,
    carers: Iterable[CarerProfile],
    criteria: MatchingCriteria = DEFAULT_MATCHING_CRITERIA,
    **engine_options: Any,
) -> list[MatchingResult]:
    """Rank a referral against a carer pool; inactive carers are skipped."""
    return MatchingEngine(criteria, **engine_options).rank(referral, carers)


def get_top_matches(
    referral: ChildReferral,
    carers: Iterable[CarerProfile],
    top_n: int = 5,
    criteria: MatchingCriteria = DEFAULT_MATCHING_CRITERIA,
    **engine_options: Any,
) -> list[MatchingResult]:
    return match_referral_to_carers(referral, carers, criteria, **engine_options)[:top_n]


def filter_matches_by_score(matches: Iterable[MatchingResult], min_score: float) -> list[MatchingResult]:
    return [m for m in matches if m.score >= min_score]


def get_recommended_matches(matches: Iterable[MatchingResult]) -> list[MatchingResult]:
    return [m for m in matches if m.recommended]
