"""Rule-based extraction of referral fields from document text.

Every field is extracted independently. Scalar fields are driven by an
ordered tuple of FieldRule objects where the first rule that yields a value
wins; a rule may reject its own match (e.g. an out-of-range age), in which
case the next rule is tried. Fields that cannot be identified are left out
of the result entirely.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable

from . import vocabulary
from .domain import PartialReferral, PlacementType, Urgency
from .pipelines.normalization import normalize_text

logger = logging.getLogger(__name__)

MIN_CHILD_AGE = 0
MAX_CHILD_AGE = 18


@dataclass(frozen=True)
class FieldRule:
    """A pattern plus a builder turning its match into a field value.

    The builder returns None, or raises ValueError, to reject the match.
    """
    pattern: re.Pattern[str]
    build: Callable[[re.Match[str], date], Any]

    def apply(self, text: str, today: date) -> Any:
        match = self.pattern.search(text)
        if match is None:
            return None
        try:
            return self.build(match, today)
        except ValueError as e:
            # e.g. int() on a digit run past the interpreter limit
            logger.debug(f"Rejected match {match.group(0)[:40]!r}: {e}")
            return None


def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _constant(pattern: str, value: Any) -> FieldRule:
    return FieldRule(_compile(pattern), lambda m, today: value)


def _capture(pattern: str, build: Callable[[str], Any] | None = None) -> FieldRule:
    def _build(match: re.Match[str], today: date) -> Any:
        captured = match.group(1).strip()
        if not captured:
            return None
        return build(captured) if build else captured

    return FieldRule(_compile(pattern), _build)


def _valid_age(age: int) -> int | None:
    return age if MIN_CHILD_AGE <= age <= MAX_CHILD_AGE else None


def _positive_int(captured: str) -> int | None:
    count = int(captured)
    return count if count > 0 else None


def _stated_age(pattern: str) -> FieldRule:
    return FieldRule(_compile(pattern), lambda m, today: _valid_age(int(m.group(1))))


def _age_from_birth_year(pattern: str) -> FieldRule:
    return FieldRule(_compile(pattern), lambda m, today: _valid_age(today.year - int(m.group(1))))


def _canonical_ethnicity(captured: str) -> str:
    for ethnicity in vocabulary.UK_ETHNICITIES:
        if ethnicity in captured:
            return ethnicity
    return captured


AGE_RULES = (
    _stated_age(r"\bage[:\s]+(\d+)"),
    _stated_age(r"(\d+)\s+years?\s+old"),
    _age_from_birth_year(r"dob[:\s]+\d+[/\-]\d+[/\-](\d{4})"),
    _age_from_birth_year(r"date of birth[:\s]+\d+[/\-]\d+[/\-](\d{4})"),
)

GENDER_RULES = (
    *(_constant(p, "male") for p in vocabulary.MALE_CUES),
    *(_constant(p, "female") for p in vocabulary.FEMALE_CUES),
)

ETHNICITY_RULES = tuple(
    _capture(rf"{label}[:\s]+([a-z\s]+)", _canonical_ethnicity)
    for label in ("ethnicity", "ethnic", "race", "background")
)

CULTURAL_BACKGROUND_RULES = tuple(
    _capture(rf"{label}[:\s]+([a-z\s]+)")
    for label in ("cultural background", "culture", "heritage", "religion")
)

PLACEMENT_TYPE_RULES = (
    _constant(r"emergency", PlacementType.EMERGENCY.value),
    _constant(r"long-term|permanent", PlacementType.LONG_TERM.value),
    _constant(r"respite", PlacementType.RESPITE.value),
    _constant(r"short-term|temporary", PlacementType.SHORT_TERM.value),
)

SIBLING_COUNT_RULES = (
    _capture(r"(\d+)\s+children", _positive_int),
)

CARER_GENDER_RULES = (
    _constant(r"\bmale (?:carer|foster)", "male"),
    _constant(r"\bfemale (?:carer|foster)", "female"),
)

URGENCY_RULES = (
    _constant(r"emergency|urgent", Urgency.EMERGENCY.value),
    _constant(r"high priority", Urgency.HIGH.value),
    _constant(r"low priority", Urgency.LOW.value),
)

BEHAVIOURAL_DETAIL_RULES = (
    _capture(r"behavioural[:\s]+([^.]+)"),
)

SCALAR_RULES: dict[str, tuple[FieldRule, ...]] = {
    "age": AGE_RULES,
    "gender": GENDER_RULES,
    "ethnicity": ETHNICITY_RULES,
    "cultural_background": CULTURAL_BACKGROUND_RULES,
    "placement_type": PLACEMENT_TYPE_RULES,
    "sibling_count": SIBLING_COUNT_RULES,
    "carer_gender_preference": CARER_GENDER_RULES,
}

FLAG_CUES: dict[str, tuple[re.Pattern[str], ...]] = {
    "sen_needs": tuple(_compile(p) for p in vocabulary.SEN_CUES),
    "behavioural_needs": tuple(_compile(p) for p in vocabulary.BEHAVIOURAL_CUES),
    "sibling_group": tuple(_compile(p) for p in vocabulary.SIBLING_CUES),
    "pets_allowed": tuple(_compile(p) for p in vocabulary.PET_CUES),
}

VOCABULARY_FIELDS: dict[str, list[str]] = {
    "disabilities": vocabulary.DISABILITIES,
    "support_needs": vocabulary.SUPPORT_NEEDS,
    "medical_needs": vocabulary.MEDICAL_NEEDS,
    "educational_needs": vocabulary.EDUCATIONAL_NEEDS,
}

# Urgency always needs a value downstream, so it is the one field with a default
DEFAULT_URGENCY = Urgency.MEDIUM.value


def first_match(rules: Iterable[FieldRule], text: str, today: date) -> Any:
    """Return the value of the first rule that matches and is accepted."""
    for rule in rules:
        value = rule.apply(text, today)
        if value is not None:
            return value
    return None


def any_match(patterns: Iterable[re.Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def vocabulary_matches(phrases: Iterable[str], text: str) -> list[str]:
    return [phrase for phrase in phrases if phrase in text]


class ReferralExtractor:
    """Extract a partial child referral from free-form document text."""

    def __init__(self, locations: list[str] | None = None) -> None:
        """Initialize extractor.

        Args:
            locations: Place names to look for in location preferences.
                Defaults to the built-in list of UK cities.
        """
        self.locations = locations or vocabulary.UK_LOCATIONS
        self._location_patterns = [
            (
                location,
                _compile(rf"(?:preferred: |prefer ){re.escape(location.lower())}\b"),
                _compile(rf"(?:not |avoid ){re.escape(location.lower())}\b"),
            )
            for location in self.locations
        ]

    def extract(self, text: str, *, today: date | None = None) -> PartialReferral:
        """Extract referral fields from text.

        Args:
            text: Raw text of the referral document
            today: Reference date for date-of-birth arithmetic (defaults
                to the current date)

        Returns:
            PartialReferral holding only the fields that were identified
        """
        result: PartialReferral = {}
        if not text or not text.strip():
            result["urgency"] = DEFAULT_URGENCY
            return result

        today = today or date.today()
        normalized = normalize_text(text, clean_urls=False, clean_html_tags=False)

        for field_name, rules in SCALAR_RULES.items():
            value = first_match(rules, normalized, today)
            if value is not None:
                result[field_name] = value

        for field_name, cues in FLAG_CUES.items():
            if any_match(cues, normalized):
                result[field_name] = True

        if result.get("behavioural_needs"):
            details = first_match(BEHAVIOURAL_DETAIL_RULES, normalized, today)
            if details:
                result["behavioural_details"] = details

        for field_name, phrases in VOCABULARY_FIELDS.items():
            found = vocabulary_matches(phrases, normalized)
            if found:
                result[field_name] = found

        preferred, excluded = self._extract_locations(normalized)
        if preferred:
            result["preferred_locations"] = preferred
        if excluded:
            result["excluded_locations"] = excluded

        result["urgency"] = first_match(URGENCY_RULES, normalized, today) or DEFAULT_URGENCY

        logger.debug(f"Extracted {len(result)} referral fields from {len(text)} characters")
        return result

    def _extract_locations(self, text: str) -> tuple[list[str], list[str]]:
        preferred: list[str] = []
        excluded: list[str] = []
        for location, prefer_pattern, exclude_pattern in self._location_patterns:
            if prefer_pattern.search(text):
                preferred.append(location)
            if exclude_pattern.search(text):
                excluded.append(location)
        return preferred, excluded


_default_extractor = ReferralExtractor()


def extract(text: str, *, today: date | None = None) -> PartialReferral:
    """Extract referral fields using the default extractor."""
    return _default_extractor.extract(text, today=today)
