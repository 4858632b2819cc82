"""Core domain records shared by extraction, matching and persistence."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class PlacementType(str, Enum):
    EMERGENCY = "emergency"
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"
    RESPITE = "respite"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class CarerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PartialReferral(TypedDict, total=False):
    """Fields extracted from a referral document.

    A missing key means the field could not be identified.
    """
    age: int
    gender: str
    ethnicity: str
    cultural_background: str
    sen_needs: bool
    disabilities: list[str]
    behavioural_needs: bool
    behavioural_details: str
    placement_type: str
    sibling_group: bool
    sibling_count: int
    pets_allowed: bool
    preferred_locations: list[str]
    excluded_locations: list[str]
    carer_gender_preference: str
    support_needs: list[str]
    medical_needs: list[str]
    educational_needs: list[str]
    urgency: str


@dataclass
class ChildReferral:
    """A request to place a child, as consumed by the matcher.

    ``age`` is ``None`` when unknown; it is never defaulted to 0.
    """
    id: str = ""
    age: int | None = None
    gender: str | None = None
    ethnicity: str = "Unknown"
    cultural_background: str = "Unknown"
    sen_needs: bool = False
    disabilities: list[str] = field(default_factory=list)
    behavioural_needs: bool = False
    behavioural_details: str = ""
    placement_type: str = PlacementType.SHORT_TERM.value
    solo_placement_required: bool = False
    sibling_group: bool = False
    sibling_count: int | None = None
    pets_allowed: bool = False
    preferred_locations: list[str] = field(default_factory=list)
    excluded_locations: list[str] = field(default_factory=list)
    carer_gender_preference: str | None = None
    support_needs: list[str] = field(default_factory=list)
    medical_needs: list[str] = field(default_factory=list)
    educational_needs: list[str] = field(default_factory=list)
    urgency: str = Urgency.MEDIUM.value
    referral_source: str = ""
    status: str = "pending"

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ChildReferral:
        """Build from a dict, ignoring keys that are not referral fields."""
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CarerProfile:
    """A foster carer as seen by the matcher."""
    id: str
    name: str = ""
    min_age: int = 0
    max_age: int = 18
    accepts_siblings: bool = False
    allows_pets: bool = False
    experience_with_behavioural_needs: bool = False
    experience_with_sen: bool = False
    preferred_location: str = ""
    excluded_locations: list[str] = field(default_factory=list)
    gender_preference: str | None = None
    capacity: int = 0
    status: str = CarerStatus.ACTIVE.value

    @property
    def is_active(self) -> bool:
        return self.status == CarerStatus.ACTIVE.value

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> CarerProfile:
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})
