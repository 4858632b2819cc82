"""Shared builders for the test suite.

Fixtures live in conftest.py; plain helpers that tests import directly
live here.
"""
from fostercare.domain import CarerProfile, ChildReferral

STAFF_HEADERS = {
    "X-User-Id": "user-42",
    "X-User-Name": "Sam Social Worker",
    "X-User-Role": "staff",
}


def make_referral(**overrides) -> ChildReferral:
    """A child with no special needs and a London preference."""
    values = {
        "id": "ref-1",
        "age": 10,
        "preferred_locations": ["London"],
    }
    values.update(overrides)
    return ChildReferral(**values)


def make_carer(carer_id: str = "carer-1", **overrides) -> CarerProfile:
    """An active carer in London who accepts everything."""
    values = {
        "id": carer_id,
        "name": f"Carer {carer_id}",
        "min_age": 0,
        "max_age": 18,
        "accepts_siblings": True,
        "allows_pets": True,
        "experience_with_behavioural_needs": True,
        "experience_with_sen": True,
        "preferred_location": "London",
        "capacity": 1,
    }
    values.update(overrides)
    return CarerProfile(**values)
