"""Tests for rule-based referral field extraction."""

from datetime import date

import pytest

from fostercare.extractor import AGE_RULES, ReferralExtractor, extract, first_match

TODAY = date(2026, 6, 1)

SAMPLE_REFERRAL = """
REFERRAL FOR FOSTER PLACEMENT - URGENT

Name: Jamie   Age: 9
Gender: Male
Ethnicity: White British
Cultural background: Catholic

Jamie has a diagnosis of ADHD and attends a special school with SEN support.
He takes medication daily. Behavioural: struggles with transitions and can be
aggressive when anxious. Jamie has an older sister placed elsewhere.

Placement: long–term. Preferred: Manchester. Please avoid Liverpool.
Pets allowed in the home would help as he loves dogs.
"""


class TestAge:

    def test_out_of_range_age_left_unset(self):
        assert "age" not in extract("Age: 19", today=TODAY)

    def test_upper_boundary_accepted(self):
        assert extract("Age: 18", today=TODAY)["age"] == 18

    def test_years_old(self):
        assert extract("The child is 7 years old.", today=TODAY)["age"] == 7

    def test_page_number_is_not_an_age(self):
        assert "age" not in extract("See page 12 for details.", today=TODAY)

    def test_age_from_date_of_birth(self):
        assert extract("DOB: 14/03/2015", today=TODAY)["age"] == 11
        assert extract("Date of birth: 01-01-2010", today=TODAY)["age"] == 16

    def test_rejected_rule_falls_through_to_next(self):
        # a parent's age is out of range, the child's age follows
        text = "mother age 34. child is 6 years old"
        assert first_match(AGE_RULES, text, TODAY) == 6

    def test_huge_stated_age_left_unset(self):
        result = extract("Age: " + "9" * 5000)
        assert "age" not in result
        assert result["urgency"] == "medium"

    def test_huge_age_falls_through_to_years_old(self):
        assert extract("Age: " + "9" * 5000 + ". She is 7 years old.")["age"] == 7

    def test_future_birth_year_rejected(self):
        assert "age" not in extract("DOB: 01/01/2030", today=TODAY)


class TestScalarFields:

    def test_full_referral(self):
        result = extract(SAMPLE_REFERRAL, today=TODAY)

        assert result["age"] == 9
        assert result["gender"] == "male"
        assert result["ethnicity"] == "white british"
        assert result["cultural_background"].startswith("catholic")
        assert result["placement_type"] == "long-term"
        assert result["urgency"] == "emergency"
        assert result["sen_needs"] is True
        assert result["behavioural_needs"] is True
        assert result["behavioural_details"].startswith("struggles with transitions")
        assert result["sibling_group"] is True
        assert result["pets_allowed"] is True
        assert result["preferred_locations"] == ["Manchester"]
        assert result["excluded_locations"] == ["Liverpool"]
        assert result["disabilities"] == ["adhd"]
        assert result["medical_needs"] == ["medication"]
        assert result["educational_needs"] == ["special school", "sen support"]

    def test_female_cues(self):
        assert extract("Gender: Female. She enjoys drawing.")["gender"] == "female"

    def test_no_gender_cue(self):
        assert "gender" not in extract("The child enjoys drawing.")

    def test_unrecognised_ethnicity_kept_raw(self):
        assert extract("Ethnicity: romany gypsy")["ethnicity"] == "romany gypsy"

    @pytest.mark.parametrize("text, placement", [
        ("emergency placement tonight", "emergency"),
        ("looking for a permanent home", "long-term"),
        ("respite care at weekends", "respite"),
        ("temporary arrangement", "short-term"),
    ])
    def test_placement_type(self, text, placement):
        assert extract(text)["placement_type"] == placement

    def test_placement_priority(self):
        assert extract("respite now, long-term later")["placement_type"] == "long-term"

    def test_female_carer_preference(self):
        result = extract("Would do best with a female carer.")
        assert result["carer_gender_preference"] == "female"

    def test_male_carer_preference(self):
        assert extract("A male carer is preferred.")["carer_gender_preference"] == "male"


class TestIndependence:

    def test_sibling_count_without_sibling_group(self):
        result = extract("Referral covers 3 children.")

        assert result["sibling_count"] == 3
        assert "sibling_group" not in result

    def test_huge_children_count_left_out(self):
        result = extract("There are " + "3" * 5000 + " children")
        assert "sibling_count" not in result

    def test_zero_children_left_out(self):
        assert "sibling_count" not in extract("There are 0 children in the household.")

    def test_boolean_fields_absent_when_no_cue(self):
        result = extract("A quiet child who enjoys reading.")

        for key in ("sen_needs", "behavioural_needs", "sibling_group", "pets_allowed"):
            assert key not in result


class TestUrgency:

    def test_defaults_to_medium(self):
        assert extract("Nothing pressing here.")["urgency"] == "medium"

    def test_empty_text(self):
        assert extract("") == {"urgency": "medium"}
        assert extract("   \n ") == {"urgency": "medium"}

    @pytest.mark.parametrize("text, urgency", [
        ("this is urgent", "emergency"),
        ("high priority case", "high"),
        ("low priority case", "low"),
    ])
    def test_cues(self, text, urgency):
        assert extract(text)["urgency"] == urgency


class TestVocabularies:

    def test_vocabulary_order_preserved(self):
        result = extract("Diagnosed with epilepsy and autism; needs speech therapy and counselling.")

        assert result["disabilities"] == ["autism", "epilepsy"]
        assert result["support_needs"] == ["therapy", "counselling", "speech therapy"]

    def test_custom_locations(self):
        extractor = ReferralExtractor(locations=["Swansea", "York"])
        result = extractor.extract("Prefer Swansea, not York.")

        assert result["preferred_locations"] == ["Swansea"]
        assert result["excluded_locations"] == ["York"]

    def test_location_prefix_is_word_bounded(self):
        result = extract("Prefer Bathgate.")
        assert "preferred_locations" not in result


def test_extraction_is_deterministic():
    assert extract(SAMPLE_REFERRAL, today=TODAY) == extract(SAMPLE_REFERRAL, today=TODAY)
