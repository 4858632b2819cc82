"""Tests for referral text normalization."""

from fostercare.pipelines.normalization import (
    clean_html,
    normalize_punctuation,
    normalize_text,
    normalize_whitespace,
    remove_emails,
    remove_urls,
)


def test_whitespace_collapsed():
    assert normalize_whitespace("  Age:\n\t 9  ") == "Age: 9"


def test_smart_punctuation():
    assert normalize_punctuation("“long–term” — it’s fine!!!") == "\"long-term\" - it's fine!"


def test_urls_and_emails_removed():
    assert remove_urls("see https://example.org/form now") == "see  now"
    assert remove_emails("contact duty.team@council.gov.uk today") == "contact  today"


def test_html_tags_removed():
    assert clean_html("<p>Age: <b>9</b></p>") == "Age: 9"


def test_normalize_text_defaults():
    text = "<div>Preferred:   LONDON</div>\nVisit www.council.gov.uk"
    assert normalize_text(text) == "preferred: london visit"


def test_normalize_text_keeps_case_when_asked():
    assert normalize_text("Prefer  Leeds", lowercase=False) == "Prefer Leeds"


def test_empty_text():
    assert normalize_text("   ") == ""
