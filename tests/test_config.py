"""Tests for settings and logging setup."""

import json
import logging

from fostercare.config import LoggingSettings, MatchingSettings
from fostercare.logging_config import JsonFormatter, setup_logging
from fostercare.rules import DEFAULT_MATCHING_CRITERIA, CriterionWeight, criteria_from_settings


def test_default_matching_settings_match_default_criteria():
    assert criteria_from_settings(MatchingSettings()) == DEFAULT_MATCHING_CRITERIA


def test_criterion_override_from_environment(monkeypatch):
    monkeypatch.setenv("MATCHING_AGE_RANGE", '{"weight": 1.5, "points": 30}')
    monkeypatch.setenv("MATCHING_RECOMMENDED_THRESHOLD", "0.6")

    matching = MatchingSettings()
    criteria = criteria_from_settings(matching)

    assert criteria.age_range == CriterionWeight(weight=1.5, points=30)
    assert criteria.max_possible_score == 115
    assert matching.recommended_threshold == 0.6


def test_json_formatter():
    record = logging.LogRecord("fostercare.rules", logging.INFO, __file__, 1, "ranked %d carers", (3,), None)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "fostercare.rules"
    assert payload["message"] == "ranked 3 carers"


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / "app.log"
    root = logging.getLogger()
    previous = list(root.handlers), root.level

    try:
        setup_logging(LoggingSettings(level="debug", format="text", file=str(log_file)))
        logging.getLogger("fostercare.test").debug("written to file")

        assert root.level == logging.DEBUG
        assert logging.getLogger("pdfminer").level == logging.WARNING
        for handler in root.handlers:
            handler.flush()
        assert "written to file" in log_file.read_text()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in previous[0]:
            root.addHandler(handler)
        root.setLevel(previous[1])
