"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from trendmate.config import Settings


def test_env_overrides_and_whitespace_stripping(monkeypatch):
    monkeypatch.setenv("TRENDMATE_WIDGET_KEY", '  "abc123"  ')
    monkeypatch.setenv("TRENDMATE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TRENDMATE_SELECT_INTEGRATION", "select-company-0001")

    config = Settings(_env_file=None)

    assert config.widget_key == "abc123"
    assert config.max_attempts == 5
    assert config.select_integration == "select-company-0001"


def test_defaults_match_endpoint_contract():
    config = Settings(_env_file=None)
    assert config.request_timeout == 240.0
    assert config.backoff_cap == 10.0
    assert 503 in config.overloaded_statuses
    assert config.min_search_length == 2


def test_attempt_budget_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_attempts=0)
