"""Unit tests for configuration and shared money helpers."""

import pytest
from pydantic import ValidationError

from src.config import Environment, RateLimitBackend, Settings, get_settings
from src.services.money import apply_markup, format_cents, round_cents, to_cents, to_number


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that settings have the documented defaults."""
    for var in ("ENVIRONMENT", "RATE_LIMIT_BACKEND", "REVIEW_CONFIDENCE_THRESHOLD", "LABOUR_CONFIDENCE_FLOOR"):
        monkeypatch.delenv(var, raising=False)

    settings = Settings(_env_file=None)

    assert settings.environment == Environment.DEVELOPMENT
    assert settings.rate_limit_backend == RateLimitBackend.SUPABASE
    assert settings.review_confidence_threshold == 0.70
    assert settings.labour_confidence_floor == 0.60
    assert settings.is_development is True


def test_settings_from_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that settings can be overridden via environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("rate_limit_backend", "redis")
    monkeypatch.setenv("RATE_LIMIT_EXTRACT", "7")

    settings = Settings(_env_file=None)

    assert settings.is_production is True
    assert settings.rate_limit_backend == RateLimitBackend.REDIS
    assert settings.rate_limit_extract == 7


def test_settings_reject_out_of_range_thresholds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REVIEW_CONFIDENCE_THRESHOLD", "1.5")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()


@pytest.mark.parametrize(("amount", "expected"), [(0.5, 1), (1.49, 1), (2.5, 3), (1149.9999999, 1150)])
def test_round_cents_half_up(amount: float, expected: int) -> None:
    assert round_cents(amount) == expected


def test_apply_markup() -> None:
    assert apply_markup(1000, 15) == 1150
    assert apply_markup(1000, 0) == 1000


def test_format_cents() -> None:
    assert format_cents(123456) == "$1234.56"
    assert format_cents(None) == "$0.00"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("2.5", 2.5), ("1,200", 1200.0), (3, 3.0), (None, None), (True, None), ("abc", None), (float("nan"), None)],
)
def test_to_number(value, expected) -> None:
    assert to_number(value) == expected


def test_to_cents_rounds() -> None:
    assert to_cents("1999.5") == 2000
    assert to_cents("free") is None
