"""
Tests for environment-driven settings.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from subledger.catalog.service import PlanCatalog
from subledger.repository.memory import InMemorySubscriptionRepository
from subledger.settings import Environment, LogLevel, Settings, get_settings, reset_settings
from subledger.subscriptions.service import SubscriptionLedger


class TestSettings:
    """Test defaults and environment overrides."""

    def test_defaults(self):
        settings = get_settings()

        assert settings.billing.gateway_timeout_seconds == 30.0
        assert settings.billing.retry_backoff_hours == [24]
        assert settings.billing.max_retry_attempts == 4
        assert settings.billing.card_expiry_lookahead_days == 7
        assert settings.observability.log_level == LogLevel.INFO
        assert get_settings() is settings

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("BILLING__GATEWAY_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("BILLING__GATEWAY_FACTORY", "acme.gateways:build")
        monkeypatch.setenv("DATABASE__URL", "sqlite+aiosqlite:///./test.db")
        reset_settings()

        settings = get_settings()

        assert settings.billing.gateway_timeout_seconds == 5.0
        assert settings.billing.gateway_factory == "acme.gateways:build"
        assert settings.database.url == "sqlite+aiosqlite:///./test.db"

    def test_environment_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "PRODUCTION")
        reset_settings()

        settings = get_settings()

        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production is True
        assert settings.is_testing is False

    @pytest.mark.parametrize("hours", [[], [24, 0], [-1]])
    def test_backoff_must_be_positive(self, hours):
        with pytest.raises(ValidationError):
            Settings.BillingSettings(retry_backoff_hours=hours)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings.BillingSettings(gateway_timeout_seconds=0)


class TestRetrySchedule:
    """Test how the backoff schedule maps attempts to delays."""

    def test_last_delay_repeats(self):
        ledger = SubscriptionLedger(
            InMemorySubscriptionRepository(),
            PlanCatalog(),
            settings=Settings.BillingSettings(retry_backoff_hours=[24, 48, 72]),
        )

        assert [ledger.retry_delay(attempt) for attempt in range(1, 6)] == [
            timedelta(hours=24),
            timedelta(hours=48),
            timedelta(hours=72),
            timedelta(hours=72),
            timedelta(hours=72),
        ]
