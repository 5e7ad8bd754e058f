"""
Tests for the engine facade: gateway loading, wiring and an end-to-end flow.
"""

import sys
import types
from datetime import UTC, date, datetime

import pytest

from subledger.catalog.models import BillingCycle, SubscriptionTier
from subledger.db import create_all_tables_async, dispose_engine
from subledger.engine import BillingEngine, load_gateway
from subledger.events import BillingEvents
from subledger.exceptions import BillingConfigurationError
from subledger.payments.gateway import TimeoutGuardedGateway
from subledger.payments.models import PaymentType
from subledger.repository.sql import SQLSubscriptionRepository
from subledger.settings import reset_settings
from subledger.subscriptions.models import CreditType, ModificationType, SubscriptionStatus


@pytest.fixture
def gateway_module(monkeypatch, gateway):
    module = types.ModuleType("fake_gateways")
    module.build = lambda: gateway
    module.not_a_gateway = lambda: object()
    monkeypatch.setitem(sys.modules, "fake_gateways", module)
    return module


class TestLoadGateway:
    """Test resolving the configured gateway factory."""

    def test_unset(self):
        with pytest.raises(BillingConfigurationError, match="No payment gateway configured"):
            load_gateway(None)

    def test_unknown_module(self):
        with pytest.raises(BillingConfigurationError) as exc_info:
            load_gateway("no_such_gateway_module:build")

        assert exc_info.value.context == {"config_key": "billing.gateway_factory"}

    def test_unknown_attribute(self, gateway_module):
        with pytest.raises(BillingConfigurationError):
            load_gateway("fake_gateways:missing")

    def test_factory_must_return_gateway(self, gateway_module):
        with pytest.raises(BillingConfigurationError, match="not a PaymentGateway"):
            load_gateway("fake_gateways:not_a_gateway")

    def test_loads_gateway(self, gateway_module, gateway):
        assert load_gateway("fake_gateways:build") is gateway


class TestEngineWiring:
    """Test construction of the facade."""

    def test_gateway_is_wrapped_with_timeout(self, engine, gateway, billing_settings):
        assert isinstance(engine.gateway, TimeoutGuardedGateway)
        assert engine.gateway.gateway is gateway
        assert engine.gateway.timeout_seconds == billing_settings.gateway_timeout_seconds

    def test_guarded_gateway_is_not_wrapped_twice(self, gateway, billing_settings):
        guarded = TimeoutGuardedGateway(gateway, 1.0)

        engine = BillingEngine(guarded, settings=billing_settings)

        assert engine.gateway is guarded

    def test_components_share_locks(self, engine):
        assert engine.ledger.locks is engine.locks
        assert engine.issue_detector.locks is engine.locks

    def test_list_plans_defaults_to_active(self, engine):
        assert "plan_legacy" not in [p.plan_id for p in engine.list_plans()]
        assert "plan_legacy" in [p.plan_id for p in engine.list_plans(active_only=False)]

    @pytest.mark.asyncio
    async def test_from_settings_builds_sql_engine(
        self, monkeypatch, tmp_path, gateway_module, gateway, card
    ):
        monkeypatch.setenv("BILLING__GATEWAY_FACTORY", "fake_gateways:build")
        monkeypatch.setenv("BILLING__GATEWAY_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("DATABASE__URL", f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
        reset_settings()

        try:
            engine = BillingEngine.from_settings()
            await create_all_tables_async()

            assert isinstance(engine.subscriptions, SQLSubscriptionRepository)
            assert engine.gateway.gateway is gateway
            assert engine.gateway.timeout_seconds == 2.5

            subscription = await engine.create_subscription(
                "user_1", "plan_foundation", card, BillingCycle.MONTHLY
            )
            assert (await engine.get_subscription(subscription.subscription_id)).amount == 2495
        finally:
            await dispose_engine()


@pytest.mark.asyncio
async def test_subscription_lifecycle_end_to_end(engine, gateway, card, events):
    """Create, upgrade, credit, renew, refund and report through the facade."""
    subscription = await engine.create_subscription(
        "user_1", "plan_basic", card, BillingCycle.MONTHLY
    )
    sid = subscription.subscription_id

    upgraded = await engine.change_tier(sid, SubscriptionTier.ADVANCED)
    assert upgraded.tier == SubscriptionTier.ADVANCED
    assert upgraded.amount == 9995
    assert upgraded.modifications[-1].type == ModificationType.UPGRADE

    await engine.add_credit(sid, 500, "Onboarding delay", CreditType.GOODWILL, "support")

    batch = await engine.run_renewal_batch(
        as_of=date(2024, 4, 1), now=datetime(2024, 4, 1, 0, 5, tzinfo=UTC)
    )
    assert batch.succeeded == 1
    assert gateway.charges[0]["amount"] == 9495

    renewed = await engine.get_subscription(sid)
    assert renewed.status == SubscriptionStatus.ACTIVE
    assert renewed.available_credit(datetime(2024, 4, 1, tzinfo=UTC)) == 0
    assert renewed.latest_renewal.credits_applied == 500

    [transaction] = await engine.get_transaction_history(sid)
    refund = await engine.refund_transaction(transaction.transaction_id, amount=495)
    assert refund.type == PaymentType.REFUND
    assert refund.refunded_transaction_id == transaction.transaction_id
    assert (await engine.payments.get_transaction(transaction.transaction_id)).amount == 9495

    analytics = await engine.get_analytics(as_of=datetime(2024, 4, 2, tzinfo=UTC))
    assert analytics.monthly_recurring_revenue == 9995
    assert analytics.revenue_metrics.gross_revenue == 9495
    assert analytics.revenue_metrics.refunds == 495
    assert analytics.revenue_metrics.net_revenue == 9000

    event_types = [e.event_type for e in events]
    assert event_types.index(BillingEvents.SUBSCRIPTION_CREATED) < event_types.index(
        BillingEvents.SUBSCRIPTION_UPDATED
    )
    assert BillingEvents.SUBSCRIPTION_RENEWED in event_types
    assert event_types[-1] == BillingEvents.PAYMENT_REFUNDED
