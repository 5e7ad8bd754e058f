"""
Billing engine test fixtures and configuration.

Provides a frozen clock, a scripted payment gateway, a small plan catalog
and an engine wired to in-memory repositories.
"""

import asyncio
from collections import deque
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from subledger.catalog.models import (
    BillingCycle,
    PlanLimits,
    PlanPricing,
    SubscriptionPlan,
    SubscriptionTier,
)
from subledger.catalog.service import PlanCatalog
from subledger.engine import BillingEngine
from subledger.events import Event, EventBus, reset_event_bus
from subledger.exceptions import GatewayDeclinedError
from subledger.metrics import set_billing_metrics
from subledger.payments.gateway import PaymentGateway
from subledger.payments.models import ChargeResult, FeeType, PaymentFee, RefundResult
from subledger.settings import Settings, reset_settings
from subledger.subscriptions.models import (
    PaymentMethodInfo,
    Subscription,
    SubscriptionStatus,
)
from subledger.subscriptions.periods import add_cycle

START = datetime(2024, 3, 1, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_globals():
    """Fresh settings, event bus and metrics for every test."""
    reset_settings()
    reset_event_bus()
    set_billing_metrics(None)
    yield
    reset_settings()
    reset_event_bus()
    set_billing_metrics(None)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeGateway(PaymentGateway):
    """
    Scripted gateway.

    Outcomes are consumed from ``outcomes`` and fall back to ``default``:
    ``succeed``, ``decline``, ``declined_error``, ``timeout`` or ``raise``.
    A repeated idempotency key returns the stored result without charging
    or refunding again.
    """

    def __init__(self, default: str = "succeed", fee: int = 0) -> None:
        self.default = default
        self.fee = fee
        self.outcomes: deque[str] = deque()
        self.charges: list[dict[str, Any]] = []
        self.results: dict[str, ChargeResult] = {}
        self.refunds: list[tuple[str, int]] = []
        self.refund_results: dict[str, RefundResult] = {}
        self.refund_outcome = "succeed"

    def script(self, *outcomes: str) -> None:
        self.outcomes.extend(outcomes)

    async def charge(
        self,
        subscription_id: str,
        amount: int,
        currency: str,
        payment_method: PaymentMethodInfo,
        idempotency_key: str,
    ) -> ChargeResult:
        if idempotency_key in self.results:
            return self.results[idempotency_key]

        outcome = self.outcomes.popleft() if self.outcomes else self.default
        self.charges.append(
            {
                "subscription_id": subscription_id,
                "amount": amount,
                "currency": currency,
                "payment_method_id": payment_method.payment_method_id,
                "idempotency_key": idempotency_key,
            }
        )
        # Yield so concurrent batches interleave like a real network call
        await asyncio.sleep(0)

        if outcome == "timeout":
            await asyncio.sleep(1)
        if outcome == "raise":
            raise ConnectionError("gateway unreachable")
        if outcome == "declined_error":
            raise GatewayDeclinedError("Insufficient funds", failure_code="insufficient_funds")

        if outcome == "decline":
            result = ChargeResult(
                succeeded=False,
                failure_code="card_declined",
                failure_message="Your card was declined",
            )
        else:
            result = ChargeResult(
                succeeded=True,
                transaction_reference=f"ch_{len(self.charges)}",
                fees=(
                    [PaymentFee(type=FeeType.GATEWAY, amount=self.fee, currency=currency)]
                    if self.fee
                    else []
                ),
            )
        self.results[idempotency_key] = result
        return result

    async def refund(
        self, transaction_reference: str, amount: int, idempotency_key: str
    ) -> RefundResult:
        if idempotency_key in self.refund_results:
            return self.refund_results[idempotency_key]

        self.refunds.append((transaction_reference, amount))
        await asyncio.sleep(0)
        if self.refund_outcome == "raise":
            raise ConnectionError("gateway unreachable")
        if self.refund_outcome == "fail":
            return RefundResult(
                succeeded=False,
                failure_code="charge_disputed",
                failure_message="Charge is under dispute",
            )
        result = RefundResult(
            succeeded=True, refund_reference=f"re_{len(self.refunds)}", amount=amount
        )
        self.refund_results[idempotency_key] = result
        return result


def build_test_plans() -> list[SubscriptionPlan]:
    return [
        SubscriptionPlan(
            plan_id="plan_basic",
            name="Basic",
            tier=SubscriptionTier.FOUNDATION,
            pricing=(
                PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=2000),
                PlanPricing(billing_cycle=BillingCycle.QUARTERLY, amount=5400),
                PlanPricing(billing_cycle=BillingCycle.YEARLY, amount=24000),
            ),
            limits=PlanLimits(api_calls_per_month=1000),
            is_featured=True,
        ),
        SubscriptionPlan(
            plan_id="plan_legacy",
            name="Legacy Basic",
            tier=SubscriptionTier.FOUNDATION,
            pricing=(PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=1500),),
            is_active=False,
        ),
        SubscriptionPlan(
            plan_id="plan_pro",
            name="Pro",
            tier=SubscriptionTier.ADVANCED,
            pricing=(
                PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=9995),
                PlanPricing(billing_cycle=BillingCycle.YEARLY, amount=99950),
            ),
            limits=PlanLimits(api_calls_per_month=10000),
            is_featured=True,
        ),
        SubscriptionPlan(
            plan_id="plan_pro_trial",
            name="Pro (trial)",
            tier=SubscriptionTier.ADVANCED,
            pricing=(PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=9995),),
            trial_days=14,
        ),
        SubscriptionPlan(
            plan_id="plan_scale",
            name="Scale",
            tier=SubscriptionTier.ENTERPRISE,
            pricing=(
                PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=24995),
                PlanPricing(billing_cycle=BillingCycle.YEARLY, amount=249950),
            ),
        ),
    ]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog(build_test_plans())


@pytest.fixture
def billing_settings() -> Settings.BillingSettings:
    return Settings.BillingSettings(gateway_timeout_seconds=0.05)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(event_bus) -> list[Event]:
    """Every event published on ``event_bus``, in order."""
    recorded: list[Event] = []
    event_bus.subscribe("*", recorded.append)
    return recorded


@pytest.fixture
def engine(gateway, catalog, billing_settings, event_bus, clock) -> BillingEngine:
    """Billing engine on in-memory repositories."""
    return BillingEngine(
        gateway,
        catalog=catalog,
        settings=billing_settings,
        event_bus=event_bus,
        clock=clock,
    )


@pytest.fixture
def make_payment_method():
    def _make(
        last4: str = "4242", expiry_month: int = 12, expiry_year: int = 2030, **kwargs: Any
    ) -> PaymentMethodInfo:
        return PaymentMethodInfo(
            payment_method_id=f"pm_{last4}",
            brand="visa",
            last4=last4,
            expiry_month=expiry_month,
            expiry_year=expiry_year,
            **kwargs,
        )

    return _make


@pytest.fixture
def card(make_payment_method) -> PaymentMethodInfo:
    return make_payment_method()


@pytest.fixture
def make_subscription(make_payment_method):
    """Build a Subscription directly, bypassing the ledger."""

    def _make(**overrides: Any) -> Subscription:
        billing_cycle = overrides.get("billing_cycle", BillingCycle.MONTHLY)
        period_start = overrides.pop("current_period_start", START)
        period_end = overrides.pop("current_period_end", add_cycle(period_start, billing_cycle))
        fields: dict[str, Any] = {
            "user_id": "user_1",
            "plan_id": "plan_basic",
            "status": SubscriptionStatus.ACTIVE,
            "tier": SubscriptionTier.FOUNDATION,
            "billing_cycle": billing_cycle,
            "amount": 2000,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "next_billing_date": period_end,
            "payment_method": make_payment_method(),
            "created_at": period_start,
            "updated_at": period_start,
        }
        fields.update(overrides)
        return Subscription(**fields)

    return _make
