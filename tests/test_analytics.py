"""
Tests for subscription analytics, revenue metrics and forecasting.
"""

from datetime import UTC, date, datetime

import pytest
import pytest_asyncio

from subledger.analytics.service import AnalyticsAggregator, linear_trend, rate
from subledger.catalog.models import BillingCycle, SubscriptionTier
from subledger.payments.models import (
    FeeType,
    PaymentFee,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
)
from subledger.repository.memory import (
    InMemorySubscriptionRepository,
    InMemoryTransactionRepository,
)
from subledger.settings import Settings
from subledger.subscriptions.models import BillingAddress, BillingInfo, SubscriptionStatus

AS_OF = datetime(2024, 6, 15, tzinfo=UTC)

S = SubscriptionStatus


def day(month: int, day: int) -> datetime:
    return datetime(2024, month, day, tzinfo=UTC)


def charge(
    amount: int,
    created_at: datetime,
    status=PaymentStatus.SUCCEEDED,
    type=PaymentType.SUBSCRIPTION,
    **kwargs,
):
    return PaymentTransaction(
        subscription_id="sub_a",
        amount=amount,
        status=status,
        type=type,
        created_at=created_at,
        **kwargs,
    )


@pytest_asyncio.fixture
async def aggregator(make_subscription):
    subscriptions = InMemorySubscriptionRepository()
    transactions = InMemoryTransactionRepository()

    await subscriptions.add(
        make_subscription(
            subscription_id="sub_a",
            created_at=day(1, 10),
            billing=BillingInfo(address=BillingAddress(country="US")),
        )
    )
    await subscriptions.add(
        make_subscription(
            subscription_id="sub_b",
            billing_cycle=BillingCycle.YEARLY,
            amount=24000,
            created_at=day(2, 5),
            billing=BillingInfo(address=BillingAddress(country="DE")),
        )
    )
    await subscriptions.add(
        make_subscription(
            subscription_id="sub_c",
            status=S.CANCELED,
            plan_id="plan_pro",
            tier=SubscriptionTier.ADVANCED,
            amount=9995,
            created_at=day(1, 20),
            canceled_at=day(3, 25),
            cancellation_reason="Too expensive",
        )
    )

    for transaction in [
        charge(1500, day(5, 1)),
        charge(
            2000,
            day(6, 1),
            fees=[PaymentFee(type=FeeType.GATEWAY, amount=88)],
        ),
        charge(1000, day(6, 5), transaction_id="txn_refunded"),
        charge(
            1000,
            day(6, 6),
            type=PaymentType.REFUND,
            metadata={"refunded_transaction_id": "txn_refunded"},
        ),
        charge(400, day(6, 7), type=PaymentType.REFUND, status=PaymentStatus.FAILED),
        charge(5000, day(6, 10), status=PaymentStatus.FAILED),
        charge(7000, day(6, 20)),
    ]:
        await transactions.add(transaction)

    return AnalyticsAggregator(
        subscriptions, transactions, settings=Settings.BillingSettings(), clock=lambda: AS_OF
    )


@pytest.mark.asyncio
class TestSubscriptionMetrics:
    """Test counts, recurring revenue and distributions."""

    async def test_counts_and_recurring_revenue(self, aggregator):
        analytics = await aggregator.get_analytics()

        assert analytics.as_of == AS_OF
        assert analytics.total_subscriptions == 3
        assert analytics.active_subscriptions == 2
        assert analytics.canceled_subscriptions == 1
        assert analytics.churn_rate == 33.33
        assert analytics.monthly_recurring_revenue == 4000
        assert analytics.annual_recurring_revenue == 48000
        assert analytics.average_revenue_per_user == 2000
        assert analytics.customer_lifetime_value == 48000

    async def test_distributions(self, aggregator):
        analytics = await aggregator.get_analytics()

        assert analytics.status_distribution[S.ACTIVE] == 2
        assert analytics.status_distribution[S.PAUSED] == 0
        assert analytics.tier_distribution[SubscriptionTier.FOUNDATION] == 2
        assert analytics.tier_distribution[SubscriptionTier.ADVANCED] == 1
        assert analytics.billing_cycle_distribution[BillingCycle.YEARLY] == 1
        assert analytics.payment_method_distribution == {"card": 3}
        assert analytics.geographic_distribution == {"US": 1, "DE": 1, "unknown": 1}

    async def test_churn_analysis(self, aggregator):
        churn = (await aggregator.get_analytics()).churn_analysis

        assert churn.overall_churn_rate == 33.33
        assert churn.churn_by_tier[SubscriptionTier.ADVANCED] == 100.0
        assert churn.churn_by_tier[SubscriptionTier.FOUNDATION] == 0.0
        assert churn.churn_by_tier[SubscriptionTier.ENTERPRISE] == 0.0
        assert [(r.reason, r.count, r.percentage) for r in churn.churn_reasons] == [
            ("Too expensive", 1, 100.0)
        ]
        assert churn.time_to_churn == 65.0

    async def test_cohorts(self, aggregator):
        cohorts = (await aggregator.get_analytics()).cohort_analysis

        assert len(cohorts) == 12
        assert cohorts[0].month == "2023-07"
        assert cohorts[-1].month == "2024-06"

        january = next(c for c in cohorts if c.month == "2024-01")
        assert january.new_subscriptions == 2
        assert january.revenue == 2000
        assert january.retention_rates == {"month_1": 100.0, "month_2": 100.0, "month_3": 50.0}
        assert january.churn_rates["month_3"] == 50.0

        july = cohorts[0]
        assert july.new_subscriptions == 0
        assert july.retention_rates == {}


@pytest.mark.asyncio
class TestRevenueMetrics:
    """Test revenue, growth and forecasting from transactions."""

    async def test_revenue_ignores_failed_and_future_transactions(self, aggregator):
        revenue = (await aggregator.get_analytics()).revenue_metrics

        assert revenue.gross_revenue == 4500
        assert revenue.refunds == 1000
        assert revenue.fees == {FeeType.GATEWAY: 88, FeeType.TAX: 0, FeeType.PROCESSING: 0}
        assert revenue.total_fees == 88
        assert revenue.net_revenue == 3412

    async def test_growth_rates(self, aggregator):
        growth = (await aggregator.get_analytics()).revenue_metrics.growth

        assert growth.monthly == 100.0
        assert growth.quarterly == 0.0
        assert growth.yearly == 0.0

    async def test_monthly_revenue_buckets(self, aggregator):
        monthly = (await aggregator.get_analytics()).revenue_metrics.monthly_revenue

        assert len(monthly) == 12
        assert list(monthly)[0] == "2023-07"
        assert monthly["2024-05"] == 1500
        assert monthly["2024-06"] == 3000
        assert sum(monthly.values()) == 4500

    async def test_forecast_follows_linear_trend(self, aggregator):
        forecasts = (await aggregator.get_analytics()).revenue_metrics.forecasting

        assert [f.month for f in forecasts] == ["2024-07", "2024-08", "2024-09"]
        assert [f.predicted_revenue for f in forecasts] == [1432, 1594, 1757]
        assert [f.confidence for f in forecasts] == [0.85, 0.82, 0.79]
        assert all(f.derived for f in forecasts)
        assert "Slope +163 per month" in forecasts[0].factors

    async def test_empty_repositories(self):
        aggregator = AnalyticsAggregator(
            InMemorySubscriptionRepository(),
            InMemoryTransactionRepository(),
            settings=Settings.BillingSettings(),
        )

        analytics = await aggregator.get_analytics(as_of=AS_OF)

        assert analytics.total_subscriptions == 0
        assert analytics.churn_rate == 0.0
        assert analytics.monthly_recurring_revenue == 0
        assert analytics.churn_analysis.time_to_churn == 0.0
        assert [f.predicted_revenue for f in analytics.revenue_metrics.forecasting] == [0, 0, 0]


class TestHelpers:
    """Test the pure numeric helpers."""

    def test_rate(self):
        assert rate(1, 3) == 33.33
        assert rate(5, 0) == 0.0

    def test_linear_trend(self):
        assert linear_trend([]) == (0.0, 0.0)
        assert linear_trend([7]) == (7.0, 0.0)
        intercept, slope = linear_trend([1, 3, 5])
        assert intercept == pytest.approx(1.0)
        assert slope == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_engine_analytics_after_renewal(engine, card):
    """Renewal charges flow into engine analytics."""
    await engine.create_subscription("user_1", "plan_basic", card, BillingCycle.MONTHLY)
    await engine.run_renewal_batch(
        as_of=date(2024, 4, 1), now=datetime(2024, 4, 1, 0, 5, tzinfo=UTC)
    )

    analytics = await engine.get_analytics(as_of=datetime(2024, 4, 2, tzinfo=UTC))

    assert analytics.monthly_recurring_revenue == 2000
    assert analytics.revenue_metrics.gross_revenue == 2000
    assert analytics.revenue_metrics.monthly_revenue["2024-04"] == 2000
