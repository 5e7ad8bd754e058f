"""
Subscription analytics aggregation.

Everything is recomputed from repository snapshots on each call; nothing is
cached or persisted and no subscription lock is taken.
"""

from collections import Counter
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import structlog
from dateutil.relativedelta import relativedelta

from subledger.analytics.models import (
    ChurnAnalysis,
    ChurnReason,
    CohortData,
    GrowthRates,
    RevenueForecast,
    RevenueMetrics,
    SubscriptionAnalytics,
)
from subledger.catalog.models import BillingCycle, SubscriptionTier
from subledger.money import round_minor_units
from subledger.payments.models import FeeType, PaymentStatus, PaymentTransaction, PaymentType
from subledger.repository.base import SubscriptionRepository, TransactionRepository
from subledger.settings import Settings, get_settings
from subledger.subscriptions.models import Subscription, SubscriptionStatus
from subledger.subscriptions.service import utcnow

logger = structlog.get_logger(__name__)

S = SubscriptionStatus

COHORT_MONTHS = 12
RETENTION_CHECKPOINTS = (1, 2, 3, 6, 12)
FORECAST_BASE_CONFIDENCE = 0.85
FORECAST_CONFIDENCE_DECAY = 0.03


def rate(part: int, whole: int) -> float:
    """Percentage rounded to two places; 0 when ``whole`` is empty."""
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def monthly_amount(subscriptions: Iterable[Subscription]) -> Decimal:
    """Exact monthly-normalised sum of subscription amounts."""
    return sum(
        (Decimal(sub.amount) / Decimal(sub.billing_cycle.months) for sub in subscriptions),
        Decimal(0),
    )


def linear_trend(values: list[int]) -> tuple[float, float]:
    """Least-squares ``(intercept, slope)`` for ``values`` indexed 0..n-1."""
    n = len(values)
    if n == 0:
        return 0.0, 0.0
    if n == 1:
        return float(values[0]), 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    slope = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(values)) / denominator
    return mean_y - slope * mean_x, slope


class AnalyticsAggregator:
    """Read-only projections over subscriptions and payment transactions."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        transactions: TransactionRepository,
        settings: Settings.BillingSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.subscriptions = subscriptions
        self.transactions = transactions
        self.settings = settings or get_settings().billing
        self.clock = clock

    async def get_analytics(self, as_of: datetime | None = None) -> SubscriptionAnalytics:
        """
        Compute subscription, revenue, cohort and churn analytics.

        Args:
            as_of: Reference instant; transactions after it are ignored

        Returns:
            SubscriptionAnalytics snapshot
        """
        as_of = as_of or self.clock()
        subscriptions = await self.subscriptions.list_all()
        transactions = [
            txn for txn in await self.transactions.list_transactions() if txn.created_at <= as_of
        ]

        statuses = Counter(sub.status for sub in subscriptions)
        active = [sub for sub in subscriptions if sub.status == S.ACTIVE]
        total = len(subscriptions)

        mrr = monthly_amount(active)
        arpu = mrr / len(active) if active else Decimal(0)

        analytics = SubscriptionAnalytics(
            as_of=as_of,
            total_subscriptions=total,
            active_subscriptions=statuses[S.ACTIVE],
            trial_subscriptions=statuses[S.TRIALING],
            canceled_subscriptions=statuses[S.CANCELED],
            past_due_subscriptions=statuses[S.PAST_DUE],
            paused_subscriptions=statuses[S.PAUSED],
            churn_rate=rate(statuses[S.CANCELED], total),
            monthly_recurring_revenue=round_minor_units(mrr),
            annual_recurring_revenue=round_minor_units(mrr * 12),
            average_revenue_per_user=round_minor_units(arpu),
            customer_lifetime_value=round_minor_units(
                arpu * self.settings.customer_lifetime_months
            ),
            status_distribution={status: statuses[status] for status in SubscriptionStatus},
            tier_distribution=self._distribution(subscriptions, SubscriptionTier, "tier"),
            billing_cycle_distribution=self._distribution(
                subscriptions, BillingCycle, "billing_cycle"
            ),
            payment_method_distribution=dict(
                Counter(sub.payment_method.type.value for sub in subscriptions)
            ),
            geographic_distribution=dict(
                Counter(sub.billing.address.country or "unknown" for sub in subscriptions)
            ),
            cohort_analysis=self._cohorts(subscriptions, as_of),
            revenue_metrics=self._revenue_metrics(transactions, as_of),
            churn_analysis=self._churn_analysis(subscriptions),
        )

        logger.debug(
            "Analytics computed",
            total_subscriptions=total,
            mrr=analytics.monthly_recurring_revenue,
            transactions=len(transactions),
        )
        return analytics

    @staticmethod
    def _distribution(subscriptions: list[Subscription], enum_type, attribute: str) -> dict:
        counts = Counter(getattr(sub, attribute) for sub in subscriptions)
        return {member: counts[member] for member in enum_type}

    # Revenue -----------------------------------------------------------------

    @staticmethod
    def _succeeded(
        transactions: list[PaymentTransaction], refunds: bool = False
    ) -> list[PaymentTransaction]:
        return [
            txn
            for txn in transactions
            if txn.status == PaymentStatus.SUCCEEDED
            and (txn.type == PaymentType.REFUND) == refunds
        ]

    def _revenue_metrics(
        self, transactions: list[PaymentTransaction], as_of: datetime
    ) -> RevenueMetrics:
        charges = self._succeeded(transactions)
        gross = sum(txn.amount for txn in charges)
        refunds = sum(txn.amount for txn in self._succeeded(transactions, refunds=True))

        fees = {fee_type: 0 for fee_type in FeeType}
        for txn in charges:
            for fee in txn.fees:
                fees[fee.type] += fee.amount
        total_fees = sum(fees.values())

        monthly = self._monthly_revenue(charges, as_of)
        return RevenueMetrics(
            gross_revenue=gross,
            refunds=refunds,
            fees=fees,
            total_fees=total_fees,
            net_revenue=gross - refunds - total_fees,
            growth=GrowthRates(
                monthly=self._growth(charges, as_of, 30),
                quarterly=self._growth(charges, as_of, 90),
                yearly=self._growth(charges, as_of, 365),
            ),
            monthly_revenue=monthly,
            forecasting=self._forecast(monthly, as_of),
        )

    @staticmethod
    def _growth(charges: list[PaymentTransaction], as_of: datetime, days: int) -> float:
        window = timedelta(days=days)
        current = sum(txn.amount for txn in charges if as_of - window < txn.created_at <= as_of)
        previous = sum(
            txn.amount
            for txn in charges
            if as_of - 2 * window < txn.created_at <= as_of - window
        )
        if previous == 0:
            return 0.0
        return round((current - previous) / previous * 100, 2)

    @staticmethod
    def _monthly_revenue(charges: list[PaymentTransaction], as_of: datetime) -> dict[str, int]:
        first = month_start(as_of) - relativedelta(months=COHORT_MONTHS - 1)
        buckets = {
            month_key(first + relativedelta(months=offset)): 0 for offset in range(COHORT_MONTHS)
        }
        for txn in charges:
            key = month_key(txn.created_at.astimezone(UTC))
            if key in buckets:
                buckets[key] += txn.amount
        return buckets

    def _forecast(self, monthly: dict[str, int], as_of: datetime) -> list[RevenueForecast]:
        values = list(monthly.values())
        intercept, slope = linear_trend(values)
        next_month = month_start(as_of) + relativedelta(months=1)

        forecasts = []
        for horizon in range(1, self.settings.forecast_months + 1):
            predicted = intercept + slope * (len(values) - 1 + horizon)
            confidence = FORECAST_BASE_CONFIDENCE - FORECAST_CONFIDENCE_DECAY * (horizon - 1)
            forecasts.append(
                RevenueForecast(
                    month=month_key(next_month + relativedelta(months=horizon - 1)),
                    predicted_revenue=max(0, round_minor_units(Decimal(str(predicted)))),
                    confidence=round(max(confidence, 0.0), 2),
                    factors=[
                        f"Linear trend over trailing {len(values)} months",
                        f"Slope {round(slope):+d} per month",
                    ],
                )
            )
        return forecasts

    # Cohorts and churn ----------------------------------------------------------

    @staticmethod
    def _cohorts(subscriptions: list[Subscription], as_of: datetime) -> list[CohortData]:
        cohorts = []
        current_month = month_start(as_of)
        for offset in range(COHORT_MONTHS - 1, -1, -1):
            start = current_month - relativedelta(months=offset)
            end = start + relativedelta(months=1)
            members = [sub for sub in subscriptions if start <= sub.created_at < end]

            retention: dict[str, float] = {}
            churn: dict[str, float] = {}
            if members:
                for age in RETENTION_CHECKPOINTS:
                    checkpoint = start + relativedelta(months=age)
                    if checkpoint > as_of:
                        break
                    retained = sum(
                        1
                        for sub in members
                        if sub.canceled_at is None or sub.canceled_at >= checkpoint
                    )
                    retention[f"month_{age}"] = rate(retained, len(members))
                    churn[f"month_{age}"] = round(100 - retention[f"month_{age}"], 2)

            cohorts.append(
                CohortData(
                    month=month_key(start),
                    new_subscriptions=len(members),
                    revenue=round_minor_units(
                        monthly_amount(sub for sub in members if sub.status == S.ACTIVE)
                    ),
                    retention_rates=retention,
                    churn_rates=churn,
                )
            )
        return cohorts

    @staticmethod
    def _churn_analysis(subscriptions: list[Subscription]) -> ChurnAnalysis:
        canceled = [sub for sub in subscriptions if sub.status == S.CANCELED]

        def churn_by(attribute: str, members) -> dict:
            totals = Counter(getattr(sub, attribute) for sub in subscriptions)
            lost = Counter(getattr(sub, attribute) for sub in canceled)
            return {member: rate(lost[member], totals[member]) for member in members}

        reasons = Counter(sub.cancellation_reason or "Unspecified" for sub in canceled)
        churn_reasons = [
            ChurnReason(reason=reason, count=count, percentage=rate(count, len(canceled)))
            for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
        ]

        lifetimes = [
            (sub.canceled_at - sub.created_at).total_seconds() / 86400
            for sub in canceled
            if sub.canceled_at is not None
        ]

        return ChurnAnalysis(
            overall_churn_rate=rate(len(canceled), len(subscriptions)),
            churn_by_tier=churn_by("tier", SubscriptionTier),
            churn_by_cycle=churn_by("billing_cycle", BillingCycle),
            churn_reasons=churn_reasons,
            time_to_churn=round(sum(lifetimes) / len(lifetimes), 1) if lifetimes else 0.0,
        )
