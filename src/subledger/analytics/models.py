"""
Analytics response models.

Money values are integer minor units; rates are percentages rounded to two places.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from subledger.catalog.models import BillingCycle, SubscriptionTier
from subledger.payments.models import FeeType
from subledger.subscriptions.models import SubscriptionStatus


class GrowthRates(BaseModel):
    """Gross revenue growth against the preceding window of equal length."""

    monthly: float = Field(0.0, description="Last 30 days vs the 30 before, percent")
    quarterly: float = Field(0.0, description="Last 90 days vs the 90 before, percent")
    yearly: float = Field(0.0, description="Last 365 days vs the 365 before, percent")


class RevenueForecast(BaseModel):
    month: str = Field(description="YYYY-MM")
    predicted_revenue: int
    confidence: float = Field(ge=0.0, le=1.0)
    derived: bool = Field(True, description="Projection, not an observed value")
    factors: list[str] = Field(default_factory=list)


class RevenueMetrics(BaseModel):
    gross_revenue: int = 0
    refunds: int = 0
    fees: dict[FeeType, int] = Field(default_factory=dict)
    total_fees: int = 0
    net_revenue: int = 0
    growth: GrowthRates = Field(default_factory=GrowthRates)
    monthly_revenue: dict[str, int] = Field(
        default_factory=dict, description="Gross revenue per YYYY-MM over the trailing year"
    )
    forecasting: list[RevenueForecast] = Field(default_factory=list)


class CohortData(BaseModel):
    month: str = Field(description="Creation month, YYYY-MM")
    new_subscriptions: int
    revenue: int = Field(description="Current MRR contributed by the cohort")
    retention_rates: dict[str, float] = Field(default_factory=dict)
    churn_rates: dict[str, float] = Field(default_factory=dict)


class ChurnReason(BaseModel):
    reason: str
    count: int
    percentage: float


class ChurnAnalysis(BaseModel):
    overall_churn_rate: float = 0.0
    churn_by_tier: dict[SubscriptionTier, float] = Field(default_factory=dict)
    churn_by_cycle: dict[BillingCycle, float] = Field(default_factory=dict)
    churn_reasons: list[ChurnReason] = Field(default_factory=list)
    time_to_churn: float = Field(0.0, description="Average days from creation to cancellation")


class SubscriptionAnalytics(BaseModel):
    """Point-in-time subscription analytics; recomputed on every request."""

    as_of: datetime

    total_subscriptions: int = 0
    active_subscriptions: int = 0
    trial_subscriptions: int = 0
    canceled_subscriptions: int = 0
    past_due_subscriptions: int = 0
    paused_subscriptions: int = 0
    churn_rate: float = 0.0

    monthly_recurring_revenue: int = 0
    annual_recurring_revenue: int = 0
    average_revenue_per_user: int = 0
    customer_lifetime_value: int = 0

    status_distribution: dict[SubscriptionStatus, int] = Field(default_factory=dict)
    tier_distribution: dict[SubscriptionTier, int] = Field(default_factory=dict)
    billing_cycle_distribution: dict[BillingCycle, int] = Field(default_factory=dict)
    payment_method_distribution: dict[str, int] = Field(default_factory=dict)
    geographic_distribution: dict[str, int] = Field(default_factory=dict)

    cohort_analysis: list[CohortData] = Field(default_factory=list)
    revenue_metrics: RevenueMetrics = Field(default_factory=RevenueMetrics)
    churn_analysis: ChurnAnalysis = Field(default_factory=ChurnAnalysis)
