"""
Plan catalog models.

Plans are reference data: immutable once published and referenced by id
from subscriptions, never embedded.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionTier(str, Enum):
    """Plan tiers. Ordering comes from ``TIER_RANK``, not declaration order."""

    FOUNDATION = "foundation"
    ADVANCED = "advanced"
    ENTERPRISE = "enterprise"


TIER_RANK: dict[SubscriptionTier, int] = {
    SubscriptionTier.FOUNDATION: 1,
    SubscriptionTier.ADVANCED: 2,
    SubscriptionTier.ENTERPRISE: 3,
}


def is_upgrade(from_tier: SubscriptionTier, to_tier: SubscriptionTier) -> bool:
    return TIER_RANK[to_tier] > TIER_RANK[from_tier]


class BillingCycle(str, Enum):
    """Billing cycle lengths."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "yearly": 12}[self.value]


class SupportLevel(str, Enum):
    COMMUNITY = "community"
    EMAIL = "email"
    PRIORITY = "priority"
    DEDICATED = "dedicated"


class PlanFeature(BaseModel):
    """Feature line on a plan."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    included: bool = True
    limit: int | None = None
    unlimited: bool = False


class PlanPricing(BaseModel):
    """Price of a plan for one billing cycle."""

    model_config = ConfigDict(frozen=True)

    billing_cycle: BillingCycle
    amount: int = Field(ge=0, description="Price in minor currency units")
    currency: str = Field("USD", min_length=3, max_length=3)
    gateway_price_id: str | None = Field(None, description="Price identifier at the gateway")
    discount_percentage: int | None = Field(None, ge=0, le=100)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class PlanLimits(BaseModel):
    """Usage limits attached to a plan."""

    model_config = ConfigDict(frozen=True)

    max_users: int | None = None
    max_projects: int | None = None
    max_templates: int | None = None
    max_storage_gb: int | None = None
    max_bandwidth_gb: int | None = None
    api_calls_per_month: int | None = None
    support_level: SupportLevel = SupportLevel.COMMUNITY
    response_time: str | None = None


class SubscriptionPlan(BaseModel):
    """Published plan. Immutable after publish."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    tier: SubscriptionTier
    description: str = ""
    features: tuple[PlanFeature, ...] = ()
    pricing: tuple[PlanPricing, ...] = Field(min_length=1)
    limits: PlanLimits = Field(default_factory=PlanLimits)
    trial_days: int = Field(0, ge=0)
    setup_fee: int | None = Field(None, ge=0)
    is_active: bool = True
    is_featured: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("pricing")
    @classmethod
    def validate_unique_cycles(cls, v: tuple[PlanPricing, ...]) -> tuple[PlanPricing, ...]:
        cycles = [p.billing_cycle for p in v]
        if len(cycles) != len(set(cycles)):
            raise ValueError("A plan may publish at most one price per billing cycle")
        return v

    def pricing_for(self, billing_cycle: BillingCycle) -> PlanPricing | None:
        for pricing in self.pricing:
            if pricing.billing_cycle == billing_cycle:
                return pricing
        return None
