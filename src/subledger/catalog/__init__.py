"""Plan catalog: tiers, billing cycles and published plans."""

from subledger.catalog.models import (
    TIER_RANK,
    BillingCycle,
    PlanFeature,
    PlanLimits,
    PlanPricing,
    SubscriptionPlan,
    SubscriptionTier,
    SupportLevel,
    is_upgrade,
)
from subledger.catalog.service import PlanCatalog, default_plans

__all__ = [
    "TIER_RANK",
    "BillingCycle",
    "PlanCatalog",
    "PlanFeature",
    "PlanLimits",
    "PlanPricing",
    "SubscriptionPlan",
    "SubscriptionTier",
    "SupportLevel",
    "default_plans",
    "is_upgrade",
]
