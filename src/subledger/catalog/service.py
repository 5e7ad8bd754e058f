"""
Plan catalog service.

Read-only to the engine: plans are looked up by id or tier and priced per
billing cycle. Publishing a plan replaces nothing, a plan id is published
once.
"""

import structlog

from subledger.catalog.models import (
    BillingCycle,
    PlanFeature,
    PlanLimits,
    PlanPricing,
    SubscriptionPlan,
    SubscriptionTier,
    SupportLevel,
)
from subledger.exceptions import BillingConfigurationError, PlanNotFoundError, PricingNotFoundError

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """In-process registry of published plans."""

    def __init__(self, plans: list[SubscriptionPlan] | None = None) -> None:
        self._plans: dict[str, SubscriptionPlan] = {}
        for plan in plans if plans is not None else default_plans():
            self.publish(plan)

    def publish(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Publish a plan; a published plan id cannot be republished."""
        if plan.plan_id in self._plans:
            raise BillingConfigurationError(
                f"Plan {plan.plan_id} is already published",
                config_key="plan_id",
                recovery_hint="Publish changed pricing under a new plan id",
            )
        self._plans[plan.plan_id] = plan
        logger.debug("Plan published", plan_id=plan.plan_id, tier=plan.tier.value)
        return plan

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    def get_plan_for_tier(self, tier: SubscriptionTier) -> SubscriptionPlan:
        """Active plan for ``tier``; featured plans win when several exist."""
        candidates = [p for p in self._plans.values() if p.tier == tier and p.is_active]
        if not candidates:
            raise PlanNotFoundError(f"No active plan for tier {tier.value}", tier=tier.value)
        candidates.sort(key=lambda p: (not p.is_featured, p.plan_id))
        return candidates[0]

    def get_pricing(self, plan: SubscriptionPlan, billing_cycle: BillingCycle) -> PlanPricing:
        pricing = plan.pricing_for(billing_cycle)
        if pricing is None:
            raise PricingNotFoundError(
                f"Plan {plan.plan_id} has no {billing_cycle.value} pricing",
                plan_id=plan.plan_id,
                billing_cycle=billing_cycle.value,
            )
        return pricing

    def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        plans = [p for p in self._plans.values() if p.is_active or not active_only]
        return sorted(plans, key=lambda p: p.plan_id)


def default_plans() -> list[SubscriptionPlan]:
    """Foundation, Advanced and Enterprise plans, priced monthly and yearly."""
    return [
        SubscriptionPlan(
            plan_id="plan_foundation",
            name="Foundation Tier",
            tier=SubscriptionTier.FOUNDATION,
            description="For individual developers and small teams getting started",
            features=(
                PlanFeature(name="Template library", description="Curated template library"),
                PlanFeature(name="Learning roadmap", description="Structured learning path"),
                PlanFeature(name="Community support", unlimited=True),
                PlanFeature(name="Progress tracking", unlimited=True),
            ),
            pricing=(
                PlanPricing(
                    billing_cycle=BillingCycle.MONTHLY,
                    amount=2495,
                    gateway_price_id="price_foundation_monthly",
                ),
                PlanPricing(
                    billing_cycle=BillingCycle.YEARLY,
                    amount=24950,
                    gateway_price_id="price_foundation_yearly",
                    discount_percentage=17,
                ),
            ),
            limits=PlanLimits(
                max_users=1,
                max_projects=5,
                max_templates=100,
                max_storage_gb=1,
                api_calls_per_month=1000,
                support_level=SupportLevel.COMMUNITY,
                response_time="24h",
            ),
            trial_days=7,
            is_featured=True,
        ),
        SubscriptionPlan(
            plan_id="plan_advanced",
            name="Advanced Tier",
            tier=SubscriptionTier.ADVANCED,
            description="For growing teams scaling their practices",
            features=(
                PlanFeature(name="Everything in Foundation"),
                PlanFeature(name="Team collaboration tools"),
                PlanFeature(name="Custom template creation", unlimited=True),
                PlanFeature(name="Priority email support", unlimited=True),
                PlanFeature(name="API access", limit=10000),
            ),
            pricing=(
                PlanPricing(
                    billing_cycle=BillingCycle.MONTHLY,
                    amount=9995,
                    gateway_price_id="price_advanced_monthly",
                ),
                PlanPricing(
                    billing_cycle=BillingCycle.YEARLY,
                    amount=99950,
                    gateway_price_id="price_advanced_yearly",
                    discount_percentage=17,
                ),
            ),
            limits=PlanLimits(
                max_users=10,
                max_projects=25,
                max_templates=500,
                max_storage_gb=10,
                api_calls_per_month=10000,
                support_level=SupportLevel.PRIORITY,
                response_time="4h",
            ),
            trial_days=14,
        ),
        SubscriptionPlan(
            plan_id="plan_enterprise",
            name="Enterprise Tier",
            tier=SubscriptionTier.ENTERPRISE,
            description="For large organizations requiring dedicated support",
            features=(
                PlanFeature(name="Everything in Advanced"),
                PlanFeature(name="Dedicated account manager", unlimited=True),
                PlanFeature(name="SLA guarantees", unlimited=True),
                PlanFeature(name="Unlimited API access", unlimited=True),
            ),
            pricing=(
                PlanPricing(
                    billing_cycle=BillingCycle.MONTHLY,
                    amount=49995,
                    gateway_price_id="price_enterprise_monthly",
                ),
                PlanPricing(
                    billing_cycle=BillingCycle.YEARLY,
                    amount=499950,
                    gateway_price_id="price_enterprise_yearly",
                    discount_percentage=17,
                ),
            ),
            limits=PlanLimits(
                max_users=100,
                max_storage_gb=100,
                support_level=SupportLevel.DEDICATED,
                response_time="1h",
            ),
            trial_days=30,
            setup_fee=500000,
        ),
    ]
