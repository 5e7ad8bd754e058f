"""
Tests for the plan catalog.
"""

import pytest
from pydantic import ValidationError

from subledger.catalog.models import (
    TIER_RANK,
    BillingCycle,
    PlanPricing,
    SubscriptionPlan,
    SubscriptionTier,
    is_upgrade,
)
from subledger.catalog.service import PlanCatalog, default_plans
from subledger.exceptions import (
    BillingConfigurationError,
    PlanNotFoundError,
    PricingNotFoundError,
)


class TestCatalogModels:
    """Test tier ordering, cycles and plan validation."""

    def test_tier_rank_orders_tiers(self):
        """Foundation < Advanced < Enterprise."""
        assert (
            TIER_RANK[SubscriptionTier.FOUNDATION]
            < TIER_RANK[SubscriptionTier.ADVANCED]
            < TIER_RANK[SubscriptionTier.ENTERPRISE]
        )
        assert is_upgrade(SubscriptionTier.FOUNDATION, SubscriptionTier.ENTERPRISE)
        assert not is_upgrade(SubscriptionTier.ENTERPRISE, SubscriptionTier.ADVANCED)

    @pytest.mark.parametrize(
        "cycle,months",
        [
            (BillingCycle.MONTHLY, 1),
            (BillingCycle.QUARTERLY, 3),
            (BillingCycle.YEARLY, 12),
        ],
    )
    def test_billing_cycle_months(self, cycle, months):
        assert cycle.months == months

    def test_currency_is_uppercased(self):
        pricing = PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=100, currency="eur")
        assert pricing.currency == "EUR"

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=-1)

    def test_plan_requires_pricing(self):
        with pytest.raises(ValidationError):
            SubscriptionPlan(
                plan_id="plan_empty", name="Empty", tier=SubscriptionTier.FOUNDATION, pricing=()
            )

    def test_plan_rejects_duplicate_cycles(self):
        """One price per billing cycle."""
        with pytest.raises(ValidationError):
            SubscriptionPlan(
                plan_id="plan_dup",
                name="Dup",
                tier=SubscriptionTier.FOUNDATION,
                pricing=(
                    PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=100),
                    PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=200),
                ),
            )

    def test_plan_is_immutable(self):
        plan = default_plans()[0]
        with pytest.raises(ValidationError):
            plan.trial_days = 0


class TestPlanCatalog:
    """Test catalog lookups."""

    def test_default_catalog_covers_every_tier(self):
        catalog = PlanCatalog()
        assert {p.tier for p in catalog.list_plans()} == set(SubscriptionTier)
        assert catalog.get_plan_for_tier(SubscriptionTier.FOUNDATION).plan_id == "plan_foundation"

    def test_get_plan_unknown(self, catalog):
        with pytest.raises(PlanNotFoundError) as exc_info:
            catalog.get_plan("plan_missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "PLAN_NOT_FOUND"
        assert exc_info.value.context == {"plan_id": "plan_missing"}

    def test_featured_plan_wins_for_tier(self, catalog):
        """plan_pro and plan_pro_trial share a tier; the featured one is picked."""
        assert catalog.get_plan_for_tier(SubscriptionTier.ADVANCED).plan_id == "plan_pro"

    def test_inactive_plans_are_not_offered_for_tier(self):
        catalog = PlanCatalog(
            [
                SubscriptionPlan(
                    plan_id="plan_old",
                    name="Old",
                    tier=SubscriptionTier.ENTERPRISE,
                    pricing=(PlanPricing(billing_cycle=BillingCycle.MONTHLY, amount=1),),
                    is_active=False,
                )
            ]
        )
        with pytest.raises(PlanNotFoundError):
            catalog.get_plan_for_tier(SubscriptionTier.ENTERPRISE)

    def test_get_pricing(self, catalog):
        plan = catalog.get_plan("plan_basic")
        assert catalog.get_pricing(plan, BillingCycle.QUARTERLY).amount == 5400

    def test_get_pricing_missing_cycle(self, catalog):
        plan = catalog.get_plan("plan_pro")
        with pytest.raises(PricingNotFoundError) as exc_info:
            catalog.get_pricing(plan, BillingCycle.QUARTERLY)

        assert exc_info.value.context == {"plan_id": "plan_pro", "billing_cycle": "quarterly"}

    def test_publish_is_once_per_plan_id(self, catalog):
        plan = catalog.get_plan("plan_basic")
        with pytest.raises(BillingConfigurationError):
            catalog.publish(plan)

    def test_list_plans_filters_inactive(self, catalog):
        active = [p.plan_id for p in catalog.list_plans()]
        everything = [p.plan_id for p in catalog.list_plans(active_only=False)]

        assert "plan_legacy" not in active
        assert "plan_legacy" in everything
        assert everything == sorted(everything)
