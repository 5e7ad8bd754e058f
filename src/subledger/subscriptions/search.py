"""
Subscription search: filtering, sorting, pagination and aggregations.

Operates on snapshots handed over by the repository and never mutates them.
"""

import math
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from subledger.catalog.models import TIER_RANK, BillingCycle, SubscriptionTier
from subledger.subscriptions.models import (
    RenewalPaymentStatus,
    Subscription,
    SubscriptionStatus,
)

SortKey = Literal["created_at", "next_billing_date", "amount", "tier"]
SortOrder = Literal["asc", "desc"]


class PaymentStanding(str, Enum):
    CURRENT = "current"
    OVERDUE = "overdue"
    FAILED = "failed"


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def contains(self, value: datetime) -> bool:
        return self.start <= value <= self.end


class RevenueRange(BaseModel):
    min: int = Field(0, ge=0)
    max: int | None = None

    def contains(self, amount: int) -> bool:
        return amount >= self.min and (self.max is None or amount <= self.max)


class SubscriptionSearchFilters(BaseModel):
    """Search criteria; unset criteria match everything."""

    search_term: str | None = None
    status: set[SubscriptionStatus] | None = None
    tier: set[SubscriptionTier] | None = None
    billing_cycle: set[BillingCycle] | None = None
    created_date_range: DateRange | None = None
    next_billing_range: DateRange | None = None
    revenue_range: RevenueRange | None = None
    payment_status: PaymentStanding | None = None
    country: set[str] | None = None
    has_discount: bool | None = None
    is_trialing: bool | None = None
    cancel_at_period_end: bool | None = None


class PageInfo(BaseModel):
    page: int
    page_size: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class SubscriptionAggregations(BaseModel):
    status_distribution: dict[SubscriptionStatus, int]
    tier_distribution: dict[SubscriptionTier, int]
    billing_cycle_distribution: dict[BillingCycle, int]
    total_revenue: int
    average_revenue: float


class SubscriptionSearchResult(BaseModel):
    subscriptions: list[Subscription]
    total_count: int
    page_info: PageInfo
    aggregations: SubscriptionAggregations


def payment_standing(subscription: Subscription) -> PaymentStanding:
    latest = subscription.latest_renewal
    if latest is not None and latest.payment_status == RenewalPaymentStatus.FAILED:
        if subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
            return PaymentStanding.OVERDUE
        return PaymentStanding.FAILED
    if subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
        return PaymentStanding.OVERDUE
    return PaymentStanding.CURRENT


def matches(subscription: Subscription, filters: SubscriptionSearchFilters) -> bool:
    if filters.search_term:
        term = filters.search_term.lower()
        haystacks = (
            subscription.subscription_id,
            subscription.billing.email,
            subscription.billing.name,
        )
        if not any(term in value.lower() for value in haystacks):
            return False
    if filters.status and subscription.status not in filters.status:
        return False
    if filters.tier and subscription.tier not in filters.tier:
        return False
    if filters.billing_cycle and subscription.billing_cycle not in filters.billing_cycle:
        return False
    if filters.created_date_range and not filters.created_date_range.contains(
        subscription.created_at
    ):
        return False
    if filters.next_billing_range and not filters.next_billing_range.contains(
        subscription.next_billing_date
    ):
        return False
    if filters.revenue_range and not filters.revenue_range.contains(subscription.amount):
        return False
    if filters.payment_status and payment_standing(subscription) != filters.payment_status:
        return False
    if filters.country:
        wanted = {c.upper() for c in filters.country}
        if subscription.billing.address.country.upper() not in wanted:
            return False
    if filters.has_discount is not None:
        if bool(subscription.discount_code) != filters.has_discount:
            return False
    if filters.is_trialing is not None:
        if (subscription.status == SubscriptionStatus.TRIALING) != filters.is_trialing:
            return False
    if filters.cancel_at_period_end is not None:
        if subscription.cancel_at_period_end != filters.cancel_at_period_end:
            return False
    return True


def _sort_key(sort_by: str):
    if sort_by == "next_billing_date":
        return lambda s: s.next_billing_date
    if sort_by == "amount":
        return lambda s: s.amount
    if sort_by == "tier":
        return lambda s: TIER_RANK[s.tier]
    return lambda s: s.created_at


def aggregate(subscriptions: list[Subscription]) -> SubscriptionAggregations:
    total_revenue = sum(s.amount for s in subscriptions)
    return SubscriptionAggregations(
        status_distribution=_distribution(subscriptions, "status", SubscriptionStatus),
        tier_distribution=_distribution(subscriptions, "tier", SubscriptionTier),
        billing_cycle_distribution=_distribution(subscriptions, "billing_cycle", BillingCycle),
        total_revenue=total_revenue,
        average_revenue=total_revenue / len(subscriptions) if subscriptions else 0.0,
    )


def _distribution(subscriptions: list[Subscription], field: str, enum_type: type[Enum]) -> dict:
    counts = Counter(getattr(s, field) for s in subscriptions)
    return {member: counts.get(member, 0) for member in enum_type}


def search(
    subscriptions: list[Subscription],
    filters: SubscriptionSearchFilters,
    page: int = 1,
    page_size: int = 20,
    sort_by: SortKey = "created_at",
    sort_order: SortOrder = "desc",
) -> SubscriptionSearchResult:
    """Filter, sort and paginate ``subscriptions``."""
    if page < 1 or page_size < 1:
        raise ValueError("page and page_size must be positive")

    filtered = [s for s in subscriptions if matches(s, filters)]
    # Stable secondary order keeps pagination deterministic on ties
    filtered.sort(key=lambda s: s.subscription_id)
    filtered.sort(key=_sort_key(sort_by), reverse=sort_order == "desc")

    total_count = len(filtered)
    total_pages = math.ceil(total_count / page_size)
    start = (page - 1) * page_size

    return SubscriptionSearchResult(
        subscriptions=filtered[start : start + page_size],
        total_count=total_count,
        page_info=PageInfo(
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        ),
        aggregations=aggregate(filtered),
    )
