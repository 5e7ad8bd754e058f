"""
Subscription aggregate and its append-only sub-ledgers.

Amounts are integer minor units; timestamps are timezone-aware UTC.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, model_validator

from subledger.catalog.models import BillingCycle, SubscriptionTier


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class PaymentMethodInfo(BaseModel):
    """Snapshot of the default payment method."""

    payment_method_id: str
    type: PaymentMethodType = PaymentMethodType.CARD
    brand: str | None = None
    last4: str | None = None
    expiry_month: int | None = Field(None, ge=1, le=12)
    expiry_year: int | None = None
    fingerprint: str | None = None
    country: str | None = None
    is_default: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def expires_at(self) -> datetime | None:
        """Start of the expiry month, or None when the method does not expire."""
        if self.expiry_month is None or self.expiry_year is None:
            return None
        return datetime(self.expiry_year, self.expiry_month, 1, tzinfo=UTC)


class BillingAddress(BaseModel):
    line1: str = ""
    line2: str | None = None
    city: str = ""
    state: str | None = None
    postal_code: str = ""
    country: str = ""


class BillingInfo(BaseModel):
    """Billing contact and address."""

    email: str = ""
    name: str = ""
    address: BillingAddress = Field(default_factory=BillingAddress)
    tax_id: str | None = None
    tax_exempt: bool = False


class UsageAlert(BaseModel):
    threshold: int = Field(ge=1, le=100, description="Percentage of the usage limit")
    triggered: bool = False
    last_triggered: datetime | None = None
    notification_sent: bool = False


class UsageMetrics(BaseModel):
    current_period_usage: int = 0
    total_usage: int = 0
    last_usage_update: datetime | None = None
    usage_limit: int | None = None
    overage_charges: int = 0
    usage_alerts: list[UsageAlert] = Field(default_factory=list)


class ModificationType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"


class SubscriptionModification(BaseModel):
    """One entry in the modification history."""

    modification_id: str = Field(default_factory=lambda: _new_id("mod"))
    type: ModificationType
    from_tier: SubscriptionTier | None = None
    to_tier: SubscriptionTier | None = None
    effective_date: datetime
    prorated_amount: int | None = None
    reason: str
    requested_by: str
    approved_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RenewalPaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class SubscriptionRenewal(BaseModel):
    """One renewal attempt for a billing period."""

    renewal_id: str = Field(default_factory=lambda: _new_id("ren"))
    renewal_date: datetime
    period_start: datetime
    period_end: datetime
    amount: int = Field(description="Gross amount due for the period")
    credits_applied: int = 0
    amount_charged: int = 0
    currency: str = "USD"
    payment_status: RenewalPaymentStatus
    invoice_id: str | None = None
    transaction_id: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    attempt_count: int = 1
    next_retry_date: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class CreditType(str, Enum):
    REFUND = "refund"
    GOODWILL = "goodwill"
    DISCOUNT = "discount"
    MIGRATION = "migration"
    PROMOTIONAL = "promotional"


class SubscriptionCredit(BaseModel):
    """Account credit redeemable against renewals."""

    credit_id: str = Field(default_factory=lambda: _new_id("cred"))
    amount: int = Field(gt=0)
    currency: str = "USD"
    reason: str
    type: CreditType
    applied_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = None
    used_amount: int = Field(0, ge=0)
    created_by: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_used_amount(self) -> "SubscriptionCredit":
        if self.used_amount > self.amount:
            raise ValueError("used_amount cannot exceed amount")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def balance(self) -> int:
        return self.amount - self.used_amount

    def is_available(self, as_of: datetime) -> bool:
        if self.balance <= 0:
            return False
        return self.expires_at is None or self.expires_at > as_of


class Subscription(BaseModel):
    """Subscription aggregate root."""

    subscription_id: str = Field(default_factory=lambda: _new_id("sub"))
    user_id: str
    customer_id: str | None = None
    gateway_subscription_id: str | None = None
    plan_id: str

    status: SubscriptionStatus
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    amount: int = Field(ge=0, description="Current effective price per cycle")
    currency: str = "USD"
    discount_code: str | None = None
    discount_amount: int | None = None

    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    trial_start: datetime | None = None
    trial_end: datetime | None = None

    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    cancellation_reason: str | None = None
    paused_at: datetime | None = None
    pause_reason: str | None = None
    resumed_at: datetime | None = None

    payment_method: PaymentMethodInfo
    billing: BillingInfo = Field(default_factory=BillingInfo)
    usage: UsageMetrics = Field(default_factory=UsageMetrics)

    modifications: list[SubscriptionModification] = Field(default_factory=list)
    renewals: list[SubscriptionRenewal] = Field(default_factory=list)
    credits: list[SubscriptionCredit] = Field(default_factory=list)

    version: int = Field(0, description="Optimistic concurrency token")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def check_period(self) -> "Subscription":
        if self.current_period_start >= self.current_period_end:
            raise ValueError("current_period_start must precede current_period_end")
        return self

    @property
    def latest_renewal(self) -> SubscriptionRenewal | None:
        return self.renewals[-1] if self.renewals else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def available_credit(self, as_of: datetime) -> int:
        """Unexpired credit balance redeemable at ``as_of``."""
        return sum(c.balance for c in self.credits if c.is_available(as_of))

    def failed_attempts_this_period(self) -> int:
        """Consecutive failed attempts to bill the period after the current one."""
        count = 0
        for renewal in reversed(self.renewals):
            if (
                renewal.payment_status != RenewalPaymentStatus.FAILED
                or renewal.period_start != self.current_period_end
            ):
                break
            count += 1
        return count
