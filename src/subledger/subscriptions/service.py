"""
Subscription ledger service.

Every mutation of a subscription funnels through ``SubscriptionLedger``:
it takes the per-subscription lock, reads a fresh copy, applies the change,
checks invariants and saves with a version check-and-set. A lost race is
re-read and re-applied a bounded number of times.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from subledger.catalog.models import BillingCycle, SubscriptionTier, is_upgrade
from subledger.catalog.service import PlanCatalog
from subledger.events import BillingEvents, EventBus, emit_subscription_event
from subledger.exceptions import (
    CreditError,
    InvalidStateTransitionError,
    InvalidTierChangeError,
    PersistenceConflictError,
    PlanNotFoundError,
    SubscriptionError,
    SubscriptionNotFoundError,
)
from subledger.metrics import BillingMetrics, get_billing_metrics
from subledger.money import percentage_of
from subledger.repository.base import SubscriptionRepository
from subledger.settings import Settings, get_settings
from subledger.subscriptions import state
from subledger.subscriptions.models import (
    BillingInfo,
    CreditType,
    ModificationType,
    PaymentMethodInfo,
    RenewalPaymentStatus,
    Subscription,
    SubscriptionCredit,
    SubscriptionModification,
    SubscriptionRenewal,
    SubscriptionStatus,
    UsageAlert,
    UsageMetrics,
)
from subledger.subscriptions.periods import add_cycle, add_days
from subledger.subscriptions.proration import calculate_proration
from subledger.subscriptions.search import (
    SortKey,
    SortOrder,
    SubscriptionSearchFilters,
    SubscriptionSearchResult,
    search,
)

logger = structlog.get_logger(__name__)

S = SubscriptionStatus
T = TypeVar("T")

DEFAULT_USAGE_ALERT_THRESHOLDS = (80, 95)


def utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionLocks:
    """
    Per-subscription ``asyncio.Lock`` registry.

    Re-entrant within one task, so a batch item that holds the lock can
    call ledger entry points that take it again.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._owners: dict[str, asyncio.Task[Any] | None] = {}

    @asynccontextmanager
    async def hold(self, subscription_id: str) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if subscription_id in self._owners and self._owners[subscription_id] is task:
            yield
            return

        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        self._waiters[subscription_id] = self._waiters.get(subscription_id, 0) + 1
        try:
            async with lock:
                self._owners[subscription_id] = task
                try:
                    yield
                finally:
                    self._owners.pop(subscription_id, None)
        finally:
            # Drop the entry once nobody holds or waits for it
            self._waiters[subscription_id] -= 1
            if not self._waiters[subscription_id]:
                del self._waiters[subscription_id]
                del self._locks[subscription_id]


class SubscriptionLedger:
    """Owns the Subscription aggregate and its state machine."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: PlanCatalog,
        settings: Settings.BillingSettings | None = None,
        locks: SubscriptionLocks | None = None,
        event_bus: EventBus | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.subscriptions = subscriptions
        self.catalog = catalog
        self.settings = settings or get_settings().billing
        self.locks = locks or SubscriptionLocks()
        self.event_bus = event_bus
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock

    # ==================== Internal helpers ====================

    def _conflict_retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(PersistenceConflictError),
            stop=stop_after_attempt(self.settings.conflict_retry_attempts),
            wait=wait_exponential(multiplier=0.01, max=0.2),
            before_sleep=self._log_conflict_retry,
            reraise=True,
        )

    @staticmethod
    def _log_conflict_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying subscription write after version conflict",
            attempt=retry_state.attempt_number,
            context=getattr(error, "context", None),
        )

    async def _load(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    @staticmethod
    def _check_invariants(subscription: Subscription) -> None:
        if subscription.current_period_start >= subscription.current_period_end:
            raise SubscriptionError(
                "Billing period start must precede its end",
                context={"subscription_id": subscription.subscription_id},
            )
        if (
            subscription.status in (S.ACTIVE, S.TRIALING)
            and subscription.next_billing_date != subscription.current_period_end
        ):
            raise SubscriptionError(
                "Next billing date must equal the period end",
                context={"subscription_id": subscription.subscription_id},
            )

    async def _mutate(
        self, subscription_id: str, mutator: Callable[[Subscription], T]
    ) -> tuple[Subscription, T]:
        """Apply ``mutator`` to a fresh copy under the lock and save it atomically."""
        async with self.locks.hold(subscription_id):
            async for attempt in self._conflict_retrying():
                with attempt:
                    working = await self._load(subscription_id)
                    outcome = mutator(working)
                    working.updated_at = self.clock()
                    self._check_invariants(working)
                    saved = await self.subscriptions.save(working)
        return saved, outcome

    def _modification(
        self,
        subscription: Subscription,
        modification_type: ModificationType,
        reason: str,
        effective_date: datetime | None = None,
        requested_by: str | None = None,
        **fields: Any,
    ) -> SubscriptionModification:
        now = self.clock()
        modification = SubscriptionModification(
            type=modification_type,
            effective_date=effective_date or now,
            reason=reason,
            requested_by=requested_by or subscription.user_id,
            created_at=now,
            **fields,
        )
        subscription.modifications.append(modification)
        return modification

    async def _emit(self, event_type: str, subscription: Subscription, **extra: Any) -> None:
        await emit_subscription_event(
            event_type,
            subscription.subscription_id,
            subscription.user_id,
            event_bus=self.event_bus,
            status=subscription.status.value,
            tier=subscription.tier.value,
            **extra,
        )

    # ==================== Customer-facing operations ====================

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        payment_method: PaymentMethodInfo,
        billing_cycle: BillingCycle,
        discount_code: str | None = None,
        billing: BillingInfo | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Create a subscription on ``plan_id``.

        Starts TRIALING when the plan has trial days, otherwise ACTIVE with
        one full cycle ahead. No charge is taken here.

        Raises:
            PlanNotFoundError: Unknown or inactive plan
            PricingNotFoundError: Plan is not sold on ``billing_cycle``
        """
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFoundError(f"Plan {plan_id} is not active", plan_id=plan_id)
        pricing = self.catalog.get_pricing(plan, billing_cycle)

        now = now or self.clock()
        if plan.trial_days > 0:
            status = S.TRIALING
            trial_start: datetime | None = now
            trial_end: datetime | None = add_days(now, plan.trial_days)
            period_end = trial_end
        else:
            status = S.ACTIVE
            trial_start = trial_end = None
            period_end = add_cycle(now, billing_cycle)

        subscription = Subscription(
            user_id=user_id,
            customer_id=f"cus_{user_id}",
            plan_id=plan.plan_id,
            status=status,
            tier=plan.tier,
            billing_cycle=billing_cycle,
            amount=pricing.amount,
            currency=pricing.currency,
            discount_code=discount_code,
            discount_amount=(
                percentage_of(pricing.amount, self.settings.discount_code_percentage)
                if discount_code
                else None
            ),
            current_period_start=now,
            current_period_end=period_end,
            next_billing_date=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            payment_method=payment_method,
            billing=billing or BillingInfo(),
            usage=UsageMetrics(
                last_usage_update=now,
                usage_limit=plan.limits.api_calls_per_month,
                usage_alerts=[UsageAlert(threshold=t) for t in DEFAULT_USAGE_ALERT_THRESHOLDS],
            ),
            created_at=now,
            updated_at=now,
        )
        subscription.modifications.append(
            SubscriptionModification(
                type=ModificationType.UPGRADE,
                to_tier=plan.tier,
                effective_date=now,
                reason="Initial subscription",
                requested_by=user_id,
                created_at=now,
            )
        )
        self._check_invariants(subscription)

        saved = await self.subscriptions.add(subscription)

        logger.info(
            "Subscription created",
            subscription_id=saved.subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=saved.status.value,
            billing_cycle=billing_cycle.value,
            amount=saved.amount,
        )
        self.metrics.record_subscription_created(
            saved.tier.value, billing_cycle.value, saved.status.value
        )
        await self._emit(BillingEvents.SUBSCRIPTION_CREATED, saved, plan_id=plan.plan_id)
        return saved

    async def change_tier(
        self,
        subscription_id: str,
        new_tier: SubscriptionTier,
        effective_date: datetime | None = None,
        reason: str = "Customer request",
        requested_by: str | None = None,
    ) -> Subscription:
        """
        Move an ACTIVE or TRIALING subscription to ``new_tier``.

        The new price applies immediately. The prorated delta for the rest of
        the current period is recorded on the modification; it is zero
        during a trial since nothing was charged.
        """
        new_plan = self.catalog.get_plan_for_tier(new_tier)

        def apply(subscription: Subscription) -> SubscriptionModification:
            state.require_status(subscription, {S.ACTIVE, S.TRIALING}, "change tier of")
            if subscription.tier == new_tier:
                raise InvalidTierChangeError(
                    f"Subscription {subscription_id} is already on {new_tier.value}",
                    current_tier=subscription.tier.value,
                    requested_tier=new_tier.value,
                )
            new_pricing = self.catalog.get_pricing(new_plan, subscription.billing_cycle)
            when = effective_date or self.clock()

            proration = calculate_proration(
                subscription.current_period_start,
                subscription.current_period_end,
                subscription.amount,
                new_pricing.amount,
                when,
            )
            prorated_amount = 0 if subscription.status == S.TRIALING else proration.prorated_amount

            from_tier = subscription.tier
            modification = self._modification(
                subscription,
                (
                    ModificationType.UPGRADE
                    if is_upgrade(from_tier, new_tier)
                    else ModificationType.DOWNGRADE
                ),
                reason,
                effective_date=when,
                requested_by=requested_by,
                from_tier=from_tier,
                to_tier=new_tier,
                prorated_amount=prorated_amount,
                metadata={
                    "period_days": proration.period_days,
                    "remaining_days": proration.remaining_days,
                    "previous_amount": subscription.amount,
                    "new_amount": new_pricing.amount,
                },
            )
            subscription.tier = new_tier
            subscription.plan_id = new_plan.plan_id
            subscription.amount = new_pricing.amount
            subscription.currency = new_pricing.currency
            return modification

        saved, modification = await self._mutate(subscription_id, apply)

        logger.info(
            "Subscription tier changed",
            subscription_id=subscription_id,
            from_tier=modification.from_tier.value if modification.from_tier else None,
            to_tier=new_tier.value,
            prorated_amount=modification.prorated_amount,
        )
        self.metrics.record_tier_change(
            modification.from_tier.value if modification.from_tier else "",
            new_tier.value,
            modification.type.value,
        )
        await self._emit(
            BillingEvents.SUBSCRIPTION_UPDATED,
            saved,
            change=modification.type.value,
            prorated_amount=modification.prorated_amount,
        )
        return saved

    async def cancel(
        self,
        subscription_id: str,
        at_period_end: bool = True,
        reason: str = "Customer request",
    ) -> Subscription:
        """
        Cancel a subscription.

        With ``at_period_end`` only the flag is set and the renewal run
        cancels at the boundary; otherwise the subscription is canceled now.
        """

        def apply(subscription: Subscription) -> None:
            now = self.clock()
            if at_period_end:
                state.require_status(
                    subscription, {S.ACTIVE, S.TRIALING}, "schedule cancellation of"
                )
                if subscription.cancel_at_period_end:
                    raise InvalidStateTransitionError(
                        f"Subscription {subscription_id} is already set to cancel at period end",
                        current_state="cancel_at_period_end",
                        requested_state="cancel_at_period_end",
                    )
                subscription.cancel_at_period_end = True
                effective = subscription.current_period_end
            else:
                state.transition(subscription, S.CANCELED)
                subscription.canceled_at = now
                effective = now
            subscription.cancellation_reason = reason
            self._modification(
                subscription,
                ModificationType.CANCEL,
                reason,
                effective_date=effective,
                metadata={"at_period_end": at_period_end},
            )

        saved, _ = await self._mutate(subscription_id, apply)

        logger.info(
            "Subscription cancelled",
            subscription_id=subscription_id,
            at_period_end=at_period_end,
            reason=reason,
        )
        self.metrics.record_cancellation(saved.tier.value, at_period_end)
        await self._emit(
            BillingEvents.SUBSCRIPTION_CANCELLED,
            saved,
            at_period_end=at_period_end,
            reason=reason,
        )
        return saved

    async def reactivate(
        self, subscription_id: str, reason: str = "Customer request"
    ) -> Subscription:
        """Withdraw a pending cancel-at-period-end."""

        def apply(subscription: Subscription) -> None:
            if not subscription.cancel_at_period_end or subscription.is_terminal:
                raise InvalidStateTransitionError(
                    f"Subscription {subscription_id} has no pending cancellation",
                    current_state=subscription.status.value,
                    requested_state="reactivate",
                )
            subscription.cancel_at_period_end = False
            subscription.cancellation_reason = None
            self._modification(subscription, ModificationType.REACTIVATE, reason)

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info("Subscription reactivated", subscription_id=subscription_id)
        await self._emit(BillingEvents.SUBSCRIPTION_REACTIVATED, saved)
        return saved

    async def pause(self, subscription_id: str, reason: str = "Customer request") -> Subscription:
        """Pause an ACTIVE subscription. Nothing is billed while paused."""

        def apply(subscription: Subscription) -> None:
            state.require_status(subscription, {S.ACTIVE}, "pause")
            state.transition(subscription, S.PAUSED)
            subscription.paused_at = self.clock()
            subscription.pause_reason = reason
            self._modification(subscription, ModificationType.PAUSE, reason)

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info("Subscription paused", subscription_id=subscription_id, reason=reason)
        await self._emit(BillingEvents.SUBSCRIPTION_PAUSED, saved, reason=reason)
        return saved

    async def resume(self, subscription_id: str) -> Subscription:
        """Resume a PAUSED subscription."""

        def apply(subscription: Subscription) -> None:
            if subscription.status == S.ACTIVE:
                raise InvalidStateTransitionError(
                    f"Subscription {subscription_id} is already active",
                    current_state=S.ACTIVE.value,
                    requested_state=S.ACTIVE.value,
                )
            state.require_status(subscription, {S.PAUSED}, "resume")
            state.transition(subscription, S.ACTIVE)
            subscription.resumed_at = self.clock()
            self._modification(subscription, ModificationType.RESUME, "Subscription resumed")

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info("Subscription resumed", subscription_id=subscription_id)
        await self._emit(BillingEvents.SUBSCRIPTION_RESUMED, saved)
        return saved

    async def add_credit(
        self,
        subscription_id: str,
        amount: int,
        reason: str,
        credit_type: CreditType,
        created_by: str,
        expires_at: datetime | None = None,
    ) -> SubscriptionCredit:
        """Append a credit; it is redeemed against later renewals."""
        if amount <= 0:
            raise CreditError(
                "Credit amount must be positive",
                context={"subscription_id": subscription_id, "amount": amount},
            )

        def apply(subscription: Subscription) -> SubscriptionCredit:
            credit = SubscriptionCredit(
                amount=amount,
                currency=subscription.currency,
                reason=reason,
                type=credit_type,
                applied_at=self.clock(),
                expires_at=expires_at,
                created_by=created_by,
            )
            subscription.credits.append(credit)
            return credit

        saved, credit = await self._mutate(subscription_id, apply)
        logger.info(
            "Credit added to subscription",
            subscription_id=subscription_id,
            credit_id=credit.credit_id,
            amount=amount,
            currency=credit.currency,
        )
        await emit_subscription_event(
            BillingEvents.CREDIT_ADDED,
            subscription_id,
            saved.user_id,
            event_bus=self.event_bus,
            credit_id=credit.credit_id,
            amount=amount,
        )
        return credit

    async def record_usage(
        self, subscription_id: str, quantity: int, now: datetime | None = None
    ) -> Subscription:
        """Add metered usage and trip any usage alerts crossed."""
        if quantity <= 0:
            raise SubscriptionError(
                "Usage quantity must be positive",
                context={"subscription_id": subscription_id, "quantity": quantity},
            )

        def apply(subscription: Subscription) -> list[int]:
            if subscription.is_terminal:
                raise InvalidStateTransitionError(
                    f"Cannot record usage on {subscription.status.value} subscription",
                    current_state=subscription.status.value,
                    requested_state="record_usage",
                )
            when = now or self.clock()
            usage = subscription.usage
            usage.current_period_usage += quantity
            usage.total_usage += quantity
            usage.last_usage_update = when

            tripped: list[int] = []
            if usage.usage_limit:
                percent_used = usage.current_period_usage * 100 / usage.usage_limit
                for alert in usage.usage_alerts:
                    if not alert.triggered and percent_used >= alert.threshold:
                        alert.triggered = True
                        alert.last_triggered = when
                        tripped.append(alert.threshold)
            return tripped

        saved, tripped = await self._mutate(subscription_id, apply)
        for threshold in tripped:
            logger.info(
                "Usage threshold crossed",
                subscription_id=subscription_id,
                threshold=threshold,
                current_period_usage=saved.usage.current_period_usage,
            )
            await self._emit(
                BillingEvents.SUBSCRIPTION_USAGE_THRESHOLD, saved, threshold=threshold
            )
        return saved

    async def update_payment_method(
        self, subscription_id: str, payment_method: PaymentMethodInfo
    ) -> Subscription:
        """Replace the default payment method snapshot."""

        def apply(subscription: Subscription) -> None:
            if subscription.is_terminal:
                raise InvalidStateTransitionError(
                    f"Cannot update payment method of {subscription.status.value} subscription",
                    current_state=subscription.status.value,
                    requested_state="update_payment_method",
                )
            subscription.payment_method = payment_method.model_copy(
                update={"is_default": True, "updated_at": self.clock()}
            )

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info(
            "Payment method updated",
            subscription_id=subscription_id,
            payment_method_id=payment_method.payment_method_id,
        )
        await self._emit(BillingEvents.SUBSCRIPTION_UPDATED, saved, change="payment_method")
        return saved

    async def update_billing_info(self, subscription_id: str, billing: BillingInfo) -> Subscription:
        """Replace billing contact and address."""

        def apply(subscription: Subscription) -> None:
            subscription.billing = billing

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info("Billing info updated", subscription_id=subscription_id)
        return saved

    # ==================== Queries ====================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self._load(subscription_id)

    async def list_user_subscriptions(self, user_id: str) -> list[Subscription]:
        subscriptions = await self.subscriptions.list_by_user(user_id)
        return sorted(subscriptions, key=lambda s: s.created_at, reverse=True)

    async def search_subscriptions(
        self,
        filters: SubscriptionSearchFilters | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: SortKey = "created_at",
        sort_order: SortOrder = "desc",
    ) -> SubscriptionSearchResult:
        subscriptions = await self.subscriptions.list_all()
        return search(
            subscriptions,
            filters or SubscriptionSearchFilters(),
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    # ==================== Renewal entry points ====================

    def _require_unbilled_period(self, subscription: Subscription, period_end: datetime) -> None:
        if subscription.current_period_end != period_end:
            raise SubscriptionError(
                "Billing period already advanced",
                context={
                    "subscription_id": subscription.subscription_id,
                    "expected_period_end": period_end.isoformat(),
                    "current_period_end": subscription.current_period_end.isoformat(),
                },
            )

    async def apply_renewal_success(
        self,
        subscription_id: str,
        period_end: datetime,
        credits_applied: int,
        amount_charged: int,
        transaction_id: str | None,
        now: datetime,
    ) -> tuple[Subscription, SubscriptionRenewal]:
        """Record a paid renewal and advance the billing period by one cycle."""

        def apply(subscription: Subscription) -> SubscriptionRenewal:
            self._require_unbilled_period(subscription, period_end)
            state.require_status(
                subscription, {S.ACTIVE, S.TRIALING, S.PAST_DUE, S.UNPAID}, "renew"
            )
            new_start = subscription.current_period_end
            new_end = add_cycle(new_start, subscription.billing_cycle)
            attempt = subscription.failed_attempts_this_period() + 1

            self._consume_credits(subscription, credits_applied, now)
            renewal = SubscriptionRenewal(
                renewal_date=now,
                period_start=new_start,
                period_end=new_end,
                amount=subscription.amount,
                credits_applied=credits_applied,
                amount_charged=amount_charged,
                currency=subscription.currency,
                payment_status=RenewalPaymentStatus.SUCCEEDED,
                transaction_id=transaction_id,
                attempt_count=attempt,
                created_at=now,
            )
            subscription.renewals.append(renewal)

            if subscription.status != S.ACTIVE:
                state.transition(subscription, S.ACTIVE)
            subscription.current_period_start = new_start
            subscription.current_period_end = new_end
            subscription.next_billing_date = new_end
            subscription.usage.current_period_usage = 0
            for alert in subscription.usage.usage_alerts:
                alert.triggered = False
                alert.notification_sent = False
            return renewal

        return await self._mutate(subscription_id, apply)

    async def apply_renewal_failure(
        self,
        subscription_id: str,
        period_end: datetime,
        failure_code: str | None,
        failure_reason: str | None,
        transaction_id: str | None,
        now: datetime,
    ) -> tuple[Subscription, SubscriptionRenewal]:
        """
        Record a failed renewal without advancing the period.

        The subscription becomes PAST_DUE, or UNPAID once the failed attempts
        for this period reach ``max_retry_attempts``.
        """

        def apply(subscription: Subscription) -> SubscriptionRenewal:
            self._require_unbilled_period(subscription, period_end)
            state.require_status(
                subscription,
                {S.ACTIVE, S.TRIALING, S.PAST_DUE, S.UNPAID},
                "record failed renewal of",
            )
            attempt = subscription.failed_attempts_this_period() + 1
            renewal = SubscriptionRenewal(
                renewal_date=now,
                period_start=subscription.current_period_end,
                period_end=add_cycle(subscription.current_period_end, subscription.billing_cycle),
                amount=subscription.amount,
                credits_applied=0,
                amount_charged=0,
                currency=subscription.currency,
                payment_status=RenewalPaymentStatus.FAILED,
                transaction_id=transaction_id,
                failure_code=failure_code,
                failure_reason=failure_reason,
                attempt_count=attempt,
                next_retry_date=now + self.retry_delay(attempt),
                created_at=now,
            )
            subscription.renewals.append(renewal)

            if subscription.status in (S.ACTIVE, S.TRIALING):
                state.transition(subscription, S.PAST_DUE)
            if attempt >= self.settings.max_retry_attempts and subscription.status == S.PAST_DUE:
                state.transition(subscription, S.UNPAID)

            logger.debug(
                "Renewal failure recorded",
                subscription_id=subscription.subscription_id,
                attempt=attempt,
                status=subscription.status.value,
            )
            return renewal

        return await self._mutate(subscription_id, apply)

    async def apply_period_end_cancellation(
        self, subscription_id: str, now: datetime
    ) -> Subscription:
        """Cancel at the period boundary a subscription flagged ``cancel_at_period_end``."""

        def apply(subscription: Subscription) -> None:
            if not subscription.cancel_at_period_end:
                raise InvalidStateTransitionError(
                    f"Subscription {subscription_id} is not set to cancel at period end",
                    current_state=subscription.status.value,
                    requested_state=S.CANCELED.value,
                )
            state.transition(subscription, S.CANCELED)
            subscription.canceled_at = now

        saved, _ = await self._mutate(subscription_id, apply)
        logger.info("Subscription cancelled at period end", subscription_id=subscription_id)
        await self._emit(
            BillingEvents.SUBSCRIPTION_CANCELLED,
            saved,
            at_period_end=True,
            reason=saved.cancellation_reason,
        )
        return saved

    def retry_delay(self, attempt: int) -> timedelta:
        """Delay before retrying after failed ``attempt`` (1-based); the last value repeats."""
        schedule = self.settings.retry_backoff_hours
        return timedelta(hours=schedule[min(attempt, len(schedule)) - 1])

    @staticmethod
    def _consume_credits(subscription: Subscription, amount: int, as_of: datetime) -> None:
        """Draw ``amount`` from available credits, earliest expiry first."""
        if amount <= 0:
            return
        available = [c for c in subscription.credits if c.is_available(as_of)]
        available.sort(
            key=lambda c: (c.expires_at is None, c.expires_at or c.applied_at, c.applied_at)
        )
        remaining = amount
        for credit in available:
            if remaining == 0:
                break
            used = min(credit.balance, remaining)
            credit.used_amount += used
            remaining -= used
        if remaining:
            raise CreditError(
                "Insufficient credit balance",
                context={"subscription_id": subscription.subscription_id, "shortfall": remaining},
            )
