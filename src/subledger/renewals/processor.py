"""
Renewal processor.

Driven by the scheduler with an explicit ``as_of`` date. Each due
subscription is handled independently on a bounded pool: eligibility is
re-checked under the subscription lock, so re-running a batch for the same
day bills nothing twice.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, date, datetime
from datetime import time as dt_time
from typing import Literal
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from subledger.events import BillingEvents, EventBus, emit_payment_event, emit_subscription_event
from subledger.issues.detector import BillingIssueDetector, retry_due
from subledger.issues.models import BillingIssueType, IssueSeverity
from subledger.metrics import BillingMetrics, get_billing_metrics
from subledger.payments.gateway import PaymentGateway, charge_idempotency_key
from subledger.payments.models import (
    ChargeResult,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
)
from subledger.repository.base import TransactionRepository
from subledger.settings import Settings, get_settings
from subledger.subscriptions.models import Subscription, SubscriptionStatus
from subledger.subscriptions.service import SubscriptionLedger, utcnow

logger = structlog.get_logger(__name__)

S = SubscriptionStatus

RenewalOutcome = Literal["succeeded", "failed", "canceled", "skipped", "error"]


class RenewalItemResult(BaseModel):
    subscription_id: str
    outcome: RenewalOutcome
    amount_charged: int = 0
    credits_applied: int = 0
    transaction_id: str | None = None
    status: SubscriptionStatus | None = None
    error: str | None = None


class RenewalBatchResult(BaseModel):
    """Counts and per-item outcomes of one renewal run."""

    run_id: str
    as_of: date
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    skipped: int = 0
    errors: int = 0
    items: list[RenewalItemResult] = Field(default_factory=list)

    def record(self, item: RenewalItemResult) -> None:
        self.items.append(item)
        self.processed += 1
        if item.outcome == "error":
            self.errors += 1
        else:
            setattr(self, item.outcome, getattr(self, item.outcome) + 1)


def end_of_day(as_of: date) -> datetime:
    return datetime.combine(as_of, dt_time.max, tzinfo=UTC)


def is_due(subscription: Subscription, cutoff: datetime) -> bool:
    """Whether ``subscription`` should be billed or canceled in a run up to ``cutoff``."""
    if subscription.status in (S.ACTIVE, S.TRIALING):
        return subscription.next_billing_date <= cutoff
    return retry_due(subscription, cutoff)


class RenewalProcessor:
    """Bills due subscriptions through the ledger's renewal entry points."""

    def __init__(
        self,
        ledger: SubscriptionLedger,
        transactions: TransactionRepository,
        gateway: PaymentGateway,
        issue_detector: BillingIssueDetector,
        settings: Settings.BillingSettings | None = None,
        event_bus: EventBus | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.transactions = transactions
        self.gateway = gateway
        self.issue_detector = issue_detector
        self.settings = settings or get_settings().billing
        self.event_bus = event_bus
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock

    async def _select(self, cutoff: datetime) -> list[str]:
        repo = self.ledger.subscriptions
        due = await repo.list_by_status({S.ACTIVE, S.TRIALING}, billing_due_before=cutoff)
        delinquent = await repo.list_by_status({S.PAST_DUE, S.UNPAID})
        retries = [s for s in delinquent if retry_due(s, cutoff)]
        return sorted({s.subscription_id for s in [*due, *retries]})

    async def run_renewal_batch(
        self, as_of: date | None = None, now: datetime | None = None
    ) -> RenewalBatchResult:
        """
        Renew every subscription due on or before ``as_of``.

        Args:
            as_of: Billing day; subscriptions due by the end of it are selected
            now: Instant recorded on renewals and transactions (defaults to the clock)

        Returns:
            RenewalBatchResult with one item per selected subscription
        """
        now = now or self.clock()
        as_of = as_of or now.date()
        cutoff = end_of_day(as_of)
        result = RenewalBatchResult(run_id=f"run_{uuid4().hex[:12]}", as_of=as_of, started_at=now)

        structlog.contextvars.bind_contextvars(renewal_run_id=result.run_id)
        started = time.perf_counter()
        try:
            subscription_ids = await self._select(cutoff)
            logger.info(
                "Renewal batch started", as_of=as_of.isoformat(), selected=len(subscription_ids)
            )

            semaphore = asyncio.Semaphore(self.settings.renewal_concurrency)

            async def bounded(subscription_id: str) -> RenewalItemResult:
                async with semaphore:
                    return await self._process_item_safely(subscription_id, cutoff, now)

            for item in await asyncio.gather(*(bounded(sid) for sid in subscription_ids)):
                result.record(item)

            result.finished_at = self.clock()
            duration_ms = (time.perf_counter() - started) * 1000
            self.metrics.record_batch_duration(duration_ms, result.processed)
            logger.info(
                "Renewal batch completed",
                as_of=as_of.isoformat(),
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                canceled=result.canceled,
                skipped=result.skipped,
                errors=result.errors,
                duration_ms=round(duration_ms, 2),
            )
            return result
        finally:
            structlog.contextvars.unbind_contextvars("renewal_run_id")

    async def _process_item_safely(
        self, subscription_id: str, cutoff: datetime, now: datetime
    ) -> RenewalItemResult:
        try:
            with self.metrics.trace_renewal(subscription_id):
                item = await self._process_item(subscription_id, cutoff, now)
        except Exception as e:
            logger.error(
                "Renewal item failed",
                subscription_id=subscription_id,
                error=str(e),
                exc_info=True,
            )
            return RenewalItemResult(subscription_id=subscription_id, outcome="error", error=str(e))

        self.metrics.record_renewal(item.outcome, item.amount_charged)
        return item

    async def _process_item(
        self, subscription_id: str, cutoff: datetime, now: datetime
    ) -> RenewalItemResult:
        async with self.ledger.locks.hold(subscription_id):
            subscription = await self.ledger.get_subscription(subscription_id)

            if not is_due(subscription, cutoff):
                logger.debug(
                    "Subscription no longer due, skipping",
                    subscription_id=subscription_id,
                    status=subscription.status.value,
                )
                return RenewalItemResult(
                    subscription_id=subscription_id,
                    outcome="skipped",
                    status=subscription.status,
                )

            if subscription.cancel_at_period_end:
                canceled = await self.ledger.apply_period_end_cancellation(subscription_id, now)
                return RenewalItemResult(
                    subscription_id=subscription_id, outcome="canceled", status=canceled.status
                )

            credits_applied = min(subscription.available_credit(now), subscription.amount)
            charge = subscription.amount - credits_applied
            period_end = subscription.current_period_end
            was_trialing = subscription.status == S.TRIALING

            if charge == 0:
                renewed, _ = await self.ledger.apply_renewal_success(
                    subscription_id, period_end, credits_applied, 0, None, now
                )
                await self._after_success(renewed, was_trialing, None, 0)
                return RenewalItemResult(
                    subscription_id=subscription_id,
                    outcome="succeeded",
                    credits_applied=credits_applied,
                    status=renewed.status,
                )

            attempt = subscription.failed_attempts_this_period() + 1
            idempotency_key = charge_idempotency_key(
                subscription_id, period_end.isoformat(), attempt
            )
            charge_result = await self.gateway.charge(
                subscription_id,
                charge,
                subscription.currency,
                subscription.payment_method,
                idempotency_key,
            )
            transaction = await self.transactions.add(
                self._transaction_for(subscription, charge, charge_result, idempotency_key, now)
            )

            if charge_result.succeeded:
                renewed, _ = await self.ledger.apply_renewal_success(
                    subscription_id,
                    period_end,
                    credits_applied,
                    charge,
                    transaction.transaction_id,
                    now,
                )
                await self._after_success(renewed, was_trialing, transaction, charge)
                return RenewalItemResult(
                    subscription_id=subscription_id,
                    outcome="succeeded",
                    amount_charged=charge,
                    credits_applied=credits_applied,
                    transaction_id=transaction.transaction_id,
                    status=renewed.status,
                )

            failed, renewal = await self.ledger.apply_renewal_failure(
                subscription_id,
                period_end,
                charge_result.failure_code,
                charge_result.failure_message,
                transaction.transaction_id,
                now,
            )
            await self._after_failure(failed, transaction, renewal.attempt_count)
            return RenewalItemResult(
                subscription_id=subscription_id,
                outcome="failed",
                transaction_id=transaction.transaction_id,
                status=failed.status,
                error=charge_result.failure_code,
            )

    @staticmethod
    def _transaction_for(
        subscription: Subscription,
        amount: int,
        charge_result: ChargeResult,
        idempotency_key: str,
        now: datetime,
    ) -> PaymentTransaction:
        return PaymentTransaction(
            subscription_id=subscription.subscription_id,
            gateway_reference=charge_result.transaction_reference,
            amount=amount,
            currency=subscription.currency,
            status=PaymentStatus.SUCCEEDED if charge_result.succeeded else PaymentStatus.FAILED,
            type=PaymentType.SUBSCRIPTION,
            description=f"{subscription.tier.value} {subscription.billing_cycle.value} renewal",
            failure_code=charge_result.failure_code,
            failure_message=charge_result.failure_message,
            metadata={
                "idempotency_key": idempotency_key,
                "period_end": subscription.current_period_end.isoformat(),
            },
            created_at=now,
            processed_at=now,
            fees=charge_result.fees,
        )

    async def _after_success(
        self,
        subscription: Subscription,
        was_trialing: bool,
        transaction: PaymentTransaction | None,
        amount: int,
    ) -> None:
        logger.info(
            "Subscription renewed",
            subscription_id=subscription.subscription_id,
            amount_charged=amount,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        if was_trialing:
            await emit_subscription_event(
                BillingEvents.SUBSCRIPTION_TRIAL_ENDED,
                subscription.subscription_id,
                subscription.user_id,
                event_bus=self.event_bus,
            )
        await emit_subscription_event(
            BillingEvents.SUBSCRIPTION_RENEWED,
            subscription.subscription_id,
            subscription.user_id,
            event_bus=self.event_bus,
            amount_charged=amount,
            current_period_end=subscription.current_period_end.isoformat(),
        )
        if transaction is not None:
            await emit_payment_event(
                BillingEvents.PAYMENT_SUCCEEDED,
                subscription.subscription_id,
                transaction.transaction_id,
                amount,
                transaction.currency,
                event_bus=self.event_bus,
            )

    async def _after_failure(
        self, subscription: Subscription, transaction: PaymentTransaction, attempt: int
    ) -> None:
        logger.warning(
            "Renewal payment failed",
            subscription_id=subscription.subscription_id,
            attempt=attempt,
            failure_code=transaction.failure_code,
            status=subscription.status.value,
        )
        await self.issue_detector.open_issue(
            subscription.subscription_id,
            BillingIssueType.PAYMENT_FAILED,
            IssueSeverity.HIGH if subscription.status == S.UNPAID else IssueSeverity.MEDIUM,
            f"Renewal payment failed: {transaction.failure_message or transaction.failure_code}",
            metadata={
                "transaction_id": transaction.transaction_id,
                "failure_code": transaction.failure_code,
                "attempt": attempt,
            },
            now=transaction.created_at,
        )
        await emit_payment_event(
            BillingEvents.PAYMENT_FAILED,
            subscription.subscription_id,
            transaction.transaction_id,
            transaction.amount,
            transaction.currency,
            event_bus=self.event_bus,
            failure_code=transaction.failure_code,
            attempt=attempt,
        )
