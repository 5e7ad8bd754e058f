"""
Payment transaction service: refunds and transaction history.
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from subledger.events import BillingEvents, EventBus, emit_payment_event
from subledger.exceptions import PaymentError, TransactionNotFoundError
from subledger.payments.gateway import PaymentGateway, refund_idempotency_key
from subledger.payments.models import PaymentStatus, PaymentTransaction, PaymentType
from subledger.repository.base import TransactionRepository
from subledger.subscriptions.models import CreditType
from subledger.subscriptions.service import SubscriptionLedger, utcnow

logger = structlog.get_logger(__name__)


class PaymentService:
    """Refunds and transaction queries."""

    def __init__(
        self,
        transactions: TransactionRepository,
        gateway: PaymentGateway,
        ledger: SubscriptionLedger,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.transactions = transactions
        self.gateway = gateway
        self.ledger = ledger
        self.event_bus = event_bus
        self.clock = clock

    async def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found", transaction_id=transaction_id
            )
        return transaction

    async def refunded_total(self, charge: PaymentTransaction) -> int:
        """Minor units already refunded against ``charge``."""
        rows = await self.transactions.list_transactions(subscription_id=charge.subscription_id)
        return sum(
            row.amount
            for row in rows
            if row.type == PaymentType.REFUND
            and row.status == PaymentStatus.SUCCEEDED
            and row.refunded_transaction_id == charge.transaction_id
        )

    async def refund_transaction(
        self,
        transaction_id: str,
        amount: int | None = None,
        credit_subscription: bool = False,
        requested_by: str = "system",
        reason: str = "Refund",
    ) -> PaymentTransaction:
        """
        Refund all or part of a succeeded charge through the gateway.

        The charge itself is never modified; the refund is recorded as a new
        ``refund`` transaction pointing back at it.

        Args:
            transaction_id: Charge to refund
            amount: Minor units to refund; defaults to the remaining refundable amount
            credit_subscription: Also append a ``refund`` credit to the subscription
            requested_by: Recorded as the credit's creator
            reason: Credit reason

        Returns:
            The new refund transaction

        Raises:
            TransactionNotFoundError: Unknown transaction
            PaymentError: Not refundable, bad amount, or the gateway refused
        """
        charge = await self.get_transaction(transaction_id)
        if (
            charge.status != PaymentStatus.SUCCEEDED
            or charge.type == PaymentType.REFUND
            or not charge.gateway_reference
        ):
            raise PaymentError(
                f"Transaction {transaction_id} cannot be refunded",
                context={"transaction_id": transaction_id, "status": charge.status.value},
            )

        async with self.ledger.locks.hold(charge.subscription_id):
            already_refunded = await self.refunded_total(charge)
            refundable = charge.amount - already_refunded
            refund_amount = refundable if amount is None else amount
            if refund_amount <= 0 or refund_amount > refundable:
                raise PaymentError(
                    "Refund amount must be positive and not exceed the refundable amount",
                    context={
                        "transaction_id": transaction_id,
                        "requested": refund_amount,
                        "refundable": refundable,
                    },
                )

            result = await self.gateway.refund(
                charge.gateway_reference,
                refund_amount,
                refund_idempotency_key(transaction_id, already_refunded, refund_amount),
            )
            if not result.succeeded:
                logger.warning(
                    "Gateway refused refund",
                    transaction_id=transaction_id,
                    failure_code=result.failure_code,
                )
                raise PaymentError(
                    f"Refund failed: {result.failure_message or result.failure_code}",
                    context={"transaction_id": transaction_id, "failure_code": result.failure_code},
                    recovery_hint="Retry the refund or issue a goodwill credit instead",
                )

            now = self.clock()
            refund = await self.transactions.add(
                PaymentTransaction(
                    subscription_id=charge.subscription_id,
                    gateway_reference=result.refund_reference,
                    amount=refund_amount,
                    currency=charge.currency,
                    status=PaymentStatus.SUCCEEDED,
                    type=PaymentType.REFUND,
                    description=reason,
                    metadata={"refunded_transaction_id": transaction_id},
                    created_at=now,
                    processed_at=now,
                )
            )

        logger.info(
            "Payment refunded",
            transaction_id=transaction_id,
            refund_transaction_id=refund.transaction_id,
            subscription_id=charge.subscription_id,
            amount=refund_amount,
            remaining=refundable - refund_amount,
        )

        if credit_subscription:
            await self.ledger.add_credit(
                charge.subscription_id,
                refund_amount,
                reason,
                CreditType.REFUND,
                requested_by,
            )

        await emit_payment_event(
            BillingEvents.PAYMENT_REFUNDED,
            charge.subscription_id,
            transaction_id,
            refund_amount,
            charge.currency,
            event_bus=self.event_bus,
        )
        return refund

    async def get_transaction_history(
        self, subscription_id: str | None = None, limit: int = 50
    ) -> list[PaymentTransaction]:
        """Transactions newest first."""
        return await self.transactions.list_transactions(
            subscription_id=subscription_id, limit=limit
        )
