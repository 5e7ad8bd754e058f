"""
Payment gateway collaborator.

The engine only ever talks to a gateway through ``TimeoutGuardedGateway``:
a slow or broken gateway turns into a failed result instead of an exception
or a call left in flight.
"""

import asyncio
from abc import ABC, abstractmethod

import structlog

from subledger.exceptions import GatewayDeclinedError, GatewayTimeoutError
from subledger.payments.models import ChargeResult, RefundResult
from subledger.subscriptions.models import PaymentMethodInfo

logger = structlog.get_logger(__name__)

GATEWAY_TIMEOUT = "gateway_timeout"
GATEWAY_ERROR = "gateway_error"


class PaymentGateway(ABC):
    """Abstract payment gateway."""

    @abstractmethod
    async def charge(
        self,
        subscription_id: str,
        amount: int,
        currency: str,
        payment_method: PaymentMethodInfo,
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Charge ``amount`` minor units.

        A gateway must return the original result for a repeated
        ``idempotency_key`` instead of charging twice.
        """

    @abstractmethod
    async def refund(
        self, transaction_reference: str, amount: int, idempotency_key: str
    ) -> RefundResult:
        """
        Refund ``amount`` minor units of an earlier charge.

        A repeated ``idempotency_key`` must not refund twice.
        """


def charge_idempotency_key(subscription_id: str, period_end_iso: str, attempt: int) -> str:
    """Key identifying one charge attempt for one billing period."""
    return f"renewal:{subscription_id}:{period_end_iso}:{attempt}"


def refund_idempotency_key(transaction_id: str, already_refunded: int, amount: int) -> str:
    """Key identifying one refund step against one charge."""
    return f"refund:{transaction_id}:{already_refunded}:{amount}"


class TimeoutGuardedGateway(PaymentGateway):
    """Wraps a gateway with a timeout and converts errors into failed results."""

    def __init__(self, gateway: PaymentGateway, timeout_seconds: float) -> None:
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    async def charge(
        self,
        subscription_id: str,
        amount: int,
        currency: str,
        payment_method: PaymentMethodInfo,
        idempotency_key: str,
    ) -> ChargeResult:
        try:
            return await asyncio.wait_for(
                self.gateway.charge(
                    subscription_id, amount, currency, payment_method, idempotency_key
                ),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            error = GatewayTimeoutError(
                f"Gateway charge timed out after {self.timeout_seconds}s",
                timeout_seconds=self.timeout_seconds,
            )
            logger.warning(
                "Gateway charge timed out",
                subscription_id=subscription_id,
                idempotency_key=idempotency_key,
                timeout_seconds=self.timeout_seconds,
            )
            return ChargeResult(
                succeeded=False, failure_code=GATEWAY_TIMEOUT, failure_message=error.message
            )
        except GatewayDeclinedError as e:
            return ChargeResult(
                succeeded=False,
                failure_code=e.context.get("failure_code", "card_declined"),
                failure_message=e.message,
            )
        except Exception as e:
            logger.error(
                "Gateway charge raised",
                subscription_id=subscription_id,
                idempotency_key=idempotency_key,
                error=str(e),
                exc_info=True,
            )
            return ChargeResult(succeeded=False, failure_code=GATEWAY_ERROR, failure_message=str(e))

    async def refund(
        self, transaction_reference: str, amount: int, idempotency_key: str
    ) -> RefundResult:
        try:
            return await asyncio.wait_for(
                self.gateway.refund(transaction_reference, amount, idempotency_key),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Gateway refund timed out",
                transaction_reference=transaction_reference,
                idempotency_key=idempotency_key,
            )
            return RefundResult(
                succeeded=False,
                failure_code=GATEWAY_TIMEOUT,
                failure_message=f"Gateway refund timed out after {self.timeout_seconds}s",
            )
        except Exception as e:
            logger.error(
                "Gateway refund raised",
                transaction_reference=transaction_reference,
                idempotency_key=idempotency_key,
                error=str(e),
                exc_info=True,
            )
            return RefundResult(succeeded=False, failure_code=GATEWAY_ERROR, failure_message=str(e))
