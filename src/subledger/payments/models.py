"""
Payment transaction and gateway result models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    """Payment status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentType(str, Enum):
    """What a charge was for."""

    SUBSCRIPTION = "subscription"
    SETUP = "setup"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REFUND = "refund"
    CREDIT = "credit"


class FeeType(str, Enum):
    GATEWAY = "gateway"
    TAX = "tax"
    PROCESSING = "processing"


class PaymentFee(BaseModel):
    type: FeeType
    amount: int = Field(ge=0)
    currency: str = "USD"
    description: str = ""


class PaymentTransaction(BaseModel):
    """One attempted charge against the gateway."""

    transaction_id: str = Field(default_factory=lambda: f"txn_{uuid4().hex[:16]}")
    subscription_id: str
    gateway_reference: str | None = Field(None, description="Gateway-side payment reference")
    amount: int = Field(ge=0)
    currency: str = "USD"
    status: PaymentStatus
    type: PaymentType
    description: str = ""
    failure_code: str | None = None
    failure_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
    fees: list[PaymentFee] = Field(default_factory=list)
    version: int = 0

    @property
    def total_fees(self) -> int:
        return sum(fee.amount for fee in self.fees)

    @property
    def refunded_transaction_id(self) -> str | None:
        """Charge this row refunds; only set on ``refund`` transactions."""
        return self.metadata.get("refunded_transaction_id")


class ChargeResult(BaseModel):
    """Outcome of a gateway charge call."""

    succeeded: bool
    transaction_reference: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    fees: list[PaymentFee] = Field(default_factory=list)


class RefundResult(BaseModel):
    """Outcome of a gateway refund call."""

    succeeded: bool
    refund_reference: str | None = None
    amount: int = 0
    failure_code: str | None = None
    failure_message: str | None = None
