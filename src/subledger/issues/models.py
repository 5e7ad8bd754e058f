"""
Billing issue models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class BillingIssueType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    CARD_EXPIRED = "card_expired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DISPUTE = "dispute"
    REFUND_REQUEST = "refund_request"
    BILLING_ADDRESS = "billing_address"
    TAX_CALCULATION = "tax_calculation"
    PRORATION_ERROR = "proration_error"
    WEBHOOK_FAILURE = "webhook_failure"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class BillingIssue(BaseModel):
    """
    A tracked billing problem.

    At most one non-resolved issue exists per (subscription, type).
    Resolved issues are kept for history.
    """

    issue_id: str = Field(default_factory=lambda: f"issue_{uuid4().hex[:16]}")
    subscription_id: str
    type: BillingIssueType
    severity: IssueSeverity
    description: str
    status: IssueStatus = IssueStatus.OPEN
    customer_notified: bool = False
    resolution_steps: list[str] = Field(default_factory=list)
    assigned_to: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resolved_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status != IssueStatus.RESOLVED


class IssueDetectionResult(BaseModel):
    """Summary of one detection run."""

    as_of: datetime
    scanned: int = 0
    issues_opened: list[str] = Field(default_factory=list)
    already_open: int = 0
    retry_needed: list[str] = Field(
        default_factory=list, description="Subscriptions whose failed renewal is due for retry"
    )
