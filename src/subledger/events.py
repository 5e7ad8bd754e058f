"""
Billing event types, the in-process event bus and emission helpers.

Notification delivery, webhooks and audit sinks subscribe to these events
from outside the engine. Publishing never fails the publisher.
"""

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


# ============================================================================
# Billing Event Types
# ============================================================================


class BillingEvents:
    """Billing event type constants."""

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"
    SUBSCRIPTION_USAGE_THRESHOLD = "subscription.usage_threshold"

    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Credit events
    CREDIT_ADDED = "credit.added"

    # Billing issue events
    BILLING_ISSUE_OPENED = "billing_issue.opened"
    BILLING_ISSUE_RESOLVED = "billing_issue.resolved"
    BILLING_ISSUE_ESCALATED = "billing_issue.escalated"


class Event(BaseModel):
    """Published event envelope."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """In-process publish/subscribe bus with sync or async handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type``; ``"*"`` receives everything."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        event = Event(event_type=event_type, payload=payload, metadata=metadata or {})
        for handler in [*self._handlers.get(event_type, []), *self._handlers.get("*", [])]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "Event handler failed",
                    event_type=event_type,
                    event_id=event.event_id,
                    error=str(exc),
                    exc_info=True,
                )
        return event


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global event bus (mainly for testing)."""
    global _event_bus
    _event_bus = None


# ============================================================================
# Event Emission Helpers
# ============================================================================


async def emit_subscription_event(
    event_type: str,
    subscription_id: str,
    user_id: str,
    event_bus: EventBus | None = None,
    **extra_data: Any,
) -> None:
    """
    Emit a subscription lifecycle event.

    Args:
        event_type: One of the ``BillingEvents.SUBSCRIPTION_*`` constants
        subscription_id: Subscription ID
        user_id: Owning user
        event_bus: Event bus instance (injected, optional - will use global if not provided)
        **extra_data: Additional event data
    """
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=event_type,
        payload={"subscription_id": subscription_id, "user_id": user_id, **extra_data},
        metadata={"user_id": user_id, "source": "billing"},
    )

    logger.info(
        "Subscription event emitted",
        event_type=event_type,
        subscription_id=subscription_id,
    )


async def emit_payment_event(
    event_type: str,
    subscription_id: str,
    transaction_id: str,
    amount: int,
    currency: str,
    event_bus: EventBus | None = None,
    **extra_data: Any,
) -> None:
    """Emit a payment succeeded/failed/refunded event."""
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=event_type,
        payload={
            "subscription_id": subscription_id,
            "transaction_id": transaction_id,
            "amount": amount,
            "currency": currency,
            **extra_data,
        },
        metadata={"source": "billing"},
    )

    logger.info(
        "Payment event emitted",
        event_type=event_type,
        subscription_id=subscription_id,
        transaction_id=transaction_id,
        amount=amount,
    )


async def emit_billing_issue_event(
    event_type: str,
    issue_id: str,
    subscription_id: str,
    issue_type: str,
    severity: str,
    event_bus: EventBus | None = None,
    **extra_data: Any,
) -> None:
    """Emit a billing issue opened/resolved/escalated event."""
    if event_bus is None:
        event_bus = get_event_bus()

    await event_bus.publish(
        event_type=event_type,
        payload={
            "issue_id": issue_id,
            "subscription_id": subscription_id,
            "issue_type": issue_type,
            "severity": severity,
            **extra_data,
        },
        metadata={"source": "billing"},
    )

    logger.info(
        "Billing issue event emitted",
        event_type=event_type,
        issue_id=issue_id,
        subscription_id=subscription_id,
    )
