"""
Subscription status state machine.

Every status change goes through ``transition``; the table below is the
complete set of legal edges.
"""

from subledger.exceptions import InvalidStateTransitionError
from subledger.subscriptions.models import Subscription, SubscriptionStatus

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE, S.INCOMPLETE_EXPIRED, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.PAUSED, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def require_status(
    subscription: Subscription,
    allowed: set[SubscriptionStatus] | frozenset[SubscriptionStatus],
    operation: str,
) -> None:
    """Raise unless the subscription is in one of ``allowed``."""
    if subscription.status not in allowed:
        raise InvalidStateTransitionError(
            f"Cannot {operation} subscription {subscription.subscription_id} "
            f"in status {subscription.status.value}",
            current_state=subscription.status.value,
            requested_state=operation,
        )


def transition(subscription: Subscription, target: SubscriptionStatus) -> Subscription:
    """Move ``subscription`` to ``target`` or raise ``InvalidStateTransitionError``."""
    current = subscription.status
    if current == target:
        raise InvalidStateTransitionError(
            f"Subscription {subscription.subscription_id} is already {target.value}",
            current_state=current.value,
            requested_state=target.value,
        )
    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Invalid transition from {current.value} to {target.value}",
            current_state=current.value,
            requested_state=target.value,
        )
    subscription.status = target
    return subscription
