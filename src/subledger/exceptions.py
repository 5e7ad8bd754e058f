"""
Billing engine exceptions.

Every error carries a machine-readable code, an HTTP-style status code,
structured context and a recovery hint so API layers can surface it as-is.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class NotFoundError(BillingError):
    """A subscription, plan, pricing entry, issue or transaction is absent."""

    def __init__(
        self,
        message: str,
        error_code: str = "NOT_FOUND",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=404, context=context, recovery_hint=recovery_hint
        )


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_NOT_FOUND",
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


class PlanNotFoundError(NotFoundError):
    """Subscription plan not found error."""

    def __init__(
        self, message: str, plan_id: str | None = None, tier: str | None = None
    ) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id
        if tier:
            context["tier"] = tier

        super().__init__(
            message,
            "PLAN_NOT_FOUND",
            context=context,
            recovery_hint="Verify the plan ID and ensure it exists and is active",
        )


class PricingNotFoundError(NotFoundError):
    """Plan has no price for the requested billing cycle."""

    def __init__(self, message: str, plan_id: str, billing_cycle: str) -> None:
        super().__init__(
            message,
            "PRICING_NOT_FOUND",
            context={"plan_id": plan_id, "billing_cycle": billing_cycle},
            recovery_hint="Choose a billing cycle the plan is published for",
        )


class BillingIssueNotFoundError(NotFoundError):
    """Billing issue not found error."""

    def __init__(self, message: str, issue_id: str | None = None) -> None:
        context = {}
        if issue_id:
            context["issue_id"] = issue_id

        super().__init__(message, "BILLING_ISSUE_NOT_FOUND", context=context)


class TransactionNotFoundError(NotFoundError):
    """Payment transaction not found error."""

    def __init__(self, message: str, transaction_id: str | None = None) -> None:
        context = {}
        if transaction_id:
            context["transaction_id"] = transaction_id

        super().__init__(message, "TRANSACTION_NOT_FOUND", context=context)


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class InvalidStateTransitionError(SubscriptionError):
    """Requested operation is not legal from the current status."""

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        if current_state == requested_state:
            hint = f"Nothing to do: already {current_state}."
        else:
            hint = (
                f"Cannot transition from {current_state} to {requested_state}. "
                "Check subscription status first."
            )
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
            recovery_hint=hint,
        )
        self.error_code = "INVALID_STATE_TRANSITION"
        self.status_code = 409


class InvalidTierChangeError(SubscriptionError):
    """Tier change request that cannot be applied."""

    def __init__(self, message: str, current_tier: str, requested_tier: str) -> None:
        super().__init__(
            message,
            context={"current_tier": current_tier, "requested_tier": requested_tier},
            recovery_hint="Request a tier different from the current one",
        )
        self.error_code = "INVALID_TIER_CHANGE"


class CreditError(SubscriptionError):
    """Invalid credit or credit redemption."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message, context=context, recovery_hint="Credits must be positive amounts"
        )
        self.error_code = "CREDIT_ERROR"


class PaymentError(BillingError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class GatewayDeclinedError(PaymentError):
    """Gateway returned a definitive decline."""

    def __init__(self, message: str, failure_code: str | None = None) -> None:
        super().__init__(
            message,
            context={"failure_code": failure_code} if failure_code else None,
            recovery_hint="Ask the customer to update their payment method",
        )
        self.error_code = "GATEWAY_DECLINED"


class GatewayTimeoutError(PaymentError):
    """Gateway did not answer within the configured timeout."""

    def __init__(self, message: str, timeout_seconds: float) -> None:
        super().__init__(
            message,
            context={"timeout_seconds": timeout_seconds},
            recovery_hint="The charge is treated as failed and retried on the next scheduled run",
        )
        self.error_code = "GATEWAY_TIMEOUT"
        self.status_code = 504


class PersistenceConflictError(BillingError):
    """Optimistic-concurrency check failed on save."""

    def __init__(
        self, message: str, entity_id: str, expected_version: int, actual_version: int | None
    ) -> None:
        super().__init__(
            message,
            "PERSISTENCE_CONFLICT",
            status_code=409,
            context={
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            recovery_hint="Reload the entity and retry the operation",
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )
