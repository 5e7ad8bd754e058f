"""
Tests for the billing exception hierarchy.
"""

from subledger.exceptions import (
    BillingConfigurationError,
    BillingError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    NotFoundError,
    PaymentError,
    PersistenceConflictError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)


class TestBillingErrors:
    """Test codes, status codes and serialisation."""

    def test_base_defaults(self):
        error = BillingError("Something broke")

        assert error.to_dict() == {
            "error_code": "BILLING_ERROR",
            "message": "Something broke",
            "status_code": 400,
            "context": {},
            "recovery_hint": None,
        }
        assert str(error) == "Something broke"

    def test_not_found_family(self):
        error = SubscriptionNotFoundError("Subscription sub_1 not found", subscription_id="sub_1")

        assert isinstance(error, NotFoundError)
        assert error.status_code == 404
        assert error.error_code == "SUBSCRIPTION_NOT_FOUND"
        assert error.context == {"subscription_id": "sub_1"}

    def test_plan_not_found_context(self):
        error = PlanNotFoundError("No plan for tier", tier="enterprise")

        assert error.context == {"tier": "enterprise"}

    def test_gateway_errors_are_payment_errors(self):
        declined = GatewayDeclinedError("Declined", failure_code="card_declined")
        timeout = GatewayTimeoutError("Timed out", timeout_seconds=30.0)

        assert isinstance(declined, PaymentError)
        assert declined.status_code == 402
        assert declined.context == {"failure_code": "card_declined"}
        assert GatewayDeclinedError("Declined").context == {}
        assert timeout.status_code == 504
        assert timeout.error_code == "GATEWAY_TIMEOUT"

    def test_persistence_conflict(self):
        error = PersistenceConflictError(
            "Stale write for sub_1", entity_id="sub_1", expected_version=1, actual_version=2
        )

        assert error.status_code == 409
        assert error.context == {"entity_id": "sub_1", "expected_version": 1, "actual_version": 2}

    def test_configuration_error_hint(self):
        error = BillingConfigurationError("No gateway", config_key="billing.gateway_factory")

        assert error.status_code == 500
        assert error.recovery_hint == "Check billing configuration settings"
        assert error.context == {"config_key": "billing.gateway_factory"}
