"""
Tests for the subscription status state machine.
"""

import pytest

from subledger.exceptions import InvalidStateTransitionError
from subledger.subscriptions import state
from subledger.subscriptions.models import TERMINAL_STATUSES, SubscriptionStatus

S = SubscriptionStatus


class TestTransitionTable:
    """Test the allowed-transition table."""

    def test_every_status_has_an_entry(self):
        assert set(state.ALLOWED_TRANSITIONS) == set(SubscriptionStatus)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert state.ALLOWED_TRANSITIONS[status] == frozenset()

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (S.TRIALING, S.ACTIVE, True),
            (S.TRIALING, S.PAUSED, False),
            (S.ACTIVE, S.PAUSED, True),
            (S.ACTIVE, S.UNPAID, False),
            (S.PAST_DUE, S.UNPAID, True),
            (S.UNPAID, S.ACTIVE, True),
            (S.PAUSED, S.PAST_DUE, False),
            (S.CANCELED, S.ACTIVE, False),
        ],
    )
    def test_can_transition(self, current, target, allowed):
        assert state.can_transition(current, target) is allowed


class TestTransition:
    """Test applying transitions to a subscription."""

    def test_legal_transition_updates_status(self, make_subscription):
        subscription = make_subscription()

        state.transition(subscription, S.PAUSED)

        assert subscription.status == S.PAUSED

    def test_illegal_transition_raises(self, make_subscription):
        subscription = make_subscription(status=S.CANCELED)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            state.transition(subscription, S.ACTIVE)

        error = exc_info.value
        assert error.error_code == "INVALID_STATE_TRANSITION"
        assert error.status_code == 409
        assert error.context == {"current_state": "canceled", "requested_state": "active"}
        assert subscription.status == S.CANCELED

    def test_same_status_is_rejected(self, make_subscription):
        subscription = make_subscription()

        with pytest.raises(InvalidStateTransitionError, match="already active") as exc_info:
            state.transition(subscription, S.ACTIVE)

        assert exc_info.value.recovery_hint == "Nothing to do: already active."

    def test_require_status(self, make_subscription):
        subscription = make_subscription(status=S.TRIALING)

        state.require_status(subscription, {S.ACTIVE, S.TRIALING}, "change tier of")
        with pytest.raises(InvalidStateTransitionError, match="Cannot pause subscription"):
            state.require_status(subscription, {S.ACTIVE}, "pause")
