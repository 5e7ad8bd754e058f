"""
Billing metrics and tracing
"""

import contextlib
from contextlib import AbstractContextManager

import structlog
from opentelemetry.metrics import Counter, Histogram, Meter
from opentelemetry.trace import Span, SpanKind, Tracer

from subledger.settings import get_settings
from subledger.telemetry import get_meter, get_tracer

logger = structlog.get_logger(__name__)


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None, tracer: Tracer | None = None) -> None:
        self.enabled = get_settings().observability.enable_metrics
        self.meter = meter or get_meter("billing")
        self.tracer = tracer or get_tracer("billing")

        # Subscription metrics
        self.subscription_created_counter = self._create_counter(
            name="billing.subscription.created",
            description="Number of subscriptions created",
        )
        self.tier_change_counter = self._create_counter(
            name="billing.subscription.tier_changed",
            description="Number of upgrades and downgrades",
        )
        self.cancellation_counter = self._create_counter(
            name="billing.subscription.canceled",
            description="Number of cancellations requested or applied",
        )

        # Renewal metrics
        self.renewal_succeeded_counter = self._create_counter(
            name="billing.renewal.succeeded",
            description="Number of successful renewals",
        )
        self.renewal_failed_counter = self._create_counter(
            name="billing.renewal.failed",
            description="Number of failed renewal charges",
        )
        self.renewal_skipped_counter = self._create_counter(
            name="billing.renewal.skipped",
            description="Number of selected subscriptions no longer due",
        )
        self.charge_amount_histogram = self._create_histogram(
            name="billing.renewal.charge_amount",
            description="Renewal charge amounts",
            unit="cents",
        )
        self.batch_duration_histogram = self._create_histogram(
            name="billing.renewal.batch_duration",
            description="Renewal batch duration",
            unit="ms",
        )

        # Billing issue metrics
        self.issue_opened_counter = self._create_counter(
            name="billing.issue.opened",
            description="Number of billing issues opened",
        )

    def record_subscription_created(self, tier: str, billing_cycle: str, status: str) -> None:
        """Record subscription creation"""
        if not self.enabled:
            return
        self.subscription_created_counter.add(
            1, {"tier": tier, "billing_cycle": billing_cycle, "status": status}
        )

    def record_tier_change(self, from_tier: str, to_tier: str, change_type: str) -> None:
        """Record an upgrade or downgrade"""
        if not self.enabled:
            return
        self.tier_change_counter.add(
            1, {"from_tier": from_tier, "to_tier": to_tier, "type": change_type}
        )

    def record_cancellation(self, tier: str, at_period_end: bool) -> None:
        """Record a cancellation"""
        if not self.enabled:
            return
        self.cancellation_counter.add(1, {"tier": tier, "at_period_end": str(at_period_end)})

    def record_renewal(self, outcome: str, amount: int) -> None:
        """Record the outcome of one renewal item"""
        if not self.enabled:
            return
        attributes = {"outcome": outcome}
        if outcome == "succeeded":
            self.renewal_succeeded_counter.add(1, attributes)
            self.charge_amount_histogram.record(amount, attributes)
        elif outcome == "failed":
            self.renewal_failed_counter.add(1, attributes)
        elif outcome == "skipped":
            self.renewal_skipped_counter.add(1, attributes)

    def record_batch_duration(self, duration_ms: float, processed: int) -> None:
        """Record renewal batch duration"""
        if not self.enabled:
            return
        self.batch_duration_histogram.record(duration_ms, {"processed": processed})

    def record_issue_opened(self, issue_type: str, severity: str) -> None:
        """Record a billing issue being opened"""
        if not self.enabled:
            return
        self.issue_opened_counter.add(1, {"type": issue_type, "severity": severity})

    # Internal helpers -----------------------------------------------------

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)

    # Tracing helpers
    def trace_renewal(self, subscription_id: str) -> AbstractContextManager[Span | None]:
        """Create a trace span for one renewal item"""
        if not self.enabled:
            return contextlib.nullcontext(None)
        return self.tracer.start_as_current_span(
            "billing.renewal.process",
            kind=SpanKind.INTERNAL,
            attributes={"subscription_id": subscription_id},
        )


# Global metrics instance
_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(metrics: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = metrics
