"""
Billing issue detection and tracking.

Issues are opened under the owning subscription's lock with a find-then-add,
so there is never more than one open issue per (subscription, type).
The detector only opens and reports; resolving is always explicit.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from subledger.events import BillingEvents, EventBus, emit_billing_issue_event
from subledger.exceptions import BillingIssueNotFoundError, InvalidStateTransitionError
from subledger.issues.models import (
    BillingIssue,
    BillingIssueType,
    IssueDetectionResult,
    IssueSeverity,
    IssueStatus,
)
from subledger.metrics import BillingMetrics, get_billing_metrics
from subledger.repository.base import BillingIssueRepository, SubscriptionRepository
from subledger.settings import Settings, get_settings
from subledger.subscriptions.models import (
    TERMINAL_STATUSES,
    RenewalPaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from subledger.subscriptions.service import SubscriptionLocks, utcnow

logger = structlog.get_logger(__name__)


def retry_due(subscription: Subscription, as_of: datetime) -> bool:
    """Latest renewal failed and its retry date has been reached."""
    if subscription.status not in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
        return False
    latest = subscription.latest_renewal
    return (
        latest is not None
        and latest.payment_status == RenewalPaymentStatus.FAILED
        and latest.next_retry_date is not None
        and latest.next_retry_date <= as_of
    )


class BillingIssueDetector:
    """Opens, lists, escalates and resolves billing issues."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        issues: BillingIssueRepository,
        locks: SubscriptionLocks | None = None,
        settings: Settings.BillingSettings | None = None,
        event_bus: EventBus | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.subscriptions = subscriptions
        self.issues = issues
        self.locks = locks or SubscriptionLocks()
        self.settings = settings or get_settings().billing
        self.event_bus = event_bus
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock

    async def open_issue(
        self,
        subscription_id: str,
        issue_type: BillingIssueType,
        severity: IssueSeverity,
        description: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> tuple[BillingIssue, bool]:
        """
        Open an issue unless one of the same type is already open.

        Returns:
            The open issue and whether it was created by this call
        """
        async with self.locks.hold(subscription_id):
            existing = await self.issues.find_open(subscription_id, issue_type)
            if existing is not None:
                logger.debug(
                    "Billing issue already open",
                    subscription_id=subscription_id,
                    issue_id=existing.issue_id,
                    issue_type=issue_type.value,
                )
                return existing, False

            issue = await self.issues.add(
                BillingIssue(
                    subscription_id=subscription_id,
                    type=issue_type,
                    severity=severity,
                    description=description,
                    created_at=now or self.clock(),
                    metadata=metadata or {},
                )
            )

        logger.info(
            "Billing issue opened",
            issue_id=issue.issue_id,
            subscription_id=subscription_id,
            issue_type=issue_type.value,
            severity=severity.value,
        )
        self.metrics.record_issue_opened(issue_type.value, severity.value)
        await emit_billing_issue_event(
            BillingEvents.BILLING_ISSUE_OPENED,
            issue.issue_id,
            subscription_id,
            issue_type.value,
            severity.value,
            event_bus=self.event_bus,
        )
        return issue, True

    async def run_issue_detection(self, as_of: datetime | None = None) -> IssueDetectionResult:
        """
        Scan live subscriptions for expiring payment methods and due retries.

        Card expiry is taken as the first instant of the expiry month.
        """
        as_of = as_of or self.clock()
        horizon = as_of + timedelta(days=self.settings.card_expiry_lookahead_days)
        result = IssueDetectionResult(as_of=as_of)

        live_statuses = set(SubscriptionStatus) - TERMINAL_STATUSES
        for subscription in await self.subscriptions.list_by_status(live_statuses):
            result.scanned += 1

            if retry_due(subscription, as_of):
                result.retry_needed.append(subscription.subscription_id)

            expires_at = subscription.payment_method.expires_at
            if expires_at is None or expires_at > horizon:
                continue

            already_expired = expires_at <= as_of
            method = subscription.payment_method
            issue, created = await self.open_issue(
                subscription.subscription_id,
                BillingIssueType.CARD_EXPIRED,
                IssueSeverity.HIGH if already_expired else IssueSeverity.MEDIUM,
                (
                    f"Payment method ending in {method.last4 or '----'} "
                    f"{'expired' if already_expired else 'expires'} "
                    f"{method.expiry_month:02d}/{method.expiry_year}"
                ),
                metadata={
                    "payment_method_id": method.payment_method_id,
                    "expires_at": expires_at.isoformat(),
                },
                now=as_of,
            )
            if created:
                result.issues_opened.append(issue.issue_id)
            else:
                result.already_open += 1

        logger.info(
            "Billing issue detection completed",
            as_of=as_of.isoformat(),
            scanned=result.scanned,
            opened=len(result.issues_opened),
            already_open=result.already_open,
            retry_needed=len(result.retry_needed),
        )
        return result

    async def _load(self, issue_id: str) -> BillingIssue:
        issue = await self.issues.get(issue_id)
        if issue is None:
            raise BillingIssueNotFoundError(
                f"Billing issue {issue_id} not found", issue_id=issue_id
            )
        return issue

    async def resolve_billing_issue(self, issue_id: str, resolution_note: str) -> BillingIssue:
        """Mark an issue resolved, recording the note as the final step."""
        issue = await self._load(issue_id)
        async with self.locks.hold(issue.subscription_id):
            issue = await self._load(issue_id)
            if issue.status == IssueStatus.RESOLVED:
                raise InvalidStateTransitionError(
                    f"Billing issue {issue_id} is already resolved",
                    current_state=IssueStatus.RESOLVED.value,
                    requested_state=IssueStatus.RESOLVED.value,
                )
            issue.status = IssueStatus.RESOLVED
            issue.resolved_at = self.clock()
            issue.resolution_steps.append(f"Resolved: {resolution_note}")
            issue = await self.issues.save(issue)

        logger.info("Billing issue resolved", issue_id=issue_id)
        await emit_billing_issue_event(
            BillingEvents.BILLING_ISSUE_RESOLVED,
            issue.issue_id,
            issue.subscription_id,
            issue.type.value,
            issue.severity.value,
            event_bus=self.event_bus,
        )
        return issue

    async def escalate_billing_issue(
        self, issue_id: str, note: str, assigned_to: str | None = None
    ) -> BillingIssue:
        """Escalate an unresolved issue, optionally reassigning it."""
        issue = await self._load(issue_id)
        async with self.locks.hold(issue.subscription_id):
            issue = await self._load(issue_id)
            if issue.status == IssueStatus.RESOLVED:
                raise InvalidStateTransitionError(
                    f"Billing issue {issue_id} is resolved and cannot be escalated",
                    current_state=issue.status.value,
                    requested_state=IssueStatus.ESCALATED.value,
                )
            issue.status = IssueStatus.ESCALATED
            issue.resolution_steps.append(f"Escalated: {note}")
            if assigned_to:
                issue.assigned_to = assigned_to
            issue = await self.issues.save(issue)

        logger.warning("Billing issue escalated", issue_id=issue_id, assigned_to=assigned_to)
        await emit_billing_issue_event(
            BillingEvents.BILLING_ISSUE_ESCALATED,
            issue.issue_id,
            issue.subscription_id,
            issue.type.value,
            issue.severity.value,
            event_bus=self.event_bus,
            assigned_to=assigned_to,
        )
        return issue

    async def list_billing_issues(
        self, subscription_id: str | None = None, status: IssueStatus | None = None
    ) -> list[BillingIssue]:
        return await self.issues.list_issues(subscription_id=subscription_id, status=status)
