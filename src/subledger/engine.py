"""
Billing engine facade.

Wires the catalog, repositories, ledger, renewal processor, issue detector,
payment service and analytics around one set of shared locks, event bus and
clock. Callers (API layers, the CLI, Celery tasks) talk to ``BillingEngine``
only.
"""

import importlib
from collections.abc import Callable
from datetime import date, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subledger.analytics.models import SubscriptionAnalytics
from subledger.analytics.service import AnalyticsAggregator
from subledger.catalog.models import BillingCycle, SubscriptionPlan, SubscriptionTier
from subledger.catalog.service import PlanCatalog
from subledger.events import EventBus, get_event_bus
from subledger.exceptions import BillingConfigurationError
from subledger.issues.detector import BillingIssueDetector
from subledger.issues.models import BillingIssue, IssueDetectionResult, IssueStatus
from subledger.metrics import BillingMetrics, get_billing_metrics
from subledger.payments.gateway import PaymentGateway, TimeoutGuardedGateway
from subledger.payments.models import PaymentTransaction
from subledger.payments.service import PaymentService
from subledger.renewals.processor import RenewalBatchResult, RenewalProcessor
from subledger.repository.base import (
    BillingIssueRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from subledger.repository.memory import (
    InMemoryBillingIssueRepository,
    InMemorySubscriptionRepository,
    InMemoryTransactionRepository,
)
from subledger.repository.sql import (
    SQLBillingIssueRepository,
    SQLSubscriptionRepository,
    SQLTransactionRepository,
)
from subledger.settings import Settings, get_settings
from subledger.subscriptions.models import (
    BillingInfo,
    CreditType,
    PaymentMethodInfo,
    Subscription,
    SubscriptionCredit,
)
from subledger.subscriptions.search import (
    SortKey,
    SortOrder,
    SubscriptionSearchFilters,
    SubscriptionSearchResult,
)
from subledger.subscriptions.service import SubscriptionLedger, SubscriptionLocks, utcnow

logger = structlog.get_logger(__name__)


def load_gateway(import_path: str | None) -> PaymentGateway:
    """
    Build the gateway named by ``billing.gateway_factory``.

    Args:
        import_path: ``"package.module:callable"``; the callable takes no arguments

    Raises:
        BillingConfigurationError: Unset, unimportable, or not a PaymentGateway
    """
    if not import_path:
        raise BillingConfigurationError(
            "No payment gateway configured",
            config_key="billing.gateway_factory",
            recovery_hint="Set BILLING__GATEWAY_FACTORY to 'package.module:callable'",
        )
    module_name, _, attribute = import_path.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError, ValueError) as e:
        raise BillingConfigurationError(
            f"Cannot import payment gateway factory {import_path!r}: {e}",
            config_key="billing.gateway_factory",
        ) from e

    gateway = factory()
    if not isinstance(gateway, PaymentGateway):
        raise BillingConfigurationError(
            f"{import_path!r} returned {type(gateway).__name__}, not a PaymentGateway",
            config_key="billing.gateway_factory",
        )
    return gateway


class BillingEngine:
    """Entry point for every subscription and billing operation."""

    def __init__(
        self,
        gateway: PaymentGateway,
        subscriptions: SubscriptionRepository | None = None,
        transactions: TransactionRepository | None = None,
        issues: BillingIssueRepository | None = None,
        catalog: PlanCatalog | None = None,
        settings: Settings.BillingSettings | None = None,
        event_bus: EventBus | None = None,
        metrics: BillingMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings().billing
        self.catalog = catalog or PlanCatalog()
        self.subscriptions = subscriptions or InMemorySubscriptionRepository()
        self.transactions = transactions or InMemoryTransactionRepository()
        self.issues = issues or InMemoryBillingIssueRepository()
        self.event_bus = event_bus or get_event_bus()
        self.metrics = metrics or get_billing_metrics()
        self.clock = clock
        self.locks = SubscriptionLocks()

        if not isinstance(gateway, TimeoutGuardedGateway):
            gateway = TimeoutGuardedGateway(gateway, self.settings.gateway_timeout_seconds)
        self.gateway = gateway

        self.ledger = SubscriptionLedger(
            self.subscriptions,
            self.catalog,
            settings=self.settings,
            locks=self.locks,
            event_bus=self.event_bus,
            metrics=self.metrics,
            clock=clock,
        )
        self.issue_detector = BillingIssueDetector(
            self.subscriptions,
            self.issues,
            locks=self.locks,
            settings=self.settings,
            event_bus=self.event_bus,
            metrics=self.metrics,
            clock=clock,
        )
        self.renewal_processor = RenewalProcessor(
            self.ledger,
            self.transactions,
            self.gateway,
            self.issue_detector,
            settings=self.settings,
            event_bus=self.event_bus,
            metrics=self.metrics,
            clock=clock,
        )
        self.payments = PaymentService(
            self.transactions, self.gateway, self.ledger, event_bus=self.event_bus, clock=clock
        )
        self.analytics = AnalyticsAggregator(
            self.subscriptions, self.transactions, settings=self.settings, clock=clock
        )

    @classmethod
    def with_sql_storage(
        cls,
        gateway: PaymentGateway,
        session_maker: async_sessionmaker[AsyncSession],
        **kwargs,
    ) -> "BillingEngine":
        """Engine backed by the SQLAlchemy repositories."""
        return cls(
            gateway,
            subscriptions=SQLSubscriptionRepository(session_maker),
            transactions=SQLTransactionRepository(session_maker),
            issues=SQLBillingIssueRepository(session_maker),
            **kwargs,
        )

    @classmethod
    def from_settings(cls) -> "BillingEngine":
        """SQL-backed engine using the configured database and gateway factory."""
        from subledger.db import get_session_maker

        settings = get_settings()
        gateway = load_gateway(settings.billing.gateway_factory)
        logger.debug("Building billing engine", database_url=settings.database.url)
        return cls.with_sql_storage(gateway, get_session_maker(), settings=settings.billing)

    # ==================== Catalog ====================

    def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        return self.catalog.list_plans(active_only=active_only)

    # ==================== Subscriptions ====================

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        payment_method: PaymentMethodInfo,
        billing_cycle: BillingCycle,
        discount_code: str | None = None,
        billing: BillingInfo | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        return await self.ledger.create_subscription(
            user_id,
            plan_id,
            payment_method,
            billing_cycle,
            discount_code=discount_code,
            billing=billing,
            now=now,
        )

    async def change_tier(
        self,
        subscription_id: str,
        new_tier: SubscriptionTier,
        effective_date: datetime | None = None,
        reason: str = "Customer request",
        requested_by: str | None = None,
    ) -> Subscription:
        return await self.ledger.change_tier(
            subscription_id,
            new_tier,
            effective_date=effective_date,
            reason=reason,
            requested_by=requested_by,
        )

    async def cancel(
        self, subscription_id: str, at_period_end: bool = True, reason: str = "Customer request"
    ) -> Subscription:
        return await self.ledger.cancel(subscription_id, at_period_end=at_period_end, reason=reason)

    async def reactivate(
        self, subscription_id: str, reason: str = "Customer request"
    ) -> Subscription:
        return await self.ledger.reactivate(subscription_id, reason=reason)

    async def pause(self, subscription_id: str, reason: str = "Customer request") -> Subscription:
        return await self.ledger.pause(subscription_id, reason=reason)

    async def resume(self, subscription_id: str) -> Subscription:
        return await self.ledger.resume(subscription_id)

    async def add_credit(
        self,
        subscription_id: str,
        amount: int,
        reason: str,
        credit_type: CreditType,
        created_by: str,
        expires_at: datetime | None = None,
    ) -> SubscriptionCredit:
        return await self.ledger.add_credit(
            subscription_id, amount, reason, credit_type, created_by, expires_at=expires_at
        )

    async def record_usage(
        self, subscription_id: str, quantity: int, now: datetime | None = None
    ) -> Subscription:
        return await self.ledger.record_usage(subscription_id, quantity, now=now)

    async def update_payment_method(
        self, subscription_id: str, payment_method: PaymentMethodInfo
    ) -> Subscription:
        return await self.ledger.update_payment_method(subscription_id, payment_method)

    async def update_billing_info(self, subscription_id: str, billing: BillingInfo) -> Subscription:
        return await self.ledger.update_billing_info(subscription_id, billing)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.ledger.get_subscription(subscription_id)

    async def list_user_subscriptions(self, user_id: str) -> list[Subscription]:
        return await self.ledger.list_user_subscriptions(user_id)

    async def search_subscriptions(
        self,
        filters: SubscriptionSearchFilters | None = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: SortKey = "created_at",
        sort_order: SortOrder = "desc",
    ) -> SubscriptionSearchResult:
        return await self.ledger.search_subscriptions(
            filters, page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order
        )

    # ==================== Scheduled jobs ====================

    async def run_renewal_batch(
        self, as_of: date | None = None, now: datetime | None = None
    ) -> RenewalBatchResult:
        return await self.renewal_processor.run_renewal_batch(as_of=as_of, now=now)

    async def run_issue_detection(self, as_of: datetime | None = None) -> IssueDetectionResult:
        return await self.issue_detector.run_issue_detection(as_of=as_of)

    # ==================== Billing issues ====================

    async def list_billing_issues(
        self, subscription_id: str | None = None, status: IssueStatus | None = None
    ) -> list[BillingIssue]:
        return await self.issue_detector.list_billing_issues(subscription_id, status)

    async def resolve_billing_issue(self, issue_id: str, resolution_note: str) -> BillingIssue:
        return await self.issue_detector.resolve_billing_issue(issue_id, resolution_note)

    async def escalate_billing_issue(
        self, issue_id: str, note: str, assigned_to: str | None = None
    ) -> BillingIssue:
        return await self.issue_detector.escalate_billing_issue(issue_id, note, assigned_to)

    # ==================== Payments and analytics ====================

    async def refund_transaction(
        self, transaction_id: str, amount: int | None = None, credit_subscription: bool = False
    ) -> PaymentTransaction:
        return await self.payments.refund_transaction(
            transaction_id, amount=amount, credit_subscription=credit_subscription
        )

    async def get_transaction_history(
        self, subscription_id: str | None = None, limit: int = 50
    ) -> list[PaymentTransaction]:
        return await self.payments.get_transaction_history(subscription_id, limit=limit)

    async def get_analytics(self, as_of: datetime | None = None) -> SubscriptionAnalytics:
        return await self.analytics.get_analytics(as_of=as_of)
