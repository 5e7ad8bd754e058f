"""
Persistence interfaces.

Every save is a check-and-set on ``version``: the caller passes the entity
as it read it, the store writes only if its stored version still matches
and returns the entity with the version bumped. A mismatch raises
``PersistenceConflictError``. Reads return private copies. Payment
transactions are append-only and have no save.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from subledger.issues.models import BillingIssue, BillingIssueType, IssueStatus
from subledger.payments.models import PaymentTransaction
from subledger.subscriptions.models import Subscription, SubscriptionStatus


class SubscriptionRepository(ABC):
    @abstractmethod
    async def get(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def add(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription at version 1."""

    @abstractmethod
    async def save(self, subscription: Subscription) -> Subscription:
        """Conditional update against ``subscription.version``."""

    @abstractmethod
    async def list_all(self) -> list[Subscription]: ...

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Subscription]: ...

    @abstractmethod
    async def list_by_status(
        self, statuses: set[SubscriptionStatus], billing_due_before: datetime | None = None
    ) -> list[Subscription]:
        """Subscriptions in ``statuses``, optionally with next billing at or before a cutoff."""


class TransactionRepository(ABC):
    @abstractmethod
    async def get(self, transaction_id: str) -> PaymentTransaction | None: ...

    @abstractmethod
    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction: ...

    @abstractmethod
    async def list_transactions(
        self, subscription_id: str | None = None, limit: int | None = None
    ) -> list[PaymentTransaction]:
        """Newest first."""


class BillingIssueRepository(ABC):
    @abstractmethod
    async def get(self, issue_id: str) -> BillingIssue | None: ...

    @abstractmethod
    async def add(self, issue: BillingIssue) -> BillingIssue: ...

    @abstractmethod
    async def save(self, issue: BillingIssue) -> BillingIssue: ...

    @abstractmethod
    async def find_open(
        self, subscription_id: str, issue_type: BillingIssueType
    ) -> BillingIssue | None: ...

    @abstractmethod
    async def list_issues(
        self, subscription_id: str | None = None, status: IssueStatus | None = None
    ) -> list[BillingIssue]:
        """Newest first."""
