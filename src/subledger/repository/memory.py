"""
In-memory repositories.

Stores deep copies so callers never share mutable state with the store.
Check-and-set runs without awaiting, so it is atomic on the event loop.
"""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel

from subledger.exceptions import PersistenceConflictError
from subledger.issues.models import BillingIssue, BillingIssueType, IssueStatus
from subledger.payments.models import PaymentTransaction
from subledger.repository.base import (
    BillingIssueRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from subledger.subscriptions.models import Subscription, SubscriptionStatus

ModelT = TypeVar("ModelT", bound=BaseModel)


class _VersionedStore(Generic[ModelT]):
    def __init__(self, id_field: str) -> None:
        self._id_field = id_field
        self._rows: dict[str, ModelT] = {}

    def get(self, entity_id: str) -> ModelT | None:
        row = self._rows.get(entity_id)
        return row.model_copy(deep=True) if row is not None else None

    def insert(self, entity: ModelT) -> ModelT:
        entity_id = getattr(entity, self._id_field)
        if entity_id in self._rows:
            raise PersistenceConflictError(
                f"{entity_id} already exists",
                entity_id=entity_id,
                expected_version=0,
                actual_version=self._rows[entity_id].version,  # type: ignore[attr-defined]
            )
        stored = entity.model_copy(deep=True, update={"version": 1})
        self._rows[entity_id] = stored
        return stored.model_copy(deep=True)

    def update(self, entity: ModelT) -> ModelT:
        entity_id = getattr(entity, self._id_field)
        current = self._rows.get(entity_id)
        expected = entity.version  # type: ignore[attr-defined]
        actual = current.version if current is not None else None  # type: ignore[attr-defined]
        if actual != expected:
            raise PersistenceConflictError(
                f"Stale write for {entity_id}",
                entity_id=entity_id,
                expected_version=expected,
                actual_version=actual,
            )
        stored = entity.model_copy(deep=True, update={"version": expected + 1})
        self._rows[entity_id] = stored
        return stored.model_copy(deep=True)

    def values(self) -> list[ModelT]:
        return [row.model_copy(deep=True) for row in self._rows.values()]


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self) -> None:
        self._store: _VersionedStore[Subscription] = _VersionedStore("subscription_id")

    async def get(self, subscription_id: str) -> Subscription | None:
        return self._store.get(subscription_id)

    async def add(self, subscription: Subscription) -> Subscription:
        return self._store.insert(subscription)

    async def save(self, subscription: Subscription) -> Subscription:
        return self._store.update(subscription)

    async def list_all(self) -> list[Subscription]:
        return self._store.values()

    async def list_by_user(self, user_id: str) -> list[Subscription]:
        return [s for s in self._store.values() if s.user_id == user_id]

    async def list_by_status(
        self, statuses: set[SubscriptionStatus], billing_due_before: datetime | None = None
    ) -> list[Subscription]:
        return [
            s
            for s in self._store.values()
            if s.status in statuses
            and (billing_due_before is None or s.next_billing_date <= billing_due_before)
        ]


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self) -> None:
        self._store: _VersionedStore[PaymentTransaction] = _VersionedStore("transaction_id")

    async def get(self, transaction_id: str) -> PaymentTransaction | None:
        return self._store.get(transaction_id)

    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        return self._store.insert(transaction)

    async def list_transactions(
        self, subscription_id: str | None = None, limit: int | None = None
    ) -> list[PaymentTransaction]:
        rows = [
            t
            for t in self._store.values()
            if subscription_id is None or t.subscription_id == subscription_id
        ]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows


class InMemoryBillingIssueRepository(BillingIssueRepository):
    def __init__(self) -> None:
        self._store: _VersionedStore[BillingIssue] = _VersionedStore("issue_id")

    async def get(self, issue_id: str) -> BillingIssue | None:
        return self._store.get(issue_id)

    async def add(self, issue: BillingIssue) -> BillingIssue:
        return self._store.insert(issue)

    async def save(self, issue: BillingIssue) -> BillingIssue:
        return self._store.update(issue)

    async def find_open(
        self, subscription_id: str, issue_type: BillingIssueType
    ) -> BillingIssue | None:
        for issue in self._store.values():
            if (
                issue.subscription_id == subscription_id
                and issue.type == issue_type
                and issue.is_open
            ):
                return issue
        return None

    async def list_issues(
        self, subscription_id: str | None = None, status: IssueStatus | None = None
    ) -> list[BillingIssue]:
        rows = [
            i
            for i in self._store.values()
            if (subscription_id is None or i.subscription_id == subscription_id)
            and (status is None or i.status == status)
        ]
        rows.sort(key=lambda i: i.created_at, reverse=True)
        return rows
