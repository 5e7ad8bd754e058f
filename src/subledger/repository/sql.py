"""
SQLAlchemy async repositories.

Each aggregate is one row: a JSON document plus indexed scalar columns.
Saves are ``UPDATE ... WHERE version = :expected``; zero affected rows means
another writer won and ``PersistenceConflictError`` is raised.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subledger.db import BillingIssueRow, PaymentTransactionRow, SubscriptionRow
from subledger.exceptions import PersistenceConflictError
from subledger.issues.models import BillingIssue, BillingIssueType, IssueStatus
from subledger.payments.models import PaymentTransaction
from subledger.repository.base import (
    BillingIssueRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from subledger.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)


async def _conditional_update(
    session: AsyncSession,
    row_type: Any,
    key_column: Any,
    entity_id: str,
    expected_version: int,
    values: dict[str, Any],
) -> None:
    result = await session.execute(
        update(row_type)
        .where(key_column == entity_id, row_type.version == expected_version)
        .values(version=expected_version + 1, **values)
    )
    if result.rowcount != 1:
        actual = await session.scalar(select(row_type.version).where(key_column == entity_id))
        logger.info(
            "Optimistic concurrency conflict",
            table=row_type.__tablename__,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual,
        )
        raise PersistenceConflictError(
            f"Stale write for {entity_id}",
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual,
        )


class SQLSubscriptionRepository(SubscriptionRepository):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    @staticmethod
    def _to_model(row: SubscriptionRow) -> Subscription:
        return Subscription.model_validate({**row.document, "version": row.version})

    @staticmethod
    def _columns(subscription: Subscription) -> dict[str, Any]:
        return {
            "user_id": subscription.user_id,
            "status": subscription.status.value,
            "next_billing_date": subscription.next_billing_date,
            "document": subscription.model_dump(mode="json", exclude={"version"}),
        }

    async def get(self, subscription_id: str) -> Subscription | None:
        async with self.session_maker() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            return self._to_model(row) if row is not None else None

    async def add(self, subscription: Subscription) -> Subscription:
        async with self.session_maker() as session, session.begin():
            session.add(
                SubscriptionRow(
                    subscription_id=subscription.subscription_id,
                    version=1,
                    **self._columns(subscription),
                )
            )
        return subscription.model_copy(update={"version": 1})

    async def save(self, subscription: Subscription) -> Subscription:
        async with self.session_maker() as session, session.begin():
            await _conditional_update(
                session,
                SubscriptionRow,
                SubscriptionRow.subscription_id,
                subscription.subscription_id,
                subscription.version,
                self._columns(subscription),
            )
        return subscription.model_copy(update={"version": subscription.version + 1})

    async def list_all(self) -> list[Subscription]:
        async with self.session_maker() as session:
            rows = await session.scalars(select(SubscriptionRow))
            return [self._to_model(row) for row in rows]

    async def list_by_user(self, user_id: str) -> list[Subscription]:
        async with self.session_maker() as session:
            rows = await session.scalars(
                select(SubscriptionRow).where(SubscriptionRow.user_id == user_id)
            )
            return [self._to_model(row) for row in rows]

    async def list_by_status(
        self, statuses: set[SubscriptionStatus], billing_due_before: datetime | None = None
    ) -> list[Subscription]:
        stmt = select(SubscriptionRow).where(
            SubscriptionRow.status.in_([status.value for status in statuses])
        )
        if billing_due_before is not None:
            stmt = stmt.where(SubscriptionRow.next_billing_date <= billing_due_before)
        async with self.session_maker() as session:
            rows = await session.scalars(stmt)
            return [self._to_model(row) for row in rows]


class SQLTransactionRepository(TransactionRepository):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    @staticmethod
    def _to_model(row: PaymentTransactionRow) -> PaymentTransaction:
        return PaymentTransaction.model_validate({**row.document, "version": row.version})

    async def get(self, transaction_id: str) -> PaymentTransaction | None:
        async with self.session_maker() as session:
            row = await session.get(PaymentTransactionRow, transaction_id)
            return self._to_model(row) if row is not None else None

    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        async with self.session_maker() as session, session.begin():
            session.add(
                PaymentTransactionRow(
                    transaction_id=transaction.transaction_id,
                    subscription_id=transaction.subscription_id,
                    recorded_at=transaction.created_at,
                    version=1,
                    document=transaction.model_dump(mode="json", exclude={"version"}),
                )
            )
        return transaction.model_copy(update={"version": 1})

    async def list_transactions(
        self, subscription_id: str | None = None, limit: int | None = None
    ) -> list[PaymentTransaction]:
        stmt = select(PaymentTransactionRow).order_by(PaymentTransactionRow.recorded_at.desc())
        if subscription_id is not None:
            stmt = stmt.where(PaymentTransactionRow.subscription_id == subscription_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_maker() as session:
            rows = await session.scalars(stmt)
            return [self._to_model(row) for row in rows]


class SQLBillingIssueRepository(BillingIssueRepository):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    @staticmethod
    def _to_model(row: BillingIssueRow) -> BillingIssue:
        return BillingIssue.model_validate({**row.document, "version": row.version})

    async def get(self, issue_id: str) -> BillingIssue | None:
        async with self.session_maker() as session:
            row = await session.get(BillingIssueRow, issue_id)
            return self._to_model(row) if row is not None else None

    async def add(self, issue: BillingIssue) -> BillingIssue:
        async with self.session_maker() as session, session.begin():
            session.add(
                BillingIssueRow(
                    issue_id=issue.issue_id,
                    subscription_id=issue.subscription_id,
                    issue_type=issue.type.value,
                    status=issue.status.value,
                    recorded_at=issue.created_at,
                    version=1,
                    document=issue.model_dump(mode="json", exclude={"version"}),
                )
            )
        return issue.model_copy(update={"version": 1})

    async def save(self, issue: BillingIssue) -> BillingIssue:
        async with self.session_maker() as session, session.begin():
            await _conditional_update(
                session,
                BillingIssueRow,
                BillingIssueRow.issue_id,
                issue.issue_id,
                issue.version,
                {
                    "status": issue.status.value,
                    "document": issue.model_dump(mode="json", exclude={"version"}),
                },
            )
        return issue.model_copy(update={"version": issue.version + 1})

    async def find_open(
        self, subscription_id: str, issue_type: BillingIssueType
    ) -> BillingIssue | None:
        stmt = (
            select(BillingIssueRow)
            .where(
                BillingIssueRow.subscription_id == subscription_id,
                BillingIssueRow.issue_type == issue_type.value,
                BillingIssueRow.status != IssueStatus.RESOLVED.value,
            )
            .limit(1)
        )
        async with self.session_maker() as session:
            row = await session.scalar(stmt)
            return self._to_model(row) if row is not None else None

    async def list_issues(
        self, subscription_id: str | None = None, status: IssueStatus | None = None
    ) -> list[BillingIssue]:
        stmt = select(BillingIssueRow).order_by(BillingIssueRow.recorded_at.desc())
        if subscription_id is not None:
            stmt = stmt.where(BillingIssueRow.subscription_id == subscription_id)
        if status is not None:
            stmt = stmt.where(BillingIssueRow.status == status.value)
        async with self.session_maker() as session:
            rows = await session.scalars(stmt)
            return [self._to_model(row) for row in rows]
