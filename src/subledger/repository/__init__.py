"""Persistence: repository interfaces and their in-memory and SQL implementations."""

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

__all__ = [
    "BillingIssueRepository",
    "InMemoryBillingIssueRepository",
    "InMemorySubscriptionRepository",
    "InMemoryTransactionRepository",
    "SubscriptionRepository",
    "TransactionRepository",
]
