"""Billing period arithmetic."""

from datetime import datetime

from dateutil.relativedelta import relativedelta

from subledger.catalog.models import BillingCycle


def add_cycle(start: datetime, billing_cycle: BillingCycle, cycles: int = 1) -> datetime:
    """Advance ``start`` by whole billing cycles, clamping to month end."""
    return start + relativedelta(months=billing_cycle.months * cycles)


def add_days(start: datetime, days: int) -> datetime:
    return start + relativedelta(days=days)
