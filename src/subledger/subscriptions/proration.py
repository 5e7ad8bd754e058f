"""
Proration for mid-period price changes.

All intermediate terms are exact Decimal fractions of a minor unit; the
result is rounded once, half away from zero.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel

from subledger.money import round_minor_units

ONE_DAY = timedelta(days=1)


class ProrationResult(BaseModel):
    """Breakdown of a prorated charge (positive) or credit (negative)."""

    period_days: int
    remaining_days: int
    unused_credit: Decimal
    new_period_charge: Decimal
    prorated_amount: int


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / ONE_DAY)


def calculate_proration(
    period_start: datetime,
    period_end: datetime,
    current_amount: int,
    new_amount: int,
    now: datetime,
) -> ProrationResult:
    """
    Charge delta for switching from ``current_amount`` to ``new_amount`` at ``now``.

    Args:
        period_start: Start of the current billing period
        period_end: End of the current billing period
        current_amount: Price already paid for the period
        new_amount: Price of the new plan for the same cycle
        now: Effective instant of the change

    Returns:
        ProrationResult whose ``prorated_amount`` is ``new_period - (amount - used)``
    """
    if period_end <= period_start:
        raise ValueError("period_end must be after period_start")

    period_days = _ceil_days(period_end - period_start)
    remaining_days = _ceil_days(period_end - now)

    if remaining_days < 0:
        return ProrationResult(
            period_days=period_days,
            remaining_days=remaining_days,
            unused_credit=Decimal(0),
            new_period_charge=Decimal(new_amount),
            prorated_amount=new_amount,
        )

    remaining_days = min(remaining_days, period_days)

    days = Decimal(period_days)
    used = Decimal(current_amount) * (period_days - remaining_days) / days
    unused_credit = Decimal(current_amount) - used
    new_period_charge = Decimal(new_amount) * remaining_days / days

    return ProrationResult(
        period_days=period_days,
        remaining_days=remaining_days,
        unused_credit=unused_credit,
        new_period_charge=new_period_charge,
        prorated_amount=round_minor_units(new_period_charge - unused_credit),
    )
