"""
Proration ratios.

A quantity is prorated by the share of the billing period it was present
for. Partial days count as full days.
"""

from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from .boundaries import seconds_between

SECONDS_PER_DAY = Decimal(86400)


def charged_days(start: datetime, end: datetime) -> Decimal:
    """Number of started days between start and end (never negative)."""
    seconds = seconds_between(start, end)
    if seconds <= 0:
        return Decimal(0)
    return (seconds / SECONDS_PER_DAY).to_integral_value(rounding=ROUND_CEILING)


def duration_ratio(start: datetime, end: datetime, period_duration: int) -> Decimal:
    """Share of a period_duration-day period covered from start to end."""
    return charged_days(start, end) / Decimal(period_duration)


def persisted_ratio(period_duration: int, persisted_duration: Optional[int] = None) -> Decimal:
    """Share of the period billed when only persisted_duration days are covered.

    Args:
        period_duration: Full period length in days
        persisted_duration: Billed days, the full period when None

    Returns:
        persisted_duration / period_duration
    """
    if period_duration <= 0:
        raise ValueError("period_duration must be > 0")
    if persisted_duration is None:
        return Decimal(1)
    return Decimal(persisted_duration) / Decimal(period_duration)
