"""
Billing period boundaries.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal


def normalize_timestamp(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC so every comparison is like for like."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def seconds_between(start: datetime, end: datetime) -> Decimal:
    """Exact number of seconds from start to end as a Decimal."""
    delta = normalize_timestamp(end) - normalize_timestamp(start)
    return (
        Decimal(delta.days * 86400 + delta.seconds)
        + Decimal(delta.microseconds) / Decimal(1_000_000)
    )


@dataclass(frozen=True)
class Boundaries:
    """Time window of one billing period.

    Events belong to the period when from_datetime <= timestamp <= to_datetime;
    to_datetime is the last instant of the period (e.g. 23:59:59).
    charges_duration is the length of the full period in days.
    """
    from_datetime: datetime
    to_datetime: datetime
    charges_duration: int

    def __post_init__(self):
        """Normalize timestamps and validate the window."""
        object.__setattr__(self, "from_datetime", normalize_timestamp(self.from_datetime))
        object.__setattr__(self, "to_datetime", normalize_timestamp(self.to_datetime))
        if self.from_datetime > self.to_datetime:
            raise ValueError("from_datetime must be before to_datetime")
        if self.charges_duration <= 0:
            raise ValueError("charges_duration must be > 0")
