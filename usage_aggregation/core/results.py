"""
Aggregation results and options.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class GroupedValue:
    """One row of a grouped event store query."""
    groups: Dict[str, Optional[str]]
    value: Decimal
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DailyValue:
    """Sum of event values for one day."""
    date: date
    value: Decimal


@dataclass(frozen=True)
class UniqueCountBreakdown:
    """Signed contribution of one add or remove to a prorated unique count."""
    property: str
    operation_type: str
    prorated_value: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class AggregationOptions:
    """Caller supplied switches for one aggregation.

    free_units_* enable the running total used by percentage charges.
    persisted_duration is the number of billed days for prorated recurring
    charges (the full period when None).
    """
    is_pay_in_advance: bool = False
    is_current_usage: bool = False
    free_units_per_events: int = 0
    free_units_per_total_aggregation: Decimal = Decimal(0)
    persisted_duration: Optional[int] = None


@dataclass
class AggregationResult:
    """Billable quantity of a charge for one period (or one group of it)."""
    aggregation: Decimal = Decimal(0)
    count: int = 0
    current_usage_units: Optional[Decimal] = None
    full_units_number: Optional[Decimal] = None
    options: Dict[str, Any] = field(default_factory=dict)
    grouped_by: Dict[str, Optional[str]] = field(default_factory=dict)
    pay_in_advance_aggregation: Decimal = Decimal(0)
    current_aggregation: Optional[Decimal] = None
    max_aggregation: Optional[Decimal] = None
    precise_total_amount_cents: Optional[Decimal] = None
    aggregations: Optional[List["AggregationResult"]] = None

    @property
    def is_grouped(self) -> bool:
        return self.aggregations is not None


@dataclass
class PerEventAggregationResult:
    """Value contributed by each event, in time order."""
    event_aggregation: List[Decimal] = field(default_factory=list)
