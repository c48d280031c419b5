"""
Billable metric and charge definitions.

A billable metric says what is measured (event code and field) and how
(aggregation type). A charge applies a pricing model to a metric inside a
subscription and decides grouping, filters, proration and in-advance billing.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class AggregationType(Enum):
    """Supported aggregation semantics."""
    COUNT = "count_agg"
    SUM = "sum_agg"
    MAX = "max_agg"
    LATEST = "latest_agg"
    UNIQUE_COUNT = "unique_count_agg"
    WEIGHTED_SUM = "weighted_sum_agg"


class RoundingFunction(Enum):
    """Rounding applied to aggregated units."""
    ROUND = "round"
    CEIL = "ceil"
    FLOOR = "floor"


class ChargeModel(Enum):
    """Pricing model of a charge. Only DYNAMIC changes aggregation."""
    STANDARD = "standard"
    GRADUATED = "graduated"
    GRADUATED_PERCENTAGE = "graduated_percentage"
    PACKAGE = "package"
    PERCENTAGE = "percentage"
    VOLUME = "volume"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class BillableMetric:
    """Definition of a measured quantity."""
    code: str
    aggregation_type: AggregationType
    field_name: Optional[str] = None
    recurring: bool = False
    rounding_function: Optional[RoundingFunction] = None
    rounding_precision: Optional[int] = None

    def __post_init__(self):
        """Validate the metric can be aggregated."""
        if not self.code:
            raise ValueError("code is required")
        if self.aggregation_type != AggregationType.COUNT and not self.field_name:
            raise ValueError(
                f"field_name is required for {self.aggregation_type.value}"
            )
        if self.rounding_precision is not None and self.rounding_precision < 0:
            raise ValueError("rounding_precision cannot be negative")


@dataclass(frozen=True)
class ChargeFilter:
    """A filter splitting a charge's events by property values."""
    id: str
    values: Dict[str, Tuple[str, ...]]

    def __post_init__(self):
        if not self.values:
            raise ValueError(f"Charge filter '{self.id}' must define values")


@dataclass(frozen=True)
class Charge:
    """Pricing rule applied to a billable metric."""
    id: str
    billable_metric: BillableMetric
    charge_model: ChargeModel = ChargeModel.STANDARD
    pay_in_advance: bool = False
    prorated: bool = False
    properties: Dict[str, Any] = field(default_factory=dict)
    filters: Tuple[ChargeFilter, ...] = ()

    @property
    def is_dynamic(self) -> bool:
        return self.charge_model == ChargeModel.DYNAMIC

    @property
    def grouped_by(self) -> Tuple[str, ...]:
        """Grouping keys, pricing_group_keys taking precedence over grouped_by."""
        keys = self.properties.get("pricing_group_keys") or self.properties.get("grouped_by") or []
        return tuple(key for key in keys if key)

    def get_filter(self, filter_id: str) -> ChargeFilter:
        for charge_filter in self.filters:
            if charge_filter.id == filter_id:
                return charge_filter
        raise ValueError(f"Unknown charge filter '{filter_id}' for charge '{self.id}'")
