"""
Data models for storage layer.

Defines the usage event ledger entry and the cached aggregation snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..core.properties import PropertyValue


@dataclass(frozen=True)
class Event:
    """Immutable usage event.

    Created by ingestion and never mutated. Properties are an arbitrary
    key/value bag; read them through value() to get a typed view.
    """
    transaction_id: str
    external_subscription_id: str
    code: str
    timestamp: datetime
    properties: Mapping[str, Any] = field(default_factory=dict)
    organization_id: Optional[str] = None
    precise_total_amount_cents: Optional[Decimal] = None

    def value(self, name: str) -> PropertyValue:
        """Typed view of a single property (NULL when absent)."""
        return PropertyValue.of(self.properties.get(name))


@dataclass(frozen=True)
class CachedAggregation:
    """Snapshot of the running aggregation after an in-advance event.

    Lets the next in-advance computation derive its total without
    rescanning every prior event of the period.
    """
    external_subscription_id: str
    charge_id: str
    timestamp: datetime
    current_aggregation: Decimal
    max_aggregation: Decimal
    grouped_by: Dict[str, Optional[str]] = field(default_factory=dict)
    organization_id: Optional[str] = None
    charge_filter_id: Optional[str] = None
    event_transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None
