"""
Cached aggregation lookup for pay in advance charges.

In-advance charges bill every event as it arrives. Rather than rescanning
the period for each event, the latest snapshot of the running aggregation
(current value and highest value billed so far) is read back and adjusted.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import structlog

from .boundaries import Boundaries
from ..storage.models import CachedAggregation, Event
from ..storage.repository import CachedAggregationRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheScope:
    """Identifies the snapshots of one charge bucket within a period."""
    subscription_id: str
    charge_id: str
    boundaries: Boundaries
    organization_id: Optional[str] = None
    charge_filter_id: Optional[str] = None


def find_cached_aggregation(
    repository: Optional[CachedAggregationRepository],
    scope: CacheScope,
    grouped_by: Optional[Dict[str, Optional[str]]] = None,
    event: Optional[Event] = None,
) -> Optional[CachedAggregation]:
    """Latest snapshot of the period, ignoring the one written for event.

    Args:
        repository: Snapshot storage, None when caching is not available
        scope: Charge bucket and period
        grouped_by: Group tuple ({} for ungrouped charges)
        event: Event being billed, whose own snapshot must not be used

    Returns:
        The latest snapshot, or None
    """
    if repository is None:
        return None

    return repository.find_latest(
        external_subscription_id=scope.subscription_id,
        charge_id=scope.charge_id,
        from_datetime=scope.boundaries.from_datetime,
        to_datetime=scope.boundaries.to_datetime,
        grouped_by=grouped_by or {},
        organization_id=scope.organization_id,
        charge_filter_id=scope.charge_filter_id,
        exclude_transaction_id=event.transaction_id if event else None,
    )


def adjust_current_usage(total_aggregation: Decimal, cached: Optional[CachedAggregation]):
    """Current usage of an in-advance charge.

    The billable aggregation is total - cached current + cached max, so units
    already billed at a higher level are kept; both values are clamped at 0.

    Args:
        total_aggregation: Raw aggregation over the whole period
        cached: Latest snapshot, or None

    Returns:
        (aggregation, current_usage_units)
    """
    if cached is not None:
        aggregation = total_aggregation - cached.current_aggregation + cached.max_aggregation
    else:
        aggregation = total_aggregation

    if aggregation < 0:
        # TODO: route negative adjustments to product review instead of dropping them
        logger.warning(
            "negative_aggregation_clamped",
            aggregation=str(aggregation),
            total_aggregation=str(total_aggregation),
        )
        aggregation = Decimal(0)

    current_usage_units = max(total_aggregation, Decimal(0))
    return aggregation, current_usage_units


def incremental_units(delta: Decimal, cached: Optional[CachedAggregation]):
    """Units to bill for one event and the new snapshot values.

    The running aggregation moves by delta; only the part above the highest
    level billed so far is charged.

    Args:
        delta: Change the event brings to the aggregation
        cached: Latest snapshot, or None for the first event of the period

    Returns:
        (billed_units, current_aggregation, max_aggregation)
    """
    if cached is None:
        billed = max(delta, Decimal(0))
        return billed, delta, billed

    current = cached.current_aggregation + delta
    if current > cached.max_aggregation:
        return current - cached.max_aggregation, current, current
    return Decimal(0), current, cached.max_aggregation


def write_cached_aggregation(
    repository: CachedAggregationRepository,
    scope: CacheScope,
    event: Event,
    current_aggregation: Decimal,
    max_aggregation: Decimal,
    grouped_by: Optional[Dict[str, Optional[str]]] = None,
) -> CachedAggregation:
    """Persist the snapshot produced by an in-advance computation."""
    cached = CachedAggregation(
        external_subscription_id=scope.subscription_id,
        charge_id=scope.charge_id,
        timestamp=event.timestamp,
        current_aggregation=current_aggregation,
        max_aggregation=max_aggregation,
        grouped_by=dict(grouped_by or {}),
        organization_id=scope.organization_id,
        charge_filter_id=scope.charge_filter_id,
        event_transaction_id=event.transaction_id,
    )
    repository.insert(cached)
    return cached
