"""
Aggregation entry points.

Resolves the aggregator of a charge and runs it either over a full billing
period or for a single event billed in advance.
"""

from typing import Dict, Optional, Type

import structlog

from .aggregators import (
    BaseAggregator,
    CountAggregator,
    LatestAggregator,
    MaxAggregator,
    SumAggregator,
    UniqueCountAggregator,
    WeightedSumAggregator,
)
from .billable_metric import AggregationType, Charge, ChargeFilter
from .boundaries import Boundaries
from .cache import write_cached_aggregation
from .filters import Filters, filters_for_charge, matching_charge_filter
from .results import AggregationOptions, AggregationResult
from ..storage.models import Event
from ..storage.repository import (
    CachedAggregationRepository,
    EventRepository,
)

logger = structlog.get_logger(__name__)

AGGREGATORS: Dict[AggregationType, Type[BaseAggregator]] = {
    AggregationType.COUNT: CountAggregator,
    AggregationType.SUM: SumAggregator,
    AggregationType.MAX: MaxAggregator,
    AggregationType.LATEST: LatestAggregator,
    AggregationType.UNIQUE_COUNT: UniqueCountAggregator,
    AggregationType.WEIGHTED_SUM: WeightedSumAggregator,
}


class UnsupportedAggregationError(ValueError):
    """Raised when a charge cannot be aggregated the way it is requested."""


def build_aggregator(
    charge: Charge,
    subscription_id: str,
    boundaries: Boundaries,
    event_repository: EventRepository,
    cached_aggregation_repository: Optional[CachedAggregationRepository] = None,
    filters: Optional[Filters] = None,
    event: Optional[Event] = None,
    bypass_aggregation: bool = False,
    organization_id: Optional[str] = None,
) -> BaseAggregator:
    """Instantiate the aggregator matching the charge's billable metric."""
    aggregation_type = charge.billable_metric.aggregation_type
    aggregator_class = AGGREGATORS.get(aggregation_type)
    if aggregator_class is None:
        raise UnsupportedAggregationError(f"Unsupported aggregation type: {aggregation_type}")

    return aggregator_class(
        charge=charge,
        subscription_id=subscription_id,
        boundaries=boundaries,
        event_repository=event_repository,
        cached_aggregation_repository=cached_aggregation_repository,
        filters=filters,
        event=event,
        bypass_aggregation=bypass_aggregation,
        organization_id=organization_id,
    )


def aggregate_charge(
    charge: Charge,
    subscription_id: str,
    boundaries: Boundaries,
    event_repository: EventRepository,
    cached_aggregation_repository: Optional[CachedAggregationRepository] = None,
    charge_filter: Optional[ChargeFilter] = None,
    options: Optional[AggregationOptions] = None,
    organization_id: Optional[str] = None,
) -> AggregationResult:
    """Aggregate one bucket of a charge over a billing period.

    Args:
        charge: Charge to aggregate
        subscription_id: External id of the subscription
        boundaries: Billing period
        event_repository: Event ledger
        cached_aggregation_repository: Snapshot storage, used for in-advance
            current usage
        charge_filter: Bucket to aggregate, None for the default bucket
        options: Aggregation switches
        organization_id: Optional organization scope

    Returns:
        AggregationResult, with one entry per group when the charge is grouped
    """
    filters = filters_for_charge(charge, charge_filter)
    aggregator = build_aggregator(
        charge,
        subscription_id,
        boundaries,
        event_repository,
        cached_aggregation_repository=cached_aggregation_repository,
        filters=filters,
        organization_id=organization_id,
    )
    return aggregator.aggregate(options)


def aggregate_in_advance(
    charge: Charge,
    event: Event,
    boundaries: Boundaries,
    event_repository: EventRepository,
    cached_aggregation_repository: Optional[CachedAggregationRepository] = None,
    charge_filter: Optional[ChargeFilter] = None,
    organization_id: Optional[str] = None,
) -> AggregationResult:
    """Compute the units to bill for one event of a pay in advance charge.

    The computation is pinned to the event's group and charge filter. When a
    snapshot repository is given, the resulting snapshot is written so the
    next event starts from it.

    Args:
        charge: Pay in advance charge
        event: Event being billed, already stored in the ledger
        boundaries: Billing period containing the event
        event_repository: Event ledger
        cached_aggregation_repository: Snapshot storage
        charge_filter: Bucket of the event; resolved from its properties when None
        organization_id: Optional organization scope

    Returns:
        AggregationResult whose pay_in_advance_aggregation holds the billed units

    Raises:
        UnsupportedAggregationError: If the charge is not paid in advance or its
            aggregation type cannot be billed in advance
    """
    if not charge.pay_in_advance:
        raise UnsupportedAggregationError(f"Charge {charge.id} is not paid in advance")

    if charge_filter is None:
        charge_filter = matching_charge_filter(charge, event.properties)

    grouped_by_values = {key: event.value(key).as_text() for key in charge.grouped_by}
    filters = filters_for_charge(charge, charge_filter, grouped_by_values, grouped=False)

    aggregator = build_aggregator(
        charge,
        event.external_subscription_id,
        boundaries,
        event_repository,
        cached_aggregation_repository=cached_aggregation_repository,
        filters=filters,
        event=event,
        organization_id=organization_id,
    )
    if not aggregator.supports_pay_in_advance:
        raise UnsupportedAggregationError(
            f"{charge.billable_metric.aggregation_type.value} cannot be billed in advance"
        )

    result = aggregator.aggregate(AggregationOptions(is_pay_in_advance=True))
    result.grouped_by = grouped_by_values

    if cached_aggregation_repository is not None:
        write_cached_aggregation(
            cached_aggregation_repository,
            aggregator.cache_scope,
            event,
            current_aggregation=result.current_aggregation,
            max_aggregation=result.max_aggregation,
            grouped_by=grouped_by_values,
        )

    logger.info(
        "in_advance_units_computed",
        charge=charge.id,
        transaction_id=event.transaction_id,
        charge_filter=charge_filter.id if charge_filter else None,
        units=str(result.pay_in_advance_aggregation),
    )
    return result
