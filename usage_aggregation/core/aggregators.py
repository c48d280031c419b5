"""
Aggregators.

One aggregator per aggregation type turns the scoped event stream of a
charge into billable units. They share the flow implemented by
BaseAggregator (grouping, dynamic precise totals, in-advance adjustments,
rounding) and differ only in the statistic they read from the event store.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .billable_metric import AggregationType, Charge
from .boundaries import Boundaries
from .cache import (
    CacheScope,
    adjust_current_usage,
    find_cached_aggregation,
    incremental_units,
)
from .event_store import EventStore
from .filters import Filters, GroupKey
from .properties import operation_type
from .proration import persisted_ratio
from .results import (
    AggregationOptions,
    AggregationResult,
    GroupedValue,
    PerEventAggregationResult,
)
from .rounding import round_units
from . import timeline
from ..storage.models import Event
from ..storage.repository import (
    CachedAggregationRepository,
    EventRepository,
)

logger = structlog.get_logger(__name__)

# (aggregation, full_units_number)
Total = Tuple[Decimal, Optional[Decimal]]


def _combine(
    first: Sequence[GroupedValue],
    second: Sequence[GroupedValue],
    grouped_by: Sequence[str],
    combine,
) -> List[GroupedValue]:
    """Merge two grouped results on their group tuple."""
    merged: Dict[GroupKey, GroupedValue] = {}
    for row in list(first) + list(second):
        key = tuple(row.groups.get(name) for name in grouped_by)
        if key in merged:
            previous = merged[key]
            merged[key] = GroupedValue(groups=previous.groups, value=combine(previous.value, row.value))
        else:
            merged[key] = row
    return list(merged.values())


class BaseAggregator:
    """Shared aggregation flow.

    Subclasses implement compute_total, compute_grouped_totals and
    compute_per_event_aggregation; in-advance capable ones also implement
    event_delta.
    """

    aggregation_type: AggregationType
    numeric_property = True
    supports_pay_in_advance = False

    def __init__(
        self,
        charge: Charge,
        subscription_id: str,
        boundaries: Boundaries,
        event_repository: EventRepository,
        cached_aggregation_repository: Optional[CachedAggregationRepository] = None,
        filters: Optional[Filters] = None,
        event: Optional[Event] = None,
        bypass_aggregation: bool = False,
        organization_id: Optional[str] = None,
    ):
        """Build an aggregator for one charge bucket and period.

        Args:
            charge: Charge being aggregated
            subscription_id: External id of the subscription
            boundaries: Billing period
            event_repository: Event ledger
            cached_aggregation_repository: Snapshot storage for in-advance charges
            filters: Grouping and property filters of the bucket
            event: Event being billed in advance, None for full-period aggregation
            bypass_aggregation: Return the empty result for non-recurring metrics
            organization_id: Optional organization scope
        """
        self.charge = charge
        self.billable_metric = charge.billable_metric
        self.subscription_id = subscription_id
        self.boundaries = boundaries
        self.filters = filters or Filters()
        self.event = event
        self.bypass_aggregation = bypass_aggregation
        self.cached_aggregations = cached_aggregation_repository

        self.cache_scope = CacheScope(
            subscription_id=subscription_id,
            charge_id=charge.id,
            boundaries=boundaries,
            organization_id=organization_id,
            charge_filter_id=self.filters.charge_filter_id,
        )
        self.event_store = EventStore(
            repository=event_repository,
            code=self.billable_metric.code,
            subscription_id=subscription_id,
            boundaries=boundaries,
            filters=self.filters,
            organization_id=organization_id,
            event=event,
            aggregation_property=self.billable_metric.field_name,
            numeric_property=self.numeric_property,
            use_from_boundary=self.uses_from_boundary(),
        )

    @property
    def grouped_by(self) -> Tuple[str, ...]:
        return self.filters.grouped_by

    @property
    def is_prorated(self) -> bool:
        return self.billable_metric.recurring and self.charge.prorated

    def uses_from_boundary(self) -> bool:
        return True

    # Variant hooks

    def compute_total(self, store: EventStore, options: AggregationOptions) -> Total:
        raise NotImplementedError

    def compute_grouped_totals(self, store: EventStore, options: AggregationOptions) -> List[GroupedValue]:
        raise NotImplementedError

    def compute_grouped_full_units(self, store: EventStore) -> List[GroupedValue]:
        return []

    def compute_per_event_aggregation(self, store: EventStore, exclude_event: bool) -> List[Decimal]:
        raise NotImplementedError

    def event_delta(self) -> Decimal:
        raise NotImplementedError

    def running_total(self, options: AggregationOptions) -> List[Decimal]:
        return []

    # Flow

    def aggregate(self, options: Optional[AggregationOptions] = None) -> AggregationResult:
        """Aggregate the bucket over the period.

        Args:
            options: In-advance and proration switches

        Returns:
            AggregationResult; for grouped charges, aggregations holds one
            result per group tuple, the null group included exactly once
        """
        options = options or AggregationOptions()

        if self.should_bypass_aggregation():
            result = self.empty_results() if self.grouped_by else self.empty_result()
        elif self.grouped_by:
            result = self.compute_grouped_by_aggregation(options)
            if self.charge.is_dynamic:
                self.compute_grouped_by_precise_total_amount_cents(result)
            for group_result in result.aggregations:
                self.apply_rounding(group_result)
            self._total_groups(result)
        else:
            result = self.compute_aggregation(options)
            if self.charge.is_dynamic:
                self.compute_precise_total_amount_cents(result)
            self.apply_rounding(result)

        logger.info(
            "aggregation_computed",
            charge=self.charge.id,
            aggregation_type=self.aggregation_type.value,
            subscription=self.subscription_id,
            grouped=bool(self.grouped_by),
            aggregation=str(result.aggregation),
            in_advance=self.event is not None,
        )
        return result

    def compute_aggregation(self, options: AggregationOptions) -> AggregationResult:
        result = AggregationResult(grouped_by=dict(self.filters.grouped_by_values or {}))
        aggregation, full_units_number = self.compute_total(self.event_store, options)

        self._set_usage(result, aggregation, options)
        result.full_units_number = full_units_number
        result.count = self.event_store.count()
        result.options = {"running_total": self.running_total(options)}

        self.compute_pay_in_advance_aggregation(result)
        return result

    def compute_grouped_by_aggregation(self, options: AggregationOptions) -> AggregationResult:
        rows = self.compute_grouped_totals(self.event_store, options)
        if not rows:
            return self.empty_results()

        counts = self._by_key(self.event_store.grouped_count())
        full_units = self._by_key(self.compute_grouped_full_units(self.event_store))

        results: List[AggregationResult] = []
        for row in rows:
            key = self._key(row.groups)
            group_result = AggregationResult(
                grouped_by=self.filters.group_dict(key),
                count=int(counts.get(key, 0)),
                full_units_number=full_units.get(key),
                options={"running_total": []},
            )
            self._set_usage(group_result, row.value if row.value is not None else Decimal(0), options)
            results.append(group_result)

        null_key = self.filters.null_group_key
        if all(self._key(r.grouped_by) != null_key for r in results):
            results.append(self._empty_group_result())

        return self._total_groups(AggregationResult(options={"running_total": []}, aggregations=results))

    def _total_groups(self, result: AggregationResult) -> AggregationResult:
        """Set the top-level totals of a grouped result to the sum of its groups."""
        groups = result.aggregations
        result.aggregation = sum((r.aggregation for r in groups), Decimal(0))
        result.count = sum(r.count for r in groups)
        result.current_usage_units = sum((r.current_usage_units for r in groups), Decimal(0))
        if any(r.precise_total_amount_cents is not None for r in groups):
            result.precise_total_amount_cents = sum(
                (r.precise_total_amount_cents or Decimal(0) for r in groups), Decimal(0)
            )
        return result

    def _set_usage(self, result: AggregationResult, aggregation: Decimal,
                   options: AggregationOptions) -> None:
        if options.is_pay_in_advance and options.is_current_usage:
            cached = find_cached_aggregation(
                self.cached_aggregations, self.cache_scope, result.grouped_by, self.event
            )
            result.aggregation, result.current_usage_units = adjust_current_usage(aggregation, cached)
        else:
            result.aggregation = aggregation
            result.current_usage_units = aggregation

    def compute_pay_in_advance_aggregation(self, result: AggregationResult) -> None:
        """Units billed for the triggering event, with the snapshot to cache."""
        if self.event is None or not self.supports_pay_in_advance:
            return

        cached = find_cached_aggregation(
            self.cached_aggregations, self.cache_scope, result.grouped_by, self.event
        )
        billed, current, maximum = incremental_units(self.event_delta(), cached)
        result.pay_in_advance_aggregation = billed
        result.current_aggregation = current
        result.max_aggregation = maximum

    def compute_precise_total_amount_cents(self, result: AggregationResult) -> None:
        if self.event is not None:
            result.precise_total_amount_cents = self.event.precise_total_amount_cents or Decimal(0)
        else:
            result.precise_total_amount_cents = self.event_store.sum_precise_total_amount_cents()

    def compute_grouped_by_precise_total_amount_cents(self, result: AggregationResult) -> None:
        totals = self._by_key(self.event_store.grouped_sum_precise_total_amount_cents())
        for group_result in result.aggregations:
            key = self._key(group_result.grouped_by)
            group_result.precise_total_amount_cents = totals.get(key, Decimal(0))
        result.precise_total_amount_cents = sum(
            (r.precise_total_amount_cents for r in result.aggregations), Decimal(0)
        )

    def per_event_aggregation(
        self,
        exclude_event: bool = False,
        grouped_by_values: Optional[Dict[str, Optional[str]]] = None,
    ) -> PerEventAggregationResult:
        """Contribution of each event of the period, optionally for one group."""
        with self.event_store.with_grouped_by_values(grouped_by_values) as store:
            values = self.compute_per_event_aggregation(store, exclude_event)
        return PerEventAggregationResult(event_aggregation=values)

    def should_bypass_aggregation(self) -> bool:
        if self.billable_metric.recurring:
            return False
        return self.bypass_aggregation

    def apply_rounding(self, result: AggregationResult) -> None:
        """Round full-period results. In-advance (single event) results are not rounded."""
        if self.billable_metric.rounding_function is None:
            return
        if self.event is not None:
            return

        result.aggregation = round_units(self.billable_metric, result.aggregation)
        result.full_units_number = round_units(self.billable_metric, result.full_units_number)
        result.current_usage_units = round_units(self.billable_metric, result.current_usage_units)

    def empty_result(self) -> AggregationResult:
        return AggregationResult(
            aggregation=Decimal(0),
            count=0,
            current_usage_units=Decimal(0),
            options={"running_total": []},
            grouped_by=dict(self.filters.grouped_by_values or {}),
        )

    def _empty_group_result(self) -> AggregationResult:
        return AggregationResult(
            aggregation=Decimal(0),
            count=0,
            current_usage_units=Decimal(0),
            options={"running_total": []},
            grouped_by=self.filters.group_dict(self.filters.null_group_key),
        )

    def empty_results(self) -> AggregationResult:
        return AggregationResult(
            aggregation=Decimal(0),
            count=0,
            current_usage_units=Decimal(0),
            options={"running_total": []},
            aggregations=[self._empty_group_result()],
        )

    def _key(self, groups: Dict[str, Optional[str]]) -> GroupKey:
        return tuple(groups.get(name) for name in self.grouped_by)

    def _by_key(self, rows: Sequence[GroupedValue]) -> Dict[GroupKey, Decimal]:
        return {self._key(row.groups): row.value for row in rows}


class CountAggregator(BaseAggregator):
    """Number of events."""

    aggregation_type = AggregationType.COUNT
    numeric_property = False
    supports_pay_in_advance = True

    def compute_total(self, store, options):
        return Decimal(store.count()), None

    def compute_grouped_totals(self, store, options):
        return store.grouped_count()

    def compute_per_event_aggregation(self, store, exclude_event):
        return [Decimal(1) for _ in store.events(exclude_event=exclude_event)]

    def event_delta(self):
        return Decimal(1)


class SumAggregator(BaseAggregator):
    """Sum of a numeric property.

    Recurring metrics carry the sum of every earlier event into the period.
    Prorated charges bill that carried sum for the persisted share of the
    period and each new event for the days left after it.
    """

    aggregation_type = AggregationType.SUM
    supports_pay_in_advance = True

    def compute_total(self, store, options):
        if not self.billable_metric.recurring:
            return store.sum(), None

        persisted_sum = store.persisted().sum()
        if not self.is_prorated:
            return persisted_sum + store.sum(), None

        duration = self.boundaries.charges_duration
        aggregation = (
            persisted_sum * persisted_ratio(duration, options.persisted_duration)
            + store.prorated_sum(period_duration=duration)
        )
        return aggregation, persisted_sum + store.sum()

    def compute_grouped_totals(self, store, options):
        if not self.billable_metric.recurring:
            return store.grouped_sum()

        persisted = store.persisted().grouped_sum()
        if not self.is_prorated:
            return _combine(persisted, store.grouped_sum(), self.grouped_by, lambda a, b: a + b)

        duration = self.boundaries.charges_duration
        ratio = persisted_ratio(duration, options.persisted_duration)
        scaled = [GroupedValue(groups=row.groups, value=row.value * ratio) for row in persisted]
        return _combine(
            scaled,
            store.grouped_prorated_sum(period_duration=duration),
            self.grouped_by,
            lambda a, b: a + b,
        )

    def compute_grouped_full_units(self, store):
        if not self.is_prorated:
            return []
        return _combine(
            store.persisted().grouped_sum(), store.grouped_sum(), self.grouped_by, lambda a, b: a + b
        )

    def compute_per_event_aggregation(self, store, exclude_event):
        return store.events_values(exclude_event=exclude_event)

    def event_delta(self):
        return self.event.value(self.billable_metric.field_name).as_decimal() or Decimal(0)

    def running_total(self, options):
        if not options.free_units_per_events and not options.free_units_per_total_aggregation:
            return []

        totals: List[Decimal] = []
        for value in self.event_store.events_values():
            totals.append((totals[-1] if totals else Decimal(0)) + value)
        return totals


class MaxAggregator(BaseAggregator):
    """Highest property value of the period."""

    aggregation_type = AggregationType.MAX

    def compute_total(self, store, options):
        value = store.max()
        return (value if value is not None else Decimal(0)), None

    def compute_grouped_totals(self, store, options):
        return store.grouped_max()

    def compute_per_event_aggregation(self, store, exclude_event):
        running: List[Decimal] = []
        for value in store.events_values(exclude_event=exclude_event):
            running.append(max(running[-1], value) if running else value)
        return running


class LatestAggregator(BaseAggregator):
    """Property value of the most recent event."""

    aggregation_type = AggregationType.LATEST

    def compute_total(self, store, options):
        value = store.last()
        return (value if value is not None else Decimal(0)), None

    def compute_grouped_totals(self, store, options):
        return store.grouped_last()

    def compute_per_event_aggregation(self, store, exclude_event):
        return store.events_values(exclude_event=exclude_event)


class UniqueCountAggregator(BaseAggregator):
    """Number of distinct active property values.

    Values are activated by add operations and deactivated by removes.
    Recurring metrics count from the first event ever received; prorated
    charges weight each value by the days it was active in the period.
    """

    aggregation_type = AggregationType.UNIQUE_COUNT
    numeric_property = False
    supports_pay_in_advance = True

    def uses_from_boundary(self):
        return not self.billable_metric.recurring

    def compute_total(self, store, options):
        if self.is_prorated:
            return store.prorated_unique_count(), store.unique_count()
        return store.unique_count(), None

    def compute_grouped_totals(self, store, options):
        if self.is_prorated:
            return store.grouped_prorated_unique_count()
        return store.grouped_unique_count()

    def compute_grouped_full_units(self, store):
        if not self.is_prorated:
            return []
        return store.grouped_unique_count()

    def compute_per_event_aggregation(self, store, exclude_event):
        events = store.events(exclude_event=exclude_event)
        field_name = self.billable_metric.field_name

        if self.is_prorated:
            return [
                interval.prorated_value(self.boundaries.charges_duration)
                for interval in timeline.active_intervals(
                    events, field_name, self.boundaries.from_datetime, self.boundaries.to_datetime
                )
            ]
        return [Decimal(t.delta) for t in timeline.unique_transitions(events, field_name)]

    def event_delta(self):
        active = self.event_store.active_unique_property(self.event)
        if operation_type(self.event.properties) == "add":
            return Decimal(0) if active else Decimal(1)
        return Decimal(-1) if active else Decimal(0)


class WeightedSumAggregator(BaseAggregator):
    """Time-weighted cumulative value.

    Recurring metrics start the period at the level reached by every earlier
    event.
    """

    aggregation_type = AggregationType.WEIGHTED_SUM

    def compute_total(self, store, options):
        initial_value = Decimal(0)
        if self.billable_metric.recurring:
            initial_value = store.persisted().sum()
        return store.weighted_sum(initial_value=initial_value), None

    def compute_grouped_totals(self, store, options):
        initial_values = None
        if self.billable_metric.recurring:
            initial_values = store.persisted().grouped_sum()
        return store.grouped_weighted_sum(initial_values=initial_values)

    def compute_per_event_aggregation(self, store, exclude_event):
        return store.events_values(exclude_event=exclude_event)
