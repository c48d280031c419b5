"""
Event store.

Scoped, read-only view over the usage event ledger for one metric code,
subscription and billing period. Every statistic is computed from a single
bounded query; the store itself is immutable, so narrowing it to a group
returns a new store and never affects the caller's scope.
"""

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import structlog

from .boundaries import Boundaries, normalize_timestamp
from .filters import Filters, GroupKey
from .properties import operation_type
from .proration import duration_ratio, persisted_ratio
from .results import (
    DailyValue,
    GroupedValue,
    UniqueCountBreakdown,
)
from . import timeline
from ..storage.models import Event
from ..storage.repository import EventRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EventStore:
    """Immutable query scope over the event ledger.

    aggregation_property names the property aggregations read; with
    numeric_property set, events whose property is not numeric are left
    out of every query. use_from_boundary=False drops the lower bound of
    the window (recurring metrics); until_period_start limits the scope
    to events strictly before the period (see persisted()).
    """
    repository: EventRepository
    code: str
    subscription_id: str
    boundaries: Boundaries
    filters: Filters = field(default_factory=Filters)
    organization_id: Optional[str] = None
    event: Optional[Event] = None
    aggregation_property: Optional[str] = None
    numeric_property: bool = False
    use_from_boundary: bool = True
    until_period_start: bool = False

    @property
    def from_datetime(self):
        return self.boundaries.from_datetime

    @property
    def to_datetime(self):
        return self.boundaries.to_datetime

    # Scoping

    def scoped(self, grouped_by_values: Optional[Mapping[str, Optional[str]]]) -> "EventStore":
        """Copy of the store narrowed to one group tuple."""
        if not grouped_by_values:
            return self
        return replace(self, filters=self.filters.narrowed(grouped_by_values))

    @contextmanager
    def with_grouped_by_values(
        self, grouped_by_values: Optional[Mapping[str, Optional[str]]]
    ) -> Iterator["EventStore"]:
        """Run a block against a copy narrowed to one group tuple.

        Nested blocks narrow further; leaving a block never changes the
        store it was opened on.
        """
        yield self.scoped(grouped_by_values)

    def persisted(self) -> "EventStore":
        """Store over every event received before the period started."""
        return replace(self, use_from_boundary=False, until_period_start=True)

    # Event access

    def events(self, exclude_event: bool = False) -> List[Event]:
        """Events of the scope in time order.

        Args:
            exclude_event: Leave out the event the store was built for

        Returns:
            Filtered events, oldest first
        """
        exclude = self.event.transaction_id if exclude_event and self.event else None

        if self.until_period_start:
            window = {"before_datetime": self.from_datetime}
        else:
            window = {
                "from_datetime": self.from_datetime if self.use_from_boundary else None,
                "to_datetime": self.to_datetime,
            }

        rows = self.repository.fetch_events(
            code=self.code,
            external_subscription_id=self.subscription_id,
            organization_id=self.organization_id,
            exclude_transaction_id=exclude,
            **window,
        )

        events = [e for e in rows if self.filters.matches(e.properties)]
        if self.numeric_property:
            events = [e for e in events if self._value(e) is not None]

        logger.debug(
            "event_store_scanned",
            code=self.code,
            fetched=len(rows),
            matched=len(events),
            grouped_by_values=self.filters.grouped_by_values,
        )
        return events

    def _value(self, event: Event) -> Optional[Decimal]:
        if not self.aggregation_property:
            return None
        return event.value(self.aggregation_property).as_decimal()

    def _values(self, events: Sequence[Event]) -> List[Decimal]:
        values = (self._value(e) for e in events)
        return [v for v in values if v is not None]

    def _group(self, events: Sequence[Event]) -> "OrderedDict[GroupKey, List[Event]]":
        groups: "OrderedDict[GroupKey, List[Event]]" = OrderedDict()
        for event in events:
            groups.setdefault(self.filters.group_key(event), []).append(event)
        return groups

    def _grouped(self, compute) -> List[GroupedValue]:
        return [
            GroupedValue(groups=self.filters.group_dict(key), value=compute(events))
            for key, events in self._group(self.events()).items()
        ]

    def distinct_codes(self) -> List[str]:
        """Codes of every event the subscription received in the period."""
        return self.repository.fetch_distinct_codes(
            external_subscription_id=self.subscription_id,
            from_datetime=self.from_datetime,
            to_datetime=self.to_datetime,
            organization_id=self.organization_id,
        )

    # Count

    def count(self) -> int:
        return len(self.events())

    def grouped_count(self) -> List[GroupedValue]:
        return self._grouped(lambda events: Decimal(len(events)))

    # Values

    def events_values(self, exclude_event: bool = False) -> List[Decimal]:
        """Numeric value of each event in time order."""
        return self._values(self.events(exclude_event=exclude_event))

    def prorated_events_values(self, period_duration: int) -> List[Decimal]:
        """Each event value scaled by the share of the period left after it."""
        return [
            value * duration_ratio(event.timestamp, self.to_datetime, period_duration)
            for event in self.events()
            for value in [self._value(event)]
            if value is not None
        ]

    def last_event(self) -> Optional[Event]:
        events = self.events()
        return events[-1] if events else None

    def grouped_last_event(self) -> List[GroupedValue]:
        return [
            GroupedValue(
                groups=self.filters.group_dict(key),
                value=self._value(events[-1]),
                timestamp=events[-1].timestamp,
            )
            for key, events in self._group(self.events()).items()
        ]

    def max(self) -> Optional[Decimal]:
        values = self._values(self.events())
        return max(values) if values else None

    def grouped_max(self) -> List[GroupedValue]:
        return self._grouped(lambda events: max(self._values(events), default=None))

    def last(self) -> Optional[Decimal]:
        event = self.last_event()
        return self._value(event) if event else None

    def grouped_last(self) -> List[GroupedValue]:
        return self._grouped(lambda events: self._value(events[-1]))

    # Sums

    def sum(self) -> Decimal:
        return sum(self._values(self.events()), Decimal(0))

    def grouped_sum(self) -> List[GroupedValue]:
        return self._grouped(lambda events: sum(self._values(events), Decimal(0)))

    def _prorated(self, events: Sequence[Event], period_duration: int,
                  persisted_duration: Optional[int]) -> Decimal:
        if persisted_duration is not None:
            ratio = persisted_ratio(period_duration, persisted_duration)
            return sum(self._values(events), Decimal(0)) * ratio

        total = Decimal(0)
        for event in events:
            value = self._value(event)
            if value is not None:
                total += value * duration_ratio(event.timestamp, self.to_datetime, period_duration)
        return total

    def prorated_sum(self, period_duration: int, persisted_duration: Optional[int] = None) -> Decimal:
        """Sum scaled to the billed share of the period.

        Args:
            period_duration: Full period length in days
            persisted_duration: Billed days; when None each event is scaled by
                the days left between its timestamp and the end of the period

        Returns:
            Prorated sum
        """
        return self._prorated(self.events(), period_duration, persisted_duration)

    def grouped_prorated_sum(self, period_duration: int,
                             persisted_duration: Optional[int] = None) -> List[GroupedValue]:
        return self._grouped(
            lambda events: self._prorated(events, period_duration, persisted_duration)
        )

    @staticmethod
    def _precise_total(events: Sequence[Event]) -> Decimal:
        return sum(
            (e.precise_total_amount_cents for e in events if e.precise_total_amount_cents is not None),
            Decimal(0),
        )

    def sum_precise_total_amount_cents(self) -> Decimal:
        return self._precise_total(self.events())

    def grouped_sum_precise_total_amount_cents(self) -> List[GroupedValue]:
        return self._grouped(self._precise_total)

    def sum_date_breakdown(self) -> List[DailyValue]:
        """Sum of event values per calendar day, in date order."""
        days: Dict = OrderedDict()
        for event in self.events():
            value = self._value(event)
            if value is None:
                continue
            day = event.timestamp.date()
            days[day] = days.get(day, Decimal(0)) + value
        return [DailyValue(date=day, value=value) for day, value in days.items()]

    # Unique count

    def unique_count(self) -> Decimal:
        """Number of property values currently added."""
        return Decimal(timeline.unique_count(self.events(), self.aggregation_property))

    def grouped_unique_count(self) -> List[GroupedValue]:
        return self._grouped(
            lambda events: Decimal(timeline.unique_count(events, self.aggregation_property))
        )

    def _intervals(self, events: Sequence[Event]) -> List[timeline.ActiveInterval]:
        return timeline.active_intervals(
            events, self.aggregation_property, self.from_datetime, self.to_datetime
        )

    def _prorated_unique(self, events: Sequence[Event]) -> Decimal:
        duration = self.boundaries.charges_duration
        return sum(
            (i.prorated_value(duration) for i in self._intervals(events)),
            Decimal(0),
        )

    def prorated_unique_count(self) -> Decimal:
        """Unique count weighted by the days each value was active."""
        return self._prorated_unique(self.events())

    def grouped_prorated_unique_count(self) -> List[GroupedValue]:
        return self._grouped(self._prorated_unique)

    def prorated_unique_count_breakdown(self, with_remove: bool = False) -> List[UniqueCountBreakdown]:
        """Signed contribution of each add and remove to the prorated unique count.

        By default there is one add row per activation interval, worth the
        days the value stayed active. With with_remove, an add is worth the
        days from its timestamp to the end of the period and every remove
        closing an interval gets a negative row for the days it cut off.
        The rows sum to prorated_unique_count() either way.

        Args:
            with_remove: Emit remove rows alongside the add rows

        Returns:
            Rows in time order
        """
        duration = self.boundaries.charges_duration
        rows: List[UniqueCountBreakdown] = []

        for interval in self._intervals(self.events()):
            value = interval.prorated_value(duration)
            if not (with_remove and interval.removed):
                rows.append(UniqueCountBreakdown(
                    property=interval.property,
                    operation_type="add",
                    prorated_value=value,
                    timestamp=interval.started_at,
                ))
                continue

            added = duration_ratio(interval.started_at, self.to_datetime, duration)
            rows.append(UniqueCountBreakdown(
                property=interval.property,
                operation_type="add",
                prorated_value=added,
                timestamp=interval.started_at,
            ))
            rows.append(UniqueCountBreakdown(
                property=interval.property,
                operation_type="remove",
                prorated_value=value - added,
                timestamp=interval.ended_at,
            ))

        return sorted(rows, key=lambda row: (row.timestamp, row.property))

    def active_unique_property(self, event: Event) -> bool:
        """Whether the event's property value was active just before it."""
        key = event.value(self.aggregation_property).as_text()
        if key is None:
            return False

        timestamp = normalize_timestamp(event.timestamp)
        previous = [
            e for e in self.events()
            if e.transaction_id != event.transaction_id
            and e.timestamp < timestamp
            and e.value(self.aggregation_property).as_text() == key
        ]
        if not previous:
            return False
        return operation_type(previous[-1].properties) == "add"

    # Weighted sum

    def _weighted(self, events: Sequence[Event], initial_value: Decimal) -> Decimal:
        points = [(e.timestamp, self._value(e)) for e in events if self._value(e) is not None]
        return timeline.weighted_sum(points, self.from_datetime, self.to_datetime, initial_value)

    def weighted_sum(self, initial_value: Decimal = Decimal(0)) -> Decimal:
        """Time-weighted value of the cumulative property over the period."""
        return self._weighted(self.events(), Decimal(initial_value))

    def grouped_weighted_sum(
        self, initial_values: Optional[Sequence[GroupedValue]] = None
    ) -> List[GroupedValue]:
        """Weighted sum per group.

        Groups with an initial value but no event in the period are still
        reported, at their initial level.
        """
        initial_by_key: Dict[Tuple, Decimal] = OrderedDict()
        for initial in initial_values or []:
            key = tuple(initial.groups.get(name) for name in self.filters.grouped_by)
            initial_by_key[key] = Decimal(initial.value)

        grouped = self._group(self.events())
        keys = list(grouped) + [k for k in initial_by_key if k not in grouped]

        return [
            GroupedValue(
                groups=self.filters.group_dict(key),
                value=self._weighted(grouped.get(key, []), initial_by_key.get(key, Decimal(0))),
            )
            for key in keys
        ]
