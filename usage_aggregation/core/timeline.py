"""
Time-line computations over ordered events.

Unique-count state (which property values are active at a point in time)
and the weighted time integral of a cumulative value. Functions here are
pure: they take events already scoped by the event store.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .boundaries import seconds_between
from .proration import duration_ratio
from .properties import operation_type
from ..storage.models import Event


@dataclass(frozen=True)
class UniqueTransition:
    """Effect of one event on the set of active property values."""
    event: Event
    property: Optional[str]
    delta: int  # +1 activated, -1 deactivated, 0 no change


@dataclass(frozen=True)
class ActiveInterval:
    """A span during which a property value was active inside the period."""
    property: str
    started_at: datetime
    ended_at: datetime
    removed: bool

    def prorated_value(self, period_duration: int) -> Decimal:
        return duration_ratio(self.started_at, self.ended_at, period_duration)


def unique_transitions(events: Sequence[Event], field_name: str) -> Iterator[UniqueTransition]:
    """Walk events in time order and report activations and removals.

    A value becomes active on an add when it was inactive and inactive on a
    remove when it was active. Repeated adds or removes change nothing.
    """
    active: Dict[str, bool] = {}
    for event in sorted(events, key=lambda e: e.timestamp):
        key = event.value(field_name).as_text()
        if key is None:
            yield UniqueTransition(event, None, 0)
            continue

        was_active = active.get(key, False)
        if operation_type(event.properties) == "add":
            active[key] = True
            delta = 0 if was_active else 1
        else:
            active[key] = False
            delta = -1 if was_active else 0
        yield UniqueTransition(event, key, delta)


def unique_count(events: Sequence[Event], field_name: str) -> int:
    """Number of property values whose latest operation is an add."""
    return sum(t.delta for t in unique_transitions(events, field_name))


def active_intervals(
    events: Sequence[Event],
    field_name: str,
    from_datetime: datetime,
    to_datetime: datetime,
) -> List[ActiveInterval]:
    """Activation intervals clipped to [from_datetime, to_datetime].

    Intervals still open at the end of the events close at to_datetime;
    intervals closed before from_datetime are dropped.
    """
    opened: Dict[str, datetime] = {}
    intervals: List[ActiveInterval] = []

    for transition in unique_transitions(events, field_name):
        if transition.delta == 1:
            opened[transition.property] = transition.event.timestamp
        elif transition.delta == -1:
            started_at = opened.pop(transition.property)
            ended_at = transition.event.timestamp
            if ended_at < from_datetime:
                continue
            intervals.append(ActiveInterval(
                property=transition.property,
                started_at=max(started_at, from_datetime),
                ended_at=ended_at,
                removed=True,
            ))

    for key, started_at in opened.items():
        intervals.append(ActiveInterval(
            property=key,
            started_at=max(started_at, from_datetime),
            ended_at=to_datetime,
            removed=False,
        ))

    return sorted(intervals, key=lambda i: (i.started_at, i.property))


def coalesce(points: Sequence[Tuple[datetime, Decimal]]) -> List[Tuple[datetime, Decimal]]:
    """Merge points sharing a timestamp by summing their values."""
    merged: Dict[datetime, Decimal] = {}
    for timestamp, value in points:
        merged[timestamp] = merged.get(timestamp, Decimal(0)) + value
    return sorted(merged.items())


def weighted_sum(
    points: Sequence[Tuple[datetime, Decimal]],
    from_datetime: datetime,
    to_datetime: datetime,
    initial_value: Decimal = Decimal(0),
) -> Decimal:
    """Time-weighted average of a cumulative level over the period.

    The level starts at initial_value and each point adds its value. Every
    segment weighs level * seconds(segment) / seconds(period). A zero-length
    period returns the final level.

    Args:
        points: (timestamp, value) pairs inside the period
        from_datetime: Start of the period
        to_datetime: End of the period
        initial_value: Level carried into the period

    Returns:
        The weighted sum
    """
    level = Decimal(initial_value)
    period_seconds = seconds_between(from_datetime, to_datetime)

    if period_seconds <= 0:
        return level + sum((value for _, value in points), Decimal(0))

    total = Decimal(0)
    cursor = from_datetime
    for timestamp, value in coalesce(points):
        timestamp = max(timestamp, from_datetime)
        total += level * seconds_between(cursor, timestamp)
        level += value
        cursor = timestamp
    total += level * seconds_between(cursor, to_datetime)

    return total / period_seconds
