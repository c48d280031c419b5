"""
Event filters and grouping.

Filters narrow an event stream by property values (matching and ignored
sets), optionally pin it to one group tuple, and describe how grouped
aggregations split events.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .billable_metric import Charge, ChargeFilter
from .properties import PropertyValue
from ..storage.models import Event

GroupKey = Tuple[Optional[str], ...]
FilterValues = Mapping[str, Sequence[str]]


def _text(properties: Mapping, key: str) -> Optional[str]:
    return PropertyValue.of(properties.get(key)).as_text()


def _matches_all(properties: Mapping, values: FilterValues) -> bool:
    return all(
        _text(properties, key) in {str(v) for v in allowed}
        for key, allowed in values.items()
    )


@dataclass(frozen=True)
class Filters:
    """Property filters applied to every event store query.

    grouped_by_values entries with a None value do not narrow the stream.
    An event is dropped when it matches every pair of any ignored set.
    """
    grouped_by: Tuple[str, ...] = ()
    grouped_by_values: Optional[Dict[str, Optional[str]]] = None
    matching_filters: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    ignored_filters: Tuple[Dict[str, Tuple[str, ...]], ...] = ()
    charge_filter_id: Optional[str] = None

    def matches(self, properties: Mapping) -> bool:
        if self.matching_filters and not _matches_all(properties, self.matching_filters):
            return False

        for ignored in self.ignored_filters:
            if ignored and _matches_all(properties, ignored):
                return False

        for key, value in (self.grouped_by_values or {}).items():
            if value is None:
                continue
            if _text(properties, key) != str(value):
                return False

        return True

    def narrowed(self, grouped_by_values: Optional[Mapping[str, Optional[str]]]) -> "Filters":
        """Copy pinned to a group tuple, layered over any existing pin."""
        if not grouped_by_values:
            return self
        merged = dict(self.grouped_by_values or {})
        merged.update(grouped_by_values)
        return replace(self, grouped_by_values=merged)

    def group_key(self, event: Event) -> GroupKey:
        return tuple(event.value(name).as_text() for name in self.grouped_by)

    def group_dict(self, key: GroupKey) -> Dict[str, Optional[str]]:
        return dict(zip(self.grouped_by, key))

    @property
    def null_group_key(self) -> GroupKey:
        return tuple(None for _ in self.grouped_by)


def _is_more_specific(child: ChargeFilter, parent: ChargeFilter) -> bool:
    """True when every event matching child would also match parent."""
    if child.id == parent.id:
        return False
    if not set(parent.values).issubset(child.values):
        return False
    for key, values in parent.values.items():
        if not set(child.values[key]).issubset(values):
            return False
    return child.values != parent.values


def filters_for_charge(
    charge: Charge,
    charge_filter: Optional[ChargeFilter] = None,
    grouped_by_values: Optional[Mapping[str, Optional[str]]] = None,
    grouped: bool = True,
) -> Filters:
    """Build the filters of one charge bucket.

    With a charge filter, its values are the matching filters and the
    charge's more specific filters are ignored, so their events are billed
    in their own bucket. Without one (the default bucket), every filter of
    the charge is ignored.

    Args:
        charge: Charge being aggregated
        charge_filter: Bucket to aggregate, None for the default bucket
        grouped_by_values: Pin the bucket to a single group tuple
        grouped: Split results by the charge's grouping keys

    Returns:
        Filters for the event store
    """
    if charge_filter is not None:
        matching = {key: tuple(values) for key, values in charge_filter.values.items()}
        ignored = tuple(
            {key: tuple(values) for key, values in other.values.items()}
            for other in charge.filters
            if _is_more_specific(other, charge_filter)
        )
    else:
        matching = {}
        ignored = tuple(
            {key: tuple(values) for key, values in other.values.items()}
            for other in charge.filters
        )

    return Filters(
        grouped_by=charge.grouped_by if grouped else (),
        grouped_by_values=dict(grouped_by_values) if grouped_by_values else None,
        matching_filters=matching,
        ignored_filters=ignored,
        charge_filter_id=charge_filter.id if charge_filter else None,
    )


def matching_charge_filter(charge: Charge, properties: Mapping) -> Optional[ChargeFilter]:
    """Most specific filter of the charge matching the event properties.

    Returns None when no filter matches, meaning the event is billed in the
    charge's default bucket.
    """
    candidates = [f for f in charge.filters if _matches_all(properties, f.values)]
    for candidate in candidates:
        if not any(_is_more_specific(other, candidate) for other in candidates):
            return candidate
    return None
