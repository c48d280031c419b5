"""
Unit tests for property parsing, proration, rounding and time-line helpers.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_aggregation.core import timeline
from usage_aggregation.core.billable_metric import (
    AggregationType,
    BillableMetric,
    RoundingFunction,
)
from usage_aggregation.core.boundaries import Boundaries, seconds_between
from usage_aggregation.core.properties import PropertyKind, PropertyValue, operation_type
from usage_aggregation.core.proration import charged_days, duration_ratio, persisted_ratio
from usage_aggregation.core.rounding import apply_rounding, round_units


class TestPropertyValue:
    """Test typed property access."""

    @pytest.mark.parametrize("raw,expected", [
        (12, Decimal(12)),
        ("12.50", Decimal("12.50")),
        ("-3", Decimal(-3)),
        (0.1, Decimal("0.1")),
        ("1e3", None),
        ("abc", None),
        (True, None),
        (None, None),
        (float("nan"), None),
    ])
    def test_as_decimal(self, raw, expected):
        assert PropertyValue.of(raw).as_decimal() == expected

    def test_kinds(self):
        assert PropertyValue.of(None).kind == PropertyKind.NULL
        assert PropertyValue.of(None).is_null
        assert not PropertyValue.of("").is_null
        assert PropertyValue.of(" 42 ").kind == PropertyKind.NUMERIC
        assert PropertyValue.of("forty").kind == PropertyKind.STRING

    def test_as_text(self):
        assert PropertyValue.of(3).as_text() == "3"
        assert PropertyValue.of(False).as_text() == "false"
        assert PropertyValue.of({"b": 1, "a": 2}).as_text() == '{"a": 2, "b": 1}'
        assert PropertyValue.of(None).as_text() is None

    @pytest.mark.parametrize("properties,expected", [
        ({"operation_type": "remove"}, "remove"),
        ({"operation_type": "add"}, "add"),
        ({"operation_type": "delete"}, "add"),
        ({"operation_type": 1}, "add"),
        ({}, "add"),
    ])
    def test_operation_type(self, properties, expected):
        assert operation_type(properties) == expected


class TestBoundaries:
    """Test billing period validation."""

    def test_aware_bounds_normalized(self):
        boundaries = Boundaries(
            datetime(2024, 1, 1, 1, tzinfo=timezone(timedelta(hours=1))),
            datetime(2024, 1, 31, 23, 59, 59),
            31,
        )
        assert boundaries.from_datetime == datetime(2024, 1, 1)
        assert boundaries.from_datetime.tzinfo is None

    def test_inverted_bounds_rejected(self):
        with pytest.raises(ValueError, match="from_datetime"):
            Boundaries(datetime(2024, 2, 1), datetime(2024, 1, 1), 31)

    def test_duration_must_be_positive(self):
        with pytest.raises(ValueError, match="charges_duration"):
            Boundaries(datetime(2024, 1, 1), datetime(2024, 1, 31), 0)

    def test_seconds_between(self):
        assert seconds_between(datetime(2024, 1, 1), datetime(2024, 1, 2, 0, 0, 1)) == Decimal(86401)


class TestProration:
    """Test proration ratios."""

    def test_partial_days_count_as_full_days(self):
        assert charged_days(datetime(2023, 3, 16), datetime(2023, 3, 31, 23, 59, 59)) == 16
        assert charged_days(datetime(2023, 3, 16), datetime(2023, 3, 16, 0, 0, 1)) == 1

    def test_no_days_for_empty_or_negative_spans(self):
        assert charged_days(datetime(2023, 3, 16), datetime(2023, 3, 16)) == 0
        assert charged_days(datetime(2023, 3, 17), datetime(2023, 3, 16)) == 0

    def test_duration_ratio(self):
        ratio = duration_ratio(datetime(2023, 3, 16), datetime(2023, 3, 31, 23, 59, 59), 31)
        assert ratio == Decimal(16) / Decimal(31)

    def test_persisted_ratio(self):
        assert persisted_ratio(31) == 1
        assert persisted_ratio(30, 15) == Decimal("0.5")

    def test_persisted_ratio_needs_positive_period(self):
        with pytest.raises(ValueError):
            persisted_ratio(0, 10)


class TestRounding:
    """Test rounding of aggregated units."""

    @pytest.mark.parametrize("units,function,precision,expected", [
        ("2.5", RoundingFunction.ROUND, None, "3"),
        ("2.45", RoundingFunction.ROUND, 1, "2.5"),
        ("2.01", RoundingFunction.CEIL, 0, "3"),
        ("2.99", RoundingFunction.FLOOR, 0, "2"),
        ("2.123", RoundingFunction.CEIL, 2, "2.13"),
        ("-2.5", RoundingFunction.FLOOR, 0, "-3"),
    ])
    def test_apply_rounding(self, units, function, precision, expected):
        assert apply_rounding(Decimal(units), function, precision) == Decimal(expected)

    def test_no_rounding_function(self):
        assert apply_rounding(Decimal("2.123"), None, 1) == Decimal("2.123")

    def test_round_units_passes_none(self):
        metric = BillableMetric(
            code="storage",
            aggregation_type=AggregationType.SUM,
            field_name="gb",
            rounding_function=RoundingFunction.CEIL,
        )
        assert round_units(metric, None) is None
        assert round_units(metric, Decimal("1.2")) == Decimal(2)


class TestTimeline:
    """Test unique count transitions and weighted sums."""

    def _event(self, make_event, day, user, operation=None):
        properties = {"user": user}
        if operation:
            properties["operation_type"] = operation
        return make_event(datetime(2023, 3, day), properties)

    def test_repeated_operations_change_nothing(self, make_event):
        events = [
            self._event(make_event, 1, "a"),
            self._event(make_event, 2, "a"),
            self._event(make_event, 3, "b", "remove"),
            self._event(make_event, 4, "a", "remove"),
            self._event(make_event, 5, "a", "remove"),
        ]
        deltas = [t.delta for t in timeline.unique_transitions(events, "user")]

        assert deltas == [1, 0, 0, -1, 0]
        assert timeline.unique_count(events, "user") == 0

    def test_active_intervals_clipped_to_period(self, make_event):
        events = [
            self._event(make_event, 1, "a"),
            self._event(make_event, 3, "a", "remove"),
            self._event(make_event, 4, "b"),
            self._event(make_event, 8, "b", "remove"),
            self._event(make_event, 9, "c"),
        ]
        intervals = timeline.active_intervals(
            events, "user", datetime(2023, 3, 5), datetime(2023, 3, 10)
        )

        assert [(i.property, i.started_at.day, i.ended_at.day, i.removed) for i in intervals] == [
            ("b", 5, 8, True),
            ("c", 9, 10, False),
        ]

    def test_weighted_sum_zero_length_period(self):
        """A period without duration returns the final level."""
        instant = datetime(2023, 3, 1)
        assert timeline.weighted_sum([(instant, Decimal(3))], instant, instant, Decimal(2)) == 5

    def test_weighted_sum_half_period(self):
        points = [(datetime(2023, 3, 1, 12), Decimal(10))]
        result = timeline.weighted_sum(points, datetime(2023, 3, 1), datetime(2023, 3, 2))
        assert result == Decimal(5)

    def test_coalesce(self):
        instant = datetime(2023, 3, 1)
        later = instant + timedelta(hours=1)
        points = [(later, Decimal(1)), (instant, Decimal(2)), (instant, Decimal(3))]
        assert timeline.coalesce(points) == [(instant, Decimal(5)), (later, Decimal(1))]
