"""
Unit tests for storage layer.

Tests schema creation, event insertion, and retrieval operations.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_aggregation.storage.db import get_connection
from usage_aggregation.storage.models import CachedAggregation
from usage_aggregation.storage.repository import (
    CachedAggregationRepository,
    EventRepository,
    insert_event,
    insert_events,
)

SUBSCRIPTION_ID = "sub_123"
CODE = "bm_code"


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify both tables are created."""
        conn = get_connection(db_path)
        try:
            cursor = conn.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table' AND name IN ('usage_event', 'cached_aggregation')
                ORDER BY name
            """)
            tables = [row[0] for row in cursor.fetchall()]
            assert tables == ["cached_aggregation", "usage_event"]

            cursor = conn.execute("PRAGMA table_info(usage_event)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'organization_id', 'transaction_id', 'external_subscription_id',
                'code', 'timestamp', 'properties', 'precise_total_amount_cents'
            ]
        finally:
            conn.close()


class TestEventInsertion:
    """Test usage event insertion operations."""

    def test_insert_single_event(self, db_path, make_event):
        """Test inserting a single usage event."""
        event = make_event(
            datetime(2024, 1, 1, 12, 0, 0),
            {"value": 12, "region": "europe"},
            transaction_id="tr_1",
            precise_total_amount_cents=Decimal("10.25"),
        )
        insert_event(event, db_path)

        events = EventRepository(db_path).fetch_events(CODE, SUBSCRIPTION_ID)
        assert len(events) == 1
        assert events[0].transaction_id == "tr_1"
        assert events[0].properties == {"value": 12, "region": "europe"}
        assert events[0].timestamp == datetime(2024, 1, 1, 12, 0, 0)
        assert events[0].precise_total_amount_cents == Decimal("10.25")

    def test_insert_multiple_events(self, db_path, make_event):
        """Test inserting multiple usage events in a transaction."""
        events = [
            make_event(datetime(2024, 1, 1, 12, 0, 0), {"value": 1}),
            make_event(datetime(2024, 1, 1, 12, 1, 0), {"value": 2}),
        ]
        insert_events(events, db_path)

        fetched = EventRepository(db_path).fetch_events(CODE, SUBSCRIPTION_ID)
        assert [e.properties["value"] for e in fetched] == [1, 2]

    def test_duplicate_transaction_rejected(self, db_path, make_event):
        """A transaction id is recorded once per subscription and timestamp."""
        event = make_event(datetime(2024, 1, 1), transaction_id="tr_dup")
        insert_event(event, db_path)

        with pytest.raises(sqlite3.IntegrityError):
            insert_event(event, db_path)

    def test_batch_rolled_back_on_failure(self, db_path, make_event):
        """A failing batch leaves no partial data."""
        duplicate = make_event(datetime(2024, 1, 2), transaction_id="tr_dup")
        with pytest.raises(sqlite3.IntegrityError):
            insert_events([make_event(datetime(2024, 1, 1)), duplicate, duplicate], db_path)

        assert EventRepository(db_path).fetch_events(CODE, SUBSCRIPTION_ID) == []

    def test_aware_timestamps_stored_as_utc(self, db_path, make_event):
        """Aware timestamps are normalized to naive UTC."""
        paris = timezone(timedelta(hours=1))
        insert_event(make_event(datetime(2024, 1, 1, 13, 0, tzinfo=paris)), db_path)

        events = EventRepository(db_path).fetch_events(CODE, SUBSCRIPTION_ID)
        assert events[0].timestamp == datetime(2024, 1, 1, 12, 0)


class TestEventRetrieval:
    """Test windowed event queries."""

    def test_window_bounds_are_inclusive(self, db_path, make_event):
        """Events exactly on both bounds are returned."""
        insert_events([
            make_event(datetime(2024, 1, 1), transaction_id="start"),
            make_event(datetime(2024, 1, 31, 23, 59, 59), transaction_id="end"),
            make_event(datetime(2024, 2, 1), transaction_id="after"),
        ], db_path)

        events = EventRepository(db_path).fetch_events(
            CODE, SUBSCRIPTION_ID,
            from_datetime=datetime(2024, 1, 1),
            to_datetime=datetime(2024, 1, 31, 23, 59, 59),
        )
        assert [e.transaction_id for e in events] == ["start", "end"]

    def test_before_datetime_is_exclusive(self, db_path, make_event):
        """before_datetime keeps events strictly earlier."""
        insert_events([
            make_event(datetime(2023, 12, 31), transaction_id="before"),
            make_event(datetime(2024, 1, 1), transaction_id="start"),
        ], db_path)

        events = EventRepository(db_path).fetch_events(
            CODE, SUBSCRIPTION_ID, before_datetime=datetime(2024, 1, 1)
        )
        assert [e.transaction_id for e in events] == ["before"]

    def test_scoped_by_code_and_subscription(self, db_path, make_event):
        """Other codes and subscriptions are not returned."""
        insert_events([
            make_event(datetime(2024, 1, 1), transaction_id="kept"),
            make_event(datetime(2024, 1, 1), code="other", transaction_id="code"),
            make_event(datetime(2024, 1, 1), subscription_id="sub_other", transaction_id="sub"),
        ], db_path)

        events = EventRepository(db_path).fetch_events(CODE, SUBSCRIPTION_ID)
        assert [e.transaction_id for e in events] == ["kept"]

    def test_exclude_transaction(self, db_path, make_event):
        """The excluded transaction id is left out."""
        insert_events([
            make_event(datetime(2024, 1, 1), transaction_id="a"),
            make_event(datetime(2024, 1, 2), transaction_id="b"),
        ], db_path)

        events = EventRepository(db_path).fetch_events(
            CODE, SUBSCRIPTION_ID, exclude_transaction_id="a"
        )
        assert [e.transaction_id for e in events] == ["b"]

    def test_distinct_codes(self, db_path, make_event):
        """Distinct codes of the window are returned sorted."""
        insert_events([
            make_event(datetime(2024, 1, 2), code="storage"),
            make_event(datetime(2024, 1, 3), code="api_calls"),
            make_event(datetime(2024, 1, 4), code="api_calls"),
            make_event(datetime(2024, 3, 1), code="late"),
        ], db_path)

        codes = EventRepository(db_path).fetch_distinct_codes(
            SUBSCRIPTION_ID, datetime(2024, 1, 1), datetime(2024, 1, 31, 23, 59, 59)
        )
        assert codes == ["api_calls", "storage"]


class TestCachedAggregationRepository:
    """Test snapshot storage for in-advance charges."""

    def _snapshot(self, timestamp, current, transaction_id, **kwargs):
        return CachedAggregation(
            external_subscription_id=SUBSCRIPTION_ID,
            charge_id="charge_1",
            timestamp=timestamp,
            current_aggregation=Decimal(current),
            max_aggregation=Decimal(current),
            event_transaction_id=transaction_id,
            **kwargs,
        )

    def _find(self, repository, **kwargs):
        return repository.find_latest(
            external_subscription_id=SUBSCRIPTION_ID,
            charge_id="charge_1",
            from_datetime=datetime(2024, 1, 1),
            to_datetime=datetime(2024, 1, 31, 23, 59, 59),
            **kwargs,
        )

    def test_latest_snapshot_returned(self, db_path):
        """The most recent snapshot of the period wins."""
        repository = CachedAggregationRepository(db_path)
        repository.insert(self._snapshot(datetime(2024, 1, 2), 1, "a"))
        repository.insert(self._snapshot(datetime(2024, 1, 5), 3, "b"))

        cached = self._find(repository)
        assert cached.current_aggregation == Decimal(3)
        assert cached.event_transaction_id == "b"

    def test_exclude_event_snapshot(self, db_path):
        """The snapshot written for the excluded transaction is ignored."""
        repository = CachedAggregationRepository(db_path)
        repository.insert(self._snapshot(datetime(2024, 1, 2), 1, "a"))
        repository.insert(self._snapshot(datetime(2024, 1, 5), 3, "b"))

        cached = self._find(repository, exclude_transaction_id="b")
        assert cached.event_transaction_id == "a"

    def test_scoped_by_group_and_filter(self, db_path):
        """Snapshots of other groups or filters are not returned."""
        repository = CachedAggregationRepository(db_path)
        repository.insert(self._snapshot(
            datetime(2024, 1, 2), 4, "a", grouped_by={"region": "europe"}
        ))
        repository.insert(self._snapshot(
            datetime(2024, 1, 3), 7, "b", charge_filter_id="filter_1"
        ))

        assert self._find(repository) is None
        assert self._find(repository, grouped_by={"region": "europe"}).current_aggregation == Decimal(4)
        assert self._find(repository, charge_filter_id="filter_1").current_aggregation == Decimal(7)

    def test_outside_period_ignored(self, db_path):
        """Snapshots of a previous period are not returned."""
        repository = CachedAggregationRepository(db_path)
        repository.insert(self._snapshot(datetime(2023, 12, 31), 9, "a"))

        assert self._find(repository) is None
