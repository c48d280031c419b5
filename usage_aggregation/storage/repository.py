"""
Repository pattern for data access.

Handles the append-only event ledger and the cached aggregation snapshots.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..core.boundaries import normalize_timestamp

from .db import DEFAULT_DB_PATH, get_connection
from .models import CachedAggregation, Event

logger = structlog.get_logger(__name__)

_EVENT_COLUMNS = """
    transaction_id, external_subscription_id, code, timestamp,
    properties, organization_id, precise_total_amount_cents
"""

_CACHED_AGGREGATION_COLUMNS = """
    external_subscription_id, charge_id, timestamp, current_aggregation,
    max_aggregation, grouped_by, organization_id, charge_filter_id,
    event_transaction_id, created_at
"""


def _to_db_timestamp(value: datetime) -> str:
    return normalize_timestamp(value).isoformat(timespec="microseconds")


def _to_db_decimal(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _grouped_by_key(grouped_by: Optional[Dict[str, Optional[str]]]) -> str:
    return json.dumps(grouped_by or {}, sort_keys=True)


def _row_to_event(row: Sequence[Any]) -> Event:
    return Event(
        transaction_id=row[0],
        external_subscription_id=row[1],
        code=row[2],
        timestamp=datetime.fromisoformat(row[3]),
        properties=json.loads(row[4]) if row[4] else {},
        organization_id=row[5],
        precise_total_amount_cents=Decimal(row[6]) if row[6] is not None else None,
    )


def _row_to_cached_aggregation(row: Sequence[Any]) -> CachedAggregation:
    return CachedAggregation(
        external_subscription_id=row[0],
        charge_id=row[1],
        timestamp=datetime.fromisoformat(row[2]),
        current_aggregation=Decimal(row[3]),
        max_aggregation=Decimal(row[4]),
        grouped_by=json.loads(row[5]) if row[5] else {},
        organization_id=row[6],
        charge_filter_id=row[7],
        event_transaction_id=row[8],
        created_at=datetime.fromisoformat(row[9]) if row[9] else None,
    )


class EventRepository:
    """Read access to the usage event ledger.

    Queries are bounded by subscription, code and time window so they can use
    the ledger index; property level filtering happens in the event store.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def fetch_events(
        self,
        code: str,
        external_subscription_id: str,
        from_datetime: Optional[datetime] = None,
        to_datetime: Optional[datetime] = None,
        before_datetime: Optional[datetime] = None,
        organization_id: Optional[str] = None,
        exclude_transaction_id: Optional[str] = None,
    ) -> List[Event]:
        """Fetch events of one subscription and code inside a time window.

        Args:
            code: Billable metric code
            external_subscription_id: Subscription the events belong to
            from_datetime: Inclusive lower bound (unbounded when None)
            to_datetime: Inclusive upper bound (unbounded when None)
            before_datetime: Exclusive upper bound (ignored when None)
            organization_id: Optional organization scope
            exclude_transaction_id: Transaction to leave out of the result

        Returns:
            Events ordered by timestamp (oldest first), ties in insertion order
        """
        conditions = ["external_subscription_id = ?", "code = ?"]
        params: List[Any] = [external_subscription_id, code]

        if organization_id is not None:
            conditions.append("organization_id = ?")
            params.append(organization_id)
        if from_datetime is not None:
            conditions.append("timestamp >= ?")
            params.append(_to_db_timestamp(from_datetime))
        if to_datetime is not None:
            conditions.append("timestamp <= ?")
            params.append(_to_db_timestamp(to_datetime))
        if before_datetime is not None:
            conditions.append("timestamp < ?")
            params.append(_to_db_timestamp(before_datetime))
        if exclude_transaction_id is not None:
            conditions.append("transaction_id != ?")
            params.append(exclude_transaction_id)

        query = (
            f"SELECT {_EVENT_COLUMNS} FROM usage_event"
            f" WHERE {' AND '.join(conditions)}"
            " ORDER BY timestamp ASC, id ASC"
        )

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            events = [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

        logger.debug(
            "events_fetched",
            code=code,
            subscription=external_subscription_id,
            count=len(events),
        )
        return events

    def fetch_distinct_codes(
        self,
        external_subscription_id: str,
        from_datetime: datetime,
        to_datetime: datetime,
        organization_id: Optional[str] = None,
    ) -> List[str]:
        """Event codes received for a subscription inside the window, sorted."""
        query = """
            SELECT DISTINCT code FROM usage_event
            WHERE external_subscription_id = ?
              AND timestamp >= ? AND timestamp <= ?
        """
        params: List[Any] = [
            external_subscription_id,
            _to_db_timestamp(from_datetime),
            _to_db_timestamp(to_datetime),
        ]
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)
        query += " ORDER BY code"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()


class CachedAggregationRepository:
    """Access to cached aggregation snapshots used by in-advance billing."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def find_latest(
        self,
        external_subscription_id: str,
        charge_id: str,
        from_datetime: datetime,
        to_datetime: datetime,
        grouped_by: Optional[Dict[str, Optional[str]]] = None,
        organization_id: Optional[str] = None,
        charge_filter_id: Optional[str] = None,
        exclude_transaction_id: Optional[str] = None,
    ) -> Optional[CachedAggregation]:
        """Most recent snapshot of the period for a charge, group and filter.

        Args:
            external_subscription_id: Subscription the snapshot belongs to
            charge_id: Charge the snapshot belongs to
            from_datetime: Inclusive start of the period
            to_datetime: Inclusive end of the period
            grouped_by: Group tuple of the snapshot ({} for ungrouped charges)
            organization_id: Optional organization scope
            charge_filter_id: Charge filter bucket, None for the default bucket
            exclude_transaction_id: Ignore the snapshot written for this event

        Returns:
            The latest matching snapshot, or None
        """
        conditions = [
            "external_subscription_id = ?",
            "charge_id = ?",
            "timestamp >= ?",
            "timestamp <= ?",
            "grouped_by = ?",
        ]
        params: List[Any] = [
            external_subscription_id,
            charge_id,
            _to_db_timestamp(from_datetime),
            _to_db_timestamp(to_datetime),
            _grouped_by_key(grouped_by),
        ]

        if organization_id is not None:
            conditions.append("organization_id = ?")
            params.append(organization_id)
        if charge_filter_id is not None:
            conditions.append("charge_filter_id = ?")
            params.append(charge_filter_id)
        else:
            conditions.append("charge_filter_id IS NULL")
        if exclude_transaction_id is not None:
            conditions.append(
                "(event_transaction_id IS NULL OR event_transaction_id != ?)"
            )
            params.append(exclude_transaction_id)

        query = (
            f"SELECT {_CACHED_AGGREGATION_COLUMNS} FROM cached_aggregation"
            f" WHERE {' AND '.join(conditions)}"
            " ORDER BY timestamp DESC, created_at DESC, id DESC LIMIT 1"
        )

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()

        return _row_to_cached_aggregation(row) if row else None

    def insert(self, cached: CachedAggregation) -> None:
        """Append a snapshot. Snapshots are never updated in place."""
        created_at = cached.created_at or datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO cached_aggregation ({_CACHED_AGGREGATION_COLUMNS})"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    cached.external_subscription_id,
                    cached.charge_id,
                    _to_db_timestamp(cached.timestamp),
                    _to_db_decimal(cached.current_aggregation),
                    _to_db_decimal(cached.max_aggregation),
                    _grouped_by_key(cached.grouped_by),
                    cached.organization_id,
                    cached.charge_filter_id,
                    cached.event_transaction_id,
                    _to_db_timestamp(created_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug(
            "cached_aggregation_written",
            charge=cached.charge_id,
            subscription=cached.external_subscription_id,
            current_aggregation=str(cached.current_aggregation),
            max_aggregation=str(cached.max_aggregation),
        )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_event and cached_aggregation tables if they don't exist.

    usage_event is an append-only ledger: no UPDATE or DELETE should ever be
    performed on it. A transaction id is unique per subscription and timestamp.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id TEXT,
                transaction_id TEXT NOT NULL,
                external_subscription_id TEXT NOT NULL,
                code TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                properties TEXT NOT NULL DEFAULT '{}',
                precise_total_amount_cents TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_event_transaction
                ON usage_event (external_subscription_id, transaction_id, timestamp);

            CREATE INDEX IF NOT EXISTS idx_usage_event_window
                ON usage_event (external_subscription_id, code, timestamp);

            CREATE TABLE IF NOT EXISTS cached_aggregation (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id TEXT,
                external_subscription_id TEXT NOT NULL,
                charge_id TEXT NOT NULL,
                charge_filter_id TEXT,
                grouped_by TEXT NOT NULL DEFAULT '{}',
                event_transaction_id TEXT,
                timestamp TEXT NOT NULL,
                current_aggregation TEXT NOT NULL,
                max_aggregation TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cached_aggregation_lookup
                ON cached_aggregation (external_subscription_id, charge_id, timestamp);
        """)
        conn.commit()
    finally:
        conn.close()


def _event_params(event: Event) -> tuple:
    return (
        event.transaction_id,
        event.external_subscription_id,
        event.code,
        _to_db_timestamp(event.timestamp),
        json.dumps(dict(event.properties), default=str),
        event.organization_id,
        _to_db_decimal(event.precise_total_amount_cents),
    )


_INSERT_EVENT = (
    f"INSERT INTO usage_event ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)"
)


def insert_event(event: Event, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file

    Raises:
        sqlite3.IntegrityError: If the transaction id was already recorded
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_INSERT_EVENT, _event_params(event))
        conn.commit()
    finally:
        conn.close()


def insert_events(events: List[Event], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple usage events atomically into the append-only ledger.

    All events are inserted in a single transaction to ensure consistency.

    Args:
        events: List of usage events to record
        db_path: Path to SQLite database file
    """
    if not events:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for event in events:
            conn.execute(_INSERT_EVENT, _event_params(event))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    logger.info("events_ingested", count=len(events))
