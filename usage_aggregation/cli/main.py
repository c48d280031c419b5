"""
CLI interface for usage aggregation.

Creates the event ledger, ingests events and aggregates configured charges.
"""

import json
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ..config.loader import LoggingConfig, load_engine_config
from ..config.logging_setup import configure_logging
from ..core.boundaries import Boundaries
from ..core.engine import aggregate_charge
from ..core.results import AggregationResult
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import Event
from ..storage.repository import (
    CachedAggregationRepository,
    EventRepository,
    initialize_schema,
    insert_events,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_LOG_LEVEL = "warning"

_EVENT_KEYS = {
    "transaction_id", "external_subscription_id", "code", "timestamp",
    "properties", "organization_id", "precise_total_amount_cents",
}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Minimum log level, overrides logging.level of the configuration"
    ),
    json_logs: Optional[bool] = typer.Option(
        None, "--json-logs/--no-json-logs", help="Emit logs as JSON lines, overrides logging.json"
    ),
):
    """Usage aggregation CLI."""
    ctx.obj = {"log_level": log_level, "json_logs": json_logs}
    configure_logging(log_level or DEFAULT_LOG_LEVEL, bool(json_logs))
    if ctx.invoked_subcommand is None:
        console.print("Usage aggregation - Use --help to see available commands")


@app.command()
def init(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
):
    """Initialize the event ledger database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _parse_event(line: str, line_number: int) -> Event:
    """Build an event from one JSON line of an ingest file."""
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"line {line_number}: event must be a JSON object")

    unknown_keys = set(data.keys()) - _EVENT_KEYS
    if unknown_keys:
        raise ValueError(f"line {line_number}: unknown event keys: {unknown_keys}")

    for key in ("transaction_id", "external_subscription_id", "code", "timestamp"):
        if not data.get(key):
            raise ValueError(f"line {line_number}: missing required '{key}'")

    properties = data.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValueError(f"line {line_number}: 'properties' must be an object")

    precise_total = data.get("precise_total_amount_cents")
    return Event(
        transaction_id=str(data["transaction_id"]),
        external_subscription_id=str(data["external_subscription_id"]),
        code=str(data["code"]),
        timestamp=_parse_timestamp(str(data["timestamp"])),
        properties=properties,
        organization_id=data.get("organization_id"),
        precise_total_amount_cents=Decimal(str(precise_total)) if precise_total is not None else None,
    )


@app.command()
def ingest(
    file: Path = typer.Argument(..., help="JSON lines file, one event per line"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
):
    """Append events to the ledger.

    All events of the file are inserted in one transaction: a single invalid
    or duplicate event rejects the whole file.
    """
    try:
        events: List[Event] = []
        with open(file, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                if line.strip():
                    events.append(_parse_event(line, line_number))

        insert_events(events, db)
        console.print(f"[green]✓[/] Ingested {len(events)} events")
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, InvalidOperation) as e:
        console.print(f"[red]Invalid event file:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error ingesting events:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _apply_logging_config(ctx: typer.Context, logging_config: LoggingConfig):
    """Reconfigure logging from the configuration file; command line flags win."""
    flags = ctx.obj or {}
    level = flags.get("log_level") or logging_config.level
    json_output = flags.get("json_logs")
    if json_output is None:
        json_output = logging_config.json
    configure_logging(level, json_output)


def _default_duration(from_datetime: datetime, to_datetime: datetime) -> int:
    return (to_datetime.date() - from_datetime.date()).days + 1


@app.command()
def aggregate(
    ctx: typer.Context,
    config: Path = typer.Option(..., "--config", "-c", help="Path to the YAML configuration"),
    charge_id: str = typer.Option(..., "--charge", help="Id of the configured charge"),
    subscription: str = typer.Option(..., "--subscription", "-s", help="External subscription id"),
    from_date: str = typer.Option(..., "--from", help="Start of the period (ISO 8601)"),
    to_date: str = typer.Option(..., "--to", help="End of the period, inclusive (ISO 8601)"),
    duration: Optional[int] = typer.Option(
        None, "--duration", help="Period length in days, defaults to the calendar days of the window"
    ),
    charge_filter_id: Optional[str] = typer.Option(
        None, "--charge-filter", help="Aggregate one filter bucket instead of the default bucket"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Overrides database.path of the configuration"),
):
    """
    Aggregate a configured charge over a billing period.

    Grouped charges print one row per group.
    """
    try:
        engine_config = load_engine_config(str(config))
        _apply_logging_config(ctx, engine_config.logging)

        charge = engine_config.get_charge(charge_id)
        charge_filter = charge.get_filter(charge_filter_id) if charge_filter_id else None

        from_datetime = _parse_timestamp(from_date)
        to_datetime = _parse_timestamp(to_date)
        boundaries = Boundaries(
            from_datetime=from_datetime,
            to_datetime=to_datetime,
            charges_duration=duration or _default_duration(from_datetime, to_datetime),
        )

        db_path = db or engine_config.database.path
        result = aggregate_charge(
            charge,
            subscription,
            boundaries,
            EventRepository(db_path),
            cached_aggregation_repository=CachedAggregationRepository(db_path),
            charge_filter=charge_filter,
        )

        _display_result(charge_id, result)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_units(value: Optional[Decimal]) -> str:
    if value is None:
        return "-"
    return f"{value.normalize():f}" if value == value.to_integral() else f"{value:f}"


def _format_group(grouped_by) -> str:
    if not grouped_by:
        return "-"
    return ", ".join(f"{k}={v if v is not None else '∅'}" for k, v in grouped_by.items())


def _display_result(charge_id: str, result: AggregationResult):
    """Display an aggregation result as a table."""
    table = Table(title=f"Charge {charge_id}")
    table.add_column("Group")
    table.add_column("Units", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("Full units", justify="right")

    rows = result.aggregations if result.is_grouped else [result]
    for row in rows:
        table.add_row(
            _format_group(row.grouped_by),
            _format_units(row.aggregation),
            str(row.count),
            _format_units(row.full_units_number),
        )

    console.print(table)
    if result.precise_total_amount_cents is not None:
        console.print(f"Precise total: {_format_units(result.precise_total_amount_cents)} cents")


if __name__ == "__main__":
    app()
