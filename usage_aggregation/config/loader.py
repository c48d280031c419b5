"""
Configuration management and loading.

Reads billable metrics, charges, storage and logging settings from YAML.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Type

import yaml

from ..core.billable_metric import (
    AggregationType,
    BillableMetric,
    Charge,
    ChargeFilter,
    ChargeModel,
    RoundingFunction,
)
from ..storage.db import DEFAULT_DB_PATH

# Aggregation types whose per-event delta can be billed as events arrive
PAY_IN_ADVANCE_TYPES = {
    AggregationType.COUNT,
    AggregationType.SUM,
    AggregationType.UNIQUE_COUNT,
}

LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite event ledger."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class LoggingConfig:
    """Log level and output format."""
    level: str = "info"
    json: bool = False

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of: {sorted(LOG_LEVELS)}")


@dataclass(frozen=True)
class EngineConfig:
    """Complete aggregation configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    billable_metrics: Dict[str, BillableMetric] = field(default_factory=dict)
    charges: Dict[str, Charge] = field(default_factory=dict)

    def get_charge(self, charge_id: str) -> Charge:
        """Get a configured charge by id."""
        if charge_id not in self.charges:
            raise ValueError(f"Unknown charge '{charge_id}'")
        return self.charges[charge_id]


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate the aggregation configuration from a YAML file.

    Unknown keys are rejected at every level so a typo never silently
    changes what gets billed.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Aggregation config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(raw_config, {'database', 'logging', 'billable_metrics', 'charges'}, "configuration")

    database_data = _section(raw_config, 'database')
    _check_keys(database_data, {'path'}, "database")
    database = DatabaseConfig(path=str(database_data.get('path', DEFAULT_DB_PATH)))

    logging_data = _section(raw_config, 'logging')
    _check_keys(logging_data, {'level', 'json'}, "logging")
    logging_config = LoggingConfig(
        level=str(logging_data.get('level', 'info')).lower(),
        json=_boolean(logging_data, 'json', "logging"),
    )

    if 'billable_metrics' not in raw_config:
        raise ValueError("Missing required 'billable_metrics' section")

    metrics = {}
    for code, metric_data in _section(raw_config, 'billable_metrics').items():
        metrics[code] = _parse_billable_metric(code, metric_data)

    charges = {}
    for charge_id, charge_data in _section(raw_config, 'charges').items():
        charges[str(charge_id)] = _parse_charge(str(charge_id), charge_data, metrics)

    return EngineConfig(
        database=database,
        logging=logging_config,
        billable_metrics=metrics,
        charges=charges,
    )


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(data: Dict, key: str) -> Dict:
    section = data.get(key) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{key}' must be a dictionary")
    return section


def _boolean(data: Dict, key: str, path: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a boolean")
    return value


def _enum(enum_class: Type[Enum], value: Any, key: str, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    try:
        return enum_class(value.lower())
    except ValueError:
        valid = [member.value for member in enum_class]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")


def _parse_billable_metric(code: str, data: Any) -> BillableMetric:
    """Parse and validate one billable metric.

    Args:
        code: Event code of the metric
        data: Metric configuration data

    Returns:
        Validated BillableMetric

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"billable_metrics.{code}"
    if not isinstance(data, dict):
        raise ValueError(f"Billable metric '{code}' must be a dictionary")

    allowed_keys = {'aggregation_type', 'field_name', 'recurring', 'rounding_function', 'rounding_precision'}
    _check_keys(data, allowed_keys, path)

    if 'aggregation_type' not in data:
        raise ValueError(f"Missing required 'aggregation_type' in {path}")
    aggregation_type = _enum(AggregationType, data['aggregation_type'], 'aggregation_type', path)

    rounding_function: Optional[RoundingFunction] = None
    if data.get('rounding_function') is not None:
        rounding_function = _enum(RoundingFunction, data['rounding_function'], 'rounding_function', path)

    precision = data.get('rounding_precision')
    if precision is not None and (not isinstance(precision, int) or isinstance(precision, bool)):
        raise ValueError(f"'rounding_precision' in {path} must be an integer")

    field_name = data.get('field_name')
    return BillableMetric(
        code=str(code),
        aggregation_type=aggregation_type,
        field_name=str(field_name) if field_name is not None else None,
        recurring=_boolean(data, 'recurring', path),
        rounding_function=rounding_function,
        rounding_precision=precision,
    )


def _parse_charge(charge_id: str, data: Any, metrics: Dict[str, BillableMetric]) -> Charge:
    """Parse and validate one charge.

    Args:
        charge_id: Charge identifier
        data: Charge configuration data
        metrics: Billable metrics already parsed, by code

    Returns:
        Validated Charge

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"charges.{charge_id}"
    if not isinstance(data, dict):
        raise ValueError(f"Charge '{charge_id}' must be a dictionary")

    allowed_keys = {'billable_metric', 'charge_model', 'pay_in_advance', 'prorated', 'properties', 'filters'}
    _check_keys(data, allowed_keys, path)

    if 'billable_metric' not in data:
        raise ValueError(f"Missing required 'billable_metric' in {path}")
    metric_code = data['billable_metric']
    if metric_code not in metrics:
        raise ValueError(f"Unknown billable metric '{metric_code}' in {path}")
    metric = metrics[metric_code]

    charge_model = ChargeModel.STANDARD
    if 'charge_model' in data:
        charge_model = _enum(ChargeModel, data['charge_model'], 'charge_model', path)

    pay_in_advance = _boolean(data, 'pay_in_advance', path)
    if pay_in_advance and metric.aggregation_type not in PAY_IN_ADVANCE_TYPES:
        raise ValueError(
            f"{metric.aggregation_type.value} charges cannot be paid in advance ({path})"
        )

    prorated = _boolean(data, 'prorated', path)
    if prorated and not metric.recurring:
        raise ValueError(f"Only recurring billable metrics can be prorated ({path})")

    properties = data.get('properties') or {}
    if not isinstance(properties, dict):
        raise ValueError(f"'properties' in {path} must be a dictionary")

    return Charge(
        id=charge_id,
        billable_metric=metric,
        charge_model=charge_model,
        pay_in_advance=pay_in_advance,
        prorated=prorated,
        properties=properties,
        filters=_parse_charge_filters(data.get('filters') or [], path),
    )


def _parse_charge_filters(data: Any, path: str):
    if not isinstance(data, list):
        raise ValueError(f"'filters' in {path} must be a list")

    filters = []
    seen = set()
    for index, filter_data in enumerate(data):
        filter_path = f"{path}.filters[{index}]"
        if not isinstance(filter_data, dict):
            raise ValueError(f"{filter_path} must be a dictionary")
        _check_keys(filter_data, {'id', 'values'}, filter_path)

        if 'id' not in filter_data:
            raise ValueError(f"Missing required 'id' in {filter_path}")
        filter_id = str(filter_data['id'])
        if filter_id in seen:
            raise ValueError(f"Duplicate filter id '{filter_id}' in {path}")
        seen.add(filter_id)

        values = filter_data.get('values')
        if not isinstance(values, dict):
            raise ValueError(f"'values' in {filter_path} must be a dictionary")

        parsed = {}
        for key, allowed in values.items():
            if not isinstance(allowed, list) or not allowed:
                raise ValueError(f"'values.{key}' in {filter_path} must be a non-empty list")
            parsed[str(key)] = tuple(str(v) for v in allowed)

        filters.append(ChargeFilter(id=filter_id, values=parsed))

    return tuple(filters)
