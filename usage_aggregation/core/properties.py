"""
Typed access to event property bags.

Event properties arrive as arbitrary JSON. Aggregations read them through
PropertyValue, which tags each raw value as numeric, string or null and
fails closed (returns None) when the requested kind does not match.
"""

import json
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

NUMERIC_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")

OPERATION_TYPE_PROPERTY = "operation_type"


class PropertyKind(Enum):
    """Kind of a raw property value."""
    NUMERIC = "numeric"
    STRING = "string"
    NULL = "null"


@dataclass(frozen=True)
class PropertyValue:
    """A single event property tagged with its kind."""
    kind: PropertyKind
    raw: Any = None

    @classmethod
    def of(cls, raw: Any) -> "PropertyValue":
        if raw is None:
            return cls(PropertyKind.NULL)
        if isinstance(raw, bool):
            return cls(PropertyKind.STRING, raw)
        if isinstance(raw, (int, float, Decimal)):
            return cls(PropertyKind.NUMERIC, raw)
        if isinstance(raw, str) and NUMERIC_PATTERN.match(raw.strip()):
            return cls(PropertyKind.NUMERIC, raw.strip())
        return cls(PropertyKind.STRING, raw)

    @property
    def is_null(self) -> bool:
        return self.kind == PropertyKind.NULL

    def as_decimal(self) -> Optional[Decimal]:
        """Numeric value, or None when the property is not numeric."""
        if self.kind != PropertyKind.NUMERIC:
            return None
        if isinstance(self.raw, float):
            if self.raw != self.raw or self.raw in (float("inf"), float("-inf")):
                return None
            return Decimal(str(self.raw))
        try:
            return Decimal(self.raw)
        except InvalidOperation:
            return None

    def as_text(self) -> Optional[str]:
        """Text form used for filter and group comparisons."""
        if self.is_null:
            return None
        if isinstance(self.raw, bool):
            return "true" if self.raw else "false"
        if isinstance(self.raw, (dict, list)):
            return json.dumps(self.raw, sort_keys=True)
        return str(self.raw)


def operation_type(properties: dict) -> str:
    """Return "remove" or "add" for a unique-count event.

    Anything other than the string "remove" is treated as an add.
    """
    value = properties.get(OPERATION_TYPE_PROPERTY)
    if isinstance(value, str) and value.strip().lower() == "remove":
        return "remove"
    return "add"
