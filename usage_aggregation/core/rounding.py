"""
Rounding of aggregated units.

Uses Decimal quantization so results are exact at the requested precision.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

from .billable_metric import BillableMetric, RoundingFunction

_ROUNDING_MODES = {
    RoundingFunction.ROUND: ROUND_HALF_UP,
    RoundingFunction.CEIL: ROUND_CEILING,
    RoundingFunction.FLOOR: ROUND_FLOOR,
}


def apply_rounding(
    units: Decimal,
    rounding_function: Optional[RoundingFunction],
    precision: Optional[int] = None,
) -> Decimal:
    """Round units with the given function.

    Args:
        units: Value to round
        rounding_function: round (half up), ceil or floor; None leaves units untouched
        precision: Number of decimal places, 0 when None

    Returns:
        Rounded units
    """
    if rounding_function is None:
        return units
    exponent = Decimal(1).scaleb(-(precision or 0))
    return Decimal(units).quantize(exponent, rounding=_ROUNDING_MODES[rounding_function])


def round_units(metric: BillableMetric, units: Optional[Decimal]) -> Optional[Decimal]:
    """Apply the metric's rounding to units (None passes through)."""
    if units is None:
        return None
    return apply_rounding(units, metric.rounding_function, metric.rounding_precision)
