import math
from typing import Dict

from counting_api.exceptions import ValidationError
from counting_api.models.catalog import DEFAULT_UNIT

# Closed set of unit codes: the base unit and the pack sizes the stores label.
UNIT_MULTIPLIERS: Dict[str, int] = {
    "UND": 1,
    "P2": 2, "P3": 3, "P4": 4, "P5": 5, "P6": 6, "P7": 7, "P8": 8, "P9": 9, "P10": 10,
    "P12": 12, "P13": 13, "P14": 14, "P15": 15, "P20": 20, "P24": 24, "P25": 25,
    "P28": 28, "P30": 30, "P40": 40, "P48": 48, "P50": 50, "P54": 54, "P60": 60,
    "P84": 84, "P100": 100,
}


def unit_multiplier(unit_of_measure: str) -> int:
    """Units per scan for a unit code; unknown codes count as single units."""
    code = (unit_of_measure or DEFAULT_UNIT).strip().upper()
    return UNIT_MULTIPLIERS.get(code, 1)


def compute_quantity(unit_of_measure: str, quantity_multiplier: float) -> float:
    """
    Quantity recorded for one scan: ``unit_multiplier × quantity_multiplier``.

    A multiplier of 0 is what the scanner sends when the operator typed
    nothing, and means one. NaN and infinities are rejected.
    """
    if quantity_multiplier is None or not math.isfinite(quantity_multiplier) or quantity_multiplier < 0:
        raise ValidationError(
            "quantity_multiplier must be a finite, non-negative number", field="quantity_multiplier"
        )
    multiplier = quantity_multiplier or 1
    return unit_multiplier(unit_of_measure) * multiplier
