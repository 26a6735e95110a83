"""Decimal helpers for gallons and money."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ttb_compliance.errors import ComplianceError, InvalidQuantity

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def round2(value: Decimal) -> Decimal:
    """Round to two decimal places, half up."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(
    value: Any,
    field_name: str,
    error_cls: type[ComplianceError] = InvalidQuantity,
) -> Decimal:
    """Convert user input to a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1.

    Raises:
        error_cls: If the value is missing, not numeric, or not finite.
    """
    if value is None or isinstance(value, bool):
        raise error_cls(f"{field_name} must be a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise error_cls(f"{field_name} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise error_cls(f"{field_name} must be finite, got {value!r}")
    return result


def non_negative(value: Any, field_name: str) -> Decimal:
    """Convert gallons and require them to be zero or more."""
    result = to_decimal(value, field_name)
    if result < 0:
        raise InvalidQuantity(
            f"{field_name} must be non-negative, got {result}",
            details={"field": field_name, "value": str(result)},
        )
    return result
