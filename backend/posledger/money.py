# Overview: Decimal helpers for money and quantities; all amounts round half-up.

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError


TWOPLACES = Decimal("0.01")
QTYPLACES = Decimal("0.001")
ZERO = Decimal("0.00")

# Tolerance used when comparing cached totals against recomputed ones
BALANCE_TOLERANCE = Decimal("0.01")


def to_decimal(value, field: str = "amount") -> Decimal:
    """
    Coerce user input into a Decimal.

    Accepts Decimal, int, float (via str to avoid binary noise) and numeric
    strings. Booleans, NaN and infinities are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def money(value) -> Decimal:
    return Decimal(str(value if value is not None else "0.00")).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def quantity(value) -> Decimal:
    return Decimal(str(value if value is not None else "0")).quantize(QTYPLACES, rounding=ROUND_HALF_UP)


def money_str(value) -> str | None:
    """JSON-safe money: '31.50'. Floats never leave the service layer."""
    if value is None:
        return None
    return str(money(value))


def quantity_str(value) -> str | None:
    if value is None:
        return None
    # "5.000" -> "5", "2.500" -> "2.5"; format "f" avoids "1E+2"
    return format(quantity(value).normalize(), "f")


def within_tolerance(a, b, tolerance: Decimal = BALANCE_TOLERANCE) -> bool:
    return abs(money(a) - money(b)) <= tolerance
