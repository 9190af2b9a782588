"""
Canonical numeric representation for usage and credit arithmetic.

Every quantity, limit and balance is a ``Decimal``. Floats are accepted only at
the boundary and converted through their string form.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

Amount = Union[Decimal, int, str, float]

ZERO = Decimal("0")


def to_decimal(value: Amount) -> Decimal:
    """Convert a boundary value to a finite Decimal.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a numeric amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a numeric amount: {value!r}")
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        raise ValueError(f"Not a numeric amount: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result
