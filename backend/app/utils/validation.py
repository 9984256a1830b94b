"""Coercion helpers for loosely-typed JSON request payloads.

Clients post plain JSON objects; these helpers pull individual fields out
of them and raise ``ValidationError`` with a message naming the field when
a value is missing or has the wrong shape.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from app.core import errors


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def as_float(value: object, name: str) -> float:
    """Convert a JSON number or numeric string to a finite float.

    Raises:
        ValidationError: If the value is missing, non-numeric, NaN or
            infinite.
    """
    if value is None:
        raise errors.ValidationError(f"Missing required field: {name}")
    if _is_number(value):
        number = float(value)  # type: ignore[arg-type]
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise errors.ValidationError(
                f"Field {name} must be numeric"
            ) from None
    else:
        raise errors.ValidationError(f"Field {name} must be numeric")

    if not math.isfinite(number):
        raise errors.ValidationError(f"Field {name} must be a finite number")
    return number


def as_positive_int(value: object, name: str) -> int:
    """Convert a JSON value to a strictly positive integer."""
    number = as_float(value, name)
    if not number.is_integer() or number < 1:
        raise errors.ValidationError(f"Field {name} must be a positive integer")
    return int(number)


def as_text(value: object, name: str) -> str:
    """Return a non-empty string field."""
    if value is None or value == "":
        raise errors.ValidationError(f"Missing required field: {name}")
    if not isinstance(value, str):
        raise errors.ValidationError(f"Field {name} must be a string")
    return value


def as_object(value: object, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise errors.ValidationError(f"{name} must be a JSON object")
    return value


def first_present(payload: Mapping[str, Any], *names: str) -> Any:
    """Return the first non-None value among alternative field spellings."""
    for name in names:
        value = payload.get(name)
        if value is not None:
            return value
    return None
