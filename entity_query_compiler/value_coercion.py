# Copyright 2020-present Kensho Technologies, LLC.
"""Convert raw backend values to the element type declared for the column they were read from."""
from datetime import date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Tuple, Type

from ciso8601 import parse_datetime  # pylint: disable=no-name-in-module


def _coerce_boolean(value: Any) -> bool:
    """Coerce a boolean, allowing for common string or int representations."""
    true_values = [1, "1", "true", "True", True]
    false_values = [0, "0", "false", "False", False]
    if value in true_values:
        return True
    elif value in false_values:
        return False
    else:
        raise ValueError(
            f"Received unexpected boolean value {value} of type {type(value)}. Expected one "
            f"of: {true_values + false_values}."
        )


def _coerce_date(value: Any) -> date:
    """Coerce a date from a date object or its ISO-8601 'YYYY-MM-DD' string representation."""
    if type(value) == date:
        # We prefer exact type equality instead of isinstance() because datetime objects
        # are subclasses of date but are not interchangeable for dates for our purposes.
        return value
    elif isinstance(value, str):
        # ciso8601 only supports parsing into datetime objects, not date objects.
        dt = parse_datetime(value)  # This will raise ValueError in case of bad ISO 8601 formatting.
        if dt.hour or dt.minute or dt.second or dt.microsecond or dt.tzinfo is not None:
            raise ValueError(
                f"Expected an ISO-8601 date string in 'YYYY-MM-DD' format, but got a datetime "
                f"string with a non-empty time component. Received value {repr(value)}, "
                f"parsed as {dt}."
            )
        return dt.date()
    else:
        raise ValueError(
            f"Expected a date object or its ISO-8601 'YYYY-MM-DD' string representation. "
            f"Got {value} of type {type(value)} instead."
        )


def _coerce_datetime(value: Any) -> datetime:
    """Coerce a datetime from a date/datetime or a ISO-8601 string representation."""
    if isinstance(value, datetime):
        return value
    elif isinstance(value, str):
        # This will raise ValueError in case of bad ISO 8601 formatting.
        return parse_datetime(value)
    elif type(value) == date:
        # This is a widening conversion, so there is no loss of precision.
        return datetime(value.year, value.month, value.day)
    else:
        raise ValueError(
            f"Expected a datetime or an ISO-8601 string representation parseable "
            f"by the ciso8601 library. Got {value} of type {type(value)} instead."
        )


def _coerce_decimal(value: Any) -> Decimal:
    """Coerce a decimal without going through a binary float representation."""
    if isinstance(value, Decimal):
        return value
    elif isinstance(value, (int, str)):
        return Decimal(value)
    elif isinstance(value, float):
        return Decimal(repr(value))
    else:
        raise ValueError(f"Expected a decimal value. Got {value} of type {type(value)} instead.")


_ALLOWED_TYPES_AND_COERCION_FUNCTIONS: Mapping[
    Type, Tuple[Tuple[Type, ...], Callable[[Any], Any]]
] = MappingProxyType(
    {
        bool: ((bool, int, str), _coerce_boolean),
        int: ((int, str), int),
        float: ((float, int, str, Decimal), float),
        Decimal: ((Decimal, float, int, str), _coerce_decimal),
        str: ((str,), str),
        date: ((str, date), _coerce_date),
        datetime: ((str, date, datetime), _coerce_datetime),
    }
)


def coerce_value(element_type: Optional[Type], value: Any) -> Any:
    """Convert a value read from a backend row to the given element type.

    Args:
        element_type: python type declared for the column, or None if the column is untyped.
        value: raw value as returned by the executor.

    Returns:
        the value converted to element_type. None values, untyped columns and element types
        without a known conversion are returned unchanged.

    Raises:
        ValueError: if the value cannot be represented as the element type.
    """
    if value is None or element_type is None:
        return value

    types_and_coercion = _ALLOWED_TYPES_AND_COERCION_FUNCTIONS.get(element_type)
    if types_and_coercion is None:
        return value

    allowed_types, coercion_function = types_and_coercion
    if type(value) is element_type:
        return value

    # Explicitly disallow passing boolean values for non-boolean types.
    if isinstance(value, bool) and element_type is not bool:
        raise ValueError(f"Cannot coerce boolean value {value} to non-boolean type {element_type}.")

    # datetime is a subclass of date, but truncating it would silently lose precision.
    if isinstance(value, datetime) and element_type is date:
        raise ValueError(
            f"Cannot use the datetime object {value} as a date value. Truncating the time and "
            f"time zone data is undesirable as an implicit default."
        )

    if not isinstance(value, allowed_types):
        raise ValueError(
            f"Cannot coerce value {value} of type {type(value)} to {element_type}. Allowed "
            f"input types are {allowed_types}."
        )
    return coercion_function(value)
