import datetime
import decimal
import uuid
from typing import Any

import sqlalchemy

import jsonapi_crud

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "off"}


def _parse_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    date_str = str(value).strip()
    if date_str.endswith("Z"):
        date_str = date_str[:-1] + "+00:00"
    try:
        # "2024-01-31T10:00:00", "2024-01-31 10:00:00.123456", "2024-01-31"
        return datetime.datetime.fromisoformat(date_str)
    except ValueError:
        pass
    if "." in date_str:
        return datetime.datetime.strptime(date_str, "%Y-%m-%d %H:%M:%S.%f")
    # JS datepicker format
    return datetime.datetime.strptime(date_str, "%Y-%m-%d %H:%M")


def _parse_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def _parse_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.time):
        return value
    time_str = str(value).strip()
    if "." in time_str:
        return datetime.datetime.strptime(time_str, "%H:%M:%S.%f").time()
    return datetime.datetime.strptime(time_str, "%H:%M:%S").time()


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean '{value}'")


def parse_attr(column: Any, attr_val: Any) -> Any:
    """
    Parse the supplied `attr_val` so it can be saved in, or compared with, the SQLAlchemy `column`

    :param column: SQLAlchemy column
    :param attr_val: jsonapi attribute or query string value
    :return: processed value
    :raises ValueError, TypeError: when the value can't be converted to the column type
    """
    if attr_val is None:
        return attr_val

    try:
        python_type = column.type.python_type
    except NotImplementedError as exc:
        # custom column type: the user/dev should handle the conversion in the type itself
        jsonapi_crud.log.debug(exc)
        return attr_val

    # skip type coercion on JSON columns, since they could be anything
    if isinstance(column.type, sqlalchemy.types.JSON):
        return attr_val

    if python_type is datetime.datetime:
        return _parse_datetime(attr_val)
    if python_type is datetime.date:
        return _parse_date(attr_val)
    if python_type is datetime.time:
        return _parse_time(attr_val)
    if python_type is bool:
        return _parse_bool(attr_val)
    if python_type is uuid.UUID:
        return attr_val if isinstance(attr_val, uuid.UUID) else uuid.UUID(str(attr_val))
    if python_type is decimal.Decimal:
        try:
            return decimal.Decimal(str(attr_val))
        except decimal.InvalidOperation:
            raise ValueError(f"Invalid decimal '{attr_val}'")
    if python_type is int and isinstance(attr_val, float) and not attr_val.is_integer():
        raise ValueError(f"Invalid integer '{attr_val}'")
    if python_type in (int, float, str) and isinstance(attr_val, (dict, list)):
        raise TypeError(f"Expected a {python_type.__name__}, got {type(attr_val).__name__}")
    if isinstance(attr_val, python_type):
        return attr_val
    return python_type(attr_val)
