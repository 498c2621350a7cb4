# -*- coding: utf-8 -*-
"""
Primary key parsing

A parser is selected per model when the model is registered, based on the name
of the primary key column:
- a name that suggests a UUID ("uuid", "guid", "user_uuid", ...) gets the strict UUID parser
- all other names get the "smart" parser:
    "550e8400-e29b-41d4-a716-446655440000" => returned unchanged
    "123" => 123
    "abc_123" => returned unchanged
    "" or "a b" => ValidationError
"""

import re
from typing import Callable, Union

from .errors import ValidationError

PrimaryKey = Union[int, str]
PkParser = Callable[[str], PrimaryKey]

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
DIGITS_RE = re.compile(r"^[0-9]+$")
OPAQUE_RE = re.compile(r"^[A-Za-z0-9_-]+$")
UUID_NAME_RE = re.compile(r"(^|_)(uuid|guid)$", re.IGNORECASE)


def parse_uuid(value: str) -> str:
    """
    Strict UUID validation, the value is returned unchanged
    """
    value = str(value)
    if not UUID_RE.match(value):
        raise ValidationError(f"Invalid UUID: '{value}'", code="INVALID_ID")
    return value


def parse_smart_id(value: str) -> PrimaryKey:
    value = str(value)
    if UUID_RE.match(value):
        return value
    if DIGITS_RE.match(value):
        return int(value)
    if OPAQUE_RE.match(value):
        return value
    raise ValidationError(f"Invalid id: '{value}'", code="INVALID_ID")


def name_suggests_uuid(pk_name: str) -> bool:
    return bool(UUID_NAME_RE.search(pk_name)) or pk_name.lower() in ("uuid", "guid")


def select_pk_parser(pk_name: str) -> PkParser:
    """
    :param pk_name: name of the primary key field
    :return: the parser used for the url path ids of the model
    """
    if name_suggests_uuid(pk_name):
        return parse_uuid
    return parse_smart_id
