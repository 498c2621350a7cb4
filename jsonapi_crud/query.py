# -*- coding: utf-8 -*-
"""
Query string parsing

Turns the query parameters of a request into a QueryDescriptor:

    ?filter[name_like]=%jo%&filter[author.name_eq]=bob
    &sort=-created_at,name
    &page[number]=2&page[size]=10      (or page[cursor]=...&page[size]=10)
    &fields[users]=name,email
    &include=posts,posts.comments

Parsing is a pure function of the parameters and the model descriptor: no
data engine call happens here. Unknown filter operators and fields are
ignored, malformed pagination is rejected with a ValidationError.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import jsonapi_crud
from .config import get_config
from .errors import ValidationError
from .model import DescriptorLookup, ModelDescriptor, default_descriptor

# longest first: "deleted_at_not_null" must not resolve to ("deleted_at_not", "null")
OPERATORS = (
    "not_null",
    "not_in",
    "between",
    "present",
    "contains",
    "blank",
    "ilike",
    "start",
    "like",
    "end",
    "gte",
    "lte",
    "null",
    "eq",
    "ne",
    "gt",
    "lt",
    "in",
)
# operators that don't take a value but a boolean flag
FLAG_OPERATORS = ("null", "not_null", "present", "blank")

FILTER_RE = re.compile(r"^filter\[(.+)\]$")
FIELDS_RE = re.compile(r"^fields\[(.+)\]$")
PAGE_RE = re.compile(r"^page\[(.+)\]$")

ASC = "asc"
DESC = "desc"


class PaginationMode(str, Enum):
    OFFSET = "offset"
    CURSOR = "cursor"


@dataclass(frozen=True)
class FilterSpec:
    field: str  # dotted path for relation filters, eg. "author.name"
    operator: str
    value: Any

    @property
    def path(self) -> Tuple[str, ...]:
        return tuple(self.field.split("."))


@dataclass(frozen=True)
class SortSpec:
    field: str
    direction: str = ASC

    @property
    def descending(self) -> bool:
        return self.direction == DESC


@dataclass(frozen=True)
class Pagination:
    mode: PaginationMode
    size: int
    number: Optional[int] = None
    cursor: Optional[str] = None


@dataclass
class QueryDescriptor:
    filters: List[FilterSpec] = field(default_factory=list)
    sort: List[SortSpec] = field(default_factory=list)
    pagination: Optional[Pagination] = None
    fields: Dict[str, List[str]] = field(default_factory=dict)
    includes: List[str] = field(default_factory=list)
    include_deleted: bool = False


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def parse_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def auto_detect_operator(value: str) -> str:
    """
    Pick an operator from the shape of the value when the filter key doesn't name one
    """
    if value.startswith("%") and value.endswith("%") and len(value) > 1:
        return "like"
    if value.startswith("%"):
        return "end"
    if value.endswith("%"):
        return "start"
    if "," in value:
        return "in"
    return "eq"


def _field_exists(
    descriptor: ModelDescriptor, path: List[str], describe: DescriptorLookup
) -> bool:
    """
    Check that a (dotted) filter path ends in a column of the model or of a related model
    """
    current = descriptor
    for segment in path[:-1]:
        rel = current.relation(segment)
        if rel is None:
            return False
        current = describe(rel.target_class)
    return current.field(path[-1]) is not None


def parse_filter_expression(
    expression: str,
    value: str,
    descriptor: ModelDescriptor,
    describe: DescriptorLookup = default_descriptor,
) -> Optional[FilterSpec]:
    """
    :param expression: the part between the brackets of filter[...], eg. "name_like"
    :param value: the query string value
    :return: FilterSpec or None when the expression can't be resolved
    """
    path = expression.split(".")
    if _field_exists(descriptor, path, describe):
        operator = auto_detect_operator(value)
        return FilterSpec(expression, operator, value)

    for operator in OPERATORS:
        suffix = "_" + operator
        if not expression.endswith(suffix):
            continue
        field_name = expression[: -len(suffix)]
        if field_name and _field_exists(descriptor, field_name.split("."), describe):
            return FilterSpec(field_name, operator, value)
        jsonapi_crud.log.warning(f"Ignoring filter on unknown field '{field_name}' of {descriptor.resource_type}")
        return None

    jsonapi_crud.log.warning(f"Ignoring filter '{expression}': unknown field or operator")
    return None


def parse_filters(
    params: Mapping[str, str], descriptor: ModelDescriptor, describe: DescriptorLookup = default_descriptor
) -> List[FilterSpec]:
    filters = []
    for key, value in params.items():
        match = FILTER_RE.match(key)
        if not match:
            continue
        spec = parse_filter_expression(match.group(1), str(value), descriptor, describe)
        if spec is not None:
            filters.append(spec)
    return filters


def parse_sort(sort_arg: Optional[str], descriptor: ModelDescriptor) -> List[SortSpec]:
    result = []
    for item in _split_csv(sort_arg):
        direction = DESC if item.startswith("-") else ASC
        field_name = item.lstrip("-+")
        if descriptor.field(field_name) is None:
            jsonapi_crud.log.warning(f"Ignoring sort on unknown field '{field_name}' of {descriptor.resource_type}")
            continue
        result.append(SortSpec(field_name, direction))
    return result


def _page_int(params: Mapping[str, str], name: str, maximum: Optional[int] = None) -> int:
    parameter = f"page[{name}]"
    raw = params.get(parameter)
    try:
        value = int(str(raw))
    except (TypeError, ValueError):
        raise ValidationError(f"{parameter} must be an integer", source={"parameter": parameter})
    if value < 1:
        raise ValidationError(f"{parameter} must be greater than zero", source={"parameter": parameter})
    if maximum is not None and value > maximum:
        raise ValidationError(f"{parameter} must not exceed {maximum}", source={"parameter": parameter})
    return value


def parse_pagination(params: Mapping[str, str], required: bool = True) -> Optional[Pagination]:
    """
    Offset mode: page[number] + page[size]
    Cursor mode: page[cursor] + page[size], an empty cursor starts at the beginning

    :param required: raise a ValidationError when no (complete) pagination is given
    :return: Pagination or None
    """
    page_keys = {PAGE_RE.match(key).group(1) for key in params.keys() if PAGE_RE.match(key)}
    if not page_keys and not required:
        return None

    has_number = "number" in page_keys
    has_cursor = "cursor" in page_keys
    if "size" not in page_keys:
        raise ValidationError("page[size] is required", code="PAGINATION_REQUIRED", source={"parameter": "page[size]"})
    if has_number and has_cursor:
        raise ValidationError(
            "page[number] and page[cursor] are mutually exclusive",
            code="INVALID_PAGINATION",
            source={"parameter": "page[cursor]"},
        )
    if not has_number and not has_cursor:
        raise ValidationError(
            "page[number] or page[cursor] is required",
            code="PAGINATION_REQUIRED",
            source={"parameter": "page[number]"},
        )

    size = _page_int(params, "size", int(get_config("MAX_PAGE_SIZE")))
    if has_cursor:
        return Pagination(PaginationMode.CURSOR, size, cursor=str(params.get("page[cursor]") or ""))
    return Pagination(PaginationMode.OFFSET, size, number=_page_int(params, "number"))


def parse_fields(params: Mapping[str, str]) -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {}
    for key, value in params.items():
        match = FIELDS_RE.match(key)
        if match:
            result[match.group(1)] = _split_csv(value)
    return result


def parse_includes(include_arg: Optional[str]) -> List[str]:
    includes: List[str] = []
    for path in _split_csv(include_arg):
        path = ".".join(part for part in path.split(".") if part)
        if path and path not in includes:
            includes.append(path)
    return includes


def parse_query(
    params: Mapping[str, str],
    descriptor: ModelDescriptor,
    paginate: bool = True,
    describe: DescriptorLookup = default_descriptor,
) -> QueryDescriptor:
    """
    Parse the query parameters of a request

    :param params: query parameters (eg. starlette QueryParams)
    :param descriptor: descriptor of the requested model
    :param paginate: list queries require pagination, single resource queries ignore it
    :return: QueryDescriptor
    """
    return QueryDescriptor(
        filters=parse_filters(params, descriptor, describe),
        sort=parse_sort(params.get("sort"), descriptor),
        pagination=parse_pagination(params) if paginate else None,
        fields=parse_fields(params),
        includes=parse_includes(params.get("include")),
        include_deleted=parse_bool(params.get(str(get_config("INCLUDE_DELETED_PARAM")), "false")),
    )


def query_items(params: Any) -> Iterable[Tuple[str, str]]:
    """
    All (key, value) pairs of a query, repeated keys included
    """
    multi_items = getattr(params, "multi_items", None)
    if callable(multi_items):
        return list(multi_items())
    return list(params.items())
