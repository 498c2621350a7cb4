# -*- coding: utf-8 -*-
"""
Query building

Translates a QueryDescriptor into the options understood by the data engine
(jsonapi_crud.engine):

    where:    predicate tree, eg.
              {"AND": [{"name": {"contains": "jo"}}, {"author": {"is": {"name": "bob"}}}]}
    order_by: [("created_at", "desc"), ("id", "asc")]
    skip/take (offset pagination) or cursor/take (cursor pagination)
    include:  eager load tree, eg. {"posts": {"comments": {}}}

Field conditions are either a scalar (equality, None means IS NULL) or a dict of
operators: eq, ne, gt, gte, lt, lte, in, not_in, contains, icontains, startswith, endswith.
Relation conditions use "is"/"is_not" (to-one) and "some"/"none"/"every" (to-many).
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import jsonapi_crud
from .attr_parse import parse_attr
from .crud_init import dict_merge
from .errors import ValidationError
from .model import DescriptorLookup, ModelDescriptor, default_descriptor
from .query import ASC, FLAG_OPERATORS, FilterSpec, PaginationMode, QueryDescriptor, parse_bool

Predicate = Dict[str, Any]
IncludeTree = Dict[str, Any]


@dataclass
class QueryOptions:
    where: Predicate = field(default_factory=dict)
    order_by: List[Tuple[str, str]] = field(default_factory=list)
    skip: Optional[int] = None
    take: Optional[int] = None
    cursor: Optional[Dict[str, Any]] = None
    include: IncludeTree = field(default_factory=dict)

    def count_options(self) -> Dict[str, Any]:
        """
        The "total count" variant: same predicate, pagination stripped
        """
        return {"where": self.where}


def and_predicates(*predicates: Optional[Predicate]) -> Predicate:
    parts = [predicate for predicate in predicates if predicate]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"AND": parts}


def exclude_deleted(where: Predicate, soft_delete_field: str) -> Predicate:
    """
    Add the "not soft-deleted" condition to a predicate
    """
    return and_predicates(where, {soft_delete_field: None})


def only_deleted(where: Predicate, soft_delete_field: str) -> Predicate:
    return and_predicates(where, {soft_delete_field: {"ne": None}})


#
# Cursors
#
def encode_cursor(pk_value: Any) -> str:
    raw = json.dumps(pk_value if isinstance(pk_value, (int, str)) else str(pk_value))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str, descriptor: ModelDescriptor) -> Any:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        value = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        raise ValidationError(f"Invalid cursor '{cursor}'", code="INVALID_CURSOR", source={"parameter": "page[cursor]"})
    if not isinstance(value, (int, str)):
        raise ValidationError(f"Invalid cursor '{cursor}'", code="INVALID_CURSOR", source={"parameter": "page[cursor]"})
    return descriptor.coerce_pk(value)


#
# Filters
#
def _coerce(descriptor: ModelDescriptor, spec: FilterSpec, field_name: str, value: Any) -> Any:
    try:
        return parse_attr(descriptor.column(field_name), value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid value '{value}' for filter on '{spec.field}': {exc}",
            code="INVALID_FILTER",
            source={"parameter": f"filter[{spec.field}_{spec.operator}]"},
        )


def _is_text(descriptor: ModelDescriptor, field_name: str) -> bool:
    fd = descriptor.field(field_name)
    return fd is not None and fd.python_type is str


def _split_values(value: Any) -> List[str]:
    return [item.strip() for item in str(value).split(",") if item.strip()]


def _field_predicate(descriptor: ModelDescriptor, spec: FilterSpec, field_name: str) -> Optional[Predicate]:
    op = spec.operator
    value = spec.value

    if op in FLAG_OPERATORS:
        flag = parse_bool(value) if value not in (None, "") else True
        is_null = {field_name: None}
        not_null = {field_name: {"ne": None}}
        if op == "null":
            return is_null if flag else not_null
        if op == "not_null":
            return not_null if flag else is_null
        text = _is_text(descriptor, field_name)
        present = {"AND": [not_null, {field_name: {"ne": ""}}]} if text else not_null
        blank = {"OR": [is_null, {field_name: ""}]} if text else is_null
        if op == "present":
            return present if flag else blank
        return blank if flag else present

    text_value = str(value)
    if op == "like":
        return {field_name: {"contains": text_value.strip("%")}}
    if op == "ilike":
        return {field_name: {"icontains": text_value.strip("%")}}
    if op == "start":
        return {field_name: {"startswith": text_value.rstrip("%")}}
    if op == "end":
        return {field_name: {"endswith": text_value.lstrip("%")}}
    if op == "contains":
        return {field_name: {"contains": text_value}}

    if op in ("in", "not_in"):
        values = [_coerce(descriptor, spec, field_name, item) for item in _split_values(value)]
        return {field_name: {op: values}}
    if op == "between":
        bounds = _split_values(value)
        if len(bounds) != 2:
            raise ValidationError(
                f"filter on '{spec.field}' with 'between' requires two comma separated values",
                code="INVALID_FILTER",
                source={"parameter": f"filter[{spec.field}_between]"},
            )
        low, high = (_coerce(descriptor, spec, field_name, bound) for bound in bounds)
        return {field_name: {"gte": low, "lte": high}}

    coerced = _coerce(descriptor, spec, field_name, value)
    if op == "eq":
        return {field_name: coerced}
    if op in ("ne", "gt", "gte", "lt", "lte"):
        return {field_name: {op: coerced}}

    jsonapi_crud.log.warning(f"Unknown filter operator '{op}'")
    return None


def filter_predicate(
    descriptor: ModelDescriptor, spec: FilterSpec, describe: DescriptorLookup = default_descriptor
) -> Optional[Predicate]:
    """
    Build the predicate of one filter, following relation segments of the filter path
    """
    path = spec.path
    if len(path) == 1:
        return _field_predicate(descriptor, spec, path[0])

    rel = descriptor.relation(path[0])
    if rel is None:
        jsonapi_crud.log.warning(f"Ignoring filter on unknown relationship '{path[0]}'")
        return None
    nested_spec = FilterSpec(".".join(path[1:]), spec.operator, spec.value)
    nested = filter_predicate(describe(rel.target_class), nested_spec, describe)
    if nested is None:
        return None
    return {rel.name: {"some" if rel.to_many else "is": nested}}


def build_where(
    descriptor: ModelDescriptor, filters: List[FilterSpec], describe: DescriptorLookup = default_descriptor
) -> Predicate:
    """
    Filters are combined conjunctively
    """
    return and_predicates(*(filter_predicate(descriptor, spec, describe) for spec in filters))


#
# Includes and ordering
#
def build_include_tree(
    descriptor: ModelDescriptor, includes: List[str], describe: DescriptorLookup = default_descriptor
) -> IncludeTree:
    """
    "posts,posts.comments,author" => {"posts": {"comments": {}}, "author": {}}
    Unknown relationships are dropped
    """
    tree: IncludeTree = {}
    for include in includes:
        current = descriptor
        branch: IncludeTree = {}
        node = branch
        for segment in include.split("."):
            rel = current.relation(segment)
            if rel is None:
                jsonapi_crud.log.warning(f"Ignoring unknown include '{include}' of {descriptor.resource_type}")
                branch = {}
                break
            node[segment] = {}
            node = node[segment]
            current = describe(rel.target_class)
        dict_merge(tree, branch)
    return tree


def build_order_by(descriptor: ModelDescriptor, query: QueryDescriptor) -> List[Tuple[str, str]]:
    """
    The primary key is always the last ordering key, so pages are stable
    """
    order_by = [(spec.field, spec.direction) for spec in query.sort]
    if descriptor.primary_key not in [name for name, _ in order_by]:
        order_by.append((descriptor.primary_key, ASC))
    return order_by


def build_query_options(
    descriptor: ModelDescriptor, query: QueryDescriptor, describe: DescriptorLookup = default_descriptor
) -> QueryOptions:
    """
    :param descriptor: descriptor of the requested model
    :param query: parsed query string
    :return: QueryOptions for ModelClient.find_many()
    """
    options = QueryOptions(
        where=build_where(descriptor, query.filters, describe),
        order_by=build_order_by(descriptor, query),
        include=build_include_tree(descriptor, query.includes, describe),
    )
    pagination = query.pagination
    if pagination is None:
        return options
    options.take = pagination.size
    if pagination.mode == PaginationMode.OFFSET:
        options.skip = (int(pagination.number or 1) - 1) * pagination.size
    elif pagination.cursor:
        options.cursor = {descriptor.primary_key: decode_cursor(pagination.cursor, descriptor)}
    return options
