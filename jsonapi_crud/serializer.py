# -*- coding: utf-8 -*-
"""
JSON:API documents

Records (plain dicts returned by the data engine) are converted to resource
documents:

    {
        "type": "users",
        "id": "1",
        "attributes": {"name": "bob", "email": "bob@example.com"},
        "relationships": {
            "posts": {
                "data": [{"type": "posts", "id": "3"}],
                "links": {"self": "/users/1/relationships/posts", "related": "/users/1/posts"}
            }
        },
        "links": {"self": "/users/1"}
    }

The relation list of the model descriptor decides what is a relationship, an
attribute holding a list or a dict stays an attribute.
"""

import datetime
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlencode

from fastapi.encoders import jsonable_encoder

from .builder import IncludeTree, encode_cursor
from .config import get_config
from .jsonapi_types import Document, ResourceIdentifierObject, ResourceObject
from .model import DescriptorLookup, ModelDescriptor, default_descriptor
from .query import PAGE_RE, Pagination, PaginationMode

Record = Dict[str, Any]


def _default_base_url(descriptor: ModelDescriptor) -> str:
    return "/" + descriptor.resource_type


@dataclass
class TransformOptions:
    base_url: str = ""
    fields: Dict[str, List[str]] = field(default_factory=dict)
    include: IncludeTree = field(default_factory=dict)
    include_merge: bool = False
    links: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None


class ResponseTransformer:
    """
    :param describe: descriptor lookup for related models
    :param base_url_for: url of the collection of a model, used in the links of related resources
    """

    def __init__(
        self,
        describe: DescriptorLookup = default_descriptor,
        base_url_for: Callable[[ModelDescriptor], str] = _default_base_url,
    ) -> None:
        self.describe = describe
        self.base_url_for = base_url_for

    @staticmethod
    def resource_id(record: Record, descriptor: ModelDescriptor) -> str:
        return str(record[descriptor.primary_key])

    def identifier(self, record: Record, descriptor: ModelDescriptor) -> ResourceIdentifierObject:
        return {"type": descriptor.resource_type, "id": self.resource_id(record, descriptor)}

    def linkage(self, value: Any, rel_descriptor: ModelDescriptor, to_many: bool) -> Any:
        if to_many:
            return [self.identifier(item, rel_descriptor) for item in (value or [])]
        return self.identifier(value, rel_descriptor) if value is not None else None

    @staticmethod
    def _wanted_fields(descriptor: ModelDescriptor, fields: Dict[str, List[str]]) -> Optional[Set[str]]:
        wanted = fields.get(descriptor.resource_type)
        if wanted is None:
            return None
        return set(wanted)

    def _merged(self, value: Any, rel_descriptor: ModelDescriptor, to_many: bool) -> Any:
        def merge(record: Record) -> Dict[str, Any]:
            merged = {"id": self.resource_id(record, rel_descriptor)}
            merged.update({name: record.get(name) for name in rel_descriptor.attribute_names if name in record})
            return jsonable_encoder(merged)

        if to_many:
            return [merge(item) for item in (value or [])]
        return merge(value) if value is not None else None

    def resource(
        self,
        record: Record,
        descriptor: ModelDescriptor,
        options: Optional[TransformOptions] = None,
        base_url: Optional[str] = None,
    ) -> ResourceObject:
        """
        Build the resource document of one record

        :param record: data engine record
        :param descriptor: model descriptor of the record
        :param options: sparse fieldsets and include options
        :param base_url: collection url, defaults to options.base_url
        :return: resource document
        """
        options = options or TransformOptions()
        if base_url is None:
            base_url = options.base_url or self.base_url_for(descriptor)
        resource_id = self.resource_id(record, descriptor)
        wanted = self._wanted_fields(descriptor, options.fields)

        attributes: Dict[str, Any] = {}
        for name in descriptor.attribute_names:
            if name not in record:
                continue
            if wanted is not None and name not in wanted:
                continue
            attributes[name] = record[name]
        attributes = jsonable_encoder(attributes)

        relationships: Dict[str, Any] = {}
        for rel in descriptor.relations:
            rel_doc: Dict[str, Any] = {
                "links": {
                    "self": f"{base_url}/{resource_id}/relationships/{rel.name}",
                    "related": f"{base_url}/{resource_id}/{rel.name}",
                }
            }
            if rel.name in record:
                rel_descriptor = self.describe(rel.target_class)
                rel_doc["data"] = self.linkage(record[rel.name], rel_descriptor, rel.to_many)
                if options.include_merge:
                    attributes[rel.name] = self._merged(record[rel.name], rel_descriptor, rel.to_many)
            relationships[rel.name] = rel_doc

        result: ResourceObject = {"type": descriptor.resource_type, "id": resource_id, "attributes": attributes}
        if relationships:
            result["relationships"] = relationships
        result["links"] = {"self": f"{base_url}/{resource_id}"}
        return result

    def collect_included(
        self,
        record: Record,
        descriptor: ModelDescriptor,
        include: IncludeTree,
        options: TransformOptions,
        seen: Set[Tuple[str, str]],
        included: List[ResourceObject],
    ) -> None:
        """
        Add the (nested) related records of `record` to `included`, deduplicated by (type, id)
        """
        for rel_name, sub_include in include.items():
            rel = descriptor.relation(rel_name)
            if rel is None or rel_name not in record:
                continue
            rel_descriptor = self.describe(rel.target_class)
            value = record[rel_name]
            items = value if rel.to_many else [value]
            for item in items or []:
                if item is None:
                    continue
                key = (rel_descriptor.resource_type, self.resource_id(item, rel_descriptor))
                if key not in seen:
                    seen.add(key)
                    included.append(self.resource(item, rel_descriptor, options, base_url=self.base_url_for(rel_descriptor)))
                if sub_include:
                    self.collect_included(item, rel_descriptor, sub_include, options, seen, included)

    def document(
        self,
        data: Any,
        descriptor: ModelDescriptor,
        options: Optional[TransformOptions] = None,
        many: Optional[bool] = None,
    ) -> Document:
        """
        :param data: one record, a list of records or None
        :param descriptor: model descriptor of the primary data
        :param options: transform options
        :param many: render a collection, defaults to isinstance(data, list)
        :return: JSON:API document
        """
        options = options or TransformOptions()
        many = isinstance(data, list) if many is None else many
        records: List[Record] = list(data or []) if many else ([data] if data is not None else [])
        resources = [self.resource(record, descriptor, options) for record in records]

        doc: Document = {"jsonapi": {"version": get_config("JSONAPI_VERSION")}}
        doc["data"] = resources if many else (resources[0] if resources else None)

        if options.include and not options.include_merge:
            seen = {(descriptor.resource_type, self.resource_id(record, descriptor)) for record in records}
            included: List[ResourceObject] = []
            for record in records:
                self.collect_included(record, descriptor, options.include, options, seen, included)
            doc["included"] = included
        if options.links is not None:
            doc["links"] = options.links
        if options.meta is not None:
            doc["meta"] = options.meta
        return doc

    def relationship_document(
        self,
        value: Any,
        rel_descriptor: ModelDescriptor,
        to_many: bool,
        links: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Linkage document: {"data": [{"type": ..., "id": ...}], "links": ...}
        """
        doc: Document = {
            "jsonapi": {"version": get_config("JSONAPI_VERSION")},
            "data": self.linkage(value, rel_descriptor, to_many),
        }
        if links is not None:
            doc["links"] = links
        if meta is not None:
            doc["meta"] = meta
        return doc


def timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def operation_meta(operation: str, affected_count: Optional[int] = None, **extra: Any) -> Dict[str, Any]:
    """
    Meta of mutations: {"operation": "create", "timestamp": ..., "affectedCount": 1}
    """
    meta: Dict[str, Any] = {"operation": operation, "timestamp": timestamp()}
    if affected_count is not None:
        meta["affectedCount"] = affected_count
    meta.update(extra)
    return meta


def total_pages(total: int, size: int) -> int:
    return max(1, math.ceil(total / size)) if size else 1


def next_cursor(records: Sequence[Record], descriptor: ModelDescriptor, pagination: Pagination) -> Optional[str]:
    """
    Cursor of the next page: the primary key of the last record of a full page
    """
    if pagination.mode != PaginationMode.CURSOR or len(records) < pagination.size or not records:
        return None
    return encode_cursor(records[-1][descriptor.primary_key])


def index_meta(
    total: int, count: int, pagination: Optional[Pagination], cursor: Optional[str] = None, operation: str = "index"
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"total": total, "count": count}
    if pagination is not None:
        if pagination.mode == PaginationMode.OFFSET:
            meta["page"] = {
                "current": pagination.number,
                "size": pagination.size,
                "total": total_pages(total, pagination.size),
            }
        else:
            meta["page"] = {
                "size": pagination.size,
                "total": total_pages(total, pagination.size),
                "cursor": pagination.cursor or None,
                "next": cursor,
            }
    meta.update(operation_meta(operation))
    return meta


def _url(path: str, items: Iterable[Tuple[str, str]], page: Dict[str, Any]) -> str:
    query = [(key, value) for key, value in items if not PAGE_RE.match(key)]
    query.extend((f"page[{key}]", "" if value is None else str(value)) for key, value in page.items())
    return f"{path}?{urlencode(query, safe='[],')}"


def pagination_links(
    path: str,
    items: Iterable[Tuple[str, str]],
    pagination: Pagination,
    total: int,
    cursor: Optional[str] = None,
) -> Dict[str, Optional[str]]:
    """
    self/first/last/prev/next links, the query is copied with only the page[...] parameters replaced

    :param path: url path of the collection
    :param items: (key, value) pairs of the request query string
    :param pagination: pagination of the request
    :param total: total number of records matching the filters
    :param cursor: cursor of the next page (cursor mode)
    """
    items = list(items)
    size = pagination.size
    if pagination.mode == PaginationMode.OFFSET:
        number = int(pagination.number or 1)
        last = total_pages(total, size)
        return {
            "self": _url(path, items, {"number": number, "size": size}),
            "first": _url(path, items, {"number": 1, "size": size}),
            "last": _url(path, items, {"number": last, "size": size}),
            "prev": _url(path, items, {"number": number - 1, "size": size}) if number > 1 else None,
            "next": _url(path, items, {"number": number + 1, "size": size}) if number < last else None,
        }
    return {
        "self": _url(path, items, {"cursor": pagination.cursor or "", "size": size}),
        "first": _url(path, items, {"cursor": "", "size": size}),
        "last": None,
        "prev": None,
        "next": _url(path, items, {"cursor": cursor, "size": size}) if cursor else None,
    }
