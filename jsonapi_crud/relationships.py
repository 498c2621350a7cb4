# -*- coding: utf-8 -*-
"""
Relationship payload resolution

Converts the "relationships" member of a create/update document to the
relation mutation verbs of the data engine:

    create: {"author": {"data": {"type": "users", "id": "1"}}}
        =>  {"author": {"connect": {"id": 1}}}
    update: {"tags": {"data": [{"type": "tags", "id": "1"}, {"type": "tags", "id": "2"}]}}
        =>  {"tags": {"set": [{"id": 1}, {"id": 2}]}}
    update: {"tags": {"data": [{"type": "tags", "id": "1"}, {"type": "tags", "attributes": {"name": "new"}}]}}
        =>  {"tags": {"connect": [{"id": 1}], "create": [{"name": "new"}]}}
    update: {"author": {"data": null}}
        =>  {"author": {"disconnect": True}}

Connect targets are keyed by the primary key of the target model, whatever its name.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import jsonapi_crud
from .attr_parse import parse_attr
from .config import get_config
from .errors import JsonapiError, UnprocessableError, ValidationError
from .model import ModelDescriptor, RelationDescriptor
from .schema import SchemaRegistry


class ResolveMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"


def _pointer(rel_name: str, index: Optional[int] = None) -> Dict[str, str]:
    pointer = f"/data/relationships/{rel_name}/data"
    if index is not None:
        pointer += f"/{index}"
    return {"pointer": pointer}


def unwrap_linkage(rel_name: str, value: Any) -> Any:
    """
    Accept {"data": ...} (JSON:API) as well as the bare linkage
    """
    if isinstance(value, dict) and "data" in value:
        return value["data"]
    if value is None or isinstance(value, (dict, list)):
        return value
    raise ValidationError(f"Invalid payload for relationship '{rel_name}'", source=_pointer(rel_name))


class RelationshipResolver:
    """
    :param registry: registry used for the type checks and the target model descriptors
    :param engine: data engine used for the best-effort existence check (optional)
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        engine: Any = None,
        verify: Optional[bool] = None,
        strict: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.verify = bool(get_config("VERIFY_RELATIONSHIPS")) if verify is None else verify
        self.strict = bool(get_config("STRICT_RELATIONSHIPS")) if strict is None else strict

    def _check_type(self, rel: RelationDescriptor, item: Dict[str, Any], index: Optional[int]) -> None:
        item_type = item.get("type")
        if item_type is None:
            return
        if not self.registry.type_matches(item_type, rel.target_class):
            expected = self.registry.describe(rel.target_class).resource_type
            raise UnprocessableError(
                f"Invalid type '{item_type}' for relationship '{rel.name}', expected '{expected}'",
                code="INVALID_RELATIONSHIP_TYPE",
                source=_pointer(rel.name, index),
            )

    def identifier_where(self, rel: RelationDescriptor, item: Any, index: Optional[int] = None) -> Dict[str, Any]:
        """
        {"type": "users", "id": "1"} => {"id": 1} (keyed by the target primary key)
        """
        if not isinstance(item, dict) or item.get("id") is None:
            raise ValidationError(
                f"Resource identifier of relationship '{rel.name}' requires an id", source=_pointer(rel.name, index)
            )
        self._check_type(rel, item, index)
        target = self.registry.describe(rel.target_class)
        return {target.primary_key: target.parse_id(item["id"])}

    def _nested_attributes(self, rel: RelationDescriptor, attributes: Any, index: Optional[int]) -> Dict[str, Any]:
        if not isinstance(attributes, dict):
            raise ValidationError(f"Invalid attributes for relationship '{rel.name}'", source=_pointer(rel.name, index))
        target = self.registry.describe(rel.target_class)
        result = {}
        for name, value in attributes.items():
            if name not in target.attribute_names:
                jsonapi_crud.log.warning(f"Ignoring unknown attribute '{name}' of nested {target.resource_type}")
                continue
            try:
                result[name] = parse_attr(target.column(name), value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"Invalid value for '{name}': {exc}",
                    source={"pointer": _pointer(rel.name, index)["pointer"] + f"/attributes/{name}"},
                )
        return result

    def partition(self, rel: RelationDescriptor, items: List[Any]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Split linkage items in connect targets (with an id) and nested creates (with attributes only)
        """
        connect: List[Dict[str, Any]] = []
        create: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            position = index if len(items) > 1 or rel.to_many else None
            if not isinstance(item, dict):
                raise ValidationError(f"Invalid item in relationship '{rel.name}'", source=_pointer(rel.name, position))
            if item.get("id") is not None:
                connect.append(self.identifier_where(rel, item, position))
            elif item.get("attributes") is not None:
                self._check_type(rel, item, position)
                create.append(self._nested_attributes(rel, item["attributes"], position))
            else:
                raise UnprocessableError(
                    f"Items of relationship '{rel.name}' require an 'id' or 'attributes'",
                    code="INVALID_RELATIONSHIP",
                    source=_pointer(rel.name, position),
                )
        return connect, create

    async def _verify(self, rel: RelationDescriptor, connect: List[Dict[str, Any]]) -> None:
        """
        Best-effort existence check of the connect targets, the foreign key
        constraints (and the engine connect) are authoritative
        """
        if not self.verify or self.engine is None or not connect:
            return
        client = self.engine.model(rel.target_class)
        for where in connect:
            try:
                found = await client.find_unique(where)
            except JsonapiError:
                raise
            except Exception as exc:
                jsonapi_crud.log.warning(f"Existence check of {rel.target} {where} failed: {exc}")
                continue
            if found is not None:
                continue
            if self.strict:
                raise UnprocessableError(
                    f"Related {rel.target} {where} of relationship '{rel.name}' does not exist",
                    code="RELATED_NOT_FOUND",
                    source=_pointer(rel.name),
                )
            jsonapi_crud.log.warning(f"Related {rel.target} {where} of relationship '{rel.name}' does not exist")

    async def resolve_one(self, rel: RelationDescriptor, value: Any, mode: ResolveMode) -> Optional[Dict[str, Any]]:
        """
        :return: the mutation of one relation or None when the relation is left untouched
        """
        linkage = unwrap_linkage(rel.name, value)
        if linkage is None or linkage == []:
            if mode == ResolveMode.CREATE:
                # nothing attached yet
                return None
            if rel.to_many:
                return {"set": []}
            if linkage == []:
                raise ValidationError(f"Relationship '{rel.name}' is to-one", source=_pointer(rel.name))
            return {"disconnect": True}

        if isinstance(linkage, list):
            if not rel.to_many:
                raise ValidationError(
                    f"Relationship '{rel.name}' is to-one, a list was given", source=_pointer(rel.name)
                )
            items = linkage
        else:
            items = [linkage]

        connect, create = self.partition(rel, items)
        await self._verify(rel, connect)

        if not rel.to_many:
            if connect:
                return {"connect": connect[0]}
            return {"create": create[0]}

        if mode == ResolveMode.UPDATE and connect and not create:
            # a connect-only update declares the complete relationship
            return {"set": connect}
        mutation: Dict[str, Any] = {}
        if connect:
            mutation["connect"] = connect
        if create:
            mutation["create"] = create
        return mutation

    async def resolve(
        self, descriptor: ModelDescriptor, relationships: Optional[Dict[str, Any]], mode: ResolveMode
    ) -> Dict[str, Any]:
        """
        :param descriptor: descriptor of the model being created/updated
        :param relationships: the "relationships" member of the request data
        :param mode: create or update
        :return: data to merge into the attributes passed to the data engine
        """
        if not relationships:
            return {}
        if not isinstance(relationships, dict):
            raise ValidationError("Invalid relationships object", source={"pointer": "/data/relationships"})
        result: Dict[str, Any] = {}
        for rel_name, value in relationships.items():
            rel = descriptor.relation(rel_name)
            if rel is None:
                jsonapi_crud.log.warning(f"Ignoring unknown relationship '{rel_name}' of {descriptor.resource_type}")
                continue
            mutation = await self.resolve_one(rel, value, ResolveMode(mode))
            if mutation is not None:
                result[rel_name] = mutation
        return result
