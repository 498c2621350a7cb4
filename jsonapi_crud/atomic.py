# -*- coding: utf-8 -*-
"""
JSON:API atomic operations

    POST /users/atomic
    {
        "atomic:operations": [
            {"op": "add", "data": {"type": "users", "attributes": {"name": "bob"}}},
            {"op": "update", "ref": {"type": "posts", "id": "3"}, "data": {"attributes": {"title": "hi"}}},
            {"op": "remove", "ref": {"type": "posts", "id": "4"}}
        ]
    }

All operations are executed in one transaction of the database of the route:
the first failing operation rolls back the preceding ones. The error source
points to the failing operation ("/atomic:operations/1/...").
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

import jsonapi_crud
from .engine import DataEngine
from .errors import JsonapiError, ValidationError, map_exception
from .jsonapi_types import AtomicOperation, AtomicRequest
from .schema import CrudSchema
from .serializer import TransformOptions

if TYPE_CHECKING:  # pragma: no cover
    from .crud import JsonapiCrud

OPERATIONS_POINTER = "/atomic:operations"

# op => action that has to be enabled on the target
_OP_ACTIONS = {"add": "create", "update": "update", "remove": "destroy"}


def _prefix_sources(error: JsonapiError, index: int) -> JsonapiError:
    prefix = f"{OPERATIONS_POINTER}/{index}"
    for item in error.errors:
        source = dict(item.source or {})
        if "parameter" in source:
            continue
        source["pointer"] = prefix + source.get("pointer", "")
        item.source = source
    return error


class AtomicExecutor:
    """
    :param crud: the JsonapiCrud instance whose registered schemas are the operation targets
    """

    def __init__(self, crud: "JsonapiCrud") -> None:
        self.crud = crud

    @staticmethod
    def parse(payload: Any) -> AtomicRequest:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid atomic operations payload", code="INVALID_ATOMIC", source={"pointer": ""})
        try:
            return AtomicRequest.model_validate(payload)
        except PydanticValidationError as exc:
            raise map_exception(exc, pointer_prefix="") from exc

    def _target(self, schema: CrudSchema, operation: AtomicOperation) -> CrudSchema:
        resource_type: Optional[str] = None
        if operation.ref is not None:
            resource_type = operation.ref.type
        elif isinstance(operation.data, dict):
            resource_type = operation.data.get("type")
        if not resource_type:
            raise ValidationError("Operation target type is missing", code="MISSING_TYPE", source={"pointer": ""})
        target = self.crud.registry.by_type(resource_type, schema.database)
        if target is None:
            raise ValidationError(f"Unknown resource type '{resource_type}'", code="INVALID_TYPE", source={"pointer": ""})
        action = _OP_ACTIONS[operation.op]
        if operation.ref is not None and operation.ref.relationship:
            action = "relationships"
        if not target.enabled(action):
            raise JsonapiError(
                f"'{operation.op}' is not allowed on {target.resource_type}", status_code=405, code="OPERATION_NOT_ALLOWED"
            )
        return target

    def _resource(self, target: CrudSchema, record: Dict[str, Any]) -> Dict[str, Any]:
        options = TransformOptions(base_url=self.crud.collection_url(target), include_merge=target.include_merge)
        return self.crud.transformer.resource(record, target.descriptor, options)

    @staticmethod
    def _ref_id(target: CrudSchema, operation: AtomicOperation) -> Any:
        ref_id = operation.ref.id if operation.ref is not None else None
        if ref_id is None and isinstance(operation.data, dict):
            ref_id = operation.data.get("id")
        if ref_id is None:
            raise ValidationError("Operation requires 'ref.id'", code="MISSING_ID", source={"pointer": "/ref/id"})
        return target.descriptor.parse_id(ref_id)

    async def execute_one(self, schema: CrudSchema, engine: DataEngine, operation: AtomicOperation, request: Any) -> Any:
        """
        :return: {"data": resource} for add/update, None for remove
        """
        target = self._target(schema, operation)
        relationship = operation.ref.relationship if operation.ref is not None else None

        if relationship:
            pk = self._ref_id(target, operation)
            verb = "set" if operation.op == "update" else ("connect" if operation.op == "add" else "disconnect")
            await self.crud.perform_relationship(target, engine, pk, relationship, verb, operation.data)
            return None

        if operation.op == "add":
            if not isinstance(operation.data, dict):
                raise ValidationError("'add' requires a resource object", source={"pointer": "/data"})
            record = await self.crud.perform_create(target, engine, operation.data, request)
            return {"data": self._resource(target, record)}

        pk = self._ref_id(target, operation)

        if operation.op == "update":
            if not isinstance(operation.data, dict):
                raise ValidationError("'update' requires a resource object", source={"pointer": "/data"})
            record = await self.crud.perform_update(target, engine, pk, operation.data, request)
            return {"data": self._resource(target, record)}

        await self.crud.perform_destroy(target, engine, pk, request)
        return None

    async def execute(self, schema: CrudSchema, payload: Any, request: Any = None) -> List[Any]:
        """
        Execute the operations of `payload` all-or-nothing

        :param schema: schema of the route, its database is used
        :param payload: request body
        :return: the "atomic:results" list
        """
        atomic_request = self.parse(payload)
        engine = self.crud.engine_for(schema.database)
        results: List[Any] = []
        async with engine.transaction() as tx:
            for index, operation in enumerate(atomic_request.operations):
                try:
                    results.append(await self.execute_one(schema, tx, operation, request))
                except Exception as exc:
                    jsonapi_crud.log.info(f"atomic operation {index} failed, rolling back {len(results)} operation(s)")
                    error = _prefix_sources(map_exception(exc), index)
                    if error is exc:
                        raise
                    raise error from exc
        return results
