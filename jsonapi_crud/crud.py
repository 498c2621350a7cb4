# -*- coding: utf-8 -*-
"""
JSON:API CRUD endpoints for SQLAlchemy models

    app = FastAPI()
    databases = DatabaseManager()
    databases.add("default", "sqlite+aiosqlite:///app.db")
    crud = JsonapiCrud(app, databases)
    crud.expose(User, soft_delete="deleted_at", hooks={"before_create": set_owner})

exposes, relative to the path of the model ("/users"):

    GET     /                               index (page[size] + page[number] or page[cursor] required)
    GET     /{id}                           show
    POST    /                               create
    PUT     /{id}, PATCH /{id}              update
    DELETE  /{id}                           destroy (soft delete when configured)
    POST    /atomic                         atomic operations
    POST    /{id}/recover                   recover a soft-deleted record
    GET     /{id}/{rel}                     related resources
    GET     /{id}/relationships/{rel}       relationship linkage
    POST, PATCH, DELETE /{id}/relationships/{rel}
"""

import asyncio
import datetime
from http import HTTPStatus
from typing import Any, Dict, Iterable, List, NoReturn, Optional, Sequence, Type, Union

from fastapi import APIRouter, Body, Depends as FastAPIDepends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.params import Depends as DependsParam
from starlette.exceptions import HTTPException as StarletteHTTPException

import jsonapi_crud
from .atomic import AtomicExecutor
from .attr_parse import parse_attr
from .builder import build_include_tree, build_query_options, exclude_deleted, only_deleted
from .crud_init import CRUD, dict_merge
from .database import DEFAULT_DATABASE, DatabaseManager
from .engine import DataEngine, Record
from .errors import (
    ConflictError,
    GoneError,
    JsonapiError,
    NotFoundError,
    RecordNotFound,
    UnsupportedMediaTypeError,
    ValidationError,
    error_document,
    map_exception,
)
from .model import ModelDescriptor, RelationDescriptor, describe_model
from .query import QueryDescriptor, parse_query, query_items
from .relationships import RelationshipResolver, ResolveMode
from .responses import JSONAPIResponse
from .schema import ACTIONS, CrudSchema, EmptyValues, SchemaRegistry
from .serializer import TransformOptions, ResponseTransformer, index_meta, next_cursor, operation_meta, pagination_links

JSONAPI_MEDIA_TYPE = CRUD.JSONAPI_MEDIA_TYPE


async def _gather_or_cancel(*aws: Any) -> List[Any]:
    """
    asyncio.gather, the other awaitables are cancelled and awaited when one fails
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _json_pointer_from_loc(loc: Sequence[Union[str, int]]) -> Optional[str]:
    if not loc or str(loc[0]) != "body" or len(loc) < 2:
        return None
    return "/" + "/".join(str(segment).replace("~", "~0").replace("/", "~1") for segment in loc[1:])


def _validation_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    for raw_error in exc.errors():
        loc = tuple(raw_error.get("loc", ()))
        error_item: Dict[str, Any] = {
            "code": "REQUEST_VALIDATION_ERROR",
            "status": str(HTTPStatus.UNPROCESSABLE_ENTITY.value),
            "title": HTTPStatus.UNPROCESSABLE_ENTITY.phrase,
            "detail": str(raw_error.get("msg", "Validation error")),
        }
        pointer = _json_pointer_from_loc(loc)
        if pointer:
            error_item["source"] = {"pointer": pointer}
        elif loc and str(loc[0]) == "query" and len(loc) > 1:
            error_item["source"] = {"parameter": str(loc[1])}
        result.append(error_item)
    return result


def install_jsonapi_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(JsonapiError)
    async def _jsonapi_error_handler(_request: Request, exc: JsonapiError):
        return JSONAPIResponse(status_code=exc.status_code, content=error_document(exc))

    @app.exception_handler(RequestValidationError)
    async def _jsonapi_validation_error_handler(_request: Request, exc: RequestValidationError):
        payload = {"jsonapi": {"version": CRUD.JSONAPI_VERSION}, "errors": _validation_errors(exc)}
        return JSONAPIResponse(status_code=HTTPStatus.UNPROCESSABLE_ENTITY.value, content=payload)

    @app.exception_handler(StarletteHTTPException)
    async def _jsonapi_starlette_http_error_handler(_request: Request, exc: StarletteHTTPException):
        status_code = int(exc.status_code)
        try:
            title = HTTPStatus(status_code).phrase
        except ValueError:
            title = "HTTP Error"
        error = {
            "code": title.upper().replace(" ", "_"),
            "status": str(status_code),
            "title": title,
            "detail": str(exc.detail),
        }
        payload = {"jsonapi": {"version": CRUD.JSONAPI_VERSION}, "errors": [error]}
        return JSONAPIResponse(status_code=status_code, content=payload, headers=getattr(exc, "headers", None))


class JsonapiCrud:
    """
    :param app: FastAPI application the routes are added to
    :param databases: connection manager providing the session factories
    :param prefix: url prefix of all routes
    :param dependencies: FastAPI dependencies applied to every route
    :param kwargs: configuration overrides, see jsonapi_crud.CRUD
    """

    def __init__(
        self,
        app: FastAPI,
        databases: DatabaseManager,
        prefix: str = "",
        dependencies: Optional[List[Any]] = None,
        **kwargs: Any,
    ) -> None:
        CRUD.configure(**kwargs)
        self.app = app
        self.databases = databases
        self.prefix = prefix.rstrip("/")
        self.registry = SchemaRegistry()
        self.transformer = ResponseTransformer(self.registry.describe, self._base_url_for)
        self.atomic = AtomicExecutor(self)
        self.default_dependencies = self._normalize_dependencies(dependencies)
        self._exposed: Dict[Any, str] = {}
        install_jsonapi_exception_handlers(app)

    #
    # registration
    #
    @staticmethod
    def _with_slash_parity(path: str) -> List[str]:
        if path.endswith("/"):
            path = path.rstrip("/")
        return [path, path + "/"] if path else ["/"]

    def _normalize_dependencies(self, dependencies: Optional[Iterable[Any]]) -> List[DependsParam]:
        if not dependencies:
            return []
        normalized: List[DependsParam] = []
        for dependency in dependencies:
            if isinstance(dependency, DependsParam):
                normalized.append(dependency)
                continue
            if callable(dependency):
                normalized.append(FastAPIDepends(dependency))
                continue
            raise TypeError("dependencies items must be callables or fastapi.Depends(...) instances")
        return normalized

    def _add_route_with_slash_parity(
        self,
        router: APIRouter,
        path: str,
        endpoint: Any,
        methods: List[str],
        summary: str,
        operation_id: str,
        status_code: Optional[int] = None,
    ) -> None:
        for method in methods:
            method_name = str(method).upper()
            for idx, variant in enumerate(self._with_slash_parity(path)):
                router.add_api_route(
                    variant,
                    endpoint,
                    methods=[method_name],
                    response_class=JSONAPIResponse,
                    summary=summary,
                    operation_id=f"{operation_id}_{method_name.lower()}" if idx == 0 else None,
                    include_in_schema=idx == 0,
                    status_code=status_code,
                )

    def expose(
        self,
        Model: Type[Any],
        database: str = DEFAULT_DATABASE,
        resource_type: Optional[str] = None,
        path: Optional[str] = None,
        actions: Optional[Iterable[str]] = None,
        soft_delete: Optional[str] = None,
        hooks: Optional[Dict[str, Any]] = None,
        dependencies: Optional[List[Any]] = None,
        validation: Optional[Dict[str, Any]] = None,
        include_merge: bool = False,
        empty_values: Union[EmptyValues, str] = EmptyValues.OMIT,
    ) -> CrudSchema:
        """
        Register the CRUD routes of a SQLAlchemy model

        :param Model: declarative class
        :param database: name of the database in the DatabaseManager
        :param resource_type: JSON:API type, defaults to the table name
        :param path: url path of the collection, defaults to "/<resource_type>"
        :param actions: enabled actions, defaults to all actions
        :param soft_delete: name of the nullable timestamp column marking deleted records
        :param hooks: before_*/after_* hooks
        :param dependencies: FastAPI dependencies of the routes of this model
        :param validation: pydantic models validating "create" and "update" attributes
        :param include_merge: merge included records in the attributes instead of "included"
        :param empty_values: "omit" strips [] and {} from update attributes, "apply" persists them
        :return: the registered CrudSchema
        """
        descriptor = describe_model(Model, resource_type=resource_type, soft_delete_field=soft_delete)
        schema = CrudSchema(
            descriptor=descriptor,
            database=database,
            path="/" + (path or descriptor.resource_type).strip("/"),
            actions=frozenset(actions) if actions is not None else ACTIONS,
            hooks=dict(hooks or {}),
            dependencies=tuple(self._normalize_dependencies(dependencies)),
            validation=dict(validation or {}),
            include_merge=include_merge,
            empty_values=EmptyValues(empty_values),
        )
        self.registry.register(schema)

        key = (database, Model)
        if key in self._exposed:
            # routes look up the registration per request, the new schema is used from now on
            if self._exposed[key] != schema.path:
                jsonapi_crud.log.warning(f"{Model.__name__} is already exposed on {self._exposed[key]}, ignoring new path")
            return schema
        self._exposed[key] = schema.path
        self._register_routes(schema)
        return schema

    def _register_routes(self, schema: CrudSchema) -> None:
        Model = schema.Model
        database = schema.database
        tag = schema.resource_type
        router = APIRouter(
            prefix=self.prefix,
            tags=[tag],
            dependencies=self.default_dependencies + list(schema.dependencies),
        )
        collection_path = schema.path
        instance_path = collection_path + "/{object_id}"

        if schema.enabled("index"):
            self._add_route_with_slash_parity(router, collection_path, self._index(Model, database), ["GET"], f"List {tag}", f"index_{tag}")
        if schema.enabled("show"):
            self._add_route_with_slash_parity(router, instance_path, self._show(Model, database), ["GET"], f"Get {tag} by id", f"show_{tag}")
        if schema.enabled("create"):
            self._add_route_with_slash_parity(
                router, collection_path, self._create(Model, database), ["POST"], f"Create {tag}", f"create_{tag}", status_code=201
            )
        if schema.enabled("update"):
            self._add_route_with_slash_parity(
                router, instance_path, self._update(Model, database), ["PUT", "PATCH"], f"Update {tag}", f"update_{tag}"
            )
        if schema.enabled("destroy"):
            self._add_route_with_slash_parity(router, instance_path, self._destroy(Model, database), ["DELETE"], f"Delete {tag}", f"destroy_{tag}")
        if schema.enabled("atomic"):
            self._add_route_with_slash_parity(
                router, collection_path + "/atomic", self._atomic(Model, database), ["POST"], "Atomic operations", f"atomic_{tag}"
            )
        if schema.enabled("recover"):
            self._add_route_with_slash_parity(
                router, instance_path + "/recover", self._recover(Model, database), ["POST"], f"Recover {tag}", f"recover_{tag}"
            )
        if schema.enabled("relationships"):
            for rel in schema.descriptor.relations:
                self._register_relationship_routes(router, schema, rel, instance_path)

        self.app.include_router(router)
        self.app.openapi_schema = None

    def _register_relationship_routes(self, router: APIRouter, schema: CrudSchema, rel: RelationDescriptor, instance_path: str) -> None:
        Model = schema.Model
        database = schema.database
        tag = schema.resource_type
        self._add_route_with_slash_parity(
            router, f"{instance_path}/{rel.name}", self._get_related(Model, database, rel.name), ["GET"],
            f"Get {tag} {rel.name}", f"related_{tag}_{rel.name}",
        )
        linkage_path = f"{instance_path}/relationships/{rel.name}"
        self._add_route_with_slash_parity(
            router, linkage_path, self._get_relationship(Model, database, rel.name), ["GET"],
            f"Get {tag} {rel.name} relationship", f"relationship_{tag}_{rel.name}",
        )
        for method, verb in (("POST", "connect"), ("PATCH", "set"), ("DELETE", "disconnect")):
            self._add_route_with_slash_parity(
                router, linkage_path, self._mutate_relationship(Model, database, rel.name, verb), [method],
                f"{method.capitalize()} {tag} {rel.name} relationship", f"{verb}_{tag}_{rel.name}",
            )

    #
    # helpers
    #
    def schema_for(self, Model: Type[Any], database: str = DEFAULT_DATABASE) -> CrudSchema:
        schema = self.registry.get(Model, database)
        if schema is None:
            raise NotFoundError(f"{Model.__name__} is not exposed")
        return schema

    def engine_for(self, database: str = DEFAULT_DATABASE) -> DataEngine:
        return DataEngine(self.databases.get(database))

    def collection_url(self, schema: CrudSchema) -> str:
        return self.prefix + schema.path

    def _base_url_for(self, descriptor: ModelDescriptor) -> str:
        for schema in self.registry:
            if schema.Model is descriptor.model:
                return self.collection_url(schema)
        return f"{self.prefix}/{descriptor.resource_type}"

    @staticmethod
    def _handle_exception(exc: Exception) -> NoReturn:
        error = map_exception(exc)
        if error is exc:
            raise error
        raise error from exc

    @staticmethod
    def _require_data(payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict) or "data" not in payload:
            raise ValidationError("Invalid JSON:API payload (missing data object)", code="MISSING_DATA", source={"pointer": "/data"})
        data = payload["data"]
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON:API payload (data must be a resource object)", source={"pointer": "/data"})
        return data

    def _require_type(self, schema: CrudSchema, data: Dict[str, Any], required: bool = True) -> None:
        resource_type = data.get("type")
        if resource_type is None and not required:
            return
        if not resource_type:
            raise ValidationError("Missing resource type", code="MISSING_TYPE", source={"pointer": "/data/type"})
        if not self.registry.type_matches(resource_type, schema.Model):
            raise ValidationError(
                f"Invalid type '{resource_type}': expected {schema.resource_type}",
                code="INVALID_TYPE",
                source={"pointer": "/data/type"},
            )

    @staticmethod
    def _require_media_type(request: Request) -> None:
        """
        JSON:API media type, only the ext and profile media type parameters are allowed
        """
        content_type = request.headers.get("content-type", "")
        parts = [part.strip() for part in content_type.split(";")]
        params = [part.split("=", 1)[0].strip().lower() for part in parts[1:] if part]
        if parts[0].lower() != JSONAPI_MEDIA_TYPE or any(param not in ("ext", "profile") for param in params):
            raise UnsupportedMediaTypeError(f"Content-Type must be '{JSONAPI_MEDIA_TYPE}', got '{content_type}'")

    @staticmethod
    def parse_attributes(descriptor: ModelDescriptor, attributes: Any) -> Dict[str, Any]:
        """
        Parse the attribute values to the python types of the columns, undeclared attributes are ignored
        """
        if attributes is None:
            return {}
        if not isinstance(attributes, dict):
            raise ValidationError("Invalid attributes object", source={"pointer": "/data/attributes"})
        parsed: Dict[str, Any] = {}
        for name, value in attributes.items():
            if name not in descriptor.attribute_names:
                jsonapi_crud.log.warning(f"Ignoring unknown attribute '{name}' of {descriptor.resource_type}")
                continue
            try:
                parsed[name] = parse_attr(descriptor.column(name), value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"Invalid value for attribute '{name}': {exc}",
                    code="INVALID_ATTRIBUTE",
                    source={"pointer": f"/data/attributes/{name}"},
                )
        return parsed

    @staticmethod
    def clean_empty_values(attributes: Dict[str, Any], policy: EmptyValues) -> Dict[str, Any]:
        """
        With the "omit" policy, empty lists and dicts mean "not supplied" and are stripped
        """
        if policy == EmptyValues.APPLY:
            return dict(attributes)
        return {key: value for key, value in attributes.items() if not (isinstance(value, (list, dict)) and not value)}

    @staticmethod
    def _now(descriptor: ModelDescriptor) -> datetime.datetime:
        now = datetime.datetime.now(datetime.timezone.utc)
        column_type = descriptor.column(str(descriptor.soft_delete_field)).type
        if getattr(column_type, "timezone", False):
            return now
        return now.replace(tzinfo=None)

    def _read_query(self, request: Request, descriptor: ModelDescriptor) -> QueryDescriptor:
        return parse_query(request.query_params, descriptor, paginate=False, describe=self.registry.describe)

    def _options(self, schema: CrudSchema, query: QueryDescriptor, **kwargs: Any) -> TransformOptions:
        return TransformOptions(
            base_url=self.collection_url(schema),
            fields=query.fields,
            include=build_include_tree(schema.descriptor, query.includes, self.registry.describe),
            include_merge=schema.include_merge,
            **kwargs,
        )

    @staticmethod
    def _linkage_include(descriptor: ModelDescriptor, include: Dict[str, Any]) -> Dict[str, Any]:
        """
        Load tree of the response of a mutation: the linkage of every relation, plus the requested includes
        """
        tree: Dict[str, Any] = {rel.name: {} for rel in descriptor.relations}
        dict_merge(tree, include)
        return tree

    def _resource_url(self, schema: CrudSchema, record: Record) -> str:
        return f"{self.collection_url(schema)}/{record[schema.descriptor.primary_key]}"

    async def _raise_missing(self, schema: CrudSchema, engine: DataEngine, pk: Any, include_deleted: bool = False) -> NoReturn:
        """
        404, or 410 when the record exists but has been soft-deleted
        """
        descriptor = schema.descriptor
        where = {descriptor.primary_key: pk}
        if descriptor.soft_delete_field and not include_deleted:
            deleted = await engine.model(schema.Model).find_first(only_deleted(where, descriptor.soft_delete_field))
            if deleted is not None:
                raise GoneError(f"{descriptor.resource_type} '{pk}' has been deleted")
        raise NotFoundError(f"{descriptor.resource_type} '{pk}' not found")

    #
    # per operation logic, shared by the routes and the atomic operations
    #
    async def perform_create(
        self, schema: CrudSchema, engine: DataEngine, data: Dict[str, Any], request: Any, include: Optional[Dict[str, Any]] = None
    ) -> Record:
        descriptor = schema.descriptor
        self._require_type(schema, data)
        attributes = schema.validate_attributes("create", data.get("attributes") or {})
        attributes = self.parse_attributes(descriptor, attributes)
        if data.get("id") is not None:
            # client generated id
            attributes[descriptor.primary_key] = descriptor.parse_id(data["id"])
        resolver = RelationshipResolver(self.registry, engine)
        relationships = await resolver.resolve(descriptor, data.get("relationships"), ResolveMode.CREATE)
        create_data = await schema.run_hook("before_create", {**attributes, **relationships}, request)
        record = await engine.model(schema.Model).create(create_data, include)
        return await schema.run_hook("after_create", record, request)

    async def perform_update(
        self,
        schema: CrudSchema,
        engine: DataEngine,
        pk: Any,
        data: Dict[str, Any],
        request: Any,
        include: Optional[Dict[str, Any]] = None,
    ) -> Record:
        descriptor = schema.descriptor
        self._require_type(schema, data, required=False)
        if data.get("id") is not None and descriptor.parse_id(data["id"]) != pk:
            raise ValidationError(
                f"Body id '{data['id']}' does not match path id '{pk}'", code="ID_MISMATCH", source={"pointer": "/data/id"}
            )
        attributes = schema.validate_attributes("update", data.get("attributes") or {})
        attributes = self.clean_empty_values(self.parse_attributes(descriptor, attributes), schema.empty_values)
        resolver = RelationshipResolver(self.registry, engine)
        relationships = await resolver.resolve(descriptor, data.get("relationships"), ResolveMode.UPDATE)
        update_data = await schema.run_hook("before_update", {**attributes, **relationships}, request)
        where: Dict[str, Any] = {descriptor.primary_key: pk}
        if descriptor.soft_delete_field:
            where = exclude_deleted(where, descriptor.soft_delete_field)
        try:
            record = await engine.model(schema.Model).update(where, update_data, include)
        except RecordNotFound:
            await self._raise_missing(schema, engine, pk)
        return await schema.run_hook("after_update", record, request)

    async def perform_destroy(self, schema: CrudSchema, engine: DataEngine, pk: Any, request: Any) -> Optional[Record]:
        """
        :return: the soft-deleted record, None after a hard delete
        """
        descriptor = schema.descriptor
        client = engine.model(schema.Model)
        where = await schema.run_hook("before_destroy", {descriptor.primary_key: pk}, request)
        if descriptor.soft_delete_field:
            try:
                record = await client.update(
                    exclude_deleted(where, descriptor.soft_delete_field), {descriptor.soft_delete_field: self._now(descriptor)}
                )
            except RecordNotFound:
                await self._raise_missing(schema, engine, pk)
            await schema.run_hook("after_destroy", record, request)
            return record

        if await client.find_first(where) is None:
            raise NotFoundError(f"{descriptor.resource_type} '{pk}' not found")
        record = await client.delete(where)
        await schema.run_hook("after_destroy", record, request)
        return None

    async def perform_recover(self, schema: CrudSchema, engine: DataEngine, pk: Any, request: Any) -> Record:
        descriptor = schema.descriptor
        soft_delete_field = str(descriptor.soft_delete_field)
        client = engine.model(schema.Model)
        where = await schema.run_hook("before_recover", {descriptor.primary_key: pk}, request)
        try:
            record = await client.update(only_deleted(where, soft_delete_field), {soft_delete_field: None})
        except RecordNotFound:
            if await client.find_first(where) is not None:
                raise ConflictError(f"{descriptor.resource_type} '{pk}' is already active", code="ALREADY_ACTIVE")
            raise NotFoundError(f"{descriptor.resource_type} '{pk}' not found")
        return await schema.run_hook("after_recover", record, request)

    async def perform_relationship(
        self, schema: CrudSchema, engine: DataEngine, pk: Any, rel_name: str, verb: str, linkage: Any
    ) -> Record:
        """
        Connect (POST), replace (PATCH) or disconnect (DELETE) relationship members

        :param verb: connect, set or disconnect
        :param linkage: the "data" member of the request
        :return: the parent record with the relation loaded
        """
        descriptor = schema.descriptor
        rel = descriptor.relation(rel_name)
        if rel is None:
            raise NotFoundError(f"Unknown relationship '{rel_name}'")
        resolver = RelationshipResolver(self.registry, engine)
        client = engine.model(schema.Model)
        where: Dict[str, Any] = {descriptor.primary_key: pk}
        if descriptor.soft_delete_field:
            where = exclude_deleted(where, descriptor.soft_delete_field)

        if rel.to_many:
            if not isinstance(linkage, list):
                raise ValidationError(f"Relationship '{rel_name}' is to-many, data must be a list", source={"pointer": "/data"})
            targets = [resolver.identifier_where(rel, item, index) for index, item in enumerate(linkage)]
            mutation: Dict[str, Any] = {verb: targets}
        elif verb == "disconnect":
            if not isinstance(linkage, dict):
                raise ValidationError(f"Relationship '{rel_name}' is to-one, data must be an object", source={"pointer": "/data"})
            target = resolver.identifier_where(rel, linkage)
            current = await client.find_first(where, {rel_name: {}})
            if current is None:
                await self._raise_missing(schema, engine, pk)
            target_pk = self.registry.describe(rel.target_class).primary_key
            if current[rel_name] is None or current[rel_name][target_pk] != next(iter(target.values())):
                jsonapi_crud.log.warning(f"{rel.target} {target} is not related to {descriptor.resource_type} '{pk}'")
                return current
            mutation = {"disconnect": True}
        else:
            if linkage is not None and not isinstance(linkage, dict):
                raise ValidationError(f"Relationship '{rel_name}' is to-one, data must be an object or null", source={"pointer": "/data"})
            target = resolver.identifier_where(rel, linkage) if linkage is not None else None
            mutation = {"set": target}

        try:
            return await client.update(where, {rel_name: mutation}, {rel_name: {}})
        except RecordNotFound:
            await self._raise_missing(schema, engine, pk)

    #
    # route handlers
    #
    def _index(self, Model: Type[Any], database: str):
        async def handler(request: Request):
            try:
                schema = self.schema_for(Model, database)
                descriptor = schema.descriptor
                query = parse_query(request.query_params, descriptor, paginate=True, describe=self.registry.describe)
                options = build_query_options(descriptor, query, self.registry.describe)
                options = await schema.run_hook("before_index", options, request)
                if descriptor.soft_delete_field and not query.include_deleted:
                    options.where = exclude_deleted(options.where, descriptor.soft_delete_field)
                client = self.engine_for(database).model(Model)
                total, records = await _gather_or_cancel(client.count(**options.count_options()), client.find_many(options))
                cursor = next_cursor(records, descriptor, query.pagination)
                transform_options = self._options(
                    schema,
                    query,
                    links=pagination_links(
                        self.collection_url(schema), query_items(request.query_params), query.pagination, total, cursor
                    ),
                    meta=index_meta(total, len(records), query.pagination, cursor),
                )
                transform_options.include = options.include
                return JSONAPIResponse(content=self.transformer.document(records, descriptor, transform_options, many=True))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _show(self, Model: Type[Any], database: str):
        async def handler(object_id: str, request: Request):
            try:
                schema = self.schema_for(Model, database)
                descriptor = schema.descriptor
                pk = descriptor.parse_id(object_id)
                query = self._read_query(request, descriptor)
                transform_options = self._options(schema, query)
                find = {"where": {descriptor.primary_key: pk}, "include": transform_options.include}
                find = await schema.run_hook("before_show", find, request)
                where = find["where"]
                if descriptor.soft_delete_field and not query.include_deleted:
                    where = exclude_deleted(where, descriptor.soft_delete_field)
                engine = self.engine_for(database)
                record = await engine.model(Model).find_first(where, find.get("include"))
                if record is None:
                    await self._raise_missing(schema, engine, pk, query.include_deleted)
                transform_options.include = find.get("include") or {}
                transform_options.links = {"self": self._resource_url(schema, record)}
                transform_options.meta = operation_meta("show")
                return JSONAPIResponse(content=self.transformer.document(record, descriptor, transform_options))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _create(self, Model: Type[Any], database: str):
        async def handler(request: Request, payload: Any = Body(None, media_type=JSONAPI_MEDIA_TYPE)):
            try:
                schema = self.schema_for(Model, database)
                data = self._require_data(payload)
                query = self._read_query(request, schema.descriptor)
                transform_options = self._options(schema, query)
                load_include = self._linkage_include(schema.descriptor, transform_options.include)
                record = await self.perform_create(schema, self.engine_for(database), data, request, load_include)
                location = self._resource_url(schema, record)
                transform_options.links = {"self": location}
                transform_options.meta = operation_meta("create", 1)
                return JSONAPIResponse(
                    status_code=201,
                    headers={"Location": location},
                    content=self.transformer.document(record, schema.descriptor, transform_options),
                )
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _update(self, Model: Type[Any], database: str):
        async def handler(object_id: str, request: Request, payload: Any = Body(None, media_type=JSONAPI_MEDIA_TYPE)):
            try:
                schema = self.schema_for(Model, database)
                pk = schema.descriptor.parse_id(object_id)
                data = self._require_data(payload)
                query = self._read_query(request, schema.descriptor)
                transform_options = self._options(schema, query)
                load_include = self._linkage_include(schema.descriptor, transform_options.include)
                record = await self.perform_update(schema, self.engine_for(database), pk, data, request, load_include)
                transform_options.links = {"self": self._resource_url(schema, record)}
                transform_options.meta = operation_meta("update", 1)
                return JSONAPIResponse(content=self.transformer.document(record, schema.descriptor, transform_options))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _destroy(self, Model: Type[Any], database: str):
        async def handler(object_id: str, request: Request):
            try:
                schema = self.schema_for(Model, database)
                pk = schema.descriptor.parse_id(object_id)
                record = await self.perform_destroy(schema, self.engine_for(database), pk, request)
                if record is None:
                    return Response(status_code=204)
                transform_options = TransformOptions(
                    base_url=self.collection_url(schema), meta=operation_meta("destroy", 1, softDelete=True)
                )
                return JSONAPIResponse(content=self.transformer.document(record, schema.descriptor, transform_options))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _recover(self, Model: Type[Any], database: str):
        async def handler(object_id: str, request: Request):
            try:
                schema = self.schema_for(Model, database)
                pk = schema.descriptor.parse_id(object_id)
                record = await self.perform_recover(schema, self.engine_for(database), pk, request)
                transform_options = TransformOptions(
                    base_url=self.collection_url(schema),
                    links={"self": self._resource_url(schema, record)},
                    meta=operation_meta("recover", 1),
                )
                return JSONAPIResponse(content=self.transformer.document(record, schema.descriptor, transform_options))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _atomic(self, Model: Type[Any], database: str):
        async def handler(request: Request, payload: Any = Body(None, media_type=JSONAPI_MEDIA_TYPE)):
            try:
                schema = self.schema_for(Model, database)
                results = await self.atomic.execute(schema, payload, request)
                return JSONAPIResponse(content={"jsonapi": {"version": CRUD.JSONAPI_VERSION}, "atomic:results": results})
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    async def _load_parent(self, schema: CrudSchema, engine: DataEngine, pk: Any, include: Dict[str, Any], request: Request) -> Record:
        descriptor = schema.descriptor
        include_deleted = self._read_query(request, descriptor).include_deleted
        where: Dict[str, Any] = {descriptor.primary_key: pk}
        if descriptor.soft_delete_field and not include_deleted:
            where = exclude_deleted(where, descriptor.soft_delete_field)
        parent = await engine.model(schema.Model).find_first(where, include)
        if parent is None:
            await self._raise_missing(schema, engine, pk, include_deleted)
        return parent

    def _get_related(self, Model: Type[Any], database: str, rel_name: str):
        async def handler(object_id: str, request: Request):
            try:
                schema = self.schema_for(Model, database)
                rel = schema.descriptor.relation(rel_name)
                if rel is None:
                    raise NotFoundError(f"Unknown relationship '{rel_name}'")
                pk = schema.descriptor.parse_id(object_id)
                target = self.registry.describe(rel.target_class)
                query = parse_query(request.query_params, target, paginate=False, describe=self.registry.describe)
                include = build_include_tree(target, query.includes, self.registry.describe)
                engine = self.engine_for(database)
                parent = await self._load_parent(schema, engine, pk, {rel_name: include}, request)
                related = parent[rel_name]
                meta = {"count": len(related)} if rel.to_many else None
                transform_options = TransformOptions(
                    base_url=self._base_url_for(target),
                    fields=query.fields,
                    include=include,
                    include_merge=schema.include_merge,
                    links={"self": f"{self._resource_url(schema, parent)}/{rel_name}"},
                    meta=meta,
                )
                return JSONAPIResponse(content=self.transformer.document(related, target, transform_options, many=rel.to_many))
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _relationship_links(self, schema: CrudSchema, record: Record, rel_name: str) -> Dict[str, str]:
        url = self._resource_url(schema, record)
        return {"self": f"{url}/relationships/{rel_name}", "related": f"{url}/{rel_name}"}

    def _get_relationship(self, Model: Type[Any], database: str, rel_name: str):
        async def handler(object_id: str, request: Request):
            try:
                schema = self.schema_for(Model, database)
                rel = schema.descriptor.relation(rel_name)
                if rel is None:
                    raise NotFoundError(f"Unknown relationship '{rel_name}'")
                pk = schema.descriptor.parse_id(object_id)
                parent = await self._load_parent(schema, self.engine_for(database), pk, {rel_name: {}}, request)
                doc = self.transformer.relationship_document(
                    parent[rel_name],
                    self.registry.describe(rel.target_class),
                    rel.to_many,
                    links=self._relationship_links(schema, parent, rel_name),
                )
                return JSONAPIResponse(content=doc)
            except Exception as exc:
                self._handle_exception(exc)

        return handler

    def _mutate_relationship(self, Model: Type[Any], database: str, rel_name: str, verb: str):
        async def handler(object_id: str, request: Request, payload: Any = Body(None, media_type=JSONAPI_MEDIA_TYPE)):
            try:
                self._require_media_type(request)
                schema = self.schema_for(Model, database)
                rel = schema.descriptor.relation(rel_name)
                if rel is None:
                    raise NotFoundError(f"Unknown relationship '{rel_name}'")
                if not isinstance(payload, dict) or "data" not in payload:
                    raise ValidationError("Invalid JSON:API payload (missing data)", code="MISSING_DATA", source={"pointer": "/data"})
                pk = schema.descriptor.parse_id(object_id)
                record = await self.perform_relationship(schema, self.engine_for(database), pk, rel_name, verb, payload["data"])
                doc = self.transformer.relationship_document(
                    record.get(rel_name),
                    self.registry.describe(rel.target_class),
                    rel.to_many,
                    links=self._relationship_links(schema, record, rel_name),
                    meta=operation_meta(verb),
                )
                return JSONAPIResponse(content=doc)
            except Exception as exc:
                self._handle_exception(exc)

        return handler
