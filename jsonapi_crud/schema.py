"""CRUD registrations.

A :class:`CrudSchema` is created when a model is exposed and is read-only
afterwards. The :class:`SchemaRegistry` keeps one schema per
``(database, model)`` pair and the explicit resource type -> model table.
The registry is owned by a :class:`~jsonapi_crud.crud.JsonapiCrud` instance,
there's no process-wide registry.
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterator, Mapping, Optional, Tuple, Type

from pydantic import BaseModel

import jsonapi_crud
from .database import DEFAULT_DATABASE
from .errors import GenericError, JsonapiError
from .model import ModelDescriptor, default_descriptor
from .naming import normalize_type

Hook = Callable[..., Any]

ACTIONS = frozenset(("index", "show", "create", "update", "destroy", "recover", "atomic", "relationships"))
HOOK_NAMES = frozenset(
    (
        "before_index",
        "before_show",
        "before_create",
        "after_create",
        "before_update",
        "after_update",
        "before_destroy",
        "after_destroy",
        "before_recover",
        "after_recover",
    )
)


class EmptyValues(str, Enum):
    """What an update does with empty list/dict attribute values"""

    OMIT = "omit"  # treated as "not supplied"
    APPLY = "apply"  # persisted


@dataclass(frozen=True)
class CrudSchema:
    """Registration of one exposed model."""

    descriptor: ModelDescriptor
    database: str = DEFAULT_DATABASE
    path: str = ""
    actions: FrozenSet[str] = ACTIONS
    hooks: Mapping[str, Hook] = field(default_factory=dict)
    dependencies: Tuple[Any, ...] = ()
    # pydantic models validating the attributes of "create" and "update" requests
    validation: Mapping[str, Type[BaseModel]] = field(default_factory=dict)
    include_merge: bool = False
    empty_values: EmptyValues = EmptyValues.OMIT

    def __post_init__(self) -> None:
        unknown_actions = set(self.actions) - ACTIONS
        if unknown_actions:
            raise ValueError(f"Unknown actions {sorted(unknown_actions)}, expected a subset of {sorted(ACTIONS)}")
        unknown_hooks = set(self.hooks) - HOOK_NAMES
        if unknown_hooks:
            raise ValueError(f"Unknown hooks {sorted(unknown_hooks)}, expected a subset of {sorted(HOOK_NAMES)}")
        unknown_validation = set(self.validation) - {"create", "update"}
        if unknown_validation:
            raise ValueError(f"Validation can only be configured for 'create' and 'update', not {sorted(unknown_validation)}")

    @property
    def Model(self) -> Type[Any]:
        return self.descriptor.model

    @property
    def resource_type(self) -> str:
        return self.descriptor.resource_type

    @property
    def soft_delete(self) -> Optional[str]:
        return self.descriptor.soft_delete_field

    def enabled(self, action: str) -> bool:
        if action == "recover":
            return action in self.actions and self.soft_delete is not None
        return action in self.actions

    async def run_hook(self, name: str, value: Any, request: Any = None) -> Any:
        """
        Call the hook `name` with (value, request)

        The hook may be a plain function or a coroutine function, it may return a
        replacement for `value` (None keeps the value).
        A hook raising a JsonapiError aborts the request with that error, any
        other exception is reported as HOOK_ERROR (500).
        """
        hook = self.hooks.get(name)
        if hook is None:
            return value
        jsonapi_crud.log.debug(f"Running {name} hook of {self.resource_type}")
        try:
            result = hook(value, request)
            if inspect.isawaitable(result):
                result = await result
        except JsonapiError:
            raise
        except Exception as exc:
            raise GenericError(f"{name} hook of {self.resource_type} failed: {exc}", code="HOOK_ERROR")
        return value if result is None else result

    def validate_attributes(self, action: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate request attributes with the pydantic model configured for `action`

        :raises pydantic.ValidationError:
        """
        validator = self.validation.get(action)
        if validator is None:
            return attributes
        validated = validator.model_validate(attributes)
        result = validated.model_dump(exclude_unset=True)
        # attributes that aren't declared in the pydantic model are passed on unchanged
        for key, value in attributes.items():
            result.setdefault(key, value)
        return result


class SchemaRegistry:
    def __init__(self) -> None:
        self._schemas: Dict[Tuple[str, Type[Any]], CrudSchema] = {}
        self._types: Dict[Tuple[str, str], Type[Any]] = {}

    def register(self, schema: CrudSchema) -> CrudSchema:
        """
        Registering the same (database, model) pair again replaces the previous schema
        """
        key = (schema.database, schema.Model)
        if key in self._schemas:
            jsonapi_crud.log.debug(f"Replacing the registration of {schema.Model.__name__} ({schema.database})")
            previous = self._schemas[key]
            self._types.pop((previous.database, previous.resource_type), None)
        type_key = (schema.database, schema.resource_type)
        registered = self._types.get(type_key)
        if registered is not None and registered is not schema.Model:
            raise ValueError(f"Resource type '{schema.resource_type}' is already registered for {registered.__name__}")
        self._schemas[key] = schema
        self._types[type_key] = schema.Model
        return schema

    def get(self, Model: Type[Any], database: str = DEFAULT_DATABASE) -> Optional[CrudSchema]:
        return self._schemas.get((database, Model))

    def by_type(self, resource_type: str, database: str = DEFAULT_DATABASE) -> Optional[CrudSchema]:
        """
        Lookup by the registered type, the naming heuristic is the fallback:
        "blog-posts" matches a registered model named "BlogPost"
        """
        Model = self._types.get((database, resource_type))
        if Model is not None:
            return self._schemas.get((database, Model))
        wanted = normalize_type(resource_type)
        for (db_name, _), schema in self._schemas.items():
            if db_name != database:
                continue
            if wanted in (normalize_type(schema.resource_type), normalize_type(schema.descriptor.name)):
                jsonapi_crud.log.debug(f"Resolved unregistered type '{resource_type}' to {schema.descriptor.name}")
                return schema
        return None

    def describe(self, Model: Type[Any]) -> ModelDescriptor:
        """
        Descriptor of a registered model (in any database), or the default descriptor
        """
        for (_, registered), schema in self._schemas.items():
            if registered is Model:
                return schema.descriptor
        return default_descriptor(Model)

    def type_matches(self, resource_type: Any, Model: Type[Any]) -> bool:
        """
        Lenient type comparison: "users", "user" and "User" all match a model User exposed as "users"
        """
        if not isinstance(resource_type, str) or not resource_type:
            return False
        descriptor = self.describe(Model)
        if resource_type == descriptor.resource_type:
            return True
        wanted = normalize_type(resource_type)
        return wanted in (normalize_type(descriptor.resource_type), normalize_type(descriptor.name))

    def __iter__(self) -> Iterator[CrudSchema]:
        return iter(list(self._schemas.values()))

    def __len__(self) -> int:
        return len(self._schemas)
