# -*- coding: utf-8 -*-
"""
Model descriptors

A ModelDescriptor is created once per registered SQLAlchemy model and is
immutable afterwards. The relation list drives the attribute/relationship
classification in the serializer and the resolution of relationship payloads.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional, Tuple, Type

from sqlalchemy import inspect as sqla_inspect
from sqlalchemy.orm.interfaces import MANYTOMANY, ONETOMANY

from .errors import ValidationError
from .pk import PkParser, PrimaryKey, name_suggests_uuid, select_pk_parser


class IdType(str, Enum):
    INTEGER = "integer"
    UUID = "uuid"
    STRING = "string"


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    python_type: Optional[type]
    optional: bool = True
    unique: bool = False
    primary_key: bool = False


@dataclass(frozen=True)
class RelationDescriptor:
    name: str
    target: str  # target model (class) name
    to_many: bool
    target_class: Any = None


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    resource_type: str
    primary_key: str
    pk_type: IdType
    fields: Tuple[FieldDescriptor, ...]
    relations: Tuple[RelationDescriptor, ...]
    soft_delete_field: Optional[str] = None
    model: Any = None

    @property
    def attribute_names(self) -> Tuple[str, ...]:
        """
        Names of the fields serialized as JSON:API "attributes" (the primary key is the "id")
        """
        return tuple(f.name for f in self.fields if not f.primary_key)

    @property
    def relation_names(self) -> Tuple[str, ...]:
        return tuple(rel.name for rel in self.relations)

    @property
    def pk_parser(self) -> PkParser:
        return select_pk_parser(self.primary_key)

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for candidate in self.fields:
            if candidate.name == name:
                return candidate
        return None

    def relation(self, name: str) -> Optional[RelationDescriptor]:
        for candidate in self.relations:
            if candidate.name == name:
                return candidate
        return None

    def column(self, name: str) -> Any:
        """
        :return: the sqlalchemy Column mapped to the field `name`
        """
        return sqla_inspect(self.model).column_attrs[name].columns[0]

    def parse_id(self, value: Any) -> PrimaryKey:
        """
        Parse a url/body id and coerce it to the column type of the primary key
        """
        return self.coerce_pk(self.pk_parser(str(value)))

    def coerce_pk(self, value: Any) -> Any:
        pk_field = self.field(self.primary_key)
        python_type = pk_field.python_type if pk_field else None
        if python_type is int and not isinstance(value, int):
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid id for {self.resource_type}: '{value}'", code="INVALID_ID")
        if python_type is str and not isinstance(value, str):
            return str(value)
        if python_type is uuid.UUID and not isinstance(value, uuid.UUID):
            try:
                return uuid.UUID(str(value))
            except ValueError:
                raise ValidationError(f"Invalid id for {self.resource_type}: '{value}'", code="INVALID_ID")
        return value


def _python_type(column: Any) -> Optional[type]:
    try:
        return column.type.python_type
    except NotImplementedError:
        # custom column types don't always implement python_type
        return None


def _id_type(pk_name: str, python_type: Optional[type]) -> IdType:
    if python_type is int:
        return IdType.INTEGER
    if python_type is uuid.UUID or name_suggests_uuid(pk_name):
        return IdType.UUID
    return IdType.STRING


def describe_model(
    Model: Type[Any],
    resource_type: Optional[str] = None,
    soft_delete_field: Optional[str] = None,
) -> ModelDescriptor:
    """
    Create the descriptor of a mapped SQLAlchemy class

    :param Model: declarative class
    :param resource_type: JSON:API type, defaults to the table name
    :param soft_delete_field: name of the nullable timestamp column used as delete marker
    :return: ModelDescriptor
    """
    mapper = sqla_inspect(Model)
    pk_columns = list(mapper.primary_key)
    if len(pk_columns) != 1:
        raise ValueError(f"{Model.__name__}: composite (or missing) primary keys are not supported")

    fields = []
    pk_name = None
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        is_pk = column in pk_columns
        if is_pk:
            pk_name = attr.key
        fields.append(
            FieldDescriptor(
                name=attr.key,
                python_type=_python_type(column),
                optional=bool(column.nullable) and not is_pk,
                unique=bool(column.unique) or is_pk,
                primary_key=is_pk,
            )
        )

    relations = []
    for rel in mapper.relationships:
        relations.append(
            RelationDescriptor(
                name=rel.key,
                target=rel.mapper.class_.__name__,
                to_many=rel.direction in (ONETOMANY, MANYTOMANY) and rel.uselist,
                target_class=rel.mapper.class_,
            )
        )

    field_names = {f.name for f in fields}
    if soft_delete_field is not None and soft_delete_field not in field_names:
        raise ValueError(f"{Model.__name__}: soft delete field '{soft_delete_field}' is not a column")

    pk_field = next(f for f in fields if f.primary_key)
    return ModelDescriptor(
        name=Model.__name__,
        resource_type=resource_type or getattr(Model, "__tablename__", None) or Model.__name__,
        primary_key=str(pk_name),
        pk_type=_id_type(str(pk_name), pk_field.python_type),
        fields=tuple(fields),
        relations=tuple(relations),
        soft_delete_field=soft_delete_field,
        model=Model,
    )


@lru_cache(maxsize=None)
def default_descriptor(Model: Type[Any]) -> ModelDescriptor:
    """
    Descriptor of a model that hasn't been registered (eg. the target of a relationship)
    """
    return describe_model(Model)


DescriptorLookup = Callable[[Type[Any]], ModelDescriptor]
