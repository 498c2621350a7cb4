# flake8: noqa: F401
#
# crud_init has to be imported first: the other modules use jsonapi_crud.log and jsonapi_crud.CRUD
#
from .crud_init import CRUD, log, dict_merge
from .errors import (
    JsonapiError,
    ValidationError,
    NotFoundError,
    GoneError,
    ConflictError,
    UnprocessableError,
    UnsupportedMediaTypeError,
    GenericError,
    map_exception,
    error_document,
)
from .model import ModelDescriptor, describe_model
from .query import parse_query, QueryDescriptor
from .builder import build_query_options, QueryOptions
from .database import DatabaseManager, DEFAULT_DATABASE
from .engine import DataEngine
from .relationships import RelationshipResolver
from .serializer import ResponseTransformer
from .schema import CrudSchema, SchemaRegistry
from .responses import JSONAPIResponse
from .crud import JsonapiCrud, install_jsonapi_exception_handlers
from .__about__ import __version__, __description__

__all__ = (
    "__version__",
    "__description__",
    #
    "CRUD",
    "log",
    "JsonapiCrud",
    "install_jsonapi_exception_handlers",
    # db:
    "DatabaseManager",
    "DEFAULT_DATABASE",
    "DataEngine",
    "ModelDescriptor",
    "describe_model",
    # query:
    "parse_query",
    "QueryDescriptor",
    "build_query_options",
    "QueryOptions",
    # jsonapi:
    "RelationshipResolver",
    "ResponseTransformer",
    "CrudSchema",
    "SchemaRegistry",
    "JSONAPIResponse",
    # Errors:
    "JsonapiError",
    "ValidationError",
    "NotFoundError",
    "GoneError",
    "ConflictError",
    "UnprocessableError",
    "UnsupportedMediaTypeError",
    "GenericError",
    "map_exception",
    "error_document",
)
