# Exceptions and the error mapper
#
# Every failure of a generated endpoint ends up as a JsonapiError. The handlers
# installed by JsonapiCrud render them as a JSON:API error document:
# {
#      "jsonapi": {"version": "1.0"},
#      "errors": [{"code": "NOT_FOUND", "status": "404", "title": "Not Found", "detail": "..."}]
# }
#
# In production the detail of server errors is hidden and client error details
# are truncated, see error_document()
#
import traceback
from http import HTTPStatus
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DataError, DontWrapMixin, IntegrityError, SQLAlchemyError, StatementError

import jsonapi_crud
from .config import get_config, is_debug, is_production

HIDDEN_DETAIL = "(error details are hidden in production)"


class JsonapiError(Exception, DontWrapMixin):
    """
    Base class of the errors that are returned to the client
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    code = "INTERNAL_ERROR"
    title = HTTPStatus.INTERNAL_SERVER_ERROR.phrase

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        source: Optional[Dict[str, str]] = None,
    ) -> None:
        Exception.__init__(self, message)
        self.message = str(message)
        if status_code is not None:
            self.status_code = int(status_code)
            self.title = HTTPStatus(self.status_code).phrase
        if code is not None:
            self.code = code
        self.source = source
        self.errors: List["JsonapiError"] = [self]
        self.log()

    def log(self) -> None:
        jsonapi_crud.log.warning(f"{self.__class__.__name__}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "code": self.code,
            "status": str(self.status_code),
            "title": self.title,
            "detail": self.message,
        }
        if self.source:
            result["source"] = dict(self.source)
        return result


class ValidationError(JsonapiError):
    """
    This exception is raised when invalid input has been detected (client side input),
    it is raised before the data engine is called
    """

    status_code = HTTPStatus.BAD_REQUEST.value
    code = "VALIDATION_ERROR"
    title = HTTPStatus.BAD_REQUEST.phrase


class NotFoundError(JsonapiError):
    """
    This exception is raised when an item was not found
    """

    status_code = HTTPStatus.NOT_FOUND.value
    code = "NOT_FOUND"
    title = HTTPStatus.NOT_FOUND.phrase


class GoneError(JsonapiError):
    """
    The record exists but it has been soft-deleted
    """

    status_code = HTTPStatus.GONE.value
    code = "GONE"
    title = HTTPStatus.GONE.phrase


class ConflictError(JsonapiError):
    status_code = HTTPStatus.CONFLICT.value
    code = "CONFLICT"
    title = HTTPStatus.CONFLICT.phrase


class UnprocessableError(JsonapiError):
    """
    Raised when a relationship payload can't be resolved
    """

    status_code = HTTPStatus.UNPROCESSABLE_ENTITY.value
    code = "UNPROCESSABLE_ENTITY"
    title = HTTPStatus.UNPROCESSABLE_ENTITY.phrase


class UnsupportedMediaTypeError(JsonapiError):
    status_code = HTTPStatus.UNSUPPORTED_MEDIA_TYPE.value
    code = "UNSUPPORTED_MEDIA_TYPE"
    title = HTTPStatus.UNSUPPORTED_MEDIA_TYPE.phrase


class GenericError(JsonapiError):
    """
    This exception is raised when an unexpected error has been detected
    """

    def log(self) -> None:
        jsonapi_crud.log.error(f"Generic Error: {self.message}")
        if is_debug():
            jsonapi_crud.log.debug(traceback.format_exc(120))


class MultipleErrors(ValidationError):
    """
    Several client errors reported in one document (eg. pydantic field errors)
    """

    def __init__(self, errors: Sequence[JsonapiError]) -> None:
        first = errors[0]
        super().__init__(first.message, status_code=first.status_code, code=first.code, source=first.source)
        self.errors = list(errors)


#
# Data engine faults, raised by jsonapi_crud.engine
#
class DataEngineError(Exception):
    pass


class RecordNotFound(DataEngineError):
    def __init__(self, model_name: str, where: Any) -> None:
        super().__init__(f"No {model_name} record found for {where}")
        self.model_name = model_name
        self.where = where


class RelatedRecordNotFound(DataEngineError):
    def __init__(self, model_name: str, relation: str, key: Any) -> None:
        super().__init__(f"Related {model_name} '{key}' for relationship '{relation}' does not exist")
        self.model_name = model_name
        self.relation = relation
        self.key = key


class DatabaseNotConnected(DataEngineError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Database '{name}' is not connected")
        self.name = name


def _pydantic_errors(exc: PydanticValidationError, pointer_prefix: str) -> MultipleErrors:
    errors = []
    for raw_error in exc.errors():
        loc = [str(item) for item in raw_error.get("loc", ())]
        pointer = "/".join([pointer_prefix.rstrip("/")] + loc) if loc else pointer_prefix
        errors.append(
            ValidationError(
                str(raw_error.get("msg", "Validation error")),
                code="VALIDATION_ERROR",
                source={"pointer": pointer},
            )
        )
    if not errors:
        errors.append(ValidationError("Attribute validation failed", source={"pointer": pointer_prefix}))
    return MultipleErrors(errors)


def _integrity_error(exc: IntegrityError) -> JsonapiError:
    text = str(exc.orig if exc.orig is not None else exc)
    lowered = text.lower()
    if "unique" in lowered or "duplicate" in lowered:
        return ConflictError(f"Unique constraint failed: {text}", code="UNIQUE_CONSTRAINT")
    if "foreign key" in lowered:
        return UnprocessableError(f"Foreign key constraint failed: {text}", code="FOREIGN_KEY_CONSTRAINT")
    if "not null" in lowered or "null value" in lowered:
        return ValidationError(f"Missing required value: {text}", code="NOT_NULL_CONSTRAINT")
    return ConflictError(f"Constraint failed: {text}", code="CONSTRAINT_VIOLATION")


def map_exception(exc: BaseException, pointer_prefix: str = "/data/attributes") -> JsonapiError:
    """
    Classify an exception into a JsonapiError with a stable code and status

    :param exc: the exception raised while handling a request
    :param pointer_prefix: json pointer used for attribute validation errors
    :return: JsonapiError instance
    """
    if isinstance(exc, JsonapiError):
        return exc
    if isinstance(exc, RecordNotFound):
        return NotFoundError(str(exc))
    if isinstance(exc, RelatedRecordNotFound):
        return UnprocessableError(str(exc), code="RELATED_NOT_FOUND")
    if isinstance(exc, DatabaseNotConnected):
        return GenericError(str(exc), code="DATABASE_NOT_CONNECTED")
    if isinstance(exc, PydanticValidationError):
        return _pydantic_errors(exc, pointer_prefix)
    if isinstance(exc, IntegrityError):
        return _integrity_error(exc)
    if isinstance(exc, DataError):
        return ValidationError(f"Invalid data: {exc.orig}", code="INVALID_DATA")
    if isinstance(exc, StatementError) and isinstance(exc.orig, (ValueError, TypeError)):
        # raised by type processors, eg. a str bound to a DateTime column
        return ValidationError(f"Invalid data: {exc.orig}", code="INVALID_DATA")
    if isinstance(exc, SQLAlchemyError):
        return GenericError(f"Database error: {exc}", code="DATABASE_ERROR")
    return GenericError(f"{exc.__class__.__name__}: {exc}")


def _sanitize(error: Dict[str, Any]) -> Dict[str, Any]:
    if int(error.get("status", 500)) >= 500:
        error["detail"] = HIDDEN_DETAIL
        return error
    max_length = int(get_config("ERROR_DETAIL_MAX_LENGTH"))
    detail = str(error.get("detail", ""))
    if len(detail) > max_length:
        error["detail"] = detail[:max_length] + "..."
    return error


def error_document(errors: Union[JsonapiError, Iterable[JsonapiError]]) -> Dict[str, Any]:
    """
    :param errors: one or more JsonapiError instances
    :return: jsonapi error document
    """
    if isinstance(errors, JsonapiError):
        errors = errors.errors
    error_dicts = [error.to_dict() for error in errors]
    if is_production():
        error_dicts = [_sanitize(error) for error in error_dicts]
    return {"jsonapi": {"version": get_config("JSONAPI_VERSION")}, "errors": error_dicts}
