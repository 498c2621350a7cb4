from typing import Any, Dict, List, Literal, Optional, TypedDict, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


#
# documents built by jsonapi_crud.serializer
#
class ResourceIdentifierObject(TypedDict):
    type: str
    id: str


class ResourceObject(ResourceIdentifierObject, total=False):
    attributes: Dict[str, Any]
    relationships: Dict[str, Any]
    links: Dict[str, str]


# primary data: resource object(s) or, in relationship documents, resource linkage
PrimaryData = Union[ResourceObject, List[ResourceObject], ResourceIdentifierObject, List[ResourceIdentifierObject], None]


class Document(TypedDict, total=False):
    jsonapi: Dict[str, str]
    data: PrimaryData
    included: List[ResourceObject]
    links: Dict[str, Optional[str]]
    meta: Dict[str, Any]


#
# pydantic envelopes of the request bodies
#
class PermissiveModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class OperationRef(PermissiveModel):
    type: str
    id: Optional[Union[str, int]] = None
    lid: Optional[str] = None
    relationship: Optional[str] = None


class AtomicOperation(PermissiveModel):
    op: Literal["add", "update", "remove"]
    ref: Optional[OperationRef] = None
    href: Optional[str] = None
    data: Optional[Any] = None

    @model_validator(mode="after")
    def check_target(self) -> "AtomicOperation":
        if self.op == "add" and self.data is None:
            raise ValueError("'add' operations require 'data'")
        if self.op in ("update", "remove") and self.ref is None:
            raise ValueError(f"'{self.op}' operations require 'ref'")
        return self


class AtomicRequest(PermissiveModel):
    """
    {"atomic:operations": [...]}, "operations" is accepted as an alias
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    operations: List[AtomicOperation] = Field(alias="atomic:operations", min_length=1)
