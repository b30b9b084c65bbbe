from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Any, List, Optional

# Canonical shape consumed by the query builder. Operators and sort
# directions stay plain strings: the builder, not the schema, decides what is
# allowed so that rejections surface as authorization errors.

class FilterClause(BaseModel):
    field: str
    operator: str
    value: Any = None

class SortSpec(BaseModel):
    field: str
    direction: str = "asc"

class Pagination(BaseModel):
    page: int = 1
    per_page: int = 10

class ListRequest(BaseModel):
    filters: List[FilterClause] = []
    sort: Optional[SortSpec] = None
    search: str = ""
    search_fields: List[str] = []
    pagination: Pagination = Pagination()


# Wire dialect ("refine" style) accepted by POST /list and by the query
# string parser.

class RefineSorter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str = ""
    order: str = Field(default="asc", validation_alias=AliasChoices("order", "direction", "dir"))

    @field_validator("field", "order", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

class RefineFilter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: str = ""
    operator: str = Field(default="eq", validation_alias=AliasChoices("operator", "op"))
    value: Any = None

class RefinePagination(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current: Optional[int] = Field(default=None, validation_alias=AliasChoices("current", "page"))
    page_size: Optional[int] = Field(default=None, validation_alias=AliasChoices("pageSize", "perPage", "per_page", "page_size"))

class RefineListRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pagination: RefinePagination = RefinePagination()
    sorters: List[RefineSorter] = Field(default_factory=list, validation_alias=AliasChoices("sorters", "sort"))
    filters: List[RefineFilter] = []
    search: str = ""
    q: str = ""
    search_fields: List[str] = Field(default_factory=list, validation_alias=AliasChoices("searchFields", "search_fields"))

    @field_validator("pagination", mode="before")
    @classmethod
    def _pagination_or_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("sorters", "filters", mode="before")
    @classmethod
    def _singleton_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value

    @field_validator("search_fields", mode="before")
    @classmethod
    def _fields_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [chunk.strip() for chunk in value.split(",") if chunk.strip()]
        return value

    @field_validator("search", "q", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class IdsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ids: List[Any] = []

    @field_validator("ids", mode="before")
    @classmethod
    def _scalar_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            return [value]
        return value


# Response envelopes.

class ListEnvelope(BaseModel):
    data: List[Any]
    total: int

class DataEnvelope(BaseModel):
    data: Any

class AffectedEnvelope(BaseModel):
    data: int
