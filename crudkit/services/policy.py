from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import false
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query

from crudkit.core.context import CallerContext
from crudkit.core.errors import ConfigurationError

# A mandatory scope narrows the base query for a caller. It must be pure:
# no session access, no ambient state, only the query and the caller.
Scope = Callable[[Query, CallerContext], Query]

COMPARISON_OPERATORS = frozenset({"eq", "ne", "lt", "lte", "gt", "gte"})
LIST_OPERATORS = frozenset({"in", "nin"})
RANGE_OPERATORS = frozenset({"between"})
PATTERN_OPERATORS = frozenset({"contains", "icontains", "startswith", "endswith"})
NULL_OPERATORS = frozenset({"isnull"})
SUPPORTED_OPERATORS = COMPARISON_OPERATORS | LIST_OPERATORS | RANGE_OPERATORS | PATTERN_OPERATORS | NULL_OPERATORS


def _normalize_operators(field_name: str, operators: Any) -> frozenset[str]:
    if isinstance(operators, str):
        operators = [operators]
    normalized = frozenset(str(op or "").strip().lower() for op in operators)
    unknown = sorted(normalized - SUPPORTED_OPERATORS)
    if unknown:
        raise ConfigurationError(
            f"Unknown operators for field '{field_name}': {', '.join(unknown)}",
            {"field": field_name, "operators": unknown, "supported": sorted(SUPPORTED_OPERATORS)},
        )
    return normalized


@dataclass(frozen=True, eq=False)
class FieldAuthorizationPolicy:
    """Per-model allow-list for filters, sorting, search and row visibility.

    Collections are frozen on construction, so one instance can be shared by
    every request of a running service.
    """

    filterable_fields: Mapping[str, Iterable[str]] = field(default_factory=dict)
    sortable_fields: Iterable[str] = frozenset()
    searchable_fields: Iterable[str] = ()
    default_eager_loads: Iterable[str] = ()
    mandatory_scopes: Iterable[Scope] = ()
    hard_delete_on_delete: bool = False
    soft_delete_field: str | None = "deleted_at"

    def __post_init__(self) -> None:
        filterable = {
            str(name): _normalize_operators(str(name), ops) for name, ops in dict(self.filterable_fields).items()
        }
        scopes = tuple(self.mandatory_scopes)
        for scope in scopes:
            if not callable(scope):
                raise ConfigurationError("Mandatory scopes must be callables", {"scope": repr(scope)})
        object.__setattr__(self, "filterable_fields", MappingProxyType(filterable))
        object.__setattr__(self, "sortable_fields", frozenset(str(name) for name in self.sortable_fields))
        object.__setattr__(self, "searchable_fields", tuple(dict.fromkeys(str(name) for name in self.searchable_fields)))
        object.__setattr__(self, "default_eager_loads", tuple(str(name) for name in self.default_eager_loads))
        object.__setattr__(self, "mandatory_scopes", scopes)

    def is_filter_allowed(self, field_name: str, operator: str) -> bool:
        allowed = self.filterable_fields.get(field_name)
        if allowed is None:
            return False
        return operator in allowed

    def is_sort_allowed(self, field_name: str) -> bool:
        return field_name in self.sortable_fields

    def resolve_search_fields(self, requested: Iterable[str] | None = None) -> tuple[str, ...]:
        wanted = [str(name or "").strip() for name in (requested or ())]
        wanted = [name for name in wanted if name]
        if not wanted:
            return self.searchable_fields
        allowed = set(self.searchable_fields)
        return tuple(name for name in dict.fromkeys(wanted) if name in allowed)

    def soft_delete_attribute(self, model: type):
        if not self.soft_delete_field:
            return None
        mapper = sa_inspect(model)
        if self.soft_delete_field not in mapper.column_attrs:
            return None
        return getattr(model, self.soft_delete_field)

    def validate_for(self, model: type) -> None:
        mapper = sa_inspect(model)
        columns = set(mapper.column_attrs.keys())
        relations = set(mapper.relationships.keys())
        referenced = set(self.filterable_fields) | set(self.sortable_fields) | set(self.searchable_fields)
        unknown_columns = sorted(referenced - columns)
        unknown_relations = sorted(set(self.default_eager_loads) - relations)
        if unknown_columns or unknown_relations:
            raise ConfigurationError(
                f"Policy references fields that {model.__name__} does not map",
                {"unknown_fields": unknown_columns, "unknown_relations": unknown_relations},
            )


def tenant_scope(column, attribute: str = "tenant_id") -> Scope:
    """Restrict rows to the caller's tenant; callers without one see nothing."""

    def _scope(query: Query, caller: CallerContext) -> Query:
        value = getattr(caller, attribute, None)
        if value is None:
            value = caller.claims.get(attribute)
        if value is None:
            return query.filter(false())
        return query.filter(column == value)

    _scope.__name__ = f"tenant_scope_{getattr(column, 'key', 'column')}"
    return _scope
