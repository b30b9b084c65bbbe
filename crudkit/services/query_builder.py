from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from sqlalchemy import String, asc, cast, desc, func, literal, or_
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query, selectinload

from crudkit.core.errors import AuthorizationError, ConfigurationError, ValidationError
from crudkit.schemas.listing import FilterClause, ListRequest, Pagination, SortSpec
from crudkit.services.policy import (
    COMPARISON_OPERATORS,
    LIST_OPERATORS,
    PATTERN_OPERATORS,
    SUPPORTED_OPERATORS,
    FieldAuthorizationPolicy,
)

DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 1000
LIKE_ESCAPE = "\\"

_LOG = logging.getLogger("crudkit.query")

_TRUE_LITERALS = {"1", "true", "yes", "y", "on"}
_FALSE_LITERALS = {"0", "false", "no", "n", "off"}


def _bad_value(column_key: str, kind: str) -> ValidationError:
    return ValidationError(
        f'Invalid value for field "{column_key}" ({kind})',
        {column_key: kind},
    )


def _coerce_bool_filter_value(column_key: str, value):
    if isinstance(value, bool):
        return value
    text = str(value if value is not None else "").strip().lower()
    if text in _TRUE_LITERALS:
        return True
    if text in _FALSE_LITERALS:
        return False
    raise _bad_value(column_key, "boolean")


def _coerce_number_filter_value(column_key: str, value, python_type):
    if python_type is int and isinstance(value, float):
        # Integer columns never round; 2.0 is fine, 2.5 is not.
        if not value.is_integer():
            raise _bad_value(column_key, "integer")
        return int(value)
    if python_type in {int, float} and isinstance(value, (int, float)) and not isinstance(value, bool):
        return python_type(value)
    if python_type is Decimal and isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if not text:
        raise _bad_value(column_key, "number")
    normalized = text.replace(",", ".")
    try:
        if python_type is int:
            try:
                return int(normalized)
            except ValueError:
                raise _bad_value(column_key, "integer")
        if python_type is float:
            return float(normalized)
        if python_type is Decimal:
            return Decimal(normalized)
        return python_type(normalized)
    except (ValueError, TypeError, InvalidOperation):
        raise _bad_value(column_key, "number")


def _coerce_date_filter_value(column_key: str, value):
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    text = str(value or "").strip()
    if not text:
        raise _bad_value(column_key, "date")
    try:
        # Accept either YYYY-MM-DD or full ISO datetime and take its date part.
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        raise _bad_value(column_key, "date")


def _coerce_datetime_filter_value(column_key: str, value):
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise _bad_value(column_key, "datetime")
        try:
            if "T" not in text and " " not in text and len(text) == 10:
                # Date-only value for timestamp columns -> start of the day.
                parsed = datetime.combine(date.fromisoformat(text), datetime.min.time())
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise _bad_value(column_key, "datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _column_python_type(column):
    try:
        return column.property.columns[0].type.python_type
    except (AttributeError, IndexError, NotImplementedError):
        return None


def coerce_column_value(column, value):
    if value is None:
        return None
    python_type = _column_python_type(column)
    if python_type in {dict, list}:
        return value
    if isinstance(value, (dict, list, tuple, set)):
        raise _bad_value(column.key, "scalar expected")
    if python_type is None:
        return value
    if python_type is uuid.UUID:
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value).strip())
        except ValueError:
            raise _bad_value(column.key, "uuid")
    if python_type is bool:
        return _coerce_bool_filter_value(column.key, value)
    if python_type in {int, float, Decimal}:
        return _coerce_number_filter_value(column.key, value, python_type)
    if python_type is date:
        return _coerce_date_filter_value(column.key, value)
    if python_type is datetime:
        return _coerce_datetime_filter_value(column.key, value)
    if python_type is str and not isinstance(value, str):
        return str(value)
    return value


def _is_date_only_filter_literal(raw_value) -> bool:
    if isinstance(raw_value, date) and not isinstance(raw_value, datetime):
        return True
    if not isinstance(raw_value, str):
        return False
    text = raw_value.strip()
    if not text or "T" in text or " " in text:
        return False
    try:
        date.fromisoformat(text)
        return True
    except ValueError:
        return False


def _as_sequence(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return [value]


def _single_value(column_key: str, operator: str, value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            raise ValidationError(
                f"Operator '{operator}' on field '{column_key}' expects a single value",
                {column_key: "single value expected"},
            )
        return value[0]
    return value


def escape_like(text: str) -> str:
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def sanitize_page(
    page: int | None,
    per_page: int | None,
    *,
    default_per_page: int = DEFAULT_PER_PAGE,
    max_per_page: int = MAX_PER_PAGE,
) -> tuple[int, int]:
    page = int(page or 0)
    per_page = int(per_page or 0)
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = default_per_page
    if per_page > max_per_page:
        per_page = max_per_page
    return page, per_page


@dataclass(frozen=True)
class ListPlan:
    count_query: Query
    items_query: Query
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class QueryBuilder:
    """Turns a canonical ListRequest into SQLAlchemy queries for one model.

    Every step takes a Query and returns a new one. Field names reach the
    model only after the policy has accepted them, and all validation runs
    before anything is executed.
    """

    def __init__(self, model: type, policy: FieldAuthorizationPolicy, *, id_field: str = "id") -> None:
        policy.validate_for(model)
        mapper = sa_inspect(model)
        if id_field not in mapper.column_attrs:
            raise ConfigurationError(
                f"{model.__name__} has no identifier column '{id_field}'",
                {"id_field": id_field},
            )
        self.model = model
        self.policy = policy
        self.id_field = id_field
        self._columns = {key: getattr(model, key) for key in mapper.column_attrs.keys()}
        self._pk = self._columns[id_field]

    @property
    def pk(self):
        return self._pk

    def _reject(self, message: str, *, field: str, operator: str | None = None) -> AuthorizationError:
        _LOG.warning(
            "query_rejected model=%s field=%s operator=%s reason=%s",
            self.model.__name__,
            field or "-",
            operator or "-",
            message,
        )
        return AuthorizationError(message, field=field, operator=operator)

    # ---- filters ----

    def filter_predicate(self, clause: FilterClause):
        field_name = str(clause.field or "").strip()
        operator = str(clause.operator or "").strip().lower()
        allowed = self.policy.filterable_fields.get(field_name)
        if allowed is None:
            raise self._reject(f"Filtering by field '{field_name}' is not allowed", field=field_name, operator=operator)
        if operator not in SUPPORTED_OPERATORS:
            raise self._reject(f"Unsupported operator: {operator}", field=field_name, operator=operator)
        if operator not in allowed:
            raise self._reject(
                f"Operator '{operator}' is not allowed on field '{field_name}'",
                field=field_name,
                operator=operator,
            )

        column = self._columns[field_name]
        raw_value = clause.value

        if operator in COMPARISON_OPERATORS:
            return self._comparison(column, operator, _single_value(field_name, operator, raw_value))
        if operator in LIST_OPERATORS:
            values = [coerce_column_value(column, item) for item in _as_sequence(raw_value)]
            if not values:
                raise ValidationError(
                    f"Operator '{operator}' on field '{field_name}' expects at least one value",
                    {field_name: "empty list"},
                )
            return column.in_(values) if operator == "in" else column.not_in(values)
        if operator == "between":
            if isinstance(raw_value, (set, frozenset)):
                raise ValidationError(
                    f"Operator 'between' on field '{field_name}' expects an ordered pair",
                    {field_name: "ordered pair expected"},
                )
            bounds = _as_sequence(raw_value)
            if len(bounds) != 2:
                raise ValidationError(
                    f"Operator 'between' on field '{field_name}' expects exactly two values",
                    {field_name: "two values expected"},
                )
            low, high = (coerce_column_value(column, item) for item in bounds)
            if low is None or high is None:
                raise _bad_value(field_name, "null bound")
            return column.between(low, high)
        if operator in PATTERN_OPERATORS:
            return self._pattern(column, operator, _single_value(field_name, operator, raw_value))
        # isnull
        if _coerce_bool_filter_value(field_name, _single_value(field_name, operator, raw_value)):
            return column.is_(None)
        return column.is_not(None)

    def _comparison(self, column, operator: str, raw_value: Any):
        if raw_value is None:
            if operator == "eq":
                return column.is_(None)
            if operator == "ne":
                return column.is_not(None)
            raise _bad_value(column.key, "null")
        value = coerce_column_value(column, raw_value)
        if (
            operator in {"eq", "ne"}
            and _column_python_type(column) is datetime
            and _is_date_only_filter_literal(raw_value)
        ):
            day_start = value
            day_end = day_start + timedelta(days=1)
            day_expr = (column >= day_start) & (column < day_end)
            return day_expr if operator == "eq" else ~day_expr
        if operator == "eq":
            return column == value
        if operator == "ne":
            return column != value
        if operator == "lt":
            return column < value
        if operator == "lte":
            return column <= value
        if operator == "gt":
            return column > value
        return column >= value

    def _as_text(self, column):
        if _column_python_type(column) is str:
            return column
        return cast(column, String)

    def _pattern(self, column, operator: str, raw_value: Any):
        if raw_value is None or isinstance(raw_value, (dict, list, tuple)):
            raise _bad_value(column.key, "text")
        escaped = escape_like(str(raw_value))
        if operator == "startswith":
            return self._as_text(column).like(f"{escaped}%", escape=LIKE_ESCAPE)
        if operator == "endswith":
            return self._as_text(column).like(f"%{escaped}", escape=LIKE_ESCAPE)
        if operator == "contains":
            return self._as_text(column).like(f"%{escaped}%", escape=LIKE_ESCAPE)
        return func.lower(self._as_text(column)).like(func.lower(literal(f"%{escaped}%")), escape=LIKE_ESCAPE)

    def apply_filters(self, query: Query, filters: Iterable[FilterClause]) -> Query:
        predicates = [self.filter_predicate(clause) for clause in filters]
        if not predicates:
            return query
        return query.filter(*predicates)

    # ---- search ----

    def apply_search(self, query: Query, search: str | None, requested_fields: Iterable[str] | None = None) -> Query:
        term = str(search or "").strip()
        if not term:
            return query
        fields = self.policy.resolve_search_fields(requested_fields)
        if not fields:
            _LOG.debug("search_skipped model=%s reason=no_searchable_fields", self.model.__name__)
            return query
        pattern = f"%{escape_like(term)}%"
        conditions = [
            func.lower(self._as_text(self._columns[name])).like(func.lower(literal(pattern)), escape=LIKE_ESCAPE)
            for name in fields
        ]
        return query.filter(or_(*conditions))

    # ---- ordering, loading, paging ----

    def apply_sort(self, query: Query, sort: SortSpec | None) -> Query:
        order_by = []
        field_name = str(sort.field or "").strip() if sort is not None else ""
        if field_name:
            if not self.policy.is_sort_allowed(field_name):
                raise self._reject(f"Sorting by field '{field_name}' is not allowed", field=field_name)
            column = self._columns[field_name]
            descending = str(sort.direction or "").strip().lower() == "desc"
            order_by.append(desc(column) if descending else asc(column))
        if field_name != self.id_field:
            # Primary key breaks ties so page windows never overlap.
            order_by.append(asc(self._pk))
        return query.order_by(*order_by)

    def apply_eager_loads(self, query: Query) -> Query:
        options = [selectinload(getattr(self.model, name)) for name in self.policy.default_eager_loads]
        if not options:
            return query
        return query.options(*options)

    def paginate(self, query: Query, pagination: Pagination | None) -> Query:
        page, per_page = sanitize_page(
            pagination.page if pagination else None,
            pagination.per_page if pagination else None,
        )
        return query.limit(per_page).offset((page - 1) * per_page)

    def plan(self, base_query: Query, request: ListRequest) -> ListPlan:
        filtered = self.apply_filters(base_query, request.filters)
        filtered = self.apply_search(filtered, request.search, request.search_fields)
        ordered = self.apply_sort(filtered, request.sort)
        count_query = filtered.order_by(None)
        page, per_page = sanitize_page(request.pagination.page, request.pagination.per_page)
        items_query = self.paginate(self.apply_eager_loads(ordered), Pagination(page=page, per_page=per_page))
        return ListPlan(count_query=count_query, items_query=items_query, page=page, per_page=per_page)
