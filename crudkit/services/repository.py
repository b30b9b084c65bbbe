from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query, Session

from crudkit.core.context import CallerContext
from crudkit.core.errors import (
    AuthorizationError,
    ConfigurationError,
    CrudError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from crudkit.models.common import utcnow
from crudkit.schemas.listing import ListRequest
from crudkit.services.policy import FieldAuthorizationPolicy
from crudkit.services.query_builder import QueryBuilder, coerce_column_value

_LOG = logging.getLogger("crudkit.repository")


@dataclass
class ListResult:
    items: list[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 10


class Repository:
    """CRUD operations for one mapped model, bounded by a field policy.

    Every read and write starts from the scoped base query: the policy's
    mandatory scopes for the given caller plus soft-delete exclusion. A row a
    scope hides behaves exactly like a row that does not exist.

    With ``autocommit`` the repository owns the session transaction and
    commits or rolls back each operation. ``with_transaction`` returns a copy
    that only flushes, so several calls can share one outer transaction.
    """

    def __init__(
        self,
        model: type,
        policy: FieldAuthorizationPolicy,
        session: Session,
        *,
        id_field: str = "id",
        autocommit: bool = True,
    ) -> None:
        mapper = sa_inspect(model)
        if len(mapper.primary_key) != 1:
            raise ConfigurationError(
                f"{model.__name__} must have exactly one primary key column",
                {"primary_key": [column.key for column in mapper.primary_key]},
            )
        self.model = model
        self.policy = policy
        self.session = session
        self.id_field = id_field
        self.autocommit = autocommit
        self.builder = QueryBuilder(model, policy, id_field=id_field)
        self._soft_delete = policy.soft_delete_attribute(model)
        self._columns = {prop.key: prop.columns[0] for prop in mapper.column_attrs}
        self._attributes = {key: getattr(model, key) for key in self._columns}
        soft_key = self._soft_delete.key if self._soft_delete is not None else None
        self._writable = [key for key in self._columns if key != soft_key]

    @property
    def entity_name(self) -> str:
        return self.model.__name__

    def with_transaction(self, session: Session) -> "Repository":
        clone = copy.copy(self)
        clone.session = session
        clone.autocommit = False
        return clone

    # ---- identifiers ----

    def parse_id(self, raw: Any) -> Any:
        column = self._columns[self.id_field]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            python_type = str
        if raw is None or isinstance(raw, bool):
            raise ValidationError("Invalid identifier", {self.id_field: "missing"})
        if isinstance(raw, python_type) and python_type is not str:
            return raw
        text_value = str(raw).strip()
        if not text_value:
            raise ValidationError("Invalid identifier", {self.id_field: "empty"})
        if python_type is int:
            try:
                return int(text_value)
            except ValueError:
                raise ValidationError("Invalid identifier", {self.id_field: "integer expected"})
        if python_type is uuid.UUID:
            try:
                return uuid.UUID(text_value)
            except ValueError:
                raise ValidationError("Invalid identifier", {self.id_field: "uuid expected"})
        return text_value

    def _parse_ids(self, ids: Iterable[Any]) -> list[Any]:
        return list(dict.fromkeys(self.parse_id(raw) for raw in ids))

    # ---- plumbing ----

    def _scoped(self, caller: CallerContext) -> Query:
        query = self.session.query(self.model)
        for scope in self.policy.mandatory_scopes:
            query = scope(query, caller)
        if self._soft_delete is not None:
            query = query.filter(self._soft_delete.is_(None))
        return query

    def _checkpoint(self, caller: CallerContext) -> None:
        caller.raise_if_cancelled()
        remaining = caller.remaining()
        if remaining is None:
            return
        if self.session.get_bind().dialect.name == "postgresql":
            # SET LOCAL takes no bind parameters; the value is an int.
            timeout_ms = max(1, int(remaining * 1000))
            self.session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _commit(self) -> None:
        if self.autocommit:
            self.session.commit()
        else:
            self.session.flush()

    def _rollback(self) -> None:
        if self.autocommit:
            self.session.rollback()

    @contextmanager
    def _savepoint(self, write: bool):
        if write and not self.autocommit:
            # Undo only this call's changes; the outer transaction stays usable.
            with self.session.begin_nested():
                yield
        else:
            yield

    @contextmanager
    def _storage(self, operation: str, *, write: bool = False):
        try:
            with self._savepoint(write):
                yield
        except SQLAlchemyError as exc:
            self._rollback()
            _LOG.error(
                "storage_failed model=%s operation=%s error=%s",
                self.entity_name,
                operation,
                exc.__class__.__name__,
                exc_info=True,
            )
            detail = str(getattr(exc, "orig", None) or exc)
            raise StorageError(
                f"{self.entity_name} {operation} failed",
                {"entity": self.entity_name, "operation": operation, "detail": detail},
            ) from exc
        except CrudError:
            self._rollback()
            raise

    def _read_back(self, pk: Any, caller: CallerContext):
        # A commit ends the transaction that carried the statement timeout.
        self._checkpoint(caller)
        query = self.builder.apply_eager_loads(self._scoped(caller))
        return query.filter(self.builder.pk == pk).populate_existing().first()

    def _ensure_visible(self, row: Any, caller: CallerContext, operation: str) -> None:
        pk = getattr(row, self.id_field)
        if self._scoped(caller).filter(self.builder.pk == pk).first() is not None:
            return
        _LOG.warning(
            "write_rejected model=%s operation=%s id=%s subject=%s request_id=%s reason=outside_scope",
            self.entity_name,
            operation,
            pk,
            caller.subject,
            caller.request_id,
        )
        raise AuthorizationError(f"{self.entity_name} {operation} would leave the record outside the caller's scope")

    # ---- payloads ----

    def _coerce(self, key: str, value: Any) -> Any:
        column = self._columns[key]
        if value is None:
            if not column.nullable:
                raise ValidationError(f'Field "{key}" cannot be null', {key: "null"})
            return None
        return coerce_column_value(self._attributes[key], value)

    def _is_required(self, key: str) -> bool:
        column = self._columns[key]
        if column.nullable or column.default is not None or column.server_default is not None:
            return False
        if column.primary_key:
            try:
                return column.type.python_type is not int
            except NotImplementedError:
                return True
        return True

    def _check_keys(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be a JSON object")
        unknown = sorted(set(data) - set(self._writable))
        if unknown:
            raise ValidationError(
                "Unknown fields: " + ", ".join(str(key) for key in unknown),
                {str(key): "unknown" for key in unknown},
            )
        return dict(data)

    def _create_values(self, data: Any) -> dict[str, Any]:
        payload = self._check_keys(data)
        missing = sorted(key for key in self._writable if key not in payload and self._is_required(key))
        if missing:
            raise ValidationError("Missing required fields: " + ", ".join(missing), {key: "required" for key in missing})
        return {key: self._coerce(key, value) for key, value in payload.items()}

    def _patch_values(self, pk: Any, data: Any) -> dict[str, Any]:
        payload = self._check_keys(data)
        if self.id_field in payload:
            if self.parse_id(payload.pop(self.id_field)) != pk:
                raise ValidationError("Identifier cannot be changed", {self.id_field: "immutable"})
        if not payload:
            raise ValidationError("No fields to update")
        return {key: self._coerce(key, value) for key, value in payload.items()}

    def _replacement_values(self, pk: Any, data: Any) -> dict[str, Any]:
        payload = self._check_keys(data)
        if self.id_field in payload and self.parse_id(payload.pop(self.id_field)) != pk:
            raise ValidationError("Identifier cannot be changed", {self.id_field: "immutable"})
        values: dict[str, Any] = {}
        missing: list[str] = []
        for key in self._writable:
            if key == self.id_field:
                continue
            if key in payload:
                values[key] = self._coerce(key, payload[key])
                continue
            column = self._columns[key]
            if column.nullable:
                values[key] = None
            elif self._is_required(key):
                missing.append(key)
            # Absent columns with a default keep their stored value.
        if missing:
            raise ValidationError("Missing required fields: " + ", ".join(missing), {key: "required" for key in missing})
        return values

    # ---- reads ----

    def get_one(self, record_id: Any, caller: CallerContext):
        pk = self.parse_id(record_id)
        with self._storage("get_one"):
            self._checkpoint(caller)
            row = self.builder.apply_eager_loads(self._scoped(caller)).filter(self.builder.pk == pk).first()
        if row is None:
            raise NotFoundError(self.entity_name, record_id)
        return row

    def get_many(self, ids: Iterable[Any], caller: CallerContext) -> list[Any]:
        wanted = self._parse_ids(ids)
        if not wanted:
            return []
        with self._storage("get_many"):
            self._checkpoint(caller)
            rows = self.builder.apply_eager_loads(self._scoped(caller)).filter(self.builder.pk.in_(wanted)).all()
        by_id = {getattr(row, self.id_field): row for row in rows}
        return [by_id[pk] for pk in wanted if pk in by_id]

    def get_list(self, request: ListRequest, caller: CallerContext) -> ListResult:
        plan = self.builder.plan(self._scoped(caller), request)
        with self._storage("get_list"):
            self._checkpoint(caller)
            total = plan.count_query.count()
            self._checkpoint(caller)
            items = plan.items_query.all()
        _LOG.debug(
            "list model=%s total=%s page=%s per_page=%s returned=%s",
            self.entity_name,
            total,
            plan.page,
            plan.per_page,
            len(items),
        )
        return ListResult(items=items, total=total, page=plan.page, per_page=plan.per_page)

    def count(self, caller: CallerContext, request: ListRequest | None = None) -> int:
        query = self._scoped(caller)
        if request is not None:
            query = self.builder.apply_filters(query, request.filters)
            query = self.builder.apply_search(query, request.search, request.search_fields)
        with self._storage("count"):
            self._checkpoint(caller)
            return query.order_by(None).count()

    # ---- writes ----

    def create(self, data: Any, caller: CallerContext):
        row = data if isinstance(data, self.model) else self.model(**self._create_values(data))
        with self._storage("create", write=True):
            self._checkpoint(caller)
            self.session.add(row)
            self.session.flush()
            pk = getattr(row, self.id_field)
            self._ensure_visible(row, caller, "create")
            self._commit()
            _LOG.info(
                "record_created model=%s id=%s subject=%s request_id=%s",
                self.entity_name,
                pk,
                caller.subject,
                caller.request_id,
            )
            return self._read_back(pk, caller)

    def _write(self, operation: str, pk: Any, values: dict[str, Any], caller: CallerContext):
        with self._storage(operation, write=True):
            self._checkpoint(caller)
            row = self._scoped(caller).filter(self.builder.pk == pk).first()
            if row is None:
                raise NotFoundError(self.entity_name, pk)
            for key, value in values.items():
                setattr(row, key, value)
            self.session.flush()
            self._ensure_visible(row, caller, operation)
            self._commit()
            _LOG.info(
                "record_%s model=%s id=%s fields=%s subject=%s request_id=%s",
                "updated" if operation == "update" else "saved",
                self.entity_name,
                pk,
                ",".join(sorted(values)),
                caller.subject,
                caller.request_id,
            )
            return self._read_back(pk, caller)

    def update(self, record_id: Any, patch: Any, caller: CallerContext):
        pk = self.parse_id(record_id)
        return self._write("update", pk, self._patch_values(pk, patch), caller)

    def save(self, record_id: Any, data: Any, caller: CallerContext):
        pk = self.parse_id(record_id)
        return self._write("save", pk, self._replacement_values(pk, data), caller)

    def _hard_delete(self, hard: bool | None) -> bool:
        if hard is None:
            hard = self.policy.hard_delete_on_delete
        return bool(hard) or self._soft_delete is None

    def delete(self, record_id: Any, caller: CallerContext, *, hard: bool | None = None) -> int:
        pk = self.parse_id(record_id)
        physical = self._hard_delete(hard)
        with self._storage("delete", write=True):
            self._checkpoint(caller)
            row = self._scoped(caller).filter(self.builder.pk == pk).first()
            if row is None:
                raise NotFoundError(self.entity_name, record_id)
            if physical:
                self.session.delete(row)
            else:
                setattr(row, self._soft_delete.key, utcnow())
            self._commit()
        _LOG.info(
            "record_deleted model=%s id=%s hard=%s subject=%s request_id=%s",
            self.entity_name,
            pk,
            physical,
            caller.subject,
            caller.request_id,
        )
        return 1

    def delete_many(self, ids: Iterable[Any], caller: CallerContext, *, hard: bool | None = None) -> int:
        wanted = self._parse_ids(ids)
        if not wanted:
            return 0
        physical = self._hard_delete(hard)
        with self._storage("delete_many", write=True):
            self._checkpoint(caller)
            visible_query = self._scoped(caller).filter(self.builder.pk.in_(wanted)).with_entities(self.builder.pk)
            visible = [pk for (pk,) in visible_query.all()]
            if not visible:
                return 0
            self._checkpoint(caller)
            target = self.session.query(self.model).filter(self.builder.pk.in_(visible))
            if physical:
                affected = target.delete(synchronize_session="fetch")
            else:
                target = target.filter(self._soft_delete.is_(None))
                affected = target.update({self._soft_delete: utcnow()}, synchronize_session="fetch")
            self._commit()
        _LOG.info(
            "records_deleted model=%s requested=%s affected=%s hard=%s subject=%s request_id=%s",
            self.entity_name,
            len(wanted),
            affected,
            physical,
            caller.subject,
            caller.request_id,
        )
        return affected
