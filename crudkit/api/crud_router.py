from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Session

from crudkit.api.errors import translated_errors
from crudkit.core.context import CallerContext
from crudkit.core.deps import get_caller_context
from crudkit.core.errors import ValidationError
from crudkit.db.session import get_db as default_get_db
from crudkit.schemas.listing import AffectedEnvelope, DataEnvelope, IdsPayload, ListEnvelope, RefineListRequest
from crudkit.services.policy import FieldAuthorizationPolicy
from crudkit.services.repository import ListResult, Repository
from crudkit.services.request_adapter import adapt_list_request, parse_ids, parse_list_query

Transform = Callable[[Any, CallerContext], Any]


def serialize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: serialize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def row_to_dict(row: Any) -> dict[str, Any]:
    mapper = sa_inspect(type(row))
    return {prop.key: serialize_value(getattr(row, prop.key)) for prop in mapper.column_attrs}


def build_crud_router(
    model: type,
    policy: FieldAuthorizationPolicy,
    *,
    get_db: Callable = default_get_db,
    get_caller: Callable = get_caller_context,
    transform: Optional[Transform] = None,
    id_field: str = "id",
    default_per_page: Optional[int] = None,
) -> APIRouter:
    """Expose list/get/create/update/save/delete endpoints for one model.

    Static paths (``/list``, ``/many``, ``/getMany``, ``/deleteMany``) are
    registered before ``/{record_id}`` so they are never read as ids.
    """
    # Fail at wiring time rather than on the first request.
    policy.validate_for(model)

    router = APIRouter()

    def repository(db: Session) -> Repository:
        return Repository(model, policy, db, id_field=id_field)

    def render(row: Any, caller: CallerContext) -> Any:
        if transform is not None:
            return serialize_value(transform(row, caller))
        return row_to_dict(row)

    def list_envelope(result: ListResult, caller: CallerContext) -> dict[str, Any]:
        return {"data": [render(row, caller) for row in result.items], "total": result.total}

    def run_list(wire: RefineListRequest, db: Session, caller: CallerContext) -> dict[str, Any]:
        request = adapt_list_request(wire, default_per_page)
        return list_envelope(repository(db).get_list(request, caller), caller)

    @router.get("/", response_model=ListEnvelope)
    def list_records(
        request: Request,
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            wire = parse_list_query(request.query_params.multi_items())
            return run_list(wire, db, caller)

    @router.post("/list", response_model=ListEnvelope)
    def list_records_by_body(
        payload: Optional[dict[str, Any]] = Body(default=None),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            wire = RefineListRequest.model_validate(payload or {})
            return run_list(wire, db, caller)

    @router.post("/", response_model=DataEnvelope)
    def create_record(
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            row = repository(db).create(payload, caller)
            return {"data": render(row, caller)}

    @router.get("/many", response_model=DataEnvelope)
    def get_many_records(
        request: Request,
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            ids = parse_ids(request.query_params.multi_items())
            if not ids:
                raise ValidationError("ids required", {"ids": "required"})
            rows = repository(db).get_many(ids, caller)
            return {"data": [render(row, caller) for row in rows]}

    @router.post("/getMany", response_model=DataEnvelope)
    def get_many_records_by_body(
        payload: Optional[dict[str, Any]] = Body(default=None),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            ids = IdsPayload.model_validate(payload or {}).ids
            rows = repository(db).get_many(ids, caller)
            return {"data": [render(row, caller) for row in rows]}

    @router.post("/deleteMany", response_model=AffectedEnvelope)
    def delete_many_records(
        payload: Optional[dict[str, Any]] = Body(default=None),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            ids = IdsPayload.model_validate(payload or {}).ids
            return {"data": repository(db).delete_many(ids, caller)}

    @router.get("/{record_id}", response_model=DataEnvelope)
    def get_record(
        record_id: str,
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            return {"data": render(repository(db).get_one(record_id, caller), caller)}

    @router.patch("/{record_id}", response_model=DataEnvelope)
    def update_record(
        record_id: str,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            return {"data": render(repository(db).update(record_id, payload, caller), caller)}

    @router.put("/{record_id}", response_model=DataEnvelope)
    def save_record(
        record_id: str,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            return {"data": render(repository(db).save(record_id, payload, caller), caller)}

    @router.delete("/{record_id}", response_model=AffectedEnvelope)
    def delete_record(
        record_id: str,
        db: Session = Depends(get_db),
        caller: CallerContext = Depends(get_caller),
    ):
        with translated_errors():
            return {"data": repository(db).delete(record_id, caller)}

    return router
