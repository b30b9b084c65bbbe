from __future__ import annotations

import logging
from contextlib import contextmanager

import pydantic
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crudkit.core.config import settings
from crudkit.core.errors import (
    AuthorizationError,
    CrudError,
    NotFoundError,
    OperationCancelledError,
    StorageError,
    ValidationError,
)

_LOG = logging.getLogger("crudkit.http")

STORAGE_ERROR_MESSAGE = "Storage operation failed"
CANCELLED_MESSAGE = "Request was cancelled or timed out"
UNEXPECTED_ERROR_MESSAGE = "Request could not be processed"


def status_for(exc: CrudError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    return 400


def detail_for(exc: CrudError) -> str:
    if isinstance(exc, StorageError):
        if settings.EXPOSE_STORAGE_ERRORS:
            return f"{STORAGE_ERROR_MESSAGE}: {exc.context.get('detail') or exc.message}"
        return STORAGE_ERROR_MESSAGE
    if isinstance(exc, OperationCancelledError):
        return CANCELLED_MESSAGE
    return exc.message


def to_http_exception(exc: CrudError) -> HTTPException:
    return HTTPException(status_code=status_for(exc), detail=detail_for(exc))


def format_validation_errors(errors) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request body"


@contextmanager
def translated_errors():
    """Re-raise crudkit and pydantic errors as HTTPException for FastAPI."""
    try:
        yield
    except CrudError as exc:
        if isinstance(exc, (AuthorizationError, OperationCancelledError)):
            _LOG.warning("request_rejected error=%s message=%s", exc.__class__.__name__, exc.message)
        raise to_http_exception(exc) from exc
    except pydantic.ValidationError as exc:
        raise to_http_exception(ValidationError(format_validation_errors(exc.errors()))) from exc


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CrudError)
    async def _crud_error(request: Request, exc: CrudError):
        return JSONResponse(status_code=status_for(exc), content={"detail": detail_for(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": format_validation_errors(exc.errors())})

    # Anything else (a failing transform hook, a driver error outside
    # SQLAlchemy) is still a 400 with a fixed message, never a 500.
    @app.middleware("http")
    async def _unexpected_error(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            _LOG.error(
                "request_failed method=%s path=%s error=%s request_id=%s",
                request.method,
                request.url.path,
                exc.__class__.__name__,
                getattr(request.state, "request_id", "-"),
                exc_info=True,
            )
            return JSONResponse(status_code=400, content={"detail": UNEXPECTED_ERROR_MESSAGE})
