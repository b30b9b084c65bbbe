from __future__ import annotations

import logging
import re
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_LOG = logging.getLogger("crudkit.http")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def request_id_for(raw: str | None) -> str:
    """Reuse a well-formed inbound request id, otherwise mint one."""
    value = str(raw or "").strip()
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid4().hex


def install_http_hardening(app: FastAPI) -> None:
    """Tag each request with an id and log one access line per response.

    ``request.state.request_id`` is read by ``get_caller_context`` so the
    repository's log lines for a call carry the same id. The caller
    dependency also leaves ``request.state.subject`` behind for the access
    line; unauthenticated requests log ``subject=-``.
    """

    @app.middleware("http")
    async def _http_hardening_middleware(request: Request, call_next):
        request.state.request_id = request_id_for(request.headers.get(REQUEST_ID_HEADER))
        request.state.subject = None
        started_at = perf_counter()

        response = await call_next(request)

        response.headers.update(SECURITY_HEADERS)
        # Listings are per-caller and tenant scoped.
        response.headers["Cache-Control"] = "no-store"
        response.headers[REQUEST_ID_HEADER] = request.state.request_id

        _LOG.info(
            "%s %s status=%s duration_ms=%.2f subject=%s request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (perf_counter() - started_at) * 1000.0,
            request.state.subject or "-",
            request.state.request_id,
        )
        return response
