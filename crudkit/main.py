from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crudkit.api.crud_router import Transform, build_crud_router
from crudkit.api.errors import install_error_handlers
from crudkit.core.config import settings
from crudkit.core.deps import get_caller_context
from crudkit.core.http_hardening import install_http_hardening
from crudkit.db.session import get_db
from crudkit.services.policy import FieldAuthorizationPolicy


@dataclass(frozen=True)
class Resource:
    prefix: str
    model: type
    policy: FieldAuthorizationPolicy
    transform: Optional[Transform] = None
    id_field: str = "id"
    tags: tuple[str, ...] = ()


def create_app(
    resources: Iterable[Resource] = (),
    *,
    get_db_dependency: Callable[..., Any] = get_db,
    get_caller_dependency: Callable[..., Any] = get_caller_context,
    api_prefix: str = "/api",
) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version="0.1.0")
    # Middleware added later wraps earlier middleware: hardening sees every
    # response, including the 400 produced for unexpected errors.
    install_error_handlers(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_http_hardening(app)

    for resource in resources:
        router = build_crud_router(
            resource.model,
            resource.policy,
            get_db=get_db_dependency,
            get_caller=get_caller_dependency,
            transform=resource.transform,
            id_field=resource.id_field,
            default_per_page=settings.DEFAULT_PER_PAGE,
        )
        prefix = "/" + resource.prefix.strip("/")
        app.include_router(router, prefix=api_prefix.rstrip("/") + prefix, tags=list(resource.tags) or None)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
