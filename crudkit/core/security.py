from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from jose import jwt

from crudkit.core.config import settings


def issue_access_token(
    subject: str,
    *,
    tenant_id: Any = None,
    roles: Iterable[str] = (),
    expires_delta: timedelta | None = None,
    secret: str | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    ttl = expires_delta if expires_delta is not None else timedelta(minutes=settings.JWT_TTL_MINUTES)
    data: dict[str, Any] = {
        "sub": str(subject),
        "roles": [str(role) for role in roles],
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    if tenant_id is not None:
        data["tenant_id"] = tenant_id
    return jwt.encode(data, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str, secret: str | None = None) -> dict:
    return jwt.decode(token, secret or settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
