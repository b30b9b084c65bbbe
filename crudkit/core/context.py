from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from crudkit.core.errors import OperationCancelledError


@dataclass(frozen=True)
class CallerContext:
    """Identity and cancellation state of whoever issues a repository call.

    Mandatory scopes read the tenant and roles from here; nothing in the
    repository consults ambient or global state.
    """

    subject: str | None = None
    tenant_id: Any = None
    roles: frozenset[str] = frozenset()
    claims: Mapping[str, Any] = field(default_factory=dict)
    deadline: float | None = None
    request_id: str | None = None
    cancel_event: threading.Event | None = field(default=None, compare=False)

    @classmethod
    def from_claims(
        cls,
        claims: Mapping[str, Any],
        *,
        timeout: float | None = None,
        request_id: str | None = None,
    ) -> "CallerContext":
        raw_roles = claims.get("roles") or ()
        if isinstance(raw_roles, str):
            raw_roles = [raw_roles]
        deadline = time.monotonic() + timeout if timeout else None
        return cls(
            subject=str(claims["sub"]) if claims.get("sub") is not None else None,
            tenant_id=claims.get("tenant_id"),
            roles=frozenset(str(role).upper() for role in raw_roles),
            claims=dict(claims),
            deadline=deadline,
            request_id=request_id,
        )

    def has_role(self, role: str) -> bool:
        return role.upper() in self.roles

    def with_timeout(self, seconds: float) -> "CallerContext":
        return replace(self, deadline=time.monotonic() + seconds)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelledError("Request was cancelled by the caller.", {"subject": self.subject})
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise OperationCancelledError("Request deadline exceeded.", {"subject": self.subject})
