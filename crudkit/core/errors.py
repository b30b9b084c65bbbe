"""Error taxonomy shared by the repository and the HTTP adapters.

Every error carries a human readable ``message`` and a JSON-serializable
``context``. The transport maps the class to a status code; callers never
need to parse the message.
"""

from __future__ import annotations

from typing import Any


class CrudError(Exception):
    """Base exception for all crudkit errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(CrudError):
    """Policy or repository wiring does not match the mapped model."""


class AuthorizationError(CrudError):
    """A filter, operator or sort key outside the policy allow-list."""

    def __init__(self, message: str, *, field: str | None = None, operator: str | None = None) -> None:
        context: dict[str, Any] = {}
        if field is not None:
            context["field"] = field
        if operator is not None:
            context["operator"] = operator
        super().__init__(message, context)
        self.field = field
        self.operator = operator


class ValidationError(CrudError):
    """Malformed value, payload or identifier."""

    def __init__(self, message: str, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message, {"field_errors": field_errors or {}})
        self.field_errors = field_errors or {}


class NotFoundError(CrudError):
    """Record is missing or hidden from the caller by a mandatory scope."""

    def __init__(self, entity_name: str, record_id: Any) -> None:
        message = f"{entity_name} '{record_id}' not found."
        super().__init__(message, {"entity": entity_name, "id": str(record_id)})
        self.entity_name = entity_name
        self.record_id = record_id


class StorageError(CrudError):
    """The database rejected or failed to run a statement."""


class OperationCancelledError(CrudError):
    """The caller's deadline passed or the caller cancelled the request."""
