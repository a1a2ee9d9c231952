"""Typed CRM errors.

Services raise these after rolling back their session; the API layer maps
them to HTTP responses carrying the message key so callers can localize.
"""

from __future__ import annotations

from typing import Any


class CRMError(Exception):
    code = "CRM_ERROR"
    status_code = 400

    def __init__(self, message_key: str, details: dict[str, Any] | None = None) -> None:
        self.message_key = message_key
        self.details = details or {}
        super().__init__(message_key)


class NotFoundError(CRMError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationError(CRMError):
    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(
        self,
        message_key: str,
        fields: dict[str, str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.fields = fields or {}
        merged = dict(details or {})
        if self.fields:
            merged["fields"] = self.fields
        super().__init__(message_key, merged)


class ConflictError(CRMError):
    code = "CONFLICT"
    status_code = 409
