"""Standardized error payloads and typed domain failures."""
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class DomainError(HTTPException):
    """Base class for failures raised by the guardianship and payment services.

    Subclasses fix the HTTP status so that the services can raise them directly
    and the API layer renders them with the shared error payload.
    """

    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.code = code
        self.message = message
        super().__init__(
            status_code=self.status_code_default,
            detail=error_response(code, message, details),
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(DomainError):
    """A referenced guardianship, subscription or payment method is missing."""

    status_code_default = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    """The request collides with an existing active record."""

    status_code_default = status.HTTP_409_CONFLICT


class InvalidStateError(DomainError):
    """The entity is in a state that forbids the requested transition."""

    status_code_default = status.HTTP_400_BAD_REQUEST


class InvalidRequestError(DomainError):
    """The caller supplied values the services refuse (amount, grace days)."""

    status_code_default = status.HTTP_400_BAD_REQUEST


class ExternalProviderError(DomainError):
    """The payment gateway failed; nothing was persisted."""

    status_code_default = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "error_response",
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "InvalidRequestError",
    "ExternalProviderError",
]
