"""
API error types and the JSON error envelope.

Routes raise an ``ApiError`` subclass; the handler registered in
``app.main`` renders it as ``{"error": message}`` plus ``"details"`` when
one is attached.  HTTP status communicates the class of failure.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Union

from fastapi import status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError


class ApiError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class MissingInputError(ApiError):
    """A required field is absent; never reaches a downstream component."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnknownActionError(ApiError):
    """An action / type selector is not recognised."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidInputError(ApiError):
    """Present but malformed input (bad JSON, out-of-range options, ...)."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ApiError):
    status_code = status.HTTP_404_NOT_FOUND


class PayloadTooLargeError(ApiError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class ProcessingFailureError(ApiError):
    """Any failure from parsing, generation, retrieval or the model call."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_details(exc: BaseException, fallback: str = "Unknown error") -> str:
    """Short human-readable message for *exc*; never a stack trace."""
    message = str(exc).strip()
    return message or fallback


def validation_details(exc: Union[ValidationError, RequestValidationError]) -> str:
    """``field: message`` pairs from a validation error, joined by '; '."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid input"
