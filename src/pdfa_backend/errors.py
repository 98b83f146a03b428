"""
Typed errors raised by the quota, job and expansion components.

Every error is scoped to one quota check, one job or one request; none of
them is fatal to the process. The HTTP layer maps ``PdfaError`` subclasses to
JSON responses using ``code`` and ``http_status``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class PdfaError(Exception):
    """Base class for domain errors."""

    code = "error"
    http_status = 400

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data: Dict[str, Any] = data or {}


class QuotaExceeded(PdfaError):
    """Not enough remaining conversions for the requested work."""

    code = "quota_exceeded"
    http_status = 429

    def __init__(self, remaining: int, limit: int, used: int, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or f"Insufficient quota: {remaining} conversion(s) remaining today (daily limit {limit}). "
            "Try again tomorrow or request a limit expansion.",
            data={"remaining_conversions": remaining, "daily_limit": limit, "used_today": used},
        )
        self.remaining = remaining
        self.limit = limit
        self.used = used


class DuplicatePending(PdfaError):
    code = "duplicate_pending"
    http_status = 409


class AlreadyExpanded(PdfaError):
    code = "already_expanded"
    http_status = 409


class InvalidState(PdfaError):
    """An illegal state transition was attempted."""

    code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, current: Optional[str] = None) -> None:
        super().__init__(message, data={"current_status": current} if current else None)
        self.current = current


class NotFound(PdfaError):
    """Absent, or owned by another identity."""

    code = "not_found"
    http_status = 404


class RendererFailure(PdfaError):
    code = "renderer_failure"
    http_status = 422


class ValidationFailure(PdfaError):
    code = "validation_failure"
    http_status = 422
