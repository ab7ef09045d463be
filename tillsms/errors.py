"""
Error taxonomy for the dashboard API.

Every error raised by the services is an AppError carrying the HTTP status it
maps to. main.py converts them to {"status": "error", "message": ...} bodies.
"""

from typing import Any, Optional


class AppError(Exception):
    """Base error with an HTTP status code and optional extra response fields."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None, payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}


class ValidationError(AppError):
    """Bad or missing input."""
    status_code = 400


class Unauthenticated(AppError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized", **kwargs):
        super().__init__(message, **kwargs)


class Forbidden(AppError):
    """Authenticated but not on the allow-list."""
    status_code = 403

    def __init__(self, message: str = "Forbidden", **kwargs):
        super().__init__(message, **kwargs)


class NotFound(AppError):
    status_code = 404

    def __init__(self, message: str = "Not found", **kwargs):
        super().__init__(message, **kwargs)


class NoMatchingTransactions(NotFound):
    def __init__(self, message: str = "No matching transactions", **kwargs):
        super().__init__(message, **kwargs)


class NoValidPhones(NotFound):
    def __init__(self, message: str = "No valid phone numbers found", **kwargs):
        super().__init__(message, **kwargs)


class DispatchInProgress(AppError):
    """Another dispatch currently holds the campaign."""
    status_code = 409


class ScanTooLarge(AppError):
    """Matched row count exceeds the configured scan ceiling."""
    status_code = 413

    def __init__(self, total: int, max_rows: int, message: Optional[str] = None, **kwargs):
        super().__init__(
            message or f"Too many transactions ({total}). Narrow filters or increase maxScan.",
            **kwargs,
        )
        self.total = total
        self.max_rows = max_rows
        self.payload.setdefault("total", total)
        self.payload.setdefault("maxScan", max_rows)


class UpstreamError(AppError):
    """A store or gateway call failed."""
    status_code = 500


class SmsGatewayError(UpstreamError):
    """FluxSMS call failed: transport error, non-2xx status or an error body."""


class SchemaMismatch(AppError):
    """The transactions schema lacks a column we need (e.g. the till column)."""
    status_code = 500
