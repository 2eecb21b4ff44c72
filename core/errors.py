"""Exceptions raised by dashboard operations."""
from __future__ import annotations

from typing import Dict


class DashboardError(Exception):
    """Base class for recoverable operation failures.

    The message is the user-facing text returned to the UI; ``code`` is a
    stable identifier and ``http_status`` the status used by the HTTP layer.
    """

    code = "operation_failed"
    http_status = 400

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> Dict[str, object]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "http_status": self.http_status,
        }


class ValidationError(DashboardError):
    """Raised for malformed or out-of-range input before any mutation."""

    code = "invalid_input"
    http_status = 400


class NotFoundError(DashboardError):
    """Raised when a character, account or task id is unknown."""

    code = "not_found"
    http_status = 404


class InvariantError(DashboardError):
    """Raised when an operation would break a structural rule."""

    code = "invariant_violation"
    http_status = 409


class TaskNotSupportedError(DashboardError):
    """Raised when a task does not allow the requested action."""

    code = "task_not_supported"
    http_status = 400


class InsufficientEnergyError(DashboardError):
    code = "insufficient_energy"
    http_status = 409

    def __init__(self, required: int, available: int) -> None:
        super().__init__("奥德能量不足")
        self.required = int(required)
        self.available = int(available)


class InsufficientAttemptsError(DashboardError):
    code = "insufficient_attempts"
    http_status = 409

    def __init__(self, requested: int, available: int) -> None:
        super().__init__("可用次数不足")
        self.requested = int(requested)
        self.available = int(available)
