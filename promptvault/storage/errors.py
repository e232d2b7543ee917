from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a record-store uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class KVSError(Exception):
    """A key-value store command failed.

    Services catch this and fall back to their "feature disabled" path; it is
    never rendered to a client.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class KVSUnavailable(KVSError):
    """The key-value store could not be reached or did not answer in time."""


__all__ = ["ConstraintViolation", "KVSError", "KVSUnavailable"]
