from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the key-value backend cannot be reached."""

    status_code = 503
    error_code = "storage_unavailable"

    def __init__(
        self,
        message: str = "Service temporarily unavailable. Please try again later.",
        *,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation


__all__ = ["ConstraintViolation", "StorageUnavailable"]
