from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when Postgres or Redis cannot be reached.

    Callers must never read this as "record absent"; it maps to a 503.
    """

    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailable"]
