from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised when a backing store (e.g. Redis) cannot serve a request."""

    def __init__(self, operation: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(f"store unavailable during {operation}")
        self.operation = operation
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
