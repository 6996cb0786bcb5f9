from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class StoreUnavailable(StorageError):
    """Raised when the backing database cannot be reached or a statement fails."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
