from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint would be violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaError(RuntimeError):
    """Raised when the database is missing tables the store relies on."""


__all__ = ["ConstraintViolation", "SchemaError"]
