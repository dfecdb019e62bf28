from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateTokenError(ConstraintViolation):
    """A refresh token value collided with an existing record."""

    def __init__(self, detail: Optional[Dict[str, Any]] = None):
        super().__init__("refresh token already exists", detail or {"field": "token"})


__all__ = ["ConstraintViolation", "DuplicateTokenError"]
