from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised when the key-value backend could not complete an operation.

    Internal to the core: callers translate it according to their failure
    policy (revocation checks reject, rate limiting admits).
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
