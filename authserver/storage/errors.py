from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the durable or ephemeral store cannot be reached.

    Always an internal fault; the backend error text is kept for logs only.
    """

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend} unavailable: {message}")
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "StoreUnavailable"]
