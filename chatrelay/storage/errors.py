from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for store-level failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A write referenced a missing parent row or broke a uniqueness rule."""


class ThreadNotFound(ConstraintViolation):
    """Raised when a message or thread write targets an unknown thread."""

    def __init__(self, thread_id: str):
        super().__init__("thread not found", {"thread_id": thread_id})
        self.thread_id = thread_id


__all__ = ["StorageError", "ConstraintViolation", "ThreadNotFound"]
