from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for infrastructure failures in the directory or key-value store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StoreError):
    """Backend unreachable, erroring, or slower than the configured timeout."""


class StoreConflict(StoreError):
    """A compare-and-swap kept losing to concurrent writers and gave up."""


__all__ = ["StoreError", "StoreUnavailable", "StoreConflict"]
