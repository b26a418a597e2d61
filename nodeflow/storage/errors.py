from __future__ import annotations

from typing import Any, Dict, Optional


class DuplicateResultError(Exception):
    """Raised when a node's result is written twice within one run."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["DuplicateResultError"]
