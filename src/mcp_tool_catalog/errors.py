"""Structured errors raised by the tool catalog core."""

from __future__ import annotations

from typing import Any, Optional


class CatalogError(Exception):
    error_type = "CATALOG_ERROR"
    recoverable = False

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class InvariantViolationError(CatalogError):
    """Persisted state contradicts a data-model invariant.

    This points at pre-existing corruption; the operation is aborted instead of
    guessing a repair.
    """

    error_type = "INVARIANT_VIOLATION"


class OriginInvariantError(InvariantViolationError):
    """A tool row has more than one origin marker set."""

    error_type = "ORIGIN_INVARIANT_VIOLATION"


class NotFoundError(CatalogError):
    error_type = "NOT_FOUND"
    recoverable = True


class CatalogNotFoundError(NotFoundError):
    error_type = "CATALOG_NOT_FOUND"


class AgentNotFoundError(NotFoundError):
    error_type = "AGENT_NOT_FOUND"


class ToolNotFoundError(NotFoundError):
    error_type = "TOOL_NOT_FOUND"
