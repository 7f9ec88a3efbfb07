"""Tool identity reconciliation and scoped agent visibility."""

from __future__ import annotations

from .errors import (
    AgentNotFoundError,
    CatalogError,
    CatalogNotFoundError,
    InvariantViolationError,
    OriginInvariantError,
    ToolNotFoundError,
)
from .origin import (
    CatalogSourcedOrigin,
    DelegationOrigin,
    ProxyDiscoveredOrigin,
    SharedOrigin,
    ToolKind,
    ToolOrigin,
    classify,
)
from .reconcile import DesiredTool, ReconcileResult, ToolReconciler, ToolSnapshot, reconcile_catalog_tools

__all__ = [
    "AgentNotFoundError",
    "CatalogError",
    "CatalogNotFoundError",
    "CatalogSourcedOrigin",
    "DelegationOrigin",
    "DesiredTool",
    "InvariantViolationError",
    "OriginInvariantError",
    "ProxyDiscoveredOrigin",
    "ReconcileResult",
    "SharedOrigin",
    "ToolKind",
    "ToolNotFoundError",
    "ToolOrigin",
    "ToolReconciler",
    "ToolSnapshot",
    "classify",
    "reconcile_catalog_tools",
]
