"""Tool origin classification.

A tool row carries three nullable origin columns, but only one of four shapes is
legal. Everything above the storage layer works with :data:`ToolOrigin` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Union

from .errors import OriginInvariantError


class ToolKind(str, Enum):
    SHARED = "shared"
    PROXY_DISCOVERED = "proxy_discovered"
    CATALOG_SOURCED = "catalog_sourced"
    DELEGATION = "delegation"


@dataclass(frozen=True, slots=True)
class SharedOrigin:
    """Built-in or proxy-sniffed tool shared by every agent."""

    @property
    def kind(self) -> ToolKind:
        return ToolKind.SHARED


@dataclass(frozen=True, slots=True)
class ProxyDiscoveredOrigin:
    """Tool privately discovered for a single agent."""

    agent_id: str

    @property
    def kind(self) -> ToolKind:
        return ToolKind.PROXY_DISCOVERED


@dataclass(frozen=True, slots=True)
class CatalogSourcedOrigin:
    catalog_id: str

    @property
    def kind(self) -> ToolKind:
        return ToolKind.CATALOG_SOURCED


@dataclass(frozen=True, slots=True)
class DelegationOrigin:
    """Handle an agent uses to hand a task to ``target_agent_id``."""

    target_agent_id: str

    @property
    def kind(self) -> ToolKind:
        return ToolKind.DELEGATION


ToolOrigin = Union[SharedOrigin, ProxyDiscoveredOrigin, CatalogSourcedOrigin, DelegationOrigin]

SHARED = SharedOrigin()


class _HasOriginColumns(Protocol):
    id: Any
    name: Any
    origin_agent_id: Any
    origin_catalog_id: Any
    delegates_to_agent_id: Any


def classify(tool: _HasOriginColumns) -> ToolOrigin:
    """Return the origin of ``tool``; raise :class:`OriginInvariantError` if it has more than one."""
    markers = {
        "origin_agent_id": tool.origin_agent_id,
        "origin_catalog_id": tool.origin_catalog_id,
        "delegates_to_agent_id": tool.delegates_to_agent_id,
    }
    present = {column: value for column, value in markers.items() if value is not None}
    if len(present) > 1:
        raise OriginInvariantError(
            f"Tool {tool.name!r} has more than one origin marker set",
            data={"tool_id": tool.id, "markers": sorted(present)},
        )
    if tool.origin_catalog_id is not None:
        return CatalogSourcedOrigin(tool.origin_catalog_id)
    if tool.origin_agent_id is not None:
        return ProxyDiscoveredOrigin(tool.origin_agent_id)
    if tool.delegates_to_agent_id is not None:
        return DelegationOrigin(tool.delegates_to_agent_id)
    return SHARED


def origin_columns(origin: ToolOrigin) -> dict[str, str | None]:
    """Storage columns for ``origin`` (inverse of :func:`classify`)."""
    columns: dict[str, str | None] = {
        "origin_agent_id": None,
        "origin_catalog_id": None,
        "delegates_to_agent_id": None,
    }
    if isinstance(origin, CatalogSourcedOrigin):
        columns["origin_catalog_id"] = origin.catalog_id
    elif isinstance(origin, ProxyDiscoveredOrigin):
        columns["origin_agent_id"] = origin.agent_id
    elif isinstance(origin, DelegationOrigin):
        columns["delegates_to_agent_id"] = origin.target_agent_id
    return columns
