"""Catalog tool reconciliation.

Given the tool list a catalog currently reports, bring the persisted tools of
that catalog in line with it while keeping tool ids stable across renames:

1. upgrade shared tools whose name the catalog now reports
2. load the catalog's tools
3. index them by matching key (see :func:`~mcp_tool_catalog.naming.raw_name_key`)
4. match every desired entry: create, update in place, or unchanged
5. insert new tools and seed their default policies
6. everything loaded but unmatched is an orphan
7. move orphan assignments to the surviving tool with the same key
8. delete orphans

The whole run is one transaction. Phases 3, 4 and 6 are pure and work on the
rows loaded once. Writes are issued as transfer, delete, update, insert so that
a rename or insert never collides with a row that is about to be deleted.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, cast

import structlog
from sqlalchemy import delete as _sa_delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .assignments import AssignmentRepository
from .config import Settings, get_settings
from .db import atomic, ensure_schema, get_session
from .errors import CatalogNotFoundError, InvariantViolationError
from .models import Catalog, Tool, _utcnow_naive
from .naming import DEFAULT_SEPARATOR, raw_name_key, slugify_tool_name
from .origin import ToolOrigin, classify
from .policies import PolicyInitializer, default_policy_initializer

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DesiredTool:
    """One tool as reported by a catalog."""

    name: str
    description: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    raw_name: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DesiredTool:
        """Build from a JSON-style mapping; accepts ``raw_name`` or ``rawName``."""
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"Desired tool entry needs a non-empty 'name': {dict(data)!r}")
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise ValueError(f"'parameters' of tool {name!r} must be an object")
        return cls(
            name=name,
            description=data.get("description"),
            parameters=dict(parameters),
            raw_name=data.get("raw_name") or data.get("rawName"),
        )

    @classmethod
    def for_server(
        cls,
        server_name: str,
        raw_name: str,
        description: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        separator: str = DEFAULT_SEPARATOR,
    ) -> DesiredTool:
        """Entry for a tool named ``raw_name`` by its server; the display name is slugified."""
        return cls(
            name=slugify_tool_name(server_name, raw_name, separator=separator),
            description=description,
            parameters=dict(parameters or {}),
            raw_name=raw_name,
        )

    @classmethod
    def coerce(cls, value: DesiredTool | Mapping[str, Any]) -> DesiredTool:
        if isinstance(value, DesiredTool):
            return value
        return cls.from_mapping(value)


@dataclass(frozen=True)
class ToolSnapshot:
    """Detached view of a tool row, safe to use after the session is gone."""

    id: str
    name: str
    raw_name: Optional[str]
    description: Optional[str]
    parameters: dict[str, Any]
    origin: ToolOrigin
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_tool(cls, tool: Tool) -> ToolSnapshot:
        return cls(
            id=tool.id,
            name=tool.name,
            raw_name=tool.raw_name,
            description=tool.description,
            parameters=dict(tool.parameters or {}),
            origin=classify(tool),
            created_at=tool.created_at,
            updated_at=tool.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "raw_name": self.raw_name,
            "description": self.description,
            "parameters": self.parameters,
            "kind": self.origin.kind.value,
        }


@dataclass
class ReconcileResult:
    created: list[ToolSnapshot] = field(default_factory=list)
    updated: list[ToolSnapshot] = field(default_factory=list)
    unchanged: list[ToolSnapshot] = field(default_factory=list)
    deleted: list[ToolSnapshot] = field(default_factory=list)
    transferred: int = 0

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
            "transferred": self.transferred,
        }

    @property
    def survivors(self) -> list[ToolSnapshot]:
        return [*self.created, *self.updated, *self.unchanged]


@dataclass
class MatchPlan:
    """Outcome of matching desired entries against the loaded tools (phase 4)."""

    to_create: list[DesiredTool] = field(default_factory=list)
    to_update: list[tuple[Tool, DesiredTool]] = field(default_factory=list)
    unchanged: list[Tool] = field(default_factory=list)
    # Matched tool per desired matching key; orphans sharing a key hand their assignments here.
    survivors: dict[str, Tool] = field(default_factory=dict)

    def matched_ids(self) -> set[str]:
        return {tool.id for tool, _ in self.to_update} | {tool.id for tool in self.unchanged}


async def upgrade_shared_tools(session: AsyncSession, catalog_id: str, names: Sequence[str]) -> list[Tool]:
    """Adopt shared tools named in ``names`` into ``catalog_id`` in place, keeping their ids.

    Names the catalog already owns are skipped so the upgrade never collides
    with ``(origin_catalog_id, name)``.
    """
    if not names:
        return []
    taken = set(
        (
            await session.execute(
                select(Tool.name).where(Tool.origin_catalog_id == catalog_id, cast(Any, Tool.name).in_(list(names)))
            )
        ).scalars()
    )
    candidates = [name for name in dict.fromkeys(names) if name not in taken]
    if not candidates:
        return []
    result = await session.execute(
        select(Tool).where(
            cast(Any, Tool.origin_catalog_id).is_(None),
            cast(Any, Tool.origin_agent_id).is_(None),
            cast(Any, Tool.delegates_to_agent_id).is_(None),
            cast(Any, Tool.name).in_(candidates),
        )
    )
    upgraded = list(result.scalars())
    now = _utcnow_naive()
    for tool in upgraded:
        tool.origin_catalog_id = catalog_id
        tool.updated_at = now
    if upgraded:
        await session.flush()
        logger.info("reconcile.shared_tools_upgraded", catalog_id=catalog_id, names=[tool.name for tool in upgraded])
    return upgraded


def _differs(tool: Tool, entry: DesiredTool) -> bool:
    return (
        tool.name != entry.name
        or tool.description != entry.description
        or dict(tool.parameters or {}) != dict(entry.parameters)
        or bool(entry.raw_name and entry.raw_name != tool.raw_name)
    )


def _apply(tool: Tool, entry: DesiredTool) -> None:
    tool.name = entry.name
    tool.description = entry.description
    tool.parameters = dict(entry.parameters)
    if entry.raw_name:
        tool.raw_name = entry.raw_name
    tool.updated_at = _utcnow_naive()


class ToolReconciler:
    """Runs reconciliation for one catalog at a time on a caller-provided session.

    If the session has no open transaction the run commits on success; otherwise
    it runs in a SAVEPOINT and the caller commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        policy_initializer: PolicyInitializer | None = None,
        separator: str | None = None,
    ):
        self.session = session
        self.policy_initializer = policy_initializer or default_policy_initializer()
        self.separator = separator or get_settings().catalog.tool_name_separator
        self.assignments = AssignmentRepository(session)

    def key_for(self, name: str, raw_name: Optional[str] = None) -> str:
        return raw_name_key(name, raw_name, separator=self.separator)

    async def reconcile(
        self, catalog_id: str, desired_tools: Iterable[DesiredTool | Mapping[str, Any]]
    ) -> ReconcileResult:
        desired = [DesiredTool.coerce(entry) for entry in desired_tools]
        desired_keys = self._desired_keys(catalog_id, desired)
        log = logger.bind(catalog_id=catalog_id)
        async with atomic(self.session):
            if await self.session.get(Catalog, catalog_id) is None:
                if desired:
                    raise CatalogNotFoundError(f"Catalog {catalog_id} not found", data={"catalog_id": catalog_id})
                return ReconcileResult()

            upgraded = await upgrade_shared_tools(self.session, catalog_id, [entry.name for entry in desired])
            existing = await self._load_catalog_tools(catalog_id)
            adopted = {tool.name: tool for tool in upgraded}
            index = self._index_by_key(
                [tool for tool in existing if tool.name not in adopted], {entry.name for entry in desired}
            )
            plan = self._match(desired, desired_keys, index, adopted)
            orphans = self._orphans(existing, plan)
            log.debug(
                "reconcile.planned",
                loaded=len(existing),
                upgraded=len(upgraded),
                create=len(plan.to_create),
                update=len(plan.to_update),
                unchanged=len(plan.unchanged),
                orphans=len(orphans),
            )

            result = ReconcileResult()
            result.transferred = await self._transfer_assignments(orphans, plan.survivors)
            result.deleted = await self._delete_orphans(orphans)
            await self._apply_updates(plan.to_update)
            created = await self._insert_staged(catalog_id, plan)

            upgraded_ids = {tool.id for tool in upgraded}
            result.updated = [ToolSnapshot.from_tool(tool) for tool, _ in plan.to_update]
            for tool in plan.unchanged:
                # Origin changed in phase 1 even when no field did.
                if tool.id in upgraded_ids:
                    result.updated.append(ToolSnapshot.from_tool(tool))
                else:
                    result.unchanged.append(ToolSnapshot.from_tool(tool))
            result.created = [ToolSnapshot.from_tool(tool) for tool in created]
        return result

    def _desired_keys(self, catalog_id: str, desired: Sequence[DesiredTool]) -> list[str]:
        keys: list[str] = []
        seen: dict[str, str] = {}
        for entry in desired:
            key = self.key_for(entry.name, entry.raw_name)
            if key in seen:
                raise InvariantViolationError(
                    f"Desired tools {seen[key]!r} and {entry.name!r} share matching key {key!r}",
                    data={"catalog_id": catalog_id, "key": key, "names": [seen[key], entry.name]},
                )
            seen[key] = entry.name
            keys.append(key)
        return keys

    async def _load_catalog_tools(self, catalog_id: str) -> list[Tool]:
        """Phase 2, ordered so that "first seen" is stable between runs."""
        result = await self.session.execute(
            select(Tool).where(Tool.origin_catalog_id == catalog_id).order_by(Tool.created_at, Tool.id)
        )
        tools = list(result.scalars())
        for tool in tools:
            classify(tool)
        return tools

    def _index_by_key(self, existing: Sequence[Tool], desired_names: set[str]) -> dict[str, Tool]:
        """Phase 3. On a key collision an exact desired-name match wins, else the first seen."""
        index: dict[str, Tool] = {}
        for tool in existing:
            key = self.key_for(tool.name, tool.raw_name)
            current = index.get(key)
            if current is None or (current.name not in desired_names and tool.name in desired_names):
                index[key] = tool
        return index

    def _match(
        self,
        desired: Sequence[DesiredTool],
        keys: Sequence[str],
        index: Mapping[str, Tool],
        adopted: Optional[Mapping[str, Tool]] = None,
    ) -> MatchPlan:
        """Phase 4.

        A shared tool adopted in phase 1 belongs to the entry carrying its name,
        whatever that entry's key; every other entry is matched by key.
        """
        adopted = adopted or {}
        plan = MatchPlan()
        for entry, key in zip(desired, keys):
            tool = adopted.get(entry.name) or index.get(key)
            if tool is None:
                plan.to_create.append(entry)
                continue
            if _differs(tool, entry):
                plan.to_update.append((tool, entry))
            else:
                plan.unchanged.append(tool)
            plan.survivors[key] = tool
        return plan

    @staticmethod
    def _orphans(existing: Sequence[Tool], plan: MatchPlan) -> list[Tool]:
        """Phase 6."""
        matched = plan.matched_ids()
        return [tool for tool in existing if tool.id not in matched]

    async def _transfer_assignments(self, orphans: Sequence[Tool], survivors_by_key: Mapping[str, Tool]) -> int:
        """Phase 7.

        Only matched tools can share a key with an orphan: a created entry's key
        had no loaded tool by definition.
        """
        moved = 0
        for orphan in orphans:
            survivor = survivors_by_key.get(self.key_for(orphan.name, orphan.raw_name))
            if survivor is None or survivor.id == orphan.id:
                continue
            moved += await self.assignments.transfer(orphan.id, survivor.id)
        return moved

    async def _delete_orphans(self, orphans: Sequence[Tool]) -> list[ToolSnapshot]:
        """Phase 8. Assignment and policy rows cascade with the tool."""
        if not orphans:
            return []
        snapshots = [ToolSnapshot.from_tool(tool) for tool in orphans]
        await self.session.execute(
            _sa_delete(Tool).where(cast(Any, Tool.id).in_([tool.id for tool in orphans]))
        )
        return snapshots

    async def _apply_updates(self, updates: Sequence[tuple[Tool, DesiredTool]]) -> None:
        """Phase 4 writes.

        Renames among the matched tools may swap names; when a target name is
        still held by another renamed tool, park every renamed row on a unique
        placeholder first so no intermediate state violates ``(catalog, name)``.
        """
        if not updates:
            return
        renamed = [(tool, entry) for tool, entry in updates if tool.name != entry.name]
        held = {tool.name for tool, _ in renamed}
        if any(entry.name in held for _, entry in renamed):
            for tool, _ in renamed:
                tool.name = f"~{tool.id}"
            await self.session.flush()
        for tool, entry in updates:
            _apply(tool, entry)
        await self.session.flush()

    async def _insert_staged(self, catalog_id: str, plan: MatchPlan) -> list[Tool]:
        """Phase 5. Each insert gets its own SAVEPOINT so a lost race only undoes that row."""
        created: list[Tool] = []
        for entry in plan.to_create:
            tool = Tool(
                name=entry.name,
                raw_name=entry.raw_name,
                origin_catalog_id=catalog_id,
                description=entry.description,
                parameters=dict(entry.parameters),
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(tool)
            except IntegrityError:
                winner = await self._find_by_catalog_name(catalog_id, entry.name)
                if winner is None:
                    raise
                logger.info("reconcile.insert_conflict", catalog_id=catalog_id, tool=entry.name, tool_id=winner.id)
                if _differs(winner, entry):
                    _apply(winner, entry)
                    await self.session.flush()
                    plan.to_update.append((winner, entry))
                else:
                    plan.unchanged.append(winner)
                continue
            await self.policy_initializer.on_tool_created(self.session, tool.id)
            created.append(tool)
        return created

    async def _find_by_catalog_name(self, catalog_id: str, name: str) -> Tool | None:
        result = await self.session.execute(
            select(Tool).where(Tool.origin_catalog_id == catalog_id, Tool.name == name)
        )
        return result.scalars().first()


async def reconcile_catalog_tools(
    catalog_id: str,
    tools: Sequence[DesiredTool | Mapping[str, Any]],
    *,
    policy_initializer: PolicyInitializer | None = None,
    settings: Settings | None = None,
) -> ReconcileResult:
    """Reconcile ``catalog_id`` in a session and transaction of its own.

    Store errors, SQLite lock timeouts included, propagate unchanged with the
    transaction rolled back; nothing is retried.
    """
    resolved = settings or get_settings()
    await ensure_schema(resolved)
    async with get_session() as session:
        reconciler = ToolReconciler(
            session,
            policy_initializer=policy_initializer or default_policy_initializer(resolved),
            separator=resolved.catalog.tool_name_separator,
        )
        result = await reconciler.reconcile(catalog_id, tools)
    logger.info("reconcile.completed", catalog_id=catalog_id, **result.summary())
    return result
