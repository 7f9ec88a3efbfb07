"""Tool repository: single and bulk create-if-absent, delegation tools, scoped reads."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, cast

import structlog
from sqlalchemy import asc as _sa_asc, case, delete as _sa_delete, desc as _sa_desc, func, or_, select, update as _sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .assignments import AssignmentRepository
from .config import get_settings
from .db import atomic
from .errors import AgentNotFoundError, CatalogNotFoundError
from .models import Agent, AgentTool, Catalog, Tool, _utcnow_naive
from .naming import delegation_tool_name
from .origin import (
    SHARED,
    CatalogSourcedOrigin,
    DelegationOrigin,
    ProxyDiscoveredOrigin,
    SharedOrigin,
    ToolOrigin,
    origin_columns,
)
from .policies import PolicyInitializer, default_policy_initializer
from .reconcile import DesiredTool, upgrade_shared_tools
from .visibility import VisibilityResolver

logger = structlog.get_logger(__name__)

DELEGATION_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "message": {
            "type": "string",
            "description": "The task or message to send to the agent",
        },
    },
    "required": ["message"],
}


@dataclass(frozen=True)
class ToolCreate:
    name: str
    origin: ToolOrigin = SHARED
    description: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)
    raw_name: Optional[str] = None


@dataclass
class ToolWithAgents:
    tool: Tool
    assigned_agents: list[tuple[str, str]]

    @property
    def assigned_agent_count(self) -> int:
        return len(self.assigned_agents)


@dataclass(frozen=True)
class AssignmentView:
    """An agent assignment as embedded in :class:`ToolWithAssignments`."""

    agent_tool_id: str
    agent_id: str
    agent_name: str
    response_modifier_template: Optional[str]
    credential_source_server_id: Optional[str]
    execution_source_server_id: Optional[str]
    use_dynamic_team_credential: bool

    @classmethod
    def from_row(cls, link: AgentTool, agent_name: str) -> AssignmentView:
        return cls(
            agent_tool_id=link.id,
            agent_id=link.agent_id,
            agent_name=agent_name,
            response_modifier_template=link.response_modifier_template,
            credential_source_server_id=link.credential_source_server_id,
            execution_source_server_id=link.execution_source_server_id,
            use_dynamic_team_credential=link.use_dynamic_team_credential,
        )


@dataclass
class ToolWithAssignments:
    tool: Tool
    assignment_count: int
    assignments: list[AssignmentView]


@dataclass
class PaginatedTools:
    items: list[ToolWithAssignments]
    total: int
    limit: int
    offset: int

    @property
    def has_next(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass(frozen=True)
class DelegationTool:
    tool: Tool
    target_agent: Agent


def _shared_clause() -> list[Any]:
    return [
        cast(Any, Tool.origin_catalog_id).is_(None),
        cast(Any, Tool.origin_agent_id).is_(None),
        cast(Any, Tool.delegates_to_agent_id).is_(None),
    ]


def _scope_clause(origin: ToolOrigin, name: str) -> list[Any]:
    """WHERE clause of the uniqueness scope ``origin`` implies for a tool called ``name``."""
    if isinstance(origin, CatalogSourcedOrigin):
        return [Tool.origin_catalog_id == origin.catalog_id, Tool.name == name]
    if isinstance(origin, ProxyDiscoveredOrigin):
        return [
            cast(Any, Tool.origin_catalog_id).is_(None),
            Tool.origin_agent_id == origin.agent_id,
            Tool.name == name,
        ]
    if isinstance(origin, DelegationOrigin):
        return [Tool.delegates_to_agent_id == origin.target_agent_id]
    return [*_shared_clause(), Tool.name == name]


class ToolRepository:
    def __init__(
        self,
        session: AsyncSession,
        *,
        policy_initializer: PolicyInitializer | None = None,
    ):
        self.session = session
        self.policy_initializer = policy_initializer or default_policy_initializer()
        self.assignments = AssignmentRepository(session)

    # --- writes ---------------------------------------------------------------------------------

    async def _find_scoped(self, origin: ToolOrigin, name: str) -> Tool | None:
        result = await self.session.execute(select(Tool).where(*_scope_clause(origin, name)).limit(1))
        return result.scalars().first()

    async def _insert(self, create: ToolCreate) -> Tool:
        """Insert in a SAVEPOINT; a lost uniqueness race returns the row that won."""
        tool = Tool(
            name=create.name,
            raw_name=create.raw_name,
            description=create.description,
            parameters=dict(create.parameters),
            **origin_columns(create.origin),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(tool)
        except IntegrityError:
            existing = await self._find_scoped(create.origin, create.name)
            if existing is not None:
                logger.info("tools.insert_conflict", tool=create.name, tool_id=existing.id)
                return existing
            raise
        await self.policy_initializer.on_tool_created(self.session, tool.id)
        return tool

    async def create_if_absent(self, create: ToolCreate) -> Tool:
        """Return the tool ``create`` describes within its origin scope, creating it if needed.

        A catalog-sourced request first adopts a shared tool of the same name,
        keeping its id. The adopted row keeps its description unless one is
        supplied and its parameters unless non-empty ones are supplied.
        """
        async with atomic(self.session):
            existing = await self._find_scoped(create.origin, create.name)
            if existing is not None:
                return existing
            if isinstance(create.origin, CatalogSourcedOrigin):
                catalog_id = create.origin.catalog_id
                if await self.session.get(Catalog, catalog_id) is None:
                    raise CatalogNotFoundError(f"Catalog {catalog_id} not found", data={"catalog_id": catalog_id})
                shared = await self._find_scoped(SHARED, create.name)
                if shared is not None:
                    shared.origin_catalog_id = catalog_id
                    if create.description is not None:
                        shared.description = create.description
                    if create.parameters:
                        shared.parameters = dict(create.parameters)
                    if create.raw_name:
                        shared.raw_name = create.raw_name
                    shared.updated_at = _utcnow_naive()
                    await self.session.flush()
                    logger.info("tools.shared_tool_upgraded", tool_id=shared.id, catalog_id=catalog_id)
                    return shared
            return await self._insert(create)

    async def bulk_create_if_absent(
        self, catalog_id: str, tools: Sequence[DesiredTool | Mapping[str, Any]]
    ) -> list[Tool]:
        """Create-if-absent for a whole catalog by exact name; never renames or deletes.

        Returns one row per input entry, in input order.
        """
        entries = [DesiredTool.coerce(tool) for tool in tools]
        if not entries:
            return []
        names = [entry.name for entry in entries]
        async with atomic(self.session):
            if await self.session.get(Catalog, catalog_id) is None:
                raise CatalogNotFoundError(f"Catalog {catalog_id} not found", data={"catalog_id": catalog_id})
            await upgrade_shared_tools(self.session, catalog_id, names)
            result = await self.session.execute(
                select(Tool).where(Tool.origin_catalog_id == catalog_id, cast(Any, Tool.name).in_(names))
            )
            by_name = {tool.name: tool for tool in result.scalars()}
            for entry in entries:
                if entry.name in by_name:
                    continue
                by_name[entry.name] = await self._insert(
                    ToolCreate(
                        name=entry.name,
                        origin=CatalogSourcedOrigin(catalog_id),
                        description=entry.description,
                        parameters=entry.parameters,
                        raw_name=entry.raw_name,
                    )
                )
        return [by_name[name] for name in names]

    async def bulk_create_proxy_tools_if_absent(
        self, tools: Sequence[DesiredTool | Mapping[str, Any]]
    ) -> list[Tool]:
        """Create shared tools for names seen by the proxy.

        A name some catalog already owns is left to that catalog: nothing is
        created for it and it is not returned.
        """
        entries = [DesiredTool.coerce(tool) for tool in tools]
        if not entries:
            return []
        names = [entry.name for entry in entries]
        async with atomic(self.session):
            catalog_names = set(
                (
                    await self.session.execute(
                        select(Tool.name).where(
                            cast(Any, Tool.origin_catalog_id).is_not(None), cast(Any, Tool.name).in_(names)
                        )
                    )
                ).scalars()
            )
            result = await self.session.execute(
                select(Tool).where(*_shared_clause(), cast(Any, Tool.name).in_(names))
            )
            by_name = {tool.name: tool for tool in result.scalars()}
            for entry in entries:
                if entry.name in by_name or entry.name in catalog_names:
                    continue
                by_name[entry.name] = await self._insert(
                    ToolCreate(name=entry.name, description=entry.description, parameters=entry.parameters)
                )
        return [by_name[name] for name in names if name in by_name]

    async def find_or_create_delegation_tool(self, target_agent_id: str) -> Tool:
        async with atomic(self.session):
            existing = await self.find_delegation_tool(target_agent_id)
            if existing is not None:
                return existing
            agent = await self.session.get(Agent, target_agent_id)
            if agent is None:
                raise AgentNotFoundError(
                    f"Target agent not found: {target_agent_id}", data={"agent_id": target_agent_id}
                )
            return await self._insert(
                ToolCreate(
                    name=delegation_tool_name(agent.name, prefix=get_settings().catalog.delegation_tool_prefix),
                    origin=DelegationOrigin(target_agent_id),
                    description=f"Delegate task to agent: {agent.name}",
                    parameters=DELEGATION_PARAMETERS,
                )
            )

    async def sync_delegation_tool_names(self, target_agent_id: str, new_name: str) -> int:
        """Rename the delegation tool of an agent that was itself renamed."""
        async with atomic(self.session):
            result = await self.session.execute(
                _sa_update(Tool)
                .where(Tool.delegates_to_agent_id == target_agent_id)
                .values(
                    name=delegation_tool_name(new_name, prefix=get_settings().catalog.delegation_tool_prefix),
                    description=f"Delegate task to agent: {new_name}",
                    updated_at=_utcnow_naive(),
                )
            )
        return result.rowcount or 0

    async def delete(self, tool_id: str) -> bool:
        """Delete a tool unless a catalog owns it; catalog tools only go through reconciliation."""
        async with atomic(self.session):
            result = await self.session.execute(
                _sa_delete(Tool).where(Tool.id == tool_id, cast(Any, Tool.origin_catalog_id).is_(None))
            )
        return bool(result.rowcount)

    async def delete_by_catalog_id(self, catalog_id: str) -> int:
        async with atomic(self.session):
            result = await self.session.execute(_sa_delete(Tool).where(Tool.origin_catalog_id == catalog_id))
        deleted = result.rowcount or 0
        logger.info("tools.catalog_tools_deleted", catalog_id=catalog_id, count=deleted)
        return deleted

    # --- reads ----------------------------------------------------------------------------------

    async def get(self, tool_id: str) -> Tool | None:
        return await self.session.get(Tool, tool_id)

    async def find_by_id(self, tool_id: str, user_id: Optional[str] = None, is_admin: bool = False) -> Tool | None:
        """Return the tool, or ``None`` when it is private to an agent ``user_id`` cannot see."""
        tool = await self.get(tool_id)
        if tool is None:
            return None
        origin = tool.origin
        if isinstance(origin, ProxyDiscoveredOrigin) and user_id and not is_admin:
            resolver = VisibilityResolver(self.session)
            if not await resolver.user_has_agent_access(user_id, origin.agent_id, False):
                return None
        return tool

    async def find_delegation_tool(self, target_agent_id: str) -> Tool | None:
        return await self._find_scoped(DelegationOrigin(target_agent_id), "")

    async def find_by_catalog_id(self, catalog_id: str) -> list[ToolWithAgents]:
        result = await self.session.execute(
            select(Tool).where(Tool.origin_catalog_id == catalog_id).order_by(_sa_desc(Tool.created_at), Tool.id)
        )
        tools = list(result.scalars())
        agents = await self.assignments.find_agents_for_tools([tool.id for tool in tools])
        return [ToolWithAgents(tool=tool, assigned_agents=agents[tool.id]) for tool in tools]

    async def get_tools_by_agent(self, agent_id: str) -> list[Tool]:
        result = await self.session.execute(
            select(Tool)
            .join(AgentTool, cast(Any, AgentTool.tool_id == Tool.id))
            .where(AgentTool.agent_id == agent_id)
            .order_by(_sa_desc(Tool.created_at), Tool.id)
        )
        return list(result.scalars())

    async def get_mcp_tools_by_agent(self, agent_id: str) -> list[Tool]:
        """Assigned tools served by a catalog or delegating to another agent; proxy finds excluded."""
        result = await self.session.execute(
            select(Tool)
            .join(AgentTool, cast(Any, AgentTool.tool_id == Tool.id))
            .where(
                AgentTool.agent_id == agent_id,
                or_(
                    cast(Any, Tool.origin_catalog_id).is_not(None),
                    cast(Any, Tool.delegates_to_agent_id).is_not(None),
                ),
            )
            .order_by(_sa_desc(Tool.created_at), Tool.id)
        )
        return list(result.scalars())

    async def get_existing_tool_names(self, names: Sequence[str]) -> list[str]:
        if not names:
            return []
        result = await self.session.execute(
            select(Tool.name).where(cast(Any, Tool.name).in_(list(names))).distinct()
        )
        return list(result.scalars())

    async def find_all(self, user_id: Optional[str] = None, is_admin: bool = False) -> list[Tool]:
        """Every tool, newest first; a non-admin user only sees catalog-sourced tools."""
        query = select(Tool).order_by(_sa_desc(Tool.created_at), Tool.id)
        if user_id and not is_admin:
            query = query.where(cast(Any, Tool.origin_catalog_id).is_not(None))
        result = await self.session.execute(query)
        return list(result.scalars())

    async def get_tool_ids_by_catalog_ids(self, catalog_ids: Sequence[str]) -> list[str]:
        if not catalog_ids:
            return []
        result = await self.session.execute(
            select(Tool.id).where(cast(Any, Tool.origin_catalog_id).in_(list(catalog_ids))).order_by(Tool.id)
        )
        return list(result.scalars())

    async def get_tool_names_by_catalog_ids(self, catalog_ids: Sequence[str]) -> list[tuple[str, str]]:
        """``(name, catalog_id)`` for every tool the given catalogs own."""
        if not catalog_ids:
            return []
        result = await self.session.execute(
            select(Tool.name, Tool.origin_catalog_id)
            .where(cast(Any, Tool.origin_catalog_id).in_(list(catalog_ids)))
            .order_by(Tool.origin_catalog_id, Tool.name)
        )
        return [(name, catalog_id) for name, catalog_id in result.all()]

    async def get_delegation_tools_by_agent(self, agent_id: str) -> list[DelegationTool]:
        """Delegation tools assigned to ``agent_id`` with the agent each one delegates to."""
        result = await self.session.execute(
            select(Tool, Agent)
            .select_from(AgentTool)
            .join(Tool, cast(Any, Tool.id == AgentTool.tool_id))
            .join(Agent, cast(Any, Agent.id == Tool.delegates_to_agent_id))
            .where(AgentTool.agent_id == agent_id)
            .order_by(Agent.name, Tool.id)
        )
        return [DelegationTool(tool=tool, target_agent=agent) for tool, agent in result.all()]

    async def get_parent_agent_ids(self, target_agent_id: str) -> list[str]:
        """Agents holding a delegation tool that points at ``target_agent_id``."""
        result = await self.session.execute(
            select(AgentTool.agent_id)
            .join(Tool, cast(Any, Tool.id == AgentTool.tool_id))
            .where(Tool.delegates_to_agent_id == target_agent_id)
            .distinct()
            .order_by(AgentTool.agent_id)
        )
        return list(result.scalars())

    async def find_all_with_assignments(
        self,
        *,
        limit: int = 20,
        offset: int = 0,
        sort_by: Optional[str] = None,
        sort_direction: str = "desc",
        search: Optional[str] = None,
        origin: Optional[str] = None,
        user_id: Optional[str] = None,
        is_admin: bool = False,
    ) -> PaginatedTools:
        """One page of tools, each with its agent assignments embedded.

        ``sort_by`` is ``name``, ``origin`` (catalog tools before the rest),
        ``assignment_count`` or, by default, creation time; ties break on id.
        ``search`` matches a name substring case-insensitively. ``origin`` is
        ``"shared"`` or a catalog id.

        For a non-admin ``user_id`` the counts and embedded assignments only
        cover agents the user can see, and tools an invisible agent discovered
        privately are left out. A user who sees no agent gets an empty page.
        """
        conditions: list[Any] = []
        if search:
            conditions.append(cast(Any, Tool.name).icontains(search, autoescape=True))
        if origin == "shared":
            conditions.extend(_shared_clause())
        elif origin:
            conditions.append(Tool.origin_catalog_id == origin)

        visible: Optional[list[str]] = None
        if user_id and not is_admin:
            visible = sorted(await VisibilityResolver(self.session).accessible_agent_ids(user_id, False))
            if not visible:
                return PaginatedTools(items=[], total=0, limit=limit, offset=offset)
            conditions.append(
                or_(cast(Any, Tool.origin_agent_id).is_(None), cast(Any, Tool.origin_agent_id).in_(visible))
            )

        count_conditions: list[Any] = [AgentTool.tool_id == Tool.id]
        if visible is not None:
            count_conditions.append(cast(Any, AgentTool.agent_id).in_(visible))
        assignment_count = (
            select(func.count()).select_from(AgentTool).where(*count_conditions).correlate(Tool).scalar_subquery()
        )

        direction = _sa_asc if sort_direction == "asc" else _sa_desc
        if sort_by == "name":
            order = direction(Tool.name)
        elif sort_by == "origin":
            order = direction(case((cast(Any, Tool.origin_catalog_id).is_(None), "2-other"), else_="1-catalog"))
        elif sort_by == "assignment_count":
            order = direction(assignment_count)
        else:
            order = direction(Tool.created_at)

        total = (await self.session.execute(select(func.count()).select_from(Tool).where(*conditions))).scalar_one()
        rows = (
            await self.session.execute(
                select(Tool, assignment_count)
                .where(*conditions)
                .order_by(order, Tool.id)
                .limit(limit)
                .offset(offset)
            )
        ).all()
        tool_ids = [tool.id for tool, _ in rows]
        assignments: dict[str, list[AssignmentView]] = {tool_id: [] for tool_id in tool_ids}
        if tool_ids:
            query = (
                select(AgentTool, Agent.name)
                .join(Agent, cast(Any, Agent.id == AgentTool.agent_id))
                .where(cast(Any, AgentTool.tool_id).in_(tool_ids))
                .order_by(Agent.name, AgentTool.id)
            )
            if visible is not None:
                query = query.where(cast(Any, AgentTool.agent_id).in_(visible))
            for link, agent_name in (await self.session.execute(query)).all():
                assignments[link.tool_id].append(AssignmentView.from_row(link, agent_name))
        return PaginatedTools(
            items=[
                ToolWithAssignments(tool=tool, assignment_count=int(count or 0), assignments=assignments[tool.id])
                for tool, count in rows
            ],
            total=int(total),
            limit=limit,
            offset=offset,
        )

    async def list_tools_for_user(self, user_id: str, is_admin: bool) -> list[Tool]:
        """Tools assigned to at least one agent the user can see."""
        agent_ids = await VisibilityResolver(self.session).accessible_agent_ids(user_id, is_admin)
        if not agent_ids:
            return []
        result = await self.session.execute(
            select(Tool)
            .where(
                cast(Any, Tool.id).in_(
                    select(AgentTool.tool_id).where(cast(Any, AgentTool.agent_id).in_(sorted(agent_ids)))
                )
            )
            .order_by(Tool.name, Tool.id)
        )
        return list(result.scalars())


def describe_origin(origin: ToolOrigin) -> str:
    """Short human-readable origin label."""
    if isinstance(origin, SharedOrigin):
        return "shared"
    if isinstance(origin, CatalogSourcedOrigin):
        return f"catalog:{origin.catalog_id}"
    if isinstance(origin, ProxyDiscoveredOrigin):
        return f"agent:{origin.agent_id}"
    return f"delegates:{origin.target_agent_id}"
