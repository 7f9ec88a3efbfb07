"""Assignment links: which agent may invoke which tool, with per-assignment configuration."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, cast

import structlog
from sqlalchemy import delete as _sa_delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import atomic
from .errors import ToolNotFoundError
from .models import Agent, AgentTool, Tool

logger = structlog.get_logger(__name__)

# Columns copied verbatim when an assignment moves to another tool.
_CONFIG_FIELDS = (
    "response_modifier_template",
    "credential_source_server_id",
    "execution_source_server_id",
    "use_dynamic_team_credential",
)


def assignment_config(link: AgentTool) -> dict[str, Any]:
    return {field: getattr(link, field) for field in _CONFIG_FIELDS}


class AssignmentRepository:
    """Reads and writes :class:`AgentTool` rows on a caller-provided session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, agent_id: str, tool_id: str) -> AgentTool | None:
        result = await self.session.execute(
            select(AgentTool).where(AgentTool.agent_id == agent_id, AgentTool.tool_id == tool_id)
        )
        return result.scalars().first()

    async def assign(self, agent_id: str, tool_id: str, **config: Any) -> AgentTool:
        """Idempotently link ``agent_id`` to ``tool_id``; an existing link is returned untouched."""
        unknown = set(config) - set(_CONFIG_FIELDS)
        if unknown:
            raise TypeError(f"Unknown assignment option(s): {', '.join(sorted(unknown))}")
        async with atomic(self.session):
            existing = await self.get(agent_id, tool_id)
            if existing is not None:
                return existing
            link = AgentTool(agent_id=agent_id, tool_id=tool_id, **config)
            try:
                async with self.session.begin_nested():
                    self.session.add(link)
            except IntegrityError:
                # Concurrent assign won the race.
                existing = await self.get(agent_id, tool_id)
                if existing is not None:
                    return existing
                raise
        return link

    async def create_many_if_absent(self, agent_id: str, tool_ids: Iterable[str]) -> int:
        """Assign every tool in ``tool_ids`` to ``agent_id``; returns how many links were new."""
        wanted = list(dict.fromkeys(tool_ids))
        if not wanted:
            return 0
        async with atomic(self.session):
            already = set(
                (
                    await self.session.execute(
                        select(AgentTool.tool_id).where(
                            AgentTool.agent_id == agent_id,
                            cast(Any, AgentTool.tool_id).in_(wanted),
                        )
                    )
                ).scalars()
            )
            missing = [tool_id for tool_id in wanted if tool_id not in already]
            for tool_id in missing:
                self.session.add(AgentTool(agent_id=agent_id, tool_id=tool_id))
            await self.session.flush()
        return len(missing)

    async def unassign(self, agent_id: str, tool_id: str) -> bool:
        async with atomic(self.session):
            result = await self.session.execute(
                _sa_delete(AgentTool).where(AgentTool.agent_id == agent_id, AgentTool.tool_id == tool_id)
            )
        return bool(result.rowcount)

    async def find_tool_ids_by_agent(self, agent_id: str) -> list[str]:
        result = await self.session.execute(
            select(AgentTool.tool_id).where(AgentTool.agent_id == agent_id).order_by(AgentTool.created_at)
        )
        return list(result.scalars())

    async def find_by_tool(self, tool_id: str) -> list[AgentTool]:
        result = await self.session.execute(
            select(AgentTool).where(AgentTool.tool_id == tool_id).order_by(AgentTool.created_at, AgentTool.id)
        )
        return list(result.scalars())

    async def find_agents_for_tools(self, tool_ids: Sequence[str]) -> dict[str, list[tuple[str, str]]]:
        """Map each tool id to the ``(agent_id, agent_name)`` pairs assigned to it.

        Every requested id is present in the result; unassigned tools map to ``[]``.
        """
        agents: dict[str, list[tuple[str, str]]] = {tool_id: [] for tool_id in tool_ids}
        if not agents:
            return agents
        result = await self.session.execute(
            select(AgentTool.tool_id, Agent.id, Agent.name)
            .join(Agent, cast(Any, Agent.id == AgentTool.agent_id))
            .where(cast(Any, AgentTool.tool_id).in_(list(agents)))
            .order_by(Agent.name)
        )
        for tool_id, agent_id, agent_name in result.all():
            agents[tool_id].append((agent_id, agent_name))
        return agents

    async def transfer(self, from_tool_id: str, to_tool_id: str) -> int:
        """Copy every assignment of ``from_tool_id`` onto ``to_tool_id``.

        Agents already assigned to the target keep their existing link and
        configuration. The source links are left in place; they disappear with
        the source tool. Returns the number of links created on the target.
        """
        async with atomic(self.session):
            if await self.session.get(Tool, to_tool_id) is None:
                raise ToolNotFoundError(
                    f"Cannot transfer assignments to missing tool {to_tool_id}",
                    data={"from_tool_id": from_tool_id, "to_tool_id": to_tool_id},
                )
            source_links = await self.find_by_tool(from_tool_id)
            if not source_links:
                return 0
            target_agents = set(
                (
                    await self.session.execute(
                        select(AgentTool.agent_id).where(AgentTool.tool_id == to_tool_id)
                    )
                ).scalars()
            )
            moved = 0
            for link in source_links:
                if link.agent_id in target_agents:
                    continue
                self.session.add(AgentTool(agent_id=link.agent_id, tool_id=to_tool_id, **assignment_config(link)))
                target_agents.add(link.agent_id)
                moved += 1
            await self.session.flush()
        if moved:
            logger.debug("assignments.transferred", from_tool_id=from_tool_id, to_tool_id=to_tool_id, count=moved)
        return moved
