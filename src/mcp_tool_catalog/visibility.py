"""Scoped visibility: which agents (and through them which tools) a caller may see.

Visibility is derived from two junctions, Agent↔Team and User↔Team, and is
never stored. An agent with no team rows is organization-wide. Denied access is
an ordinary ``False`` or a missing id, never an exception.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Optional, cast

import structlog
from sqlalchemy import delete as _sa_delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import atomic
from .models import Agent, AgentTeam, Team, TeamMember

logger = structlog.get_logger(__name__)


class VisibilityResolver:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _all_agent_ids(self) -> set[str]:
        return set((await self.session.execute(select(Agent.id))).scalars())

    async def _teamless_agent_ids(self) -> set[str]:
        result = await self.session.execute(
            select(Agent.id)
            .outerjoin(AgentTeam, cast(Any, AgentTeam.agent_id == Agent.id))
            .where(cast(Any, AgentTeam.agent_id).is_(None))
        )
        return set(result.scalars())

    async def _user_team_ids(self, user_id: str) -> list[str]:
        result = await self.session.execute(select(TeamMember.team_id).where(TeamMember.user_id == user_id))
        return list(result.scalars())

    async def _agent_has_teams(self, agent_id: str) -> bool:
        result = await self.session.execute(select(AgentTeam.team_id).where(AgentTeam.agent_id == agent_id).limit(1))
        return result.first() is not None

    async def accessible_agent_ids(self, user_id: str, is_admin: bool) -> set[str]:
        """Admins see every agent; everyone else sees teamless agents plus their teams' agents."""
        if is_admin:
            agent_ids = await self._all_agent_ids()
            logger.debug("visibility.admin", user_id=user_id, count=len(agent_ids))
            return agent_ids

        teamless = await self._teamless_agent_ids()
        team_ids = await self._user_team_ids(user_id)
        if not team_ids:
            logger.debug("visibility.no_teams", user_id=user_id, teamless=len(teamless))
            return teamless

        result = await self.session.execute(
            select(AgentTeam.agent_id).where(cast(Any, AgentTeam.team_id).in_(team_ids))
        )
        accessible = teamless | set(result.scalars())
        logger.debug("visibility.resolved", user_id=user_id, teams=len(team_ids), count=len(accessible))
        return accessible

    async def user_has_agent_access(self, user_id: str, agent_id: str, is_admin: bool) -> bool:
        """Same answer as ``agent_id in accessible_agent_ids(...)``, via existence checks only."""
        if await self.session.get(Agent, agent_id) is None:
            return False
        if is_admin:
            return True
        if not await self._agent_has_teams(agent_id):
            logger.debug("visibility.org_wide_agent", user_id=user_id, agent_id=agent_id)
            return True
        result = await self.session.execute(
            select(AgentTeam.team_id)
            .join(TeamMember, cast(Any, TeamMember.team_id == AgentTeam.team_id))
            .where(AgentTeam.agent_id == agent_id, TeamMember.user_id == user_id)
            .limit(1)
        )
        has_access = result.first() is not None
        logger.debug("visibility.checked", user_id=user_id, agent_id=agent_id, has_access=has_access)
        return has_access

    async def team_has_agent_access(self, agent_id: str, team_id: Optional[str]) -> bool:
        """Access check for a team-scoped credential; ``team_id=None`` is an anonymous token.

        Teamless agents are open to every token, anonymous ones included. A
        team-scoped agent needs a token for one of its teams. Unknown agents
        are never accessible.
        """
        if await self.session.get(Agent, agent_id) is None:
            return False
        if not await self._agent_has_teams(agent_id):
            return True
        if not team_id:
            logger.debug("visibility.anonymous_token_denied", agent_id=agent_id)
            return False
        result = await self.session.execute(
            select(AgentTeam.team_id).where(AgentTeam.agent_id == agent_id, AgentTeam.team_id == team_id).limit(1)
        )
        return result.first() is not None

    async def get_teams_for_agent(self, agent_id: str) -> list[str]:
        result = await self.session.execute(
            select(AgentTeam.team_id).where(AgentTeam.agent_id == agent_id).order_by(AgentTeam.team_id)
        )
        return list(result.scalars())

    async def teams_for_agents(self, agent_ids: Iterable[str]) -> dict[str, list[str]]:
        """Batch form of :meth:`get_teams_for_agent`; every requested id is a key."""
        teams: dict[str, list[str]] = {agent_id: [] for agent_id in agent_ids}
        if not teams:
            return teams
        result = await self.session.execute(
            select(AgentTeam.agent_id, AgentTeam.team_id)
            .where(cast(Any, AgentTeam.agent_id).in_(list(teams)))
            .order_by(AgentTeam.agent_id, AgentTeam.team_id)
        )
        for agent_id, team_id in result.all():
            teams[agent_id].append(team_id)
        return teams

    async def get_team_details_for_agent(self, agent_id: str) -> list[Team]:
        return (await self.get_team_details_for_agents([agent_id]))[agent_id]

    async def get_team_details_for_agents(self, agent_ids: Iterable[str]) -> dict[str, list[Team]]:
        details: dict[str, list[Team]] = {agent_id: [] for agent_id in agent_ids}
        if not details:
            return details
        result = await self.session.execute(
            select(AgentTeam.agent_id, Team)
            .join(Team, cast(Any, Team.id == AgentTeam.team_id))
            .where(cast(Any, AgentTeam.agent_id).in_(list(details)))
            .order_by(Team.name, Team.id)
        )
        for agent_id, team in result.all():
            details[agent_id].append(team)
        return details

    async def accessible_agent_ids_for_many(self, user_ids: Iterable[str], is_admin: bool) -> dict[str, set[str]]:
        """Per-user :meth:`accessible_agent_ids`, sharing the teamless and admin lookups."""
        users = list(dict.fromkeys(user_ids))
        if not users:
            return {}
        if is_admin:
            agent_ids = await self._all_agent_ids()
            return {user_id: set(agent_ids) for user_id in users}

        teamless = await self._teamless_agent_ids()
        memberships = await self.session.execute(
            select(TeamMember.user_id, TeamMember.team_id).where(cast(Any, TeamMember.user_id).in_(users))
        )
        teams_by_user: dict[str, set[str]] = {user_id: set() for user_id in users}
        for user_id, team_id in memberships.all():
            teams_by_user[user_id].add(team_id)

        all_team_ids = set().union(*teams_by_user.values())
        agents_by_team: dict[str, set[str]] = {}
        if all_team_ids:
            rows = await self.session.execute(
                select(AgentTeam.team_id, AgentTeam.agent_id).where(cast(Any, AgentTeam.team_id).in_(sorted(all_team_ids)))
            )
            for team_id, agent_id in rows.all():
                agents_by_team.setdefault(team_id, set()).add(agent_id)

        accessible: dict[str, set[str]] = {}
        for user_id, team_ids in teams_by_user.items():
            agent_ids = set(teamless)
            for team_id in team_ids:
                agent_ids |= agents_by_team.get(team_id, set())
            accessible[user_id] = agent_ids
        return accessible

    async def filter_accessible(self, user_id: str, agent_ids: Sequence[str], is_admin: bool) -> list[str]:
        """Keep only the ids in ``agent_ids`` the user may see, preserving order."""
        accessible = await self.accessible_agent_ids(user_id, is_admin)
        return [agent_id for agent_id in agent_ids if agent_id in accessible]

    async def sync_agent_teams(self, agent_id: str, team_ids: Sequence[str]) -> int:
        """Replace the agent's team set with ``team_ids``; returns how many are now assigned."""
        wanted = list(dict.fromkeys(team_ids))
        async with atomic(self.session):
            await self.session.execute(_sa_delete(AgentTeam).where(AgentTeam.agent_id == agent_id))
            for team_id in wanted:
                self.session.add(AgentTeam(agent_id=agent_id, team_id=team_id))
            await self.session.flush()
        logger.debug("visibility.teams_synced", agent_id=agent_id, count=len(wanted))
        return len(wanted)

    async def assign_teams_to_agent(self, agent_id: str, team_ids: Sequence[str]) -> None:
        """Add ``team_ids`` to the agent, ignoring ones it already has."""
        if not team_ids:
            return
        async with atomic(self.session):
            current = set(await self.get_teams_for_agent(agent_id))
            for team_id in dict.fromkeys(team_ids):
                if team_id not in current:
                    self.session.add(AgentTeam(agent_id=agent_id, team_id=team_id))
            await self.session.flush()

    async def remove_team_from_agent(self, agent_id: str, team_id: str) -> bool:
        async with atomic(self.session):
            result = await self.session.execute(
                _sa_delete(AgentTeam).where(AgentTeam.agent_id == agent_id, AgentTeam.team_id == team_id)
            )
        removed = bool(result.rowcount)
        logger.debug("visibility.team_removed", agent_id=agent_id, team_id=team_id, removed=removed)
        return removed
