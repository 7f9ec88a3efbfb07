import pytest

from mcp_tool_catalog.db import get_session
from mcp_tool_catalog.models import Agent, AgentTeam, Team, TeamMember, User
from mcp_tool_catalog.visibility import VisibilityResolver


async def _org(seed):
    """Two teams, one member each, a teamless agent and one agent per team."""
    eng = Team(name="engineering")
    ops = Team(name="ops")
    alice = User(email="alice@example.com")
    bob = User(email="bob@example.com")
    loner = User(email="loner@example.com")
    shared = Agent(name="shared")
    eng_agent = Agent(name="eng-bot")
    ops_agent = Agent(name="ops-bot")
    both = Agent(name="both-bot")
    await seed(
        eng,
        ops,
        alice,
        bob,
        loner,
        shared,
        eng_agent,
        ops_agent,
        both,
        AgentTeam(agent_id=eng_agent.id, team_id=eng.id),
        AgentTeam(agent_id=ops_agent.id, team_id=ops.id),
        AgentTeam(agent_id=both.id, team_id=eng.id),
        AgentTeam(agent_id=both.id, team_id=ops.id),
        TeamMember(team_id=eng.id, user_id=alice.id),
        TeamMember(team_id=ops.id, user_id=bob.id),
    )
    return {
        "eng": eng,
        "ops": ops,
        "alice": alice,
        "bob": bob,
        "loner": loner,
        "shared": shared,
        "eng_agent": eng_agent,
        "ops_agent": ops_agent,
        "both": both,
    }


@pytest.mark.asyncio
async def test_accessible_agent_ids(seed):
    org = await _org(seed)
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        alice = await resolver.accessible_agent_ids(org["alice"].id, False)
        loner = await resolver.accessible_agent_ids(org["loner"].id, False)
        admin = await resolver.accessible_agent_ids(org["loner"].id, True)

    assert alice == {org["shared"].id, org["eng_agent"].id, org["both"].id}
    assert loner == {org["shared"].id}
    assert admin == {org[key].id for key in ("shared", "eng_agent", "ops_agent", "both")}


@pytest.mark.asyncio
async def test_single_check_agrees_with_batch(seed):
    org = await _org(seed)
    agents = [org[key].id for key in ("shared", "eng_agent", "ops_agent", "both")]
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        for user_key in ("alice", "bob", "loner"):
            user_id = org[user_key].id
            for is_admin in (False, True):
                batch = await resolver.accessible_agent_ids(user_id, is_admin)
                for agent_id in agents:
                    single = await resolver.user_has_agent_access(user_id, agent_id, is_admin)
                    assert single == (agent_id in batch), (user_key, agent_id, is_admin)


@pytest.mark.asyncio
async def test_unknown_agent_is_not_accessible(seed):
    org = await _org(seed)
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        assert await resolver.user_has_agent_access(org["alice"].id, "missing", False) is False
        assert await resolver.user_has_agent_access(org["alice"].id, "missing", True) is False
        assert await resolver.team_has_agent_access("missing", None) is False
        assert await resolver.team_has_agent_access("missing", org["eng"].id) is False


@pytest.mark.asyncio
async def test_team_token_access(seed):
    org = await _org(seed)
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        assert await resolver.team_has_agent_access(org["shared"].id, None) is True
        assert await resolver.team_has_agent_access(org["eng_agent"].id, None) is False
        assert await resolver.team_has_agent_access(org["eng_agent"].id, org["eng"].id) is True
        assert await resolver.team_has_agent_access(org["eng_agent"].id, org["ops"].id) is False
        assert await resolver.team_has_agent_access(org["both"].id, org["ops"].id) is True


@pytest.mark.asyncio
async def test_team_lookups(seed):
    org = await _org(seed)
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        both_teams = await resolver.get_teams_for_agent(org["both"].id)
        batch = await resolver.teams_for_agents([org["shared"].id, org["both"].id])
        details = await resolver.get_team_details_for_agent(org["both"].id)

    assert both_teams == sorted([org["eng"].id, org["ops"].id])
    assert batch == {org["shared"].id: [], org["both"].id: both_teams}
    assert [team.name for team in details] == ["engineering", "ops"]


@pytest.mark.asyncio
async def test_accessible_agent_ids_for_many_matches_single_user_calls(seed):
    org = await _org(seed)
    users = [org["alice"].id, org["bob"].id, org["loner"].id]
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        many = await resolver.accessible_agent_ids_for_many(users, False)
        for user_id in users:
            assert many[user_id] == await resolver.accessible_agent_ids(user_id, False)
        assert await resolver.accessible_agent_ids_for_many([], False) == {}


@pytest.mark.asyncio
async def test_filter_accessible_preserves_order(seed):
    org = await _org(seed)
    requested = [org["ops_agent"].id, org["both"].id, org["shared"].id, "missing"]
    async with get_session() as session:
        kept = await VisibilityResolver(session).filter_accessible(org["bob"].id, requested, False)

    assert kept == [org["ops_agent"].id, org["both"].id, org["shared"].id]


@pytest.mark.asyncio
async def test_team_membership_writes(seed):
    org = await _org(seed)
    agent_id = org["shared"].id

    async with get_session() as session:
        await VisibilityResolver(session).assign_teams_to_agent(agent_id, [org["eng"].id, org["eng"].id])
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        assert await resolver.get_teams_for_agent(agent_id) == [org["eng"].id]
        assert await resolver.user_has_agent_access(org["loner"].id, agent_id, False) is False
        await session.commit()

    async with get_session() as session:
        count = await VisibilityResolver(session).sync_agent_teams(agent_id, [org["ops"].id])
    assert count == 1
    async with get_session() as session:
        assert await VisibilityResolver(session).get_teams_for_agent(agent_id) == [org["ops"].id]

    async with get_session() as session:
        assert await VisibilityResolver(session).remove_team_from_agent(agent_id, org["ops"].id) is True
    async with get_session() as session:
        resolver = VisibilityResolver(session)
        assert await resolver.remove_team_from_agent(agent_id, org["ops"].id) is False
        await session.commit()
        assert await resolver.user_has_agent_access(org["loner"].id, agent_id, False) is True
