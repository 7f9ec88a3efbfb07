"""SQLModel data models for tools, their assignments to agents, and team-scoped access."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import Column, Index, UniqueConstraint, text
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel

if TYPE_CHECKING:
    from .origin import ToolOrigin


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    """Opaque primary key; random so an id is never handed out twice."""
    return uuid.uuid4().hex


_SHARED_TOOL = "origin_catalog_id IS NULL AND origin_agent_id IS NULL AND delegates_to_agent_id IS NULL"
_PROXY_TOOL = "origin_catalog_id IS NULL AND origin_agent_id IS NOT NULL"
_DELEGATION_TOOL = "delegates_to_agent_id IS NOT NULL"


class Catalog(SQLModel, table=True):
    """An installable integration that reports a set of tools."""

    __tablename__ = "catalogs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=255)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class Agent(SQLModel, table=True):
    __tablename__ = "agents"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2048)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class Team(SQLModel, table=True):
    __tablename__ = "teams"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=255)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    email: str = Field(index=True, unique=True, max_length=320)
    name: str = Field(default="", max_length=255)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class AgentTeam(SQLModel, table=True):
    """Agent ↔ Team junction. An agent without rows here is visible organization-wide."""

    __tablename__ = "agent_teams"

    agent_id: str = Field(foreign_key="agents.id", primary_key=True, ondelete="CASCADE")
    team_id: str = Field(foreign_key="teams.id", primary_key=True, index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=_utcnow_naive)


class TeamMember(SQLModel, table=True):
    """User ↔ Team junction."""

    __tablename__ = "team_members"

    team_id: str = Field(foreign_key="teams.id", primary_key=True, ondelete="CASCADE")
    user_id: str = Field(foreign_key="users.id", primary_key=True, index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=_utcnow_naive)


class Tool(SQLModel, table=True):
    """A durable tool identity.

    ``id`` is the only thing other tables reference. ``name`` may change when the
    owning catalog is renamed; ``raw_name`` is the name the source reported and is
    the preferred key for matching a tool across such renames.

    The three origin columns encode a single :class:`~mcp_tool_catalog.origin.ToolOrigin`;
    use :attr:`origin` rather than reading them directly.
    """

    __tablename__ = "tools"
    __table_args__ = (
        UniqueConstraint("origin_catalog_id", "name", name="uq_tools_catalog_name"),
        Index(
            "uq_tools_proxy_agent_name",
            "origin_agent_id",
            "name",
            unique=True,
            sqlite_where=text(_PROXY_TOOL),
            postgresql_where=text(_PROXY_TOOL),
        ),
        Index(
            "uq_tools_shared_name",
            "name",
            unique=True,
            sqlite_where=text(_SHARED_TOOL),
            postgresql_where=text(_SHARED_TOOL),
        ),
        Index(
            "uq_tools_delegation_target",
            "delegates_to_agent_id",
            unique=True,
            sqlite_where=text(_DELEGATION_TOOL),
            postgresql_where=text(_DELEGATION_TOOL),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=255)
    raw_name: Optional[str] = Field(default=None, max_length=255)
    origin_agent_id: Optional[str] = Field(default=None, foreign_key="agents.id", index=True, ondelete="CASCADE")
    origin_catalog_id: Optional[str] = Field(
        default=None, foreign_key="catalogs.id", index=True, ondelete="CASCADE"
    )
    delegates_to_agent_id: Optional[str] = Field(default=None, foreign_key="agents.id", ondelete="CASCADE")
    description: Optional[str] = Field(default=None)
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, server_default="{}"),
    )
    created_at: datetime = Field(default_factory=_utcnow_naive)
    updated_at: datetime = Field(default_factory=_utcnow_naive)

    @property
    def origin(self) -> ToolOrigin:
        from .origin import classify

        return classify(self)


class AgentTool(SQLModel, table=True):
    """Assignment: ``agent_id`` may invoke ``tool_id``, plus per-assignment configuration."""

    __tablename__ = "agent_tools"
    __table_args__ = (UniqueConstraint("agent_id", "tool_id", name="uq_agent_tools_agent_tool"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    agent_id: str = Field(foreign_key="agents.id", index=True, ondelete="CASCADE")
    tool_id: str = Field(foreign_key="tools.id", index=True, ondelete="CASCADE")
    response_modifier_template: Optional[str] = Field(default=None)
    credential_source_server_id: Optional[str] = Field(default=None, max_length=64)
    execution_source_server_id: Optional[str] = Field(default=None, max_length=64)
    use_dynamic_team_credential: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class ToolInvocationPolicy(SQLModel, table=True):
    __tablename__ = "tool_invocation_policies"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    tool_id: str = Field(foreign_key="tools.id", index=True, ondelete="CASCADE")
    action: str = Field(max_length=64)  # block_when_context_is_untrusted | allow_when_context_is_untrusted | block_always
    conditions: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, server_default="[]"),
    )
    reason: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class TrustedDataPolicy(SQLModel, table=True):
    __tablename__ = "trusted_data_policies"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    tool_id: str = Field(foreign_key="tools.id", index=True, ondelete="CASCADE")
    action: str = Field(max_length=64)  # mark_as_trusted | mark_as_untrusted | block_always
    conditions: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, server_default="[]"),
    )
    description: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow_naive)
