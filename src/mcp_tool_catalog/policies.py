"""Default security policies seeded for every newly created tool."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .models import ToolInvocationPolicy, TrustedDataPolicy

DEFAULT_INVOCATION_ACTION = "block_when_context_is_untrusted"
DEFAULT_RESULT_ACTION = "mark_as_untrusted"


class PolicyInitializer(Protocol):
    """Called exactly once per newly created tool id, inside the creating transaction."""

    async def on_tool_created(self, session: AsyncSession, tool_id: str) -> None: ...


class DefaultPolicySeeder:
    """Untrusted-by-default: block invocation on untrusted context, mark results untrusted."""

    async def on_tool_created(self, session: AsyncSession, tool_id: str) -> None:
        session.add(ToolInvocationPolicy(tool_id=tool_id, action=DEFAULT_INVOCATION_ACTION, conditions=[]))
        session.add(TrustedDataPolicy(tool_id=tool_id, action=DEFAULT_RESULT_ACTION, conditions=[]))
        await session.flush()


class NoopPolicyInitializer:
    async def on_tool_created(self, session: AsyncSession, tool_id: str) -> None:
        return None


def default_policy_initializer(settings: Settings | None = None) -> PolicyInitializer:
    resolved = settings or get_settings()
    if resolved.catalog.default_policies_enabled:
        return DefaultPolicySeeder()
    return NoopPolicyInitializer()
