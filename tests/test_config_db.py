from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from mcp_tool_catalog.config import _bool, _int_optional, clear_settings_cache, get_settings
from mcp_tool_catalog.db import (
    atomic,
    ensure_schema,
    get_database_path,
    get_engine,
    get_session,
    reset_database_state,
)
from mcp_tool_catalog.models import Catalog
from mcp_tool_catalog.policies import DefaultPolicySeeder, NoopPolicyInitializer, default_policy_initializer


def test_bool_and_int_parsing():
    assert _bool(" Yes ", default=False) is True
    assert _bool("0", default=True) is False
    assert _bool("maybe", default=True) is True
    assert _int_optional("") is None
    assert _int_optional("12") == 12
    assert _int_optional("twelve") is None


def test_catalog_settings_from_env(monkeypatch):
    monkeypatch.setenv("TOOL_NAME_SEPARATOR", "::")
    monkeypatch.setenv("DELEGATION_TOOL_PREFIX", "delegate_")
    monkeypatch.setenv("TOOL_DEFAULT_POLICIES_ENABLED", "false")
    clear_settings_cache()
    s = get_settings()
    assert s.catalog.tool_name_separator == "::"
    assert s.catalog.delegation_tool_prefix == "delegate_"
    assert s.catalog.default_policies_enabled is False
    assert isinstance(default_policy_initializer(s), NoopPolicyInitializer)


def test_empty_separator_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("TOOL_NAME_SEPARATOR", "")
    monkeypatch.setenv("TOOL_DEFAULT_POLICIES_ENABLED", "true")
    clear_settings_cache()
    s = get_settings()
    assert s.catalog.tool_name_separator == "__"
    assert isinstance(default_policy_initializer(s), DefaultPolicySeeder)


def test_database_path(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'x.sqlite3'}")
    clear_settings_cache()
    assert get_database_path() == tmp_path / "x.sqlite3"
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    clear_settings_cache()
    assert get_database_path() is None


def test_db_engine_reset_and_reinit(isolated_env):
    reset_database_state()
    _ = get_engine()
    asyncio.run(ensure_schema())
    assert get_engine().dialect.name == "sqlite"


@pytest.mark.asyncio
async def test_foreign_keys_enforced(isolated_env):
    await ensure_schema()
    async with get_session() as session:
        enabled = (await session.execute(text("PRAGMA foreign_keys"))).scalar_one()
    assert enabled == 1


@pytest.mark.asyncio
async def test_atomic_nests_inside_caller_transaction(isolated_env):
    await ensure_schema()
    async with get_session() as session:
        # The read autobegins the caller's transaction.
        await session.execute(text("SELECT 1"))
        async with atomic(session):
            assert session.in_nested_transaction() is True
            session.add(Catalog(name="x"))
        assert session.in_nested_transaction() is False
        assert session.in_transaction() is True
        await session.rollback()
    async with get_session() as session:
        count = (await session.execute(text("SELECT COUNT(*) FROM catalogs"))).scalar_one()
    assert count == 0

