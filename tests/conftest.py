import contextlib
import gc
from pathlib import Path
from typing import Any

import pytest

from mcp_tool_catalog.config import clear_settings_cache
from mcp_tool_catalog.db import ensure_schema, get_session, reset_database_state
from mcp_tool_catalog.logging_setup import reset_logging_state


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("TOOL_NAME_SEPARATOR", "__")
    monkeypatch.setenv("TOOL_DEFAULT_POLICIES_ENABLED", "true")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        import warnings

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=ResourceWarning)
            gc.collect()
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state and logging config between tests, even for tests without isolated_env."""
    yield

    with contextlib.suppress(Exception):
        reset_database_state()

    with contextlib.suppress(Exception):
        clear_settings_cache()

    with contextlib.suppress(Exception):
        reset_logging_state()


async def _seed(*rows: Any) -> None:
    await ensure_schema()
    async with get_session() as session:
        # No relationship() links the tables, so flush in argument order to keep parents first.
        for row in rows:
            session.add(row)
            await session.flush()
        await session.commit()


@pytest.fixture
def seed(isolated_env):
    """Async helper persisting rows in one committed session; their Python-side ids stay readable afterwards."""
    return _seed

