import asyncio
import json

from typer.testing import CliRunner

from mcp_tool_catalog.__main__ import main as module_main
from mcp_tool_catalog.cli import app
from mcp_tool_catalog.config import clear_settings_cache
from mcp_tool_catalog.db import reset_database_state
from mcp_tool_catalog.models import Agent, AgentTeam, Team, User

runner = CliRunner()


def _add_catalog(name: str) -> str:
    result = runner.invoke(app, ["add-catalog", name])
    assert result.exit_code == 0, result.output
    return result.stdout.strip().splitlines()[-1]


def test_cli_init_db(isolated_env):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert "Database schema ready" in result.stdout


def test_cli_sync_json_then_rename(isolated_env, tmp_path):
    catalog_id = _add_catalog("github")
    assert len(catalog_id) == 32

    first = tmp_path / "first.json"
    first.write_text(json.dumps([{"name": "github__create_issue", "description": "Open an issue"}]))
    result = runner.invoke(app, ["sync", catalog_id, str(first), "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["summary"] == {"created": 1, "updated": 0, "unchanged": 0, "deleted": 0, "transferred": 0}
    tool_id = payload["created"][0]["id"]
    assert payload["created"][0]["kind"] == "catalog_sourced"

    renamed = tmp_path / "renamed.json"
    renamed.write_text(json.dumps({"tools": [{"name": "gh__create_issue", "description": "Open an issue"}]}))
    result = runner.invoke(app, ["sync", catalog_id, str(renamed), "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["summary"]["updated"] == 1
    assert payload["updated"][0]["id"] == tool_id
    assert payload["updated"][0]["name"] == "gh__create_issue"


def test_cli_sync_with_server_prefix(isolated_env, tmp_path, monkeypatch):
    monkeypatch.setenv("TOOL_NAME_SEPARATOR", "::")
    clear_settings_cache()
    catalog_id = _add_catalog("github")
    desired = tmp_path / "tools.json"
    desired.write_text(json.dumps([{"name": "Create Issue"}]))
    result = runner.invoke(app, ["sync", catalog_id, str(desired), "--server", "GitHub", "--json"])
    assert result.exit_code == 0, result.output
    created = json.loads(result.stdout)["created"][0]
    assert created["name"] == "github::create_issue"
    assert created["raw_name"] == "Create Issue"

    result = runner.invoke(app, ["sync", catalog_id, str(desired), "-s", "GH Enterprise", "--json"])
    assert result.exit_code == 0, result.output
    updated = json.loads(result.stdout)["updated"][0]
    assert updated["id"] == created["id"]
    assert updated["name"] == "gh_enterprise::create_issue"


def test_cli_sync_table_output(isolated_env, tmp_path, monkeypatch):
    monkeypatch.setenv("COLUMNS", "240")
    catalog_id = _add_catalog("fs")
    desired = tmp_path / "tools.json"
    desired.write_text(json.dumps([{"name": "fs__read"}, {"name": "fs__write"}]))
    result = runner.invoke(app, ["sync", catalog_id, str(desired)])
    assert result.exit_code == 0, result.output
    assert "created=2" in result.stdout


def test_cli_sync_unknown_catalog(isolated_env, tmp_path):
    runner.invoke(app, ["init-db"])
    desired = tmp_path / "tools.json"
    desired.write_text(json.dumps([{"name": "x__y"}]))
    result = runner.invoke(app, ["sync", "missing", str(desired), "--json"])
    assert result.exit_code == 1
    payload = json.loads(result.stdout.strip().splitlines()[-1])
    assert payload["error"]["type"] == "CATALOG_NOT_FOUND"


def test_cli_sync_rejects_malformed_file(isolated_env, tmp_path):
    desired = tmp_path / "tools.json"
    desired.write_text(json.dumps({"tools": "nope"}))
    result = runner.invoke(app, ["sync", "c1", str(desired)])
    assert result.exit_code == 2


def test_cli_tools_requires_exactly_one_filter(isolated_env):
    result = runner.invoke(app, ["tools"])
    assert result.exit_code == 2


def test_cli_tools_by_catalog(isolated_env, tmp_path, monkeypatch):
    monkeypatch.setenv("COLUMNS", "240")
    catalog_id = _add_catalog("gh")
    empty = runner.invoke(app, ["tools", "--catalog", catalog_id])
    assert empty.exit_code == 0
    assert "No tools." in empty.stdout

    desired = tmp_path / "tools.json"
    desired.write_text(json.dumps([{"name": "gh__pr"}]))
    assert runner.invoke(app, ["sync", catalog_id, str(desired), "--json"]).exit_code == 0
    listed = runner.invoke(app, ["tools", "-c", catalog_id])
    assert listed.exit_code == 0
    assert "gh__pr" in listed.stdout


def test_cli_visible_agents(isolated_env, seed, monkeypatch):
    monkeypatch.setenv("COLUMNS", "240")
    team = Team(name="ops")
    user = User(email="u@example.com")
    open_agent = Agent(name="open-bot")
    ops_agent = Agent(name="ops-bot")
    asyncio.run(seed(team, user, open_agent, ops_agent, AgentTeam(agent_id=ops_agent.id, team_id=team.id)))
    reset_database_state()

    result = runner.invoke(app, ["visible-agents", user.id])
    assert result.exit_code == 0, result.output
    assert "open-bot" in result.stdout
    assert "ops-bot" not in result.stdout

    admin = runner.invoke(app, ["visible-agents", user.id, "--admin"])
    assert admin.exit_code == 0
    assert "ops-bot" in admin.stdout


def test_module_main_prints_help(capsys):
    module_main()
    out = capsys.readouterr().out
    assert "sync" in out
    assert "visible-agents" in out
