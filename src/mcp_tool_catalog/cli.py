"""Command-line interface for inspecting and syncing the tool catalog."""

from __future__ import annotations

import asyncio
import atexit
import json
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .db import ensure_schema, get_session, reset_database_state
from .errors import CatalogError
from .logging_setup import configure_logging
from .models import Agent, Catalog
from .reconcile import DesiredTool, ReconcileResult, reconcile_catalog_tools
from .tools import ToolRepository, describe_origin
from .visibility import VisibilityResolver

# aiosqlite worker threads can hold interpreter shutdown if the engine is not disposed.
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run a coroutine and dispose the engine afterwards so no aiosqlite thread outlives the command."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


app = typer.Typer(help="Tool identity catalog utilities.", no_args_is_help=True)


@app.callback()
def _app_callback() -> None:
    configure_logging(get_settings())


def _load_desired_tools(path: Path, server: Optional[str] = None) -> list[DesiredTool]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise typer.BadParameter(f"Cannot read desired tools from {path}: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("tools", [])
    if not isinstance(payload, list):
        raise typer.BadParameter("Desired tools file must hold a JSON list (or an object with a 'tools' list).")
    try:
        entries = [DesiredTool.from_mapping(entry) for entry in payload]
    except (TypeError, ValueError, AttributeError) as exc:
        raise typer.BadParameter(str(exc)) from exc
    if server is None:
        return entries
    # Entries carry the names the server reports; build the display names here.
    separator = get_settings().catalog.tool_name_separator
    return [
        DesiredTool.for_server(server, entry.name, entry.description, entry.parameters, separator=separator)
        for entry in entries
    ]


def _result_table(catalog_id: str, result: ReconcileResult) -> Table:
    t = Table(title=f"Reconciled catalog {catalog_id}", show_lines=False)
    t.add_column("outcome")
    t.add_column("id")
    t.add_column("name")
    for outcome, snapshots in (
        ("created", result.created),
        ("updated", result.updated),
        ("unchanged", result.unchanged),
        ("deleted", result.deleted),
    ):
        for snapshot in snapshots:
            t.add_row(outcome, snapshot.id, snapshot.name)
    return t


@app.command("init-db")
def init_db() -> None:
    """Create the database schema."""
    _run_async(ensure_schema())
    console.print("[green]Database schema ready.[/]")


@app.command("add-catalog")
def add_catalog(name: Annotated[str, typer.Argument(..., help="Catalog display name")]) -> None:
    """Register a catalog so tools can be synced into it."""

    async def _run() -> str:
        await ensure_schema()
        async with get_session() as session:
            catalog = Catalog(name=name)
            session.add(catalog)
            await session.commit()
            return catalog.id

    catalog_id = _run_async(_run())
    console.print(catalog_id)


@app.command("sync")
def sync(
    catalog_id: Annotated[str, typer.Argument(..., help="Catalog id")],
    file: Annotated[Path, typer.Argument(..., help="JSON file with the tools the catalog reports")],
    server: Annotated[
        Optional[str],
        typer.Option("--server", "-s", help="Treat entry names as the server's own tool names and prefix them with SERVER"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print machine-readable output")] = False,
) -> None:
    """Reconcile the catalog's persisted tools with the tools listed in FILE."""
    desired = _load_desired_tools(file, server)
    try:
        result: ReconcileResult = _run_async(reconcile_catalog_tools(catalog_id, desired))
    except CatalogError as exc:
        if as_json:
            typer.echo(json.dumps(exc.to_payload()))
        else:
            console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    if as_json:
        payload = {
            "catalog_id": catalog_id,
            "summary": result.summary(),
            "created": [s.to_dict() for s in result.created],
            "updated": [s.to_dict() for s in result.updated],
            "unchanged": [s.to_dict() for s in result.unchanged],
            "deleted": [s.to_dict() for s in result.deleted],
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    console.print(_result_table(catalog_id, result))
    summary = result.summary()
    console.print(", ".join(f"{key}={value}" for key, value in summary.items()))


@app.command("tools")
def list_tools(
    agent: Annotated[Optional[str], typer.Option("--agent", "-a", help="List tools assigned to this agent")] = None,
    catalog: Annotated[Optional[str], typer.Option("--catalog", "-c", help="List tools owned by this catalog")] = None,
) -> None:
    """List tools by agent assignment or by owning catalog."""
    if (agent is None) == (catalog is None):
        raise typer.BadParameter("Pass exactly one of --agent or --catalog.")

    async def _run() -> list[tuple[str, str, str, str]]:
        await ensure_schema()
        async with get_session() as session:
            repo = ToolRepository(session)
            if agent is not None:
                tools = await repo.get_tools_by_agent(agent)
                return [(t.id, t.name, describe_origin(t.origin), "") for t in tools]
            assert catalog is not None
            rows = await repo.find_by_catalog_id(catalog)
            return [
                (
                    row.tool.id,
                    row.tool.name,
                    describe_origin(row.tool.origin),
                    ", ".join(name for _, name in row.assigned_agents),
                )
                for row in rows
            ]

    rows = _run_async(_run())
    if not rows:
        console.print("[yellow]No tools.[/]")
        return
    t = Table(title=f"Tools for {'agent ' + agent if agent else 'catalog ' + str(catalog)}")
    t.add_column("id")
    t.add_column("name")
    t.add_column("origin")
    t.add_column("agents")
    for row in rows:
        t.add_row(*row)
    console.print(t)


@app.command("visible-agents")
def visible_agents(
    user_id: Annotated[str, typer.Argument(..., help="User id")],
    admin: Annotated[bool, typer.Option("--admin", help="Resolve as an agent administrator")] = False,
) -> None:
    """List the agents USER_ID may see."""

    async def _run() -> list[tuple[str, str, str]]:
        await ensure_schema()
        async with get_session() as session:
            resolver = VisibilityResolver(session)
            agent_ids = await resolver.accessible_agent_ids(user_id, admin)
            teams = await resolver.teams_for_agents(sorted(agent_ids))
            rows = []
            for agent_id in sorted(agent_ids):
                agent_row = await session.get(Agent, agent_id)
                rows.append((agent_id, agent_row.name if agent_row else "", ", ".join(teams[agent_id]) or "(org-wide)"))
            return rows

    rows = _run_async(_run())
    if not rows:
        console.print("[yellow]No visible agents.[/]")
        return
    t = Table(title=f"Agents visible to {user_id}")
    t.add_column("id")
    t.add_column("name")
    t.add_column("teams")
    for row in rows:
        t.add_row(*row)
    console.print(t)

