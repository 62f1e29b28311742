# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for mail-mirror.

This module provides a small operator CLI for registering remote servers and
triggering syncs against the local mirror without an HTTP layer.

Usage:
    mail-mirror servers list
    mail-mirror servers add box.example.com --api-key SECRET
    mail-mirror servers remove 3
    mail-mirror status 3
    mail-mirror sync 3 --kind dns --kind mailboxes
    mail-mirror metrics 3

Example:
    $ mail-mirror --db ./mirror.db servers add box.example.com \\
        --api-key s3cret --api-endpoint /admin
    $ mail-mirror --db ./mirror.db sync 1 --sequential
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .client import RemoteApiClient
from .config_loader import SyncConfig, load_sync_config
from .errors import MailMirrorError
from .logger import configure_logging
from .models import ALL_KINDS, ResourceKind, RemoteServerCreate
from .orchestrator import SyncOrchestrator
from .persistence import Persistence
from .prometheus import SyncMetrics
from .sync import SyncEngine

console = Console()
err_console = Console(stderr=True)


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


def get_engine(config: SyncConfig, persistence: Persistence) -> SyncEngine:
    """Build a SyncEngine from the loaded configuration."""
    return SyncEngine(
        persistence,
        RemoteApiClient(timeout=config.request_timeout, verify_ssl=config.verify_ssl),
        metrics=SyncMetrics(),
        principal=config.principal,
        default_api_endpoint=config.default_api_endpoint,
    )


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _status_markup(status: str | None) -> str:
    if status == "online":
        return "[green]online[/green]"
    if status == "offline":
        return "[red]offline[/red]"
    return f"[yellow]{status or 'unknown'}[/yellow]"


@click.group()
@click.option("--db", "db_path", default=None, help="Mirror database path (overrides config).")
@click.option("--config", "config_path", default=None, help="Path to the INI config file.")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, config_path: str | None) -> None:
    """mail-mirror: mirror remote mail server state into a local database."""
    config = load_sync_config(config_path)
    if db_path:
        config.db_path = db_path
    configure_logging(config.log_level)
    ctx.obj = config


# ============================================================================
# Servers
# ============================================================================

@main.group("servers")
def servers() -> None:
    """Manage registered remote servers."""


@servers.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def servers_list(config: SyncConfig, as_json: bool) -> None:
    """List registered servers."""
    persistence = get_persistence(config.db_path)

    async def _list():
        await persistence.init_db()
        return await persistence.list_servers()

    server_list = run_async(_list())
    if as_json:
        print_json(server_list)
        return
    if not server_list:
        console.print("[dim]No servers registered.[/dim]")
        return

    table = Table(title="Remote Servers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Hostname")
    table.add_column("Endpoint")
    table.add_column("Status")
    table.add_column("Version")
    table.add_column("Last sync")
    for s in server_list:
        table.add_row(
            str(s["id"]),
            s.get("name") or "-",
            s["hostname"],
            s.get("api_endpoint") or "-",
            _status_markup(s.get("status")),
            s.get("version") or "-",
            str(s.get("last_synced_at") or "-"),
        )
    console.print(table)


@servers.command("add")
@click.argument("hostname")
@click.option("--api-key", required=True, help="Admin API key of the server.")
@click.option("--api-endpoint", default=None, help="Admin API path prefix (default: /admin).")
@click.option("--name", "-n", default=None, help="Human-readable server name.")
@click.pass_obj
def servers_add(
    config: SyncConfig,
    hostname: str,
    api_key: str,
    api_endpoint: str | None,
    name: str | None,
) -> None:
    """Register a remote server."""
    try:
        server_data = RemoteServerCreate(
            hostname=hostname,
            api_key=api_key,
            api_endpoint=api_endpoint or config.default_api_endpoint,
            name=name,
        )
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)

    persistence = get_persistence(config.db_path)

    async def _add():
        await persistence.init_db()
        return await persistence.add_server(server_data.model_dump())

    server = run_async(_add())
    print_success(f"Server '{hostname}' registered with id {server['id']}.")


@servers.command("remove")
@click.argument("server_id", type=int)
@click.pass_obj
def servers_remove(config: SyncConfig, server_id: int) -> None:
    """Remove a server and everything mirrored from it."""
    persistence = get_persistence(config.db_path)

    async def _remove():
        await persistence.init_db()
        return await persistence.delete_server(server_id)

    if not run_async(_remove()):
        print_error(f"Server {server_id} not found.")
        sys.exit(1)
    print_success(f"Server {server_id} removed.")


# ============================================================================
# Sync
# ============================================================================

@main.command("status")
@click.argument("server_id", type=int)
@click.pass_obj
def status_cmd(config: SyncConfig, server_id: int) -> None:
    """Refresh reachability and version of a server."""
    persistence = get_persistence(config.db_path)
    engine = get_engine(config, persistence)

    async def _status():
        await persistence.init_db()
        return await engine.sync_status(server_id)

    try:
        result = run_async(_status())
    except MailMirrorError as e:
        print_error(str(e))
        sys.exit(1)

    if result.online:
        print_success(f"Server {server_id} is online (version {result.version}).")
    else:
        print_error(f"Server {server_id} is offline: {result.error}")
        sys.exit(2)


@main.command("sync")
@click.argument("server_id", type=int)
@click.option(
    "--kind",
    "-k",
    "kinds",
    multiple=True,
    type=click.Choice([k.value for k in ALL_KINDS]),
    help="Resource kind to sync (repeatable; default: all).",
)
@click.option("--sequential", is_flag=True, help="Run resource syncs one after the other.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def sync_cmd(
    config: SyncConfig,
    server_id: int,
    kinds: tuple[str, ...],
    sequential: bool,
    as_json: bool,
) -> None:
    """Sync status and resources of a server."""
    persistence = get_persistence(config.db_path)
    orchestrator = SyncOrchestrator(get_engine(config, persistence))
    selected = [ResourceKind(k) for k in kinds] or list(ALL_KINDS)

    async def _sync():
        await persistence.init_db()
        return await orchestrator.sync_server(
            server_id, selected, concurrent=config.concurrent and not sequential
        )

    try:
        result = run_async(_sync())
    except MailMirrorError as e:
        print_error(str(e))
        sys.exit(1)

    if as_json:
        print_json({
            "server_id": result.server_id,
            "status": result.status.status,
            "version": result.status.version,
            "synced": {kind: len(rows) if isinstance(rows, list) else 1
                       for kind, rows in result.outcomes.items()},
            "errors": result.errors,
        })
    elif result.skipped:
        print_error(f"Server {server_id} is offline: {result.status.error}")
    else:
        table = Table(title=f"Sync of server {server_id}")
        table.add_column("Kind", style="cyan")
        table.add_column("Result")
        for kind in selected:
            if kind.value in result.errors:
                table.add_row(kind.value, f"[red]{result.errors[kind.value]}[/red]")
            elif kind.value in result.outcomes:
                rows = result.outcomes[kind.value]
                count = len(rows) if isinstance(rows, list) else 1
                table.add_row(kind.value, f"[green]{count} rows[/green]")
        console.print(table)

    if not result.success:
        sys.exit(2)


@main.command("metrics")
@click.argument("server_id", type=int)
@click.option("--history", "-n", default=0, type=int, help="Also show the last N stored snapshots.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def metrics_cmd(config: SyncConfig, server_id: int, history: int, as_json: bool) -> None:
    """Capture a metrics snapshot of a server."""
    persistence = get_persistence(config.db_path)
    engine = get_engine(config, persistence)

    async def _capture():
        await persistence.init_db()
        entry = await engine.capture_metrics(server_id)
        past = await persistence.list_metrics(server_id, limit=history) if history > 0 else []
        return entry, past

    try:
        entry, past = run_async(_capture())
    except MailMirrorError as e:
        print_error(str(e))
        sys.exit(1)

    if as_json:
        print_json({"captured": entry, "history": past})
        return

    table = Table(title=f"Metrics of server {server_id}")
    table.add_column("Captured at", style="cyan")
    table.add_column("CPU %")
    table.add_column("Memory %")
    table.add_column("Disk %")
    table.add_column("Queue")
    table.add_column("Connections")
    for row in [entry, *[p for p in past if p["id"] != entry["id"]]]:
        table.add_row(
            str(row["captured_at"]),
            "-" if row.get("cpu_usage") is None else f"{row['cpu_usage']:g}",
            f"{row.get('memory_usage') or 0:g}",
            f"{row.get('disk_usage') or 0:g}",
            "-" if row.get("queue_size") is None else str(row["queue_size"]),
            "-" if row.get("active_connections") is None else str(row["active_connections"]),
        )
    console.print(table)


if __name__ == "__main__":
    main()
