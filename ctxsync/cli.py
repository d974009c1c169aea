from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from ctxsync.blob_cache import BlobCache
from ctxsync.config import (
    SyncConfig,
    find_workspace_root,
    load_config,
    normalize_api_url,
    save_config,
)
from ctxsync.credentials import CredentialManager, CredentialStore
from ctxsync.errors import AuthError, CtxSyncError, ScanError, SyncCancelled
from ctxsync.models import SessionCredential, SyncReport
from ctxsync.scanner import scan_workspace_with_progress
from ctxsync.status_service import compute_status
from ctxsync.transfer_ui import TransferProgressUI
from ctxsync.workspace import WorkspaceSync


app = typer.Typer(help="ctxsync CLI")
console = Console()
LOG_LEVEL_ENV = "CTXSYNC_LOG_LEVEL"


def _setup_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv(LOG_LEVEL_ENV, "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    _setup_logging(verbose)


def _render_changes(title: str, records) -> None:
    if not records:
        return

    table = Table(title=title)
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Modified (ns)", justify="right")
    table.add_column("Identity")

    for record in records:
        table.add_row(record.path, str(record.size), str(record.mtime_ns), record.identity[:16])

    console.print(table)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_report(report: SyncReport) -> None:
    _render_path_summary(
        "Failed",
        [f"{task.source_path}: {task.reason}" for task in report.failed],
        "red",
    )
    _render_path_summary(
        "Skipped during scan",
        [f"{issue.path}: {issue.reason}" for issue in report.scan_issues],
        "yellow",
    )
    if report.cancelled:
        console.print("[yellow]Sync cancelled.[/yellow] Unfinished uploads will be retried next run.")
    console.print(
        f"Files: {len(report.manifest)} | Uploaded: {report.upload_count} blob(s) | "
        f"Already on remote: {report.already_confirmed} | Evicted from cache: {len(report.evicted)}"
    )


def _load_config_or_exit() -> SyncConfig:
    try:
        return load_config(find_workspace_root())
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


@app.command()
def init(
    api_url: str = typer.Option("", "--url", help="Base URL of the code-intelligence service."),
    state_dir: str = typer.Option("", "--state-dir", help="Directory for the cache and session."),
) -> None:
    """Initialize ctxsync config at the workspace root."""
    root = find_workspace_root()
    try:
        config = SyncConfig(workspace_root=str(root), api_url=api_url, state_dir=state_dir)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    path = save_config(config, root)
    console.print(f"[green]Initialized ctxsync[/green] at {root}")
    console.print(f"Config: {path}")
    console.print(f"Blob cache: {config.cache_db_path}")
    if not config.api_url:
        console.print("[yellow]No API URL set. Pass --url or set CTXSYNC_API_URL.[/yellow]")


async def _login_async(
    token: str,
    url: str,
    refresh_token: str | None,
    expires_in: float | None,
) -> int:
    try:
        config = load_config(find_workspace_root())
        tenant_url = normalize_api_url(url) if url else config.api_url
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    if not tenant_url:
        console.print("[red]No API URL. Pass --url or run `ctxsync init --url ...`.[/red]")
        return 1

    credential = SessionCredential(
        access_token=token,
        tenant_url=tenant_url,
        expires_at=None if expires_in is None else time.time() + expires_in,
        refresh_token=refresh_token,
    )
    manager = CredentialManager(CredentialStore(config.session_path), use_environment=False)
    await manager.login(credential)
    console.print(f"[green]Logged in[/green] to {tenant_url}")
    console.print(f"Session: {config.session_path}")
    return 0


@app.command()
def login(
    token: str = typer.Option(..., "--token", prompt=True, hide_input=True, help="Access token."),
    url: str = typer.Option("", "--url", help="Tenant URL. Defaults to the configured API URL."),
    refresh_token: str | None = typer.Option(None, "--refresh-token", help="Refresh token."),
    expires_in: float | None = typer.Option(
        None, "--expires-in", help="Seconds until the access token expires."
    ),
) -> None:
    """Save a session credential for the remote service."""
    raise typer.Exit(code=asyncio.run(_login_async(token, url, refresh_token, expires_in)))


@app.command()
def logout() -> None:
    """Remove the saved session credential."""
    config = _load_config_or_exit()
    manager = CredentialManager(CredentialStore(config.session_path), use_environment=False)
    if asyncio.run(manager.logout()):
        console.print("[green]Logged out.[/green]")
    else:
        console.print("No saved session.")


async def _status_async(*, refresh_baseline: bool) -> int:
    config = _load_config_or_exit()
    async with WorkspaceSync(config) as workspace:
        previous = await workspace.cache.load_records()
        console.print(f"Scanning [bold]{workspace.root}[/bold] ...")
        try:
            snapshot = await asyncio.to_thread(
                scan_workspace_with_progress,
                workspace.root,
                console=console,
                path_filter=workspace.path_filter(),
                previous_records=previous,
                hash_workers=config.hash_workers,
                follow_symlinks=config.follow_symlinks,
                max_file_bytes=config.max_file_bytes,
                skip_binary=config.skip_binary,
            )
        except ScanError as exc:
            console.print(f"[red]{exc}[/red]")
            return 1
        result = await compute_status(
            workspace.cache, snapshot.records(), previous_records=previous
        )

        _render_changes("New", result.new_files)
        _render_changes("Modified", result.modified_files)
        _render_changes("Deleted", result.deleted_files)
        _render_path_summary(
            "Moved", [f"{old} -> {new}" for old, new in result.moved], "cyan"
        )
        if not result.has_changes:
            console.print("[green]No changes since the last sync.[/green]")

        if refresh_baseline:
            await workspace.cache.replace_records(snapshot.records())
            console.print(f"[green]Baseline refreshed:[/green] {result.snapshot_count} file(s)")
        else:
            console.print(f"Current scan: {result.snapshot_count} file(s).")
        console.print(f"Content not yet on remote: {result.pending_uploads} blob(s)")
    return 0


@app.command()
def status(
    refresh_baseline: bool = typer.Option(
        False,
        "--refresh-baseline",
        help="Store this scan as the new baseline without uploading anything.",
    ),
) -> None:
    """Show local changes since the last sync."""
    try:
        code = asyncio.run(_status_async(refresh_baseline=refresh_baseline))
    except KeyboardInterrupt:
        console.print("[yellow]Status interrupted.[/yellow] Baseline was not updated.")
        code = 130
    raise typer.Exit(code=code)


async def _sync_async() -> int:
    config = _load_config_or_exit()
    async with WorkspaceSync(config) as workspace:
        console.print(f"Syncing [bold]{workspace.root}[/bold] ...")
        try:
            with TransferProgressUI(console=console, transient=True) as ui:
                report = await workspace.sync(progress=ui)
        except AuthError as exc:
            console.print(f"[red]Authentication failed:[/red] {exc}")
            if exc.report is not None:
                _render_report(exc.report)
            return 1
        except SyncCancelled:
            console.print("[yellow]Sync cancelled.[/yellow]")
            return 130
        except CtxSyncError as exc:
            console.print(f"[red]Sync failed:[/red] {exc}")
            return 1

    _render_report(report)
    if report.ok:
        console.print("[green]Remote is up to date.[/green]")
        return 0
    return 1


@app.command()
def sync() -> None:
    """Scan the workspace and upload content the remote does not have yet."""
    try:
        code = asyncio.run(_sync_async())
    except KeyboardInterrupt:
        console.print(
            "[yellow]Sync interrupted.[/yellow] Unconfirmed uploads will be retried on the next run."
        )
        code = 130
    raise typer.Exit(code=code)


async def _manifest_async(as_json: bool) -> int:
    config = _load_config_or_exit()
    async with BlobCache(config.cache_db_path, capacity_bytes=config.cache_capacity_bytes) as cache:
        manifest = await cache.load_manifest()

    if as_json:
        console.print_json(json.dumps(manifest, sort_keys=True))
        return 0
    if not manifest:
        console.print("Manifest is empty. Run `ctxsync sync` first.")
        return 0
    table = Table(title="Manifest")
    table.add_column("Path")
    table.add_column("Identity")
    for path in sorted(manifest):
        table.add_row(path, manifest[path])
    console.print(table)
    return 0


@app.command()
def manifest(
    as_json: bool = typer.Option(False, "--json", help="Print the manifest as JSON."),
) -> None:
    """Print the path -> content identity manifest of the last sync."""
    raise typer.Exit(code=asyncio.run(_manifest_async(as_json)))


async def _cache_async(evict: bool) -> int:
    config = _load_config_or_exit()
    async with BlobCache(config.cache_db_path, capacity_bytes=config.cache_capacity_bytes) as cache:
        evicted = await cache.evict_if_needed() if evict else []
        stats = await cache.stats()

    table = Table(title=f"Blob cache ({Path(config.cache_db_path).name})")
    table.add_column("State")
    table.add_column("Entries", justify="right")
    table.add_column("Bytes", justify="right")
    table.add_row("confirmed", str(stats.confirmed_count), str(stats.confirmed_bytes))
    table.add_row("unconfirmed", str(stats.unconfirmed_count), str(stats.unconfirmed_bytes))
    console.print(table)
    console.print(f"Capacity: {stats.capacity_bytes} bytes")
    if evict:
        console.print(f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}.")
    return 0


@app.command()
def cache(
    evict: bool = typer.Option(False, "--evict", help="Evict entries beyond the capacity now."),
) -> None:
    """Show blob cache statistics."""
    raise typer.Exit(code=asyncio.run(_cache_async(evict)))
