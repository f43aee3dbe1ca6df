from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from snapsync.config import (
    CONFIG_FILENAME,
    DEFAULT_BRANCH,
    SnapSyncConfig,
    default_token,
    load_config,
    normalize_repo_id,
    save_config,
    split_repo_id,
)
from snapsync.errors import SnapSyncError
from snapsync.filters import build_path_filter
from snapsync.models import ChangeStatus, FileChange, SyncOutcome, SyncResult
from snapsync.scanner import DirectorySnapshotSource
from snapsync.state_db import ensure_db
from snapsync.sync_engine import (
    create_temporary_repo,
    delete_temporary_repo,
    detect_changes,
    push_snapshot,
)


app = typer.Typer(help="snapsync: push local snapshots to GitHub through the git data API")
console = Console()

STATUS_STYLES = {
    ChangeStatus.ADDED: "green",
    ChangeStatus.MODIFIED: "cyan",
    ChangeStatus.DELETED: "yellow",
}


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("snapsync")
    logger.handlers.clear()
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def _render_changes(title: str, changes: list[FileChange], status: ChangeStatus) -> None:
    rows = [change for change in changes if change.status is status]
    if not rows:
        return

    table = Table(title=title)
    table.add_column("Path", style=STATUS_STYLES.get(status))
    table.add_column("Size", justify="right")
    table.add_column("Blob SHA")

    for change in rows:
        size = str(len(change.content)) if change.content is not None else "-"
        sha = change.blob_sha or change.previous_sha or ""
        table.add_row(change.path, size, sha[:12])

    console.print(table)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_counts(counts: dict[ChangeStatus, int]) -> None:
    console.print(
        f"Added: {counts.get(ChangeStatus.ADDED, 0)} | "
        f"Modified: {counts.get(ChangeStatus.MODIFIED, 0)} | "
        f"Deleted: {counts.get(ChangeStatus.DELETED, 0)} | "
        f"Unchanged: {counts.get(ChangeStatus.UNCHANGED, 0)}"
    )


async def _initialize_project_async(root: Path, repo_id: str, branch: str) -> SnapSyncConfig:
    root = root.resolve()
    normalized_repo_id = normalize_repo_id(repo_id)
    split_repo_id(normalized_repo_id)
    config = SnapSyncConfig(
        repo_id=normalized_repo_id,
        token=default_token(),
        local_root=str(root),
        branch=branch,
    )
    await ensure_db(config.state_db_path)
    save_config(config, root)
    return config


def _print_init_result(config: SnapSyncConfig, original_repo_id: str) -> None:
    console.print(f"[green]Initialized snapsync[/green] at {config.local_root_path}")
    console.print(f"Config: {config.local_root_path / CONFIG_FILENAME}")
    console.print(f"State DB: {config.state_db_path}")
    console.print(f"Target: {config.repo_id}@{config.branch}")
    if config.repo_id != original_repo_id.strip():
        console.print(f"Repo ID normalized: {original_repo_id} -> {config.repo_id}")
    if not config.token:
        console.print(
            "[yellow]GITHUB_TOKEN not found in environment. `token` was initialized as empty.[/yellow]"
        )


@app.command()
def init(
    repo_id: str,
    branch: str = typer.Option(DEFAULT_BRANCH, "--branch", help="Branch to push snapshots to."),
) -> None:
    """Initialize snapsync config in the current directory."""
    root = Path.cwd().resolve()
    try:
        config = asyncio.run(_initialize_project_async(root, repo_id, branch))
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    _print_init_result(config, repo_id)


async def _status_async(include: tuple[str, ...], exclude: tuple[str, ...], remote: bool) -> int:
    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    local_root = config.local_root_path
    if not local_root.exists():
        console.print(f"[red]Configured local_root does not exist: {local_root}[/red]")
        return 1

    path_filter = build_path_filter(include, exclude)
    source = DirectorySnapshotSource(local_root)
    console.print(f"Scanning [bold]{local_root}[/bold] ...")
    try:
        detection = await detect_changes(config, source, path_filter=path_filter, remote=remote)
    except KeyboardInterrupt:
        console.print("[yellow]Status interrupted.[/yellow]")
        return 130
    except (SnapSyncError, RuntimeError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    _render_changes("Added", detection.changes, ChangeStatus.ADDED)
    _render_changes("Modified", detection.changes, ChangeStatus.MODIFIED)
    _render_changes("Deleted", detection.changes, ChangeStatus.DELETED)

    if detection.warning:
        console.print(f"[yellow]{detection.warning}[/yellow]")
    if not detection.has_changes:
        console.print("[green]No changes detected.[/green]")
    _render_counts(detection.counts)
    console.print(f"Compared against: {detection.source}")
    return 0


@app.command()
def status(
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for paths to consider (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for paths to ignore (repeatable).",
    ),
    remote: bool = typer.Option(
        False,
        "--remote",
        help="Compare against the branch on GitHub instead of the last pushed snapshot.",
    ),
) -> None:
    """Show what a push would change."""
    raise typer.Exit(code=asyncio.run(_status_async(tuple(include or ()), tuple(exclude or ()), remote)))


def _print_push_result(config: SnapSyncConfig, result: SyncResult) -> None:
    if result.warning:
        console.print(f"[yellow]{result.warning}[/yellow]")

    if result.outcome is SyncOutcome.NO_CHANGES:
        console.print("[green]No local changes to push.[/green]")
        return

    _render_path_summary("Added", result.paths_with_status(ChangeStatus.ADDED), "green")
    _render_path_summary("Modified", result.paths_with_status(ChangeStatus.MODIFIED), "cyan")
    _render_path_summary("Deleted remote", result.paths_with_status(ChangeStatus.DELETED), "yellow")
    _render_counts(result.counts)
    console.print(f"Commit: {result.commit_sha} on {config.repo_id}@{config.branch}")
    if result.attempts > 1:
        console.print(f"Branch moved during the push; succeeded on attempt {result.attempts}.")
    console.print(f"Snapshot updated in {config.state_db_path}")


def _print_push_failure(result: SyncResult) -> None:
    stage = result.failed_stage.value if result.failed_stage else "unknown"
    if result.outcome is SyncOutcome.CANCELLED:
        console.print(f"[yellow]Push cancelled during {stage}.[/yellow] The branch was not updated.")
    elif result.outcome is SyncOutcome.CONFLICT:
        console.print(
            f"[red]Push failed:[/red] the branch kept moving after {result.attempts} attempt(s). {result.error}"
        )
    else:
        console.print(f"[red]Push failed during {stage}:[/red] {result.error}")
    _render_path_summary("Failed", result.failed_paths, "red")
    if result.uploaded_paths:
        console.print(f"Blobs created before the failure: {len(result.uploaded_paths)}")


async def _push_async(
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    message: str | None,
    remote: bool,
) -> int:
    try:
        config = load_config()
        path_filter = build_path_filter(include, exclude)
        result = await push_snapshot(
            config,
            DirectorySnapshotSource(config.local_root_path),
            message=message,
            path_filter=path_filter,
            force_remote=remote,
            console=console,
        )
    except KeyboardInterrupt:
        console.print("[yellow]Push interrupted.[/yellow] The branch was not updated by this run.")
        return 130
    except (FileNotFoundError, RuntimeError, SnapSyncError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    except Exception as exc:
        console.print(f"[red]Push failed:[/red] {exc}")
        return 1

    if not result.ok:
        _print_push_failure(result)
        return 130 if result.outcome is SyncOutcome.CANCELLED else 1

    _print_push_result(config, result)
    return 0


@app.command()
def push(
    message: str | None = typer.Option(None, "--message", "-m", help="Commit message."),
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for paths to push (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for paths to skip (repeatable).",
    ),
    remote: bool = typer.Option(
        False,
        "--remote",
        help="Always compare against the remote tree, even if the config prefers the local cache.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every API call."),
) -> None:
    """Push the local directory to GitHub as a single commit."""
    _setup_logging(verbose)
    raise typer.Exit(
        code=asyncio.run(_push_async(tuple(include or ()), tuple(exclude or ()), message, remote))
    )


async def _temp_repo_async(source: str, branch: str | None, cleanup: str | None) -> int:
    try:
        config = load_config()
        if cleanup:
            await delete_temporary_repo(config, cleanup)
            console.print(f"[green]Deleted[/green] {config.owner}/{cleanup}")
            return 0
        name = await create_temporary_repo(config, source, branch=branch)
    except (FileNotFoundError, RuntimeError, SnapSyncError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    console.print(f"[green]Created[/green] {config.owner}/{name}")
    console.print(f"Remove it with `snapsync temp-repo {source} --cleanup {name}`.")
    return 0


@app.command("temp-repo")
def temp_repo(
    source: str,
    branch: str | None = typer.Option(None, "--branch", help="Branch to seed. Defaults to the configured branch."),
    cleanup: str | None = typer.Option(None, "--cleanup", help="Delete the named temporary repository instead."),
) -> None:
    """Create (or delete) a private staging repository next to the configured one."""
    _setup_logging(False)
    raise typer.Exit(code=asyncio.run(_temp_repo_async(source, branch, cleanup)))
