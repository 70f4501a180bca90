"""Fleet CLI - checkpoint and roll back agent sessions."""

import json
import logging
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from fleet import __version__
from fleet.capture import CaptureOptions, Capturer
from fleet.checkpoint import Checkpoint, CheckpointStorage
from fleet.config import FleetConfig
from fleet.errors import CHECKPOINT_NOT_FOUND, FleetError, format_error, not_found
from fleet.git import GitRepo
from fleet.resolve import resolve_reference
from fleet.rollback import (
    STATUS_FAILED,
    STATUS_OK,
    RollbackEngine,
    RollbackOptions,
    RollbackPlan,
    RollbackReport,
    session_working_dir,
)
from fleet.tmux import TmuxSession

console = Console()
err_console = Console(stderr=True)

AGENT_LABELS = {"cc": "Claude", "cod": "Codex", "gmi": "Gemini", "user": "user"}


@dataclass
class CliState:
    config: FleetConfig
    as_json: bool = False


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("fleet")
    logger.handlers = [RichHandler(console=err_console, show_path=False, show_time=False)]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


# Factories, patched in tests
def make_terminal(config: FleetConfig) -> TmuxSession:
    return TmuxSession(socket=config.tmux_socket, timeout=config.command_timeout)


def make_vcs(config: FleetConfig) -> GitRepo:
    return GitRepo(timeout=config.command_timeout)


def _emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _fail(state: CliState, error: FleetError) -> None:
    """Report an error and exit 1."""
    if state.as_json:
        _emit_json({"success": False, "error": error.to_dict()})
    else:
        err_console.print(f"[red]{escape(format_error(error))}[/red]")
    sys.exit(1)


def format_age(created_at: datetime, now: datetime | None = None) -> str:
    """Human-friendly age: "just now", "5m ago", "3h ago", "2d ago", or a date."""
    now = now or datetime.now(UTC)
    seconds = (now - created_at).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h ago"
    if seconds < 7 * 86400:
        return f"{int(seconds // 86400)}d ago"
    local = created_at.astimezone()
    return f"{local:%b} {local.day}"


def _git_summary(cp: Checkpoint) -> str:
    git = cp.git
    if not git.commit:
        return "-"
    text = f"{git.branch} @ {git.short_commit}"
    if git.is_dirty:
        text += f" (dirty: {git.staged_count} staged, {git.unstaged_count} unstaged, {git.untracked_count} untracked)"
    return text


@click.group()
@click.version_option(version=__version__)
@click.option("--json", "as_json", is_flag=True, help="Output JSON instead of text")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--checkpoint-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Checkpoint root (default: ~/.local/share/fleet/checkpoints)",
)
@click.pass_context
def main(ctx, as_json, verbose, checkpoint_dir):
    """Fleet: checkpoint and roll back agent sessions."""
    _setup_logging(verbose)
    config = FleetConfig.load()
    if checkpoint_dir is not None:
        config.checkpoint_dir = checkpoint_dir.expanduser()
    ctx.obj = CliState(config=config, as_json=as_json)


# ============================================================================
# Checkpoints
# ============================================================================


@main.group()
def checkpoint():
    """Manage session checkpoints."""
    pass


@checkpoint.command("save")
@click.argument("session")
@click.option("--message", "-m", default="", help="Checkpoint description")
@click.option("--name", default="", help="Short label, also embedded in the checkpoint id")
@click.option(
    "--scrollback",
    type=click.IntRange(min=0),
    default=None,
    help="Scrollback lines per pane (default: 1000, 0 to skip)",
)
@click.option("--no-git", is_flag=True, help="Skip capturing git state")
@click.pass_obj
def checkpoint_save(state, session, message, name, scrollback, no_git):
    """Create a checkpoint of SESSION."""
    config = state.config
    storage = CheckpointStorage.from_config(config)
    capturer = Capturer(storage, make_terminal(config), make_vcs(config), config)

    result = capturer.create(
        session,
        name,
        CaptureOptions(description=message, capture_git=not no_git, scrollback_lines=scrollback),
    )
    if result.is_err():
        _fail(state, result.unwrap_err())

    captured = result.unwrap()
    cp = captured.checkpoint

    if state.as_json:
        _emit_json(
            {
                "success": True,
                "checkpoint": cp.to_dict(),
                "path": str(storage.checkpoint_dir(cp.session_name, cp.id)),
                "warnings": [w.to_dict() for w in captured.warnings],
            }
        )
        return

    console.print(f"[green]✓[/green] Checkpoint created: [bold]{escape(cp.id)}[/bold]")
    console.print(f"  Session: {escape(cp.session_name)}")
    console.print(f"  Panes: {cp.pane_count}")
    if cp.git.commit:
        console.print(f"  Git: {escape(_git_summary(cp))}")
    if cp.description:
        console.print(f"  Description: {escape(cp.description)}")
    for warning in captured.warnings:
        console.print(f"  [yellow]! {escape(warning.message)}[/yellow]")


@checkpoint.command("list")
@click.argument("session", required=False)
@click.pass_obj
def checkpoint_list(state, session):
    """List checkpoints, for one SESSION or all sessions."""
    storage = CheckpointStorage.from_config(state.config)
    checkpoints = storage.list(session) if session else storage.list_all()

    if state.as_json:
        _emit_json(
            {
                "count": len(checkpoints),
                "checkpoints": [
                    {**cp.to_dict(), "age": format_age(cp.created_at)} for cp in checkpoints
                ],
            }
        )
        return

    if not checkpoints:
        console.print("[yellow]No checkpoints found.[/yellow]")
        console.print("Create one with: fleet checkpoint save <session>")
        return

    table = Table()
    table.add_column("SESSION")
    table.add_column("ID")
    table.add_column("AGE")
    table.add_column("PANES", justify="right")
    table.add_column("GIT")
    table.add_column("DESCRIPTION")

    for cp in checkpoints:
        description = cp.description
        if len(description) > 40:
            description = description[:37] + "..."
        git_mark = "dirty" if cp.git.is_dirty else ("clean" if cp.git.commit else "-")
        table.add_row(
            escape(cp.session_name),
            escape(cp.id),
            format_age(cp.created_at),
            str(cp.pane_count),
            git_mark,
            escape(description),
        )

    console.print(table)


@checkpoint.command("show")
@click.argument("session")
@click.argument("ref")
@click.pass_obj
def checkpoint_show(state, session, ref):
    """Show details of a checkpoint.

    REF may be a checkpoint id, a unique id prefix, "last", or "~N".
    """
    storage = CheckpointStorage.from_config(state.config)
    result = resolve_reference(storage, session, ref)
    if result.is_err():
        _fail(state, result.unwrap_err())
    cp = result.unwrap()
    path = storage.checkpoint_dir(cp.session_name, cp.id)

    if state.as_json:
        _emit_json({**cp.to_dict(), "path": str(path), "age": format_age(cp.created_at)})
        return

    console.print(f"[bold]Checkpoint:[/bold] {escape(cp.id)}")
    console.print(f"  Session: {escape(cp.session_name)}")
    if cp.name:
        console.print(f"  Name: {escape(cp.name)}")
    console.print(f"  Created: {cp.created_at.isoformat()} ({format_age(cp.created_at)})")
    if cp.description:
        console.print(f"  Description: {escape(cp.description)}")
    if cp.working_dir:
        console.print(f"  Working dir: {escape(cp.working_dir)}")
    console.print(f"  Path: {escape(str(path))}")
    console.print()

    table = Table(title=f"Panes ({cp.pane_count})")
    table.add_column("INDEX", justify="right")
    table.add_column("TITLE")
    table.add_column("AGENT")
    table.add_column("SIZE")
    table.add_column("SCROLLBACK", justify="right")
    for pane in cp.session.panes:
        table.add_row(
            str(pane.index),
            escape(pane.title),
            AGENT_LABELS.get(pane.agent_type, pane.agent_type),
            f"{pane.width}x{pane.height}",
            f"{pane.scrollback_lines} lines",
        )
    console.print(table)

    console.print()
    if cp.git.commit:
        console.print("[bold]Git:[/bold]")
        console.print(f"  Branch: {escape(cp.git.branch)}")
        console.print(f"  Commit: {cp.git.commit}")
        if cp.git.is_dirty:
            console.print(
                f"  Changes: {cp.git.staged_count} staged, {cp.git.unstaged_count} unstaged, "
                f"{cp.git.untracked_count} untracked"
            )
            console.print(f"  Patch: {'saved' if cp.has_git_patch else 'none'}")
        else:
            console.print("  Working tree clean")
    else:
        console.print("[dim]No git state captured[/dim]")


@checkpoint.command("delete")
@click.argument("session")
@click.argument("checkpoint_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_obj
def checkpoint_delete(state, session, checkpoint_id, force):
    """Delete a checkpoint."""
    storage = CheckpointStorage.from_config(state.config)

    if not storage.exists(session, checkpoint_id):
        missing = not_found(
            f"Checkpoint '{checkpoint_id}' not found for session '{session}'",
            code=CHECKPOINT_NOT_FOUND,
            session=session,
            checkpoint_id=checkpoint_id,
        )
        _fail(state, missing.unwrap_err())

    if not force and not state.as_json:
        if not click.confirm(f"Delete checkpoint '{checkpoint_id}'?"):
            console.print("Cancelled.")
            return

    result = storage.delete(session, checkpoint_id)
    if result.is_err():
        _fail(state, result.unwrap_err())

    if state.as_json:
        _emit_json({"success": True, "deleted": checkpoint_id, "session": session})
    else:
        console.print(f"[green]✓[/green] Deleted: {escape(checkpoint_id)}")


# ============================================================================
# Rollback
# ============================================================================


@main.command()
@click.argument("session")
@click.argument("ref", required=False)
@click.option("--last", is_flag=True, help="Roll back to the most recent checkpoint")
@click.option("--dry-run", is_flag=True, help="Show planned actions without changing anything")
@click.option("--no-stash", is_flag=True, help="Don't stash current changes first")
@click.option("--no-git", is_flag=True, help="Skip all git operations")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_obj
def rollback(state, session, ref, last, dry_run, no_stash, no_git, force):
    """Restore SESSION to a checkpoint.

    REF may be a checkpoint id, a unique id prefix, "last", or "~N".
    Uncommitted changes are stashed first unless --no-stash is given.
    """
    if last:
        ref = "last"
    if not ref:
        raise click.UsageError("checkpoint reference required (use --last or give a reference)")

    config = state.config
    storage = CheckpointStorage.from_config(config)
    terminal = make_terminal(config)

    working_dir = ""
    wd_result = session_working_dir(terminal, session)
    if wd_result.is_ok():
        working_dir = wd_result.unwrap()
    elif not no_git:
        _fail(state, wd_result.unwrap_err())

    cp_result = resolve_reference(storage, session, ref)
    if cp_result.is_err():
        _fail(state, cp_result.unwrap_err())
    cp = cp_result.unwrap()

    engine = RollbackEngine(storage, terminal, make_vcs(config))
    options = RollbackOptions(no_stash=no_stash, no_git=no_git)

    if dry_run:
        _render_plan(state, engine.preview(cp, working_dir, options))
        return

    if not force and not state.as_json:
        console.print(f"Roll back to checkpoint [bold]{escape(cp.id)}[/bold]?")
        console.print(f"  Created: {cp.created_at.isoformat()} ({format_age(cp.created_at)})")
        if cp.git.commit:
            console.print(f"  Git: {escape(cp.git.branch)} @ {cp.git.short_commit}")
        if cp.description:
            console.print(f"  Description: {escape(cp.description)}")
        console.print()
        if not click.confirm("Proceed with rollback?"):
            console.print("Aborted.")
            return

    result = engine.execute(cp, working_dir, options)
    if result.is_err():
        _fail(state, result.unwrap_err())
    _render_report(state, result.unwrap())


def _render_plan(state: CliState, plan: RollbackPlan) -> None:
    if state.as_json:
        _emit_json(plan.to_dict())
        return

    cp = plan.checkpoint
    console.print("[bold]Rollback Preview (dry-run)[/bold]")
    console.print(f"  Checkpoint: {escape(cp.id)}")
    console.print(f"  Created: {cp.created_at.isoformat()} ({format_age(cp.created_at)})")
    if cp.description:
        console.print(f"  Description: {escape(cp.description)}")
    console.print(f"  Panes: {cp.pane_count}")
    console.print()

    console.print("  [bold]Planned actions:[/bold]")
    number = 1
    for step in plan.steps:
        if step.will_run:
            console.print(f"    {number}. {escape(step.description)}")
            number += 1
        else:
            console.print(f"    [dim]- skip {step.name}: {escape(step.reason)}[/dim]")
    for warning in plan.warnings:
        console.print(f"    [red]! Warning: {escape(warning)}[/red]")

    console.print()
    console.print("  [cyan]No changes made (dry-run mode)[/cyan]")


def _render_report(state: CliState, report: RollbackReport) -> None:
    if state.as_json:
        _emit_json(report.to_dict())
        return

    for outcome in report.steps:
        if outcome.status == STATUS_OK:
            console.print(f"[green]✓[/green] {outcome.name}: {escape(outcome.message)}")
        elif outcome.status == STATUS_FAILED:
            console.print(f"[yellow]![/yellow] {outcome.name}: {escape(outcome.message)}")
        else:
            console.print(f"[dim]- {outcome.name}: skipped ({escape(outcome.message)})[/dim]")
    for warning in report.warnings:
        console.print(f"[yellow]! Warning: {escape(warning.message)}[/yellow]")

    console.print()
    console.print("[green]✓ Rollback complete[/green]")
    if report.stash_name:
        console.print(f"  Previous changes stashed as {escape(report.stash_name)}")
        console.print("  To restore them: git stash pop")


if __name__ == "__main__":
    main()
