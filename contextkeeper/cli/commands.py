"""CLI commands for contextkeeper."""

import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from contextkeeper import __logo__, __version__

app = typer.Typer(
    name="contextkeeper",
    help=f"{__logo__} contextkeeper - Inspect session checkpoints and working memory",
    no_args_is_help=True,
)

console = Console()

STATE_DIR_HELP = "State directory (defaults to the configured one)"


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} contextkeeper v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
):
    """contextkeeper - Context checkpoints for long-running agents."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _state_dir(override: str | None) -> Path:
    if override:
        return Path(override).expanduser()
    from contextkeeper.config.loader import load_config
    return load_config().state_path


def _checkpoint_store(session_key: str, state_dir: str | None):
    from contextkeeper.agent.checkpoint import CheckpointStore
    return CheckpointStore(_state_dir(state_dir), session_key)


# ============================================================================
# Checkpoints
# ============================================================================


@app.command()
def show(
    session_key: str = typer.Argument(..., help="Session key, e.g. agent:main:telegram:123"),
    checkpoint_id: str = typer.Option(None, "--checkpoint", "-c", help="Checkpoint ID (default: latest)"),
    raw: bool = typer.Option(False, "--raw", help="Print the stored YAML instead of the rendered text"),
    reason: str = typer.Option("session-resume", "--reason", help="session-resume or post-compaction"),
    state_dir: str = typer.Option(None, "--state-dir", help=STATE_DIR_HELP),
):
    """Show a checkpoint as it would be injected into the agent."""
    from contextkeeper.agent.inject import render_checkpoint_for_injection

    if reason not in ("session-resume", "post-compaction"):
        console.print(f"[red]Unknown reason: {reason}[/red]")
        raise typer.Exit(1)

    store = _checkpoint_store(session_key, state_dir)
    if checkpoint_id:
        path = next((p for p in store.list_checkpoints() if p.stem == checkpoint_id), None)
        checkpoint = store.read(path) if path else None
    else:
        checkpoint = store.read_latest()

    if checkpoint is None:
        console.print(f"[yellow]No checkpoint found for {session_key}[/yellow]")
        raise typer.Exit(1)

    if raw:
        console.print(checkpoint.to_yaml(), markup=False, highlight=False)
    else:
        console.print(render_checkpoint_for_injection(checkpoint, reason), markup=False, highlight=False)


@app.command("list")
def list_checkpoints(
    session_key: str = typer.Argument(..., help="Session key"),
    state_dir: str = typer.Option(None, "--state-dir", help=STATE_DIR_HELP),
):
    """List stored checkpoints for a session."""
    store = _checkpoint_store(session_key, state_dir)
    paths = store.list_checkpoints()
    if not paths:
        console.print("No checkpoints.")
        return

    latest = (store.read_pointer() or {}).get("checkpoint_id")

    table = Table(title=f"Checkpoints for {session_key}")
    table.add_column("ID", style="cyan")
    table.add_column("Trigger")
    table.add_column("Created")
    table.add_column("Usage", justify="right")
    table.add_column("Compactions", justify="right")
    table.add_column("Enrichment")

    for path in paths:
        cp = store.read(path)
        if cp is None:
            table.add_row(path.stem, "[red]unreadable[/red]", "", "", "", "")
            continue
        marker = " [green]*[/green]" if cp.meta.checkpoint_id == latest else ""
        table.add_row(
            f"{cp.meta.checkpoint_id}{marker}",
            cp.meta.trigger,
            cp.meta.created_at[:19],
            f"{cp.meta.token_usage.utilization:.0%}",
            str(cp.meta.compaction_count),
            cp.meta.enrichment or "-",
        )

    console.print(table)


@app.command()
def prune(
    session_key: str = typer.Argument(..., help="Session key"),
    keep: int = typer.Option(5, "--keep", "-k", help="Number of newest checkpoints to keep"),
    state_dir: str = typer.Option(None, "--state-dir", help=STATE_DIR_HELP),
):
    """Delete all but the newest checkpoints."""
    if keep < 1:
        console.print("[red]Error: --keep must be at least 1[/red]")
        raise typer.Exit(1)
    deleted = _checkpoint_store(session_key, state_dir).prune(keep)
    console.print(f"[green]✓[/green] Pruned {len(deleted)} checkpoint(s)")


# ============================================================================
# Working memory
# ============================================================================


@app.command()
def state(
    session_key: str = typer.Argument(..., help="Session key"),
    state_dir: str = typer.Option(None, "--state-dir", help=STATE_DIR_HELP),
):
    """Show the accumulated working memory of a session."""
    from contextkeeper.agent.state import StateStore

    store = StateStore(_state_dir(state_dir), session_key)
    snapshot = store.read_all()
    if snapshot.is_empty:
        console.print(f"No accumulated state for {session_key}.")
        return

    table = Table(title=f"State for {session_key}")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Latest")

    def latest(items: list[str]) -> str:
        return items[-1] if items else ""

    table.add_row("Decisions", str(len(snapshot.decisions)), latest([d.what for d in snapshot.decisions]))
    table.add_row("Thread", str(len(snapshot.thread)), latest([f"[{t.role}] {t.gist}" for t in snapshot.thread]))
    table.add_row("Files", str(len(snapshot.resources.files)), latest([f.path for f in snapshot.resources.files]))
    table.add_row("Tools", str(len(snapshot.resources.tools_used)), ", ".join(snapshot.resources.tools_used[-5:]))
    table.add_row("Open items", str(len(snapshot.open_items)), latest(snapshot.open_items))
    table.add_row("Learnings", str(len(snapshot.learnings)), latest([entry.text for entry in snapshot.learnings]))

    console.print(table)


@app.command()
def learnings(
    session_key: str = typer.Argument("main", help="Any session key of the agent, or a bare agent id"),
    state_dir: str = typer.Option(None, "--state-dir", help=STATE_DIR_HELP),
):
    """List an agent's cross-session learnings."""
    from contextkeeper.agent.learnings import read_cross_session_learnings

    if ":" not in session_key:
        session_key = f"agent:{session_key}:cli"
    store = read_cross_session_learnings(_state_dir(state_dir), session_key)
    if not store.learnings:
        console.print("No learnings.")
        return

    table = Table(title="Cross-session learnings")
    table.add_column("Learning")
    table.add_column("Promoted", justify="right")
    table.add_column("Last promoted")
    table.add_column("Source", style="dim")

    for entry in sorted(store.learnings, key=lambda e: e.last_promoted_at, reverse=True):
        table.add_row(entry.text, str(entry.promotion_count), entry.last_promoted_at[:19], entry.source_session)

    console.print(table)


if __name__ == "__main__":
    app()
