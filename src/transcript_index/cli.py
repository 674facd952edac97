"""transcript-index CLI - build, query and watch the local transcript index."""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from .daemon import IndexerDaemon, daemon_pid, stop_daemon
from .discovery import FileFamily
from .errors import TranscriptIndexError
from .indexer import DeltaIndexer
from .paths import get_pid_path
from .pipeline.correlate import correlate_turns
from .search import default_registry, search_unified
from .store import open_store

app = typer.Typer(
    name="transcript-index",
    help="Incremental full-text index over agent transcripts and hook events",
    no_args_is_help=True,
)
daemon_app = typer.Typer(help="Run or control the background indexer", no_args_is_help=True)
app.add_typer(daemon_app, name="daemon")

console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.command()
def index(
    rebuild: bool = typer.Option(False, "--rebuild", help="Drop the index and re-read every file"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database path"),
    projects_dir: Optional[Path] = typer.Option(None, "--projects-dir", help="Transcript root"),
    hooks_dir: Optional[Path] = typer.Option(None, "--hooks-dir", help="Hook-event root"),
):
    """Index new transcript lines and hook events, then correlate turns."""
    try:
        with open_store(db) as store:
            indexer = DeltaIndexer(store, projects_dir, hooks_dir)
            if rebuild:
                passes = indexer.rebuild()
            else:
                passes = {family: indexer.index_once(family) for family in FileFamily}
            correlation = correlate_turns(store)
    except TranscriptIndexError as e:
        rprint(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    for family, result in passes.items():
        rprint(
            f"[green]✓[/] {family.value}: {result.rows_indexed} row(s) from "
            f"{result.files_indexed}/{result.files_scanned} file(s)"
        )
        for error in result.errors:
            rprint(f"  [yellow]![/] {error}")
    rprint(f"[green]✓[/] Correlated {correlation.lines_updated} line(s) in {correlation.sessions} session(s)")


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of results", min=1, max=500),
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="transcripts or hook-events"),
    session: Optional[List[str]] = typer.Option(None, "--session", help="Restrict to session id(s)"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database path"),
):
    """Search all sources, newest matches first."""
    registry = default_registry()
    unknown = [name for name in source or [] if registry.get(name) is None]
    if unknown:
        rprint(f"[red]Unknown source(s): {', '.join(unknown)}[/]")
        raise typer.Exit(1)

    with open_store(db) as store:
        if not store.is_ready():
            rprint("[yellow]Index is not ready; run `transcript-index index` first[/]")
            raise typer.Exit(1)
        results = search_unified(store, query, registry=registry, sources=source, session_ids=session, limit=limit)

    if not results:
        rprint("[yellow]No results found[/]")
        return

    table = Table(show_header=True)
    table.add_column("", width=2)
    table.add_column("Time", style="dim")
    table.add_column("Session", style="cyan")
    table.add_column("Type")
    table.add_column("Match")
    for r in results:
        table.add_row(r.source_icon, r.timestamp or "-", r.slug or r.session_id[:8], r.entry_type or "-", r.matched_text)
    console.print(table)


@app.command()
def stats(db: Optional[Path] = typer.Option(None, "--db", help="Database path")):
    """Show index statistics."""
    with open_store(db) as store:
        info = store.get_stats()
        ready = store.is_ready()

    table = Table(show_header=False)
    for key, value in info.items():
        table.add_row(key, str(value))
    table.add_row("ready", "yes" if ready else "no")
    console.print(table)


@app.command()
def correlate(db: Optional[Path] = typer.Option(None, "--db", help="Database path")):
    """Assign turns to transcript lines from hook events."""
    with open_store(db) as store:
        result = correlate_turns(store)
    rprint(f"[green]✓[/] Updated {result.lines_updated} line(s) in {result.sessions} session(s)")


@daemon_app.command("run")
def daemon_run(db: Optional[Path] = typer.Option(None, "--db", help="Database path")):
    """Run the indexer in the foreground until SIGTERM/SIGINT."""
    pid_path = get_pid_path()
    existing = daemon_pid(pid_path)
    if existing is not None:
        rprint(f"[yellow]Daemon already running (pid {existing})[/]")
        raise typer.Exit(1)

    with open_store(db) as store:
        try:
            IndexerDaemon(store).run_forever(pid_path)
        except TranscriptIndexError as e:
            rprint(f"[red]Error:[/] {e}")
            raise typer.Exit(1)


@daemon_app.command("stop")
def daemon_stop():
    """Ask a running daemon to shut down."""
    if stop_daemon(get_pid_path()):
        rprint("[green]✓[/] Stop signal sent")
    else:
        rprint("[yellow]Daemon is not running[/]")


@daemon_app.command("status")
def daemon_status():
    """Report whether the daemon is running."""
    pid = daemon_pid(get_pid_path())
    if pid is None:
        rprint("[yellow]not running[/]")
        raise typer.Exit(1)
    rprint(f"[green]running[/] (pid {pid})")


if __name__ == "__main__":
    app()
