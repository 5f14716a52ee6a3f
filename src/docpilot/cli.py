"""docpilot CLI - document terminal sessions as you work."""

from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from docpilot import __version__
from docpilot.config import DEFAULT_CLEANUP_AGE_DAYS, ensure_dirs
from docpilot.exceptions import DocpilotError, NoActiveSessionError
from docpilot.logging import configure_logging
from docpilot.session.codec import encode_session
from docpilot.session.manager import SessionManager
from docpilot.session.models import AnnotationKind, Session

app = typer.Typer(
    name="docpilot",
    help="Capture terminal sessions as living documentation.",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Manage stored sessions.")
mcp_app = typer.Typer(help="MCP server management.")

app.add_typer(sessions_app, name="sessions")
app.add_typer(mcp_app, name="mcp")

console = Console()

ANNOTATION_ALIASES = {
    "note": AnnotationKind.NOTE,
    "n": AnnotationKind.NOTE,
    "explanation": AnnotationKind.EXPLANATION,
    "explain": AnnotationKind.EXPLANATION,
    "e": AnnotationKind.EXPLANATION,
    "warning": AnnotationKind.WARNING,
    "warn": AnnotationKind.WARNING,
    "w": AnnotationKind.WARNING,
    "milestone": AnnotationKind.MILESTONE,
    "m": AnnotationKind.MILESTONE,
}


def version_callback(value: bool) -> None:
    if value:
        console.print(f"docpilot {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Show debug logs")] = False,
) -> None:
    """docpilot - turn what you type into documentation."""
    configure_logging(level="DEBUG" if verbose else "WARNING")
    ensure_dirs()


def _manager() -> SessionManager:
    """A manager that has adopted any interrupted session."""
    manager = SessionManager()
    manager.recover_session()
    return manager


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _format_duration(seconds: int | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _session_table(session: Session, title: str) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("ID", session.id)
    table.add_row("Description", session.description)
    table.add_row("State", session.describe_state())
    table.add_row("Started", session.started_at.isoformat() if session.started_at else "-")
    table.add_row("Duration", _format_duration(session.duration_seconds()))
    table.add_row(
        "Commands",
        f"{session.stats.total_commands} "
        f"([green]{session.stats.successful_commands} ok[/green], "
        f"[red]{session.stats.failed_commands} failed[/red])",
    )
    table.add_row("Annotations", str(session.stats.total_annotations))
    if session.output_file:
        table.add_row("Output", str(session.output_file))
    return table


# ── Lifecycle commands ───────────────────────────────────────────


@app.command("start")
def start(
    description: Annotated[str, typer.Argument(help="What you are documenting")],
    output: Annotated[
        Optional[Path], typer.Option("--output", "-o", help="Where to write the documentation")
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Abandon any active session and start anew")
    ] = False,
) -> None:
    """Start a new documentation session."""
    manager = _manager()
    current = manager.get_current_session()

    if current is not None and not force:
        console.print(
            f"[yellow]Session {current.short_id()} ({current.description}) "
            f"is still {current.describe_state()}.[/yellow]"
        )
        console.print("Stop it with: docpilot stop, or start over with: docpilot start --force")
        raise typer.Exit(1)

    try:
        if force:
            session_id = manager.force_start_session(description, output)
        else:
            session_id = manager.start_session(description, output)
    except DocpilotError as e:
        _fail(str(e))

    console.print(f"[green]Started session:[/green] {session_id}")
    console.print(f"  {description}")


@app.command("stop")
def stop() -> None:
    """Stop the active session."""
    manager = _manager()
    try:
        session = manager.stop_session()
    except NoActiveSessionError:
        _fail("No active session. Start one first: docpilot start <description>")
    except DocpilotError as e:
        _fail(str(e))

    console.print(_session_table(session, "Session stopped"))


@app.command("pause")
def pause() -> None:
    """Pause command capture for the active session."""
    manager = _manager()
    try:
        manager.pause_session()
    except DocpilotError as e:
        _fail(str(e))
    console.print("[yellow]Session paused.[/yellow] Commands will not be captured until resumed.")


@app.command("resume")
def resume() -> None:
    """Resume a paused session."""
    manager = _manager()
    try:
        manager.resume_session()
    except DocpilotError as e:
        _fail(str(e))
    console.print("[green]Session resumed.[/green]")


@app.command("status")
def status() -> None:
    """Show the active session."""
    manager = _manager()
    session = manager.get_current_session()
    if session is None:
        console.print("[dim]No active session.[/dim]")
        return
    console.print(_session_table(session, "Current session"))


# ── Annotation commands ──────────────────────────────────────────


def _annotate(text: str, kind: AnnotationKind) -> None:
    manager = _manager()
    try:
        annotation_id = manager.add_annotation(text, kind)
    except NoActiveSessionError:
        _fail("No active session. Start one first: docpilot start <description>")
    except DocpilotError as e:
        _fail(str(e))
    console.print(f"[green]Added {kind}:[/green] {text} [dim]({annotation_id[:8]})[/dim]")


@app.command("annotate")
def annotate(
    text: Annotated[str, typer.Argument(help="Annotation text")],
    annotation_type: Annotated[
        str,
        typer.Option("--type", "-t", help="note, explanation, warning or milestone"),
    ] = "note",
) -> None:
    """Add an annotation to the active session."""
    kind = ANNOTATION_ALIASES.get(annotation_type.lower())
    if kind is None:
        _fail(f"Unknown annotation type: {annotation_type}")
    _annotate(text, kind)


@app.command("note")
def note(text: Annotated[str, typer.Argument(help="Note text")]) -> None:
    """Add a note."""
    _annotate(text, AnnotationKind.NOTE)


@app.command("explain")
def explain(text: Annotated[str, typer.Argument(help="Explanation text")]) -> None:
    """Explain what is happening."""
    _annotate(text, AnnotationKind.EXPLANATION)


@app.command("warn")
def warn(text: Annotated[str, typer.Argument(help="Warning text")]) -> None:
    """Flag something important."""
    _annotate(text, AnnotationKind.WARNING)


@app.command("milestone")
def milestone(text: Annotated[str, typer.Argument(help="Milestone text")]) -> None:
    """Mark a milestone."""
    _annotate(text, AnnotationKind.MILESTONE)


# ── Session store commands ───────────────────────────────────────


@sessions_app.command("list")
def sessions_list() -> None:
    """List stored sessions, most recently updated first."""
    manager = SessionManager()
    sessions = []
    for session_id in manager.list_sessions():
        try:
            sessions.append(manager.load_session_with_recovery(session_id))
        except DocpilotError as e:
            console.print(f"[red]Unreadable session {session_id}:[/red] {e}")

    if not sessions:
        console.print("[dim]No sessions stored.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Description")
    table.add_column("State", style="green")
    table.add_column("Commands", justify="right")
    table.add_column("Updated")

    for s in sorted(sessions, key=lambda s: s.updated_at, reverse=True):
        table.add_row(
            s.short_id(),
            s.description,
            s.describe_state(),
            str(s.stats.total_commands),
            s.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    raw: Annotated[bool, typer.Option("--json", help="Print the stored record")] = False,
) -> None:
    """Show one stored session."""
    manager = SessionManager()
    try:
        session = manager.load_session_with_recovery(session_id)
    except DocpilotError as e:
        _fail(str(e))

    if raw:
        console.print_json(encode_session(session))
    else:
        console.print(_session_table(session, f"Session {session.short_id()}"))


@sessions_app.command("delete")
def sessions_delete(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Delete a stored session."""
    manager = SessionManager()
    if manager.delete_session(session_id):
        console.print(f"[green]Deleted session:[/green] {session_id}")
    else:
        console.print(f"[red]Session not found:[/red] {session_id}")
        raise typer.Exit(1)


@sessions_app.command("export")
def sessions_export(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    path: Annotated[Path, typer.Argument(help="Destination file")],
) -> None:
    """Copy a session record to a file."""
    manager = SessionManager()
    try:
        dest = manager.export_session(session_id, path)
    except DocpilotError as e:
        _fail(str(e))
    console.print(f"[green]Exported:[/green] {dest}")


@sessions_app.command("import")
def sessions_import(
    path: Annotated[Path, typer.Argument(help="Session record to import")],
) -> None:
    """Import a session record from a file."""
    manager = SessionManager()
    try:
        session_id = manager.import_session(path)
    except DocpilotError as e:
        _fail(str(e))
    console.print(f"[green]Imported session:[/green] {session_id}")


@sessions_app.command("cleanup")
def sessions_cleanup(
    days: Annotated[
        int, typer.Option("--days", "-d", help="Remove data older than this many days")
    ] = DEFAULT_CLEANUP_AGE_DAYS,
) -> None:
    """Remove old stopped sessions and backups."""
    manager = SessionManager()
    removed = manager.cleanup_old_data(days)
    console.print(f"Removed {removed} file(s) older than {days} days.")


@sessions_app.command("stats")
def sessions_stats() -> None:
    """Show storage usage."""
    stats = SessionManager().get_storage_stats()
    table = Table(title="Storage", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Sessions", str(stats.session_count))
    table.add_row("Backups", str(stats.backup_count))
    table.add_row("Backup size", f"{stats.backup_size} B")
    table.add_row("Total size", f"{stats.total_size} B")
    console.print(table)


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from docpilot.mcp.server import mcp

    mcp.run()
