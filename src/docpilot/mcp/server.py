"""MCP server exposing the active documentation session to agents."""

from mcp.server.fastmcp import FastMCP

from docpilot.exceptions import DocpilotError
from docpilot.session.manager import SessionManager
from docpilot.session.models import AnnotationKind, Session

mcp = FastMCP("docpilot")
manager = SessionManager()


def _summary(session: Session) -> dict:
    return {
        "id": session.id,
        "description": session.description,
        "state": session.describe_state(),
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "updated_at": session.updated_at.isoformat(),
        "total_commands": session.stats.total_commands,
        "successful_commands": session.stats.successful_commands,
        "failed_commands": session.stats.failed_commands,
        "total_annotations": session.stats.total_annotations,
    }


def _current() -> Session | None:
    # The CLI runs in other processes; re-read whatever it left on disk.
    manager.reload()
    return manager.get_current_session()


@mcp.tool()
def session_status() -> dict | str:
    """Show the documentation session that is currently recording.

    Call this before annotating to confirm which session the notes will land in.
    """
    session = _current()
    if session is None:
        return "No active session"
    return _summary(session)


@mcp.tool()
def add_annotation(text: str, kind: str = "note") -> dict | str:
    """Attach an annotation to the active documentation session.

    Use this to explain what a group of commands is for, flag a gotcha, or
    mark a milestone so the generated documentation reads like a walkthrough.

    Args:
        text: The annotation text
        kind: One of "note", "explanation", "warning", "milestone" (default "note")
    """
    try:
        annotation_kind = AnnotationKind(kind.lower())
    except ValueError:
        return f"Unknown annotation kind: {kind}"

    if _current() is None:
        return "No active session"
    try:
        annotation_id = manager.add_annotation(text, annotation_kind)
    except DocpilotError as e:
        return str(e)
    return {"id": annotation_id, "kind": str(annotation_kind), "status": "saved"}


@mcp.tool()
def list_sessions(limit: int = 20) -> list[dict]:
    """Browse stored documentation sessions, most recently updated first.

    Args:
        limit: Maximum results to return (default 20)
    """
    manager.reload()
    sessions = []
    for session_id in manager.list_sessions():
        try:
            sessions.append(manager.load_session_with_recovery(session_id))
        except DocpilotError:
            continue
    sessions.sort(key=lambda s: s.updated_at, reverse=True)
    return [_summary(s) for s in sessions[:limit]]


@mcp.tool()
def get_session(session_id: str) -> dict | str:
    """Get full details of a stored session, including commands and annotations.

    Args:
        session_id: The session ID to retrieve
    """
    manager.reload()
    try:
        session = manager.load_session_with_recovery(session_id)
    except DocpilotError:
        return f"Session {session_id} not found"
    return session.model_dump(mode="json")
