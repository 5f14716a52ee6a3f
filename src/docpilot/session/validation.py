"""Consistency checks applied to a decoded session before it is trusted."""

from uuid import UUID

from docpilot.session.models import Session


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def validate_session(session: Session) -> bool:
    """Return True when the session is internally consistent.

    The ordering of created_at and started_at is deliberately not checked.
    """
    if not session.id or not session.description.strip():
        return False

    if (
        session.started_at is not None
        and session.stopped_at is not None
        and session.stopped_at < session.started_at
    ):
        return False

    stats = session.stats
    if stats.successful_commands + stats.failed_commands > stats.total_commands:
        return False
    if stats.total_annotations != len(session.annotations):
        return False

    annotation_ids = [a.id for a in session.annotations]
    event_ids = [e.id for e in session.events]
    for ids in (annotation_ids, event_ids):
        if len(set(ids)) != len(ids):
            return False
        if not all(_is_uuid(i) for i in ids):
            return False

    return True
