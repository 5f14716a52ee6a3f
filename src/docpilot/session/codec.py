"""JSON encoding of session records.

Records are pretty-printed JSON objects whose keys are the model field
names, so a record on disk can be read (and diffed) by hand.
"""

from pydantic import ValidationError

from docpilot.exceptions import SessionCorruptedError
from docpilot.session.models import Session


def encode_session(session: Session) -> str:
    """Serialize a session to its on-disk text form."""
    return session.model_dump_json(indent=2)


def decode_session(data: str | bytes, source: str | None = None) -> Session:
    """Parse a session record.

    Raises SessionCorruptedError when the bytes are not UTF-8 JSON, miss
    required fields, carry fields the model does not know, or hold naive
    timestamps.
    """
    try:
        return Session.model_validate_json(data)
    except (ValidationError, UnicodeDecodeError) as e:
        where = f" in {source}" if source else ""
        detail = f"{e.error_count()} error(s)" if isinstance(e, ValidationError) else str(e)
        raise SessionCorruptedError(f"Malformed session record{where}: {detail}") from e
