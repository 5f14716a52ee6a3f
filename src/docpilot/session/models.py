"""Session data models for documentation sessions.

A Session is one documentation run: the commands captured from the
terminal, the notes the user added by hand, an append-only audit trail
of everything that happened to it, and the counters derived from those.

State machine::

    active --pause--> paused --resume--> active
    active | paused --stop--> stopped
    any --set_error--> error

Nothing here touches the filesystem; persistence lives in
``docpilot.session.store``.
"""

import getpass
import os
import socket
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from uuid import uuid4

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from docpilot.exceptions import SessionConflictError, SessionValidationError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _working_directory() -> str:
    try:
        return os.getcwd()
    except OSError:
        return "/"


def _hostname() -> str:
    return socket.gethostname() or "unknown"


def _current_user() -> str | None:
    user = os.environ.get("USER") or os.environ.get("USERNAME")
    if user:
        return user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class SessionStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class AnnotationKind(StrEnum):
    NOTE = "note"
    EXPLANATION = "explanation"
    WARNING = "warning"
    MILESTONE = "milestone"


class SessionEventType(StrEnum):
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_STOPPED = "session_stopped"
    ANNOTATION_ADDED = "annotation_added"
    COMMAND_CAPTURED = "command_captured"
    ERROR_OCCURRED = "error_occurred"
    CONFIGURATION_CHANGED = "configuration_changed"


class _Record(BaseModel):
    # Unknown keys in a stored record are a decode error, never dropped.
    model_config = ConfigDict(extra="forbid")


class CommandEntry(_Record):
    """A finished terminal command reported by the monitor."""

    command: str
    timestamp: AwareDatetime = Field(default_factory=_now)
    exit_code: int | None = None
    working_directory: str = ""
    shell: str = ""
    output: str | None = None
    error: str | None = None


class Annotation(_Record):
    """A note the user attached to the session by hand."""

    id: str = Field(default_factory=_new_id)
    text: str
    timestamp: AwareDatetime = Field(default_factory=_now)
    kind: AnnotationKind = AnnotationKind.NOTE


class SessionEvent(_Record):
    """One entry of the session's audit trail."""

    id: str = Field(default_factory=_new_id)
    event_type: SessionEventType
    timestamp: AwareDatetime = Field(default_factory=_now)
    details: str | None = None


class SessionMetadata(_Record):
    working_directory: str = Field(default_factory=_working_directory)
    # Refined once the monitor reports what it actually attached to
    shell_type: str = "unknown"
    platform: str = "unknown"
    hostname: str = Field(default_factory=_hostname)
    user: str | None = Field(default_factory=_current_user)
    tags: list[str] = Field(default_factory=list)
    llm_provider: str | None = None
    settings: dict[str, str] = Field(default_factory=dict)


class SessionStats(_Record):
    total_commands: int = 0
    successful_commands: int = 0
    failed_commands: int = 0
    total_annotations: int = 0
    duration_seconds: int | None = None
    pause_resume_count: int = 0


class StorageStats(BaseModel):
    """Counts and byte totals across the sessions and backups directories."""

    session_count: int = 0
    backup_count: int = 0
    total_size: int = 0
    backup_size: int = 0


class Session(_Record):
    """A documentation session and everything captured during it."""

    id: str = Field(default_factory=_new_id)
    description: str = Field(description="What is being documented")
    state: SessionStatus = SessionStatus.ACTIVE
    error_message: str | None = None
    created_at: AwareDatetime = Field(default_factory=_now)
    updated_at: AwareDatetime = Field(default_factory=_now)
    started_at: AwareDatetime | None = None
    stopped_at: AwareDatetime | None = None
    output_file: Path | None = Field(default=None, description="Where rendered docs should go")
    commands: list[CommandEntry] = Field(default_factory=list)
    annotations: list[Annotation] = Field(default_factory=list)
    events: list[SessionEvent] = Field(default_factory=list)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    stats: SessionStats = Field(default_factory=SessionStats)

    @classmethod
    def create(cls, description: str, output_file: Path | None = None) -> "Session":
        """Start a new active session and record its ``session_started`` event."""
        if not description.strip():
            raise SessionValidationError("Session description must not be empty")
        now = _now()
        session = cls(
            description=description,
            output_file=output_file,
            created_at=now,
            updated_at=now,
            started_at=now,
        )
        session._record(SessionEventType.SESSION_STARTED, f"Session created: {description}")
        return session

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state == SessionStatus.ACTIVE

    @property
    def is_paused(self) -> bool:
        return self.state == SessionStatus.PAUSED

    @property
    def is_stopped(self) -> bool:
        return self.state == SessionStatus.STOPPED

    @property
    def is_error(self) -> bool:
        return self.state == SessionStatus.ERROR

    def can_modify(self) -> bool:
        return self.state in (SessionStatus.ACTIVE, SessionStatus.PAUSED)

    def describe_state(self) -> str:
        if self.is_error:
            return f"error({self.error_message})"
        return str(self.state)

    def short_id(self) -> str:
        """First 8 chars of the id for display."""
        return self.id[:8]

    def duration_seconds(self) -> int | None:
        """Seconds from start to stop, or to now while the session is running."""
        if self.started_at is None:
            return None
        end = self.stopped_at or _now()
        return max(int((end - self.started_at).total_seconds()), 0)

    def snapshot(self) -> "Session":
        """Return an independent copy for renderers and status surfaces."""
        return self.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def add_command(self, entry: CommandEntry) -> None:
        self._require_modifiable("add a command to")
        self.commands.append(entry)
        self.stats.total_commands += 1
        if entry.exit_code is not None:
            if entry.exit_code == 0:
                self.stats.successful_commands += 1
            else:
                self.stats.failed_commands += 1
        self._record(SessionEventType.COMMAND_CAPTURED, entry.command)

    def add_annotation(self, text: str, kind: AnnotationKind = AnnotationKind.NOTE) -> str:
        """Append an annotation and return its id."""
        self._require_modifiable("annotate")
        annotation = Annotation(text=text, kind=kind)
        self.annotations.append(annotation)
        self.stats.total_annotations += 1
        self._record(SessionEventType.ANNOTATION_ADDED, f"Annotation added: {annotation.id}")
        return annotation.id

    def update_environment(self, shell_type: str, platform: str) -> None:
        """Record the shell and platform the monitor attached to."""
        self.metadata.shell_type = shell_type
        self.metadata.platform = platform
        self._record(
            SessionEventType.CONFIGURATION_CHANGED,
            f"shell={shell_type} platform={platform}",
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def pause(self) -> None:
        if self.state != SessionStatus.ACTIVE:
            raise SessionConflictError(f"Cannot pause session in state: {self.describe_state()}")
        self.state = SessionStatus.PAUSED
        self.stats.pause_resume_count += 1
        self._record(SessionEventType.SESSION_PAUSED)

    def resume(self) -> None:
        if self.state != SessionStatus.PAUSED:
            raise SessionConflictError(f"Cannot resume session in state: {self.describe_state()}")
        self.state = SessionStatus.ACTIVE
        self._record(SessionEventType.SESSION_RESUMED)

    def stop(self) -> None:
        if not self.can_modify():
            raise SessionConflictError(f"Cannot stop session in state: {self.describe_state()}")
        now = _now()
        self.state = SessionStatus.STOPPED
        self.stopped_at = now
        if self.started_at is not None:
            self.stats.duration_seconds = max(int((now - self.started_at).total_seconds()), 0)
        self._record(
            SessionEventType.SESSION_STOPPED,
            f"Session completed with {self.stats.total_commands} commands",
        )

    def set_error(self, message: str) -> None:
        """Move to the error state. Always succeeds; there is no way back."""
        self.state = SessionStatus.ERROR
        self.error_message = message
        self._record(SessionEventType.ERROR_OCCURRED, message)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_modifiable(self, action: str) -> None:
        if not self.can_modify():
            raise SessionConflictError(f"Cannot {action} session in state: {self.describe_state()}")

    def _record(self, event_type: SessionEventType, details: str | None = None) -> None:
        event = SessionEvent(event_type=event_type, details=details)
        self.events.append(event)
        self._touch(event.timestamp)

    def _touch(self, when: datetime) -> None:
        # updated_at never moves backwards, even if the wall clock does
        if when > self.updated_at:
            self.updated_at = when
