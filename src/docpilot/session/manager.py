"""
Session manager.

The SessionManager owns at most one *current* session and is the only
thing callers talk to. Every mutation goes through the same sequence:
change the in-memory Session, then persist it through the store, so a
crash in between leaves the previous committed record on disk.

Invariants:
  - At most one current session per manager. ``start_session`` refuses to
    replace it; ``force_start_session`` discards it on purpose.
  - Commands reported while the session is paused are dropped, not queued.
  - Cleanup of backups and old data never blocks a save or a load.

There is no cross-process locking. A background monitor and a foreground
CLI invocation cooperate by adopting the same session through
``recover_session`` or ``set_current_session``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import structlog

from docpilot.config import DEFAULT_AUTO_SAVE_INTERVAL
from docpilot.exceptions import (
    NoActiveSessionError,
    SessionConflictError,
    SessionError,
    SessionNotFoundError,
    SessionValidationError,
)
from docpilot.session.codec import decode_session
from docpilot.session.models import (
    AnnotationKind,
    CommandEntry,
    Session,
    StorageStats,
)
from docpilot.session.store import SessionStore
from docpilot.session.validation import validate_session

logger = structlog.get_logger()


class SessionManager:
    """Lifecycle, ingestion, persistence and recovery for documentation sessions."""

    def __init__(
        self,
        store: SessionStore | None = None,
        auto_save_interval: float = DEFAULT_AUTO_SAVE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store or SessionStore()
        self.auto_save_interval = auto_save_interval
        self._clock = clock
        self._current: Session | None = None
        self._cache: dict[str, Session] = {}
        self._last_save: float | None = None

    # ------------------------------------------------------------------
    # Current session
    # ------------------------------------------------------------------

    def get_current_session(self) -> Session | None:
        return self._current

    def set_current_session(self, session: Session) -> None:
        """Adopt a session created elsewhere (recovery, background monitor)."""
        self._current = session

    def clear_current_session(self) -> None:
        self._current = None

    def _require_current(self, action: str) -> Session:
        if self._current is None:
            raise NoActiveSessionError(f"No active session to {action}")
        return self._current

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(self, description: str, output_file: Path | None = None) -> str:
        """Create, persist and adopt a new session. Returns its id."""
        if self._current is not None:
            raise SessionConflictError(
                f"A session is already active ({self._current.short_id()}, "
                f"{self._current.describe_state()}). Stop the current session first."
            )
        return self._start(description, output_file)

    def force_start_session(self, description: str, output_file: Path | None = None) -> str:
        """Like ``start_session`` but discards any current session first."""
        if self._current is not None:
            logger.info("session_discarded", session_id=self._current.id)
            self._current = None
        return self._start(description, output_file)

    def _start(self, description: str, output_file: Path | None) -> str:
        session = Session.create(description, output_file)
        self.save_session(session)
        self._current = session
        logger.info("session_started", session_id=session.id, description=description)
        return session.id

    def pause_session(self) -> None:
        session = self._require_current("pause")
        session.pause()
        self.save_session(session)
        logger.info("session_paused", session_id=session.id)

    def resume_session(self) -> None:
        session = self._require_current("resume")
        session.resume()
        self.save_session(session)
        logger.info("session_resumed", session_id=session.id)

    def stop_session(self) -> Session:
        """Finalize the current session and hand it back. It stops being current."""
        session = self._require_current("stop")
        session.stop()
        self.save_session(session)
        self._current = None
        logger.info(
            "session_stopped",
            session_id=session.id,
            commands=session.stats.total_commands,
            duration_seconds=session.stats.duration_seconds,
        )
        return session

    def fail_session(self, message: str) -> None:
        """Put the current session into the error state."""
        session = self._require_current("mark as failed")
        session.set_error(message)
        self.save_session(session)
        logger.warning("session_error", session_id=session.id, error=message)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def add_command(self, entry: CommandEntry) -> bool:
        """Record a finished command. Returns False when it was dropped (paused)."""
        session = self._require_current("record a command in")
        if not session.is_active:
            logger.debug("command_dropped", session_id=session.id, state=str(session.state))
            return False
        session.add_command(entry)
        self.save_session(session)
        return True

    def add_annotation(self, text: str, kind: AnnotationKind = AnnotationKind.NOTE) -> str:
        session = self._require_current("annotate")
        annotation_id = session.add_annotation(text, kind)
        self.save_session(session)
        return annotation_id

    def update_environment(self, shell_type: str, platform: str) -> None:
        """Apply the shell/platform the monitor detected to the current session."""
        session = self._require_current("update")
        session.update_environment(shell_type, platform)
        self.save_session(session)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_session(self, session: Session) -> None:
        self.store.write(session)
        self._cache[session.id] = session.snapshot()
        self._last_save = self._clock()

    def should_auto_save(self) -> bool:
        if self._last_save is None:
            return True
        return self._clock() - self._last_save >= self.auto_save_interval

    def check_auto_save(self) -> bool:
        """Save the current session if the auto-save interval has elapsed."""
        if self._current is None or not self.should_auto_save():
            return False
        self.save_session(self._current)
        return True

    def force_save(self) -> bool:
        if self._current is None:
            return False
        self.save_session(self._current)
        return True

    # ------------------------------------------------------------------
    # Loading and recovery
    # ------------------------------------------------------------------

    def load_session(self, session_id: str) -> Session:
        """Return a copy of the session, reading the live record on a cache miss."""
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached.snapshot()
        session = self.store.read(session_id)
        self._cache[session_id] = session
        return session.snapshot()

    def load_session_with_recovery(self, session_id: str) -> Session:
        """Load the live record, falling back to the newest readable backup."""
        try:
            return self.load_session(session_id)
        except (SessionError, OSError) as e:
            logger.warning("session_load_failed", session_id=session_id, error=str(e))
            return self.store.recover_from_backup(session_id)

    def recover_from_backup(self, session_id: str) -> Session:
        return self.store.recover_from_backup(session_id)

    def validate_session(self, session: Session) -> bool:
        return validate_session(session)

    def recover_session(self) -> str | None:
        """Adopt the most recently updated interrupted session, if any.

        Returns the adopted id, or None when there is nothing to recover.
        """
        candidates = []
        for session_id in self.list_sessions():
            try:
                session = self.load_session_with_recovery(session_id)
            except (SessionError, OSError) as e:
                logger.warning("session_unrecoverable", session_id=session_id, error=str(e))
                continue
            if session.can_modify():
                candidates.append(session)

        candidates.sort(key=lambda s: s.updated_at, reverse=True)
        for session in candidates:
            if not self.validate_session(session):
                logger.warning("recovery_candidate_invalid", session_id=session.id)
                continue
            self._current = session
            logger.info("session_recovered", session_id=session.id, state=str(session.state))
            return session.id
        return None

    def reload(self) -> str | None:
        """Forget the current session and cache, then recover from disk.

        Long-lived processes call this before each request so that work
        done by other processes (a stop, a pause, a new session) is seen.
        """
        self._current = None
        self._cache.clear()
        return self.recover_session()

    def get_backup_info(self, session_id: str) -> list[tuple[Path, float]]:
        return self.store.list_backups(session_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[str]:
        return self.store.list_ids()

    def delete_session(self, session_id: str) -> bool:
        """Remove the live record and cache entry; clear current if it matches."""
        removed = self.store.delete(session_id)
        self._cache.pop(session_id, None)
        if self._current is not None and self._current.id == session_id:
            self._current = None
        if removed:
            logger.info("session_deleted", session_id=session_id)
        return removed

    def export_session(self, session_id: str, export_path: Path) -> Path:
        return self.store.export(session_id, export_path)

    def import_session(self, import_path: Path) -> str:
        """Validate and store a session record from an arbitrary path."""
        if not import_path.is_file():
            raise SessionNotFoundError(f"Import file not found: {import_path}")
        session = decode_session(import_path.read_bytes(), source=str(import_path))
        if not self.validate_session(session):
            raise SessionValidationError(f"Imported session {session.id} failed validation")
        self.save_session(session)
        logger.info("session_imported", session_id=session.id, source=str(import_path))
        return session.id

    def cleanup_old_data(self, max_age_days: int) -> int:
        removed = self.store.cleanup(max_age_days)
        for session_id in list(self._cache):
            if not self.store.exists(session_id):
                del self._cache[session_id]
        return removed

    def get_storage_stats(self) -> StorageStats:
        return self.store.storage_stats()
