"""File-backed session storage with atomic writes and rotating backups.

Layout::

    {sessions_dir}/{session_id}.json               live record
    {backups_dir}/{session_id}_{unix_seconds}.json  previous live records

A live record is only ever replaced by renaming a fully written temp file
over it, so a reader sees either the old record or the new one. Before each
replacement the bytes currently on disk are copied into the backup store,
which keeps the newest ``max_backups`` copies per session.

Both directories are created on first write; reads treat a missing
directory as empty.
"""

import os
import shutil
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

import structlog

from docpilot.config import BACKUPS_DIR, DEFAULT_MAX_BACKUPS, SESSIONS_DIR
from docpilot.exceptions import SessionCorruptedError, SessionNotFoundError
from docpilot.session.codec import decode_session, encode_session
from docpilot.session.models import Session, StorageStats

logger = structlog.get_logger()

RECORD_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` via a synced temp file in the same directory."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class SessionStore:
    """Session records on the local filesystem."""

    def __init__(
        self,
        sessions_dir: Path | None = None,
        backups_dir: Path | None = None,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions_dir = sessions_dir or SESSIONS_DIR
        self.backups_dir = backups_dir or BACKUPS_DIR
        self.max_backups = max_backups
        self._clock = clock

    # ------------------------------------------------------------------
    # Live records
    # ------------------------------------------------------------------

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}{RECORD_SUFFIX}"

    def exists(self, session_id: str) -> bool:
        return self.session_path(session_id).is_file()

    def read(self, session_id: str) -> Session:
        """Load the live record for ``session_id``."""
        path = self.session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return decode_session(path.read_bytes(), source=str(path))

    def write(self, session: Session) -> Path:
        """Persist ``session``, backing up whatever record it replaces."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self.session_path(session.id)
        if path.exists():
            self.create_backup(session.id)
        atomic_write_text(path, encode_session(session))
        return path

    def delete(self, session_id: str) -> bool:
        """Remove the live record. Backups are left for age-based cleanup."""
        path = self.session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_ids(self) -> list[str]:
        """Ids of every live record, sorted."""
        return sorted(p.stem for p in self._records(self.sessions_dir))

    def export(self, session_id: str, destination: Path) -> Path:
        """Copy the live record bytes to ``destination``."""
        path = self.session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(f"Session not found: {session_id}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, destination)
        return destination

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def create_backup(self, session_id: str) -> Path | None:
        """Copy the on-disk record into the backup store and prune old copies."""
        source = self.session_path(session_id)
        if not source.exists():
            return None

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        backup = self.backups_dir / f"{session_id}_{int(self._clock())}{RECORD_SUFFIX}"
        shutil.copyfile(source, backup)
        logger.debug("backup_created", session_id=session_id, path=str(backup))

        self.prune_backups(session_id)
        return backup

    def list_backups(self, session_id: str) -> list[tuple[Path, float]]:
        """Backups of ``session_id`` as (path, mtime), newest first."""
        prefix = f"{session_id}_"
        found = []
        for path in self._records(self.backups_dir):
            stamp = path.stem[len(prefix):]
            if not path.name.startswith(prefix) or not stamp.isdigit():
                continue
            try:
                st = path.stat()
            except OSError:
                continue
            found.append((st.st_mtime_ns, int(stamp), path, st.st_mtime))

        found.sort(key=lambda b: (b[0], b[1]), reverse=True)
        return [(path, mtime) for _, _, path, mtime in found]

    def prune_backups(self, session_id: str) -> int:
        """Delete all but the newest ``max_backups`` backups. Returns the count removed."""
        removed = 0
        for path, _ in self.list_backups(session_id)[self.max_backups:]:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("backup_prune_failed", path=str(path), error=str(e))
        if removed:
            logger.debug("backups_pruned", session_id=session_id, removed=removed)
        return removed

    def recover_from_backup(self, session_id: str) -> Session:
        """Decode the newest backup of ``session_id`` that is still readable."""
        backups = self.list_backups(session_id)
        if not backups:
            raise SessionNotFoundError(f"No backups found for session {session_id}")

        for path, _ in backups:
            try:
                session = decode_session(path.read_bytes(), source=str(path))
            except (OSError, SessionCorruptedError) as e:
                logger.warning("backup_unreadable", path=str(path), error=str(e))
                continue
            logger.info("session_recovered_from_backup", session_id=session_id, path=str(path))
            return session

        raise SessionCorruptedError(f"All backups for session {session_id} are corrupted")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self, max_age_days: int) -> int:
        """Remove stopped sessions, backups and stray temp files older than ``max_age_days``.

        Temp files are what an interrupted ``atomic_write_text`` leaves behind.

        Failures on individual files are logged and skipped. Returns the
        number of files removed.
        """
        cutoff = self._clock() - max_age_days * 24 * 60 * 60
        removed = 0

        for path in self._records(self.sessions_dir):
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                session = decode_session(path.read_bytes(), source=str(path))
            except (OSError, SessionCorruptedError) as e:
                logger.debug("cleanup_skipped", path=str(path), error=str(e))
                continue
            if not session.is_stopped:
                continue
            if self._remove_quietly(path):
                removed += 1

        for path in [*self._records(self.backups_dir), *self._leftover_temp_files()]:
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except OSError:
                continue
            if self._remove_quietly(path):
                removed += 1

        if removed:
            logger.info("old_data_cleaned", removed=removed, max_age_days=max_age_days)
        return removed

    def storage_stats(self) -> StorageStats:
        stats = StorageStats()
        for path in self._records(self.sessions_dir):
            stats.session_count += 1
            stats.total_size += _size(path)
        for path in self._records(self.backups_dir):
            stats.backup_count += 1
            stats.backup_size += _size(path)
        stats.total_size += stats.backup_size
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _records(directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        return [p for p in directory.iterdir() if p.suffix == RECORD_SUFFIX and p.is_file()]

    def _leftover_temp_files(self) -> list[Path]:
        if not self.sessions_dir.exists():
            return []
        return [p for p in self.sessions_dir.glob(f".*{TEMP_SUFFIX}") if p.is_file()]

    @staticmethod
    def _remove_quietly(path: Path) -> bool:
        try:
            path.unlink()
        except OSError as e:
            logger.warning("cleanup_remove_failed", path=str(path), error=str(e))
            return False
        return True


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
