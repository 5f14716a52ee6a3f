"""Tests for the file-backed session store: atomic writes, backups, recovery."""

import itertools
import os
import time
from pathlib import Path

import pytest

import docpilot.session.store as store_mod
from docpilot.exceptions import SessionCorruptedError, SessionNotFoundError
from docpilot.session.codec import decode_session, encode_session
from docpilot.session.models import Session
from docpilot.session.store import SessionStore


@pytest.fixture
def counter():
    return itertools.count(1_700_000_000)


@pytest.fixture
def store(tmp_path, counter):
    """A store rooted in tmp_path whose backup stamps tick one second per call."""
    return SessionStore(
        sessions_dir=tmp_path / "sessions",
        backups_dir=tmp_path / "backups",
        clock=lambda: next(counter),
    )


@pytest.fixture
def session():
    return Session.create("Deploy the API")


def age(path: Path, days: float) -> None:
    then = time.time() - days * 24 * 60 * 60
    os.utime(path, (then, then))


class TestLiveRecords:
    def test_write_and_read(self, store, session):
        path = store.write(session)
        assert path == store.sessions_dir / f"{session.id}.json"
        assert store.read(session.id) == session

    def test_directories_created_on_first_write(self, store, session):
        assert not store.sessions_dir.exists()
        store.write(session)
        assert store.sessions_dir.is_dir()

    def test_read_missing(self, store):
        with pytest.raises(SessionNotFoundError):
            store.read("nonexistent")

    def test_read_corrupted(self, store, session):
        store.write(session)
        store.session_path(session.id).write_text("{ truncated")
        with pytest.raises(SessionCorruptedError):
            store.read(session.id)

    def test_read_not_utf8(self, store, session):
        store.write(session)
        store.session_path(session.id).write_bytes(b"\xff\xfe\x00garbage")
        with pytest.raises(SessionCorruptedError):
            store.read(session.id)

    def test_list_ids(self, store):
        ids = sorted(store.write(Session.create(f"S{i}")).stem for i in range(3))
        (store.sessions_dir / "notes.txt").write_text("ignore me")
        (store.sessions_dir / ".abc.123.tmp").write_text("{}")
        assert store.list_ids() == ids

    def test_list_ids_without_directory(self, store):
        assert store.list_ids() == []

    def test_delete(self, store, session):
        store.write(session)
        assert store.delete(session.id)
        assert not store.exists(session.id)
        assert not store.delete(session.id)

    def test_export(self, store, session, tmp_path):
        store.write(session)
        dest = store.export(session.id, tmp_path / "out" / "nested" / "copy.json")
        assert dest.read_bytes() == store.session_path(session.id).read_bytes()

    def test_export_missing(self, store, tmp_path):
        with pytest.raises(SessionNotFoundError):
            store.export("nonexistent", tmp_path / "copy.json")


class TestAtomicWrite:
    def test_failed_rename_keeps_old_record(self, store, session, monkeypatch):
        store.write(session)
        original = store.session_path(session.id).read_text()

        session.add_annotation("this write will fail")

        def boom(src, dst):
            raise OSError("rename failed")

        monkeypatch.setattr(store_mod.os, "replace", boom)
        with pytest.raises(OSError, match="rename failed"):
            store.write(session)

        assert store.session_path(session.id).read_text() == original
        assert decode_session(original).annotations == []
        assert list(store.sessions_dir.glob("*.tmp")) == []

    def test_no_temp_files_left(self, store, session):
        store.write(session)
        store.write(session)
        assert [p.name for p in store.sessions_dir.iterdir()] == [f"{session.id}.json"]


class TestBackups:
    def test_first_write_has_no_backup(self, store, session):
        store.write(session)
        assert store.list_backups(session.id) == []

    def test_backup_holds_previous_disk_bytes(self, store, session):
        store.write(session)
        on_disk = store.session_path(session.id).read_bytes()

        session.add_annotation("second version")
        store.write(session)

        backups = store.list_backups(session.id)
        assert len(backups) == 1
        path, _ = backups[0]
        assert path.name == f"{session.id}_1700000000.json"
        assert path.read_bytes() == on_disk

    def test_backup_bound(self, store, session):
        for i in range(8):
            session.add_annotation(f"edit {i}")
            store.write(session)

        backups = store.list_backups(session.id)
        assert len(backups) == store.max_backups
        stamps = [int(p.stem.rsplit("_", 1)[1]) for p, _ in backups]
        assert stamps == [1_700_000_006, 1_700_000_005, 1_700_000_004, 1_700_000_003, 1_700_000_002]

    def test_backups_are_per_session(self, store):
        a = Session.create("A")
        b = Session.create("B")
        for s in (a, b, a, b, a):
            store.write(s)
        assert len(store.list_backups(a.id)) == 2
        assert len(store.list_backups(b.id)) == 1

    def test_prune_failure_is_swallowed(self, store, session, monkeypatch):
        store.max_backups = 1
        store.write(session)
        store.write(session)

        def refuse(self, missing_ok=False):
            raise PermissionError("read-only")

        monkeypatch.setattr(Path, "unlink", refuse)
        store.write(session)

        assert len(store.list_backups(session.id)) == 2

    def test_list_backups_ignores_other_files(self, store, session):
        store.backups_dir.mkdir(parents=True)
        (store.backups_dir / f"{session.id}_notanumber.json").write_text("{}")
        (store.backups_dir / f"{session.id}_123.txt").write_text("{}")
        assert store.list_backups(session.id) == []


class TestRecoverFromBackup:
    def _backup(self, store, session, stamp, mtime):
        store.backups_dir.mkdir(parents=True, exist_ok=True)
        path = store.backups_dir / f"{session.id}_{stamp}.json"
        path.write_text(encode_session(session))
        os.utime(path, (mtime, mtime))
        return path

    def test_prefers_newest_valid_backup(self, store, session):
        now = time.time()
        older = session.model_copy(update={"description": "B1"})
        newer = session.model_copy(update={"description": "B2"})
        self._backup(store, older, 100, now - 60)
        self._backup(store, newer, 200, now - 10)

        assert store.recover_from_backup(session.id).description == "B2"

    def test_skips_corrupted_backup(self, store, session):
        now = time.time()
        self._backup(store, session.model_copy(update={"description": "B1"}), 100, now - 60)
        broken = self._backup(store, session, 200, now - 10)
        broken.write_text('{"id": ')
        os.utime(broken, (now - 10, now - 10))

        assert store.recover_from_backup(session.id).description == "B1"

    def test_skips_backup_that_is_not_utf8(self, store, session):
        now = time.time()
        self._backup(store, session.model_copy(update={"description": "B1"}), 100, now - 60)
        binary = self._backup(store, session, 200, now - 10)
        binary.write_bytes(b"\xff\xfe\x00garbage")
        os.utime(binary, (now - 10, now - 10))

        assert store.recover_from_backup(session.id).description == "B1"

    def test_all_backups_corrupted(self, store, session):
        path = self._backup(store, session, 100, time.time())
        path.write_text("garbage")
        with pytest.raises(SessionCorruptedError):
            store.recover_from_backup(session.id)

    def test_no_backups(self, store, session):
        with pytest.raises(SessionNotFoundError):
            store.recover_from_backup(session.id)


class TestMaintenance:
    def test_cleanup_removes_old_stopped_sessions_and_backups(self, tmp_path):
        store = SessionStore(sessions_dir=tmp_path / "s", backups_dir=tmp_path / "b")

        stopped = Session.create("old and done")
        stopped.stop()
        active = Session.create("old but running")
        fresh = Session.create("new and done")
        fresh.stop()
        for s in (stopped, active, fresh):
            store.write(s)
        store.write(fresh)

        age(store.session_path(stopped.id), 40)
        age(store.session_path(active.id), 40)
        old_backup = store.list_backups(fresh.id)[0][0]
        age(old_backup, 40)

        assert store.cleanup(30) == 2
        assert not store.exists(stopped.id)
        assert store.exists(active.id)
        assert store.exists(fresh.id)
        assert not old_backup.exists()

    def test_cleanup_leaves_undecodable_sessions(self, store):
        store.sessions_dir.mkdir(parents=True)
        junk = store.sessions_dir / "junk.json"
        junk.write_text("not json")
        age(junk, 100)
        assert SessionStore(store.sessions_dir, store.backups_dir).cleanup(30) == 0
        assert junk.exists()

    def test_cleanup_skips_sessions_that_are_not_utf8(self, tmp_path):
        store = SessionStore(sessions_dir=tmp_path / "s", backups_dir=tmp_path / "b")
        store.sessions_dir.mkdir(parents=True)
        binary = store.sessions_dir / "binary.json"
        binary.write_bytes(b"\xff\xfe\x00garbage")
        age(binary, 100)
        assert store.cleanup(30) == 0
        assert binary.exists()

    def test_cleanup_removes_stale_temp_files(self, tmp_path, session):
        store = SessionStore(sessions_dir=tmp_path / "s", backups_dir=tmp_path / "b")
        store.write(session)
        stale = store.sessions_dir / f".{session.id}.abc123.tmp"
        stale.write_text('{"id": ')
        age(stale, 40)
        in_flight = store.sessions_dir / f".{session.id}.def456.tmp"
        in_flight.write_text('{"id": ')

        assert store.cleanup(30) == 1
        assert not stale.exists()
        assert in_flight.exists()
        assert store.exists(session.id)

    def test_storage_stats(self, store, session):
        stats = store.storage_stats()
        assert (stats.session_count, stats.backup_count, stats.total_size) == (0, 0, 0)

        store.write(session)
        store.write(session)
        stats = store.storage_stats()
        assert stats.session_count == 1
        assert stats.backup_count == 1
        assert stats.backup_size > 0
        assert stats.total_size > stats.backup_size
