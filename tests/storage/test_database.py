"""Tests for the SQLite Database wrapper."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from memplane.config.models import DatabaseConfig
from memplane.storage.database import Database, _is_database_locked_error
from memplane.storage.models import Memory


def _locked() -> OperationalError:
    return OperationalError("INSERT", {}, Exception("database is locked"))


class TestDatabase:
    """Engine setup and pragmas."""

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "nested" / "dir" / "m.db", load_vector_extension=False)
        try:
            db.create_all()
            assert (tmp_path / "nested" / "dir" / "m.db").exists()
        finally:
            db.dispose()

    def test_wal_mode_enabled(self, db: Database) -> None:
        with db.connect() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
        assert mode.lower() == "wal"

    def test_busy_timeout_from_config(self, tmp_path: Path) -> None:
        db = Database.from_config(
            tmp_path / "m.db",
            DatabaseConfig(busy_timeout_ms=1234),
            load_vector_extension=False,
        )
        try:
            with db.connect() as conn:
                assert conn.execute(text("PRAGMA busy_timeout")).scalar_one() == 1234
        finally:
            db.dispose()

    def test_vector_extension_not_loaded_when_disabled(self, db: Database) -> None:
        with db.connect():
            pass
        assert db.vector_extension_loaded is False

    def test_session_round_trip(self, db: Database) -> None:
        with db.session() as session:
            session.add(Memory(title="t", description="d", project="p"))
            session.commit()

        with db.session() as session:
            memory = session.get(Memory, 1)
            assert memory is not None
            assert memory.embedding_text() == "t d"


class TestWrite:
    """write() commits, rolls back and retries on lock."""

    def test_commits_on_success(self, db: Database) -> None:
        db.write(lambda conn: conn.execute(text("CREATE TABLE t (x INTEGER)")))
        db.write(lambda conn: conn.execute(text("INSERT INTO t VALUES (1)")))

        with db.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM t")).scalar_one() == 1

    def test_rolls_back_on_error(self, db: Database) -> None:
        db.write(lambda conn: conn.execute(text("CREATE TABLE t (x INTEGER)")))

        def _insert_then_fail(conn):  # type: ignore[no-untyped-def]
            conn.execute(text("INSERT INTO t VALUES (1)"))
            raise ValueError("boom")

        with pytest.raises(ValueError):
            db.write(_insert_then_fail)

        with db.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM t")).scalar_one() == 0

    def test_retries_locked_then_succeeds(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "m.db", load_vector_extension=False, retry_base_delay=0.0)
        attempts: list[int] = []

        def _flaky(conn):  # type: ignore[no-untyped-def]
            attempts.append(1)
            if len(attempts) < 3:
                raise _locked()
            return "ok"

        try:
            assert db.write(_flaky) == "ok"
            assert len(attempts) == 3
        finally:
            db.dispose()

    def test_gives_up_after_max_retries(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "m.db", load_vector_extension=False, retry_base_delay=0.0)

        def _always_locked(conn):  # type: ignore[no-untyped-def]
            raise _locked()

        try:
            with patch("memplane.storage.database.time.sleep") as sleep, pytest.raises(
                OperationalError
            ):
                db.write(_always_locked, max_retries=2)
            assert sleep.call_count == 2
        finally:
            db.dispose()

    def test_other_operational_errors_not_retried(self, db: Database) -> None:
        calls: list[int] = []

        def _bad_sql(conn):  # type: ignore[no-untyped-def]
            calls.append(1)
            conn.execute(text("SELECT * FROM missing_table"))

        with pytest.raises(OperationalError):
            db.write(_bad_sql)
        assert calls == [1]


class TestLockedErrorDetection:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("database is locked", True),
            ("Database is BUSY", True),
            ("no such table: x", False),
        ],
    )
    def test_detection(self, message: str, expected: bool) -> None:
        assert _is_database_locked_error(Exception(message)) is expected
