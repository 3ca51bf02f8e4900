"""Tests for schema migrations."""

import sqlite3
from pathlib import Path

import pytest

from ember.memory import Database, QueryError
from ember.memory.migrations import MIGRATIONS, SCHEMA_VERSION, VERSION_TABLE_SQL, apply_migrations


def _create_v1_store(path: Path) -> None:
    """Write a store as the first schema version left it."""
    conn = sqlite3.connect(path)
    try:
        conn.execute(VERSION_TABLE_SQL)
        for statement in MIGRATIONS[0].statements:
            conn.execute(statement)
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (1, '2024-01-01T00:00:00+00:00')"
        )
        # Two active sessions for the same key, allowed before version 3.
        conn.executemany(
            "INSERT INTO sessions (conversation_key, started_at, message_count, is_active) VALUES (?, ?, ?, 1)",
            [
                ("+1555", "2024-01-01T00:00:00+00:00", 1),
                ("+1555", "2024-01-02T00:00:00+00:00", 0),
                ("+1666", "2024-01-03T00:00:00+00:00", 0),
            ],
        )
        conn.execute(
            "INSERT INTO messages (session_id, role, content, timestamp) VALUES (1, 'user', 'hello', ?)",
            ("2024-01-01T10:00:00+00:00",),
        )
        conn.commit()
    finally:
        conn.close()


def _columns(db: Database, table: str) -> list[str]:
    return [row["name"] for row in db.query(f"PRAGMA table_info({table})")]


def _indexes(db: Database) -> set[str]:
    rows = db.query(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_autoindex%'"
    )
    return {row["name"] for row in rows}


@pytest.fixture
def legacy_path(tmp_path: Path) -> Path:
    path = tmp_path / "legacy.db"
    _create_v1_store(path)
    return path


class TestMigrations:
    """Tests for bringing stores up to date."""

    def test_migrations_are_ordered(self):
        versions = [m.version for m in MIGRATIONS]
        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)
        assert SCHEMA_VERSION == versions[-1]

    def test_legacy_store_reaches_latest_version(self, legacy_path: Path):
        db = Database.open(legacy_path)
        assert db.schema_version == SCHEMA_VERSION
        rows = db.query("SELECT version FROM schema_version ORDER BY version")
        assert [row["version"] for row in rows] == [m.version for m in MIGRATIONS]
        db.close()

    def test_migrated_schema_matches_fresh_schema(self, legacy_path: Path, tmp_path: Path):
        """A migrated store and a fresh store end up with the same shape."""
        migrated = Database.open(legacy_path)
        fresh = Database.open(tmp_path / "fresh.db")

        for table in ("facts", "sessions", "messages"):
            assert _columns(migrated, table) == _columns(fresh, table)
        assert _indexes(migrated) == _indexes(fresh)

        migrated.close()
        fresh.close()

    def test_last_message_at_backfilled(self, legacy_path: Path):
        db = Database.open(legacy_path)
        row = db.query_one("SELECT last_message_at FROM sessions WHERE id = 1")
        assert row["last_message_at"] == "2024-01-01T10:00:00+00:00"
        db.close()

    def test_duplicate_active_sessions_collapsed(self, legacy_path: Path):
        """Only the newest active session per key survives the upgrade."""
        db = Database.open(legacy_path)
        active = db.query(
            "SELECT id, conversation_key FROM sessions WHERE is_active = 1 ORDER BY id"
        )
        assert [(row["id"], row["conversation_key"]) for row in active] == [
            (2, "+1555"),
            (3, "+1666"),
        ]
        ended = db.query_one("SELECT ended_at FROM sessions WHERE id = 1")
        assert ended["ended_at"] is not None
        db.close()

    def test_existing_rows_survive(self, legacy_path: Path):
        db = Database.open(legacy_path)
        rows = db.query("SELECT content FROM messages")
        assert [row["content"] for row in rows] == ["hello"]
        db.close()

    def test_second_open_applies_nothing(self, legacy_path: Path):
        Database.open(legacy_path).close()
        db = Database.open(legacy_path)
        assert apply_migrations(db) == []
        assert len(db.query("SELECT version FROM schema_version")) == len(MIGRATIONS)
        db.close()

    def test_one_active_session_enforced(self):
        """The store itself rejects a second active session for a key."""
        db = Database.open(":memory:")
        insert = "INSERT INTO sessions (conversation_key, started_at) VALUES (?, ?)"
        db.execute(insert, ("+1555", "2024-01-01T00:00:00+00:00"))
        with pytest.raises(QueryError):
            db.execute(insert, ("+1555", "2024-01-02T00:00:00+00:00"))
        db.close()
