"""Schema definition and numbered migrations for the memory store.

A fresh store gets ``SCHEMA`` in one step and is stamped with
``SCHEMA_VERSION``. An existing store is brought forward by applying every
entry of ``MIGRATIONS`` newer than its recorded version, one transaction per
migration. When the schema changes, add a migration AND update ``SCHEMA``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import MemoryStoreError, MigrationError
from .models import to_iso, utcnow

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)

VERSION_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version     INTEGER PRIMARY KEY,
        applied_at  TEXT NOT NULL
    )
"""


@dataclass(frozen=True)
class Migration:
    """A single forward-only schema change."""

    version: int
    description: str
    statements: tuple[str, ...]


SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE facts (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        content         TEXT NOT NULL CHECK (length(trim(content)) > 0),
        category        TEXT NOT NULL,
        source          TEXT NOT NULL,
        confidence      REAL NOT NULL DEFAULT 0.8,
        importance      REAL NOT NULL DEFAULT 0.5,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL,
        last_accessed   TEXT,
        access_count    INTEGER NOT NULL DEFAULT 0,
        is_deleted      INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX idx_facts_live ON facts(is_deleted)",
    "CREATE INDEX idx_facts_category ON facts(category)",
    """
    CREATE TABLE sessions (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_key  TEXT NOT NULL,
        started_at        TEXT NOT NULL,
        ended_at          TEXT,
        rolling_summary   TEXT,
        message_count     INTEGER NOT NULL DEFAULT 0,
        is_active         INTEGER NOT NULL DEFAULT 1,
        last_message_at   TEXT
    )
    """,
    "CREATE INDEX idx_sessions_key ON sessions(conversation_key)",
    """
    CREATE UNIQUE INDEX idx_sessions_one_active
        ON sessions(conversation_key) WHERE is_active = 1
    """,
    """
    CREATE TABLE messages (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id   INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        role         TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content      TEXT NOT NULL,
        timestamp    TEXT NOT NULL,
        token_count  INTEGER
    )
    """,
    "CREATE INDEX idx_messages_session ON messages(session_id, timestamp)",
)

MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="initial facts, sessions and messages tables",
        statements=(
            """
            CREATE TABLE facts (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                content         TEXT NOT NULL CHECK (length(trim(content)) > 0),
                category        TEXT NOT NULL,
                source          TEXT NOT NULL,
                confidence      REAL NOT NULL DEFAULT 0.8,
                importance      REAL NOT NULL DEFAULT 0.5,
                created_at      TEXT NOT NULL,
                updated_at      TEXT NOT NULL,
                last_accessed   TEXT,
                access_count    INTEGER NOT NULL DEFAULT 0,
                is_deleted      INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX idx_facts_live ON facts(is_deleted)",
            "CREATE INDEX idx_facts_category ON facts(category)",
            """
            CREATE TABLE sessions (
                id                INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_key  TEXT NOT NULL,
                started_at        TEXT NOT NULL,
                ended_at          TEXT,
                rolling_summary   TEXT,
                message_count     INTEGER NOT NULL DEFAULT 0,
                is_active         INTEGER NOT NULL DEFAULT 1
            )
            """,
            "CREATE INDEX idx_sessions_key ON sessions(conversation_key)",
            """
            CREATE TABLE messages (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id   INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                role         TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content      TEXT NOT NULL,
                timestamp    TEXT NOT NULL,
                token_count  INTEGER
            )
            """,
        ),
    ),
    Migration(
        version=2,
        description="track last message time per session",
        statements=(
            "ALTER TABLE sessions ADD COLUMN last_message_at TEXT",
            """
            UPDATE sessions SET last_message_at = (
                SELECT MAX(timestamp) FROM messages WHERE messages.session_id = sessions.id
            )
            """,
        ),
    ),
    Migration(
        version=3,
        description="one active session per conversation key, message ordering index",
        statements=(
            # Older stores may hold several active sessions for a key; keep the newest.
            """
            UPDATE sessions SET is_active = 0, ended_at = COALESCE(ended_at, started_at)
            WHERE is_active = 1 AND id NOT IN (
                SELECT MAX(id) FROM sessions WHERE is_active = 1 GROUP BY conversation_key
            )
            """,
            """
            CREATE UNIQUE INDEX idx_sessions_one_active
                ON sessions(conversation_key) WHERE is_active = 1
            """,
            "CREATE INDEX idx_messages_session ON messages(session_id, timestamp)",
        ),
    ),
)

SCHEMA_VERSION = MIGRATIONS[-1].version


def current_version(db: Database) -> int:
    """Return the highest recorded schema version, 0 for a fresh store."""
    db.execute(VERSION_TABLE_SQL)
    row = db.query_one("SELECT MAX(version) AS version FROM schema_version")
    if row is None or row["version"] is None:
        return 0
    return int(row["version"])


def apply_migrations(
    db: Database,
    migrations: tuple[Migration, ...] = MIGRATIONS,
    schema: tuple[str, ...] = SCHEMA,
) -> list[int]:
    """Bring the store up to the latest schema version.

    Safe to call on every open: a store already at the latest version is
    left untouched.

    Args:
        db: The open database.
        migrations: Ordered migrations, versions strictly increasing.
        schema: Full current schema used for fresh stores.

    Returns:
        Versions recorded by this call (empty when already current).

    Raises:
        MigrationError: If any statement of a migration fails. The failing
            migration is rolled back; earlier ones stay applied.
    """
    try:
        version = current_version(db)
    except MemoryStoreError as e:
        raise MigrationError(0, str(e)) from e

    latest = migrations[-1].version if migrations else 0

    if version == 0 and latest > 0:
        _run_in_transaction(db, latest, schema)
        logger.info("Created memory schema at version %d", latest)
        return [latest]

    applied = []
    for migration in migrations:
        if migration.version <= version:
            continue
        _run_in_transaction(db, migration.version, migration.statements)
        logger.info(
            "Applied migration %d: %s", migration.version, migration.description
        )
        applied.append(migration.version)
    return applied


def _run_in_transaction(db: Database, version: int, statements: tuple[str, ...]) -> None:
    def apply() -> None:
        for statement in statements:
            db.execute(statement)
        db.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, to_iso(utcnow())),
        )

    try:
        db.transaction(apply)
    except MemoryStoreError as e:
        raise MigrationError(version, str(e)) from e
