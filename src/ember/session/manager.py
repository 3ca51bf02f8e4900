"""Session manager: session lifecycle and message history on the shared store."""

import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from ..context.tokens import estimate_tokens
from ..memory.database import Database
from ..memory.models import from_iso, to_iso, utcnow

# Keeps "IN (...)" lists under SQLite's bound-parameter limit.
_PRUNE_CHUNK = 500

_SESSION_COLUMNS = (
    "id, conversation_key, started_at, ended_at, rolling_summary, "
    "message_count, is_active, last_message_at"
)
_MESSAGE_COLUMNS = "id, session_id, role, content, timestamp, token_count"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Session:
    """A conversation session with one counterpart."""

    id: int
    conversation_key: str
    started_at: datetime
    ended_at: datetime | None = None
    rolling_summary: str | None = None
    message_count: int = 0
    is_active: bool = True
    last_message_at: datetime | None = None

    @property
    def last_activity(self) -> datetime:
        """Time of the newest message, or the start time for empty sessions."""
        return self.last_message_at or self.started_at

    def is_expired(self, ttl_seconds: float, now: datetime | None = None) -> bool:
        """Check if session has been idle longer than ``ttl_seconds``."""
        now = now or utcnow()
        return now - self.last_activity > timedelta(seconds=ttl_seconds)


@dataclass
class Message:
    """A single message in a session."""

    id: int
    session_id: int
    role: MessageRole
    content: str
    timestamp: datetime
    token_count: int | None = None

    def for_llm(self) -> dict[str, str]:
        """Return only role and content (chat API format)."""
        return {"role": self.role.value, "content": self.content}


StalenessPredicate = Callable[[Session], bool]


def never_stale(session: Session) -> bool:
    return False


def idle_timeout_predicate(ttl_seconds: float) -> StalenessPredicate:
    """Build a predicate that marks sessions stale after ``ttl_seconds`` idle."""

    def is_stale(session: Session) -> bool:
        return session.is_expired(ttl_seconds)

    return is_stale


class SessionManager:
    """Manages sessions and their messages in the memory store.

    At most one session per conversation key is active. Whether an active
    session is too old to reuse is decided by the ``is_stale`` predicate
    supplied by the caller.
    """

    def __init__(
        self,
        db: Database,
        is_stale: StalenessPredicate | None = None,
    ) -> None:
        self.db = db
        self.is_stale = is_stale or never_stale

    def get_or_create_session(self, conversation_key: str) -> Session:
        """Return the active session for a key, starting a new one if needed.

        A new session is started when there is no active session or the
        active one is stale; any previously active session is ended in the
        same transaction.
        """

        def resolve() -> Session:
            row = self.db.query_one(
                f"SELECT {_SESSION_COLUMNS} FROM sessions "
                "WHERE conversation_key = ? AND is_active = 1 ORDER BY id DESC",
                (conversation_key,),
            )
            if row is not None:
                session = self._row_to_session(row)
                if not self.is_stale(session):
                    return session

            now = utcnow()
            self.db.execute(
                "UPDATE sessions SET is_active = 0, ended_at = ? "
                "WHERE conversation_key = ? AND is_active = 1",
                (to_iso(now), conversation_key),
            )
            session_id = self.db.insert_returning_id(
                "INSERT INTO sessions (conversation_key, started_at, message_count, is_active) "
                "VALUES (?, ?, 0, 1)",
                (conversation_key, to_iso(now)),
            )
            return Session(id=session_id, conversation_key=conversation_key, started_at=now)

        return self.db.transaction(resolve)

    def get_session(self, session_id: int) -> Session | None:
        row = self.db.query_one(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        )
        return self._row_to_session(row) if row else None

    def get_sessions(self, conversation_key: str) -> list[Session]:
        """All sessions for a key, newest first."""
        rows = self.db.query(
            f"SELECT {_SESSION_COLUMNS} FROM sessions "
            "WHERE conversation_key = ? ORDER BY id DESC",
            (conversation_key,),
        )
        return [self._row_to_session(row) for row in rows]

    def mark_session_stale(self, session_id: int) -> bool:
        """End a session so the next message for its key starts a new one.

        Returns:
            True if an active session was ended.
        """
        changed = self.db.execute(
            "UPDATE sessions SET is_active = 0, ended_at = ? WHERE id = ? AND is_active = 1",
            (to_iso(utcnow()), session_id),
        )
        return changed > 0

    def add_message(
        self,
        session_id: int,
        content: str,
        role: MessageRole | str,
    ) -> Message:
        """Append a message and bump the session's message count atomically.

        Raises:
            ReferentialIntegrityError: If the session does not exist.
        """
        role = MessageRole(role)
        timestamp = utcnow()
        token_count = estimate_tokens(content)

        def append() -> Message:
            message_id = self.db.insert_returning_id(
                "INSERT INTO messages (session_id, role, content, timestamp, token_count) "
                "VALUES (?, ?, ?, ?, ?)",
                (session_id, role.value, content, to_iso(timestamp), token_count),
            )
            self.db.execute(
                "UPDATE sessions SET message_count = message_count + 1, last_message_at = ? "
                "WHERE id = ?",
                (to_iso(timestamp), session_id),
            )
            return Message(
                id=message_id,
                session_id=session_id,
                role=role,
                content=content,
                timestamp=timestamp,
                token_count=token_count,
            )

        return self.db.transaction(append)

    def get_messages(self, session_id: int) -> list[Message]:
        """Get all messages of a session in chronological order."""
        rows = self.db.query(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [self._row_to_message(row) for row in rows]

    def get_recent_messages(self, session_id: int, limit: int) -> list[Message]:
        """Get the newest ``limit`` messages, oldest first."""
        if limit <= 0:
            return []
        rows = self.db.query(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE session_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (session_id, limit),
        )
        return [self._row_to_message(row) for row in reversed(rows)]

    def set_rolling_summary(self, session_id: int, summary: str | None) -> bool:
        changed = self.db.execute(
            "UPDATE sessions SET rolling_summary = ? WHERE id = ?", (summary, session_id)
        )
        return changed > 0

    def prune_messages(self, message_ids: Iterable[int]) -> int:
        """Delete messages and keep each session's message count in step.

        Returns:
            Number of messages actually deleted.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return 0
        return self.db.transaction(lambda: self._delete_messages(ids))

    def apply_summary(
        self,
        session_id: int,
        summary: str,
        message_ids: Iterable[int],
    ) -> int:
        """Store a rolling summary and prune the messages it replaces.

        Both changes land in one transaction: after a crash either the
        summary is stored and its messages are gone, or neither happened.
        Only messages belonging to ``session_id`` are pruned.

        Returns:
            Number of messages deleted.
        """
        ids = list(dict.fromkeys(message_ids))

        def apply() -> int:
            self.set_rolling_summary(session_id, summary)
            return self._delete_messages(ids, session_id=session_id)

        return self.db.transaction(apply)

    def _delete_messages(self, ids: list[int], session_id: int | None = None) -> int:
        """Delete messages by id. Must run inside a transaction."""
        deleted = 0
        for start in range(0, len(ids), _PRUNE_CHUNK):
            chunk = ids[start:start + _PRUNE_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            where = f"id IN ({placeholders})"
            params: list[int] = list(chunk)
            if session_id is not None:
                where += " AND session_id = ?"
                params.append(session_id)

            counts = self.db.query(
                f"SELECT session_id, COUNT(*) AS n FROM messages WHERE {where} GROUP BY session_id",
                params,
            )
            deleted += self.db.execute(f"DELETE FROM messages WHERE {where}", params)
            for row in counts:
                self.db.execute(
                    "UPDATE sessions SET message_count = MAX(message_count - ?, 0) WHERE id = ?",
                    (row["n"], row["session_id"]),
                )
        return deleted

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            conversation_key=row["conversation_key"],
            started_at=from_iso(row["started_at"]),
            ended_at=from_iso(row["ended_at"]),
            rolling_summary=row["rolling_summary"],
            message_count=row["message_count"],
            is_active=bool(row["is_active"]),
            last_message_at=from_iso(row["last_message_at"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            timestamp=from_iso(row["timestamp"]),
            token_count=row["token_count"],
        )
