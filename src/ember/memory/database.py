"""SQLite storage engine shared by facts, sessions and messages."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from .errors import (
    MemoryStoreError,
    QueryError,
    ReferentialIntegrityError,
    StoreLockedError,
    StoreUnavailableError,
)
from .migrations import apply_migrations, current_version

logger = logging.getLogger(__name__)

MEMORY_DB_PATH = Path.home() / ".ember" / "memory.db"
IN_MEMORY = ":memory:"

T = TypeVar("T")
Params = Sequence[Any]


class Database:
    """Serialized access to the single SQLite connection behind the memory store.

    The connection is owned by this object and never handed out. Every
    primitive (``execute``, ``insert_returning_id``, ``query``,
    ``transaction``) takes one lock, so at most one statement runs against
    the store at a time no matter how many threads call in.

    Reentrancy contract for ``transaction(fn)``:

    - ``fn`` runs synchronously on the calling thread while the lock is held.
    - Primitives called from inside ``fn`` on that thread join the open
      transaction instead of waiting for the lock.
    - A ``transaction`` call from inside ``fn`` opens a SAVEPOINT. If the
      inner ``fn`` raises, only the inner block is rolled back; the exception
      still propagates, and rolls back the outer transaction too unless the
      outer ``fn`` catches it.
    - Calls from other threads block until the outermost transaction ends.

    File-backed stores run in WAL mode. ``":memory:"`` gives a private
    in-memory store, useful in tests.
    """

    def __init__(
        self,
        path: str | Path = MEMORY_DB_PATH,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Create an unopened database handle.

        Args:
            path: SQLite file path, or ":memory:".
            busy_timeout_ms: How long SQLite waits on a locked file.
        """
        self.path: str | Path = IN_MEMORY if str(path) == IN_MEMORY else Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._owner: int | None = None
        self._depth = 0

    @classmethod
    def open(cls, path: str | Path = MEMORY_DB_PATH, **kwargs: Any) -> Database:
        """Open a store at ``path`` and bring its schema up to date."""
        return cls(path, **kwargs).connect()

    @property
    def is_memory(self) -> bool:
        return self.path == IN_MEMORY

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def connect(self) -> Database:
        """Open the connection and apply pending migrations.

        Calling it on an open store does nothing.

        Raises:
            StoreUnavailableError: If the file cannot be opened.
            MigrationError: If the schema cannot be brought up to date.
        """
        if self._conn is not None:
            return self

        try:
            if not self.is_memory:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            if not self.is_memory:
                mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
                if str(mode).lower() != "wal":
                    logger.warning("WAL mode unavailable for %s, using %s", self.path, mode)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(str(self.path), str(e)) from e

        self._conn = conn
        try:
            apply_migrations(self)
        except MemoryStoreError:
            self.close()
            raise
        logger.debug("Opened memory store at %s", self.path)
        return self

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._owner == threading.get_ident():
            raise MemoryStoreError("Cannot close the store from inside a transaction")
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> Database:
        return self.connect()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def schema_version(self) -> int:
        """The highest migration version recorded in the store."""
        return current_version(self)

    # Primitives

    def execute(self, sql: str, params: Params = ()) -> int:
        """Run a statement and return the number of affected rows."""
        with self._serialized() as conn:
            return self._run(conn, sql, params).rowcount

    def insert_returning_id(self, sql: str, params: Params = ()) -> int:
        """Run an INSERT and return the new row's id."""
        with self._serialized() as conn:
            cursor = self._run(conn, sql, params)
            if cursor.lastrowid is None:
                raise QueryError(sql, "statement did not insert a row")
            return int(cursor.lastrowid)

    def query(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        """Run a SELECT and return all rows."""
        with self._serialized() as conn:
            cursor = self._run(conn, sql, params)
            try:
                return cursor.fetchall()
            except sqlite3.Error as e:
                raise _translate(sql, e) from e

    def query_one(self, sql: str, params: Params = ()) -> sqlite3.Row | None:
        """Run a SELECT and return the first row, or None."""
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` atomically and return its result.

        Any exception raised by ``fn`` rolls the work back and is re-raised
        unchanged. See the class docstring for nesting rules.
        """
        with self._serialized() as conn:
            if self._depth == 0:
                begin, commit, rollback = "BEGIN IMMEDIATE", "COMMIT", ("ROLLBACK",)
            else:
                name = f"ember_sp_{self._depth}"
                begin = f"SAVEPOINT {name}"
                commit = f"RELEASE SAVEPOINT {name}"
                rollback = (f"ROLLBACK TO SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}")

            self._run(conn, begin)
            self._depth += 1
            try:
                result = fn()
            except BaseException:
                self._depth -= 1
                # SQLite may already have aborted the transaction on its own.
                if conn.in_transaction:
                    for statement in rollback:
                        try:
                            conn.execute(statement)
                        except sqlite3.Error as rollback_error:
                            logger.error("Rollback failed (%s): %s", statement, rollback_error)
                raise
            self._depth -= 1
            try:
                self._run(conn, commit)
            except QueryError:
                if self._depth == 0 and conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            return result

    def backup(self, destination: str | Path | None = None) -> Path | None:
        """Checkpoint the WAL and copy the store to ``destination``.

        The copy is written to a temporary file and renamed into place, so
        ``destination`` is either the old backup or a complete new one.
        In-memory stores have nothing to back up and return None.

        Args:
            destination: Target file. Defaults to ``<db>.backup`` next to the store.

        Returns:
            The backup path, or None for in-memory stores.
        """
        if self.is_memory:
            return None

        assert isinstance(self.path, Path)
        target = Path(destination) if destination else self.path.with_name(
            self.path.name + ".backup"
        )
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".partial")

        with self._serialized() as conn:
            if self._depth:
                raise MemoryStoreError("Cannot back up the store from inside a transaction")
            self._run(conn, "PRAGMA wal_checkpoint(TRUNCATE)")
            try:
                copy = sqlite3.connect(str(partial))
                try:
                    conn.backup(copy)
                finally:
                    copy.close()
            except sqlite3.Error as e:
                partial.unlink(missing_ok=True)
                raise _translate("backup", e) from e

        os.replace(partial, target)
        logger.info("Backed up memory store to %s", target)
        return target

    # Internals

    @contextmanager
    def _serialized(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock, or join the current thread's transaction."""
        me = threading.get_ident()
        if self._owner == me:
            yield self._require_connection()
            return

        with self._lock:
            conn = self._require_connection()
            self._owner = me
            try:
                yield conn
            finally:
                self._owner = None

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError(str(self.path), "store is not open")
        return self._conn

    @staticmethod
    def _run(conn: sqlite3.Connection, sql: str, params: Params = ()) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise _translate(sql, e) from e


def _translate(sql: str, error: sqlite3.Error) -> QueryError:
    """Map a sqlite3 error onto the store's error kinds."""
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError) and "FOREIGN KEY" in message.upper():
        return ReferentialIntegrityError(sql, message)
    if isinstance(error, sqlite3.OperationalError) and "locked" in message.lower():
        return StoreLockedError(sql, message)
    return QueryError(sql, message)
