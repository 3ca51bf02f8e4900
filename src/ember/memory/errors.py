"""Error types raised by the memory store.

Callers distinguish "the store is unusable" (StoreUnavailableError,
MigrationError) from "this one statement failed" (QueryError and its
subclasses).
"""


class MemoryStoreError(Exception):
    """Base class for all storage errors."""


class StoreUnavailableError(MemoryStoreError):
    """The store could not be opened, or has already been closed."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Memory store unavailable at {path}: {reason}")


class MigrationError(MemoryStoreError):
    """A schema migration failed to apply."""

    def __init__(self, version: int, reason: str) -> None:
        self.version = version
        self.reason = reason
        super().__init__(f"Migration to schema version {version} failed: {reason}")


class QueryError(MemoryStoreError):
    """A single SQL statement failed."""

    def __init__(self, sql: str, reason: str) -> None:
        self.sql = sql
        self.reason = reason
        super().__init__(f"Query failed ({_first_line(sql)}): {reason}")


class ReferentialIntegrityError(QueryError):
    """A statement referenced a row that does not exist."""


class StoreLockedError(QueryError):
    """The store stayed locked past the busy timeout. Safe to retry."""


def _first_line(sql: str) -> str:
    stripped = " ".join(sql.split())
    if len(stripped) > 60:
        return stripped[:57] + "..."
    return stripped
