"""SQLite storage for memory facts."""

import re
import sqlite3
import unicodedata

from .database import Database
from .models import Fact, FactCategory, FactSource, from_iso, to_iso, utcnow

_FACT_COLUMNS = (
    "id, content, category, source, confidence, importance, created_at, "
    "updated_at, last_accessed, access_count, is_deleted"
)

_NON_WORD = re.compile(r"[^\w\s]")

# A prefix only counts as a duplicate when it is at least this many words,
# so "user likes" does not swallow every preference.
MIN_PREFIX_WORDS = 3


def normalize_content(text: str) -> str:
    """Normalize fact content for duplicate detection.

    NFKC-normalizes, casefolds, replaces punctuation with spaces and
    collapses whitespace: "User likes Coffee!" -> "user likes coffee".
    """
    text = unicodedata.normalize("NFKC", text).casefold()
    text = _NON_WORD.sub(" ", text)
    return " ".join(text.split())


def is_duplicate(first: str, second: str) -> bool:
    """Check whether two fact contents state the same thing.

    Equal after normalization, or the shorter one (at least MIN_PREFIX_WORDS
    words) is a whole-word prefix of the longer one: "user likes coffee"
    matches "user likes coffee a lot" but not "the sister of the user likes
    coffee".
    """
    a, b = normalize_content(first), normalize_content(second)
    if not a or not b:
        return False
    if a == b:
        return True
    shorter, longer = sorted((a, b), key=len)
    if len(shorter.split()) < MIN_PREFIX_WORDS:
        return False
    return longer.startswith(shorter + " ")


class FactStore:
    """Persistent storage for facts on top of the shared Database.

    Facts are merged on insert_or_update so that no two live facts state
    the same thing, and are only ever soft-deleted.
    """

    def __init__(self, db: Database) -> None:
        """Initialize the store.

        Args:
            db: An open Database.
        """
        self.db = db

    def insert(self, fact: Fact) -> int:
        """Insert a fact without duplicate checks.

        Args:
            fact: The fact to insert. Its id is ignored.

        Returns:
            The new fact's id.
        """
        return self.db.insert_returning_id(
            """
            INSERT INTO facts (
                content, category, source, confidence, importance,
                created_at, updated_at, last_accessed, access_count, is_deleted
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.content,
                fact.category.value,
                fact.source.value,
                fact.confidence,
                fact.importance,
                to_iso(fact.created_at),
                to_iso(fact.updated_at),
                to_iso(fact.last_accessed),
                fact.access_count,
                int(fact.is_deleted),
            ),
        )

    def insert_or_update(self, fact: Fact) -> int:
        """Save a fact, merging it into an equivalent live fact if one exists.

        On a merge the existing row keeps its id and created_at, takes the
        higher confidence and importance, and gets a fresh updated_at. Its
        content is never rewritten.

        Args:
            fact: The fact to save.

        Returns:
            The id of the merged or newly inserted fact.
        """

        def merge() -> int:
            rows = self.db.query(
                "SELECT id, content, confidence, importance FROM facts "
                "WHERE is_deleted = 0 ORDER BY id"
            )
            for row in rows:
                if not is_duplicate(row["content"], fact.content):
                    continue
                self.db.execute(
                    """
                    UPDATE facts SET
                        confidence = MAX(confidence, ?),
                        importance = MAX(importance, ?),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (fact.confidence, fact.importance, to_iso(utcnow()), row["id"]),
                )
                return int(row["id"])
            return self.insert(fact)

        return self.db.transaction(merge)

    def get_by_id(self, fact_id: int) -> Fact | None:
        """Get a fact by id, including soft-deleted ones."""
        row = self.db.query_one(
            f"SELECT {_FACT_COLUMNS} FROM facts WHERE id = ?", (fact_id,)
        )
        return self._row_to_fact(row) if row else None

    def get_all(self, include_deleted: bool = False) -> list[Fact]:
        """Get all facts, oldest first.

        Args:
            include_deleted: Also return soft-deleted facts.
        """
        where = "" if include_deleted else "WHERE is_deleted = 0"
        rows = self.db.query(f"SELECT {_FACT_COLUMNS} FROM facts {where} ORDER BY id")
        return [self._row_to_fact(row) for row in rows]

    def get_by_category(self, category: FactCategory) -> list[Fact]:
        """Get live facts in one category."""
        rows = self.db.query(
            f"SELECT {_FACT_COLUMNS} FROM facts "
            "WHERE is_deleted = 0 AND category = ? ORDER BY id",
            (FactCategory(category).value,),
        )
        return [self._row_to_fact(row) for row in rows]

    def search(self, text: str) -> list[Fact]:
        """Get live facts whose content contains ``text`` (case-insensitive)."""
        escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.db.query(
            f"SELECT {_FACT_COLUMNS} FROM facts "
            "WHERE is_deleted = 0 AND content LIKE ? ESCAPE '\\' ORDER BY id",
            (f"%{escaped}%",),
        )
        return [self._row_to_fact(row) for row in rows]

    def count(self, include_deleted: bool = False) -> int:
        where = "" if include_deleted else "WHERE is_deleted = 0"
        row = self.db.query_one(f"SELECT COUNT(*) AS n FROM facts {where}")
        return int(row["n"]) if row else 0

    def soft_delete(self, fact_id: int) -> bool:
        """Mark a fact deleted. The row is kept for audit.

        Returns:
            True if a live fact was deleted, False otherwise.
        """
        changed = self.db.execute(
            "UPDATE facts SET is_deleted = 1, updated_at = ? WHERE id = ? AND is_deleted = 0",
            (to_iso(utcnow()), fact_id),
        )
        return changed > 0

    def update_access_tracking(self, fact_id: int) -> None:
        """Record that a fact was retrieved.

        A single UPDATE increments the counter in SQL, so concurrent callers
        never overwrite each other's increments.
        """
        self.db.execute(
            "UPDATE facts SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
            (to_iso(utcnow()), fact_id),
        )

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        """Convert a database row to a Fact."""
        return Fact(
            id=row["id"],
            content=row["content"],
            category=FactCategory(row["category"]),
            source=FactSource(row["source"]),
            confidence=row["confidence"],
            importance=row["importance"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_accessed=from_iso(row["last_accessed"]),
            access_count=row["access_count"],
            is_deleted=bool(row["is_deleted"]),
        )
