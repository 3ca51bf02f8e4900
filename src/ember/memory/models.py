"""Data models for the memory system."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime for storage."""
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp, assuming UTC when no offset is present."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clamp_unit(value: float) -> float:
    """Clamp a score into the [0, 1] range."""
    return max(0.0, min(1.0, float(value)))


class FactCategory(Enum):
    """What kind of statement a fact is."""

    PREFERENCE = "preference"
    RELATIONSHIP = "relationship"
    BIOGRAPHICAL = "biographical"
    EVENT = "event"
    OPINION = "opinion"
    CONTEXTUAL = "contextual"
    SECRET = "secret"


class FactSource(Enum):
    """How a fact entered memory."""

    EXTRACTED = "extracted"
    EXPLICIT = "explicit"


@dataclass
class Fact:
    """A fact stored in memory about the user.

    Attributes:
        content: The fact, written in third person.
        category: Kind of statement (preference, relationship, ...).
        source: EXTRACTED for LLM-extracted, EXPLICIT for user-requested.
        confidence: How sure we are the fact is true, clamped to [0, 1].
        importance: How useful the fact is for future replies, clamped to [0, 1].
        id: Database ID, None for new facts.
        created_at: When the fact was first stored.
        updated_at: When the fact was last merged or edited.
        last_accessed: When the fact was last returned by retrieval.
        access_count: Number of times the fact was retrieved.
        is_deleted: Soft-delete flag; deleted facts stay in the table.
    """

    content: str
    category: FactCategory = FactCategory.CONTEXTUAL
    source: FactSource = FactSource.EXTRACTED
    confidence: float = 0.8
    importance: float = 0.5
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime | None = None
    access_count: int = 0
    is_deleted: bool = False

    def __post_init__(self) -> None:
        self.content = self.content.strip()
        if not self.content:
            raise ValueError("Fact content must not be empty")
        self.category = FactCategory(self.category)
        self.source = FactSource(self.source)
        self.confidence = clamp_unit(self.confidence)
        self.importance = clamp_unit(self.importance)
        if self.access_count < 0:
            raise ValueError("access_count must be non-negative")
