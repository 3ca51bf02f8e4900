"""Memory module: SQLite storage engine, facts and fact retrieval."""

from .database import Database
from .errors import (
    MemoryStoreError,
    MigrationError,
    QueryError,
    ReferentialIntegrityError,
    StoreLockedError,
    StoreUnavailableError,
)
from .extractor import FactExtractor
from .models import Fact, FactCategory, FactSource
from .retriever import FactRetriever, format_memory_block
from .store import FactStore, is_duplicate, normalize_content

__all__ = [
    "Database",
    "Fact",
    "FactCategory",
    "FactExtractor",
    "FactRetriever",
    "FactSource",
    "FactStore",
    "MemoryStoreError",
    "MigrationError",
    "QueryError",
    "ReferentialIntegrityError",
    "StoreLockedError",
    "StoreUnavailableError",
    "format_memory_block",
    "is_duplicate",
    "normalize_content",
]
