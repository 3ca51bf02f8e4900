"""Tests for memory data models."""

from datetime import datetime, timezone

import pytest

from ember.memory import Fact, FactCategory, FactSource
from ember.memory.models import clamp_unit, from_iso, to_iso


class TestFact:
    """Tests for the Fact dataclass."""

    def test_create_minimal(self):
        """Fact can be created with just content."""
        fact = Fact(content="User likes coffee")
        assert fact.content == "User likes coffee"

    def test_default_values(self):
        """Fact has correct default values."""
        fact = Fact(content="User lives in Lisbon")
        assert fact.id is None
        assert fact.category == FactCategory.CONTEXTUAL
        assert fact.source == FactSource.EXTRACTED
        assert fact.confidence == 0.8
        assert fact.importance == 0.5
        assert fact.access_count == 0
        assert fact.last_accessed is None
        assert fact.is_deleted is False
        assert fact.created_at.tzinfo is not None

    def test_content_is_stripped(self):
        fact = Fact(content="  User has a dog  \n")
        assert fact.content == "User has a dog"

    def test_empty_content_rejected(self):
        """Facts must say something."""
        with pytest.raises(ValueError):
            Fact(content="   ")

    def test_scores_clamped(self):
        """Confidence and importance are clamped to [0, 1]."""
        fact = Fact(content="User likes tea", confidence=1.7, importance=-0.3)
        assert fact.confidence == 1.0
        assert fact.importance == 0.0

    def test_string_enums_coerced(self):
        fact = Fact(content="User is married", category="relationship", source="explicit")
        assert fact.category == FactCategory.RELATIONSHIP
        assert fact.source == FactSource.EXPLICIT

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            Fact(content="User likes tea", category="gossip")

    def test_negative_access_count_rejected(self):
        with pytest.raises(ValueError):
            Fact(content="User likes tea", access_count=-1)


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_round_trip(self):
        value = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert from_iso(to_iso(value)) == value

    def test_none_passthrough(self):
        assert to_iso(None) is None
        assert from_iso(None) is None

    def test_naive_timestamp_read_as_utc(self):
        parsed = from_iso("2024-05-01T12:30:00")
        assert parsed.tzinfo == timezone.utc

    @pytest.mark.parametrize("value,expected", [(-1, 0.0), (0.5, 0.5), (2, 1.0)])
    def test_clamp_unit(self, value, expected):
        assert clamp_unit(value) == expected
