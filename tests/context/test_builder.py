"""Tests for ContextBuilder."""

from datetime import datetime, timezone

import pytest

from ember.context import (
    TRUNCATION_MARKER,
    ContextBuilder,
    TokenBudget,
    compose_system_prompt,
    estimate_tokens,
    truncate_to_budget,
)
from ember.memory import Fact, FactCategory
from ember.session import Message, MessageRole


def make_history(contents: list[str]) -> list[dict[str, str]]:
    """Alternate user/assistant messages with the given contents."""
    return [
        {"role": "user" if i % 2 == 0 else "assistant", "content": content}
        for i, content in enumerate(contents)
    ]


@pytest.fixture
def builder() -> ContextBuilder:
    return ContextBuilder()


class TestTruncateToBudget:
    """Tests for system prompt truncation."""

    def test_fits_unchanged(self):
        assert truncate_to_budget("short prompt", 100) == ("short prompt", False)

    def test_cut_with_marker(self):
        text, cut = truncate_to_budget("x" * 200, 10)
        assert cut is True
        assert text.endswith(TRUNCATION_MARKER)
        assert estimate_tokens(text) <= 10
        assert text.startswith("x")

    def test_keeps_longest_prefix(self):
        text, _ = truncate_to_budget("x" * 200, 10)
        # 10 tokens is 40 characters, marker included.
        assert len(text) == 40

    def test_marker_does_not_fit(self):
        assert truncate_to_budget("x" * 200, 2) == ("", True)


class TestComposeSystemPrompt:
    """Tests for memory and summary injection."""

    def test_base_only(self):
        assert compose_system_prompt("Be brief.") == "Be brief."

    def test_blocks_prepended_in_order(self):
        prompt = compose_system_prompt(
            "Be brief.",
            facts=[Fact(content="User likes jazz", category=FactCategory.PREFERENCE)],
            rolling_summary="They discussed concerts.",
        )
        memory = prompt.index("<memory>")
        summary = prompt.index("<conversation_summary>")
        base = prompt.index("Be brief.")
        assert memory < summary < base
        assert "- [preference] User likes jazz" in prompt
        assert "They discussed concerts." in prompt

    def test_blank_summary_ignored(self):
        assert compose_system_prompt("Be brief.", rolling_summary="   ") == "Be brief."


class TestContextBuilder:
    """Tests for build."""

    def test_hi_with_empty_history(self, builder: ContextBuilder):
        result = builder.build("You are helpful.", None, [], [], "Hi")

        assert result.messages == [{"role": "user", "content": "Hi"}]
        assert result.truncated_message_count == 0
        assert result.system_prompt == "You are helpful."
        # 4 system tokens + 1 token for "Hi" + 4 per-message overhead
        assert result.estimated_tokens == 9

    def test_large_history_drops_oldest(self, builder: ContextBuilder):
        """Five 50,000-character messages cannot all fit a 50,000-token history budget."""
        history = make_history([f"{i}" * 50_000 for i in range(5)])

        result = builder.build("You are helpful.", None, [], history, "What now?")

        assert result.truncated_message_count >= 1
        kept = result.messages[:-1]
        assert kept == history[len(history) - len(kept):]
        assert result.messages[-1] == {"role": "user", "content": "What now?"}
        assert result.truncated_message_count == len(history) - len(kept)

    def test_history_is_contiguous_suffix(self):
        builder = ContextBuilder(TokenBudget(total=1_000))
        sizes = [100, 40, 900, 20, 300, 60, 10, 400, 80]
        history = make_history(["y" * size for size in sizes])

        result = builder.build("sys", None, [], history, "next")

        kept = result.messages[:-1]
        assert kept == history[len(history) - len(kept):]
        history_tokens = sum(estimate_tokens(m["content"]) + 4 for m in result.messages)
        assert history_tokens <= builder.budget.history

    def test_stops_at_first_message_that_does_not_fit(self):
        """A small older message is not admitted past a gap."""
        builder = ContextBuilder(TokenBudget(total=1_000))
        history = make_history(["tiny", "z" * 4_000, "recent"])

        result = builder.build("sys", None, [], history, "next")

        assert [m["content"] for m in result.messages] == ["recent", "next"]
        assert result.truncated_message_count == 2

    def test_new_message_always_last_even_if_huge(self, builder: ContextBuilder):
        history = make_history(["older", "newer"])
        huge = "h" * 1_000_000

        result = builder.build("sys", None, [], history, huge)

        assert result.messages == [{"role": "user", "content": huge}]
        assert result.truncated_message_count == 2

    def test_system_prompt_truncated_to_budget(self):
        builder = ContextBuilder(TokenBudget(total=100))
        result = builder.build("x" * 1_000, None, [], [], "Hi")

        assert result.system_prompt.endswith(TRUNCATION_MARKER)
        assert estimate_tokens(result.system_prompt) <= builder.budget.system

    def test_facts_count_against_system_budget(self):
        builder = ContextBuilder(TokenBudget(total=200))
        facts = [Fact(content=f"User fact number {i} " + "w" * 50) for i in range(20)]

        result = builder.build("Base prompt", None, facts, [], "Hi")

        assert result.system_prompt.startswith("<memory>")
        assert estimate_tokens(result.system_prompt) <= builder.budget.system

    def test_facts_and_summary_in_prompt(self, builder: ContextBuilder):
        facts = [Fact(content="User likes jazz")]
        result = builder.build("Base prompt", "Earlier: concerts.", facts, [], "Hi")

        assert "User likes jazz" in result.system_prompt
        assert "Earlier: concerts." in result.system_prompt
        assert result.system_prompt.endswith("Base prompt")

    def test_estimated_tokens(self, builder: ContextBuilder):
        history = make_history(["abcd" * 3, "abcd" * 5])
        result = builder.build("abcd" * 2, None, [], history, "abcd")

        assert result.estimated_tokens == 2 + (3 + 4) + (5 + 4) + (1 + 4)

    def test_accepts_message_objects(self, builder: ContextBuilder):
        now = datetime.now(timezone.utc)
        history = [
            Message(id=1, session_id=1, role=MessageRole.USER, content="Hello", timestamp=now),
            Message(id=2, session_id=1, role=MessageRole.ASSISTANT, content="Hi!", timestamp=now),
        ]

        result = builder.build("sys", None, [], history, "How are you?")

        assert result.messages == [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi!"},
            {"role": "user", "content": "How are you?"},
        ]

    def test_custom_estimator(self):
        builder = ContextBuilder(TokenBudget(total=100), estimator=len, message_overhead=0)
        history = make_history(["a" * 30, "b" * 30])

        result = builder.build("", None, [], history, "c" * 10)

        # history budget is 50 characters: 10 for the new message, one 30-char message fits
        assert [m["content"] for m in result.messages] == ["b" * 30, "c" * 10]
