"""Tests for SummaryGenerator."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from ember.context import SummaryConfig, SummaryGenerator
from ember.context.summarizer import SUMMARY_SYSTEM_PROMPT
from ember.session import Message, MessageRole


def make_messages(count: int, content: str = "hello there friend") -> list[Message]:
    now = datetime.now(timezone.utc)
    return [
        Message(
            id=i + 1,
            session_id=1,
            role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
            content=f"{content} {i}",
            timestamp=now,
        )
        for i in range(count)
    ]


@pytest.fixture
def mock_llm() -> AsyncMock:
    llm = AsyncMock()
    llm.send.return_value = "The user greeted the assistant several times."
    return llm


@pytest.fixture
def config() -> SummaryConfig:
    return SummaryConfig(message_threshold=10, token_threshold=20, protected_recent=4, max_batch_size=5)


@pytest.fixture
def generator(mock_llm: AsyncMock, config: SummaryConfig) -> SummaryGenerator:
    return SummaryGenerator(mock_llm, config)


class TestSummaryConfig:
    """Tests for config validation."""

    def test_defaults(self):
        config = SummaryConfig()
        assert config.message_threshold == 30
        assert config.token_threshold == 4_000
        assert config.protected_recent == 10

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            SummaryConfig(max_batch_size=0)

    def test_negative_threshold(self):
        with pytest.raises(ValueError):
            SummaryConfig(message_threshold=-1)


class TestShouldSummarize:
    """Tests for the trigger."""

    @pytest.mark.parametrize(
        "messages,tokens,expected",
        [
            (10, 100, False),
            (11, 101, True),
            (11, 100, False),
            (10, 101, False),
            (0, 0, False),
        ],
    )
    def test_both_thresholds_strictly_exceeded(self, mock_llm, messages, tokens, expected):
        generator = SummaryGenerator(mock_llm, SummaryConfig(message_threshold=10, token_threshold=100))
        assert generator.should_summarize(messages, tokens) is expected


class TestSelectBatch:
    """Tests for batch selection."""

    def test_protects_recent(self, generator: SummaryGenerator):
        messages = make_messages(7)
        assert [m.id for m in generator.select_batch(messages)] == [1, 2, 3]

    def test_caps_batch_size(self, generator: SummaryGenerator):
        messages = make_messages(20)
        assert [m.id for m in generator.select_batch(messages)] == [1, 2, 3, 4, 5]

    def test_nothing_eligible(self, generator: SummaryGenerator):
        assert generator.select_batch(make_messages(4)) == []


class TestSkipReason:
    """Tests for telling a skipped trigger apart from a failed summary."""

    def test_all_messages_protected(self, generator: SummaryGenerator):
        assert generator.skip_reason(make_messages(4)) == "no_candidates"

    def test_below_threshold(self, generator: SummaryGenerator):
        assert generator.skip_reason(make_messages(8)) == "below_threshold"

    def test_trigger_fires(self, generator: SummaryGenerator):
        assert generator.skip_reason(make_messages(20)) is None


class TestSummarizeIfNeeded:
    """Tests for summarize_if_needed."""

    @pytest.mark.asyncio
    async def test_below_threshold_skips_llm(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        result = await generator.summarize_if_needed(make_messages(10), None)
        assert result is None
        mock_llm.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_summarizes_oldest_batch(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        messages = make_messages(12)

        result = await generator.summarize_if_needed(messages, None)

        assert result is not None
        assert result.summary == "The user greeted the assistant several times."
        assert result.messages_summarized == 5
        assert result.message_ids_to_prune == [1, 2, 3, 4, 5]

        _, system_prompt, max_tokens = mock_llm.send.call_args.args
        assert system_prompt == SUMMARY_SYSTEM_PROMPT
        assert max_tokens == 800

    @pytest.mark.asyncio
    async def test_prompt_contains_batch_and_previous_summary(
        self, generator: SummaryGenerator, mock_llm: AsyncMock
    ):
        await generator.summarize_if_needed(make_messages(12), "The user said hi before.")

        messages, _, _ = mock_llm.send.call_args.args
        prompt = messages[0]["content"]
        assert "Previous summary:\nThe user said hi before." in prompt
        assert "User: hello there friend 0" in prompt
        assert "Assistant: hello there friend 1" in prompt
        assert "hello there friend 5" not in prompt

    @pytest.mark.asyncio
    async def test_token_threshold_uses_estimator(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        result = await generator.summarize_if_needed(
            make_messages(12), None, token_estimator=lambda text: 1
        )
        assert result is None
        mock_llm.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_failure_returns_none(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        mock_llm.send.side_effect = RuntimeError("rate limited")
        assert await generator.summarize_if_needed(make_messages(12), None) is None

    @pytest.mark.asyncio
    async def test_empty_summary_returns_none(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        mock_llm.send.return_value = "   "
        assert await generator.summarize_if_needed(make_messages(12), None) is None

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, generator: SummaryGenerator, mock_llm: AsyncMock):
        mock_llm.send.side_effect = asyncio.CancelledError()
        with pytest.raises(asyncio.CancelledError):
            await generator.summarize_if_needed(make_messages(12), None)
