"""Rolling summaries of old conversation history."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .tokens import TokenEstimator, estimate_tokens

if TYPE_CHECKING:
    from ..llm_client import LLMClient
    from ..session.manager import Message

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You maintain a rolling summary of a conversation between a user and an assistant.

Rules:
- Write in the third person ("The user said...", "The assistant suggested...")
- At most 500 words
- Keep names, dates, decisions, commitments and open questions
- If a previous summary is given, fold the new messages into it: produce ONE updated summary that covers both, do not repeat the previous summary verbatim and do not summarize it separately
- Output only the summary text"""

SUMMARY_PROMPT_TEMPLATE = """{previous_block}Messages to fold into the summary:
{conversation}

Write the updated summary."""


@dataclass(frozen=True)
class SummaryConfig:
    """When and how much history gets summarized.

    Attributes:
        message_threshold: Summarize only when the session has MORE messages than this.
        token_threshold: ...and the candidate batch has MORE tokens than this.
        protected_recent: Newest messages that are never summarized.
        max_batch_size: Most messages folded into one summary call.
        max_summary_tokens: Reply cap for the summary call.
    """

    message_threshold: int = 30
    token_threshold: int = 4_000
    protected_recent: int = 10
    max_batch_size: int = 50
    max_summary_tokens: int = 800

    def __post_init__(self) -> None:
        if self.message_threshold < 0 or self.token_threshold < 0:
            raise ValueError("thresholds must be non-negative")
        if self.protected_recent < 0:
            raise ValueError("protected_recent must be non-negative")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if self.max_summary_tokens < 1:
            raise ValueError("max_summary_tokens must be at least 1")


@dataclass(frozen=True)
class SummarizationResult:
    """Outcome of a successful summarization.

    The generator never deletes anything: the caller stores ``summary`` and
    prunes ``message_ids_to_prune`` together (see SessionManager.apply_summary).
    """

    summary: str
    messages_summarized: int
    message_ids_to_prune: list[int] = field(default_factory=list)


class SummaryGenerator:
    """Decides when history needs compressing and asks the LLM for a summary."""

    def __init__(self, llm: LLMClient, config: SummaryConfig | None = None) -> None:
        self.llm = llm
        self.config = config or SummaryConfig()

    def should_summarize(self, total_messages: int, candidate_token_count: int) -> bool:
        """True only when BOTH thresholds are strictly exceeded.

        Hitting a threshold exactly does not trigger, so a session sitting
        on the boundary does not flip back and forth.
        """
        return (
            total_messages > self.config.message_threshold
            and candidate_token_count > self.config.token_threshold
        )

    def select_batch(self, messages: Sequence[Message]) -> list[Message]:
        """Oldest messages outside the protected recent tail, capped at max_batch_size."""
        eligible = len(messages) - self.config.protected_recent
        if eligible <= 0:
            return []
        return list(messages[: min(eligible, self.config.max_batch_size)])

    def skip_reason(
        self,
        all_messages: Sequence[Message],
        token_estimator: TokenEstimator = estimate_tokens,
    ) -> str | None:
        """Why the trigger does not fire for these messages, or None when it does.

        "no_candidates" when every message is in the protected tail,
        "below_threshold" when either threshold is not exceeded.
        """
        batch = self.select_batch(all_messages)
        if not batch:
            return "no_candidates"
        candidate_tokens = sum(token_estimator(message.content) for message in batch)
        if not self.should_summarize(len(all_messages), candidate_tokens):
            return "below_threshold"
        return None

    async def summarize_if_needed(
        self,
        all_messages: Sequence[Message],
        previous_summary: str | None,
        token_estimator: TokenEstimator = estimate_tokens,
    ) -> SummarizationResult | None:
        """Summarize the oldest batch of messages if the trigger fires.

        Args:
            all_messages: The session's messages, oldest first.
            previous_summary: The session's current rolling summary, if any.
            token_estimator: Used to size the candidate batch.

        Returns:
            The new summary and the ids it covers, or None when the trigger
            did not fire or the LLM call failed. A failure leaves every
            message in place; the next trigger evaluation retries.
        """
        if self.skip_reason(all_messages, token_estimator) is not None:
            return None

        batch = self.select_batch(all_messages)
        prompt = self.build_prompt(batch, previous_summary)

        try:
            summary = await self.llm.send(
                [{"role": "user", "content": prompt}],
                SUMMARY_SYSTEM_PROMPT,
                self.config.max_summary_tokens,
            )
        except Exception as e:
            logger.warning("Summary generation failed, will retry later: %s", e)
            return None

        summary = (summary or "").strip()
        if not summary:
            logger.warning("Summary generation returned an empty response, will retry later")
            return None

        logger.debug("Summarized %d messages", len(batch))
        return SummarizationResult(
            summary=summary,
            messages_summarized=len(batch),
            message_ids_to_prune=[message.id for message in batch],
        )

    def build_prompt(self, batch: Sequence[Message], previous_summary: str | None) -> str:
        previous_block = ""
        if previous_summary and previous_summary.strip():
            previous_block = f"Previous summary:\n{previous_summary.strip()}\n\n"

        lines = []
        for message in batch:
            speaker = "User" if _role_value(message) == "user" else "Assistant"
            lines.append(f"{speaker}: {message.content}")

        return SUMMARY_PROMPT_TEMPLATE.format(
            previous_block=previous_block,
            conversation="\n".join(lines),
        )


def _role_value(message: Message) -> str:
    role = message.role
    return getattr(role, "value", role)
