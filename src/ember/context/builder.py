"""Token-bounded context assembly for LLM requests."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..memory.retriever import format_memory_block
from .tokens import MESSAGE_OVERHEAD_TOKENS, TokenBudget, TokenEstimator, estimate_tokens

if TYPE_CHECKING:
    from ..memory.models import Fact
    from ..session.manager import Message

TRUNCATION_MARKER = "\n\n[... truncated ...]"


@dataclass(frozen=True)
class ContextResult:
    """A request ready to send to the LLM.

    Attributes:
        messages: Chat messages, oldest first; the new user message is last.
        system_prompt: System prompt with memory and summary blocks, possibly truncated.
        estimated_tokens: Estimated size of system prompt plus messages.
        truncated_message_count: History messages left out to fit the budget.
    """

    messages: list[dict[str, str]]
    system_prompt: str
    estimated_tokens: int
    truncated_message_count: int


def format_summary_block(rolling_summary: str | None) -> str:
    if not rolling_summary or not rolling_summary.strip():
        return ""
    return f"""<conversation_summary>
{rolling_summary.strip()}
</conversation_summary>"""


def compose_system_prompt(
    system_prompt: str,
    facts: Sequence[Fact] = (),
    rolling_summary: str | None = None,
) -> str:
    """Prepend the memory and summary blocks to the base system prompt.

    Args:
        system_prompt: Base instructions.
        facts: Retrieved facts to inject.
        rolling_summary: Summary of older turns in this session.

    Returns:
        The combined system prompt, before any truncation.
    """
    blocks = [
        format_memory_block(list(facts)),
        format_summary_block(rolling_summary),
        system_prompt,
    ]
    return "\n\n".join(block for block in blocks if block)


def truncate_to_budget(
    text: str,
    budget: int,
    estimator: TokenEstimator = estimate_tokens,
) -> tuple[str, bool]:
    """Cut ``text`` so it fits ``budget`` tokens, marker included.

    Returns:
        The (possibly truncated) text and whether it was cut.
    """
    if estimator(text) <= budget:
        return text, False
    if estimator(TRUNCATION_MARKER) > budget:
        return "", True

    # Longest prefix that still fits together with the marker.
    low, high = 0, len(text)
    while low < high:
        middle = (low + high + 1) // 2
        if estimator(text[:middle] + TRUNCATION_MARKER) <= budget:
            low = middle
        else:
            high = middle - 1
    return text[:low] + TRUNCATION_MARKER, True


class ContextBuilder:
    """Assembles a token-bounded message list for one LLM request.

    Pure and stateless apart from its configuration, so a single instance
    can be shared across threads.
    """

    def __init__(
        self,
        budget: TokenBudget | None = None,
        estimator: TokenEstimator = estimate_tokens,
        message_overhead: int = MESSAGE_OVERHEAD_TOKENS,
    ) -> None:
        self.budget = budget or TokenBudget()
        self.estimator = estimator
        self.message_overhead = message_overhead

    def build(
        self,
        system_prompt: str,
        rolling_summary: str | None,
        facts: Sequence[Fact],
        recent_messages: Sequence[Message | Mapping[str, Any]],
        new_user_message: str,
    ) -> ContextResult:
        """Build the request context.

        The system prompt (with facts and summary prepended) is cut to the
        system budget. History is filled newest-first into what is left of
        the history budget after reserving room for the new message, so the
        oldest messages are the ones dropped and the kept history is always a
        contiguous, chronological suffix. The new user message is always
        included, last, even if it alone exceeds the budget.
        """
        full_prompt = compose_system_prompt(system_prompt, facts, rolling_summary)
        prompt, _ = truncate_to_budget(full_prompt, self.budget.system, self.estimator)
        system_tokens = self.estimator(prompt)

        new_message_tokens = self.estimator(new_user_message) + self.message_overhead
        remaining = self.budget.history - new_message_tokens

        kept: list[dict[str, str]] = []
        history_tokens = 0
        for message in reversed(recent_messages):
            chat = _as_chat_message(message)
            cost = self.estimator(chat["content"]) + self.message_overhead
            if cost > remaining:
                break
            kept.append(chat)
            remaining -= cost
            history_tokens += cost
        kept.reverse()

        kept.append({"role": "user", "content": new_user_message})

        return ContextResult(
            messages=kept,
            system_prompt=prompt,
            estimated_tokens=system_tokens + history_tokens + new_message_tokens,
            truncated_message_count=len(recent_messages) - (len(kept) - 1),
        )


def _as_chat_message(message: Message | Mapping[str, Any]) -> dict[str, str]:
    if isinstance(message, Mapping):
        role, content = message.get("role", "user"), message.get("content", "")
    else:
        role, content = message.role, message.content
    if isinstance(role, Enum):
        role = role.value
    return {"role": str(role), "content": str(content)}
