"""Token estimation and budget allocation.

Tokens are estimated as ``ceil(characters / 4)``. That over-counts for
English prose with most tokenizers, which keeps requests on the safe side
of the model's context window.
"""

import math
from dataclasses import dataclass, field
from typing import Protocol

CHARS_PER_TOKEN = 4

# Role and formatting cost charged for every message in the history.
MESSAGE_OVERHEAD_TOKENS = 4


class TokenEstimator(Protocol):
    def __call__(self, text: str) -> int: ...


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text``."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class TokenBudget:
    """Split of a total token budget into system, history and response shares.

    ``response`` is whatever the other two leave over, so
    ``system + history + response == total`` always holds.

    Attributes:
        total: Context window size to plan for.
        system_fraction: Share for the system prompt (facts and summary included).
        history_fraction: Share for past messages plus the new user message.
    """

    total: int = 100_000
    system_fraction: float = 0.10
    history_fraction: float = 0.50
    system: int = field(init=False)
    history: int = field(init=False)
    response: int = field(init=False)

    def __post_init__(self) -> None:
        if self.total < 0:
            raise ValueError("total must be non-negative")
        if self.system_fraction < 0 or self.history_fraction < 0:
            raise ValueError("budget fractions must be non-negative")
        if self.system_fraction + self.history_fraction > 1:
            raise ValueError("system_fraction + history_fraction must not exceed 1")

        system = math.floor(self.total * self.system_fraction)
        history = math.floor(self.total * self.history_fraction)
        object.__setattr__(self, "system", system)
        object.__setattr__(self, "history", history)
        object.__setattr__(self, "response", self.total - system - history)
