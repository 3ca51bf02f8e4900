"""Context assembly: token budgets, request building and rolling summaries."""

from .builder import (
    TRUNCATION_MARKER,
    ContextBuilder,
    ContextResult,
    compose_system_prompt,
    truncate_to_budget,
)
from .summarizer import SummarizationResult, SummaryConfig, SummaryGenerator
from .tokens import MESSAGE_OVERHEAD_TOKENS, TokenBudget, TokenEstimator, estimate_tokens

__all__ = [
    "MESSAGE_OVERHEAD_TOKENS",
    "TRUNCATION_MARKER",
    "ContextBuilder",
    "ContextResult",
    "SummarizationResult",
    "SummaryConfig",
    "SummaryGenerator",
    "TokenBudget",
    "TokenEstimator",
    "compose_system_prompt",
    "estimate_tokens",
    "truncate_to_budget",
]
