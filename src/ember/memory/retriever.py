"""Lexical fact retrieval for prompt injection."""

import re

from .models import Fact
from .store import FactStore

_WORD = re.compile(r"\w+")

STOP_WORDS = frozenset(
    """
    a an and are as at be but by do does did for from had has have he her him
    his i if in is it its me my of on or our she so that the their them they
    this to us was we were what when where which who why will with you your
    """.split()
)


def tokenize(text: str) -> set[str]:
    """Split text into lowercase terms, dropping stop words and 1-char tokens."""
    return {
        token
        for token in _WORD.findall(text.casefold())
        if len(token) > 1 and token not in STOP_WORDS
    }


class FactRetriever:
    """Ranks live facts by term overlap with a query.

    Ties are broken by higher importance, then by the most recent update.
    Every fact returned is marked as accessed, and is returned as stored
    after that update.
    """

    def __init__(self, store: FactStore) -> None:
        self.store = store

    def retrieve_relevant(self, query: str, limit: int = 10) -> list[Fact]:
        """Return up to ``limit`` facts relevant to ``query``.

        Args:
            query: Free text, usually the new user message.
            limit: Maximum number of facts to return.

        Returns:
            Matching facts, best first, with their access tracking already
            bumped. Empty when nothing matches.
        """
        terms = tokenize(query)
        if not terms or limit <= 0:
            return []

        scored: list[tuple[int, Fact]] = []
        for fact in self.store.get_all():
            score = len(terms & tokenize(fact.content))
            if score:
                scored.append((score, fact))

        scored.sort(
            key=lambda item: (item[0], item[1].importance, item[1].updated_at),
            reverse=True,
        )
        selected = []
        for _, fact in scored[:limit]:
            assert fact.id is not None
            self.store.update_access_tracking(fact.id)
            selected.append(self.store.get_by_id(fact.id) or fact)

        return selected

    def format_for_prompt(self, facts: list[Fact]) -> str:
        """Format facts as a block for injection into the system prompt."""
        return format_memory_block(facts)


def format_memory_block(facts: list[Fact]) -> str:
    """Format facts as a block for injection into the system prompt.

    Args:
        facts: List of facts to format.

    Returns:
        XML-formatted memory block, or empty string if no facts.
    """
    if not facts:
        return ""

    lines = [f"- [{fact.category.value}] {fact.content}" for fact in facts]
    content = "\n".join(lines)

    return f"""<memory>
What you know about the user:
{content}
</memory>"""
