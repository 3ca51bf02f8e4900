"""Fact extraction from conversations using LLM."""

import json
import logging
from typing import Any

from ..llm_client import LLMClient
from .models import Fact, FactCategory, FactSource

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Analyze this conversation and extract stable facts about the user that are worth remembering for future conversations.

Return ONLY valid JSON:
{
  "facts": [
    {"content": "<fact in third person>", "category": "<category>", "confidence": <0.0-1.0>, "importance": <0.0-1.0>},
    ...
  ]
}

Rules:
- Only STABLE facts (not passing states like "is tired")
- Content in THIRD PERSON ("User works at Google", not "I work at Google")
- category is one of: preference, relationship, biographical, event, opinion, contextual, secret
- Use "secret" for anything the user shared in confidence
- If there are no new facts, return {"facts": []}
- Do not extract questions or hypotheticals as facts"""


class FactExtractor:
    """Extracts facts from conversations using LLM."""

    def __init__(self, llm: LLMClient, max_tokens: int = 1024) -> None:
        """Initialize the extractor.

        Args:
            llm: Client used for the extraction call.
            max_tokens: Reply length cap for the extraction call.
        """
        self.llm = llm
        self.max_tokens = max_tokens

    async def extract(self, messages: list[dict[str, Any]]) -> list[Fact]:
        """Extract facts from a conversation.

        Args:
            messages: The conversation messages to analyze.

        Returns:
            List of extracted facts, empty if none found or on error.
        """
        if not messages:
            return []

        conversation_text = self._format_conversation(messages)
        if not conversation_text:
            return []

        try:
            content = await self.llm.send(
                [{"role": "user", "content": f"Conversation to analyze:\n{conversation_text}"}],
                EXTRACTION_PROMPT,
                self.max_tokens,
            )
            return self._parse_response(content)

        except Exception as e:
            logger.warning("Fact extraction failed: %s", e)
            return []

    def _format_conversation(self, messages: list[dict[str, Any]]) -> str:
        """Format messages into a readable conversation string."""
        lines = []
        for msg in messages:
            role = msg.get("role", "unknown")
            content = msg.get("content", "")
            if role == "user":
                lines.append(f"User: {content}")
            elif role == "assistant":
                lines.append(f"Assistant: {content}")
            # Skip system and tool messages
        return "\n".join(lines)

    def _parse_response(self, content: str) -> list[Fact]:
        """Parse LLM response into facts.

        Args:
            content: The raw LLM response.

        Returns:
            List of facts, empty on parse error.
        """
        json_str = content.strip()
        if json_str.startswith("```"):
            # The LLM might wrap it in a markdown code block
            lines = [line for line in json_str.split("\n") if not line.startswith("```")]
            json_str = "\n".join(lines)

        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse extraction response: %s", e)
            return []

        if not isinstance(data, dict) or not isinstance(data.get("facts"), list):
            logger.warning("Invalid response structure: missing 'facts' list")
            return []

        facts = []
        for item in data["facts"]:
            fact = self._parse_item(item)
            if fact is None:
                logger.warning("Skipping invalid fact item: %r", item)
                continue
            facts.append(fact)

        return facts

    def _parse_item(self, item: Any) -> Fact | None:
        if not isinstance(item, dict) or not str(item.get("content", "")).strip():
            return None
        try:
            return Fact(
                content=str(item["content"]),
                category=FactCategory(str(item.get("category", "contextual")).lower()),
                source=FactSource.EXTRACTED,
                confidence=float(item.get("confidence", 0.8)),
                importance=float(item.get("importance", 0.5)),
            )
        except (TypeError, ValueError):
            return None
