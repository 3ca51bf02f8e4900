"""Conversation memory: wires storage, retrieval, context and summaries together."""

from __future__ import annotations

import asyncio
import logging
import time

from .config import MemoryConfig
from .context import ContextBuilder, ContextResult, SummarizationResult, SummaryGenerator
from .llm_client import LLMClient
from .logging import JSONLLogger
from .memory import Database, Fact, FactCategory, FactExtractor, FactRetriever, FactSource, FactStore
from .session import Message, MessageRole, Session, SessionManager, idle_timeout_predicate
from .session.manager import StalenessPredicate

logger = logging.getLogger(__name__)

# Messages handed to the fact extractor after each reply: the latest exchange.
EXTRACTION_WINDOW = 2


class ConversationMemory:
    """Message-processing front end for the memory engine.

    Typical turn::

        session, context = memory.prepare("+15551234567", text)
        reply = await llm.send(context.messages, context.system_prompt, max_tokens)
        memory.record_response(session, reply)

    ``record_response`` schedules summarization (and fact extraction) as a
    background task, so the reply is never delayed by it. At most one
    background task runs per session.
    """

    def __init__(
        self,
        db: Database,
        llm: LLMClient,
        config: MemoryConfig | None = None,
        event_logger: JSONLLogger | None = None,
        is_stale: StalenessPredicate | None = None,
    ) -> None:
        self.db = db
        self.llm = llm
        self.config = config or MemoryConfig()
        self.event_logger = event_logger

        if is_stale is None and self.config.session_idle_timeout > 0:
            is_stale = idle_timeout_predicate(self.config.session_idle_timeout)

        self.facts = FactStore(db)
        self.retriever = FactRetriever(self.facts)
        self.sessions = SessionManager(db, is_stale=is_stale)
        self.builder = ContextBuilder(self.config.token_budget())
        self.summarizer = SummaryGenerator(llm, self.config.summary_config())
        self.extractor = FactExtractor(llm) if self.config.extract_facts else None

        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._current_sessions: dict[str, int] = {}

    def prepare(self, conversation_key: str, text: str) -> tuple[Session, ContextResult]:
        """Persist a new user message and build the request for it.

        The context is built from the history as it was before ``text``
        arrived, with ``text`` appended as the final message.
        """
        session = self.sessions.get_or_create_session(conversation_key)
        if self._current_sessions.get(conversation_key) != session.id:
            self._current_sessions[conversation_key] = session.id
            if self.event_logger and session.message_count == 0:
                self.event_logger.log_session_started(conversation_key, session.id)

        facts = self.retriever.retrieve_relevant(text, self.config.retrieval_limit)
        history = self.sessions.get_messages(session.id)
        context = self.builder.build(
            self.config.system_prompt,
            session.rolling_summary,
            facts,
            history,
            text,
        )
        self.sessions.add_message(session.id, text, MessageRole.USER)

        if self.event_logger:
            self.event_logger.log_context_built(
                session.id, context.estimated_tokens, context.truncated_message_count, len(facts)
            )
        return session, context

    def record_response(self, session: Session, text: str) -> Message:
        """Persist the assistant reply and schedule background maintenance."""
        message = self.sessions.add_message(session.id, text, MessageRole.ASSISTANT)
        self.schedule_maintenance(session.id)
        return message

    async def respond(self, conversation_key: str, text: str) -> str:
        """Run one full turn: prepare, call the LLM, record the reply.

        LLM errors propagate; the user message is already stored by then.
        """
        session, context = self.prepare(conversation_key, text)
        reply = await self.llm.send(
            context.messages, context.system_prompt, self.config.response_tokens()
        )
        self.record_response(session, reply)
        return reply

    def remember(
        self,
        content: str,
        category: FactCategory = FactCategory.CONTEXTUAL,
        confidence: float = 1.0,
        importance: float = 0.7,
    ) -> int:
        """Store a fact the user explicitly asked to keep."""
        fact = Fact(
            content=content,
            category=category,
            source=FactSource.EXPLICIT,
            confidence=confidence,
            importance=importance,
        )
        return self.facts.insert_or_update(fact)

    def forget(self, fact_id: int) -> bool:
        return self.facts.soft_delete(fact_id)

    def reset(self, conversation_key: str) -> bool:
        """End the active session for a key; the next message starts fresh."""
        self._current_sessions.pop(conversation_key, None)
        ended = False
        for session in self.sessions.get_sessions(conversation_key):
            if session.is_active:
                ended = self.sessions.mark_session_stale(session.id) or ended
        return ended

    async def summarize_now(self, session_id: int) -> SummarizationResult | None:
        """Evaluate the summary trigger for a session and apply the result.

        Returns:
            The applied summary, or None if nothing was summarized.
        """
        session = self.sessions.get_session(session_id)
        if session is None:
            return None

        messages = self.sessions.get_messages(session_id)
        reason = self.summarizer.skip_reason(messages)
        if reason is not None:
            logger.debug("Session %d: no summary needed (%s)", session_id, reason)
            return None

        started = time.monotonic()
        result = await self.summarizer.summarize_if_needed(messages, session.rolling_summary)
        if result is None:
            if self.event_logger:
                self.event_logger.log_summary_failed(
                    session_id, "no summary produced, retrying on the next turn"
                )
            return None

        pruned = self.sessions.apply_summary(
            session_id, result.summary, result.message_ids_to_prune
        )
        logger.info(
            "Session %d: folded %d messages into the rolling summary",
            session_id,
            result.messages_summarized,
        )
        if self.event_logger:
            self.event_logger.log_summary_applied(
                session_id,
                result.messages_summarized,
                pruned,
                (time.monotonic() - started) * 1000,
            )
        return result

    async def extract_facts(self, session_id: int) -> list[int]:
        """Extract facts from the latest exchange and merge them into the store."""
        if self.extractor is None:
            return []
        recent = self.sessions.get_recent_messages(session_id, EXTRACTION_WINDOW)
        facts = await self.extractor.extract([m.for_llm() for m in recent])
        ids = [self.facts.insert_or_update(fact) for fact in facts]
        if ids and self.event_logger:
            self.event_logger.log_facts_extracted(session_id, len(ids))
        return ids

    def schedule_maintenance(self, session_id: int) -> asyncio.Task[None] | None:
        """Start background summarization and extraction for a session.

        Does nothing when a task for the session is still running, or when
        called outside an event loop (the next scheduled turn catches up).
        """
        running = self._tasks.get(session_id)
        if running is not None and not running.done():
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping maintenance for session %d", session_id)
            return None

        task = loop.create_task(self._maintain(session_id))
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._forget_task(session_id, task))
        return task

    async def wait_idle(self) -> None:
        """Wait for all background maintenance to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background maintenance. Nothing partial is written."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _maintain(self, session_id: int) -> None:
        try:
            try:
                await self.summarize_now(session_id)
            except Exception as e:
                logger.exception("Summarization failed for session %d", session_id)
                if self.event_logger:
                    self.event_logger.log_summary_failed(session_id, str(e))

            try:
                await self.extract_facts(session_id)
            except Exception as e:
                logger.exception("Fact extraction failed for session %d", session_id)
                if self.event_logger:
                    self.event_logger.log_extraction_failed(session_id, str(e))
        except asyncio.CancelledError:
            logger.debug("Maintenance for session %d cancelled", session_id)
            raise

    def _forget_task(self, session_id: int, task: asyncio.Task[None]) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
