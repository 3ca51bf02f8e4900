"""JSONL event log for memory engine observability."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    conversation_key: str | None = None
    session_id: int | None = None
    duration_ms: float | None = None
    estimated_tokens: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Logger that writes structured memory events in JSONL format."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "memory.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".ember" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        """Write a log entry to the file."""
        self._rotate_if_needed()

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log(
        self,
        event: str,
        *,
        conversation_key: str | None = None,
        session_id: int | None = None,
        duration_ms: float | None = None,
        estimated_tokens: int | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            conversation_key=conversation_key,
            session_id=session_id,
            duration_ms=duration_ms,
            estimated_tokens=estimated_tokens,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_session_started(self, conversation_key: str, session_id: int) -> None:
        self.log("session_started", conversation_key=conversation_key, session_id=session_id)

    def log_context_built(
        self,
        session_id: int,
        estimated_tokens: int,
        truncated_message_count: int,
        facts_count: int,
    ) -> None:
        """Log the size of an assembled request."""
        self.log(
            "context_built",
            session_id=session_id,
            estimated_tokens=estimated_tokens,
            truncated_messages=truncated_message_count,
            facts=facts_count,
        )

    def log_summary_applied(
        self,
        session_id: int,
        messages_summarized: int,
        messages_pruned: int,
        duration_ms: float,
    ) -> None:
        self.log(
            "summary_applied",
            session_id=session_id,
            duration_ms=duration_ms,
            messages_summarized=messages_summarized,
            messages_pruned=messages_pruned,
        )

    def log_summary_failed(self, session_id: int, error: str) -> None:
        self.log("summary_failed", session_id=session_id, error=error)

    def log_facts_extracted(self, session_id: int, count: int) -> None:
        self.log("facts_extracted", session_id=session_id, count=count)

    def log_extraction_failed(self, session_id: int, error: str) -> None:
        self.log("extraction_failed", session_id=session_id, error=error)


# Global logger instance
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Configure and return the global logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
