"""Memory engine configuration loader.

Loads configuration from ~/.ember/config.json, then applies EMBER_*
environment overrides.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .context.summarizer import SummaryConfig
from .context.tokens import TokenBudget
from .llm_client import DEFAULT_MODEL

logger = logging.getLogger(__name__)

EMBER_HOME = Path.home() / ".ember"
DEFAULT_CONFIG_PATH = EMBER_HOME / "config.json"

DEFAULT_SYSTEM_PROMPT = (
    "You are Ember, a warm and attentive personal assistant. "
    "Answer concisely and use what you remember about the user when it helps."
)


@dataclass
class MemoryConfig:
    """Configuration for the memory engine.

    Attributes:
        db_path: SQLite file holding facts, sessions and messages.
        model: LLM model used for replies, summaries and extraction.
        system_prompt: Base system prompt for replies.
        max_response_tokens: Reply cap for chat turns, below the provider's completion limit.
        total_tokens: Context window size the budget is planned for.
        system_fraction: Share of total_tokens for the system prompt.
        history_fraction: Share of total_tokens for conversation history.
        retrieval_limit: Most facts injected into one request.
        session_idle_timeout: Seconds of silence before a new session starts (0 = never).
        message_threshold: Summarize only above this many session messages.
        token_threshold: ...and above this many tokens in the candidate batch.
        protected_recent: Newest messages never summarized.
        max_batch_size: Most messages folded into one summary.
        max_summary_tokens: Reply cap for the summary call.
        extract_facts: Run fact extraction after each assistant reply.
    """

    db_path: Path | None = None
    model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_response_tokens: int = 1024
    total_tokens: int = 100_000
    system_fraction: float = 0.10
    history_fraction: float = 0.50
    retrieval_limit: int = 10
    session_idle_timeout: float = 4 * 60 * 60
    message_threshold: int = 30
    token_threshold: int = 4_000
    protected_recent: int = 10
    max_batch_size: int = 50
    max_summary_tokens: int = 800
    extract_facts: bool = True

    def __post_init__(self) -> None:
        """Validate config and set defaults."""
        if self.db_path is None:
            self.db_path = EMBER_HOME / "memory.db"
        elif str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path).expanduser()

        if self.retrieval_limit < 0:
            raise ValueError("retrieval_limit must be non-negative")
        if self.session_idle_timeout < 0:
            raise ValueError("session_idle_timeout must be non-negative")
        if self.max_response_tokens < 1:
            raise ValueError("max_response_tokens must be at least 1")

        # Fail early on invalid budget or summary settings.
        self.token_budget()
        self.summary_config()

    def token_budget(self) -> TokenBudget:
        return TokenBudget(
            total=self.total_tokens,
            system_fraction=self.system_fraction,
            history_fraction=self.history_fraction,
        )

    def response_tokens(self) -> int:
        """Tokens requested for a reply: the budget's response share, capped."""
        return min(self.token_budget().response, self.max_response_tokens)

    def summary_config(self) -> SummaryConfig:
        return SummaryConfig(
            message_threshold=self.message_threshold,
            token_threshold=self.token_threshold,
            protected_recent=self.protected_recent,
            max_batch_size=self.max_batch_size,
            max_summary_tokens=self.max_summary_tokens,
        )


# Config file sections and the MemoryConfig fields they may set.
_SECTIONS: dict[str, tuple[str, ...]] = {
    "memory": ("db_path", "retrieval_limit", "extract_facts"),
    "llm": ("model", "system_prompt", "max_response_tokens"),
    "context": ("total_tokens", "system_fraction", "history_fraction"),
    "session": ("session_idle_timeout",),
    "summary": (
        "message_threshold",
        "token_threshold",
        "protected_recent",
        "max_batch_size",
        "max_summary_tokens",
    ),
}

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "EMBER_DB_PATH": ("db_path", Path),
    "EMBER_MODEL": ("model", str),
    "EMBER_TOTAL_TOKENS": ("total_tokens", int),
    "EMBER_SESSION_TIMEOUT": ("session_idle_timeout", float),
    "EMBER_RETRIEVAL_LIMIT": ("retrieval_limit", int),
    "EMBER_MAX_RESPONSE_TOKENS": ("max_response_tokens", int),
}


def load_config(config_path: Path | None = None) -> MemoryConfig:
    """Load MemoryConfig from a JSON file plus environment overrides.

    The config file should have this structure (every key optional):
    ```json
    {
      "memory": {"db_path": "~/.ember/memory.db", "retrieval_limit": 10},
      "llm": {"model": "llama-3.1-70b-versatile", "max_response_tokens": 1024},
      "context": {"total_tokens": 100000, "system_fraction": 0.1, "history_fraction": 0.5},
      "session": {"session_idle_timeout": 14400},
      "summary": {"message_threshold": 30, "token_threshold": 4000}
    }
    ```

    A missing or unreadable file falls back to defaults.

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.

    Returns:
        MemoryConfig instance with loaded values.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    values: dict[str, Any] = {}

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
    else:
        try:
            with open(path, "r") as f:
                values = _parse_config(json.load(f))
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        except OSError as e:
            logger.warning("Cannot read %s: %s. Using defaults.", path, e)

    for env_name, (field_name, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if not raw:
            continue
        try:
            values[field_name] = cast(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_name, raw)

    return MemoryConfig(**values)


def _parse_config(data: Any) -> dict[str, Any]:
    """Flatten the sectioned JSON into MemoryConfig keyword arguments."""
    if not isinstance(data, dict):
        logger.warning("Config root must be an object, ignoring it")
        return {}

    values: dict[str, Any] = {}
    for section, fields in _SECTIONS.items():
        section_data = data.get(section, {})
        if not isinstance(section_data, dict):
            continue
        for name in fields:
            if name in section_data:
                values[name] = section_data[name]

    if "db_path" in values:
        values["db_path"] = Path(values["db_path"])
    return values


def save_config(config: MemoryConfig, config_path: Path | None = None) -> None:
    """Save MemoryConfig to a JSON file, writing only non-default values.

    Args:
        config: The config to save.
        config_path: Path to write to. Uses DEFAULT_CONFIG_PATH if None.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    defaults = MemoryConfig()
    data: dict[str, Any] = {}
    for section, fields in _SECTIONS.items():
        section_data = {}
        for name in fields:
            value = getattr(config, name)
            if value != getattr(defaults, name):
                section_data[name] = str(value) if isinstance(value, Path) else value
        if section_data:
            data[section] = section_data

    try:
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        raise
