"""Command-line tools for inspecting and maintaining the memory store.

Provides subcommands for store stats, listing and forgetting facts,
listing sessions, backups, and an interactive chat for manual testing.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from groq import AsyncGroq

from .config import MemoryConfig, load_config
from .engine import ConversationMemory
from .llm_client import GroqLLMClient
from .logging import configure_logger
from .memory import Database, FactStore, MemoryStoreError
from .session import SessionManager

CHAT_HELP = """
Commands:
  /exit, /quit  - Exit the chat
  /reset        - End the session and start a new one
  /help         - Show this help

Type your message and press Enter.
"""


def _load(args: argparse.Namespace) -> MemoryConfig:
    """Load config, applying the --db override."""
    config = load_config(Path(args.config) if args.config else None)
    if args.db:
        config.db_path = Path(args.db).expanduser()
    return config


def _open(args: argparse.Namespace) -> Database:
    config = _load(args)
    assert config.db_path is not None
    return Database.open(config.db_path)


def _format_fact_row(fact_id: int | None, category: str, confidence: float, content: str) -> str:
    if len(content) > 60:
        content = content[:57] + "..."
    return f"{fact_id!s:>5}  {category:<13} {confidence:>4.2f}  {content}"


def cmd_stats(args: argparse.Namespace) -> int:
    """Show schema version and row counts."""
    with _open(args) as db:
        facts = FactStore(db)
        sessions = db.query_one(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_active), 0) AS active FROM sessions"
        )
        messages = db.query_one("SELECT COUNT(*) AS n FROM messages")

        print(f"Store:          {db.path}")
        print(f"Schema version: {db.schema_version}")
        print(f"Facts:          {facts.count()} live, {facts.count(include_deleted=True)} total")
        print(f"Sessions:       {sessions['active']} active, {sessions['total']} total")
        print(f"Messages:       {messages['n']}")
    return 0


def cmd_facts(args: argparse.Namespace) -> int:
    """List stored facts."""
    with _open(args) as db:
        store = FactStore(db)
        facts = store.search(args.search) if args.search else store.get_all(include_deleted=args.all)

    if not facts:
        print("No facts stored.")
        return 0

    print(f"\n{'ID':>5}  {'Category':<13} {'Conf':>4}  Content")
    print("-" * 80)
    for fact in facts:
        row = _format_fact_row(fact.id, fact.category.value, fact.confidence, fact.content)
        print(row + ("  (deleted)" if fact.is_deleted else ""))

    print(f"\nTotal: {len(facts)} fact(s)")
    return 0


def cmd_forget(args: argparse.Namespace) -> int:
    """Soft-delete a fact."""
    with _open(args) as db:
        deleted = FactStore(db).soft_delete(args.id)

    if not deleted:
        print(f"Error: No live fact with id {args.id}.")
        return 1

    print(f"Forgot fact {args.id}.")
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    """List sessions for a conversation key."""
    with _open(args) as db:
        sessions = SessionManager(db).get_sessions(args.key)

    if not sessions:
        print(f"No sessions for '{args.key}'.")
        return 0

    for session in sessions:
        status = "active" if session.is_active else "ended"
        summary = "yes" if session.rolling_summary else "no"
        print(
            f"#{session.id:<5} {status:<7} started {session.started_at:%Y-%m-%d %H:%M}  "
            f"messages: {session.message_count:<5} summary: {summary}"
        )
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Write a consistent copy of the store."""
    with _open(args) as db:
        target = db.backup(Path(args.destination) if args.destination else None)

    if target is None:
        print("In-memory store, nothing to back up.")
        return 0

    print(f"Backup written to {target}")
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    """Chat with the assistant using the memory engine."""
    if not os.getenv("GROQ_API_KEY"):
        print("Error: GROQ_API_KEY is not set.")
        return 1
    return asyncio.run(_chat(_load(args), args.key))


async def _chat(config: MemoryConfig, conversation_key: str) -> int:
    assert config.db_path is not None
    llm = GroqLLMClient(AsyncGroq(api_key=os.getenv("GROQ_API_KEY")), model=config.model)

    with Database.open(config.db_path) as db:
        memory = ConversationMemory(db, llm, config, event_logger=configure_logger())
        print(CHAT_HELP)
        try:
            while True:
                try:
                    text = await asyncio.to_thread(input, "you> ")
                except EOFError:
                    break
                text = text.strip()
                if not text:
                    continue
                if text in ("/exit", "/quit"):
                    break
                if text == "/help":
                    print(CHAT_HELP)
                    continue
                if text == "/reset":
                    memory.reset(conversation_key)
                    print("Session reset.")
                    continue

                try:
                    reply = await memory.respond(conversation_key, text)
                except Exception as e:
                    print(f"Error: {e}")
                    continue
                print(f"ember> {reply}\n")
        finally:
            await memory.wait_idle()
            await memory.aclose()
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the ember CLI."""
    parser = argparse.ArgumentParser(
        prog="ember",
        description="Inspect and maintain the Ember memory store",
    )
    parser.add_argument("--db", help="Path to the memory database (overrides config)")
    parser.add_argument("--config", help="Path to config.json")

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    subparsers.add_parser("stats", help="Show store statistics")

    facts_parser = subparsers.add_parser("facts", help="List stored facts")
    facts_parser.add_argument(
        "-a", "--all",
        action="store_true",
        help="Include forgotten facts",
    )
    facts_parser.add_argument("-s", "--search", help="Only facts containing this text")

    forget_parser = subparsers.add_parser("forget", help="Forget a fact")
    forget_parser.add_argument("id", type=int, help="Fact id")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions for a conversation")
    sessions_parser.add_argument("key", help="Conversation key (phone number, email, ...)")

    backup_parser = subparsers.add_parser("backup", help="Back up the store")
    backup_parser.add_argument("destination", nargs="?", help="Backup file path")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat using memory")
    chat_parser.add_argument("--key", default="cli", help="Conversation key to use")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Run the CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "stats": cmd_stats,
        "facts": cmd_facts,
        "forget": cmd_forget,
        "sessions": cmd_sessions,
        "backup": cmd_backup,
        "chat": cmd_chat,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except MemoryStoreError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(run_cli())
