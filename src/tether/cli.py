"""Operator console for Tether.

``tether chat`` simulates an inbound channel against a local database so
operators can watch memory, summaries and notes evolve turn by turn.
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import find_dotenv, load_dotenv

from .config import _config_from_env
from .engine import ConversationEngine, TurnResult
from .errors import TetherError
from .logging import configure_logger
from .models import NoteTarget
from .store import ConversationStore

BANNER = """
╔══════════════════════════════════════════╗
║              Tether v0.1.0               ║
║      Conversation memory console         ║
╚══════════════════════════════════════════╝

Commands:
  /note [session|contact] <category> <priority> <text>
                  - Pin an operator note (default: contact)
  /notes          - List active notes
  /archive <id>   - Archive a note
  /memory         - Show the contact's memory
  /sweep          - Mark idle sessions dormant
  /help           - Show this help
  /exit, /quit    - Exit the console

Type a message as the contact and press Enter.
"""


class ChatConsole:
    """Interactive loop acting as one contact on one channel."""

    def __init__(
        self,
        engine: ConversationEngine,
        organization: str,
        channel: str,
        identifier: str,
    ) -> None:
        self.engine = engine
        self.organization = organization
        self.channel = channel
        self.identifier = identifier
        self.session_id: str | None = None
        self.contact_id: str | None = None

    def _format_result(self, result: TurnResult) -> str:
        output = ["\n" + "─" * 40]
        if result.is_reactivation:
            output.append("↺ reactivated conversation")
        output.append(result.text)
        output.append("─" * 40)
        if not result.delivered:
            output.append(f"⚠ Fallback reply ({result.failure})")
        return "\n".join(output)

    async def process_message(self, text: str) -> TurnResult:
        result = await self.engine.handle_message(
            self.organization, self.channel, self.identifier, text
        )
        if result.session_id:
            self.session_id = result.session_id
            self.contact_id = result.contact_id
        print(self._format_result(result))
        return result

    def _add_note(self, args: list[str]) -> None:
        kind = "contact"
        if args and args[0].lower() in ("session", "contact"):
            kind = args.pop(0).lower()
        if len(args) < 3:
            print("Usage: /note [session|contact] <category> <priority> <text>")
            return
        target_id = self.session_id if kind == "session" else self.contact_id
        if target_id is None:
            print("Send a message first so there is a contact and session.")
            return

        category, priority, text = args[0], args[1], " ".join(args[2:])
        try:
            note_id = self.engine.add_operator_note(
                NoteTarget(kind, target_id), text, category, int(priority), author="console"
            )
        except ValueError as e:
            print(f"❌ {e}")
            return
        print(f"✓ Note {note_id} pinned to {kind}")

    def _list_notes(self) -> None:
        targets = []
        if self.session_id:
            targets.append(NoteTarget.session(self.session_id))
        if self.contact_id:
            targets.append(NoteTarget.contact(self.contact_id))
        if not targets:
            print("No notes yet.")
            return
        for target in targets:
            notes = self.engine.list_operator_notes(target)
            print(f"\n{target.kind} notes ({len(notes)}):")
            for note in notes:
                print(f"  {note.id}  p{note.priority}  {note.render()}")

    def _show_memory(self) -> None:
        if self.contact_id is None:
            print("No contact yet.")
            return
        memory = self.engine.get_contact_memory(self.contact_id)
        print(json.dumps(memory, indent=2, ensure_ascii=False))

    async def handle_command(self, command: str) -> bool:
        """Handle a console command. Returns False to exit."""
        parts = command.strip().split()
        cmd, args = parts[0].lower(), parts[1:]

        if cmd in ("/exit", "/quit", "exit", "quit"):
            print("\nWaiting for background passes...")
            await self.engine.drain()
            print("👋 Goodbye!")
            return False

        try:
            if cmd == "/note":
                self._add_note(args)
            elif cmd == "/notes":
                self._list_notes()
            elif cmd == "/archive":
                if not args:
                    print("Usage: /archive <note_id>")
                else:
                    self.engine.archive_operator_note(args[0])
                    print(f"✓ Archived {args[0]}")
            elif cmd == "/memory":
                await self.engine.drain()
                self._show_memory()
            elif cmd == "/sweep":
                count = await self.engine.sweep_dormant()
                print(f"✓ {count} session(s) went dormant")
            elif cmd == "/help":
                print(BANNER)
            else:
                print(f"Unknown command: {cmd}")
        except TetherError as e:
            print(f"❌ {e}")
        return True

    async def run(self) -> None:
        """Run the interactive console."""
        print(BANNER)
        print(f"{self.organization} / {self.channel} / {self.identifier}\n")

        try:
            while True:
                try:
                    user_input = input("contact> ").strip()
                    if not user_input:
                        continue

                    if user_input.startswith("/") or user_input.lower() in ("exit", "quit"):
                        if not await self.handle_command(user_input):
                            break
                        continue

                    try:
                        await self.process_message(user_input)
                    except TetherError as e:
                        print(f"\n❌ {e}")

                except (KeyboardInterrupt, EOFError):
                    print("\n👋 Goodbye!")
                    break
        finally:
            await self.engine.close()


def cmd_chat(args: argparse.Namespace) -> int:
    """Run the interactive chat console."""
    if not os.getenv("GROQ_API_KEY"):
        print("❌ Error: GROQ_API_KEY environment variable not set")
        print("Please set it in your .env file or environment")
        return 1

    config = _config_from_env()
    if args.db:
        config.db_path = args.db
    engine = ConversationEngine(config)
    console = ChatConsole(engine, args.org, args.channel, args.identifier)
    asyncio.run(console.run())
    return 0


def cmd_memory(args: argparse.Namespace) -> int:
    """Print a contact's memory as JSON."""
    config = _config_from_env()
    if args.db:
        config.db_path = args.db
    store = ConversationStore(config.db_path)
    store.init_db()
    try:
        memory = store.get_contact(args.contact_id).memory
    except TetherError as e:
        print(f"Error: {e}")
        return 1
    finally:
        store.close()
    print(json.dumps(memory, indent=2, ensure_ascii=False))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the tether CLI."""
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Conversation memory engine console",
    )
    parser.add_argument("--db", help="SQLite database path (default: $TETHER_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    chat_parser = subparsers.add_parser("chat", help="Chat as a contact on a channel")
    chat_parser.add_argument("--org", default="demo", help="Organization id")
    chat_parser.add_argument("--channel", default="sms", help="Channel name")
    chat_parser.add_argument(
        "--from",
        dest="identifier",
        default="+15555550100",
        help="Contact identifier on the channel",
    )

    memory_parser = subparsers.add_parser("memory", help="Show a contact's memory")
    memory_parser.add_argument("contact_id", help="Contact id")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``tether`` console script."""
    load_dotenv(find_dotenv(usecwd=True))
    configure_logger()

    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "chat": cmd_chat,
        "memory": cmd_memory,
    }
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
