"""
cli.py — Command-line interface for the Ticket Triage Agent.

Usage:
    # Single message: analyse, search and print the outcome
    python -m triage_agent.cli --query "checkout button broken on mobile"

    # Attach screenshots
    python -m triage_agent.cli -q "login page is blank" -f https://files.example.com/shot.png

    # Interactive mode: simulates one chat channel in the terminal.
    #   plain text      → post a message (replies stay in the current thread)
    #   /<action>       → click a button from the last reply, e.g. /confirm
    #   /new            → start a new top-level thread
    python -m triage_agent.cli
"""

import argparse
import asyncio
import textwrap
import uuid

# ── Bootstrap logging before any other project imports ────────────────────────
from triage_agent.logging_config import setup_logging
setup_logging("WARNING")

from triage_agent.config import check_required_settings
from triage_agent.errors import ConfigurationError
from triage_agent.llm.parsing import RatedTicket, format_rated_tickets
from triage_agent.services.triage_service import TriageService
from triage_agent.session.machine import (
    Action,
    ActionEvent,
    Button,
    ConversationController,
    MessageEvent,
    Reply,
)

_BANNER = """
╔══════════════════════════════════════════════════════════╗
║   Ticket Triage Agent — terminal chat                    ║
║   Type a message, /<action> to click, /new, Ctrl+C quit  ║
╚══════════════════════════════════════════════════════════╝
"""

_DIVIDER = "─" * 60
_CHANNEL = "cli"
_USER = "cli-user"


def print_message(text: str) -> None:
    for paragraph in text.splitlines() or [""]:
        for line in textwrap.wrap(paragraph, width=78) or [""]:
            print(f"    {line}")


class TerminalResponder:
    """Prints replies as they arrive and remembers the latest buttons."""

    def __init__(self) -> None:
        self.buttons: dict[Action, Button] = {}

    async def say(self, reply: Reply) -> None:
        print(f"\n🤖  [{reply.thread_id[:8]}]")
        print_message(reply.text)
        if reply.buttons:
            self.buttons = {b.action_id: b for b in reply.buttons}
            print("    " + "  ".join(f"[/{b.action_id.value}] {b.label}" for b in reply.buttons))


def print_response(response: dict) -> None:
    """Pretty-print a one-shot triage response to stdout."""
    print(f"\n{_DIVIDER}")
    error = response.get("error")
    if error:
        print(f"\n⚠️   ERROR:  {error}")
    else:
        print(f"\n🔧  TOOL:        {response.get('tool')}")
        print(f"    PARAMETERS:  {response.get('parameters')}")
        matches = response.get("matches") or []
        if matches:
            print(f"\n📌  RELATED TICKETS ({len(matches)}):")
            for line in format_rated_tickets([RatedTicket.model_validate(m) for m in matches]).splitlines():
                print(f"    {line}")
        else:
            print("\n📌  No closely matching tickets.")
    metrics = response.get("metrics", {})
    if "total_service_latency_s" in metrics:
        print(f"\n⏱️   TIMING:  {metrics['total_service_latency_s']:.2f}s")
    print(f"\n{_DIVIDER}\n")


async def run_once(service: TriageService, query: str, files: list[str]) -> None:
    async def announce(message: str) -> None:
        print()
        print_message(message)

    response = await service.find_issues(query, files, announce)
    print_response(response)


async def run_interactive(service: TriageService) -> None:
    controller = ConversationController(service)
    responder = TerminalResponder()
    thread_id: str | None = None
    print(_BANNER)

    while True:
        line = (await asyncio.to_thread(input, "💬 You: ")).strip()
        if not line:
            continue
        if line.lower() in {"exit", "quit"}:
            print("Goodbye!")
            return
        if line == "/new":
            thread_id = None
            print("    (new thread)")
            continue

        if line.startswith("/"):
            name = line[1:]
            try:
                action = Action(name)
            except ValueError:
                print(f"    Unknown action {name!r}")
                continue
            if thread_id is None:
                print("    No active thread — post a message first.")
                continue
            button = responder.buttons.get(action)
            await controller.handle_action(
                ActionEvent(
                    action_id=action,
                    user_id=_USER,
                    channel_id=_CHANNEL,
                    thread_id=thread_id,
                    value=button.value if button else {},
                ),
                responder,
            )
            continue

        message_id = uuid.uuid4().hex
        await controller.handle_message(
            MessageEvent(
                user_id=_USER,
                channel_id=_CHANNEL,
                message_id=message_id,
                thread_id=thread_id,
                text=line,
            ),
            responder,
        )
        thread_id = thread_id or message_id


async def _main_async(args: argparse.Namespace) -> None:
    service = TriageService()
    try:
        if args.query:
            await run_once(service, args.query, args.file or [])
        else:
            await run_interactive(service)
    finally:
        await service.client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Ticket Triage Agent — find related issue-tracker tickets"
    )
    parser.add_argument(
        "--query", "-q",
        type=str,
        default=None,
        help="Single message to triage. If omitted, enters interactive mode.",
    )
    parser.add_argument(
        "--file", "-f",
        action="append",
        help="Attachment URL (repeatable). Only used with --query.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING"],
        help="Logging verbosity (default: WARNING)",
    )
    args = parser.parse_args()

    if args.log_level != "WARNING":
        setup_logging(args.log_level)

    try:
        check_required_settings()
    except ConfigurationError as exc:
        parser.exit(2, f"❌  {exc}\n")

    try:
        asyncio.run(_main_async(args))
    except (KeyboardInterrupt, EOFError):
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
