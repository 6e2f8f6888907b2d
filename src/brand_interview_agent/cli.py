"""Command line entry-point for the brand interview agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable, List, Optional

from .assistant_client import AssistantIntegrationError
from .config import AppSettings
from .conversation_store import PersistenceError
from .observability import initialize_tracing
from .orchestrator import ConversationCompleteError
from .runs import RunError
from .sessions import TERMINATION_TOKENS, InterviewSession

CommandHandler = Callable[[AppSettings, argparse.Namespace], int]

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="brand-interview",
        description="Run a phased brand discovery interview with an assistant",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging (run polling, cancellations).",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    start_parser = subparsers.add_parser(
        "start",
        help="Create a new interview and chat in the terminal",
    )
    start_parser.add_argument(
        "--name",
        required=True,
        help="Brand name used in the opening turn",
    )
    start_parser.set_defaults(func=_handle_start)

    chat_parser = subparsers.add_parser(
        "chat",
        help="Resume an existing interview",
    )
    chat_parser.add_argument("id", help="Conversation identifier")
    chat_parser.set_defaults(func=_handle_chat)

    status_parser = subparsers.add_parser(
        "status",
        help="Show phase progress and available reports",
    )
    status_parser.add_argument("id", help="Conversation identifier")
    status_parser.set_defaults(func=_handle_status)

    export_parser = subparsers.add_parser(
        "export",
        help="Write collected reports to Markdown",
    )
    export_parser.add_argument("id", help="Conversation identifier")
    export_parser.add_argument(
        "--phase",
        help="Export a single phase report (default: all phases)",
    )
    export_parser.set_defaults(func=_handle_export)
    return parser.parse_args(argv)


def run_cli(argv: Optional[List[str]] = None) -> None:
    """Entry-point invoked from ``python -m brand_interview_agent``."""

    arg_list = list(argv) if argv is not None else sys.argv[1:]
    args = _parse_args(arg_list)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO
    )
    try:
        settings = AppSettings.load()
    except RuntimeError as exc:
        logging.error("Failed to load AppSettings: %s", exc)
        raise SystemExit(1) from exc
    initialize_tracing(endpoint=settings.otlp_endpoint)
    handler: CommandHandler = args.func
    raise SystemExit(handler(settings, args))


def _handle_start(settings: AppSettings, args: argparse.Namespace) -> int:
    try:
        session = InterviewSession.create(settings, args.name)
    except (AssistantIntegrationError, PersistenceError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1
    print(f"Conversation id: {session.conversation.id}")
    return asyncio.run(_chat_loop(session))


def _handle_chat(settings: AppSettings, args: argparse.Namespace) -> int:
    try:
        session = InterviewSession.resume(settings, args.id)
    except (AssistantIntegrationError, PersistenceError) as exc:
        print(f"Error: {exc}")
        return 1
    for message in session.conversation.messages:
        speaker = "Assistant" if message.role == "assistant" else "You"
        print(f"{speaker}: {message.content}")
    return asyncio.run(_chat_loop(session))


def _handle_status(settings: AppSettings, args: argparse.Namespace) -> int:
    try:
        session = InterviewSession.resume(settings, args.id)
    except (AssistantIntegrationError, PersistenceError) as exc:
        print(f"Error: {exc}")
        return 1
    snapshot = session.progress()
    conversation = session.conversation
    print(f"Brand: {conversation.subject_name}")
    print(f"Current phase: {conversation.current_phase}")
    print(f"Progress: {snapshot.total_percent:.0f}%")
    for phase in snapshot.phases:
        marker = " (report ready)" if phase.report_available else ""
        print(f"  - {phase.label}: {phase.status} {phase.percent:.0f}%{marker}")
    print(f"Last updated: {conversation.last_updated.isoformat()}")
    return 0


def _handle_export(settings: AppSettings, args: argparse.Namespace) -> int:
    try:
        session = InterviewSession.resume(settings, args.id)
        artifacts = session.export(only=args.phase)
    except (AssistantIntegrationError, PersistenceError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1
    print("Reports saved to:")
    print(f" - {artifacts.markdown_path}")
    return 0


async def _chat_loop(session: InterviewSession) -> int:
    try:
        opening = await session.kickoff()
    except (RunError, PersistenceError) as exc:
        logger.error("Unable to start the interview: %s", exc)
        print("Assistant: The interview could not be started. Try again.")
        return 1
    if opening:
        print()
        print(f"Assistant: {opening}")
    while not session.completed:
        answer = input("You: ")  # noqa: PLW1514 - intentional CLI input
        if answer.strip().lower() in TERMINATION_TOKENS:
            print(f"Progress saved. Resume with: chat {session.conversation.id}")
            return 0
        try:
            replies = await session.handle_user_message(answer)
        except ConversationCompleteError:
            break
        except (RunError, PersistenceError) as exc:
            logger.error("Turn failed: %s", exc)
            print(
                "Assistant: Something went wrong sending your answer. "
                "It has been kept; please try again."
            )
            continue
        for reply in replies:
            print()
            print(f"Assistant: {reply}")
    print()
    print(f"Interview complete. Export reports with: export {session.conversation.id}")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    run_cli()
