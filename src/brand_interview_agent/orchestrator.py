"""Drives interview turns through the assistant and tracks their outcome."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from .conversation import Conversation, Message
from .conversation_store import ConversationRepository
from .phases import (
    COMPLETE_PHASE,
    PHASE_PLAN,
    PhaseDefinition,
    PhaseStateMachine,
    ProgressSnapshot,
)
from .response_parser import ParsedResponse, ResponseParser
from .runs import RunCoordinator, Sleeper

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENING_TURN = (
    "Hello, I'm ready to begin the brand development process for {name}."
)

CLOSING_MESSAGE = (
    "Thank you! The brand interview is complete. Your Discovery, Messaging "
    "and Audience reports are ready; open the report page to download them."
)


class ConversationCompleteError(RuntimeError):
    """Raised when a turn is submitted to a finished interview."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry with a fixed delay between attempts."""

    attempts: int = 2
    delay_ms: int = 2000

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
        sleep: Sleeper = asyncio.sleep,
    ) -> T:
        for attempt in range(1, self.attempts + 1):
            try:
                return await operation()
            except Exception as exc:  # noqa: BLE001 - re-raised below
                if attempt >= self.attempts:
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying",
                    label,
                    attempt,
                    self.attempts,
                    exc,
                )
                await sleep(self.delay_ms / 1000)
        raise RuntimeError(f"{label} was not attempted")


class ConversationOrchestrator:
    """Composes run handling, parsing, phase state and persistence."""

    def __init__(
        self,
        *,
        coordinator: RunCoordinator,
        repository: ConversationRepository,
        parser: Optional[ResponseParser] = None,
        phases: Sequence[PhaseDefinition] = PHASE_PLAN,
        start_retry: RetryPolicy = RetryPolicy(),
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._coordinator = coordinator
        self._repository = repository
        self._parser = parser or ResponseParser()
        self._phases = list(phases)
        self._start_retry = start_retry
        self._sleep = sleep

    def new_conversation(self, subject_name: str) -> Conversation:
        """Create and persist an empty conversation for ``subject_name``."""

        conversation = Conversation(
            subject_name=subject_name.strip(),
            current_phase=self._phases[0].id,
        )
        self._persist(conversation)
        return conversation

    def state_for(self, conversation: Conversation) -> PhaseStateMachine:
        return PhaseStateMachine.restore(
            self._phases, conversation.current_phase, conversation.reports
        )

    def progress(self, conversation: Conversation) -> ProgressSnapshot:
        state = self.state_for(conversation)
        return state.progress(state.question_count(conversation.messages))

    async def start_conversation(
        self, conversation: Conversation
    ) -> Optional[Message]:
        """Open the interview; a no-op once the transcript has entries."""

        if conversation.messages:
            return None

        async def _attempt() -> Optional[Message]:
            if conversation.messages:
                # An earlier attempt got the reply but failed to save it.
                self._persist(conversation)
                return conversation.messages[-1]
            if not conversation.thread_id:
                conversation.thread_id = await self._coordinator.create_thread()
                self._persist(conversation)
            opening = OPENING_TURN.format(name=conversation.subject_name)
            return await self._exchange(conversation, opening)

        return await self._start_retry.run(
            _attempt, label="Conversation start", sleep=self._sleep
        )

    async def submit_user_turn(
        self, conversation: Conversation, content: str
    ) -> Optional[Message]:
        """Send a user answer and record whatever the assistant returns."""

        text = content.strip()
        if not text:
            return None
        if conversation.is_complete:
            raise ConversationCompleteError(
                f"Conversation {conversation.id} is already complete"
            )
        if not conversation.thread_id:
            raise RuntimeError(
                "Call start_conversation() before submitting user turns."
            )
        conversation.append("user", text, conversation.current_phase)
        self._persist(conversation)
        return await self._exchange(conversation, text)

    async def _exchange(
        self, conversation: Conversation, content: str
    ) -> Optional[Message]:
        thread_id = conversation.thread_id
        if thread_id is None:
            raise RuntimeError(f"Conversation {conversation.id} has no thread")
        handle = await self._coordinator.submit_turn(thread_id, content)
        await self._coordinator.await_completion(handle)
        raw_reply = await self._coordinator.latest_reply(thread_id)
        if raw_reply is None:
            logger.warning(
                "Run %s completed without an assistant reply", handle.run_id
            )
            return None
        parsed = self._parser.parse(raw_reply)
        reply = self._apply(conversation, parsed)
        self._persist(conversation)
        return reply

    def _apply(
        self, conversation: Conversation, parsed: ParsedResponse
    ) -> Optional[Message]:
        reply_phase = conversation.current_phase
        reply: Optional[Message] = None
        if parsed.visible_text:
            reply = conversation.append(
                "assistant", parsed.visible_text, reply_phase
            )
        if parsed.report_segments:
            self._route_reports(conversation, parsed.report_segments)
        return reply

    def _route_reports(
        self, conversation: Conversation, segments: List[str]
    ) -> None:
        state = self.state_for(conversation)
        for segment in segments:
            if state.is_complete():
                logger.warning(
                    "Ignoring report received after interview completion "
                    "for %s",
                    conversation.id,
                )
                break
            phase = state.current_phase
            following = state.record_report(phase, segment)
            logger.info(
                "Recorded %s report for %s; next phase: %s",
                phase,
                conversation.id,
                following or COMPLETE_PHASE,
            )
        conversation.reports = dict(state.reports)
        conversation.current_phase = state.current_phase
        if state.is_complete() and not conversation.is_complete:
            conversation.append("assistant", CLOSING_MESSAGE, COMPLETE_PHASE)
            conversation.completed_at = datetime.now(timezone.utc)

    def _persist(self, conversation: Conversation) -> None:
        conversation.touch()
        self._repository.save(conversation)
