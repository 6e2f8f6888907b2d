"""Shared session wiring for brand interviews."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .assistant_client import AssistantRunService
from .config import AppSettings
from .conversation import Conversation
from .conversation_store import ConversationRepository
from .orchestrator import ConversationOrchestrator, RetryPolicy
from .phases import ProgressSnapshot
from .report_export import ReportArtifacts, export_reports
from .response_parser import ResponseParser
from .runs import RunCoordinator, RunService

TERMINATION_TOKENS = {"exit", "quit", "[end]"}


def build_orchestrator(
    settings: AppSettings,
    *,
    service: Optional[RunService] = None,
    repository: Optional[ConversationRepository] = None,
) -> ConversationOrchestrator:
    """Assemble an orchestrator from application settings."""

    coordinator = RunCoordinator(
        service or AssistantRunService(settings.model),
        settings.model.assistant_id,
        poll_interval_ms=settings.runs.poll_interval_ms,
        max_attempts=settings.runs.max_attempts,
        cancel_settle_ms=settings.runs.cancel_settle_ms,
    )
    return ConversationOrchestrator(
        coordinator=coordinator,
        repository=repository
        or ConversationRepository(settings.data_dir, settings.redis_url),
        parser=ResponseParser(settings.promo_links),
        start_retry=RetryPolicy(delay_ms=settings.runs.start_retry_delay_ms),
    )


@dataclass(slots=True)
class InterviewSession:
    """Binds one conversation to the orchestrator that drives it."""

    settings: AppSettings
    orchestrator: ConversationOrchestrator
    conversation: Conversation

    @classmethod
    def create(
        cls,
        settings: AppSettings,
        subject_name: str,
        *,
        orchestrator: Optional[ConversationOrchestrator] = None,
    ) -> "InterviewSession":
        if not subject_name.strip():
            raise ValueError("A brand name is required to start an interview.")
        orchestrator = orchestrator or build_orchestrator(settings)
        return cls(
            settings=settings,
            orchestrator=orchestrator,
            conversation=orchestrator.new_conversation(subject_name),
        )

    @classmethod
    def resume(
        cls,
        settings: AppSettings,
        conversation_id: str,
        *,
        orchestrator: Optional[ConversationOrchestrator] = None,
        repository: Optional[ConversationRepository] = None,
    ) -> "InterviewSession":
        repository = repository or ConversationRepository(
            settings.data_dir, settings.redis_url
        )
        orchestrator = orchestrator or build_orchestrator(
            settings, repository=repository
        )
        return cls(
            settings=settings,
            orchestrator=orchestrator,
            conversation=repository.load(conversation_id),
        )

    @property
    def completed(self) -> bool:
        return self.conversation.is_complete

    async def kickoff(self) -> Optional[str]:
        """Start the interview and return the opening assistant message."""

        message = await self.orchestrator.start_conversation(self.conversation)
        return message.content if message else None

    async def handle_user_message(self, user_text: str) -> List[str]:
        """Process a user answer and return assistant utterances."""

        updates: List[str] = []
        before = len(self.conversation.messages)
        await self.orchestrator.submit_user_turn(self.conversation, user_text)
        for message in self.conversation.messages[before:]:
            if message.role == "assistant":
                updates.append(message.content)
        return updates

    def progress(self) -> ProgressSnapshot:
        return self.orchestrator.progress(self.conversation)

    def export(self, *, only: Optional[str] = None) -> ReportArtifacts:
        return export_reports(
            self.conversation, self.settings.output_dir, only=only
        )
