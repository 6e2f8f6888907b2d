"""Shared fixtures for the brand interview tests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from brand_interview_agent.conversation_store import ConversationRepository
from brand_interview_agent.orchestrator import (
    ConversationOrchestrator,
    RetryPolicy,
)
from brand_interview_agent.response_parser import ResponseParser
from brand_interview_agent.runs import (
    ActiveRunConflictError,
    RunAlreadyTerminalError,
    RunCoordinator,
    RunServiceError,
    RunSnapshot,
    RunStatus,
    ThreadMessage,
)


class FakeRunService:
    """In-memory stand-in for the assistant threads/runs API.

    Each created run walks through ``script`` (a list of statuses) one poll
    at a time; once the script reaches ``completed`` the next queued reply is
    posted to the thread as the newest assistant message.
    """

    def __init__(
        self,
        replies: Optional[List[str]] = None,
        script: Optional[Sequence[str]] = None,
    ) -> None:
        self.replies = list(replies or [])
        self.script = list(script or ["queued", "completed"])
        self.threads: Dict[str, List[ThreadMessage]] = {}
        self.runs: Dict[str, List[RunSnapshot]] = {}
        self._progress: Dict[str, List[RunStatus]] = {}
        self.calls: List[str] = []
        self.retrieve_calls = 0
        self.fail_create_message = 0
        self.fail_create_run = 0
        self.conflict_on_create = 0
        self.max_active_observed = 0

    def _run(self, thread_id: str, run_id: str) -> RunSnapshot:
        for run in self.runs[thread_id]:
            if run.id == run_id:
                return run
        raise RunServiceError(f"No run {run_id}")

    def add_stray_run(self, thread_id: str, status: str = "in_progress") -> str:
        runs = self.runs.setdefault(thread_id, [])
        run_id = f"run_stray_{len(runs)}"
        runs.insert(0, RunSnapshot(id=run_id, status=RunStatus(status)))
        self._progress[run_id] = [RunStatus(status)]
        return run_id

    def active_runs(self, thread_id: str) -> int:
        return sum(
            1
            for run in self.runs.get(thread_id, [])
            if not run.status.is_terminal
        )

    async def create_thread(self) -> str:
        thread_id = f"thread_{len(self.threads) + 1}"
        self.threads[thread_id] = []
        self.runs[thread_id] = []
        self.calls.append("create_thread")
        return thread_id

    async def create_message(
        self, thread_id: str, role: str, content: str
    ) -> None:
        self.calls.append("create_message")
        if self.fail_create_message:
            self.fail_create_message -= 1
            raise RunServiceError("message rejected")
        self.threads[thread_id].insert(
            0, ThreadMessage(role=role, text=content)
        )

    async def create_run(self, thread_id: str, assistant_id: str) -> RunSnapshot:
        self.calls.append("create_run")
        if self.conflict_on_create:
            self.conflict_on_create -= 1
            raise ActiveRunConflictError("Thread already has an active run")
        if self.fail_create_run:
            self.fail_create_run -= 1
            raise RunServiceError("run rejected")
        runs = self.runs.setdefault(thread_id, [])
        run_id = f"run_{len(runs) + 1}"
        snapshot = RunSnapshot(id=run_id, status=RunStatus.QUEUED)
        runs.insert(0, snapshot)
        self._progress[run_id] = [RunStatus(status) for status in self.script]
        self.max_active_observed = max(
            self.max_active_observed, self.active_runs(thread_id)
        )
        return RunSnapshot(id=run_id, status=snapshot.status)

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        self.retrieve_calls += 1
        run = self._run(thread_id, run_id)
        steps = self._progress.get(run_id, [])
        if steps:
            run.status = steps.pop(0)
            if run.status is RunStatus.COMPLETED and self.replies:
                self.threads[thread_id].insert(
                    0, ThreadMessage(role="assistant", text=self.replies.pop(0))
                )
        return RunSnapshot(id=run.id, status=run.status)

    async def list_runs(self, thread_id: str) -> List[RunSnapshot]:
        self.calls.append("list_runs")
        return [
            RunSnapshot(id=run.id, status=run.status)
            for run in self.runs.get(thread_id, [])
        ]

    async def cancel_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        self.calls.append("cancel_run")
        run = self._run(thread_id, run_id)
        if run.status.is_terminal:
            raise RunAlreadyTerminalError(
                f"Cannot cancel run with status '{run.status.value}'."
            )
        run.status = RunStatus.CANCELLING
        self._progress[run_id] = [RunStatus.CANCELLING, RunStatus.CANCELLED]
        return RunSnapshot(id=run.id, status=run.status)

    async def list_messages(self, thread_id: str) -> List[ThreadMessage]:
        return list(self.threads.get(thread_id, []))


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def service() -> FakeRunService:
    return FakeRunService()


@pytest.fixture
def coordinator(service: FakeRunService) -> RunCoordinator:
    return RunCoordinator(
        service,
        "asst_test",
        poll_interval_ms=0,
        cancel_settle_ms=0,
        sleep=no_sleep,
    )


@pytest.fixture
def repository(tmp_path: Path) -> ConversationRepository:
    return ConversationRepository(tmp_path / "conversations", redis_url=None)


@pytest.fixture
def orchestrator(
    coordinator: RunCoordinator, repository: ConversationRepository
) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        coordinator=coordinator,
        repository=repository,
        parser=ResponseParser(),
        start_retry=RetryPolicy(attempts=2, delay_ms=0),
        sleep=no_sleep,
    )
