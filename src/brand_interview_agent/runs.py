"""Lifecycle management for runs against the assistant service.

A run is one asynchronous invocation of the assistant on a thread. The
service executes it out of band, so the only way to learn its outcome is to
poll. :class:`RunCoordinator` owns that loop together with the cleanup of
stray runs: the service refuses a second run while a thread still has one
outstanding, so every submission first observes and cancels whatever is
left over.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_CANCEL_SETTLE_MS = 2000
CANCEL_CONFIRM_ATTEMPTS = 10


class RunStatus(str, Enum):
    """Statuses reported by the service for a run."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @classmethod
    def from_string(cls, status: str) -> "RunStatus":
        normalized = status.strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        raise ValueError(f"Unsupported run status: {status}")

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.EXPIRED,
        RunStatus.INCOMPLETE,
    }
)

FAILED_STATUSES = frozenset(
    {RunStatus.FAILED, RunStatus.EXPIRED, RunStatus.INCOMPLETE}
)


class RunError(RuntimeError):
    """Base class for run lifecycle failures."""


class RunCreationError(RunError):
    """Raised when the service rejects a user turn or run submission."""


class RunTimeoutError(RunError):
    """Raised when a run does not reach a terminal state in time."""


class RunFailedError(RunError):
    """Raised when a run ends as failed, expired or incomplete."""

    def __init__(self, status: RunStatus, detail: Optional[str] = None):
        message = f"Run {status.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status
        self.detail = detail


class RunCancelledError(RunError):
    """Raised when a run is cancelled before producing a reply."""


class RunStatusError(RunError):
    """Raised when the service cannot report on or cancel a run."""


class RunServiceError(RuntimeError):
    """Raised by service adapters for any rejected request."""


class RunAlreadyTerminalError(RunServiceError):
    """Raised when cancelling a run that already finished."""


class ActiveRunConflictError(RunServiceError):
    """Raised when a run is created while another one is still active."""


@dataclass(slots=True)
class RunSnapshot:
    """Status of a run as last observed on the service."""

    id: str
    status: RunStatus
    last_error: Optional[str] = None


@dataclass(slots=True)
class ThreadMessage:
    """Text content of a message stored on a thread."""

    role: str
    text: str


@dataclass(slots=True)
class RunHandle:
    """Reference to a submitted run."""

    thread_id: str
    run_id: str
    status: RunStatus


class RunService(Protocol):
    """Subset of the assistant service the coordinator relies on."""

    async def create_thread(self) -> str: ...

    async def create_message(
        self, thread_id: str, role: str, content: str
    ) -> None: ...

    async def create_run(
        self, thread_id: str, assistant_id: str
    ) -> RunSnapshot: ...

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot: ...

    async def list_runs(self, thread_id: str) -> Sequence[RunSnapshot]: ...

    async def cancel_run(self, thread_id: str, run_id: str) -> RunSnapshot: ...

    async def list_messages(self, thread_id: str) -> Sequence[ThreadMessage]: ...


class RunCoordinator:
    """Submits turns and drives each resulting run to a terminal state."""

    def __init__(
        self,
        service: RunService,
        assistant_id: str,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cancel_settle_ms: int = DEFAULT_CANCEL_SETTLE_MS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._service = service
        self._assistant_id = assistant_id
        self._poll_interval_ms = poll_interval_ms
        self._max_attempts = max_attempts
        self._cancel_settle_ms = cancel_settle_ms
        self._sleep = sleep

    async def create_thread(self) -> str:
        try:
            thread_id = await self._service.create_thread()
        except RunServiceError as exc:
            raise RunCreationError(f"Unable to create thread: {exc}") from exc
        logger.info("Created assistant thread %s", thread_id)
        return thread_id

    async def submit_turn(self, thread_id: str, content: str) -> RunHandle:
        """Append a user turn and start exactly one run for it."""

        await self.cancel_stray_runs(thread_id)
        try:
            await self._service.create_message(thread_id, "user", content)
        except RunServiceError as exc:
            raise RunCreationError(
                f"Unable to append user turn to thread {thread_id}: {exc}"
            ) from exc
        try:
            snapshot = await self._service.create_run(
                thread_id, self._assistant_id
            )
        except ActiveRunConflictError:
            logger.info(
                "Thread %s still has an active run; cancelling and retrying.",
                thread_id,
            )
            await self.cancel_stray_runs(thread_id)
            try:
                snapshot = await self._service.create_run(
                    thread_id, self._assistant_id
                )
            except RunServiceError as exc:
                raise RunCreationError(
                    f"Unable to create run on thread {thread_id}: {exc}"
                ) from exc
        except RunServiceError as exc:
            raise RunCreationError(
                f"Unable to create run on thread {thread_id}: {exc}"
            ) from exc
        logger.debug(
            "Submitted run %s on thread %s (%s)",
            snapshot.id,
            thread_id,
            snapshot.status.value,
        )
        return RunHandle(
            thread_id=thread_id, run_id=snapshot.id, status=snapshot.status
        )

    async def await_completion(
        self,
        handle: RunHandle,
        *,
        poll_interval_ms: Optional[int] = None,
        max_attempts: Optional[int] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> RunStatus:
        """Poll ``handle`` until it completes, fails or runs out of attempts."""

        interval = (
            self._poll_interval_ms
            if poll_interval_ms is None
            else poll_interval_ms
        )
        ceiling = self._max_attempts if max_attempts is None else max_attempts
        for attempt in range(1, ceiling + 1):
            if abort is not None and abort.is_set():
                await self._abort_run(handle)
                raise RunCancelledError(
                    f"Run {handle.run_id} aborted by caller"
                )
            try:
                snapshot = await self._service.retrieve_run(
                    handle.thread_id, handle.run_id
                )
            except RunServiceError as exc:
                raise RunStatusError(
                    f"Unable to poll run {handle.run_id}: {exc}"
                ) from exc
            handle.status = snapshot.status
            logger.debug(
                "Run %s poll %d/%d: %s",
                handle.run_id,
                attempt,
                ceiling,
                snapshot.status.value,
            )
            if snapshot.status is RunStatus.COMPLETED:
                return snapshot.status
            if snapshot.status in FAILED_STATUSES:
                raise RunFailedError(snapshot.status, snapshot.last_error)
            if snapshot.status is RunStatus.CANCELLED:
                raise RunCancelledError(f"Run {handle.run_id} was cancelled")
            if attempt < ceiling:
                await self._sleep(interval / 1000)
        raise RunTimeoutError(
            f"Run {handle.run_id} did not finish after {ceiling} polls"
        )

    async def cancel_stray_runs(self, thread_id: str) -> List[str]:
        """Cancel every non-terminal run on ``thread_id``.

        Returns the identifiers of the runs that were cancelled. Runs that
        finish on their own between listing and cancelling are skipped.
        """

        try:
            runs = await self._service.list_runs(thread_id)
        except RunServiceError as exc:
            raise RunStatusError(
                f"Unable to list runs on thread {thread_id}: {exc}"
            ) from exc
        stray = [run for run in runs if not run.status.is_terminal]
        if not stray:
            return []
        cancelled: List[str] = []
        for run in stray:
            logger.info(
                "Cancelling stray run %s on thread %s (%s)",
                run.id,
                thread_id,
                run.status.value,
            )
            try:
                await self._service.cancel_run(thread_id, run.id)
            except RunAlreadyTerminalError:
                logger.debug("Run %s already finished", run.id)
                continue
            except RunServiceError as exc:
                raise RunStatusError(
                    f"Unable to cancel run {run.id}: {exc}"
                ) from exc
            await self._confirm_cancelled(thread_id, run.id)
            cancelled.append(run.id)
        if cancelled and self._cancel_settle_ms > 0:
            await self._sleep(self._cancel_settle_ms / 1000)
        return cancelled

    async def latest_reply(self, thread_id: str) -> Optional[str]:
        """Return the newest message text if the assistant authored it."""

        try:
            messages = await self._service.list_messages(thread_id)
        except RunServiceError as exc:
            raise RunStatusError(
                f"Unable to read messages on thread {thread_id}: {exc}"
            ) from exc
        if not messages:
            return None
        newest = messages[0]
        if newest.role != "assistant":
            logger.warning(
                "Newest message on thread %s is from %s, not the assistant",
                thread_id,
                newest.role,
            )
            return None
        return newest.text

    async def _confirm_cancelled(self, thread_id: str, run_id: str) -> None:
        for attempt in range(CANCEL_CONFIRM_ATTEMPTS):
            try:
                snapshot = await self._service.retrieve_run(thread_id, run_id)
            except RunServiceError as exc:
                raise RunStatusError(
                    f"Unable to confirm cancellation of run {run_id}: {exc}"
                ) from exc
            if snapshot.status.is_terminal:
                return
            if attempt < CANCEL_CONFIRM_ATTEMPTS - 1:
                await self._sleep(self._poll_interval_ms / 1000)
        raise RunTimeoutError(
            f"Run {run_id} did not leave the cancelling state"
        )

    async def _abort_run(self, handle: RunHandle) -> None:
        try:
            await self._service.cancel_run(handle.thread_id, handle.run_id)
        except RunAlreadyTerminalError:
            return
        except RunServiceError as exc:
            raise RunStatusError(
                f"Unable to abort run {handle.run_id}: {exc}"
            ) from exc
        handle.status = RunStatus.CANCELLING
