import asyncio

import pytest

from conftest import FakeRunService, no_sleep

from brand_interview_agent.runs import (
    CANCEL_CONFIRM_ATTEMPTS,
    RunCancelledError,
    RunCoordinator,
    RunCreationError,
    RunFailedError,
    RunHandle,
    RunServiceError,
    RunStatus,
    RunStatusError,
    RunTimeoutError,
)


def _coordinator(service: FakeRunService, **kwargs) -> RunCoordinator:
    kwargs.setdefault("poll_interval_ms", 0)
    kwargs.setdefault("cancel_settle_ms", 0)
    return RunCoordinator(service, "asst_test", sleep=no_sleep, **kwargs)


def _submit(service: FakeRunService, coordinator: RunCoordinator) -> RunHandle:
    thread_id = asyncio.run(service.create_thread())
    return asyncio.run(coordinator.submit_turn(thread_id, "Hi"))


def test_await_completion_polls_until_completed() -> None:
    service = FakeRunService(
        script=["queued", "in_progress", "in_progress", "completed"]
    )
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)

    status = asyncio.run(
        coordinator.await_completion(handle, poll_interval_ms=0)
    )

    assert status is RunStatus.COMPLETED
    assert service.retrieve_calls == 4
    assert handle.status is RunStatus.COMPLETED


def test_await_completion_times_out_after_max_attempts() -> None:
    service = FakeRunService(script=["in_progress"])
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)

    with pytest.raises(RunTimeoutError):
        asyncio.run(coordinator.await_completion(handle, max_attempts=3))

    assert service.retrieve_calls == 3


def test_await_completion_sleeps_between_polls_only() -> None:
    delays = []

    async def record(seconds: float) -> None:
        delays.append(seconds)

    service = FakeRunService(script=["queued", "in_progress", "completed"])
    coordinator = RunCoordinator(
        service, "asst_test", poll_interval_ms=250, sleep=record
    )
    handle = _submit(service, coordinator)

    asyncio.run(coordinator.await_completion(handle))

    assert delays == [0.25, 0.25]


@pytest.mark.parametrize("status", ["failed", "expired", "incomplete"])
def test_await_completion_raises_on_failed_statuses(status: str) -> None:
    service = FakeRunService(script=["queued", status])
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)

    with pytest.raises(RunFailedError) as excinfo:
        asyncio.run(coordinator.await_completion(handle))

    assert excinfo.value.status is RunStatus(status)


def test_await_completion_raises_when_cancelled() -> None:
    service = FakeRunService(script=["in_progress", "cancelled"])
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)

    with pytest.raises(RunCancelledError):
        asyncio.run(coordinator.await_completion(handle))


def test_await_completion_honours_abort_event() -> None:
    service = FakeRunService(script=["in_progress"])
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)
    abort = asyncio.Event()
    abort.set()

    with pytest.raises(RunCancelledError):
        asyncio.run(coordinator.await_completion(handle, abort=abort))

    assert "cancel_run" in service.calls
    assert service.retrieve_calls == 0


def test_submit_turn_cancels_stray_run_first() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())
    stray = service.add_stray_run(thread_id)

    handle = asyncio.run(coordinator.submit_turn(thread_id, "Next answer"))

    statuses = {run.id: run.status for run in service.runs[thread_id]}
    assert statuses[stray] is RunStatus.CANCELLED
    assert handle.run_id != stray
    assert service.active_runs(thread_id) == 1
    assert service.max_active_observed == 1
    assert service.calls.index("cancel_run") < service.calls.index(
        "create_message"
    )


def test_cancel_stray_runs_is_a_noop_without_active_runs(
    coordinator: RunCoordinator, service: FakeRunService
) -> None:
    thread_id = asyncio.run(service.create_thread())

    assert asyncio.run(coordinator.cancel_stray_runs(thread_id)) == []
    assert "cancel_run" not in service.calls


def test_cancel_stray_runs_swallows_already_finished_runs() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())
    stray = service.add_stray_run(thread_id)

    original_cancel = service.cancel_run

    async def finish_then_cancel(thread: str, run_id: str):
        service._run(thread, run_id).status = RunStatus.COMPLETED
        return await original_cancel(thread, run_id)

    service.cancel_run = finish_then_cancel  # type: ignore[method-assign]

    assert asyncio.run(coordinator.cancel_stray_runs(thread_id)) == []
    assert service._run(thread_id, stray).status is RunStatus.COMPLETED


def test_cancel_stray_runs_waits_for_cancelling_to_settle() -> None:
    delays = []

    async def record(seconds: float) -> None:
        delays.append(seconds)

    service = FakeRunService()
    coordinator = RunCoordinator(
        service,
        "asst_test",
        poll_interval_ms=100,
        cancel_settle_ms=2000,
        sleep=record,
    )
    thread_id = asyncio.run(service.create_thread())
    stray = service.add_stray_run(thread_id, status="queued")

    cancelled = asyncio.run(coordinator.cancel_stray_runs(thread_id))

    assert cancelled == [stray]
    assert delays == [0.1, 2.0]


def test_submit_turn_retries_once_after_active_run_conflict() -> None:
    service = FakeRunService()
    service.conflict_on_create = 1
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())

    handle = asyncio.run(coordinator.submit_turn(thread_id, "Hi"))

    assert handle.run_id == "run_1"
    assert service.calls.count("create_run") == 2


def test_submit_turn_wraps_service_rejection() -> None:
    service = FakeRunService()
    service.fail_create_run = 1
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())

    with pytest.raises(RunCreationError):
        asyncio.run(coordinator.submit_turn(thread_id, "Hi"))


def test_submit_turn_wraps_rejected_user_message() -> None:
    service = FakeRunService()
    service.fail_create_message = 1
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())

    with pytest.raises(RunCreationError):
        asyncio.run(coordinator.submit_turn(thread_id, "Hi"))
    assert "create_run" not in service.calls


def test_latest_reply_returns_newest_assistant_text() -> None:
    service = FakeRunService(replies=["Welcome aboard."])
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)
    asyncio.run(coordinator.await_completion(handle))

    assert asyncio.run(coordinator.latest_reply(handle.thread_id)) == (
        "Welcome aboard."
    )


def test_latest_reply_ignores_user_messages() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())
    asyncio.run(service.create_message(thread_id, "user", "Hello"))

    assert asyncio.run(coordinator.latest_reply(thread_id)) is None


def test_run_status_from_string_rejects_unknown_values() -> None:
    assert RunStatus.from_string(" In_Progress ") is RunStatus.IN_PROGRESS
    with pytest.raises(ValueError):
        RunStatus.from_string("paused")


def test_cancel_stray_runs_propagates_other_cancel_failures() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())
    service.add_stray_run(thread_id)

    async def reject(thread: str, run_id: str):
        raise RunServiceError("503 upstream")

    service.cancel_run = reject  # type: ignore[method-assign]

    with pytest.raises(RunStatusError) as excinfo:
        asyncio.run(coordinator.cancel_stray_runs(thread_id))

    assert isinstance(excinfo.value.__cause__, RunServiceError)


def test_cancel_stray_runs_times_out_when_cancel_never_settles() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    thread_id = asyncio.run(service.create_thread())
    stray = service.add_stray_run(thread_id)
    original_cancel = service.cancel_run

    async def stuck_cancel(thread: str, run_id: str):
        snapshot = await original_cancel(thread, run_id)
        service._progress[run_id] = [RunStatus.CANCELLING]
        return snapshot

    service.cancel_run = stuck_cancel  # type: ignore[method-assign]

    with pytest.raises(RunTimeoutError):
        asyncio.run(coordinator.cancel_stray_runs(thread_id))

    assert service.retrieve_calls == CANCEL_CONFIRM_ATTEMPTS
    assert service._run(thread_id, stray).status is RunStatus.CANCELLING


def test_await_completion_wraps_polling_failures() -> None:
    service = FakeRunService()
    coordinator = _coordinator(service)
    handle = _submit(service, coordinator)

    async def unavailable(thread: str, run_id: str):
        raise RunServiceError("503 upstream")

    service.retrieve_run = unavailable  # type: ignore[method-assign]

    with pytest.raises(RunStatusError, match="503 upstream"):
        asyncio.run(coordinator.await_completion(handle))
