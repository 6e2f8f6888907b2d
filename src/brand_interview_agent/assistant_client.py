"""Thin wrapper around the OpenAI Assistants threads/runs API.

This module centralizes the integration with the run-based assistant service
so the rest of the application only sees :class:`~.runs.RunService`. The
client implementation is chosen from the configured provider, and service
errors are translated into the small set of exceptions the run coordinator
understands.
"""

from __future__ import annotations

import logging
from typing import Any, List

from openai import AsyncAzureOpenAI, AsyncOpenAI, BadRequestError, OpenAIError

from .config import ModelSettings
from .runs import (
    ActiveRunConflictError,
    RunAlreadyTerminalError,
    RunServiceError,
    RunSnapshot,
    RunStatus,
    ThreadMessage,
)

logger = logging.getLogger(__name__)

_LIST_LIMIT = 20
_ACTIVE_RUN_MARKERS = ("already has an active run", "while a run")
_TERMINAL_CANCEL_MARKERS = ("cannot cancel run",)


class AssistantIntegrationError(RuntimeError):
    """Raised when the assistant client cannot be initialized."""


def _snapshot(run: Any) -> RunSnapshot:
    last_error = getattr(run, "last_error", None)
    detail = getattr(last_error, "message", None) if last_error else None
    return RunSnapshot(
        id=run.id,
        status=RunStatus.from_string(run.status),
        last_error=detail,
    )


def _message_text(message: Any) -> str:
    parts: List[str] = []
    for block in message.content or []:
        if getattr(block, "type", None) == "text":
            parts.append(block.text.value)
    return "\n".join(parts)


class AssistantRunService:
    """Dispatches thread and run calls through the OpenAI SDK."""

    def __init__(self, settings: ModelSettings, client: Any = None) -> None:
        self._settings = settings
        self._client = client or self._create_client(settings)

    @staticmethod
    def _create_client(settings: ModelSettings) -> Any:
        provider = settings.provider.lower()
        if provider in {"azure-openai", "azure_openai", "azure"}:
            if not settings.endpoint:
                raise AssistantIntegrationError(
                    "BRAND_MODEL_ENDPOINT is required for Azure OpenAI."
                )
            return AsyncAzureOpenAI(
                api_key=settings.api_key,
                azure_endpoint=settings.endpoint,
                api_version=settings.api_version,
            )
        if provider in {"openai", "oai"}:
            return AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.endpoint,
            )
        raise AssistantIntegrationError(
            f"Unsupported assistant provider '{settings.provider}'."
        )

    async def create_thread(self) -> str:
        try:
            thread = await self._client.beta.threads.create()
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return thread.id

    async def create_message(
        self, thread_id: str, role: str, content: str
    ) -> None:
        try:
            await self._client.beta.threads.messages.create(
                thread_id, role=role, content=content
            )
        except BadRequestError as exc:
            raise self._translate(
                exc, _ACTIVE_RUN_MARKERS, ActiveRunConflictError
            ) from exc
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc

    async def create_run(self, thread_id: str, assistant_id: str) -> RunSnapshot:
        try:
            run = await self._client.beta.threads.runs.create(
                thread_id, assistant_id=assistant_id
            )
        except BadRequestError as exc:
            raise self._translate(
                exc, _ACTIVE_RUN_MARKERS, ActiveRunConflictError
            ) from exc
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return _snapshot(run)

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        try:
            run = await self._client.beta.threads.runs.retrieve(
                run_id, thread_id=thread_id
            )
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return _snapshot(run)

    async def list_runs(self, thread_id: str) -> List[RunSnapshot]:
        try:
            page = await self._client.beta.threads.runs.list(
                thread_id, limit=_LIST_LIMIT
            )
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return [_snapshot(run) for run in page.data]

    async def cancel_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        try:
            run = await self._client.beta.threads.runs.cancel(
                run_id, thread_id=thread_id
            )
        except BadRequestError as exc:
            raise self._translate(
                exc, _TERMINAL_CANCEL_MARKERS, RunAlreadyTerminalError
            ) from exc
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return _snapshot(run)

    async def list_messages(self, thread_id: str) -> List[ThreadMessage]:
        """Return thread messages newest first."""

        try:
            page = await self._client.beta.threads.messages.list(
                thread_id, order="desc", limit=_LIST_LIMIT
            )
        except OpenAIError as exc:
            raise RunServiceError(str(exc)) from exc
        return [
            ThreadMessage(role=message.role, text=_message_text(message))
            for message in page.data
        ]

    @staticmethod
    def _translate(
        exc: BadRequestError,
        markers: tuple[str, ...],
        error_cls: type[RunServiceError],
    ) -> RunServiceError:
        text = str(exc).lower()
        if any(marker in text for marker in markers):
            logger.debug("Assistant service conflict: %s", exc)
            return error_cls(str(exc))
        return RunServiceError(str(exc))
