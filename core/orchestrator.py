from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, TypeVar

from core.admission import AdmissionQueue, Ticket
from core.errors import SessionNotFoundError, ValidationError
from core.session_codec import export_session, import_document_text, import_session
from core.session_models import Message, Session, SnippetRef
from core.session_store import UNSET, SessionStore
from llm.cancellation import CancellationController, CancellationToken
from llm.completion_client import (
    DEFAULT_CONNECT_TIMEOUT,
    CompletionClient,
    CompletionStream,
    build_messages,
)
from llm.errors import CompletionError, RequestCancelledError
from llm.stream_decoder import StreamDecoder
from llm.types import CompletionResult, ProviderConfig
from shared.models import JSONValue, LLMMessage

logger = logging.getLogger("ChatRelay.Orchestrator")

ERROR_PREFIX = "Error: "
INTERRUPTED_TEXT = "Request interrupted."

T = TypeVar("T")


class SendState(str, Enum):
    QUEUED = "queued"
    BUILDING = "building"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SendState.COMPLETED, SendState.FAILED, SendState.CANCELLED})


@dataclass
class SendOutcome:
    session_id: str
    state: SendState = SendState.QUEUED
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    content: str = ""
    error: str | None = None
    error_type: str | None = None
    retryable: bool = False
    sequence: int | None = None
    states: list[SendState] = field(default_factory=list)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "user_message_id": self.user_message_id,
            "assistant_message_id": self.assistant_message_id,
            "content": self.content,
            "error": self.error,
            "error_type": self.error_type,
            "retryable": self.retryable,
            "sequence": self.sequence,
            "states": [item.value for item in self.states],
        }


class ProviderResolver(Protocol):
    def resolve(self, snapshot: ProviderConfig) -> ProviderConfig: ...


class SnippetUsageRecorder(Protocol):
    def record_use(self, snippet_id: str, timestamp: int) -> None: ...


class CompletionBackend(Protocol):
    def complete(self, messages: list[LLMMessage], config: ProviderConfig) -> CompletionResult: ...

    def open_stream(
        self,
        messages: list[LLMMessage],
        config: ProviderConfig,
        token: CancellationToken,
    ) -> CompletionStream: ...


def _discard_result(task: asyncio.Future[object]) -> None:
    if not task.cancelled():
        task.exception()


class ChatOrchestrator:
    """Send pipeline plus the session operations exposed to the UI."""

    def __init__(
        self,
        store: SessionStore,
        *,
        client: CompletionBackend | None = None,
        admission: AdmissionQueue | None = None,
        cancellation: CancellationController | None = None,
        provider_resolver: ProviderResolver | None = None,
        snippet_recorder: SnippetUsageRecorder | None = None,
        abandon_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self.store = store
        self.abandon_timeout = abandon_timeout
        self.client: CompletionBackend = client or CompletionClient()
        self.admission = admission or AdmissionQueue()
        self.cancellation = cancellation or CancellationController()
        self._provider_resolver = provider_resolver
        self._snippet_recorder = snippet_recorder

    # UI boundary: send pipeline

    async def send(
        self,
        content: str,
        snippet: SnippetRef | None = None,
        *,
        session_id: str | None = None,
    ) -> SendOutcome:
        if not content.strip() and (snippet is None or not snippet.content):
            raise ValidationError("message content required", field="content")
        target_id = session_id or self.store.current_session_id
        if target_id is None:
            raise ValidationError(
                "no active session; create or select one first",
                field="session_id",
            )
        await self.store.require_session(target_id)

        outcome = SendOutcome(session_id=target_id)
        await self._transition(outcome, SendState.QUEUED)
        ticket = await self.admission.acquire()
        try:
            return await self._run_send(ticket, outcome, content, snippet)
        finally:
            await asyncio.shield(self.admission.release(ticket))
            logger.info(
                "Send #%s finished in state %s",
                ticket.sequence,
                outcome.state.value,
                extra={"session_id": target_id, "sequence": ticket.sequence},
            )

    def stop(self) -> bool:
        stopped = self.cancellation.cancel_active()
        if stopped:
            logger.info("Stop requested for active stream")
        return stopped

    def status(self) -> dict[str, JSONValue]:
        return {
            "busy": self.admission.busy,
            "waiting": self.admission.waiting,
            "sequence": self.admission.sequence,
            "streaming": self.cancellation.active is not None,
        }

    async def _run_send(
        self,
        ticket: Ticket,
        outcome: SendOutcome,
        content: str,
        snippet: SnippetRef | None,
    ) -> SendOutcome:
        outcome.sequence = ticket.sequence
        await self._transition(outcome, SendState.BUILDING)
        session = await self.store.require_session(outcome.session_id)
        provider = self._resolve_provider(session.provider)
        history: list[Message] = list(session.messages)

        user_message = await self.store.append_message(
            outcome.session_id,
            role="user",
            content=content,
            snippet=snippet,
        )
        history.append(user_message)
        placeholder = await self.store.append_message(
            outcome.session_id,
            role="assistant",
            content="",
        )
        outcome.user_message_id = user_message.id
        outcome.assistant_message_id = placeholder.id
        if snippet is not None:
            self._record_snippet_use(snippet)

        messages = build_messages(
            history,
            system_prompt=session.system_prompt,
            role_prompt=session.role_prompt,
        )
        streamed: list[str] = []
        try:
            await self._transition(outcome, SendState.SENDING)
            if provider.stream:
                await self._stream_reply(outcome, placeholder.id, messages, provider, streamed)
            else:
                result = await self._run_blocking(self.client.complete, messages, provider)
                streamed.append(result.text)
                await self.store.update_message(outcome.session_id, placeholder.id, result.text)
            final_state = SendState.COMPLETED
        except RequestCancelledError:
            final_state = SendState.CANCELLED
            logger.info(
                "Send cancelled; keeping partial reply",
                extra={"session_id": outcome.session_id, "sequence": ticket.sequence},
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._finish_interrupted(outcome, placeholder.id, streamed))
            raise
        except CompletionError as exc:
            final_state = SendState.FAILED
            outcome.error = str(exc)
            outcome.error_type = exc.__class__.__name__
            outcome.retryable = exc.retryable
            logger.warning(
                "Completion failed",
                extra={
                    "session_id": outcome.session_id,
                    "sequence": ticket.sequence,
                    "error": str(exc),
                    "retryable": exc.retryable,
                },
            )
        except Exception as exc:  # noqa: BLE001
            final_state = SendState.FAILED
            outcome.error = str(exc) or exc.__class__.__name__
            outcome.error_type = exc.__class__.__name__
            logger.error(
                "Unexpected error in send pipeline",
                exc_info=True,
                extra={"session_id": outcome.session_id, "sequence": ticket.sequence},
            )

        if final_state is SendState.FAILED:
            await self._write_error(outcome, placeholder.id)
        outcome.content = await self._read_content(outcome, placeholder.id, "".join(streamed))
        await self._transition(outcome, final_state)
        return outcome

    async def _stream_reply(
        self,
        outcome: SendOutcome,
        message_id: str,
        messages: list[LLMMessage],
        provider: ProviderConfig,
        streamed: list[str],
    ) -> None:
        token = self.cancellation.new_token()
        stream: CompletionStream | None = None
        try:
            stream = await self._unless_cancelled(
                token,
                self.client.open_stream,
                messages,
                provider,
                token,
            )
            decoder = StreamDecoder()
            chunks = stream.iter_chunks()
            while True:
                token.raise_if_cancelled()
                chunk = await self._unless_cancelled(token, _next_chunk, chunks)
                if chunk is None:
                    break
                if outcome.state is not SendState.STREAMING:
                    await self._transition(outcome, SendState.STREAMING)
                await self._append_deltas(outcome, message_id, decoder.feed(chunk), streamed)
                if decoder.done:
                    break
            token.raise_if_cancelled()
            await self._append_deltas(outcome, message_id, decoder.flush(), streamed)
            if decoder.warnings:
                logger.warning(
                    "Stream finished with %d malformed frame(s)",
                    len(decoder.warnings),
                    extra={"session_id": outcome.session_id, "sequence": outcome.sequence},
                )
        finally:
            self.cancellation.clear(token)
            if stream is not None:
                stream.close()

    async def _append_deltas(
        self,
        outcome: SendOutcome,
        message_id: str,
        deltas: list[str],
        streamed: list[str],
    ) -> None:
        for delta in deltas:
            streamed.append(delta)
            await self.store.append_to_message(outcome.session_id, message_id, delta)

    async def _unless_cancelled(
        self,
        token: CancellationToken,
        func: Callable[..., T],
        *args: object,
    ) -> T:
        """Run a blocking call in a worker thread, racing it against the token.

        On cancellation the worker is still waited for, up to
        ``abandon_timeout``, so a new request never starts while the old one is
        inside the transport.
        """
        token.raise_if_cancelled()
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            token.cancel()
            await self._settle_worker(work)
            raise
        finally:
            cancelled.cancel()
        if work.done():
            return work.result()
        await self._settle_worker(work)
        raise RequestCancelledError("request cancelled")

    async def _run_blocking(self, func: Callable[..., T], *args: object) -> T:
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            await self._settle_worker(work)
            raise

    async def _settle_worker(self, work: asyncio.Future[T]) -> None:
        if work.done():
            _discard_result(work)
            return
        work.add_done_callback(_discard_result)
        done, _ = await asyncio.wait({work}, timeout=self.abandon_timeout)
        if not done:
            logger.warning(
                "Abandoned request still running after %.1fs; releasing admission",
                self.abandon_timeout,
            )

    async def _finish_interrupted(
        self,
        outcome: SendOutcome,
        message_id: str,
        streamed: list[str],
    ) -> None:
        logger.info(
            "Send task cancelled",
            extra={"session_id": outcome.session_id, "sequence": outcome.sequence},
        )
        fallback = "".join(streamed)
        if not fallback:
            fallback = INTERRUPTED_TEXT
            try:
                await self.store.update_message(outcome.session_id, message_id, fallback)
            except SessionNotFoundError:
                logger.warning(
                    "Session vanished before interruption could be recorded",
                    extra={"session_id": outcome.session_id},
                )
        outcome.content = await self._read_content(outcome, message_id, fallback)
        await self._transition(outcome, SendState.CANCELLED)

    async def _write_error(self, outcome: SendOutcome, message_id: str) -> None:
        try:
            await self.store.update_message(
                outcome.session_id,
                message_id,
                f"{ERROR_PREFIX}{outcome.error or 'unknown error'}",
            )
        except SessionNotFoundError:
            logger.warning(
                "Session vanished before error could be recorded",
                extra={"session_id": outcome.session_id},
            )

    async def _read_content(self, outcome: SendOutcome, message_id: str, fallback: str) -> str:
        session = await self.store.get_session(outcome.session_id)
        if session is None:
            return fallback
        message = session.find_message(message_id)
        return message.content if message is not None else fallback

    async def _transition(self, outcome: SendOutcome, state: SendState) -> None:
        outcome.state = state
        outcome.states.append(state)
        logger.debug(
            "Send state -> %s",
            state.value,
            extra={"session_id": outcome.session_id, "sequence": outcome.sequence},
        )
        payload: dict[str, JSONValue] = {
            "state": state.value,
            "sequence": outcome.sequence,
            "message_id": outcome.assistant_message_id,
        }
        if state in TERMINAL_STATES:
            payload["error"] = outcome.error
            payload["error_type"] = outcome.error_type
            payload["retryable"] = outcome.retryable
        await self.store.publish(outcome.session_id, "chat.state", payload)

    def _resolve_provider(self, snapshot: ProviderConfig) -> ProviderConfig:
        if self._provider_resolver is not None:
            return self._provider_resolver.resolve(snapshot)
        if not snapshot.base_url or not snapshot.model:
            raise ValidationError(
                f"provider {snapshot.provider_id} is missing base_url or model",
                field="provider",
            )
        return snapshot

    def _record_snippet_use(self, snippet: SnippetRef) -> None:
        if self._snippet_recorder is None:
            return
        try:
            self._snippet_recorder.record_use(snippet.id, snippet.timestamp)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to record snippet usage",
                exc_info=True,
                extra={"snippet_id": snippet.id},
            )

    # UI boundary: session management

    async def create_session(
        self,
        provider: ProviderConfig,
        system_prompt: str | None = None,
        role_prompt: str | None = None,
        *,
        title: str | None = None,
    ) -> Session:
        return await self.store.create_session(
            provider,
            system_prompt=system_prompt,
            role_prompt=role_prompt,
            title=title,
        )

    async def select_session(self, session_id: str) -> Session:
        return await self.store.select_session(session_id)

    async def current_session(self) -> Session | None:
        return await self.store.current_session()

    async def get_session(self, session_id: str) -> Session:
        return await self.store.require_session(session_id)

    async def list_sessions(self) -> list[Session]:
        return await self.store.list_sessions()

    async def delete_session(self, session_id: str) -> None:
        if not await self.store.delete_session(session_id):
            raise SessionNotFoundError(session_id)

    async def rename_session(self, session_id: str, title: str) -> Session:
        return await self.store.rename_session(session_id, title)

    async def clear_session(self, session_id: str) -> Session:
        return await self.store.clear_session(session_id)

    async def update_session_settings(
        self,
        session_id: str,
        *,
        provider: ProviderConfig | None = None,
        system_prompt: str | None = None,
        role_prompt: str | None = None,
        clear_prompts: bool = False,
    ) -> Session:
        return await self.store.update_session(
            session_id,
            provider=provider if provider is not None else UNSET,
            system_prompt=system_prompt if system_prompt is not None or clear_prompts else UNSET,
            role_prompt=role_prompt if role_prompt is not None or clear_prompts else UNSET,
        )

    async def edit_message(self, session_id: str, message_id: str, content: str) -> Message:
        return await self.store.update_message(session_id, message_id, content)

    async def delete_message(self, session_id: str, message_id: str) -> None:
        await self.store.delete_message(session_id, message_id)

    async def export_session(self, session_id: str) -> dict[str, JSONValue]:
        session = await self.store.require_session(session_id)
        return export_session(session)

    async def import_session(self, document: Mapping[str, JSONValue] | str) -> Session:
        if isinstance(document, str):
            return await self.store.import_session(import_document_text(document))
        return await self.store.import_session(import_session(dict(document)))


def _next_chunk(chunks: Iterator[bytes]) -> bytes | None:
    return next(chunks, None)
