from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from typing import Any

from llm.cancellation import CancellationToken
from llm.errors import ProviderError, RequestCancelledError
from llm.types import CompletionResult, ProviderConfig
from shared.models import LLMMessage


def sse_frame(content: str) -> bytes:
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


DONE_FRAME = b"data: [DONE]\n\n"


def provider_config(**overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "provider_id": "local",
        "base_url": "http://llm.test/v1",
        "model": "test-model",
    }
    values.update(overrides)
    return ProviderConfig(**values)


class FakeResponse:
    """Stand-in for ``requests.Response``.

    With ``block_after`` set, iteration stops after that many chunks and waits
    until ``close`` is called, like a socket with no more data yet.
    """

    def __init__(
        self,
        *,
        status_code: int = 200,
        reason: str = "OK",
        payload: object = None,
        chunks: list[bytes] | None = None,
        block_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.reason = reason
        self._payload = payload
        self._chunks = chunks or []
        self._block_after = block_after
        self.closed = threading.Event()

    def json(self) -> object:
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    def iter_content(self, chunk_size: int | None = None) -> Iterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            if self._block_after is not None and index >= self._block_after:
                break
            if self.closed.is_set():
                raise ConnectionResetError("connection closed")
            yield chunk
        if self._block_after is not None:
            self.closed.wait(timeout=5)
            raise ConnectionResetError("connection closed")

    def close(self) -> None:
        self.closed.set()


class FakeStream:
    def __init__(
        self,
        chunks: list[bytes],
        *,
        token: CancellationToken,
        block_after: int | None = None,
        delay: float = 0.0,
        on_close: Any = None,
    ) -> None:
        self._chunks = chunks
        self._token = token
        self._block_after = block_after
        self._delay = delay
        self._on_close = on_close
        self.closed = threading.Event()

    def iter_chunks(self) -> Iterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            if self._block_after is not None and index >= self._block_after:
                break
            if self._delay:
                time.sleep(self._delay)
            if self._token.cancelled:
                raise RequestCancelledError("request cancelled")
            yield chunk
        if self._block_after is not None:
            self.closed.wait(timeout=5)
            raise RequestCancelledError("request cancelled")

    def close(self) -> None:
        if self.closed.is_set():
            return
        self.closed.set()
        if self._on_close is not None:
            self._on_close()


class FakeCompletionBackend:
    """Scripted completion backend that records every request it receives."""

    def __init__(
        self,
        *,
        chunks: list[bytes] | None = None,
        reply: str = "",
        error: Exception | None = None,
        block_after: int | None = None,
        delay: float = 0.0,
        open_gate: threading.Event | None = None,
    ) -> None:
        self.chunks = chunks or []
        self.reply = reply
        self.error = error
        self.block_after = block_after
        self.delay = delay
        self.open_gate = open_gate
        self.opening = threading.Event()
        self.requests: list[tuple[list[LLMMessage], ProviderConfig]] = []
        self.streams: list[FakeStream] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def complete(self, messages: list[LLMMessage], config: ProviderConfig) -> CompletionResult:
        self.requests.append((list(messages), config))
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.reply)

    def open_stream(
        self,
        messages: list[LLMMessage],
        config: ProviderConfig,
        token: CancellationToken,
    ) -> FakeStream:
        self.requests.append((list(messages), config))
        if self.error is not None:
            raise self.error
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.opening.set()
        if self.open_gate is not None:
            # Connection still being set up; the request counts as in flight.
            self.open_gate.wait(timeout=5)
        stream = FakeStream(
            self.chunks,
            token=token,
            block_after=self.block_after,
            delay=self.delay,
            on_close=self._stream_closed,
        )
        token.add_abort_callback(stream.close)
        self.streams.append(stream)
        return stream

    def _stream_closed(self) -> None:
        with self._lock:
            self.active -= 1


def provider_error(status: int = 401, message: str = "bad key") -> ProviderError:
    return ProviderError(status, message)
