from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import Final, Protocol

import requests

from llm.cancellation import CancellationToken
from llm.errors import ProviderError, RequestCancelledError, TransportError
from llm.types import CompletionResult, LLMUsage, ProviderConfig
from shared.models import JSONValue, LLMMessage
from shared.sanitize import redact_payload

logger = logging.getLogger("ChatRelay.CompletionClient")

DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0
DEFAULT_READ_TIMEOUT: Final[float] = 60.0
SNIPPET_SEPARATOR: Final[str] = "\n\n"


class SnippetContent(Protocol):
    content: str


class HistoryItem(Protocol):
    role: str
    content: str
    snippet: SnippetContent | None


def build_messages(
    history: Sequence[HistoryItem],
    *,
    system_prompt: str | None = None,
    role_prompt: str | None = None,
) -> list[LLMMessage]:
    """Outgoing message array for one request.

    Quoted snippet text is folded into its owning message; it never becomes a
    protocol message of its own.
    """
    messages: list[LLMMessage] = []
    if system_prompt:
        messages.append(LLMMessage(role="system", content=system_prompt))
    if role_prompt:
        messages.append(LLMMessage(role="system", content=role_prompt))
    for item in history:
        content = item.content
        snippet = item.snippet
        if snippet is not None and snippet.content:
            content = f"{content}{SNIPPET_SEPARATOR}{snippet.content}"
        messages.append(LLMMessage(role=item.role, content=content))  # type: ignore[arg-type]
    return messages


def _error_message_from_body(data: object) -> str | None:
    if not isinstance(data, dict):
        return None
    error_raw = data.get("error")
    if isinstance(error_raw, dict):
        message_raw = error_raw.get("message")
        if isinstance(message_raw, str) and message_raw.strip():
            return message_raw.strip()
    if isinstance(error_raw, str) and error_raw.strip():
        return error_raw.strip()
    message_raw = data.get("message")
    if isinstance(message_raw, str) and message_raw.strip():
        return message_raw.strip()
    return None


def _provider_error(response: requests.Response) -> ProviderError:
    try:
        body: object = response.json()
    except ValueError:
        body = None
    message = _error_message_from_body(body)
    if message is not None:
        return ProviderError(response.status_code, message)
    reason = response.reason if isinstance(response.reason, str) else ""
    if reason.strip():
        return ProviderError(response.status_code, reason.strip())
    return ProviderError.from_status(response.status_code)


class CompletionStream:
    """Open streaming response. Yields raw body chunks until EOF or abort."""

    def __init__(self, response: requests.Response, token: CancellationToken) -> None:
        self._response = response
        self._token = token
        self._closed = False

    def iter_chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if self._token.cancelled:
                    raise RequestCancelledError("request cancelled")
                if chunk:
                    yield chunk
        except RequestCancelledError:
            raise
        except Exception as exc:
            if self._token.cancelled:
                raise RequestCancelledError("request cancelled") from exc
            if isinstance(exc, (requests.RequestException, OSError)):
                raise TransportError(f"Stream interrupted: {exc}") from exc
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()


class CompletionClient:
    """Client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

    def complete(self, messages: list[LLMMessage], config: ProviderConfig) -> CompletionResult:
        payload = self._build_payload(messages, config, stream=False)
        response = self._post(config, payload, stream=False)
        try:
            data_json = response.json()
        except ValueError as exc:
            raise ProviderError(response.status_code, "Invalid JSON in provider response") from exc
        if not isinstance(data_json, dict):
            raise ProviderError(response.status_code, "Malformed provider response")
        data: dict[str, JSONValue] = data_json
        choices_raw = data.get("choices")
        if not isinstance(choices_raw, list) or not choices_raw:
            raise ProviderError(response.status_code, "Empty or malformed provider response")
        first_choice = choices_raw[0]
        content = ""
        if isinstance(first_choice, dict):
            message_raw = first_choice.get("message")
            if isinstance(message_raw, dict) and isinstance(message_raw.get("content"), str):
                content = str(message_raw["content"])

        usage: LLMUsage | None = None
        usage_block = data.get("usage")
        if isinstance(usage_block, dict):
            usage = LLMUsage(
                prompt_tokens=int(usage_block.get("prompt_tokens", 0) or 0),
                completion_tokens=int(usage_block.get("completion_tokens", 0) or 0),
                total_tokens=int(usage_block.get("total_tokens", 0) or 0),
            )
        return CompletionResult(text=content, usage=usage, raw=data)

    def open_stream(
        self,
        messages: list[LLMMessage],
        config: ProviderConfig,
        token: CancellationToken,
    ) -> CompletionStream:
        token.raise_if_cancelled()
        payload = self._build_payload(messages, config, stream=True)
        response = self._post(config, payload, stream=True, token=token)
        stream = CompletionStream(response, token)
        token.add_abort_callback(stream.close)
        return stream

    def _build_payload(
        self,
        messages: list[LLMMessage],
        config: ProviderConfig,
        *,
        stream: bool,
    ) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "model": config.model,
            "messages": [dict(message.__dict__) for message in messages],
            "temperature": config.temperature,
            "stream": stream,
        }
        if config.max_tokens is not None:
            payload["max_tokens"] = config.max_tokens
        return payload

    def _build_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        headers.update(config.extra_headers)
        return headers

    def _post(
        self,
        config: ProviderConfig,
        payload: dict[str, JSONValue],
        *,
        stream: bool,
        token: CancellationToken | None = None,
    ) -> requests.Response:
        headers = self._build_headers(config)
        logger.debug(
            "Posting completion request",
            extra={
                "endpoint": config.endpoint,
                "headers": redact_payload(headers),
                "payload": redact_payload(payload),
            },
        )
        try:
            response = requests.post(
                config.endpoint,
                json=payload,
                headers=headers,
                timeout=(self.connect_timeout, self.read_timeout),
                stream=stream,
            )
        except requests.RequestException as exc:
            if token is not None and token.cancelled:
                raise RequestCancelledError("request cancelled") from exc
            raise TransportError(f"Transport error: {exc}") from exc
        if response.status_code >= 400:
            try:
                raise _provider_error(response)
            finally:
                response.close()
        return response
