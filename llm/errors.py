from __future__ import annotations

from http import HTTPStatus


class CompletionError(RuntimeError):
    """Base class for failures of a completion request."""

    retryable = False


class ProviderError(CompletionError):
    """The provider answered with a non-success status."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.provider_message = message
        super().__init__(f"API error: {message}")

    @classmethod
    def from_status(cls, status: int) -> ProviderError:
        try:
            description = HTTPStatus(status).phrase
        except ValueError:
            description = f"HTTP {status}"
        return cls(status, description)


class TransportError(CompletionError):
    """Connection reset, DNS failure, timeout and similar network faults."""

    retryable = True


class RequestCancelledError(CompletionError):
    """The request was aborted through its cancellation token.

    Not a failure: callers keep the partial output and do not report it.
    """


class DecodeWarning(UserWarning):
    """A single stream frame that could not be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line[:200]}")
