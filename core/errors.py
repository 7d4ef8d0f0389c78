from __future__ import annotations


class ValidationError(ValueError):
    """Malformed input from the caller: bad import document, missing config."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str, *, message_id: str | None = None) -> None:
        self.session_id = session_id
        self.message_id = message_id
        if message_id is not None:
            text = f"message {message_id} not found in session {session_id}"
        else:
            text = f"session {session_id} not found"
        super().__init__(text)

    def __str__(self) -> str:
        return str(self.args[0])


class AdmissionTimeoutError(TimeoutError):
    """No admission ticket within the bound. Transient; the caller may retry."""

    retryable = True

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Could not acquire session within {timeout:g}s; try again.")
