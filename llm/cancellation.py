from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

from llm.errors import RequestCancelledError

logger = logging.getLogger("ChatRelay.Cancellation")

AbortCallback = Callable[[], None]


class CancellationToken:
    """Single-use handle that aborts one in-flight request.

    ``cancel`` must be called from the event loop thread. Abort callbacks may be
    registered from any thread; a callback registered after cancellation runs
    immediately.
    """

    def __init__(self, sequence: int) -> None:
        self.sequence = sequence
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: list[AbortCallback] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_abort_callback(self, callback: AbortCallback) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def cancel(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        self._event.set()
        for callback in callbacks:
            self._run_callback(callback)
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelledError("request cancelled")

    def _run_callback(self, callback: AbortCallback) -> None:
        try:
            callback()
        except Exception:  # noqa: BLE001
            logger.debug(
                "Abort callback failed",
                exc_info=True,
                extra={"token_sequence": self.sequence},
            )


class CancellationController:
    """Owns the zero-or-one live token of the streaming request."""

    def __init__(self) -> None:
        self._active: CancellationToken | None = None
        self._sequence = 0

    @property
    def active(self) -> CancellationToken | None:
        return self._active

    def new_token(self) -> CancellationToken:
        stale = self._active
        if stale is not None and not stale.cancelled:
            logger.warning(
                "Stale cancellation token found; cancelling it",
                extra={"token_sequence": stale.sequence},
            )
            stale.cancel()
        self._sequence += 1
        token = CancellationToken(self._sequence)
        self._active = token
        return token

    def cancel(self, token: CancellationToken) -> bool:
        return token.cancel()

    def cancel_active(self) -> bool:
        token = self._active
        if token is None:
            return False
        return token.cancel()

    def clear(self, token: CancellationToken) -> None:
        if self._active is token:
            self._active = None
