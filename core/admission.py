from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Final

from core.errors import AdmissionTimeoutError

logger = logging.getLogger("ChatRelay.Admission")

DEFAULT_ADMISSION_TIMEOUT: Final[float] = 10.0


@dataclass(eq=False)
class Ticket:
    sequence: int
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


class AdmissionQueue:
    """Process-wide gate: at most one completion request runs at a time.

    Waiters park on a condition and re-check on every release. Ordering among
    waiters is best effort only.
    """

    def __init__(self, *, timeout: float = DEFAULT_ADMISSION_TIMEOUT) -> None:
        self.timeout = timeout
        self._condition = asyncio.Condition()
        self._holder: Ticket | None = None
        self._sequence = 0
        self._waiting = 0

    @property
    def busy(self) -> bool:
        return self._holder is not None

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def sequence(self) -> int:
        return self._sequence

    async def acquire(self, timeout: float | None = None) -> Ticket:
        limit = self.timeout if timeout is None else timeout
        async with self._condition:
            if self._holder is not None:
                self._waiting += 1
                logger.info(
                    "Request queued behind active request",
                    extra={"holder_sequence": self._holder.sequence, "waiting": self._waiting},
                )
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: self._holder is None),
                        timeout=limit,
                    )
                except TimeoutError as exc:
                    raise AdmissionTimeoutError(limit) from exc
                finally:
                    self._waiting -= 1
            self._sequence += 1
            ticket = Ticket(sequence=self._sequence)
            self._holder = ticket
            logger.debug("Admission granted", extra={"sequence": ticket.sequence})
            return ticket

    async def release(self, ticket: Ticket) -> None:
        if ticket.released:
            return
        if self._holder is not ticket:
            raise ValueError(f"ticket #{ticket.sequence} is not the active holder")
        # Slot must be free before the first await.
        ticket.released = True
        self._holder = None
        logger.debug(
            "Admission released",
            extra={
                "sequence": ticket.sequence,
                "held_seconds": round(time.monotonic() - ticket.acquired_at, 3),
            },
        )
        async with self._condition:
            self._condition.notify_all()

    @asynccontextmanager
    async def hold(self, timeout: float | None = None) -> AsyncIterator[Ticket]:
        ticket = await self.acquire(timeout)
        try:
            yield ticket
        finally:
            await self.release(ticket)
