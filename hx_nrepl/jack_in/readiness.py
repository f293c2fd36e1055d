"""Readiness Poller — bridges "process launched" to "server reachable".

WAITING_INITIAL --(initial delay)--> PROBING --> READY | TIMED_OUT | EXITED

CANCELLED is reached when the caller supersedes the poller.  Whatever ends
the poll closes a one-shot latch, so the ready callback fires at most once.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable

from hx_nrepl.models import SpawnedProcess

log = logging.getLogger(__name__)


class ReadinessState(enum.Enum):
    WAITING_INITIAL = "waiting_initial"
    PROBING = "probing"
    READY = "ready"
    TIMED_OUT = "timed_out"
    EXITED = "exited"
    CANCELLED = "cancelled"


async def probe_tcp(host: str, port: int, timeout: float = 0.5) -> bool:
    """True if something accepts TCP connections on ``host:port``."""
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class ReadinessPoller:

    def __init__(
        self,
        host: str,
        port: int,
        on_ready: Callable[[], Awaitable[object]],
        *,
        process: SpawnedProcess | None = None,
        initial_delay: float = 2.0,
        interval: float = 0.5,
        budget: float = 30.0,
        probe: Callable[[str, int], Awaitable[bool]] = probe_tcp,
    ) -> None:
        self.host = host
        self.port = port
        self.process = process
        self.initial_delay = initial_delay
        self.interval = interval
        self.budget = budget
        self.state = ReadinessState.WAITING_INITIAL
        self.probes = 0
        self._on_ready = on_ready
        self._probe = probe
        self._latched = False

    @property
    def resolved(self) -> bool:
        return self._latched

    def cancel(self) -> bool:
        """Supersede the poller; returns False if it had already resolved."""
        return self._resolve(ReadinessState.CANCELLED)

    def _resolve(self, state: ReadinessState) -> bool:
        if self._latched:
            return False
        self._latched = True
        self.state = state
        log.info("Readiness of port %d: %s", self.port, state.value)
        return True

    async def run(self) -> ReadinessState:
        """Poll until resolved; on READY the ready callback runs exactly once.

        Exceptions raised by the callback propagate to the caller.
        """
        await asyncio.sleep(self.initial_delay)
        if self._latched:
            return self.state

        self.state = ReadinessState.PROBING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.budget

        while True:
            if self._latched:
                return self.state
            if self.process is not None and self.process.exited:
                self._resolve(ReadinessState.EXITED)
                return self.state

            self.probes += 1
            reachable = await self._probe(self.host, self.port)
            if reachable:
                if self._resolve(ReadinessState.READY):
                    await self._on_ready()
                return self.state

            if loop.time() >= deadline:
                self._resolve(ReadinessState.TIMED_OUT)
                return self.state
            await asyncio.sleep(self.interval)
