"""Owns the single ``ConnectionState`` of a context.

State is replaced wholesale on every change.  Code that awaits must re-read
``manager.state`` afterwards: a disconnect may have happened meanwhile.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Callable
from urllib.parse import urlparse

from .adapter import Adapter
from .adapter_registry import AdapterRegistry
from .errors import ErrorKind, ReplError
from .models import (
    DEFAULT_NAMESPACE,
    ConnectionState,
    SpawnedProcess,
    SplitOrientation,
)
from .rpc import RpcClient

log = logging.getLogger(__name__)


def parse_address(address: str, default_host: str = "127.0.0.1") -> str:
    """Normalize ``7888``, ``host:7888`` or ``nrepl://host:7888`` to ``host:port``.

    Raises ValueError for anything without a usable port.
    """
    text = address.strip()
    if not text:
        raise ValueError("Address is empty")
    if text.isdigit():
        return f"{_bracketed(default_host)}:{int(text)}"
    if "://" not in text:
        text = f"nrepl://{text}"
    parsed = urlparse(text)
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port is None:
        raise ValueError(f"Address has no valid port: {address!r}")
    return f"{_bracketed(parsed.hostname or default_host)}:{port}"


def _bracketed(host: str) -> str:
    # IPv6 literals keep their brackets so the address parses back
    return f"[{host}]" if ":" in host else host


class ConnectionManager:

    def __init__(
        self,
        rpc: RpcClient,
        registry: AdapterRegistry,
        *,
        timeout_ms: int,
        connect_timeout: float = 10.0,
        default_host: str = "127.0.0.1",
    ) -> None:
        self._rpc = rpc
        self._registry = registry
        self._connect_timeout = connect_timeout
        self._default_host = default_host
        self._default_timeout_ms = timeout_ms
        self._state: ConnectionState | None = None
        self._late_closes: set[asyncio.Future] = set()

    @property
    def rpc(self) -> RpcClient:
        return self._rpc

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    @property
    def state(self) -> ConnectionState:
        # Created lazily so config commands work before the first connect
        if self._state is None:
            self._state = ConnectionState(
                adapter=self._registry.fallback,
                timeout_ms=self._default_timeout_ms,
            )
        return self._state

    def _replace(self, **changes: object) -> ConnectionState:
        self._state = dataclasses.replace(self.state, **changes)
        return self._state

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(
        self,
        address: str,
        *,
        spawned: SpawnedProcess | None = None,
    ) -> ConnectionState:
        """Open a connection plus a fresh session.

        The caller guarantees there is no live connection.  On failure the
        state is left as it was and ``ReplError(CONNECT_FAILURE)`` is raised.
        """
        try:
            normalized = parse_address(address, self._default_host)
        except ValueError as exc:
            raise ReplError(ErrorKind.CONNECT_FAILURE, str(exc)) from exc

        connection_id: int | None = None
        # Shielded so a connect that finishes after the timeout can be closed
        opening = asyncio.ensure_future(asyncio.to_thread(self._rpc.connect, normalized))
        try:
            connection_id = await asyncio.wait_for(
                asyncio.shield(opening), timeout=self._connect_timeout
            )
            session_id = await asyncio.wait_for(
                asyncio.to_thread(self._rpc.clone_session, connection_id),
                timeout=self._connect_timeout,
            )
        except BaseException as exc:
            if connection_id is not None:
                await self._close_quietly(connection_id)
            elif not opening.done():
                opening.add_done_callback(self._close_late)
            if isinstance(exc, ReplError):
                raise ReplError(ErrorKind.CONNECT_FAILURE, exc.message, exc.details) from exc
            if not isinstance(exc, (asyncio.TimeoutError, OSError)):
                raise
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            raise ReplError(
                ErrorKind.CONNECT_FAILURE,
                f"Could not connect to {normalized}: {reason}",
            ) from exc

        log.info("Connected to %s (session %s)", normalized, session_id)
        return self._replace(
            connection_id=connection_id,
            session_id=session_id,
            address=normalized,
            namespace=DEFAULT_NAMESPACE,
            spawned=spawned,
        )

    async def disconnect(self) -> SpawnedProcess | None:
        """Close the connection and reset connection fields.

        Adapter, timeout, orientation and buffer are preserved.  Returns the
        spawned process the connection owned, leaving the decision to kill
        it to the caller.
        """
        state = self.state
        if state.connection_id is not None:
            await self._close_quietly(state.connection_id, state.session_id)
            log.info("Disconnected from %s", state.address)
        self.reset()
        return state.spawned

    def reset(self) -> ConnectionState:
        return self._replace(
            connection_id=None,
            session_id=None,
            address=None,
            namespace=DEFAULT_NAMESPACE,
            spawned=None,
        )

    async def _close_quietly(self, connection_id: int, session_id: str | None = None) -> None:
        def release() -> None:
            if session_id is not None:
                self._rpc.close_session(session_id)
            self._rpc.close(connection_id)

        try:
            await asyncio.wait_for(asyncio.to_thread(release), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            log.warning("Closing connection %d timed out", connection_id)
        except (ReplError, OSError) as exc:
            log.warning("Error closing connection %d: %s", connection_id, exc)

    def _close_late(self, opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        connection_id = opening.result()
        log.info("Closing connection %d that opened after the timeout", connection_id)
        task = asyncio.ensure_future(self._close_quietly(connection_id))
        self._late_closes.add(task)
        task.add_done_callback(self._late_closes.discard)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def require_connection(self) -> ConnectionState:
        state = self.state
        if not state.connected:
            raise ReplError(
                ErrorKind.NOT_CONNECTED,
                "Not connected to an nREPL server. Connect or jack in first.",
            )
        return state

    async def completions(self, prefix: str) -> list[dict[str, Any]]:
        state = self.require_connection()
        return await self._session_call(
            "Completion", self._rpc.completions, state.session_id, prefix, state.namespace
        )

    async def lookup(self, symbol: str) -> dict[str, Any]:
        state = self.require_connection()
        return await self._session_call(
            "Lookup", self._rpc.lookup, state.session_id, symbol, state.namespace
        )

    async def send_stdin(self, text: str) -> None:
        state = self.require_connection()
        self._rpc.send_stdin(state.session_id, text)

    async def _session_call(self, what: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self._connect_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ReplError(
                ErrorKind.EVAL_TIMEOUT,
                f"{what} timed out after {self._connect_timeout:g}s",
            ) from exc

    # ------------------------------------------------------------------
    # Pure state transformers
    # ------------------------------------------------------------------

    def set_timeout(self, timeout_ms: int) -> ConnectionState:
        if timeout_ms <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout_ms}")
        return self._replace(timeout_ms=timeout_ms)

    def set_orientation(self, orientation: SplitOrientation) -> ConnectionState:
        return self._replace(orientation=orientation)

    def ensure_adapter(self, language: str | None) -> Adapter:
        """Swap only the adapter when the buffer language calls for another."""
        adapter = self._registry.for_language(language)
        if adapter is not self.state.adapter:
            log.debug("Switching adapter to %r", adapter)
            self._replace(adapter=adapter)
        return adapter

    def use_adapter(self, adapter: Adapter) -> None:
        if adapter is not self.state.adapter:
            self._replace(adapter=adapter)

    def advance_namespace(self, namespace: str, connection_id: int | None) -> bool:
        """Record the namespace an eval ended in, if that connection is current."""
        state = self.state
        if connection_id is None or state.connection_id != connection_id:
            return False
        if state.namespace != namespace:
            self._replace(namespace=namespace)
        return True
