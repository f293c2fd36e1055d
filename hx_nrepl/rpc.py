"""Contract for the session-oriented RPC client the manager consumes.

The wire encoding lives behind this interface. Blocking calls (``connect``,
``clone_session``, ``completions``, ``lookup``, ``close``) are run off the
event loop by callers; ``eval_with_timeout``, ``load_file``,
``try_get_result``, ``send_stdin`` and ``close_session`` must return
immediately.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class EvalPayload:
    """Responses accumulated for one request, as received from the server."""

    value: Any = None
    out: list[str] = field(default_factory=list)
    err: list[str] = field(default_factory=list)
    ex: str | None = None
    ns: str | None = None
    status: set[str] = field(default_factory=set)


class RpcClient(ABC):

    @abstractmethod
    def connect(self, address: str) -> int:
        """Open a connection, returning its id. Raises ``ReplError`` on failure."""
        ...

    @abstractmethod
    def clone_session(self, connection_id: int) -> str:
        """Create a fresh session on an open connection."""
        ...

    @abstractmethod
    def eval_with_timeout(self, session_id: str, code: str, timeout_ms: int) -> str:
        """Submit ``code`` and return a request id without waiting."""
        ...

    @abstractmethod
    def load_file(
        self,
        session_id: str,
        contents: str,
        path: str | None,
        name: str | None,
        timeout_ms: int,
    ) -> str:
        """Submit a whole file for loading and return a request id."""
        ...

    @abstractmethod
    def try_get_result(self, connection_id: int, request_id: str) -> EvalPayload | None:
        """Return the payload once the request is done, else ``None``.

        Raises ``ReplError`` (``EVAL_TIMEOUT`` or ``EVAL_TRANSPORT_ERROR``)
        when the request can no longer complete.
        """
        ...

    @abstractmethod
    def completions(
        self, session_id: str, prefix: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """Blocking. Candidates for ``prefix``, each a dict with at least ``candidate``."""
        ...

    @abstractmethod
    def lookup(
        self, session_id: str, symbol: str, namespace: str | None = None
    ) -> dict[str, Any]:
        """Blocking. Symbol info (doc, arglists, file...); empty when unknown."""
        ...

    @abstractmethod
    def send_stdin(self, session_id: str, text: str) -> None:
        """Feed ``text`` to an evaluation waiting on standard input."""
        ...

    @abstractmethod
    def close_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    def close(self, connection_id: int) -> None:
        ...
