"""nREPL transport: bencode over a plain TCP socket.

Each connection gets a daemon reader thread that files every incoming message
under its request id.  Submission writes a message and returns at once; the
event loop later asks ``try_get_result`` whether the request is done.

Bencode string lengths count bytes, so the socket is only ever read and
written in binary; text is UTF-8 encoded at the edge.
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO
from urllib.parse import urlparse

from fastbencode import bdecode, bencode

from .errors import ErrorKind, ReplError
from .rpc import EvalPayload, RpcClient

log = logging.getLogger(__name__)

# Blocking operations (clone, completions, lookup) give up after this many seconds
BLOCKING_TIMEOUT = 30.0
# Completed responses nobody collected are dropped past this count
MAX_PENDING_RESPONSES = 1000
# Longest integer or string-length prefix accepted from the server
_MAX_HEADER = 32
# Response keys folded into EvalPayload; everything else lands in ``fields``
_PAYLOAD_KEYS = {"id", "session", "status", "value", "out", "err", "ex", "ns", "new-session"}

_request_ids = itertools.count(1)


def _next_request_id() -> str:
    return f"req-{next(_request_ids)}"


# ----------------------------------------------------------------------
# Wire format
# ----------------------------------------------------------------------


def _to_wire(value: Any) -> Any:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, dict):
        return {_to_wire(k): _to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(v) for v in value]
    return value


def _from_wire(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {_from_wire(k): _from_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_from_wire(v) for v in value]
    return value


def encode_message(message: dict[str, Any]) -> bytes:
    return bencode(_to_wire(message))


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise EOFError("Connection closed in the middle of a message")
    return data


def _read_through(stream: BinaryIO, delimiter: bytes) -> bytes:
    parts: list[bytes] = []
    while len(parts) <= _MAX_HEADER:
        byte = _read_exact(stream, 1)
        parts.append(byte)
        if byte == delimiter:
            return b"".join(parts)
    raise ValueError("Malformed bencode: header too long")


def _read_value(stream: BinaryIO, lead: bytes) -> bytes:
    """Return the raw bytes of the bencode value starting with ``lead``."""
    if lead == b"i":
        return lead + _read_through(stream, b"e")
    if lead in (b"l", b"d"):
        parts = [lead]
        while True:
            nxt = _read_exact(stream, 1)
            if nxt == b"e":
                parts.append(nxt)
                return b"".join(parts)
            parts.append(_read_value(stream, nxt))
    if lead.isdigit():
        header = lead + _read_through(stream, b":")
        return header + _read_exact(stream, int(header[:-1]))
    raise ValueError(f"Malformed bencode: unexpected byte {lead!r}")


def read_message(stream: BinaryIO) -> dict[str, Any] | None:
    """Read one message, or ``None`` when the peer closed between messages."""
    lead = stream.read(1)
    if not lead:
        return None
    message = _from_wire(bdecode(_read_value(stream, lead)))
    if not isinstance(message, dict):
        raise ValueError(f"Expected a bencode dictionary, got {type(message).__name__}")
    return message


class _SocketTransport:
    """Binary reader plus ``sendall`` writer over one connected socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._reader = sock.makefile("rb")

    @classmethod
    def open(cls, host: str, port: int, timeout: float) -> _SocketTransport:
        sock = socket.create_connection((host, port), timeout=timeout)
        # The timeout only bounds the handshake; reads block until shutdown
        sock.settimeout(None)
        return cls(sock)

    def write(self, message: dict[str, Any]) -> None:
        self._sock.sendall(encode_message(message))

    def read(self) -> dict[str, Any] | None:
        return read_message(self._reader)

    def close(self) -> None:
        # shutdown wakes a reader blocked in recv; close alone would not
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # peer already gone
        self._sock.close()

    def release(self) -> None:
        self._reader.close()


# ----------------------------------------------------------------------
# Request bookkeeping
# ----------------------------------------------------------------------


@dataclass
class _PendingRequest:
    deadline: float | None
    payload: EvalPayload = field(default_factory=EvalPayload)
    done: threading.Event = field(default_factory=threading.Event)
    new_session: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def absorb(self, message: dict[str, Any]) -> None:
        payload = self.payload
        if "value" in message:
            payload.value = message["value"]
        if "out" in message:
            payload.out.append(str(message["out"]))
        if "err" in message:
            payload.err.append(str(message["err"]))
        if "ex" in message:
            payload.ex = str(message["ex"])
        if "ns" in message:
            payload.ns = str(message["ns"])
        if "new-session" in message:
            self.new_session = str(message["new-session"])
        for key, value in message.items():
            if key not in _PAYLOAD_KEYS:
                self.fields[key] = value
        status = message.get("status") or []
        if isinstance(status, str):
            status = [status]
        payload.status.update(str(s) for s in status)
        if "done" in payload.status:
            self.done.set()


class _Worker:
    """Reader thread plus request table for one socket."""

    def __init__(self, connection_id: int, conn: Any) -> None:
        self.connection_id = connection_id
        self.sessions: set[str] = set()
        self._conn = conn
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: dict[str, _PendingRequest] = {}
        self._fault: str | None = None
        self._thread = threading.Thread(
            target=self._read_loop,
            name=f"nrepl-reader-{connection_id}",
            daemon=True,
        )
        self._thread.start()

    @property
    def fault(self) -> str | None:
        return self._fault

    def send(self, message: dict[str, Any]) -> str:
        """Write a message nobody waits on; returns its request id."""
        if self._fault:
            raise ReplError(ErrorKind.EVAL_TRANSPORT_ERROR, self._fault)
        request_id = _next_request_id()
        self._write({**message, "id": request_id})
        return request_id

    def submit(self, message: dict[str, Any], timeout_ms: int | None) -> str:
        if self._fault:
            raise ReplError(ErrorKind.EVAL_TRANSPORT_ERROR, self._fault)
        request_id = _next_request_id()
        deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms else None
        with self._lock:
            if len(self._pending) >= MAX_PENDING_RESPONSES:
                self._evict_completed()
            self._pending[request_id] = _PendingRequest(deadline=deadline)
        try:
            self._write({**message, "id": request_id})
        except ReplError:
            with self._lock:
                self._pending.pop(request_id, None)
            raise
        return request_id

    def request_blocking(
        self,
        message: dict[str, Any],
        kind: ErrorKind = ErrorKind.CONNECT_FAILURE,
    ) -> _PendingRequest:
        request_id = self.submit(message, None)
        with self._lock:
            pending = self._pending[request_id]
        finished = pending.done.wait(BLOCKING_TIMEOUT)
        with self._lock:
            self._pending.pop(request_id, None)
        if not finished:
            raise ReplError(
                kind,
                f"Operation '{message['op']}' timed out after {BLOCKING_TIMEOUT:.0f}s",
            )
        if "done" not in pending.payload.status and self._fault:
            # Woken by the reader shutting down, not by the server
            raise ReplError(kind, self._fault)
        return pending

    def poll(self, request_id: str) -> EvalPayload | None:
        with self._lock:
            pending = self._pending.get(request_id)
            if pending is None:
                raise ReplError(
                    ErrorKind.EVAL_TRANSPORT_ERROR,
                    f"Unknown request {request_id} on connection {self.connection_id}",
                )
            if pending.done.is_set():
                del self._pending[request_id]
                return pending.payload
            if self._fault:
                del self._pending[request_id]
                raise ReplError(ErrorKind.EVAL_TRANSPORT_ERROR, self._fault)
            if pending.deadline is not None and time.monotonic() >= pending.deadline:
                # Abandoned, not interrupted: the server may still be working
                del self._pending[request_id]
                raise ReplError(ErrorKind.EVAL_TIMEOUT, "Evaluation timed out")
        return None

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def close_session(self, session_id: str) -> None:
        self.sessions.discard(session_id)
        if self._fault:
            return
        try:
            self.send({"op": "close", "session": session_id})
        except ReplError as exc:
            log.debug("Could not close session %s: %s", session_id, exc)

    def close(self) -> None:
        for session in list(self.sessions):
            self.close_session(session)
        self._fault = self._fault or "Connection closed"
        try:
            self._conn.close()
        except OSError:
            log.debug("Socket close failed for connection %d", self.connection_id)

    def _write(self, message: dict[str, Any]) -> None:
        try:
            with self._write_lock:
                self._conn.write(message)
        except (OSError, ValueError, TypeError) as exc:
            raise ReplError(
                ErrorKind.EVAL_TRANSPORT_ERROR, f"Failed to send request: {exc}"
            ) from exc

    def _evict_completed(self) -> None:
        for rid in [rid for rid, p in self._pending.items() if p.done.is_set()]:
            del self._pending[rid]

    def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = self._conn.read()
                except Exception as exc:  # socket/codec failures end the connection
                    self._fault = self._fault or f"Connection lost: {exc}"
                    break
                if message is None:
                    self._fault = self._fault or "Connection closed by server"
                    break
                request_id = message.get("id")
                with self._lock:
                    pending = self._pending.get(request_id)
                    if pending is not None:
                        pending.absorb(message)
        finally:
            self._conn.release()
        log.info("nREPL reader for connection %d stopped: %s", self.connection_id, self._fault)
        with self._lock:
            # Wake blocking waiters; poll() reports the fault to the rest
            for pending in self._pending.values():
                if pending.deadline is None:
                    pending.done.set()


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------


def _split_address(address: str) -> tuple[str, int]:
    parsed = urlparse(address if "://" in address else f"nrepl://{address}")
    port = parsed.port
    if not parsed.hostname or port is None:
        raise ValueError(f"Address needs a host and a port: {address!r}")
    return parsed.hostname, port


class NReplClient(RpcClient):
    """``RpcClient`` speaking nREPL over TCP."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout
        self._workers: dict[int, _Worker] = {}
        self._session_owner: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def connect(self, address: str) -> int:
        try:
            host, port = _split_address(address)
            conn = _SocketTransport.open(host, port, self._connect_timeout)
        except (OSError, ValueError) as exc:
            raise ReplError(
                ErrorKind.CONNECT_FAILURE,
                f"Connection error: {exc}. Check if nREPL server is running and accessible.",
            ) from exc
        with self._lock:
            connection_id = next(self._ids)
            self._workers[connection_id] = _Worker(connection_id, conn)
        log.info("Connected to %s (connection %d)", address, connection_id)
        return connection_id

    def clone_session(self, connection_id: int) -> str:
        worker = self._worker(connection_id, ErrorKind.CONNECT_FAILURE)
        pending = worker.request_blocking({"op": "clone"})
        if not pending.new_session:
            raise ReplError(
                ErrorKind.CONNECT_FAILURE,
                worker.fault or "Server did not return a new session",
            )
        with self._lock:
            worker.sessions.add(pending.new_session)
            self._session_owner[pending.new_session] = connection_id
        return pending.new_session

    def close_session(self, session_id: str) -> None:
        with self._lock:
            connection_id = self._session_owner.pop(session_id, None)
            worker = self._workers.get(connection_id) if connection_id is not None else None
        if worker is not None:
            worker.close_session(session_id)

    def eval_with_timeout(self, session_id: str, code: str, timeout_ms: int) -> str:
        worker = self._session_worker(session_id)
        return worker.submit(
            {"op": "eval", "session": session_id, "code": code}, timeout_ms
        )

    def load_file(
        self,
        session_id: str,
        contents: str,
        path: str | None,
        name: str | None,
        timeout_ms: int,
    ) -> str:
        message: dict[str, Any] = {"op": "load-file", "session": session_id, "file": contents}
        if path:
            message["file-path"] = path
        if name:
            message["file-name"] = name
        return self._session_worker(session_id).submit(message, timeout_ms)

    def try_get_result(self, connection_id: int, request_id: str) -> EvalPayload | None:
        worker = self._worker(connection_id, ErrorKind.EVAL_TRANSPORT_ERROR)
        return worker.poll(request_id)

    def completions(
        self, session_id: str, prefix: str, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        message: dict[str, Any] = {"op": "completions", "session": session_id, "prefix": prefix}
        if namespace:
            message["ns"] = namespace
        pending = self._session_worker(session_id).request_blocking(
            message, ErrorKind.EVAL_TRANSPORT_ERROR
        )
        found = pending.fields.get("completions") or []
        return [item for item in found if isinstance(item, dict)]

    def lookup(
        self, session_id: str, symbol: str, namespace: str | None = None
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"op": "lookup", "session": session_id, "sym": symbol}
        if namespace:
            message["ns"] = namespace
        pending = self._session_worker(session_id).request_blocking(
            message, ErrorKind.EVAL_TRANSPORT_ERROR
        )
        info = pending.fields.get("info")
        return info if isinstance(info, dict) else {}

    def send_stdin(self, session_id: str, text: str) -> None:
        self._session_worker(session_id).send(
            {"op": "stdin", "session": session_id, "stdin": text}
        )

    def close(self, connection_id: int) -> None:
        with self._lock:
            worker = self._workers.pop(connection_id, None)
            if worker is None:
                return
            for session in worker.sessions:
                self._session_owner.pop(session, None)
        worker.close()
        log.info("Closed connection %d", connection_id)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            workers = list(self._workers.values())
        return {
            "total_connections": len(workers),
            "total_sessions": sum(len(w.sessions) for w in workers),
            "connections": [
                {
                    "id": w.connection_id,
                    "sessions": len(w.sessions),
                    "pending": w.pending_count(),
                }
                for w in workers
            ],
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _worker(self, connection_id: int, kind: ErrorKind) -> _Worker:
        with self._lock:
            worker = self._workers.get(connection_id)
        if worker is None:
            raise ReplError(kind, f"Connection {connection_id} not found")
        return worker

    def _session_worker(self, session_id: str) -> _Worker:
        with self._lock:
            connection_id = self._session_owner.get(session_id)
        if connection_id is None:
            raise ReplError(
                ErrorKind.EVAL_TRANSPORT_ERROR,
                f"Session not found: {session_id}. It may have been closed or never existed.",
            )
        return self._worker(connection_id, ErrorKind.EVAL_TRANSPORT_ERROR)
