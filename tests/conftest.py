"""Shared fixtures: an in-memory RPC client and a ready-made REPL context."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass

import pytest

from hx_nrepl.config import Config
from hx_nrepl.context import ReplContext
from hx_nrepl.errors import ErrorKind, ReplError
from hx_nrepl.host import BufferHost
from hx_nrepl.rpc import EvalPayload, RpcClient


@dataclass
class Scripted:
    """How the fake answers one piece of code."""

    payload: EvalPayload | None = None
    polls: int = 0  # pending polls before the answer
    error: ReplError | None = None


@dataclass
class FakeRequest:
    connection_id: int
    code: str
    script: Scripted
    polls_seen: int = 0
    finished: bool = False


class FakeRpc(RpcClient):
    """RpcClient double that answers from a script instead of a socket."""

    def __init__(self) -> None:
        self.scripts: dict[str, Scripted] = {}
        self.requests: dict[str, FakeRequest] = {}
        self.submitted: list[str] = []
        self.connected: list[str] = []
        self.closed: list[int] = []
        self.closed_sessions: list[str] = []
        self.stdin: list[str] = []
        self.completion_candidates: list[dict] = []
        self.symbols: dict[str, dict] = {}
        self.refuse: set[str] = set()
        self.polls_after_finish = 0
        self._next_conn = 0
        self._next_req = 0
        self._sessions: dict[str, int] = {}
        self._namespace: dict[int, str] = {}

    def script(
        self,
        code: str,
        *,
        value: str | None = "nil",
        out: list[str] | None = None,
        err: list[str] | None = None,
        ns: str | None = None,
        polls: int = 0,
        error: ReplError | None = None,
    ) -> None:
        payload = EvalPayload(
            value=value, out=list(out or []), err=list(err or []), ns=ns, status={"done"},
        )
        self.scripts[code] = Scripted(payload=payload, polls=polls, error=error)

    def connect(self, address: str) -> int:
        if address in self.refuse:
            raise ReplError(ErrorKind.CONNECT_FAILURE, f"Connection refused: {address}")
        self._next_conn += 1
        self.connected.append(address)
        self._namespace[self._next_conn] = "user"
        return self._next_conn

    def clone_session(self, connection_id: int) -> str:
        session = f"session-{connection_id}"
        self._sessions[session] = connection_id
        return session

    def eval_with_timeout(self, session_id: str, code: str, timeout_ms: int) -> str:
        connection_id = self._sessions[session_id]
        self._next_req += 1
        request_id = f"req-{self._next_req}"
        script = self.scripts.get(code) or Scripted(
            payload=EvalPayload(value="nil", status={"done"}),
        )
        self.requests[request_id] = FakeRequest(connection_id, code, script)
        self.submitted.append(code)
        return request_id

    def load_file(self, session_id, contents, path, name, timeout_ms) -> str:
        return self.eval_with_timeout(session_id, contents, timeout_ms)

    def try_get_result(self, connection_id: int, request_id: str) -> EvalPayload | None:
        request = self.requests[request_id]
        if request.finished:
            self.polls_after_finish += 1
            raise ReplError(ErrorKind.EVAL_TRANSPORT_ERROR, "request already collected")
        if request.polls_seen < request.script.polls:
            request.polls_seen += 1
            return None
        request.finished = True
        if request.script.error is not None:
            raise request.script.error
        scripted = request.script.payload
        if scripted is None:
            return None
        if scripted.ns:
            self._namespace[connection_id] = scripted.ns
        return dataclasses.replace(scripted, ns=self._namespace[connection_id])

    def completions(self, session_id, prefix, namespace=None) -> list[dict]:
        return [c for c in self.completion_candidates if c["candidate"].startswith(prefix)]

    def lookup(self, session_id, symbol, namespace=None) -> dict:
        return dict(self.symbols.get(symbol, {}))

    def send_stdin(self, session_id: str, text: str) -> None:
        self.stdin.append(text)

    def close_session(self, session_id: str) -> None:
        self.closed_sessions.append(session_id)

    def close(self, connection_id: int) -> None:
        self.closed.append(connection_id)


@pytest.fixture
def config() -> Config:
    return Config(
        ready_initial_delay=0.0,
        ready_interval=0.01,
        ready_budget=0.2,
    )


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def host(tmp_path) -> BufferHost:
    return BufferHost(str(tmp_path), language="clojure")


@pytest.fixture
def context(config, host, rpc) -> ReplContext:
    return ReplContext.create(config, host, rpc)
