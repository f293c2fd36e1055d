from __future__ import annotations

import asyncio
import io
import queue
import socket
import threading
import time
from unittest.mock import patch

import pytest
from fastbencode import bdecode, bencode

from hx_nrepl.adapter_registry import default_registry
from hx_nrepl.connection import ConnectionManager
from hx_nrepl.errors import ErrorKind, ReplError
from hx_nrepl.nrepl_client import NReplClient, encode_message, read_message


class FakeConnection:
    """Stands in for the socket transport.

    ``respond`` maps an op to a function building the responses for a message.
    """

    def __init__(self):
        self.written: list[dict] = []
        self.inbox: queue.Queue = queue.Queue()
        self.closed = False
        self.released = threading.Event()
        self.respond = {
            "clone": lambda msg: [{"id": msg["id"], "new-session": "s-1", "status": ["done"]}],
            "eval": lambda msg: [
                {"id": msg["id"], "out": "hello\n"},
                {"id": msg["id"], "value": "3", "ns": "user"},
                {"id": msg["id"], "status": ["done"]},
            ],
        }

    def write(self, message):
        self.written.append(message)
        build = self.respond.get(message["op"])
        if build is not None:
            for response in build(message):
                self.inbox.put(response)

    def read(self):
        return self.inbox.get()

    def close(self):
        self.closed = True
        self.inbox.put(None)

    def release(self):
        self.released.set()


class BencodeServer:
    """nREPL peer on a loopback socket, framing by byte counts.

    Handles one client, one request at a time.  ``values`` overrides the
    value returned for a piece of code; ``silent`` accepts and never answers.
    """

    def __init__(self, silent: bool = False):
        self.silent = silent
        self.seen: list[str] = []
        self.ops: list[str] = []
        self.values: dict[str, str] = {}
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self.port = self._listener.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    def stop(self):
        self._listener.close()

    def _serve(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        with conn:
            try:
                self._converse(conn)
            except OSError:
                pass  # client went away mid-reply

    def _converse(self, conn):
        pending = b""
        while True:
            chunk = conn.recv(4096)
            if not chunk:
                return
            if self.silent:
                continue
            pending += chunk
            try:
                message = bdecode(pending)
            except Exception:
                continue  # incomplete, keep reading
            pending = b""
            if not self._answer(conn, message):
                return

    def _answer(self, conn, message) -> bool:
        op = message[b"op"].decode()
        rid = message[b"id"]
        self.ops.append(op)
        if op == "clone":
            self._send(conn, {b"id": rid, b"new-session": b"s-1", b"status": [b"done"]})
        elif op == "eval":
            code = message[b"code"].decode("utf-8")
            self.seen.append(code)
            if code == "(System/exit 0)":
                return False
            value = self.values.get(code, code)
            self._send(conn, {b"id": rid, b"out": "café\n".encode()})
            self._send(conn, {b"id": rid, b"value": value.encode(), b"ns": b"user"})
            self._send(conn, {b"id": rid, b"status": [b"done"]})
        else:
            self._send(conn, {b"id": rid, b"status": [b"done"]})
        return True

    @staticmethod
    def _send(conn, message):
        conn.sendall(bencode(message))


def _poll(client, connection_id, request_id, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        payload = client.try_get_result(connection_id, request_id)
        if payload is not None:
            return payload
        time.sleep(0.005)
    raise AssertionError("request never completed")


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def client(conn):
    client = NReplClient()
    with patch("hx_nrepl.nrepl_client._SocketTransport.open", return_value=conn):
        yield client


@pytest.fixture
def server():
    server = BencodeServer()
    yield server
    server.stop()


class TestWireFormat:
    def test_lengths_count_bytes(self):
        data = encode_message({"op": "eval", "code": "λ"})
        assert b"4:code2:\xce\xbb" in data

    def test_reads_consecutive_messages(self):
        stream = io.BytesIO(
            encode_message({"id": "1", "value": "→"}) + encode_message({"id": "1", "status": ["done"]})
        )
        assert read_message(stream) == {"id": "1", "value": "→"}
        assert read_message(stream) == {"id": "1", "status": ["done"]}
        assert read_message(stream) is None

    def test_nested_and_integer_values(self):
        stream = io.BytesIO(encode_message({"info": {"line": 12, "arglists": ["[x]"]}}))
        assert read_message(stream) == {"info": {"line": 12, "arglists": ["[x]"]}}

    def test_truncated_message(self):
        stream = io.BytesIO(encode_message({"value": "abcdef"})[:-4])
        with pytest.raises(EOFError):
            read_message(stream)


class TestNReplClient:
    def test_connect_failure(self):
        client = NReplClient()
        with patch(
            "hx_nrepl.nrepl_client._SocketTransport.open",
            side_effect=ConnectionRefusedError("no"),
        ):
            with pytest.raises(ReplError) as exc_info:
                client.connect("127.0.0.1:7888")
        assert exc_info.value.kind is ErrorKind.CONNECT_FAILURE

    def test_connect_accepts_bracketed_ipv6(self, client):
        with patch("hx_nrepl.nrepl_client._SocketTransport.open") as opener:
            opener.return_value = FakeConnection()
            client.connect("[::1]:7888")
        assert opener.call_args.args[:2] == ("::1", 7888)

    def test_clone_and_eval(self, client, conn):
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        assert session == "s-1"

        request_id = client.eval_with_timeout(session, "(+ 1 2)", 5000)
        payload = _poll(client, connection_id, request_id)

        assert payload.value == "3"
        assert payload.out == ["hello\n"]
        assert payload.ns == "user"
        assert "done" in payload.status
        assert conn.written[-1] == {
            "op": "eval", "session": "s-1", "code": "(+ 1 2)", "id": request_id,
        }

    def test_result_is_collected_once(self, client):
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        request_id = client.eval_with_timeout(session, "x", 5000)
        _poll(client, connection_id, request_id)
        with pytest.raises(ReplError) as exc_info:
            client.try_get_result(connection_id, request_id)
        assert exc_info.value.kind is ErrorKind.EVAL_TRANSPORT_ERROR

    def test_timeout(self, client, conn):
        conn.respond["eval"] = lambda msg: []
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        request_id = client.eval_with_timeout(session, "(Thread/sleep 10000)", 20)
        assert client.try_get_result(connection_id, request_id) is None
        time.sleep(0.05)
        with pytest.raises(ReplError) as exc_info:
            client.try_get_result(connection_id, request_id)
        assert exc_info.value.kind is ErrorKind.EVAL_TIMEOUT

    def test_connection_lost(self, client, conn):
        conn.respond["eval"] = lambda msg: []
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        request_id = client.eval_with_timeout(session, "(loop [] (recur))", 60_000)
        conn.inbox.put(None)  # server hangs up
        time.sleep(0.05)
        with pytest.raises(ReplError) as exc_info:
            client.try_get_result(connection_id, request_id)
        assert exc_info.value.kind is ErrorKind.EVAL_TRANSPORT_ERROR
        assert conn.released.wait(1.0)

    def test_unknown_session(self, client):
        with pytest.raises(ReplError) as exc_info:
            client.eval_with_timeout("nope", "x", 1000)
        assert exc_info.value.kind is ErrorKind.EVAL_TRANSPORT_ERROR

    def test_load_file_message(self, client, conn):
        conn.respond["load-file"] = lambda msg: [{"id": msg["id"], "value": "#'a/f", "status": ["done"]}]
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        request_id = client.load_file(session, "(ns a)", "/src/a.clj", "a.clj", 5000)
        assert _poll(client, connection_id, request_id).value == "#'a/f"
        sent = conn.written[-1]
        assert sent["op"] == "load-file"
        assert sent["file"] == "(ns a)"
        assert sent["file-path"] == "/src/a.clj"
        assert sent["file-name"] == "a.clj"

    def test_completions(self, client, conn):
        conn.respond["completions"] = lambda msg: [{
            "id": msg["id"],
            "completions": [
                {"candidate": "map", "type": "function", "ns": "clojure.core"},
                {"candidate": "mapv", "type": "function", "ns": "clojure.core"},
            ],
            "status": ["done"],
        }]
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)

        found = client.completions(session, "ma", "user")

        assert [item["candidate"] for item in found] == ["map", "mapv"]
        sent = conn.written[-1]
        assert (sent["op"], sent["prefix"], sent["ns"]) == ("completions", "ma", "user")

    def test_lookup(self, client, conn):
        conn.respond["lookup"] = lambda msg: [{
            "id": msg["id"],
            "info": {"name": "map", "ns": "clojure.core", "doc": "Returns a lazy sequence"},
            "status": ["done"],
        }]
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)

        info = client.lookup(session, "map")

        assert info["doc"] == "Returns a lazy sequence"
        assert conn.written[-1]["sym"] == "map"
        assert "ns" not in conn.written[-1]

    def test_lookup_without_info(self, client, conn):
        conn.respond["lookup"] = lambda msg: [{"id": msg["id"], "status": ["done", "no-info"]}]
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        assert client.lookup(session, "nope") == {}

    def test_stdin_is_sent_without_waiting(self, client, conn):
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        client.send_stdin(session, "yes\n")
        sent = conn.written[-1]
        assert (sent["op"], sent["stdin"], sent["session"]) == ("stdin", "yes\n", "s-1")
        assert client.stats()["connections"][0]["pending"] == 0

    def test_close_session(self, client, conn):
        connection_id = client.connect("127.0.0.1:7888")
        session = client.clone_session(connection_id)
        client.close_session(session)
        assert {"op": "close", "session": "s-1"}.items() <= conn.written[-1].items()
        assert client.stats()["total_sessions"] == 0
        with pytest.raises(ReplError):
            client.eval_with_timeout(session, "x", 1000)

    def test_close_releases_sessions(self, client, conn):
        connection_id = client.connect("127.0.0.1:7888")
        client.clone_session(connection_id)
        assert client.stats()["total_sessions"] == 1

        client.close(connection_id)

        assert conn.closed
        assert {"op": "close", "session": "s-1"}.items() <= conn.written[-1].items()
        assert client.stats() == {"total_connections": 0, "total_sessions": 0, "connections": []}
        with pytest.raises(ReplError):
            client.eval_with_timeout("s-1", "x", 1000)


class TestSocketTransport:
    def test_non_ascii_code_reaches_server(self, server):
        client = NReplClient(connect_timeout=2.0)
        connection_id = client.connect(server.address)
        session = client.clone_session(connection_id)

        request_id = client.eval_with_timeout(session, '(str "λx→y")', 2000)
        payload = _poll(client, connection_id, request_id)

        assert server.seen == ['(str "λx→y")']
        assert payload.value == '(str "λx→y")'
        assert payload.out == ["café\n"]
        client.close(connection_id)

    def test_non_ascii_value_keeps_connection_alive(self, server):
        server.values["(greek)"] = '"λ→"'
        client = NReplClient(connect_timeout=2.0)
        connection_id = client.connect(server.address)
        session = client.clone_session(connection_id)

        first = _poll(client, connection_id, client.eval_with_timeout(session, "(greek)", 2000))
        second = _poll(client, connection_id, client.eval_with_timeout(session, "(+ 1 2)", 2000))

        assert first.value == '"λ→"'
        assert second.value == "(+ 1 2)"
        client.close(connection_id)

    def test_server_hangup_fails_pending_eval(self, server):
        client = NReplClient(connect_timeout=2.0)
        connection_id = client.connect(server.address)
        session = client.clone_session(connection_id)
        request_id = client.eval_with_timeout(session, "(System/exit 0)", 5000)

        with pytest.raises(ReplError) as exc_info:
            _poll(client, connection_id, request_id)
        assert exc_info.value.kind is ErrorKind.EVAL_TRANSPORT_ERROR
        client.close(connection_id)

    def test_close_returns_while_reader_waits(self):
        server = BencodeServer(silent=True)
        try:
            client = NReplClient(connect_timeout=2.0)
            connection_id = client.connect(server.address)
            started = time.monotonic()
            client.close(connection_id)
            assert time.monotonic() - started < 1.0
        finally:
            server.stop()

    def test_refused_port(self):
        with socket.socket() as holder:
            holder.bind(("127.0.0.1", 0))
            port = holder.getsockname()[1]
        client = NReplClient(connect_timeout=1.0)
        with pytest.raises(ReplError) as exc_info:
            client.connect(f"127.0.0.1:{port}")
        assert exc_info.value.kind is ErrorKind.CONNECT_FAILURE

    @pytest.mark.asyncio
    async def test_silent_server_fails_within_connect_timeout(self):
        server = BencodeServer(silent=True)
        manager = ConnectionManager(
            NReplClient(connect_timeout=0.5),
            default_registry(),
            timeout_ms=1000,
            connect_timeout=0.5,
        )
        try:
            started = time.monotonic()
            with pytest.raises(ReplError) as exc_info:
                await asyncio.wait_for(manager.connect(server.address), timeout=5.0)
            assert exc_info.value.kind is ErrorKind.CONNECT_FAILURE
            assert time.monotonic() - started < 2.0
            assert not manager.state.connected
            assert manager.rpc.stats()["total_connections"] == 0
        finally:
            server.stop()
