from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from hx_nrepl.jack_in import discovery
from hx_nrepl.jack_in.readiness import ReadinessPoller, ReadinessState, probe_tcp


def _probe(*answers: bool):
    """Probe double answering from ``answers``, then repeating the last one."""
    calls = []

    async def probe(host, port):
        calls.append(port)
        index = min(len(calls), len(answers)) - 1
        return answers[index]

    probe.calls = calls
    return probe


def _poller(probe, on_ready=None, **kwargs):
    kwargs.setdefault("initial_delay", 0.0)
    kwargs.setdefault("interval", 0.01)
    kwargs.setdefault("budget", 0.2)
    return ReadinessPoller(
        "127.0.0.1", 7888, on_ready or AsyncMock(), probe=probe, **kwargs,
    )


class TestReadinessPoller:
    @pytest.mark.asyncio
    async def test_ready_fires_callback_once(self):
        on_ready = AsyncMock()
        poller = _poller(_probe(False, False, True), on_ready)
        assert await poller.run() is ReadinessState.READY
        on_ready.assert_awaited_once()
        assert poller.probes == 3
        assert poller.resolved

    @pytest.mark.asyncio
    async def test_times_out(self):
        on_ready = AsyncMock()
        poller = _poller(_probe(False), on_ready, budget=0.05)
        assert await poller.run() is ReadinessState.TIMED_OUT
        on_ready.assert_not_awaited()
        assert poller.probes >= 1

    @pytest.mark.asyncio
    async def test_process_exit_ends_polling(self):
        process = MagicMock()
        process.exited = True
        probe = _probe(True)
        on_ready = AsyncMock()
        poller = _poller(probe, on_ready, process=process)
        assert await poller.run() is ReadinessState.EXITED
        assert probe.calls == []
        on_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_initial_delay(self):
        on_ready = AsyncMock()
        poller = _poller(_probe(True), on_ready, initial_delay=0.05)
        task = asyncio.create_task(poller.run())
        await asyncio.sleep(0)
        assert poller.cancel() is True
        assert await task is ReadinessState.CANCELLED
        on_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_probing(self):
        on_ready = AsyncMock()
        poller = _poller(_probe(False), on_ready, budget=5.0)
        task = asyncio.create_task(poller.run())
        await asyncio.sleep(0.03)
        poller.cancel()
        assert await task is ReadinessState.CANCELLED
        on_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_latch_is_one_shot(self):
        poller = _poller(_probe(True))
        await poller.run()
        assert poller.cancel() is False
        assert poller.state is ReadinessState.READY

    @pytest.mark.asyncio
    async def test_callback_errors_propagate(self):
        on_ready = AsyncMock(side_effect=RuntimeError("handshake"))
        poller = _poller(_probe(True), on_ready)
        with pytest.raises(RuntimeError):
            await poller.run()
        assert poller.state is ReadinessState.READY


class TestProbeTcp:
    @pytest.mark.asyncio
    async def test_open_port(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            assert await probe_tcp("127.0.0.1", port)
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_closed_port(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        assert not await probe_tcp("127.0.0.1", port)


class TestDiscoveryFile:
    def test_write_read_delete(self, tmp_path):
        assert discovery.write_port_file(tmp_path, 7891)
        assert (tmp_path / ".nrepl-port").read_text() == "7891"
        assert discovery.read_port_file(tmp_path) == 7891
        assert discovery.delete_port_file(tmp_path)
        assert discovery.read_port_file(tmp_path) is None

    def test_delete_missing(self, tmp_path):
        assert not discovery.delete_port_file(tmp_path)

    def test_garbage_contents(self, tmp_path):
        (tmp_path / ".nrepl-port").write_text("not a port")
        assert discovery.read_port_file(tmp_path) is None

    def test_write_into_missing_directory(self, tmp_path):
        assert not discovery.write_port_file(tmp_path / "gone", 7888)
