"""Process Supervisor — spawns, tracks, and kills jack-in server processes."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal

from hx_nrepl.jack_in.ports import listening_pids
from hx_nrepl.models import RingBuffer, SpawnedProcess

log = logging.getLogger(__name__)


class ProcessSupervisor:
    """Owns the server processes started by jack-in."""

    def __init__(self) -> None:
        self._processes: dict[int, SpawnedProcess] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def spawn(self, command: str, root: str, port: int) -> SpawnedProcess | None:
        """Start ``command`` through the shell in ``root``.

        Output goes to in-memory ring buffers, never to the editor's
        terminal.  Returns ``None`` if the process could not be launched.
        """
        if not os.path.isdir(root):
            log.error("Cannot spawn in missing directory: %s", root)
            return None

        try:
            handle = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=root,
                # New process group so the server's children die with it
                preexec_fn=os.setsid,
            )
        except OSError as exc:
            log.error("Failed to start %r: %s", command, exc)
            return None

        spawned = SpawnedProcess(
            handle=handle,
            command=command,
            port=port,
            workspace_root=root,
        )
        spawned._reader_tasks = [
            asyncio.create_task(
                self._read_stream(handle.stdout, spawned.stdout_buf),  # type: ignore[arg-type]
                name=f"nrepl-{port}-stdout",
            ),
            asyncio.create_task(
                self._read_stream(handle.stderr, spawned.stderr_buf),  # type: ignore[arg-type]
                name=f"nrepl-{port}-stderr",
            ),
        ]
        self._processes[handle.pid] = spawned
        log.info("Spawned %r (pid=%s, port=%d)", command, handle.pid, port)
        return spawned

    async def kill(self, process: SpawnedProcess, timeout: float = 5.0) -> bool:
        """Signal every process listening on the recorded port.

        Returns whether any listener was found.  The launcher's process
        group is terminated too, which covers servers that never bound.
        """
        pids = listening_pids(process.port)
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
                log.info("Sent SIGTERM to pid %d listening on port %d", pid, process.port)
            except (ProcessLookupError, PermissionError) as exc:
                log.warning("Could not signal pid %d: %s", pid, exc)

        if not process.exited:
            await self._terminate_group(process, timeout)

        # Let the readers drain what the process wrote before dying
        tasks = [t for t in process._reader_tasks if not t.done()]
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=1.0)
            for task in pending:
                task.cancel()

        self._processes.pop(process.handle.pid, None)
        return bool(pids)

    def get_output(self, process: SpawnedProcess, tail: int = 4000) -> str | None:
        """Recent stdout/stderr of ``process``, or ``None`` if it wrote nothing."""
        parts: list[str] = []
        stdout = process.stdout_buf.tail(tail)
        stderr = process.stderr_buf.tail(tail)
        if stdout.strip():
            parts.append(stdout.rstrip("\n"))
        if stderr.strip():
            parts.append(stderr.rstrip("\n"))
        if not parts:
            return None
        return "\n".join(parts)

    async def stop_all(self) -> None:
        """Kill every process still tracked."""
        for process in list(self._processes.values()):
            try:
                await self.kill(process)
            except OSError:
                log.exception("Failed to stop pid %s", process.pid)

    @property
    def processes(self) -> list[SpawnedProcess]:
        return list(self._processes.values())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _terminate_group(process: SpawnedProcess, timeout: float) -> None:
        handle = process.handle
        pgid: int | None
        try:
            pgid = os.getpgid(handle.pid)
            os.killpg(pgid, signal.SIGTERM)
        except OSError:
            # Already reaped; the exit status may still be in flight
            pgid = None

        try:
            await asyncio.wait_for(handle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            if pgid is None:
                log.warning("pid %s is gone but reported no exit status", handle.pid)
                return
            try:
                os.killpg(pgid, signal.SIGKILL)
            except (ProcessLookupError, OSError):
                pass
            try:
                await asyncio.wait_for(handle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("pid %s did not exit after SIGKILL", handle.pid)

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader,
        buf: RingBuffer,
    ) -> None:
        """Read from an async stream into a ring buffer."""
        # Incremental so a character split across chunks survives
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    buf.append(text)
        except asyncio.CancelledError:
            pass
        tail = decoder.decode(b"", final=True)
        if tail:
            buf.append(tail)
