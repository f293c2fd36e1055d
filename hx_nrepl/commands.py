"""Command handlers, the only place errors are caught.

Every handler returns a result dict.  A ``ReplError`` raised anywhere below
becomes a status message plus a commented record in the REPL buffer; the
kinds that reset the connection put the state back to disconnected.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from . import alias_store
from .adapter import first_line
from .context import ReplContext
from .errors import ErrorKind, ReplError
from .jack_in.discovery import delete_port_file, read_port_file, write_port_file
from .jack_in.ports import find_free_port
from .jack_in.readiness import ReadinessPoller, ReadinessState, probe_tcp
from .models import AliasInfo, EvalOutcome, ProjectInfo, ProjectType, SpawnedProcess, SplitOrientation
from .project import detect_project, find_project_root

log = logging.getLogger(__name__)


class ReplCommands:

    def __init__(self, context: ReplContext) -> None:
        self.ctx = context

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    def _output(self, text: str) -> None:
        state = self.ctx.manager.state
        host = self.ctx.host
        host.show_buffer(state.buffer_name, state.orientation)
        host.set_language(state.buffer_name, state.adapter.language_name)
        host.append(state.buffer_name, text)

    def _report(self, exc: ReplError) -> dict[str, Any]:
        if exc.resets_connection:
            self.ctx.manager.reset()
        adapter = self.ctx.manager.state.adapter
        record = adapter.comment(f"{exc.kind.value}: {exc.message}")
        if exc.details:
            record += adapter.comment(exc.details)
        self._output(record + "\n")
        self.ctx.host.status(exc.message)
        log.warning("%s: %s", exc.kind.value, exc.message)
        return {
            "ok": False,
            "error": exc.kind.value,
            "message": exc.message,
            "details": exc.details,
        }

    async def _guard(
        self,
        name: str,
        action: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            return await action()
        except ReplError as exc:
            return self._report(exc)
        except Exception as exc:
            log.exception("Command %s failed", name)
            return self._report(ReplError(ErrorKind.INTERNAL, f"{name} failed: {exc}"))

    def _outcome(self, outcome: EvalOutcome) -> dict[str, Any]:
        self._output(outcome.rendered)
        result = outcome.result
        if outcome.summary:
            self.ctx.host.status(outcome.summary)
        elif result is not None and result.value is not None:
            self.ctx.host.status(f"=> {first_line(result.value) or ''}")
        return {
            "ok": outcome.ok,
            "status": outcome.status.value,
            "value": result.value if result else None,
            "output": list(result.output) if result else [],
            "error": result.error if result else outcome.summary,
            "ns": self.ctx.manager.state.namespace,
        }

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, address: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            manager = self.ctx.manager
            if manager.state.connected:
                raise ReplError(
                    ErrorKind.ALREADY_CONNECTED,
                    f"Already connected to {manager.state.address}. Disconnect first.",
                )
            adapter = manager.ensure_adapter(self.ctx.host.current_language())
            state = await manager.connect(address)
            self._output(adapter.comment(f"Connected to nREPL at {state.address}") + "\n")
            self.ctx.host.status(f"Connected to {state.address}")
            return {"ok": True, "address": state.address, "session": state.session_id}

        return await self._guard("connect", action)

    async def disconnect(self, kill_server: bool | None = None) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            poller = self.ctx.pending_poller
            cancelled = poller is not None and poller.cancel()
            manager = self.ctx.manager
            if not manager.state.connected and not cancelled:
                raise ReplError(ErrorKind.NOT_CONNECTED, "Not connected to an nREPL server.")

            address = manager.state.address
            spawned = await manager.disconnect()
            killed = False
            if spawned is not None:
                if kill_server is None:
                    kill = self.ctx.host.confirm(
                        f"Stop the nREPL server on port {spawned.port} started by jack-in?"
                    )
                else:
                    kill = kill_server
                if kill:
                    await self.ctx.supervisor.kill(spawned)
                    delete_port_file(spawned.workspace_root)
                    killed = True
                else:
                    log.info("Leaving nREPL server on port %d running", spawned.port)

            if address:
                message = f"Disconnected from {address}"
                self._output(manager.state.adapter.comment(message) + "\n")
            else:
                message = "Jack-in cancelled"
            self.ctx.host.status(message)
            return {"ok": True, "killed_server": killed}

        return await self._guard("disconnect", action)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def eval(self, code: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            self.ctx.manager.ensure_adapter(self.ctx.host.current_language())
            outcome = await self.ctx.scheduler.evaluate(code)
            return self._outcome(outcome)

        return await self._guard("eval", action)

    async def eval_all(self, fragments: Sequence[str]) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            self.ctx.manager.ensure_adapter(self.ctx.host.current_language())
            outcomes = await self.ctx.scheduler.evaluate_all(fragments)
            results = [self._outcome(outcome) for outcome in outcomes]
            return {
                "ok": all(r["ok"] for r in results),
                "results": results,
            }

        return await self._guard("eval_all", action)

    async def load_file(self, path: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            outcome = await self.ctx.scheduler.load_file(path)
            return self._outcome(outcome)

        return await self._guard("load_file", action)

    async def send_stdin(self, text: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            await self.ctx.manager.send_stdin(text)
            return {"ok": True}

        return await self._guard("send_stdin", action)

    # ------------------------------------------------------------------
    # Completion and lookup
    # ------------------------------------------------------------------

    async def completions(self, prefix: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            if not prefix.strip():
                raise ReplError(ErrorKind.INVALID_INPUT, "Completion prefix is empty")
            found = await self.ctx.manager.completions(prefix.strip())
            candidates = [
                {"candidate": str(item["candidate"]), "type": item.get("type"), "ns": item.get("ns")}
                for item in found
                if item.get("candidate")
            ]
            return {"ok": True, "prefix": prefix.strip(), "completions": candidates}

        return await self._guard("completions", action)

    async def lookup(self, symbol: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            if not symbol.strip():
                raise ReplError(ErrorKind.INVALID_INPUT, "Symbol is empty")
            info = await self.ctx.manager.lookup(symbol.strip())
            if not info:
                self.ctx.host.status(f"No information for {symbol.strip()}")
                return {"ok": True, "symbol": symbol.strip(), "found": False, "info": {}}
            adapter = self.ctx.manager.state.adapter
            heading = "/".join(str(info[k]) for k in ("ns", "name") if info.get(k))
            lines = [heading or symbol.strip()]
            if info.get("arglists-str"):
                lines.append(str(info["arglists-str"]))
            if info.get("doc"):
                lines.append(str(info["doc"]))
            self._output(adapter.comment("\n".join(lines)) + "\n")
            return {"ok": True, "symbol": symbol.strip(), "found": True, "info": info}

        return await self._guard("lookup", action)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def set_timeout(self, timeout_ms: int) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            try:
                state = self.ctx.manager.set_timeout(int(timeout_ms))
            except ValueError as exc:
                raise ReplError(ErrorKind.INVALID_INPUT, str(exc)) from exc
            self.ctx.host.status(f"Eval timeout set to {state.timeout_ms} ms")
            return {"ok": True, "timeout_ms": state.timeout_ms}

        return await self._guard("set_timeout", action)

    async def set_orientation(self, orientation: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            try:
                value = SplitOrientation(orientation.strip().lower())
            except ValueError as exc:
                raise ReplError(
                    ErrorKind.INVALID_INPUT,
                    f"Orientation must be 'vertical' or 'horizontal', got {orientation!r}",
                ) from exc
            state = self.ctx.manager.set_orientation(value)
            return {"ok": True, "orientation": state.orientation.value}

        return await self._guard("set_orientation", action)

    def status(self) -> dict[str, Any]:
        state = self.ctx.manager.state
        spawned = state.spawned
        return {
            "connected": state.connected,
            "address": state.address,
            "session": state.session_id,
            "namespace": state.namespace,
            "timeout_ms": state.timeout_ms,
            "orientation": state.orientation.value,
            "adapter": state.adapter.language_name,
            "jack_in_pending": bool(self.ctx.pending_poller and not self.ctx.pending_poller.resolved),
            "server": None if spawned is None else {
                "pid": spawned.pid,
                "port": spawned.port,
                "command": spawned.command,
                "workspace": spawned.workspace_root,
            },
        }

    # ------------------------------------------------------------------
    # Jack-in
    # ------------------------------------------------------------------

    async def jack_in(
        self,
        workspace: str | None = None,
        aliases: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        return await self._guard("jack_in", lambda: self._jack_in(workspace, aliases))

    async def _jack_in(
        self,
        workspace: str | None,
        aliases: Sequence[str] | None,
    ) -> dict[str, Any]:
        ctx = self.ctx
        cfg = ctx.config
        manager = ctx.manager
        if manager.state.connected:
            raise ReplError(
                ErrorKind.ALREADY_CONNECTED,
                f"Already connected to {manager.state.address}. Disconnect first.",
            )
        if ctx.pending_poller is not None and not ctx.pending_poller.resolved:
            raise ReplError(ErrorKind.ALREADY_CONNECTED, "A jack-in is already in progress.")

        if workspace:
            try:
                start = cfg.resolve_workspace(workspace)
            except ValueError as exc:
                raise ReplError(ErrorKind.INVALID_INPUT, str(exc)) from exc
        else:
            start = ctx.host.workspace_root()
        root = find_project_root(start) or start
        project = detect_project(root)
        if project.project_type is ProjectType.NONE:
            raise ReplError(
                ErrorKind.PROJECT_NOT_FOUND,
                f"No deps.edn, bb.edn or project.clj found in {start} or its parents",
            )
        adapter = manager.ensure_adapter(ctx.host.current_language())

        if project.has_discovery_file:
            reused = await self._reuse_running_server(root)
            if reused is not None:
                return reused

        declared = project.aliases
        chosen = self._choose_aliases(project, aliases)
        project = dataclasses.replace(project, aliases=chosen or None)

        port = find_free_port(cfg.port_low, cfg.port_high)
        if port is None:
            raise ReplError(
                ErrorKind.PORT_EXHAUSTED,
                f"No free port between {cfg.port_low} and {cfg.port_high}",
            )

        command = adapter.jack_in_command(project, port)
        if command is None:
            raise ReplError(
                ErrorKind.JACK_IN_UNSUPPORTED,
                f"Jack-in is not supported for {adapter.language_name} buffers",
            )
        if declared:
            alias_store.save(project.project_root, [alias.name for alias in chosen])

        self._output(adapter.comment(f"Starting nREPL server: {command}"))
        process = await ctx.supervisor.spawn(command, root, port)
        if process is None:
            raise ReplError(ErrorKind.SPAWN_FAILURE, f"Could not launch: {command}")
        if not write_port_file(root, port):
            await ctx.supervisor.kill(process)
            raise ReplError(
                ErrorKind.FILE_IO_FAILURE,
                f"Could not write the .nrepl-port file in {root}",
            )

        address = f"{cfg.host}:{port}"
        poller = ReadinessPoller(
            cfg.host,
            port,
            lambda: manager.connect(address, spawned=process),
            process=process,
            initial_delay=cfg.ready_initial_delay,
            interval=cfg.ready_interval,
            budget=cfg.ready_budget,
        )
        ctx.pending_poller = poller
        try:
            try:
                outcome = await poller.run()
            except ReplError as exc:
                details = await self._abandon(process)
                raise ReplError(
                    ErrorKind.HANDSHAKE_FAILURE_AFTER_READY,
                    f"nREPL server on port {port} failed to start: {exc.message}",
                    details,
                ) from exc
            except BaseException:
                # Request cancelled or connect blew up: nothing owns the server
                poller.cancel()
                await self._abandon(process)
                raise
        finally:
            if ctx.pending_poller is poller:
                ctx.pending_poller = None

        if outcome is ReadinessState.READY:
            state = manager.state
            self._output(adapter.comment(f"Connected to nREPL at {state.address}") + "\n")
            ctx.host.status(f"Jacked in on port {port}")
            return {
                "ok": True,
                "address": state.address,
                "session": state.session_id,
                "command": command,
                "aliases": [alias.name for alias in chosen],
                "reused": False,
            }

        details = await self._abandon(process)
        if outcome is ReadinessState.TIMED_OUT:
            raise ReplError(
                ErrorKind.READINESS_TIMEOUT,
                f"nREPL server did not start in time ({cfg.ready_budget:g}s)",
                details,
            )
        if outcome is ReadinessState.EXITED:
            raise ReplError(
                ErrorKind.SPAWN_FAILURE,
                f"nREPL server exited with code {process.handle.returncode} before "
                f"accepting connections; port {port} may have been taken, try again",
                details,
            )
        raise ReplError(ErrorKind.CANCELLED, "Jack-in cancelled")

    async def _reuse_running_server(self, root: str) -> dict[str, Any] | None:
        port = read_port_file(root)
        if port is not None and await probe_tcp(self.ctx.config.host, port):
            state = await self.ctx.manager.connect(f"{self.ctx.config.host}:{port}")
            self._output(
                state.adapter.comment(f"Connected to running nREPL at {state.address}") + "\n"
            )
            self.ctx.host.status(f"Connected to running server on port {port}")
            return {
                "ok": True,
                "address": state.address,
                "session": state.session_id,
                "reused": True,
            }
        log.info("Removing stale .nrepl-port in %s", root)
        delete_port_file(root)
        return None

    def _choose_aliases(
        self,
        project: ProjectInfo,
        requested: Sequence[str] | None,
    ) -> tuple[AliasInfo, ...]:
        if not project.aliases:
            if requested:
                raise ReplError(
                    ErrorKind.INVALID_INPUT,
                    f"{project.project_file or project.project_root} declares no aliases",
                )
            return ()
        by_name = {alias.name: alias for alias in project.aliases}

        if requested is None:
            preselected = alias_store.load(project.project_root) or []
            names = self.ctx.host.pick_aliases(project.aliases, preselected)
            if names is None:
                raise ReplError(ErrorKind.CANCELLED, "Jack-in cancelled")
        else:
            names = [name.lstrip(":") for name in requested]

        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise ReplError(
                ErrorKind.INVALID_INPUT,
                f"Unknown alias(es): {', '.join(unknown)}. "
                f"Available: {', '.join(by_name)}",
            )
        return tuple(by_name[name] for name in names)

    async def _abandon(self, process: SpawnedProcess) -> str | None:
        """Kill a server that never became usable and return its output."""
        await self.ctx.supervisor.kill(process)
        delete_port_file(process.workspace_root)
        return self.ctx.supervisor.get_output(process)
