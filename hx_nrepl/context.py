from __future__ import annotations

import logging
from dataclasses import dataclass

from .adapter_registry import AdapterRegistry, default_registry
from .config import Config
from .connection import ConnectionManager
from .host import EditorHost
from .jack_in.discovery import delete_port_file
from .jack_in.readiness import ReadinessPoller
from .jack_in.supervisor import ProcessSupervisor
from .rpc import RpcClient
from .scheduler import EvaluationScheduler

log = logging.getLogger(__name__)


@dataclass
class ReplContext:
    """Everything the command handlers share, created once per activation."""

    config: Config
    host: EditorHost
    registry: AdapterRegistry
    manager: ConnectionManager
    scheduler: EvaluationScheduler
    supervisor: ProcessSupervisor
    pending_poller: ReadinessPoller | None = None

    @classmethod
    def create(
        cls,
        config: Config,
        host: EditorHost,
        rpc: RpcClient,
        *,
        registry: AdapterRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> ReplContext:
        reg = registry or default_registry(config)
        manager = ConnectionManager(
            rpc,
            reg,
            timeout_ms=config.timeout_ms,
            connect_timeout=config.connect_timeout,
            default_host=config.host,
        )
        return cls(
            config=config,
            host=host,
            registry=reg,
            manager=manager,
            scheduler=EvaluationScheduler(manager),
            supervisor=supervisor or ProcessSupervisor(),
        )

    async def close(self) -> None:
        """Deactivate: stop a pending jack-in, disconnect, stop owned servers."""
        if self.pending_poller is not None:
            self.pending_poller.cancel()
        spawned = await self.manager.disconnect()
        if spawned is not None:
            await self.supervisor.kill(spawned)
            delete_port_file(spawned.workspace_root)
        for process in self.supervisor.processes:
            delete_port_file(process.workspace_root)
        await self.supervisor.stop_all()
        log.info("Context closed")
