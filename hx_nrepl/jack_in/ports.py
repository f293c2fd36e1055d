"""Linear probe for a TCP port nobody holds.

There is no reservation between the probe and the server's bind; a server
that loses that race exits and jack-in reports it as a retryable failure.
"""

from __future__ import annotations

import logging
from typing import Any

import psutil

log = logging.getLogger(__name__)


def tcp_connections() -> list[tuple[int | None, Any]]:
    """Return ``(pid, connection)`` pairs for every TCP socket on the machine.

    Falls back to per-process inspection when the system-wide call is denied
    (macOS without root); only processes we may inspect are reported then.
    """
    try:
        return [(conn.pid, conn) for conn in psutil.net_connections(kind="tcp")]
    except psutil.AccessDenied:
        log.debug("System-wide connection listing denied, scanning processes")

    found: list[tuple[int | None, Any]] = []
    for proc in psutil.process_iter():
        try:
            for conn in proc.net_connections(kind="tcp"):
                found.append((proc.pid, conn))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return found


def _port(addr: Any) -> int | None:
    return getattr(addr, "port", None)


def port_in_use(port: int, connections: list[tuple[int | None, Any]]) -> bool:
    for _pid, conn in connections:
        if _port(conn.laddr) == port or _port(conn.raddr) == port:
            return True
    return False


def find_free_port(low: int, high: int) -> int | None:
    """First port in ``[low, high]`` with no listening or connected socket."""
    connections = tcp_connections()
    for port in range(low, high + 1):
        if not port_in_use(port, connections):
            return port
    log.warning("No free port in range %d-%d", low, high)
    return None


def listening_pids(port: int) -> set[int]:
    """PIDs with a socket *listening* on ``port``.

    Client sockets connected to the port are ignored so the editor's own
    connection is never a match.
    """
    pids: set[int] = set()
    for pid, conn in tcp_connections():
        if pid and conn.status == psutil.CONN_LISTEN and _port(conn.laddr) == port:
            pids.add(pid)
    return pids
