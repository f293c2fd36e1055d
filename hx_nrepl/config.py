from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    host: str = "127.0.0.1"
    port_low: int = 7888
    port_high: int = 7988
    timeout_ms: int = 60_000
    connect_timeout: float = 10.0
    ready_initial_delay: float = 2.0
    ready_interval: float = 0.5
    ready_budget: float = 30.0
    nrepl_version: str = "1.3.1"
    cider_version: str = "0.52.0"

    def __post_init__(self) -> None:
        if self.port_low > self.port_high:
            raise ValueError(
                f"Port range is empty: {self.port_low}-{self.port_high}"
            )
        if self.timeout_ms <= 0:
            raise ValueError(f"Timeout must be positive, got {self.timeout_ms}")

    def resolve_workspace(self, relative: str | None = None) -> str:
        """Resolve a user-provided workspace path against the current directory.

        Raises ValueError if the resolved directory does not exist.
        """
        resolved = Path(relative).expanduser().resolve() if relative else Path.cwd()
        if not resolved.is_dir():
            raise ValueError(f"Workspace directory does not exist: {resolved}")
        return str(resolved)

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        return cls(
            host=os.getenv("HX_NREPL_HOST", "127.0.0.1"),
            port_low=_env_int("HX_NREPL_PORT_LOW", 7888),
            port_high=_env_int("HX_NREPL_PORT_HIGH", 7988),
            timeout_ms=_env_int("HX_NREPL_TIMEOUT_MS", 60_000),
            connect_timeout=_env_float("HX_NREPL_CONNECT_TIMEOUT", 10.0),
            ready_initial_delay=_env_float("HX_NREPL_READY_INITIAL_DELAY", 2.0),
            ready_interval=_env_float("HX_NREPL_READY_INTERVAL", 0.5),
            ready_budget=_env_float("HX_NREPL_READY_BUDGET", 30.0),
            nrepl_version=os.getenv("HX_NREPL_NREPL_VERSION", "1.3.1"),
            cider_version=os.getenv("HX_NREPL_CIDER_VERSION", "0.52.0"),
        )
