from __future__ import annotations

import asyncio
import enum
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .adapter import Adapter


DEFAULT_NAMESPACE = "user"
DEFAULT_TIMEOUT_MS = 60_000
REPL_BUFFER_NAME = "*nrepl*"


class SplitOrientation(enum.Enum):
    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"


class ProjectType(enum.Enum):
    CLOJURE_CLI = "clojure-cli"   # deps.edn
    BABASHKA = "babashka"         # bb.edn
    LEININGEN = "leiningen"       # project.clj
    NONE = "none"


class EvalStatus(enum.Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (EvalStatus.COMPLETED, EvalStatus.ERRORED, EvalStatus.TIMED_OUT)


# ---------------------------------------------------------------------------
# Project detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AliasInfo:
    name: str
    has_main_opts: bool = False
    description: str | None = None


@dataclass(frozen=True)
class ProjectInfo:
    project_type: ProjectType
    project_root: str
    project_file: str | None = None
    aliases: tuple[AliasInfo, ...] | None = None
    has_discovery_file: bool = False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EvalResult:
    value: str | None = None
    output: tuple[str, ...] = ()
    error: str | None = None
    namespace: str | None = None


@dataclass
class EvalRequest:
    request_id: str
    session_id: str
    code: str
    timeout_ms: int
    status: EvalStatus = EvalStatus.SUBMITTED
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class EvalOutcome:
    """Terminal result of one request, already rendered for the REPL buffer."""

    status: EvalStatus
    code: str
    rendered: str
    result: EvalResult | None = None
    summary: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == EvalStatus.COMPLETED


# ---------------------------------------------------------------------------
# Spawned server processes
# ---------------------------------------------------------------------------

@dataclass
class RingBuffer:
    """Keeps the most recent output of a spawned server, bounded in characters."""

    max_size: int = 100_000  # characters
    _buf: deque[str] = field(default_factory=deque)
    _total_chars: int = 0

    def append(self, data: str) -> None:
        self._buf.append(data)
        self._total_chars += len(data)
        # Drop whole chunks from the front until back under max_size
        while self._total_chars > self.max_size and self._buf:
            evicted = self._buf.popleft()
            self._total_chars -= len(evicted)

    def tail(self, num_chars: int = 2000) -> str:
        """Return the last `num_chars` characters of buffered output."""
        parts: list[str] = []
        remaining = num_chars
        for chunk in reversed(self._buf):
            if remaining <= 0:
                break
            if len(chunk) <= remaining:
                parts.append(chunk)
                remaining -= len(chunk)
            else:
                parts.append(chunk[-remaining:])
                remaining = 0
        parts.reverse()
        return "".join(parts)

    def __len__(self) -> int:
        return self._total_chars


@dataclass
class SpawnedProcess:
    """A jack-in server process and the port its discovery file points at."""

    handle: asyncio.subprocess.Process
    command: str
    port: int
    workspace_root: str
    start_time: float = field(default_factory=time.time)
    stdout_buf: RingBuffer = field(default_factory=RingBuffer)
    stderr_buf: RingBuffer = field(default_factory=RingBuffer)
    _reader_tasks: list[asyncio.Task[None]] = field(
        default_factory=list, repr=False
    )

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    @property
    def exited(self) -> bool:
        return self.handle.returncode is not None


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectionState:
    """Immutable snapshot of the editor's nREPL connection.

    Updated only by whole-structure replacement. ``connection_id`` and
    ``session_id`` are either both set or both ``None``.
    """

    adapter: Adapter
    connection_id: int | None = None
    session_id: str | None = None
    address: str | None = None
    namespace: str = DEFAULT_NAMESPACE
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    orientation: SplitOrientation = SplitOrientation.VERTICAL
    buffer_name: str = REPL_BUFFER_NAME
    spawned: SpawnedProcess | None = None

    def __post_init__(self) -> None:
        if (self.connection_id is None) != (self.session_id is None):
            raise ValueError(
                "connection_id and session_id must be set or cleared together"
            )

    @property
    def connected(self) -> bool:
        return self.connection_id is not None

    @property
    def owns_process(self) -> bool:
        return self.spawned is not None
