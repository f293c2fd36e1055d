"""Error taxonomy shared by every component.

Components return ``None``/``bool``/values for expected conditions and raise
``ReplError`` only toward the command layer, which is the single place these
are caught and turned into a user-visible message.
"""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    CONNECT_FAILURE = "connect_failure"
    EVAL_TIMEOUT = "eval_timeout"
    EVAL_TRANSPORT_ERROR = "eval_transport_error"
    PROJECT_NOT_FOUND = "project_not_found"
    PORT_EXHAUSTED = "port_exhausted"
    SPAWN_FAILURE = "spawn_failure"
    READINESS_TIMEOUT = "readiness_timeout"
    HANDSHAKE_FAILURE_AFTER_READY = "handshake_failure_after_ready"
    FILE_IO_FAILURE = "file_io_failure"
    # Command-level preconditions
    NOT_CONNECTED = "not_connected"
    ALREADY_CONNECTED = "already_connected"
    INVALID_INPUT = "invalid_input"
    JACK_IN_UNSUPPORTED = "jack_in_unsupported"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


# Kinds after which the connection state must be back to disconnected
_RESETTING_KINDS = frozenset({
    ErrorKind.CONNECT_FAILURE,
    ErrorKind.READINESS_TIMEOUT,
    ErrorKind.HANDSHAKE_FAILURE_AFTER_READY,
})


class ReplError(Exception):
    """A classified failure carrying an optional long-form ``details`` text."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def resets_connection(self) -> bool:
        return self.kind in _RESETTING_KINDS

    def __repr__(self) -> str:
        return f"ReplError({self.kind.value!r}, {self.message!r})"
