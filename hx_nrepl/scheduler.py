"""Evaluation Scheduler — non-blocking submit, then poll until terminal.

IDLE -> SUBMITTED -> POLLING -> COMPLETED | ERRORED | TIMED_OUT

Submission returns a request id at once; the scheduler then sleeps
``poll_interval`` between non-blocking checks so the event loop is never held.
A timed-out request is abandoned, not interrupted: the server may still be
evaluating it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from typing import Any

from .adapter import Adapter
from .connection import ConnectionManager
from .errors import ErrorKind, ReplError
from .models import ConnectionState, EvalOutcome, EvalRequest, EvalResult, EvalStatus
from .rpc import EvalPayload

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.010  # seconds
MAX_CODE_SIZE = 10 * 1024 * 1024  # bytes


def _stringify(value: Any) -> str:
    """Render structured values (as sent by nrepl-python) the way the server would."""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_stringify(v) for v in value) + "]"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{_stringify(k)}: {_stringify(v)}" for k, v in value.items()) + "}"
    return str(value)


def result_from_payload(payload: EvalPayload) -> EvalResult:
    error = "\n".join(chunk.rstrip("\n") for chunk in payload.err) or None
    if error is None and (payload.ex or "eval-error" in payload.status):
        error = payload.ex or "Evaluation error"
    return EvalResult(
        value=None if payload.value is None else _stringify(payload.value),
        output=tuple(payload.out),
        error=error,
        namespace=payload.ns,
    )


def validate_code(code: str, what: str = "code") -> None:
    if not code or not code.strip():
        raise ReplError(
            ErrorKind.INVALID_INPUT,
            f"Cannot evaluate empty {what}. Provide non-empty {what} to evaluate.",
        )
    size = len(code.encode("utf-8"))
    if size > MAX_CODE_SIZE:
        raise ReplError(
            ErrorKind.INVALID_INPUT,
            f"{what.capitalize()} size ({size} bytes) exceeds maximum allowed size "
            f"({MAX_CODE_SIZE} bytes)",
        )


class EvaluationScheduler:

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._manager = manager
        self._poll_interval = poll_interval
        self.last_request: EvalRequest | None = None

    def _require_connection(self) -> ConnectionState:
        return self._manager.require_connection()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def evaluate(self, code: str) -> EvalOutcome:
        validate_code(code)
        state = self._require_connection()
        adapter = state.adapter
        try:
            request_id = self._manager.rpc.eval_with_timeout(
                state.session_id, code, state.timeout_ms,  # type: ignore[arg-type]
            )
        except ReplError as exc:
            return self._failure(EvalStatus.ERRORED, code, state, adapter, exc.message)
        return await self._drive(self._track(request_id, state, code), state, adapter)

    async def load_file(self, path: str) -> EvalOutcome:
        """Load a whole file into the session via the ``load-file`` op."""
        state = self._require_connection()
        try:
            with open(path, encoding="utf-8") as f:
                contents = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise ReplError(ErrorKind.FILE_IO_FAILURE, f"Could not read {path}: {exc}") from exc
        validate_code(contents, "file contents")

        adapter = self._manager.registry.for_path(path) or state.adapter
        self._manager.use_adapter(adapter)
        name = os.path.basename(path)
        label = f"(load-file \"{path}\")"
        try:
            request_id = self._manager.rpc.load_file(
                state.session_id, contents, path, name, state.timeout_ms,  # type: ignore[arg-type]
            )
        except ReplError as exc:
            return self._failure(EvalStatus.ERRORED, label, state, adapter, exc.message)
        return await self._drive(self._track(request_id, state, label), state, adapter)

    async def evaluate_all(self, fragments: Iterable[str]) -> list[EvalOutcome]:
        """Evaluate fragments one after another in the shared session.

        Fragment ``i + 1`` is submitted only once fragment ``i`` is terminal,
        so it sees the namespace ``i`` left behind.  The fold stops after a
        transport error or timeout.
        """
        outcomes: list[EvalOutcome] = []
        for fragment in fragments:
            if not fragment.strip():
                continue
            outcome = await self.evaluate(fragment)
            outcomes.append(outcome)
            if outcome.status in (EvalStatus.ERRORED, EvalStatus.TIMED_OUT):
                log.info("Stopping after %s fragment", outcome.status.value)
                break
        return outcomes

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _track(self, request_id: str, state: ConnectionState, code: str) -> EvalRequest:
        request = EvalRequest(
            request_id=request_id,
            session_id=state.session_id,  # type: ignore[arg-type]
            code=code,
            timeout_ms=state.timeout_ms,
        )
        self.last_request = request
        return request

    async def _drive(
        self,
        request: EvalRequest,
        submitted: ConnectionState,
        adapter: Adapter,
    ) -> EvalOutcome:
        connection_id = submitted.connection_id
        request.status = EvalStatus.POLLING

        while True:
            await asyncio.sleep(self._poll_interval)

            # Re-read: a disconnect may have replaced the state while we slept
            if self._manager.state.connection_id != connection_id:
                request.status = EvalStatus.ERRORED
                return self._failure(
                    request.status, request.code, submitted, adapter,
                    "Connection closed while waiting for the result",
                )

            try:
                payload = self._manager.rpc.try_get_result(connection_id, request.request_id)  # type: ignore[arg-type]
            except ReplError as exc:
                if exc.kind is ErrorKind.EVAL_TIMEOUT:
                    request.status = EvalStatus.TIMED_OUT
                    message = f"Evaluation timed out after {request.timeout_ms} ms"
                else:
                    request.status = EvalStatus.ERRORED
                    message = exc.message
                return self._failure(request.status, request.code, submitted, adapter, message)

            if payload is None:
                continue

            result = result_from_payload(payload)
            request.status = EvalStatus.COMPLETED
            if result.namespace:
                self._manager.advance_namespace(result.namespace, connection_id)
            return EvalOutcome(
                status=EvalStatus.COMPLETED,
                code=request.code,
                rendered=adapter.format_result(request.code, result),
                result=result,
                summary=adapter.prettify_error(result.error) if result.error else None,
            )

    @staticmethod
    def _failure(
        status: EvalStatus,
        code: str,
        state: ConnectionState,
        adapter: Adapter,
        error: str,
    ) -> EvalOutcome:
        summary, rendered = adapter.format_failure(code, state.namespace, error)
        log.warning("Evaluation %s: %s", status.value, summary)
        return EvalOutcome(status=status, code=code, rendered=rendered, summary=summary)
