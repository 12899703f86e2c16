"""Execution monitor: status polling for callers that do not consume events."""

from __future__ import annotations

import asyncio
import logging
import time

from autoflow.config import Settings
from autoflow.core.types import ExecutionState, ExecutionStatus
from autoflow.engine.engine import ExecutionEngine

logger = logging.getLogger(__name__)


class ExecutionMonitor:
    """
    Polls an ExecutionEngine until it reaches a terminal status or a pause.

    Intervals and deadlines default to the engine's settings
    (``poll_interval_ms``, ``max_execution_duration_ms``,
    ``breakpoint_poll_interval_ms``, ``breakpoint_wait_ms``).
    ``poll_interval_ms`` overrides both polling intervals.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        settings: Settings | None = None,
        poll_interval_ms: int | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or engine.settings
        self._completion_interval = (poll_interval_ms or self._settings.poll_interval_ms) / 1000
        self._pause_interval = (poll_interval_ms or self._settings.breakpoint_poll_interval_ms) / 1000

    async def wait_for_completion(self, max_duration_ms: int | None = None) -> ExecutionState:
        """
        Return the first terminal status seen.

        Raises ``TimeoutError`` when ``max_duration_ms`` elapses first; the
        run itself is left alone so the caller can decide to stop it.
        """
        if max_duration_ms is None:
            max_duration_ms = self._settings.max_execution_duration_ms
        deadline = time.monotonic() + max_duration_ms / 1000
        while True:
            state = self._engine.status()
            if state.status.is_terminal:
                return state
            if state.status is ExecutionStatus.IDLE:
                raise RuntimeError("No execution has been started")
            if time.monotonic() >= deadline:
                logger.warning(f"Execution {state.execution_id} exceeded {max_duration_ms}ms")
                raise TimeoutError(
                    f"Execution {state.execution_id} still {state.status.value} after {max_duration_ms}ms"
                )
            await asyncio.sleep(self._completion_interval)

    async def wait_for_pause(
        self,
        timeout_ms: int | None = None,
        node_id: str | None = None,
    ) -> ExecutionState:
        """
        Return once the run is paused (at ``node_id`` when given).

        Raises ``TimeoutError`` on timeout and ``RuntimeError`` if the run
        finishes without pausing there.
        """
        if timeout_ms is None:
            timeout_ms = self._settings.breakpoint_wait_ms
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            state = self._engine.status()
            if state.status is ExecutionStatus.PAUSED and (
                node_id is None or state.paused_node_id == node_id
            ):
                return state
            if state.status.is_terminal:
                raise RuntimeError(
                    f"Execution {state.execution_id} ended with status {state.status.value} before pausing"
                )
            if time.monotonic() >= deadline:
                raise TimeoutError(f"No breakpoint reached within {timeout_ms}ms")
            await asyncio.sleep(self._pause_interval)
