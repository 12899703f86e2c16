"""Pause controller: breakpoint evaluation and the resume/skip/stop gate."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from autoflow.core.types import BreakpointAt, BreakpointConfig, BreakpointFor, Node, PauseReason

logger = logging.getLogger(__name__)


class PauseDecision(str, Enum):
    RESUME = "resume"
    SKIP = "skip"
    STOP = "stop"


def should_break(config: BreakpointConfig | None, node: Node, phase: BreakpointAt) -> bool:
    """True when ``config`` asks for a pause at ``phase`` (pre or post) around ``node``."""
    if config is None or not config.enabled:
        return False
    if config.breakpoint_at is not BreakpointAt.BOTH and config.breakpoint_at is not phase:
        return False
    if config.breakpoint_for is BreakpointFor.MARKED:
        return bool(node.data.get("breakpoint"))
    return True


class PauseController:
    """
    Suspends the traversal task until exactly one of resume/skip/stop arrives.

    The paused node and reason are recorded before the traversal awaits, so
    a caller that polls status sees the pause without subscribing to events.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[PauseDecision] | None = None
        self.paused_node_id: str | None = None
        self.pause_reason: PauseReason | None = None

    @property
    def is_paused(self) -> bool:
        return self._future is not None and not self._future.done()

    async def pause(self, node_id: str, reason: PauseReason) -> PauseDecision:
        if self.is_paused:
            raise RuntimeError(f"Already paused at node {self.paused_node_id!r}")
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self.paused_node_id = node_id
        self.pause_reason = reason
        logger.info(f"Execution paused at node {node_id} ({reason.value})")
        try:
            return await self._future
        finally:
            self._future = None
            self.paused_node_id = None
            self.pause_reason = None

    def _release(self, decision: PauseDecision) -> bool:
        future = self._future
        if future is None or future.done():
            return False
        future.set_result(decision)
        logger.info(f"Pause at node {self.paused_node_id} released: {decision.value}")
        return True

    def resume(self) -> bool:
        return self._release(PauseDecision.RESUME)

    def skip(self) -> bool:
        return self._release(PauseDecision.SKIP)

    def stop(self) -> bool:
        return self._release(PauseDecision.STOP)
