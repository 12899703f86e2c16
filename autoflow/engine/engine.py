"""Execution engine: the workflow state machine and its traversal task."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any

from autoflow.config import Settings, get_settings
from autoflow.core.errors import ActionFailure, ExecutionInProgress, ExecutionStateError
from autoflow.core.graph import LOOP_EXIT, WorkflowGraph, validate_workflow
from autoflow.core.types import (
    BreakpointAt,
    BreakpointConfig,
    EventType,
    ExecutionEvent,
    ExecutionState,
    ExecutionStatus,
    Node,
    NodeType,
    PageDebugInfo,
    PauseReason,
    Workflow,
    new_execution_id,
)
from autoflow.engine.capability import AutomationCapability
from autoflow.engine.events import EventBus
from autoflow.engine.handlers import HandlerRegistry, RunContext, resolve_config
from autoflow.engine.pause import PauseController, PauseDecision, should_break

logger = logging.getLogger(__name__)

# Captured snapshots kept for the fix surface, oldest evicted first
_MAX_CAPTURES = 20


@dataclass
class LoopState:
    index: int = 0
    total: int = 0


class ExecutionEngine:
    """
    Runs one workflow at a time against an injected automation capability.

    State transitions happen under a single lock that is never held across
    an ``await``; status reads return snapshots, so ``stop``/``resume``/
    ``skip`` may be called from any task while the traversal runs.
    """

    def __init__(
        self,
        capability: AutomationCapability,
        event_bus: EventBus | None = None,
        registry: HandlerRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._capability = capability
        self._bus = event_bus or EventBus(maxlen=self._settings.event_buffer_size)
        self._registry = registry or HandlerRegistry()
        self._lock = threading.Lock()
        self._state = ExecutionState()
        self._pause = PauseController()
        self._task: asyncio.Task | None = None
        self._breakpoints = BreakpointConfig()
        self._loop_states: dict[str, LoopState] = {}
        self._captures: dict[str, PageDebugInfo] = {}
        self._trace = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def capability(self) -> AutomationCapability:
        return self._capability

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        workflow: Workflow,
        breakpoint_config: BreakpointConfig | None = None,
        *,
        trace_logs: bool = False,
        record_session: bool = False,
    ) -> ExecutionState:
        """
        Validate ``workflow`` and start traversing it in a background task.

        Parameters
        ----------
        workflow:
            The graph to run. Structural problems raise before anything runs.
        breakpoint_config:
            Where to pause. Fixed for the duration of the run.
        trace_logs:
            Log every node transition at INFO instead of DEBUG.
        record_session:
            Ask the capability to record video for this session.

        Returns
        -------
        Snapshot of the new ExecutionState (status ``running``).

        Raises
        ------
        ExecutionInProgress
            A run is currently running or paused.
        InvalidGraph, GraphStructureError
            The workflow cannot be traversed.
        """
        with self._lock:
            if self._state.status.is_active:
                raise ExecutionInProgress(
                    f"Execution {self._state.execution_id} is {self._state.status.value}; stop it first"
                )
        graph = validate_workflow(workflow, known_types=self._registry.types())

        # A stopped run may still be closing its session
        previous = self._task
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        execution_id = new_execution_id()
        with self._lock:
            if self._state.status.is_active:
                raise ExecutionInProgress(f"Execution {self._state.execution_id} started concurrently")
            self._state = ExecutionState(execution_id=execution_id, status=ExecutionStatus.RUNNING)
            self._breakpoints = breakpoint_config or BreakpointConfig()
            self._loop_states = {}
            self._trace = trace_logs
            self._pause = PauseController()
        logger.info(f"Starting execution {execution_id} ({len(workflow.nodes)} nodes)")
        self._task = asyncio.create_task(
            self._run(graph, execution_id, record_session),
            name=f"autoflow-{execution_id}",
        )
        return self.status()

    def status(self) -> ExecutionState:
        with self._lock:
            return replace(self._state)

    def stop(self) -> bool:
        """Stop the active run. Returns False when there was nothing to stop."""
        with self._lock:
            if not self._state.status.is_active:
                return False
            self._state.status = ExecutionStatus.STOPPED
            self._state.paused_node_id = None
            self._state.pause_reason = None
            execution_id = self._state.execution_id
        self._pause.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(f"Execution {execution_id} stopped")
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._state.status is not ExecutionStatus.PAUSED:
                return False
        return self._pause.resume()

    def skip(self) -> bool:
        with self._lock:
            if self._state.status is not ExecutionStatus.PAUSED:
                return False
        return self._pause.skip()

    async def capture_dom(self) -> PageDebugInfo:
        """Snapshot the paused page. Only valid while paused."""
        with self._lock:
            if self._state.status is not ExecutionStatus.PAUSED:
                raise ExecutionStateError("Execution is not paused")
            execution_id = self._state.execution_id
            node_id = self._state.paused_node_id
        info = await self._capability.capture_debug_info()
        info.execution_id = execution_id
        info.node_id = node_id
        self._store_capture(info)
        return info

    def captured_dom(self, execution_id: str) -> PageDebugInfo | None:
        return self._captures.get(execution_id)

    def loop_state(self, node_id: str) -> LoopState | None:
        return self._loop_states.get(node_id)

    async def wait(self) -> ExecutionState:
        """Block until the traversal task has finished."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})
        return self.status()

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _run(self, graph: WorkflowGraph, execution_id: str, record_session: bool) -> None:
        ctx = RunContext(
            execution_id=execution_id,
            capability=self._capability,
            settings=self._settings,
            pause=self._pause_at,
        )
        started = time.monotonic()
        try:
            await self._capability.open_session(record_video=record_session)
            await self._walk(graph, graph.start.id, ctx, frozenset())
        except asyncio.CancelledError:
            self._emit(EventType.EXECUTION_ERROR, message="Execution stopped by user")
            raise
        except ActionFailure as exc:
            self._finish_with_error(str(exc), exc.node_id)
        except Exception as exc:
            logger.exception(f"Execution {execution_id} crashed")
            self._finish_with_error(str(exc) or exc.__class__.__name__, None)
        else:
            with self._lock:
                completed = self._state.status is ExecutionStatus.RUNNING
                if completed:
                    self._state.status = ExecutionStatus.COMPLETED
                    self._state.current_node_id = None
            if completed:
                elapsed = (time.monotonic() - started) * 1000
                logger.info(f"Execution {execution_id} completed in {elapsed:.0f}ms")
                self._emit(EventType.EXECUTION_COMPLETE, message="Execution completed")
        finally:
            try:
                await self._capability.close_session()
            except Exception as e:
                logger.warning(f"Failed to close automation session: {e}")

    async def _walk(
        self,
        graph: WorkflowGraph,
        node_id: str | None,
        ctx: RunContext,
        enclosing_loops: frozenset[str],
    ) -> None:
        """Follow edges from ``node_id`` until the path ends or re-enters an enclosing loop."""
        current = node_id
        while current is not None and current not in enclosing_loops:
            node = graph.node(current)
            handle = await self._visit(graph, node, ctx, enclosing_loops)
            current = graph.next_node(node.id, handle)

    async def _visit(
        self,
        graph: WorkflowGraph,
        node: Node,
        ctx: RunContext,
        enclosing_loops: frozenset[str],
    ) -> str | None:
        """Run one node. Returns the output handle to follow."""
        with self._lock:
            self._state.current_node_id = node.id

        if node.data.get("bypass"):
            self._trace_log(f"Bypassing node {node.id}")
            handle = self._fallback_handle(graph, node)
            self._emit(EventType.NODE_COMPLETE, node.id, "Node bypassed")
            return handle

        self._emit(EventType.NODE_START, node.id)
        self._trace_log(f"Node {node.id} ({node.type}) started")

        if should_break(self._breakpoints, node, BreakpointAt.PRE):
            decision = await self._pause_at(node.id, PauseReason.BREAKPOINT)
            if decision is PauseDecision.SKIP:
                handle = self._fallback_handle(graph, node)
                self._emit(EventType.NODE_COMPLETE, node.id, "Node skipped")
                return handle

        handle, result, message = await self._dispatch(graph, node, ctx)

        if node.type == NodeType.LOOP.value and isinstance(result, list):
            await self._iterate(graph, node, result, ctx, enclosing_loops)
            handle = LOOP_EXIT
            message = f"Completed {len(result)} iterations"
        self._emit(EventType.NODE_COMPLETE, node.id, message)

        if should_break(self._breakpoints, node, BreakpointAt.POST):
            await self._pause_at(node.id, PauseReason.BREAKPOINT)
        return handle

    def _fallback_handle(self, graph: WorkflowGraph, node: Node) -> str | None:
        """
        Handle followed when a node did not run (bypassed, skipped or failed silently).

        Loops leave through their exit edge. Branches take the ``false`` edge,
        or the unhandled edge when there is none; a branch with neither fails
        the run rather than ending it as completed.
        """
        if node.type == NodeType.LOOP.value:
            return LOOP_EXIT
        if node.type != NodeType.BRANCH.value:
            return None
        if graph.next_node(node.id, "false") is None:
            cause = RuntimeError(f"Branch {node.id} did not run and has no 'false' or default edge to follow")
            self._emit(EventType.NODE_ERROR, node.id, str(cause), data={"nodeType": node.type})
            raise ActionFailure(node.id, cause)
        return "false"

    async def _dispatch(
        self, graph: WorkflowGraph, node: Node, ctx: RunContext
    ) -> tuple[str | None, Any, str | None]:
        """Run the node handler. Returns (handle, result, completion message)."""
        handler = self._registry.get(node)
        config = resolve_config(dict(node.data), ctx)
        step_start = time.monotonic()
        try:
            result = await handler(node, config, ctx)
        except Exception as exc:
            latency = (time.monotonic() - step_start) * 1000
            if node.data.get("failSilently"):
                logger.warning(f"Node {node.id} failed silently after {latency:.0f}ms: {exc}")
                return self._fallback_handle(graph, node), None, f"Failed silently: {exc}"
            page_url = await self._capture_failure(node, ctx)
            self._emit(
                EventType.NODE_ERROR,
                node.id,
                str(exc) or exc.__class__.__name__,
                data={"nodeType": node.type, "pageUrl": page_url, "latencyMs": round(latency)},
            )
            raise ActionFailure(node.id, exc) from exc

        latency = (time.monotonic() - step_start) * 1000
        self._trace_log(f"Node {node.id} ({node.type}) finished in {latency:.0f}ms")
        if result is not None:
            ctx.data[node.id] = result
        if node.type == NodeType.BRANCH.value:
            return ("true" if result else "false"), result, None
        return None, result, None

    async def _iterate(
        self,
        graph: WorkflowGraph,
        node: Node,
        items: list,
        ctx: RunContext,
        enclosing_loops: frozenset[str],
    ) -> None:
        state = LoopState(total=len(items))
        self._loop_states[node.id] = state
        body = graph.body_of(node.id)
        for index, item in enumerate(items):
            state.index = index
            ctx.variables["index"] = index
            ctx.variables["item"] = item
            ctx.data[node.id] = {"index": index, "item": item, "total": state.total}
            self._trace_log(f"Loop {node.id} iteration {index + 1}/{state.total}")
            if body is not None:
                await self._walk(graph, body, ctx, enclosing_loops | {node.id})
        state.index = state.total

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _pause_at(self, node_id: str, reason: PauseReason) -> PauseDecision:
        with self._lock:
            if self._state.status is not ExecutionStatus.RUNNING:
                raise asyncio.CancelledError()
            self._state.status = ExecutionStatus.PAUSED
            self._state.paused_node_id = node_id
            self._state.pause_reason = reason
        try:
            decision = await self._pause.pause(node_id, reason)
        finally:
            with self._lock:
                self._state.paused_node_id = None
                self._state.pause_reason = None
                if self._state.status is ExecutionStatus.PAUSED:
                    self._state.status = ExecutionStatus.RUNNING
        if decision is PauseDecision.STOP:
            raise asyncio.CancelledError()
        return decision

    async def _capture_failure(self, node: Node, ctx: RunContext) -> str | None:
        """Best-effort DOM snapshot of a failed UI node for later recovery."""
        if node.selector is None and node.type != NodeType.NAVIGATE.value:
            return self._capability.current_url() or None
        try:
            info = await self._capability.capture_debug_info()
        except Exception as e:
            logger.warning(f"Could not capture page state for node {node.id}: {e}")
            return None
        info.execution_id = ctx.execution_id
        info.node_id = node.id
        self._store_capture(info)
        return info.page_url

    def _store_capture(self, info: PageDebugInfo) -> None:
        if info.execution_id is None:
            return
        self._captures.pop(info.execution_id, None)
        self._captures[info.execution_id] = info
        while len(self._captures) > _MAX_CAPTURES:
            self._captures.pop(next(iter(self._captures)))

    def _finish_with_error(self, message: str, node_id: str | None) -> None:
        with self._lock:
            if self._state.status is not ExecutionStatus.RUNNING:
                return
            self._state.status = ExecutionStatus.ERROR
            self._state.error = message
            if node_id is not None:
                self._state.current_node_id = node_id
            execution_id = self._state.execution_id
        logger.error(f"Execution {execution_id} failed at node {node_id}: {message}")
        self._emit(EventType.EXECUTION_ERROR, node_id, message)

    def _emit(
        self,
        event_type: EventType,
        node_id: str | None = None,
        message: str | None = None,
        data: dict | None = None,
    ) -> None:
        self._bus.publish(ExecutionEvent(type=event_type, node_id=node_id, message=message, data=data))

    def _trace_log(self, message: str) -> None:
        logger.log(logging.INFO if self._trace else logging.DEBUG, message)
