"""Fix surface: analyze errors and fix workflows, pulling DOM captures from the engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from autoflow.config import Settings, get_settings
from autoflow.core.types import ErrorAnalysis, PageDebugInfo, Workflow
from autoflow.recovery.analyzer import ErrorAnalyzer
from autoflow.recovery.llm import OpenAIWorkflowFixer
from autoflow.recovery.orchestrator import RecoveryContext, RecoveryOrchestrator, RecoveryResult

if TYPE_CHECKING:
    from autoflow.engine.engine import ExecutionEngine

logger = logging.getLogger(__name__)


class RecoveryService:
    """
    Consumer-facing entry points of the recovery pipeline.

    With an engine attached, an ``execution_id`` selects the DOM snapshot
    captured when that run failed or was paused.
    """

    def __init__(
        self,
        engine: "ExecutionEngine | None" = None,
        orchestrator: RecoveryOrchestrator | None = None,
        analyzer: ErrorAnalyzer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._engine = engine
        self._analyzer = analyzer or ErrorAnalyzer()
        if orchestrator is None:
            orchestrator = RecoveryOrchestrator(
                llm_caller=OpenAIWorkflowFixer.from_settings(self._settings),
                known_types=engine.registry.types() if engine is not None else None,
                settings=self._settings,
            )
        self._orchestrator = orchestrator

    def snapshot(self, execution_id: str | None) -> PageDebugInfo | None:
        if self._engine is None or not execution_id:
            return None
        return self._engine.captured_dom(execution_id)

    def analyze_errors(
        self,
        workflow: Workflow,
        error_message: str,
        logs: list[str] | None = None,
        current_node_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[ErrorAnalysis]:
        debug_info = self.snapshot(execution_id)
        if debug_info is None:
            return self._analyzer.analyze(workflow, error_message, logs, current_node_id)
        return self._analyzer.analyze_with_dom(
            workflow,
            error_message,
            debug_info,
            logs,
            current_node_id or debug_info.node_id,
        )

    async def fix_workflow(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        execution_id: str | None = None,
        use_dom_capture: bool | None = None,
        error_message: str = "",
        logs: list[str] | None = None,
    ) -> RecoveryResult:
        """Run the recovery chain. ``result.workflow`` is the fixed (or original) workflow."""
        if use_dom_capture is None:
            use_dom_capture = self._settings.use_dom_capture
        snapshots = []
        if use_dom_capture:
            debug_info = self.snapshot(execution_id)
            if debug_info is not None:
                snapshots.append(debug_info)
            elif execution_id:
                logger.info(f"No DOM capture stored for execution {execution_id}")
        context = RecoveryContext(
            snapshots=snapshots,
            error_message=error_message or "; ".join(a.message for a in analyses),
            logs=list(logs or []),
        )
        return await self._orchestrator.fix(workflow, analyses, context)
