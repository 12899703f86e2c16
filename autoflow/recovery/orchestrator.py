"""Recovery orchestrator: DOM-based, LLM-assisted and rule-based fixes, in that order."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from autoflow.config import Settings, get_settings
from autoflow.core.errors import (
    GraphStructureError,
    InvalidGraph,
    RecoveryExhausted,
    StrategyUnavailable,
    UnknownNodeError,
)
from autoflow.core.graph import validate_workflow
from autoflow.core.types import (
    ErrorAnalysis,
    ErrorCategory,
    PageDebugInfo,
    SelectorUpdate,
    Workflow,
)
from autoflow.recovery.inference import DOMSelectorInference, normalize_url
from autoflow.recovery.modifier import Patch, WorkflowModifier

logger = logging.getLogger(__name__)


@dataclass
class RecoveryContext:
    """What the caller knows about the failure beyond the analyses."""

    snapshots: list[PageDebugInfo] = field(default_factory=list)
    error_message: str = ""
    logs: list[str] = field(default_factory=list)

    def snapshot_for(self, page_url: str | None) -> PageDebugInfo | None:
        if not self.snapshots:
            return None
        if page_url is None:
            return self.snapshots[-1]
        wanted = normalize_url(page_url)
        for snapshot in reversed(self.snapshots):
            if normalize_url(snapshot.page_url) == wanted:
                return snapshot
        return None


@dataclass
class StrategyOutcome:
    workflow: Workflow
    updates: list[SelectorUpdate] = field(default_factory=list)
    failures: list[UnknownNodeError] = field(default_factory=list)


@dataclass
class RecoveryResult:
    workflow: Workflow
    recovered: bool
    strategy: str | None = None
    updates: list[SelectorUpdate] = field(default_factory=list)
    failures: list[UnknownNodeError] = field(default_factory=list)
    unsupported: list[ErrorAnalysis] = field(default_factory=list)
    attempts: list[str] = field(default_factory=list)

    def raise_for_status(self) -> None:
        if not self.recovered:
            raise RecoveryExhausted(self.workflow, self.attempts)

    def to_dict(self) -> dict:
        return {
            "workflow": self.workflow.to_dict(),
            "recovered": self.recovered,
            "strategy": self.strategy,
            "updates": [u.to_dict() for u in self.updates],
            "failures": [str(f) for f in self.failures],
            "unsupported": [a.to_dict() for a in self.unsupported],
            "attempts": list(self.attempts),
        }


class RecoveryStrategy(ABC):
    """One way of producing a candidate workflow. Raises StrategyUnavailable when it cannot."""

    name: str = ""

    @abstractmethod
    async def attempt(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        context: RecoveryContext,
    ) -> StrategyOutcome: ...


# ----------------------------------------------------------------------
# Strategies
# ----------------------------------------------------------------------


class DOMStrategy(RecoveryStrategy):
    """Regenerate selectors from captured snapshots, page by page."""

    name = "dom"

    def __init__(
        self,
        inference: DOMSelectorInference,
        modifier: WorkflowModifier,
        timeout_floor: int,
    ) -> None:
        self._inference = inference
        self._modifier = modifier
        self._timeout_floor = timeout_floor

    async def attempt(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        context: RecoveryContext,
    ) -> StrategyOutcome:
        if not context.snapshots:
            raise StrategyUnavailable("no DOM snapshot available")
        selector_errors = [a for a in analyses if a.category is ErrorCategory.SELECTOR]
        if not selector_errors:
            raise StrategyUnavailable("no selector errors to repair")

        groups: dict[str | None, list[ErrorAnalysis]] = {}
        for analysis in selector_errors:
            groups.setdefault(analysis.page_url, []).append(analysis)

        current = workflow
        updates: list[SelectorUpdate] = []
        for page_url, group in groups.items():
            snapshot = context.snapshot_for(page_url)
            if snapshot is None:
                logger.info(f"No snapshot for {page_url}; skipping {len(group)} selector error(s)")
                continue
            current, page_updates = self._inference.update_selectors_for_page(
                current, snapshot.page_url, snapshot
            )
            updates.extend(page_updates)

        if not updates:
            raise StrategyUnavailable("no replacement selectors found in DOM")

        touched = [u.node_id for u in updates]
        touched += [a.node_id for a in selector_errors if a.node_id]
        current = self._modifier.ensure_min_timeout(current, touched, self._timeout_floor).workflow
        return StrategyOutcome(workflow=current, updates=updates)


class LLMStrategy(RecoveryStrategy):
    """
    Delegate the whole workflow and error context to an LLM.

    ``llm_caller`` receives a context dict and returns a workflow dict (or
    an awaitable of one), the same contract as OpenAIWorkflowFixer.
    """

    name = "llm"

    def __init__(self, llm_caller: Callable | None) -> None:
        self._llm_caller = llm_caller

    async def attempt(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        context: RecoveryContext,
    ) -> StrategyOutcome:
        if self._llm_caller is None:
            raise StrategyUnavailable("no LLM provider configured")
        payload: dict[str, Any] = {
            "workflow": workflow.to_dict(),
            "error": context.error_message,
            "analyses": [a.to_dict() for a in analyses],
            "logs": list(context.logs),
        }
        result = self._llm_caller(payload)
        if inspect.isawaitable(result):
            result = await result
        if not result:
            raise StrategyUnavailable("LLM returned no workflow")
        candidate = result if isinstance(result, Workflow) else Workflow.from_dict(result)
        return StrategyOutcome(workflow=candidate, updates=_selector_diff(workflow, candidate))


class RuleBasedStrategy(RecoveryStrategy):
    """
    Deterministic per-category patches.

    selector: use ``correct_selector`` when known and raise the timeout
    floor. timeout: raise the timeout floor. configuration: backfill a
    missing ``label`` from the node type. missing_node: left for a human.
    """

    name = "rule_based"

    def __init__(self, modifier: WorkflowModifier, timeout_floor: int) -> None:
        self._modifier = modifier
        self._timeout_floor = timeout_floor

    async def attempt(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        context: RecoveryContext,
    ) -> StrategyOutcome:
        patches: list[Patch] = []
        updates: list[SelectorUpdate] = []
        timeout_nodes: list[str] = []
        for analysis in analyses:
            node_id = analysis.node_id
            if analysis.category is ErrorCategory.MISSING_NODE:
                logger.warning(f"Missing node {node_id!r} cannot be repaired automatically")
                continue
            if node_id is None:
                continue
            node = workflow.node(node_id)
            if analysis.category is ErrorCategory.SELECTOR:
                if analysis.correct_selector:
                    patches.append(Patch(node_id, "selector", analysis.correct_selector))
                    if node is not None:
                        updates.append(SelectorUpdate(node_id, node.selector, analysis.correct_selector))
                timeout_nodes.append(node_id)
            elif analysis.category is ErrorCategory.TIMEOUT:
                timeout_nodes.append(node_id)
            elif analysis.category is ErrorCategory.CONFIGURATION and (node is None or not node.label):
                patches.append(Patch(node_id, "label", node.type if node else ""))

        patched = self._modifier.apply_patches(workflow, patches)
        floored = self._modifier.ensure_min_timeout(
            patched.workflow, [n for n in timeout_nodes if patched.workflow.node(n)], self._timeout_floor
        )
        if not patched.applied and not floored.applied:
            raise StrategyUnavailable("no rule applies to these errors")
        return StrategyOutcome(workflow=floored.workflow, updates=updates, failures=patched.failures)


def _selector_diff(before: Workflow, after: Workflow) -> list[SelectorUpdate]:
    updates = []
    for node in after.nodes:
        old = before.node(node.id)
        if old is not None and node.selector and old.selector != node.selector:
            updates.append(SelectorUpdate(node.id, old.selector, node.selector))
    return updates


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------


class RecoveryOrchestrator:
    """
    Folds over recovery strategies and keeps the first valid candidate.

    A strategy that raises StrategyUnavailable, or fails in any other way,
    is skipped. A candidate that fails structural validation is discarded.
    When nothing succeeds the original workflow comes back with
    ``recovered=False``.
    """

    def __init__(
        self,
        strategies: list[RecoveryStrategy] | None = None,
        *,
        llm_caller: Callable | None = None,
        inference: DOMSelectorInference | None = None,
        modifier: WorkflowModifier | None = None,
        known_types: Iterable[str] | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        modifier = modifier or WorkflowModifier()
        inference = inference or DOMSelectorInference(modifier)
        floor = settings.min_selector_timeout_ms
        self._strategies = strategies if strategies is not None else [
            DOMStrategy(inference, modifier, floor),
            LLMStrategy(llm_caller),
            RuleBasedStrategy(modifier, floor),
        ]
        self._known_types = set(known_types) if known_types is not None else None

    @property
    def strategies(self) -> list[RecoveryStrategy]:
        return list(self._strategies)

    async def fix(
        self,
        workflow: Workflow,
        analyses: list[ErrorAnalysis],
        context: RecoveryContext | None = None,
    ) -> RecoveryResult:
        context = context or RecoveryContext()
        unsupported = [a for a in analyses if a.category is ErrorCategory.MISSING_NODE]
        attempts: list[str] = []

        for strategy in self._strategies:
            try:
                outcome = await strategy.attempt(workflow, analyses, context)
            except StrategyUnavailable as e:
                attempts.append(f"{strategy.name}: {e}")
                logger.info(f"Recovery strategy {strategy.name} unavailable: {e}")
                continue
            except Exception as e:
                attempts.append(f"{strategy.name}: unavailable ({e})")
                logger.warning(f"Recovery strategy {strategy.name} failed: {e}")
                continue

            try:
                validate_workflow(outcome.workflow, known_types=self._known_types)
            except (InvalidGraph, GraphStructureError) as e:
                attempts.append(f"{strategy.name}: candidate rejected ({e})")
                logger.warning(f"Discarding {strategy.name} candidate: {e}")
                continue

            attempts.append(f"{strategy.name}: ok")
            logger.info(
                f"Workflow recovered by {strategy.name} strategy ({len(outcome.updates)} selector update(s))"
            )
            return RecoveryResult(
                workflow=outcome.workflow,
                recovered=True,
                strategy=strategy.name,
                updates=outcome.updates,
                failures=outcome.failures,
                unsupported=unsupported,
                attempts=attempts,
            )

        logger.warning(f"Recovery exhausted: {'; '.join(attempts)}")
        return RecoveryResult(
            workflow=workflow,
            recovered=False,
            unsupported=unsupported,
            attempts=attempts,
        )
