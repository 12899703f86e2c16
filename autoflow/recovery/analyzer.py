"""Error analyzer: classify a failure and extract repair hints."""

from __future__ import annotations

import logging
import re

from autoflow.core.types import ErrorAnalysis, ErrorCategory, Node, PageDebugInfo, Severity, Workflow
from autoflow.engine.handlers import missing_fields
from autoflow.recovery.inference import DOMSelectorInference, recorded_page_url, tokenize

logger = logging.getLogger(__name__)

_STRICT_MODE = re.compile(r"strict\s+mode\s+violation", re.I)
_LOCATOR = re.compile(r"locator\(['\"]([^'\"]+)['\"]\)", re.I)
_RESOLVED_COUNT = re.compile(r"resolved\s+to\s+(\d+)\s+elements?", re.I)
_ELEMENT_ID = re.compile(r"id=[\"']([^\"']+)[\"']")

# Checked in order; first match supplies the failing selector
_SELECTOR_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"selector[:\s]+['\"]([^'\"]+)['\"]", re.I),
    _LOCATOR,
    re.compile(r"(?<!node )['\"]([^'\"]+)['\"]\s+not\s+found", re.I),
    re.compile(r"element\s+['\"]([^'\"]+)['\"]", re.I),
    re.compile(r"no\s+element\s+found\s+for\s+selector[:\s]+(\S+)", re.I),
)

_MISSING_NODE_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"node\s+['\"]?([\w-]+)['\"]?\s+not\s+found", re.I),
    re.compile(r"non-existent\s+(?:source\s+|target\s+)?node\s+['\"]?([\w-]+)", re.I),
    re.compile(r"(?:unknown|missing)\s+node\s+['\"]?([\w-]+)", re.I),
)

_TIMEOUT = re.compile(r"timeout\s+\d+\s*ms\s+exceeded|timed?\s*out|exceeded.{0,40}(?:timeout|wait)", re.I)
_MISSING_FIELD = re.compile(r"missing\s+required\s+(?:property|field)\s+['\"]?(\w+)", re.I)
_NODE_IN_MESSAGE = re.compile(r"node\s+['\"]([\w-]+)['\"]", re.I)

_LOG_NODE_ID = re.compile(r"node[_-]?id[:\s]+([A-Za-z0-9_-]+)", re.I)
_LOG_ERROR_TERMS = re.compile(r"error|fail|timeout|exception|not\s+found", re.I)


class ErrorAnalyzer:
    """
    Pure classification of an execution error into ErrorAnalysis records.

    Priority: selector (including strict mode violations), missing_node,
    timeout, configuration, other. Log lines naming a node id are
    classified the same way and appended without duplicates.
    """

    def __init__(self, inference: DOMSelectorInference | None = None) -> None:
        self._inference = inference or DOMSelectorInference()

    def analyze(
        self,
        workflow: Workflow,
        error_message: str,
        logs: list[str] | None = None,
        current_node_id: str | None = None,
    ) -> list[ErrorAnalysis]:
        analyses = self._classify(workflow, error_message, current_node_id)
        for entry in self._analyze_logs(workflow, logs or []):
            if not any(a.category is entry.category and a.node_id == entry.node_id for a in analyses):
                analyses.append(entry)
        return analyses

    def analyze_with_dom(
        self,
        workflow: Workflow,
        error_message: str,
        debug_info: PageDebugInfo,
        logs: list[str] | None = None,
        current_node_id: str | None = None,
    ) -> list[ErrorAnalysis]:
        """analyze(), then cross-reference selector errors with a page snapshot."""
        analyses = self.analyze(workflow, error_message, logs, current_node_id)
        soup = None
        for analysis in analyses:
            if analysis.category is not ErrorCategory.SELECTOR:
                continue
            if soup is None:
                soup = self._inference.parse(debug_info.page_source)
            analysis.page_url = debug_info.page_url
            node = workflow.node(analysis.node_id) if analysis.node_id else None
            keywords = (node.label,) if node is not None else ()
            suggestions = debug_info.similar_selectors or self._inference.suggest(
                debug_info.page_source, analysis.failed_selector, keywords
            )
            for suggestion in suggestions:
                if suggestion.selector not in analysis.extracted_selectors:
                    analysis.extracted_selectors.append(suggestion.selector)

            inferred = self._inference.infer_selector(node, soup) if node is not None else None
            if inferred is not None:
                analysis.correct_selector = inferred
            elif analysis.correct_selector is None and analysis.extracted_selectors:
                analysis.correct_selector = analysis.extracted_selectors[0]

            if analysis.correct_selector:
                analysis.suggested_fix = f"Use selector from DOM: {analysis.correct_selector}"
            elif analysis.extracted_selectors:
                analysis.suggested_fix = (
                    "Try one of these selectors from DOM: " + ", ".join(analysis.extracted_selectors[:3])
                )
        return analyses

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _classify(
        self,
        workflow: Workflow,
        message: str,
        current_node_id: str | None,
    ) -> list[ErrorAnalysis]:
        for check in (self._strict_mode, self._selector, self._missing_node, self._timeout):
            found = check(workflow, message, current_node_id)
            if found is not None:
                return [found]
        configuration = self._configuration(workflow, message, current_node_id)
        if configuration:
            return configuration
        return [
            ErrorAnalysis(
                category=ErrorCategory.OTHER,
                message=message,
                node_id=current_node_id,
                suggested_fix="Review error message and workflow structure",
            )
        ]

    def _strict_mode(self, workflow: Workflow, message: str, current_node_id: str | None) -> ErrorAnalysis | None:
        if not _STRICT_MODE.search(message):
            return None
        locator = _LOCATOR.search(message)
        failed = locator.group(1) if locator else None
        count = _RESOLVED_COUNT.search(message)
        extracted: list[str] = []
        for el_id in _ELEMENT_ID.findall(message):
            selector = "#" + el_id.replace(".", "\\.")
            if selector not in extracted:
                extracted.append(selector)

        node = self._resolve_node(workflow, failed, current_node_id)
        correct = None
        if extracted:
            correct = extracted[0]
            if node is not None and node.label:
                label_words = tokenize(node.label)
                overlap = [len(tokenize(s) & label_words) for s in extracted]
                if max(overlap) > 0:
                    correct = extracted[overlap.index(max(overlap))]
        elements = count.group(1) if count else "multiple"
        return ErrorAnalysis(
            category=ErrorCategory.SELECTOR,
            message=f"Strict mode violation: selector matched {elements} elements",
            node_id=node.id if node else None,
            failed_selector=failed,
            extracted_selectors=extracted,
            correct_selector=correct,
            page_url=self._page_url(workflow, node),
            suggested_fix=(
                f"Use more specific selector: {correct}"
                if correct
                else f"Selector matched {elements} elements. Use a more specific selector"
            ),
        )

    def _selector(self, workflow: Workflow, message: str, current_node_id: str | None) -> ErrorAnalysis | None:
        extracted = None
        for pattern in _SELECTOR_PATTERNS:
            match = pattern.search(message)
            if match:
                extracted = match.group(1)
                break
        if extracted is None:
            return None
        node = self._resolve_node(workflow, extracted, current_node_id)
        return ErrorAnalysis(
            category=ErrorCategory.SELECTOR,
            message=f"Selector {extracted!r} could not be resolved",
            node_id=node.id if node else None,
            failed_selector=extracted,
            page_url=self._page_url(workflow, node),
            suggested_fix="Verify selector exists on page or use a more specific selector",
        )

    def _missing_node(self, workflow: Workflow, message: str, current_node_id: str | None) -> ErrorAnalysis | None:
        for pattern in _MISSING_NODE_PATTERNS:
            match = pattern.search(message)
            if match:
                return ErrorAnalysis(
                    category=ErrorCategory.MISSING_NODE,
                    message=f"Workflow references missing node {match.group(1)!r}",
                    node_id=match.group(1),
                    suggested_fix="Check workflow connections and ensure all required nodes are present",
                )
        return None

    def _timeout(self, workflow: Workflow, message: str, current_node_id: str | None) -> ErrorAnalysis | None:
        if not _TIMEOUT.search(message):
            return None
        node = workflow.node(current_node_id) if current_node_id else None
        return ErrorAnalysis(
            category=ErrorCategory.TIMEOUT,
            message="Operation exceeded its wait duration",
            node_id=current_node_id,
            page_url=self._page_url(workflow, node),
            suggested_fix="Increase the node timeout or add a wait before it",
        )

    def _configuration(
        self,
        workflow: Workflow,
        message: str,
        current_node_id: str | None,
    ) -> list[ErrorAnalysis]:
        analyses: list[ErrorAnalysis] = []
        field_match = _MISSING_FIELD.search(message)
        if field_match:
            named = _NODE_IN_MESSAGE.search(message)
            node_id = named.group(1) if named else current_node_id
            analyses.append(
                ErrorAnalysis(
                    category=ErrorCategory.CONFIGURATION,
                    message=f"Missing required property {field_match.group(1)!r}",
                    node_id=node_id,
                    suggested_fix=f"Set {field_match.group(1)!r} on the node",
                )
            )

        if current_node_id is not None:
            node = workflow.node(current_node_id)
            nodes: list[Node] = [node] if node is not None else []
        else:
            nodes = list(workflow.nodes)
        for node in nodes:
            missing = missing_fields(node)
            if not missing or any(a.node_id == node.id for a in analyses):
                continue
            analyses.append(
                ErrorAnalysis(
                    category=ErrorCategory.CONFIGURATION,
                    message=f"Node {node.id!r} is missing required properties: {', '.join(missing)}",
                    node_id=node.id,
                    suggested_fix="Review node configuration and ensure all required fields are set",
                )
            )
        return analyses

    def _analyze_logs(self, workflow: Workflow, logs: list[str]) -> list[ErrorAnalysis]:
        analyses: list[ErrorAnalysis] = []
        for line in logs:
            node_match = _LOG_NODE_ID.search(line)
            if node_match is None or not _LOG_ERROR_TERMS.search(line):
                continue
            node_id = node_match.group(1)
            for check in (self._strict_mode, self._selector, self._missing_node, self._timeout):
                found = check(workflow, line, node_id)
                if found is not None:
                    found.severity = Severity.WARNING
                    if not any(a.category is found.category and a.node_id == found.node_id for a in analyses):
                        analyses.append(found)
                    break
        return analyses

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_node(workflow: Workflow, selector: str | None, current_node_id: str | None) -> Node | None:
        if current_node_id:
            node = workflow.node(current_node_id)
            if node is not None:
                return node
        if not selector:
            return None
        for node in workflow.nodes:
            if node.selector == selector:
                return node
        for node in workflow.nodes:
            if node.selector is not None and selector in node.selector:
                return node
        return None

    @staticmethod
    def _page_url(workflow: Workflow, node: Node | None) -> str | None:
        return recorded_page_url(workflow, node.id) if node is not None else None
