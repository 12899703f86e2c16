"""Core type definitions: workflow graph, execution state, events, analyses."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


# ----------------------------------------------------------------------
# Graph model
# ----------------------------------------------------------------------


class NodeType(str, Enum):
    START = "start"
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    EXTRACT = "extract"
    WAIT = "wait"
    LOOP = "loop"
    CODE = "code"
    BRANCH = "branch"


# Node types allowed to have more than one outbound edge
BRANCH_TYPES: frozenset[str] = frozenset({NodeType.LOOP.value, NodeType.BRANCH.value})

# Node types that act on an element and carry a ``selector``
INTERACTION_TYPES: frozenset[str] = frozenset(
    {"click", "type", "extract", "wait", "hover", "select", "verify"}
)


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return str(self.data.get("label") or "")

    @property
    def selector(self) -> str | None:
        value = self.data.get("selector")
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, raw: dict) -> "Node":
        data = dict(raw.get("data") or {})
        node_type = raw.get("type") or data.get("type") or ""
        return cls(id=str(raw["id"]), type=str(node_type), data=data)


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    source_handle: str | None = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "source": self.source, "target": self.target}
        if self.source_handle is not None:
            d["sourceHandle"] = self.source_handle
        return d

    @classmethod
    def from_dict(cls, raw: dict) -> "Edge":
        source = str(raw["source"])
        target = str(raw["target"])
        return cls(
            id=str(raw.get("id") or f"{source}->{target}"),
            source=source,
            target=target,
            source_handle=raw.get("sourceHandle"),
        )


@dataclass(frozen=True)
class Workflow:
    """Immutable set of nodes and edges. Copies are made, never edits."""

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def replace_nodes(self, nodes: list[Node]) -> "Workflow":
        return Workflow(nodes=tuple(nodes), edges=self.edges)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "Workflow":
        return cls(
            nodes=tuple(Node.from_dict(n) for n in raw.get("nodes") or []),
            edges=tuple(Edge.from_dict(e) for e in raw.get("edges") or []),
        )


# ----------------------------------------------------------------------
# Execution state
# ----------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR, ExecutionStatus.STOPPED)

    @property
    def is_active(self) -> bool:
        return self in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)


class PauseReason(str, Enum):
    WAIT_PAUSE = "wait-pause"
    BREAKPOINT = "breakpoint"


class BreakpointAt(str, Enum):
    PRE = "pre"
    POST = "post"
    BOTH = "both"


class BreakpointFor(str, Enum):
    ALL = "all"
    MARKED = "marked"


@dataclass(frozen=True)
class BreakpointConfig:
    enabled: bool = False
    breakpoint_at: BreakpointAt = BreakpointAt.PRE
    breakpoint_for: BreakpointFor = BreakpointFor.ALL

    @classmethod
    def from_dict(cls, raw: dict | None) -> "BreakpointConfig":
        if not raw:
            return cls()
        return cls(
            enabled=bool(raw.get("enabled", False)),
            breakpoint_at=BreakpointAt(raw.get("breakpointAt", "pre")),
            breakpoint_for=BreakpointFor(raw.get("breakpointFor", "all")),
        )


@dataclass
class ExecutionState:
    execution_id: str = ""
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_node_id: str | None = None
    paused_node_id: str | None = None
    pause_reason: PauseReason | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "executionId": self.execution_id,
            "status": self.status.value,
        }
        if self.current_node_id is not None:
            d["currentNodeId"] = self.current_node_id
        if self.error is not None:
            d["error"] = self.error
        if self.paused_node_id is not None:
            d["pausedNodeId"] = self.paused_node_id
        if self.pause_reason is not None:
            d["pauseReason"] = self.pause_reason.value
        return d


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


class EventType(str, Enum):
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class ExecutionEvent:
    type: EventType
    node_id: str | None = None
    message: str | None = None
    timestamp: int = field(default_factory=now_ms)
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type.value, "timestamp": self.timestamp}
        if self.node_id is not None:
            d["nodeId"] = self.node_id
        if self.message is not None:
            d["message"] = self.message
        if self.data:
            d["data"] = self.data
        return d


# ----------------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------------


class ErrorCategory(str, Enum):
    SELECTOR = "selector"
    MISSING_NODE = "missing_node"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    OTHER = "other"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ErrorAnalysis:
    category: ErrorCategory
    message: str
    severity: Severity = Severity.ERROR
    node_id: str | None = None
    suggested_fix: str | None = None
    extracted_selectors: list[str] = field(default_factory=list)
    correct_selector: str | None = None
    failed_selector: str | None = None
    page_url: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        optional = {
            "nodeId": self.node_id,
            "suggestedFix": self.suggested_fix,
            "correctSelector": self.correct_selector,
            "failedSelector": self.failed_selector,
            "pageUrl": self.page_url,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        if self.extracted_selectors:
            d["extractedSelectors"] = list(self.extracted_selectors)
        return d

    @classmethod
    def from_dict(cls, raw: dict) -> "ErrorAnalysis":
        return cls(
            category=ErrorCategory(raw.get("category", "other")),
            severity=Severity(raw.get("severity", "error")),
            message=str(raw.get("message", "")),
            node_id=raw.get("nodeId"),
            suggested_fix=raw.get("suggestedFix"),
            extracted_selectors=list(raw.get("extractedSelectors") or []),
            correct_selector=raw.get("correctSelector"),
            failed_selector=raw.get("failedSelector"),
            page_url=raw.get("pageUrl"),
        )


@dataclass(frozen=True)
class SelectorSuggestion:
    selector: str
    selector_type: str  # "css" | "text"
    reason: str
    element_info: str = ""

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "selectorType": self.selector_type,
            "reason": self.reason,
            "elementInfo": self.element_info,
        }


@dataclass
class PageDebugInfo:
    page_url: str
    page_source: str
    similar_selectors: list[SelectorSuggestion] = field(default_factory=list)
    execution_id: str | None = None
    node_id: str | None = None
    captured_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {
            "pageUrl": self.page_url,
            "pageSource": self.page_source,
            "similarSelectors": [s.to_dict() for s in self.similar_selectors],
            "executionId": self.execution_id,
            "nodeId": self.node_id,
            "capturedAt": self.captured_at,
        }


@dataclass(frozen=True)
class SelectorUpdate:
    node_id: str
    old_selector: str | None
    new_selector: str

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "oldSelector": self.old_selector,
            "newSelector": self.new_selector,
        }
