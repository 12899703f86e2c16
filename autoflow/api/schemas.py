"""Request/response models for the HTTP surface."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from autoflow.core.types import BreakpointAt, BreakpointConfig, BreakpointFor, Edge, Node, Workflow


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class EdgeModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None


class WorkflowModel(BaseModel):
    nodes: list[NodeModel] = Field(default_factory=list)
    edges: list[EdgeModel] = Field(default_factory=list)

    def to_workflow(self) -> Workflow:
        return Workflow(
            nodes=tuple(Node(id=n.id, type=n.type, data=dict(n.data)) for n in self.nodes),
            edges=tuple(
                Edge(
                    id=e.id or f"{e.source}->{e.target}",
                    source=e.source,
                    target=e.target,
                    source_handle=e.source_handle,
                )
                for e in self.edges
            ),
        )


class BreakpointConfigModel(CamelModel):
    enabled: bool = False
    breakpoint_at: Literal["pre", "post", "both"] = "pre"
    breakpoint_for: Literal["all", "marked"] = "all"

    def to_config(self) -> BreakpointConfig:
        return BreakpointConfig(
            enabled=self.enabled,
            breakpoint_at=BreakpointAt(self.breakpoint_at),
            breakpoint_for=BreakpointFor(self.breakpoint_for),
        )


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


class ExecuteRequest(CamelModel):
    workflow: WorkflowModel = Field(..., description="Graph of nodes and edges to run")
    trace_logs: bool = Field(False, description="Log every node transition at INFO")
    record_session: bool = Field(False, description="Record a video of the browser session")
    breakpoint_config: Optional[BreakpointConfigModel] = None


class ExecuteResponse(CamelModel):
    execution_id: str
    status: str


class StatusResponse(CamelModel):
    execution_id: str
    status: str
    current_node_id: Optional[str] = None
    error: Optional[str] = None
    paused_node_id: Optional[str] = None
    pause_reason: Optional[str] = None


class ControlResponse(CamelModel):
    success: bool
    message: str


class PauseControlRequest(CamelModel):
    action: Literal["skip", "resume", "continue"] = Field(..., description="continue is an alias of resume")


class CaptureDomResponse(CamelModel):
    success: bool
    debug_info: Optional[dict[str, Any]] = None


# ----------------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------------


class AnalyzeRequest(CamelModel):
    workflow: WorkflowModel
    error_message: str
    logs: Optional[list[str]] = None
    current_node_id: Optional[str] = None
    execution_id: Optional[str] = None


class AnalyzeResponse(CamelModel):
    analyses: list[dict[str, Any]]


class FixRequest(CamelModel):
    workflow: WorkflowModel
    error_analysis: Optional[list[dict[str, Any]]] = Field(
        None, description="Analyses from /workflow/analyze; derived from errorMessage when omitted"
    )
    error_message: Optional[str] = None
    logs: Optional[list[str]] = None
    current_node_id: Optional[str] = None
    execution_id: Optional[str] = None
    use_dom_capture: bool = True


class FixResponse(CamelModel):
    success: bool
    workflow: dict[str, Any]
    strategy: Optional[str] = None
    updates: list[dict[str, Any]] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    unsupported: list[dict[str, Any]] = Field(default_factory=list)
    attempts: list[str] = Field(default_factory=list)
