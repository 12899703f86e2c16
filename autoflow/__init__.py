from autoflow.core.errors import (
    ActionFailure,
    AutoflowError,
    ConfigurationError,
    ExecutionInProgress,
    ExecutionStateError,
    GraphStructureError,
    InvalidGraph,
    RecoveryExhausted,
    StrategyUnavailable,
    UnknownNodeError,
    UnknownNodeType,
)
from autoflow.core.graph import WorkflowGraph, validate_workflow
from autoflow.core.types import (
    BreakpointAt,
    BreakpointConfig,
    BreakpointFor,
    Edge,
    ErrorAnalysis,
    ErrorCategory,
    EventType,
    ExecutionEvent,
    ExecutionState,
    ExecutionStatus,
    Node,
    PageDebugInfo,
    PauseReason,
    SelectorUpdate,
    Workflow,
)
from autoflow.engine import (
    AutomationCapability,
    EventBus,
    ExecutionEngine,
    ExecutionMonitor,
    HandlerRegistry,
    PlaywrightCapability,
)
from autoflow.recovery import (
    DOMSelectorInference,
    ErrorAnalyzer,
    Patch,
    RecoveryOrchestrator,
    RecoveryResult,
    RecoveryService,
    WorkflowModifier,
)

__all__ = [
    # Graph model
    "Edge",
    "Node",
    "Workflow",
    "WorkflowGraph",
    "validate_workflow",
    # Execution
    "AutomationCapability",
    "BreakpointAt",
    "BreakpointConfig",
    "BreakpointFor",
    "EventBus",
    "EventType",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionMonitor",
    "ExecutionState",
    "ExecutionStatus",
    "HandlerRegistry",
    "PauseReason",
    "PlaywrightCapability",
    # Recovery
    "DOMSelectorInference",
    "ErrorAnalysis",
    "ErrorAnalyzer",
    "ErrorCategory",
    "PageDebugInfo",
    "Patch",
    "RecoveryOrchestrator",
    "RecoveryResult",
    "RecoveryService",
    "SelectorUpdate",
    "WorkflowModifier",
    # Errors
    "ActionFailure",
    "AutoflowError",
    "ConfigurationError",
    "ExecutionInProgress",
    "ExecutionStateError",
    "GraphStructureError",
    "InvalidGraph",
    "RecoveryExhausted",
    "StrategyUnavailable",
    "UnknownNodeError",
    "UnknownNodeType",
]
