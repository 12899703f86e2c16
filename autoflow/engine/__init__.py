"""Execution engine public API."""

from autoflow.engine.capability import AutomationCapability, PlaywrightCapability
from autoflow.engine.engine import ExecutionEngine, LoopState
from autoflow.engine.events import EventBus, Subscription
from autoflow.engine.handlers import HandlerRegistry, RunContext, resolve_config
from autoflow.engine.monitor import ExecutionMonitor
from autoflow.engine.pause import PauseController, PauseDecision, should_break

__all__ = [
    "AutomationCapability",
    "EventBus",
    "ExecutionEngine",
    "ExecutionMonitor",
    "HandlerRegistry",
    "LoopState",
    "PauseController",
    "PauseDecision",
    "PlaywrightCapability",
    "RunContext",
    "Subscription",
    "resolve_config",
    "should_break",
]
