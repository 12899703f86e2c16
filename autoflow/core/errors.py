"""Exception taxonomy shared by the engine, the recovery pipeline and the API."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autoflow.core.types import Workflow


class AutoflowError(Exception):
    """Base class for every error raised by autoflow."""


class InvalidGraph(AutoflowError):
    """The workflow violates a graph invariant (start count, ids, edge references)."""


class UnknownNodeType(InvalidGraph):
    """A node's type has no registered handler."""

    def __init__(self, node_id: str, node_type: str) -> None:
        super().__init__(f"Node {node_id!r} has unknown type {node_type!r}")
        self.node_id = node_id
        self.node_type = node_type


class GraphStructureError(AutoflowError):
    """The topology cannot be traversed (fan-out on a plain node, unguarded cycle)."""


class ConfigurationError(AutoflowError):
    """A node is missing a field its handler requires."""

    def __init__(self, node_id: str, field_name: str) -> None:
        super().__init__(f"Node {node_id!r} is missing required property {field_name!r}")
        self.node_id = node_id
        self.field_name = field_name


class ActionFailure(AutoflowError):
    """
    A node's dispatch failed.

    Wraps whatever the automation capability raised and tags it with the
    id of the node being executed.
    """

    def __init__(self, node_id: str, cause: BaseException) -> None:
        super().__init__(str(cause) or cause.__class__.__name__)
        self.node_id = node_id
        self.cause = cause


class ExecutionInProgress(AutoflowError):
    """execute() was called while another run is running or paused."""


class ExecutionStateError(AutoflowError):
    """An operation is not valid in the current execution status."""


class UnknownNodeError(AutoflowError):
    """A patch references a node id that is not in the workflow."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node {node_id!r} not found in workflow")
        self.node_id = node_id


class StrategyUnavailable(AutoflowError):
    """A recovery strategy cannot produce a candidate for this failure."""


class RecoveryExhausted(AutoflowError):
    """Every recovery strategy failed or produced an invalid workflow."""

    def __init__(self, workflow: "Workflow", attempts: list[str]) -> None:
        super().__init__(
            "All recovery strategies failed: " + ("; ".join(attempts) or "none available")
        )
        self.workflow = workflow
        self.attempts = attempts
