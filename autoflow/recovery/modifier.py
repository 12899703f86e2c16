"""Workflow modifier: field patches on node data, topology untouched."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from autoflow.core.errors import UnknownNodeError
from autoflow.core.types import Node, Workflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Patch:
    node_id: str
    field: str
    value: Any

    @classmethod
    def from_dict(cls, raw: dict) -> "Patch":
        return cls(node_id=raw["nodeId"], field=raw["field"], value=raw.get("value"))


@dataclass
class PatchResult:
    workflow: Workflow
    applied: list[Patch] = field(default_factory=list)
    failures: list[UnknownNodeError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class WorkflowModifier:
    """Produces patched copies of a workflow. The input is never mutated."""

    def apply_patch(self, workflow: Workflow, patch: Patch) -> Workflow:
        """Apply one patch. Raises UnknownNodeError for a missing node id."""
        result = self.apply_patches(workflow, [patch])
        if result.failures:
            raise result.failures[0]
        return result.workflow

    def apply_patches(self, workflow: Workflow, patches: Iterable[Patch]) -> PatchResult:
        """
        Apply every patch whose node exists; collect the rest as failures.

        Later patches to the same field win.
        """
        known = {n.id for n in workflow.nodes}
        updates: dict[str, dict[str, Any]] = {}
        applied: list[Patch] = []
        failures: list[UnknownNodeError] = []
        for patch in patches:
            if patch.node_id not in known:
                failures.append(UnknownNodeError(patch.node_id))
                logger.warning(f"Patch skipped: node {patch.node_id!r} not found")
                continue
            updates.setdefault(patch.node_id, {})[patch.field] = patch.value
            applied.append(patch)

        if not updates:
            return PatchResult(workflow=workflow, applied=applied, failures=failures)

        nodes: list[Node] = []
        for node in workflow.nodes:
            changes = updates.get(node.id)
            if changes is None:
                nodes.append(node)
                continue
            data = copy.deepcopy(node.data)
            data.update(changes)
            nodes.append(Node(id=node.id, type=node.type, data=data))
        return PatchResult(workflow=workflow.replace_nodes(nodes), applied=applied, failures=failures)

    def ensure_min_timeout(
        self,
        workflow: Workflow,
        node_ids: Iterable[str],
        floor: int,
    ) -> PatchResult:
        """Raise ``timeout`` to ``floor`` on the given nodes; higher values are kept."""
        patches = []
        for node_id in dict.fromkeys(node_ids):
            node = workflow.node(node_id)
            current = node.data.get("timeout") if node is not None else None
            if node is not None and isinstance(current, (int, float)) and current >= floor:
                continue
            patches.append(Patch(node_id, "timeout", floor))
        return self.apply_patches(workflow, patches)
