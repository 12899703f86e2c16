"""Node handlers: registry keyed by node type, built-in actions, config interpolation."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any, Awaitable, Callable

from autoflow.config import Settings
from autoflow.core.errors import ConfigurationError, UnknownNodeType
from autoflow.core.types import Node, NodeType, PauseReason
from autoflow.engine.capability import AutomationCapability
from autoflow.engine.pause import PauseDecision

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "autoflow.node_handlers"

# Fields each built-in type cannot run without
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    NodeType.NAVIGATE.value: ("url",),
    NodeType.CLICK.value: ("selector",),
    NodeType.TYPE.value: ("selector", "text"),
    NodeType.EXTRACT.value: ("selector",),
    NodeType.CODE.value: ("code",),
}

# ${variables.name} / ${data.node.key}
_REF_PATTERN = re.compile(r"\$\{((?:data|variables)(?:\.[A-Za-z0-9_\-]+)+)\}")


@dataclass
class RunContext:
    """Per-execution state handed to every handler."""

    execution_id: str
    capability: AutomationCapability
    settings: Settings
    pause: Callable[[str, PauseReason], Awaitable[PauseDecision]]
    variables: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    def timeout_for(self, config: dict) -> int:
        value = config.get("timeout")
        return int(value) if value else self.settings.default_timeout_ms


Handler = Callable[[Node, dict, RunContext], Awaitable[Any]]


def missing_fields(node: Node) -> list[str]:
    """Required fields absent from ``node.data``. ``text`` may be an empty string."""
    missing = []
    for name in REQUIRED_FIELDS.get(node.type, ()):
        value = node.data.get(name)
        if value is None or (name != "text" and value == ""):
            missing.append(name)
    return missing


def _require(node: Node, config: dict, name: str) -> Any:
    value = config.get(name)
    if value is None or (name != "text" and value == ""):
        raise ConfigurationError(node.id, name)
    return value


# ----------------------------------------------------------------------
# Interpolation
# ----------------------------------------------------------------------


def _lookup(path: str, ctx: RunContext) -> Any:
    source, *keys = path.split(".")
    value: Any = ctx.variables if source == "variables" else ctx.data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return None
    return value


def resolve_config(value: Any, ctx: RunContext) -> Any:
    """
    Replace ``${variables.x}`` / ``${data.x}`` references in a node config.

    A string that is exactly one reference resolves to the raw value, so
    lists and numbers survive. Unresolvable references are left in place.
    """
    if isinstance(value, dict):
        return {k: resolve_config(v, ctx) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_config(v, ctx) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = _REF_PATTERN.fullmatch(value)
    if whole:
        resolved = _lookup(whole.group(1), ctx)
        return value if resolved is None else resolved

    def _sub(match: re.Match) -> str:
        resolved = _lookup(match.group(1), ctx)
        return match.group(0) if resolved is None else str(resolved)

    return _REF_PATTERN.sub(_sub, value)


# ----------------------------------------------------------------------
# Built-in handlers
# ----------------------------------------------------------------------


async def handle_start(node: Node, config: dict, ctx: RunContext) -> None:
    return None


async def handle_navigate(node: Node, config: dict, ctx: RunContext) -> None:
    url = _require(node, config, "url")
    await ctx.capability.navigate(
        str(url),
        timeout=ctx.timeout_for(config),
        wait_until=config.get("waitUntil", "load"),
    )


async def handle_click(node: Node, config: dict, ctx: RunContext) -> None:
    selector = _require(node, config, "selector")
    await ctx.capability.click(selector, timeout=ctx.timeout_for(config))


async def handle_type(node: Node, config: dict, ctx: RunContext) -> None:
    selector = _require(node, config, "selector")
    text = _require(node, config, "text")
    await ctx.capability.type_text(
        selector,
        str(text),
        timeout=ctx.timeout_for(config),
        clear=config.get("clear", True),
    )


async def handle_extract(node: Node, config: dict, ctx: RunContext) -> str | None:
    selector = _require(node, config, "selector")
    value = await ctx.capability.extract(
        selector,
        timeout=ctx.timeout_for(config),
        attribute=config.get("attribute"),
    )
    variable = config.get("variable") or config.get("outputVariable")
    if variable:
        ctx.variables[variable] = value
    return value


async def handle_wait(node: Node, config: dict, ctx: RunContext) -> None:
    """
    Wait for a duration or a selector.

    With ``pause: true`` the run first suspends until resumed; skipping the
    pause also skips the wait itself.
    """
    if config.get("pause"):
        decision = await ctx.pause(node.id, PauseReason.WAIT_PAUSE)
        if decision is not PauseDecision.RESUME:
            return
    selector = config.get("selector")
    if selector and config.get("waitType", "selector") == "selector":
        await ctx.capability.wait_for(
            selector,
            timeout=ctx.timeout_for(config),
            state=config.get("state", "visible"),
        )
        return
    duration = config.get("duration", config.get("value", 0))
    await asyncio.sleep(max(0, int(duration)) / 1000)


async def handle_code(node: Node, config: dict, ctx: RunContext) -> Any:
    code = _require(node, config, "code")
    result = await ctx.capability.evaluate(code)
    variable = config.get("variable") or config.get("outputVariable")
    if variable:
        ctx.variables[variable] = result
    return result


async def handle_branch(node: Node, config: dict, ctx: RunContext) -> bool:
    """Returns the condition outcome; the engine follows the ``true``/``false`` edge."""
    if config.get("expression"):
        return bool(await ctx.capability.evaluate(config["expression"]))
    if config.get("variable"):
        return bool(ctx.variables.get(config["variable"]))
    raise ConfigurationError(node.id, "expression")


async def handle_loop(node: Node, config: dict, ctx: RunContext) -> list:
    """
    Evaluate the loop bound and return the items to iterate.

    Bound sources, first match wins: ``items`` (list), ``variable``
    (name of a list in run variables), ``count`` (int).
    """
    limit = int(config.get("maxIterations") or ctx.settings.max_loop_iterations)
    if "items" in config:
        items = config["items"]
    elif config.get("variable") or config.get("arrayVariable"):
        name = config.get("variable") or config.get("arrayVariable")
        items = ctx.variables.get(name)
        if items is None:
            raise ValueError(f"Loop variable {name!r} is not set")
    elif "count" in config:
        items = list(range(int(config["count"])))
    else:
        raise ConfigurationError(node.id, "items")

    if not isinstance(items, (list, tuple)):
        raise ValueError(f"Loop bound for node {node.id!r} must be a list, got {type(items).__name__}")
    if len(items) > limit:
        raise ValueError(f"Loop node {node.id!r} exceeded maximum iterations ({limit})")
    return list(items)


_BUILTINS: dict[str, Handler] = {
    NodeType.START.value: handle_start,
    NodeType.NAVIGATE.value: handle_navigate,
    NodeType.CLICK.value: handle_click,
    NodeType.TYPE.value: handle_type,
    NodeType.EXTRACT.value: handle_extract,
    NodeType.WAIT.value: handle_wait,
    NodeType.CODE.value: handle_code,
    NodeType.BRANCH.value: handle_branch,
    NodeType.LOOP.value: handle_loop,
}


class HandlerRegistry:
    """
    Maps node type to an async handler.

    Built-ins are registered on construction. Plugins contribute handlers
    through the ``autoflow.node_handlers`` entry point group:

        [project.entry-points."autoflow.node_handlers"]
        screenshot = "mypackage.nodes:handle_screenshot"
    """

    def __init__(self, include_builtins: bool = True) -> None:
        self._handlers: dict[str, Handler] = dict(_BUILTINS) if include_builtins else {}

    def register(self, node_type: str, handler: Handler) -> None:
        if node_type in self._handlers:
            logger.info(f"Replacing handler for node type {node_type!r}")
        self._handlers[node_type] = handler

    def unregister(self, node_type: str) -> None:
        self._handlers.pop(node_type, None)

    def types(self) -> set[str]:
        return set(self._handlers)

    def get(self, node: Node) -> Handler:
        handler = self._handlers.get(node.type)
        if handler is None:
            raise UnknownNodeType(node.id, node.type)
        return handler

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Register every plugin handler found in ``group``. Returns how many loaded."""
        loaded = 0
        for ep in entry_points(group=group):
            try:
                self.register(ep.name, ep.load())
                loaded += 1
            except Exception as e:
                logger.warning(f"Failed to load node handler {ep.name!r} from entry point: {e}")
        return loaded
