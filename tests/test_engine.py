"""Unit tests for ExecutionEngine and ExecutionMonitor (AsyncMock automation capability)."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from autoflow.config import Settings
from autoflow.core.errors import (
    ExecutionInProgress,
    ExecutionStateError,
    GraphStructureError,
    InvalidGraph,
    UnknownNodeType,
)
from autoflow.core.types import (
    BreakpointAt,
    BreakpointConfig,
    BreakpointFor,
    EventType,
    ExecutionStatus,
    PageDebugInfo,
    PauseReason,
    Workflow,
)
from autoflow.engine.capability import AutomationCapability
from autoflow.engine.engine import ExecutionEngine
from autoflow.engine.monitor import ExecutionMonitor

LOGIN_URL = "https://example.com/login"
LOGIN_HTML = '<html><body><form><input name="username"><button id="go">Go</button></form></body></html>'


def make_capability() -> MagicMock:
    capability = MagicMock(spec=AutomationCapability)
    capability.current_url.return_value = LOGIN_URL
    capability.capture_debug_info.side_effect = lambda: PageDebugInfo(page_url=LOGIN_URL, page_source=LOGIN_HTML)
    return capability


def make_workflow(nodes, edges) -> Workflow:
    return Workflow.from_dict({"nodes": nodes, "edges": edges})


def make_login_workflow(click_data=None, nav_data=None) -> Workflow:
    return make_workflow(
        [
            {"id": "start", "type": "start", "data": {}},
            {"id": "nav", "type": "navigate", "data": {"url": LOGIN_URL, **(nav_data or {})}},
            {"id": "click", "type": "click", "data": {"selector": "#submit-btn", "label": "Submit", **(click_data or {})}},
        ],
        [
            {"id": "e1", "source": "start", "target": "nav"},
            {"id": "e2", "source": "nav", "target": "click"},
        ],
    )


def breakpoints(at=BreakpointAt.PRE, for_=BreakpointFor.ALL) -> BreakpointConfig:
    return BreakpointConfig(enabled=True, breakpoint_at=at, breakpoint_for=for_)


async def wait_until(predicate, timeout=2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


class TestExecutionEngine:
    def setup_method(self):
        self.capability = make_capability()
        self.engine = ExecutionEngine(self.capability, settings=Settings(default_timeout_ms=1000))
        self.monitor = ExecutionMonitor(self.engine, poll_interval_ms=1)
        self.events = self.engine.event_bus.subscribe()

    def event_summary(self) -> list[tuple[str, str | None]]:
        return [(e.type.value, e.node_id) for e in self.events.drain()]

    # -- completion -------------------------------------------------------

    async def test_runs_to_completion(self):
        started = await self.engine.execute(make_login_workflow())
        assert started.status is ExecutionStatus.RUNNING
        assert started.execution_id.startswith("exec-")

        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        assert final.execution_id == started.execution_id
        self.capability.navigate.assert_awaited_once_with(LOGIN_URL, timeout=1000, wait_until="load")
        self.capability.click.assert_awaited_once_with("#submit-btn", timeout=1000)
        self.capability.close_session.assert_awaited_once()

    async def test_events_follow_traversal_order(self):
        await self.engine.execute(make_login_workflow())
        await self.engine.wait()
        assert self.event_summary() == [
            ("node_start", "start"),
            ("node_complete", "start"),
            ("node_start", "nav"),
            ("node_complete", "nav"),
            ("node_start", "click"),
            ("node_complete", "click"),
            ("execution_complete", None),
        ]

    async def test_monitor_sees_terminal_status(self):
        await self.engine.execute(make_login_workflow())
        state = await self.monitor.wait_for_completion(max_duration_ms=2000)
        assert state.status.is_terminal

    async def test_record_session_forwarded(self):
        await self.engine.execute(make_login_workflow(), record_session=True)
        await self.engine.wait()
        self.capability.open_session.assert_awaited_once_with(record_video=True)

    async def test_outputs_flow_between_nodes(self):
        self.capability.extract.return_value = "alice"
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "read", "type": "extract", "data": {"selector": "#user", "variable": "user"}},
                {"id": "fill", "type": "type", "data": {"selector": "#greeting", "text": "Hi ${variables.user}"}},
                {"id": "echo", "type": "type", "data": {"selector": "#echo", "text": "${data.read}"}},
            ],
            [
                {"id": "e1", "source": "start", "target": "read"},
                {"id": "e2", "source": "read", "target": "fill"},
                {"id": "e3", "source": "fill", "target": "echo"},
            ],
        )
        await self.engine.execute(wf)
        await self.engine.wait()
        calls = [c.args for c in self.capability.type_text.await_args_list]
        assert calls == [("#greeting", "Hi alice"), ("#echo", "alice")]

    async def test_runs_are_sequential(self):
        first = await self.engine.execute(make_login_workflow())
        await self.engine.wait()
        second = await self.engine.execute(make_login_workflow())
        await self.engine.wait()
        assert first.execution_id != second.execution_id
        assert self.engine.status().status is ExecutionStatus.COMPLETED

    # -- validation -------------------------------------------------------

    async def test_invalid_graph_never_starts(self):
        wf = make_workflow([{"id": "s1", "type": "start"}, {"id": "s2", "type": "start"}], [])
        with pytest.raises(InvalidGraph):
            await self.engine.execute(wf)
        assert self.engine.status().status is ExecutionStatus.IDLE
        assert self.events.drain() == []
        self.capability.open_session.assert_not_called()

    async def test_structure_error_never_starts(self):
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "a", "type": "click", "data": {"selector": "#a"}},
                {"id": "b", "type": "click", "data": {"selector": "#b"}},
            ],
            [{"id": "e1", "source": "start", "target": "a"}, {"id": "e2", "source": "start", "target": "b"}],
        )
        with pytest.raises(GraphStructureError):
            await self.engine.execute(wf)

    async def test_unregistered_node_type(self):
        wf = make_workflow(
            [{"id": "start", "type": "start"}, {"id": "x", "type": "teleport"}],
            [{"id": "e1", "source": "start", "target": "x"}],
        )
        with pytest.raises(UnknownNodeType):
            await self.engine.execute(wf)

    # -- failures ---------------------------------------------------------

    async def test_action_failure_ends_in_error(self):
        self.capability.click.side_effect = Exception(
            "Timeout 1000ms exceeded.\nwaiting for locator('#submit-btn')"
        )
        started = await self.engine.execute(make_login_workflow())
        final = await self.engine.wait()

        assert final.status is ExecutionStatus.ERROR
        assert "Timeout 1000ms exceeded" in final.error
        assert final.current_node_id == "click"

        events = self.events.drain()
        assert [e.type for e in events[-2:]] == [EventType.NODE_ERROR, EventType.EXECUTION_ERROR]
        assert events[-2].node_id == "click"
        assert events[-2].data["pageUrl"] == LOGIN_URL
        assert events[-2].data["nodeType"] == "click"

        capture = self.engine.captured_dom(started.execution_id)
        assert capture is not None
        assert capture.node_id == "click"
        assert capture.page_source == LOGIN_HTML
        self.capability.close_session.assert_awaited_once()

    async def test_missing_config_is_reported_against_node(self):
        wf = make_workflow(
            [{"id": "start", "type": "start"}, {"id": "nav", "type": "navigate", "data": {}}],
            [{"id": "e1", "source": "start", "target": "nav"}],
        )
        await self.engine.execute(wf)
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.ERROR
        assert final.error == "Node 'nav' is missing required property 'url'"

    async def test_session_failure_ends_in_error(self):
        self.capability.open_session.side_effect = RuntimeError("browser not installed")
        await self.engine.execute(make_login_workflow())
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.ERROR
        assert final.error == "browser not installed"

    async def test_fail_silently_continues(self):
        self.capability.navigate.side_effect = Exception("net::ERR_NAME_NOT_RESOLVED")
        await self.engine.execute(make_login_workflow(nav_data={"failSilently": True}))
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        self.capability.click.assert_awaited_once()
        nav_complete = [e for e in self.events.drain() if e.node_id == "nav" and e.type is EventType.NODE_COMPLETE]
        assert len(nav_complete) == 1
        assert nav_complete[0].message.startswith("Failed silently")

    async def test_bypass_skips_dispatch(self):
        await self.engine.execute(make_login_workflow(nav_data={"bypass": True}))
        await self.engine.wait()
        self.capability.navigate.assert_not_called()
        nav_events = [(e.type.value, e.message) for e in self.events.drain() if e.node_id == "nav"]
        assert nav_events == [("node_complete", "Node bypassed")]

    # -- breakpoints ------------------------------------------------------

    async def test_pre_breakpoint_pauses_before_action(self):
        await self.engine.execute(make_login_workflow(), breakpoints())
        state = await self.monitor.wait_for_pause(timeout_ms=2000, node_id="start")
        assert state.pause_reason is PauseReason.BREAKPOINT

        assert self.engine.resume() is True
        state = await self.monitor.wait_for_pause(timeout_ms=2000, node_id="nav")
        assert state.status is ExecutionStatus.PAUSED
        assert state.paused_node_id == "nav"
        self.capability.navigate.assert_not_called()

        self.engine.resume()
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="click")
        self.capability.navigate.assert_awaited_once()
        self.engine.resume()
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED

    async def test_marked_breakpoint_only(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        await self.engine.execute(make_login_workflow(click_data={"breakpoint": True}), config)
        state = await self.monitor.wait_for_pause(timeout_ms=2000)
        assert state.paused_node_id == "click"
        self.capability.navigate.assert_awaited_once()
        self.engine.resume()
        await self.engine.wait()

    async def test_skip_at_breakpoint(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        await self.engine.execute(make_login_workflow(click_data={"breakpoint": True}), config)
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="click")
        assert self.engine.skip() is True
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        self.capability.click.assert_not_called()
        click_events = [(e.type.value, e.message) for e in self.events.drain() if e.node_id == "click"]
        assert click_events == [("node_start", None), ("node_complete", "Node skipped")]

    async def test_post_breakpoint_pauses_after_action(self):
        config = breakpoints(at=BreakpointAt.POST, for_=BreakpointFor.MARKED)
        await self.engine.execute(make_login_workflow(nav_data={"breakpoint": True}), config)
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="nav")
        self.capability.navigate.assert_awaited_once()
        self.capability.click.assert_not_called()
        self.engine.resume()
        assert (await self.engine.wait()).status is ExecutionStatus.COMPLETED

    async def test_resume_is_consumed_once(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        await self.engine.execute(make_login_workflow(click_data={"breakpoint": True}), config)
        await self.monitor.wait_for_pause(timeout_ms=2000)
        assert self.engine.resume() is True
        assert self.engine.resume() is False
        await self.engine.wait()
        self.capability.click.assert_awaited_once()

    async def test_controls_when_not_paused(self):
        assert self.engine.resume() is False
        assert self.engine.skip() is False

    async def test_wait_node_pause(self):
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "hold", "type": "wait", "data": {"pause": True, "duration": 0}},
                {"id": "click", "type": "click", "data": {"selector": "#go"}},
            ],
            [{"id": "e1", "source": "start", "target": "hold"}, {"id": "e2", "source": "hold", "target": "click"}],
        )
        await self.engine.execute(wf)
        state = await self.monitor.wait_for_pause(timeout_ms=2000)
        assert state.paused_node_id == "hold"
        assert state.pause_reason is PauseReason.WAIT_PAUSE
        self.engine.resume()
        assert (await self.engine.wait()).status is ExecutionStatus.COMPLETED
        self.capability.click.assert_awaited_once()

    async def test_execute_while_paused(self):
        await self.engine.execute(make_login_workflow(), breakpoints())
        await self.monitor.wait_for_pause(timeout_ms=2000)
        with pytest.raises(ExecutionInProgress):
            await self.engine.execute(make_login_workflow())
        self.engine.stop()
        await self.engine.wait()

    # -- stop -------------------------------------------------------------

    async def test_stop_while_paused(self):
        await self.engine.execute(make_login_workflow(), breakpoints())
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="start")

        assert self.engine.stop() is True
        assert self.engine.status().status is ExecutionStatus.STOPPED
        assert self.engine.status().paused_node_id is None
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.STOPPED
        self.capability.navigate.assert_not_called()

        last = self.events.drain()[-1]
        assert last.type is EventType.EXECUTION_ERROR
        assert last.message == "Execution stopped by user"

    async def test_stop_interrupts_running_action(self):
        blocker = asyncio.Event()

        async def hang(*args, **kwargs):
            await blocker.wait()

        self.capability.click.side_effect = hang
        await self.engine.execute(make_login_workflow())
        await wait_until(lambda: self.capability.click.await_count == 1)

        assert self.engine.stop() is True
        assert self.engine.status().status is ExecutionStatus.STOPPED
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.STOPPED
        self.capability.close_session.assert_awaited_once()

    async def test_stop_is_idempotent(self):
        assert self.engine.stop() is False
        assert self.engine.status().status is ExecutionStatus.IDLE

        await self.engine.execute(make_login_workflow(), breakpoints())
        await self.monitor.wait_for_pause(timeout_ms=2000)
        assert self.engine.stop() is True
        assert self.engine.stop() is False
        await self.engine.wait()
        assert self.engine.stop() is False
        assert self.engine.status().status is ExecutionStatus.STOPPED

    async def test_new_run_after_stop(self):
        await self.engine.execute(make_login_workflow(), breakpoints())
        await self.monitor.wait_for_pause(timeout_ms=2000)
        self.engine.stop()
        await self.engine.execute(make_login_workflow())
        assert (await self.engine.wait()).status is ExecutionStatus.COMPLETED

    # -- DOM capture ------------------------------------------------------

    async def test_capture_dom_requires_pause(self):
        with pytest.raises(ExecutionStateError):
            await self.engine.capture_dom()

    async def test_capture_dom_while_paused(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        started = await self.engine.execute(make_login_workflow(click_data={"breakpoint": True}), config)
        await self.monitor.wait_for_pause(timeout_ms=2000)

        info = await self.engine.capture_dom()
        assert info.page_url == LOGIN_URL
        assert info.node_id == "click"
        assert info.execution_id == started.execution_id
        assert self.engine.captured_dom(started.execution_id) is info
        self.engine.stop()
        await self.engine.wait()

    # -- loops and branches -----------------------------------------------

    async def test_loop_runs_body_per_item(self):
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "loop", "type": "loop", "data": {"count": 3}},
                {"id": "fill", "type": "type", "data": {"selector": "#q", "text": "${variables.item}"}},
                {"id": "done", "type": "click", "data": {"selector": "#done"}},
            ],
            [
                {"id": "e1", "source": "start", "target": "loop"},
                {"id": "e2", "source": "loop", "target": "fill", "sourceHandle": "body"},
                {"id": "e3", "source": "fill", "target": "loop"},
                {"id": "e4", "source": "loop", "target": "done", "sourceHandle": "exit"},
            ],
        )
        await self.engine.execute(wf)
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        assert [c.args[1] for c in self.capability.type_text.await_args_list] == ["0", "1", "2"]
        self.capability.click.assert_awaited_once_with("#done", timeout=1000)

        state = self.engine.loop_state("loop")
        assert state.index == 3
        assert state.total == 3
        loop_complete = [
            e for e in self.events.drain() if e.node_id == "loop" and e.type is EventType.NODE_COMPLETE
        ]
        assert loop_complete[0].message == "Completed 3 iterations"

    async def test_nested_loops(self):
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "outer", "type": "loop", "data": {"count": 2}},
                {"id": "inner", "type": "loop", "data": {"items": ["a", "b", "c"]}},
                {"id": "press", "type": "click", "data": {"selector": "#press"}},
            ],
            [
                {"id": "e1", "source": "start", "target": "outer"},
                {"id": "e2", "source": "outer", "target": "inner", "sourceHandle": "body"},
                {"id": "e3", "source": "inner", "target": "press", "sourceHandle": "body"},
                {"id": "e4", "source": "press", "target": "inner"},
                {"id": "e5", "source": "inner", "target": "outer", "sourceHandle": "exit"},
            ],
        )
        await self.engine.execute(wf)
        assert (await self.engine.wait()).status is ExecutionStatus.COMPLETED
        assert self.capability.click.await_count == 6

    async def test_loop_over_limit_fails(self):
        engine = ExecutionEngine(self.capability, settings=Settings(max_loop_iterations=2))
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "loop", "type": "loop", "data": {"count": 5}},
                {"id": "press", "type": "click", "data": {"selector": "#press"}},
            ],
            [
                {"id": "e1", "source": "start", "target": "loop"},
                {"id": "e2", "source": "loop", "target": "press", "sourceHandle": "body"},
                {"id": "e3", "source": "press", "target": "loop"},
            ],
        )
        await engine.execute(wf)
        final = await engine.wait()
        assert final.status is ExecutionStatus.ERROR
        assert "maximum iterations" in final.error

    async def test_branch_follows_condition(self):
        self.capability.evaluate.return_value = False
        wf = make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "if", "type": "branch", "data": {"expression": "!!document.querySelector('#banner')"}},
                {"id": "yes", "type": "click", "data": {"selector": "#dismiss"}},
                {"id": "no", "type": "click", "data": {"selector": "#continue"}},
            ],
            [
                {"id": "e1", "source": "start", "target": "if"},
                {"id": "e2", "source": "if", "target": "yes", "sourceHandle": "true"},
                {"id": "e3", "source": "if", "target": "no", "sourceHandle": "false"},
            ],
        )
        await self.engine.execute(wf)
        await self.engine.wait()
        self.capability.click.assert_awaited_once_with("#continue", timeout=1000)

    def make_branch_workflow(self, branch_data=None, with_false_edge=True) -> Workflow:
        edges = [
            {"id": "e1", "source": "start", "target": "if"},
            {"id": "e2", "source": "if", "target": "yes", "sourceHandle": "true"},
        ]
        if with_false_edge:
            edges.append({"id": "e3", "source": "if", "target": "no", "sourceHandle": "false"})
        return make_workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "if", "type": "branch", "data": {"expression": "window.ok", **(branch_data or {})}},
                {"id": "yes", "type": "click", "data": {"selector": "#yes"}},
                {"id": "no", "type": "click", "data": {"selector": "#no"}},
            ],
            edges,
        )

    async def test_skipped_branch_takes_false_edge(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        await self.engine.execute(self.make_branch_workflow({"breakpoint": True}), config)
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="if")
        assert self.engine.skip() is True
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        self.capability.evaluate.assert_not_called()
        self.capability.click.assert_awaited_once_with("#no", timeout=1000)

    async def test_skipped_branch_without_false_edge_fails(self):
        config = breakpoints(for_=BreakpointFor.MARKED)
        wf = self.make_branch_workflow({"breakpoint": True}, with_false_edge=False)
        await self.engine.execute(wf, config)
        await self.monitor.wait_for_pause(timeout_ms=2000, node_id="if")
        self.engine.skip()
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.ERROR
        assert final.current_node_id == "if"
        assert "no 'false' or default edge" in final.error
        self.capability.click.assert_not_called()

    async def test_silently_failing_branch_takes_false_edge(self):
        self.capability.evaluate.side_effect = Exception("Execution context was destroyed")
        await self.engine.execute(self.make_branch_workflow({"failSilently": True}))
        final = await self.engine.wait()
        assert final.status is ExecutionStatus.COMPLETED
        self.capability.click.assert_awaited_once_with("#no", timeout=1000)


class TestExecutionMonitor:
    def setup_method(self):
        self.capability = make_capability()
        self.engine = ExecutionEngine(self.capability, settings=Settings())
        self.monitor = ExecutionMonitor(self.engine, poll_interval_ms=1)

    async def test_idle_engine(self):
        with pytest.raises(RuntimeError, match="No execution"):
            await self.monitor.wait_for_completion(max_duration_ms=10)

    async def test_completion_timeout_leaves_run_alone(self):
        await self.engine.execute(make_login_workflow(), breakpoints())
        with pytest.raises(TimeoutError):
            await self.monitor.wait_for_completion(max_duration_ms=20)
        assert self.engine.status().status is ExecutionStatus.PAUSED
        self.engine.stop()
        await self.engine.wait()

    async def test_pause_never_reached(self):
        await self.engine.execute(make_login_workflow())
        with pytest.raises(RuntimeError, match="before pausing"):
            await self.monitor.wait_for_pause(timeout_ms=2000)

    async def test_completion_deadline_from_environment(self, monkeypatch):
        monkeypatch.setenv("AUTOFLOW_MAX_EXECUTION_DURATION_MS", "20")
        monkeypatch.setenv("AUTOFLOW_POLL_INTERVAL_MS", "1")
        engine = ExecutionEngine(self.capability, settings=Settings(_env_file=None))
        monitor = ExecutionMonitor(engine)
        await engine.execute(make_login_workflow(), breakpoints())
        with pytest.raises(TimeoutError, match="after 20ms"):
            await monitor.wait_for_completion()
        engine.stop()
        await engine.wait()

    async def test_pause_wait_from_settings(self):
        settings = Settings(_env_file=None, breakpoint_wait_ms=20, breakpoint_poll_interval_ms=1)
        monitor = ExecutionMonitor(self.engine, settings=settings)
        await self.engine.execute(make_login_workflow(), breakpoints())
        await monitor.wait_for_pause(node_id="start")
        self.engine.resume()
        with pytest.raises(TimeoutError, match="within 20ms"):
            await monitor.wait_for_pause(node_id="click")
        self.engine.stop()
        await self.engine.wait()
