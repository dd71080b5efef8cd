"""Tests for the TaskRunner pipeline.

Every test wires a real ActivityLog, ApprovalGate and ActionExecutor
around a MockRemoteSession and a MockModel, with all delays running on
a FakeClock.
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from conftest import FakeClock, MockModel, MockRemoteSession

from rca_agent.config.settings import Settings
from rca_agent.core.action_executor import ActionExecutor
from rca_agent.core.activity_log import ActivityLog
from rca_agent.core.approval_gate import ApprovalGate, Resolution
from rca_agent.core.errors import ModelUnavailable
from rca_agent.core.model_client import ComputerUseClient
from rca_agent.core.session import AgentStatus, SessionContext
from rca_agent.core.task_runner import TaskRunner
from rca_agent.models.actions import (
    ActionDescriptor,
    Decision,
    SafetyDecision,
)
from rca_agent.models.events import ActivityEntry, ActivityType
from rca_agent.models.task import TaskStatus
from rca_agent.remote.interface import BUTTON_LEFT

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _click(
    x: int = 500,
    y: int = 500,
    decision: Decision | None = None,
    explanation: str = "",
) -> ActionDescriptor:
    safety = SafetyDecision(explanation, decision) if decision else None
    return ActionDescriptor("click_at", {"x": x, "y": y}, safety)


def _navigate(url: str = "https://example.com") -> ActionDescriptor:
    return ActionDescriptor("navigate", {"url": url})


def _make_runner(
    clock: FakeClock,
    remote: MockRemoteSession,
    model: MockModel,
    **overrides: Any,
) -> tuple[TaskRunner, SessionContext, ApprovalGate]:
    settings = Settings(**overrides)
    context = SessionContext(remote, ActivityLog(clock=clock.time))
    gate = ApprovalGate(
        context.log, settings, sleep=clock.sleep, clock=clock.time
    )
    executor = ActionExecutor(
        remote,
        context.log,
        settings,
        capture_fn=context.capture_screen,
        sleep=clock.sleep,
    )
    runner = TaskRunner(context, model, executor, gate, settings)
    return runner, context, gate


def _presses(remote: MockRemoteSession) -> list[tuple]:
    return [c for c in remote.pointer_events if c[3] == BUTTON_LEFT]


# ------------------------------------------------------------------
# Basic flow
# ------------------------------------------------------------------


class TestBasicFlow:
    """Tests for tasks without confirmation."""

    def test_empty_response_completes(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A model that proposes nothing completes the task."""

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, MockModel())
            task = await runner.execute("Look around")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert task.status is TaskStatus.COMPLETED
        assert task.actions_executed == 0
        assert task.model_turns == 1
        assert task.result is None
        assert remote.commands == []
        assert context.status is AgentStatus.IDLE
        assert context.current_task is None

    def test_capture_sent_to_model(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """The first model call receives a PNG of the screen."""
        model = MockModel()

        async def scenario():
            runner, _, _ = _make_runner(clock, remote, model)
            await runner.execute("Look around")
            await runner.shutdown()

        asyncio.run(scenario())
        instruction, capture = model.propose_calls[0]
        assert instruction == "Look around"
        assert capture is not None and capture.startswith(b"\x89PNG")

    def test_allowed_actions_execute_in_order(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Allowed actions run directly, in batch order."""
        model = MockModel({"Go": [[_navigate(), _click(500, 500)]]})

        async def scenario():
            runner, _, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.COMPLETED
        assert task.actions_executed == 2
        assert remote.commands[0] == ("navigate", "https://example.com")
        assert _presses(remote) == [("pointer", 720, 450, BUTTON_LEFT)]

    def test_received_and_executing_entries(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """The task's entries include its receipt and each action."""
        model = MockModel({"Go": [[_click()]]})

        async def scenario():
            runner, _, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        contents = [e.content for e in task.entries]
        assert contents[0] == 'Received task: "Go"'
        assert "Executing: click_at" in contents
        assert all(e.task_id == task.id for e in task.entries)

    def test_model_text_logged_as_reasoning(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Final model text becomes reasoning entries and the result."""
        model = MockModel(final_text="All done.\nNothing else to do.")

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        reasoning = [
            e.content for e in context.log.of_type(ActivityType.REASONING)
        ]
        assert reasoning == ["All done.", "Nothing else to do."]
        assert task.result == "All done.\nNothing else to do."

    def test_blank_description_rejected(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """An empty task description is refused."""

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, MockModel())
            with pytest.raises(ValueError):
                runner.submit("   ")
            return context

        context = asyncio.run(scenario())
        assert context.tasks == []


# ------------------------------------------------------------------
# Safety decisions
# ------------------------------------------------------------------


class TestSafety:
    """Tests for blocked and confirmation-required actions."""

    def test_blocked_never_executes(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A blocked action sends no command and is reported."""
        blocked = _click(decision=Decision.BLOCKED, explanation="phishing")
        model = MockModel({"Go": [[blocked]]})

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert remote.commands == []
        assert task.status is TaskStatus.COMPLETED
        assert task.actions_executed == 0
        skipped = [
            e
            for e in context.log.of_type(ActivityType.SAFETY_CHECK)
            if e.content == "Blocked action skipped: click_at"
        ]
        assert len(skipped) == 1
        assert skipped[0].args["explanation"] == "phishing"
        assert model.reports[0][0].status == "blocked"

    def test_approved_action_runs_after_resolution(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Nothing after a gated action runs before it is approved."""
        risky = _click(
            100, 100, Decision.REQUIRE_CONFIRMATION, "Confirms purchase"
        )
        model = MockModel({"Buy": [[risky, _click(900, 900)]]})
        commands_at_open: list[int] = []

        async def scenario():
            runner, _, gate = _make_runner(clock, remote, model)

            def on_open(request) -> None:
                commands_at_open.append(len(remote.commands))
                asyncio.get_running_loop().call_soon(gate.approve)

            gate.add_open_listener(on_open)
            task = await runner.execute("Buy")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert commands_at_open == [0]
        assert task.status is TaskStatus.COMPLETED
        assert task.actions_executed == 2
        assert [p[1] for p in _presses(remote)] == [144, 1296]
        report = model.reports[0][0]
        assert report.status == "executed"
        assert report.safety_acknowledged

    def test_safety_check_logged_before_gate(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A gated action is announced as a safety_check entry."""
        risky = _click(decision=Decision.REQUIRE_CONFIRMATION)
        model = MockModel({"Buy": [[risky]]})

        async def scenario():
            runner, context, gate = _make_runner(clock, remote, model)
            gate.add_open_listener(lambda _r: gate.approve())
            await runner.execute("Buy")
            await runner.shutdown()
            return context

        context = asyncio.run(scenario())
        first = context.log.of_type(ActivityType.SAFETY_CHECK)[0]
        assert first.content == "Executing: click_at"

    def test_denied_action_skipped(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A denied action is skipped; the rest of the batch runs."""
        risky = _click(100, 100, Decision.REQUIRE_CONFIRMATION, "Deletes")
        model = MockModel({"Clean": [[risky, _click(900, 900)]]})

        async def scenario():
            runner, _, gate = _make_runner(clock, remote, model)
            gate.add_open_listener(
                lambda _r: asyncio.get_running_loop().call_soon(gate.deny)
            )
            task = await runner.execute("Clean")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.COMPLETED
        assert task.actions_executed == 1
        assert [p[1] for p in _presses(remote)] == [1296]
        statuses = [(r.status, r.error) for r in model.reports[0]]
        assert statuses == [("denied", "denied"), ("executed", "")]

    def test_timeout_denies(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Without a decision the action is denied at the timeout."""
        risky = _click(decision=Decision.REQUIRE_CONFIRMATION)
        model = MockModel({"Buy": [[risky]]})

        async def scenario():
            runner, _, gate = _make_runner(
                clock, remote, model, approval_timeout_seconds=3
            )
            task = await runner.execute("Buy")
            await runner.shutdown()
            return task, gate

        task, gate = asyncio.run(scenario())
        assert remote.pointer_events == []
        assert gate.last_outcome.resolution is Resolution.TIMED_OUT
        assert model.reports[0][0].error == "timed_out"
        assert task.status is TaskStatus.COMPLETED

    def test_invalid_action_skipped(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """An invalid action is reported and the batch continues."""
        model = MockModel({"Go": [[_click(5000, 10), _navigate()]]})

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert task.status is TaskStatus.COMPLETED
        assert remote.commands == [("navigate", "https://example.com")]
        errors = context.log.of_type(ActivityType.ERROR)
        assert errors[0].content.startswith("Invalid action click_at")
        assert model.reports[0][0].status == "invalid"


# ------------------------------------------------------------------
# Multi-turn
# ------------------------------------------------------------------


class TestModelTurns:
    """Tests for the follow-up loop."""

    def test_follow_up_until_empty(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Outcomes are reported until the model proposes nothing."""
        model = MockModel(
            {"Go": [[_navigate()], [_click()]]}, final_text="Finished"
        )

        async def scenario():
            runner, _, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert task.model_turns == 3
        assert task.actions_executed == 2
        assert task.result == "Finished"
        assert [[r.name for r in batch] for batch in model.reports] == [
            ["navigate"],
            ["click_at"],
        ]

    def test_turn_limit(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """The task completes once the turn budget is spent."""
        model = MockModel({"Loop": [[_click()] for _ in range(5)]})

        async def scenario():
            runner, _, _ = _make_runner(
                clock, remote, model, max_model_turns=2
            )
            task = await runner.execute("Loop")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.COMPLETED
        assert task.model_turns == 2
        assert task.actions_executed == 2
        assert len(model.reports) == 1


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


class TestFailures:
    """Tests for model and transport failures."""

    def test_model_unavailable_fails_task(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """The error is logged before the task becomes failed."""
        model = MockModel()
        model.raise_on_propose = ModelUnavailable("HTTP 401: denied")
        status_at_error: list[TaskStatus] = []

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)

            def watch(entry: ActivityEntry) -> None:
                if entry.content.startswith("Task failed"):
                    status_at_error.append(runner.current_task.status)

            context.log.add_listener(watch)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert task.error == "HTTP 401: denied"
        assert status_at_error == [TaskStatus.IN_PROGRESS]
        assert context.status is AgentStatus.ERROR
        assert remote.commands == []

    def test_transport_failure_stops_batch(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A failed command fails the task; later actions never run."""
        remote.raise_on_pointer = ConnectionError("socket closed")
        model = MockModel({"Go": [[_click(), _navigate()]]})

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert "socket closed" in task.error
        assert ("navigate", "https://example.com") not in remote.commands
        contents = [e.content for e in context.log.of_type(ActivityType.ERROR)]
        assert "Failed to execute click_at: socket closed" in contents
        assert contents[-1].startswith("Task failed")

    def test_follow_up_failure(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A model failure mid-task fails the task."""
        model = MockModel({"Go": [[_click()], [_click()]]})
        model.raise_on_follow_up = ModelUnavailable("ConnectError: refused")

        async def scenario():
            runner, _, _ = _make_runner(clock, remote, model)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert task.actions_executed == 1


# ------------------------------------------------------------------
# Queueing and cancellation
# ------------------------------------------------------------------


class TestQueueAndCancel:
    """Tests for sequential execution and external stops."""

    def test_tasks_do_not_interleave(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A queued task starts only after the previous one finishes."""
        model = MockModel(
            {
                "first": [[_click(), _click()], [_click()]],
                "second": [[_navigate()]],
            }
        )

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            first = runner.submit("first")
            second = runner.submit("second")
            assert runner.queued == 2
            await runner.wait_for(second)
            await runner.shutdown()
            return first, second, context

        first, second, context = asyncio.run(scenario())
        assert first.status is second.status is TaskStatus.COMPLETED
        work = [
            e.task_id
            for e in context.log
            if e.type in (ActivityType.ACTION, ActivityType.REASONING)
        ]
        assert work == sorted(work, key=lambda t: t != first.id)
        assert remote.commands[-1] == ("navigate", "https://example.com")

    def test_cancel_while_pending_approval(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Cancelling during approval denies it and cancels the task."""
        risky = _click(decision=Decision.REQUIRE_CONFIRMATION)
        model = MockModel({"Buy": [[risky, _click()]]})

        async def scenario():
            runner, context, gate = _make_runner(clock, remote, model)
            opened = asyncio.Event()
            gate.add_open_listener(lambda _r: opened.set())
            task = runner.submit("Buy")
            await opened.wait()
            assert runner.cancel_current("Emergency stop")
            await runner.wait_for(task)
            await runner.shutdown()
            return task, gate, context

        task, gate, context = asyncio.run(scenario())
        assert task.status is TaskStatus.CANCELLED
        assert task.error == "Emergency stop"
        assert gate.last_outcome.resolution is Resolution.CANCELLED
        assert gate.pending is None
        assert remote.pointer_events == []
        assert context.log.entries[-1].content == (
            "Task cancelled: Emergency stop"
        )

    def test_cancel_with_nothing_running(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """cancel_current on an idle runner does nothing."""

        async def scenario() -> bool:
            runner, _, _ = _make_runner(clock, remote, MockModel())
            return runner.cancel_current()

        assert asyncio.run(scenario()) is False

    def test_stop_cancels_queue(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """stop() cancels the running task and every queued one."""
        risky = _click(decision=Decision.REQUIRE_CONFIRMATION)
        model = MockModel({"a": [[risky]], "b": [[_click()]]})

        async def scenario():
            runner, _, gate = _make_runner(clock, remote, model)
            opened = asyncio.Event()
            gate.add_open_listener(lambda _r: opened.set())
            tasks = [runner.submit(name) for name in ("a", "b", "c")]
            await opened.wait()
            cancelled = runner.stop("Session stopped")
            for task in tasks:
                await runner.wait_for(task)
            await runner.shutdown()
            return cancelled, tasks

        cancelled, tasks = asyncio.run(scenario())
        assert cancelled == 3
        assert all(t.status is TaskStatus.CANCELLED for t in tasks)
        assert tasks[1].started_at is None
        assert remote.commands == []
        assert [c[0] for c in model.propose_calls] == ["a"]


# ------------------------------------------------------------------
# Unexpected errors
# ------------------------------------------------------------------


class TestUnexpectedErrors:
    """Errors outside the AgentError hierarchy still fail the task."""

    def test_unexpected_model_error_fails_task(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """The error is logged, then the task becomes failed."""
        model = MockModel()
        model.raise_on_propose = RuntimeError("boom")
        status_at_error: list[TaskStatus] = []

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)

            def watch(entry: ActivityEntry) -> None:
                if entry.content.startswith("Task failed"):
                    status_at_error.append(runner.current_task.status)

            context.log.add_listener(watch)
            task = await runner.execute("Go")
            await runner.shutdown()
            return task, context

        task, context = asyncio.run(scenario())
        assert task.status is TaskStatus.FAILED
        assert task.error == "RuntimeError: boom"
        assert status_at_error == [TaskStatus.IN_PROGRESS]
        assert context.status is AgentStatus.ERROR
        contents = [e.content for e in context.log]
        assert "Task failed: RuntimeError: boom" in contents
        assert not any(c.startswith("Task cancelled") for c in contents)

    def test_malformed_model_body_fails_task(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """A 200 response with a bad shape fails the task."""
        resp = MagicMock(spec=httpx.Response)
        resp.status_code = 200
        resp.json.return_value = {"candidates": ["not-a-dict"]}
        client = MagicMock(spec=httpx.AsyncClient)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        client.post = AsyncMock(return_value=resp)
        model = ComputerUseClient(Settings(), api_key="g-test")

        async def scenario():
            runner, context, _ = _make_runner(clock, remote, model)
            task = await runner.execute("do it")
            await runner.shutdown()
            return task, context

        with patch("httpx.AsyncClient", return_value=client):
            task, context = asyncio.run(scenario())

        assert task.status is TaskStatus.FAILED
        assert "malformed model response" in task.error
        assert context.log.entries[-1].content.startswith("Task failed")


# ------------------------------------------------------------------
# Cancellation at each suspension point
# ------------------------------------------------------------------


class TestCancelWhileSuspended:
    """A stop aborts every kind of wait and runs nothing afterwards."""

    @staticmethod
    async def _cancel_when_hanging(
        runner: TaskRunner,
        hanging: asyncio.Event,
        description: str,
    ):
        task = runner.submit(description)
        await hanging.wait()
        assert runner.cancel_current("Stopped")
        await runner.wait_for(task)
        await runner.shutdown()
        return task

    def test_cancel_while_awaiting_propose(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Cancelling the first model call cancels the task."""
        model = MockModel({"Go": [[_navigate()]]})
        model.hang_on_propose = True

        async def scenario():
            model.hanging = asyncio.Event()
            runner, _, _ = _make_runner(clock, remote, model)
            return await self._cancel_when_hanging(runner, model.hanging, "Go")

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.CANCELLED
        assert task.error == "Stopped"
        assert remote.commands == []

    def test_cancel_while_awaiting_follow_up(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Cancelling a follow-up call leaves the next batch unrun."""
        model = MockModel({"Go": [[_click()], [_navigate()]]})
        model.hang_on_follow_up = True

        async def scenario():
            model.hanging = asyncio.Event()
            runner, _, _ = _make_runner(clock, remote, model)
            return await self._cancel_when_hanging(runner, model.hanging, "Go")

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.CANCELLED
        assert task.actions_executed == 1
        assert len(model.reports) == 1
        assert ("navigate", "https://example.com") not in remote.commands

    def test_cancel_during_settle_delay(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Cancelling the post-action settle delay stops the batch."""
        model = MockModel({"Go": [[_click(), _navigate()]]})
        clock.hang_at = 0.5

        async def scenario():
            clock.hanging = asyncio.Event()
            runner, _, _ = _make_runner(clock, remote, model)
            return await self._cancel_when_hanging(runner, clock.hanging, "Go")

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.CANCELLED
        assert len(_presses(remote)) == 1
        assert ("navigate", "https://example.com") not in remote.commands
        assert model.reports == []

    def test_cancel_during_wait_action(
        self, clock: FakeClock, remote: MockRemoteSession
    ) -> None:
        """Cancelling the five-second wait stops the batch."""
        wait = ActionDescriptor("wait_5_seconds", {})
        model = MockModel({"Go": [[wait, _navigate()]]})
        clock.hang_at = 5.0

        async def scenario():
            clock.hanging = asyncio.Event()
            runner, _, _ = _make_runner(clock, remote, model)
            return await self._cancel_when_hanging(runner, clock.hanging, "Go")

        task = asyncio.run(scenario())
        assert task.status is TaskStatus.CANCELLED
        assert task.actions_executed == 0
        assert remote.commands == []
