"""Remote Computer Agent entry point.

Wires the session context, Approval Gate, Executor, model client and
Task Runner together around one remote session, and exposes a CLI to
run a task against a remote desktop.

Typical usage::

    rca-agent --session-factory mypkg.vnc:make_session \\
        --host 10.0.0.5 --task "Open example.com"

Programmatic usage::

    from rca_agent.main import build_agent

    agent = build_agent(remote, api_key="...")
    agent.start_session()
    task = await agent.run_task("Open example.com")
    print(task.status)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from dataclasses import dataclass

from rca_agent.config.settings import Settings
from rca_agent.core.action_executor import ActionExecutor, SleepFn
from rca_agent.core.approval_gate import (
    ApprovalGate,
    ApprovalOutcome,
    ApprovalRequest,
)
from rca_agent.core.errors import TaskStateError, TransportError
from rca_agent.core.model_client import ComputerUseClient
from rca_agent.core.session import (
    AgentStatus,
    ConnectionStatus,
    ScreenCapture,
    SessionContext,
)
from rca_agent.core.task_runner import TaskRunner
from rca_agent.models.actions import describe_action
from rca_agent.models.events import ActivityEntry, ActivityType
from rca_agent.models.task import Task, TaskStatus
from rca_agent.remote.interface import (
    RemoteSession,
    VNCConfig,
    load_session_factory,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Remote Agent
# ---------------------------------------------------------------------------


@dataclass
class RemoteAgent:
    """Top-level agent that holds all component references.

    Constructed via the ``build_agent`` factory function.  Session
    control (``start_session``, ``stop_session``, ``emergency_stop``)
    is synchronous; running a task is a coroutine.

    Attributes:
        remote: Remote-session collaborator.
        context: Session context (log, tasks, screenshot cache).
        gate: Approval gate for confirmation-required actions.
        executor: Dispatches actions to the remote session.
        model: Gemini computer-use client.
        runner: Task queue and per-task orchestrator.
        settings: Immutable application configuration.
    """

    remote: RemoteSession
    context: SessionContext
    gate: ApprovalGate
    executor: ActionExecutor
    model: ComputerUseClient
    runner: TaskRunner
    settings: Settings

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start_session(self, config: VNCConfig | None = None) -> None:
        """Connect the remote session and reset the agent status.

        Args:
            config: Connection parameters.  Defaults to the ``vnc_*``
                values in ``Settings``.

        Raises:
            TransportError: If the remote session cannot connect.
        """
        if config is None:
            config = VNCConfig(
                host=self.settings.vnc_host,
                port=self.settings.vnc_port,
                quality=self.settings.vnc_quality,
                compression=self.settings.vnc_compression,
            )
        self.context.set_status(AgentStatus.IDLE, force=True)
        self.context.connection_status = ConnectionStatus.CONNECTING
        logger.info("Connecting to %s:%d", config.host, config.port)

        try:
            self.remote.connect(config)
        except Exception as exc:
            self.context.log.append(
                ActivityType.ERROR,
                f"Failed to connect to {config.host}:{config.port}: {exc}",
            )
            self.context.connection_status = ConnectionStatus.ERROR
            raise TransportError(str(exc)) from exc

    def stop_session(self, reason: str = "Session stopped") -> None:
        """Cancel the current and queued tasks, then disconnect."""
        cancelled = self.runner.stop(reason)
        logger.info("Session stop: %d task(s) cancelled", cancelled)
        self.remote.disconnect()

    def emergency_stop(self) -> None:
        """Abort everything immediately and mark the session stopped.

        Any pending approval is forced to a denial and the running task
        ends ``cancelled``.
        """
        self.context.log.append(
            ActivityType.ERROR,
            "Emergency stop activated by user",
        )
        self.runner.stop("Emergency stop")
        self.context.set_status(AgentStatus.STOPPED)
        logger.warning("Emergency stop activated")

    # ------------------------------------------------------------------
    # Tasks and approvals
    # ------------------------------------------------------------------

    def submit_task(self, description: str) -> Task:
        """Queue a task.  Must be called from a running event loop.

        Raises:
            TaskStateError: If the session was emergency-stopped.
        """
        if self.context.status is AgentStatus.STOPPED:
            raise TaskStateError(
                "session is stopped; start a new session first"
            )
        return self.runner.submit(description)

    async def run_task(self, description: str) -> Task:
        """Queue a task and wait until it reaches a terminal status."""
        return await self.runner.wait_for(self.submit_task(description))

    def approve(self) -> ApprovalOutcome:
        """Approve the pending action."""
        return self.gate.approve()

    def deny(self) -> ApprovalOutcome:
        """Deny the pending action."""
        return self.gate.deny()

    def take_screenshot(self) -> ScreenCapture | None:
        """Refresh the screenshot cache and log the capture."""
        return self.context.capture_screen(announce=True)

    async def close(self) -> None:
        """Stop the runner's worker; the agent is unusable afterwards."""
        await self.runner.shutdown()


def build_agent(
    remote: RemoteSession,
    api_key: str = "",
    settings: Settings | None = None,
    sleep: SleepFn = asyncio.sleep,
    model: ComputerUseClient | None = None,
) -> RemoteAgent:
    """Create all components and return a fully wired ``RemoteAgent``.

    Args:
        remote: Remote-session collaborator.
        api_key: Gemini API key.  Falls back to ``GEMINI_API_KEY``.
        settings: Optional settings override.
        sleep: Coroutine used for every pipeline delay (settle delay,
            ``wait`` action, approval countdown).
        model: Optional model collaborator override.  When ``None`` a
            ``ComputerUseClient`` is built from *settings* and
            *api_key*.

    Returns:
        A fully constructed ``RemoteAgent``.
    """
    if settings is None:
        settings = Settings()

    context = SessionContext(remote)
    gate = ApprovalGate(context.log, settings, sleep=sleep)
    executor = ActionExecutor(
        remote,
        context.log,
        settings,
        capture_fn=context.capture_screen,
        sleep=sleep,
    )
    if model is None:
        model = ComputerUseClient(settings, api_key=api_key)
    runner = TaskRunner(context, model, executor, gate, settings)

    logger.info("Remote agent built for %s", context.name)
    return RemoteAgent(
        remote=remote,
        context=context,
        gate=gate,
        executor=executor,
        model=model,
        runner=runner,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Console approvals
# ---------------------------------------------------------------------------


class ConsoleApprover:
    """Answers approval requests from lines typed on stdin.

    A daemon thread reads stdin and hands every line to the event
    loop; ``y``/``yes`` approves the pending request, anything else
    denies it.  Lines typed while nothing is pending are ignored.
    """

    def __init__(
        self,
        gate: ApprovalGate,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._gate = gate
        self._loop = loop
        self._thread = threading.Thread(
            target=self._read_lines, name="approval-input", daemon=True
        )

    def start(self) -> None:
        self._gate.add_open_listener(self.on_open)
        self._thread.start()

    def on_open(self, request: ApprovalRequest) -> None:
        print(
            f"\n*** Confirmation required ({request.risk.value} risk) ***\n"
            f"Action:    {describe_action(request.descriptor)}\n"
            f"Reasoning: {request.reasoning}\n"
            f"Approve within {request.timeout_seconds}s? [y/N] ",
            end="",
            flush=True,
        )

    def answer(self, line: str) -> None:
        if self._gate.pending is None:
            return
        if line.strip().lower() in ("y", "yes"):
            self._gate.approve()
        else:
            self._gate.deny()

    def _read_lines(self) -> None:
        for line in sys.stdin:
            self._loop.call_soon_threadsafe(self.answer, line)


def _print_entry(entry: ActivityEntry) -> None:
    print(f"[{entry.type.value:>12}] {entry.content}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse CLI arguments, connect, run the task, and print results."""
    parser = argparse.ArgumentParser(
        prog="rca-agent",
        description=(
            "Remote Computer Agent -- operate a remote desktop through "
            "natural-language tasks with human approval of risky actions."
        ),
    )
    parser.add_argument(
        "--task",
        "-t",
        required=True,
        help="The task to execute (e.g. 'Open example.com').",
    )
    parser.add_argument(
        "--session-factory",
        "-s",
        required=True,
        help=(
            "Remote session implementation as 'module:callable'; the "
            "callable takes no arguments and returns a RemoteSession."
        ),
    )
    parser.add_argument("--host", default=None, help="Remote desktop host.")
    parser.add_argument(
        "--port", type=int, default=None, help="Remote desktop port."
    )
    parser.add_argument(
        "--password", default=None, help="Remote desktop password."
    )
    parser.add_argument(
        "--api-key",
        "-k",
        default="",
        help=(
            "Gemini API key. Falls back to the GEMINI_API_KEY "
            "environment variable if not provided."
        ),
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=None,
        help="Maximum model round-trips per task.",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every confirmation request without prompting.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )

    args = parser.parse_args()

    # -- Logging setup ---------------------------------------------------
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # -- Settings ----------------------------------------------------------
    overrides: dict[str, object] = {}
    if args.host is not None:
        overrides["vnc_host"] = args.host
    if args.port is not None:
        overrides["vnc_port"] = args.port
    if args.max_turns is not None:
        overrides["max_model_turns"] = args.max_turns
    settings = Settings.from_dict(overrides)

    # -- Remote session ----------------------------------------------------
    try:
        factory = load_session_factory(args.session_factory)
        remote = factory()
    except (ImportError, AttributeError, TypeError, ValueError) as exc:
        logger.error("Cannot load session factory: %s", exc)
        sys.exit(2)

    config = VNCConfig(
        host=settings.vnc_host,
        port=settings.vnc_port,
        password=args.password,
        quality=settings.vnc_quality,
        compression=settings.vnc_compression,
    )
    task = asyncio.run(
        _run_cli(
            remote,
            settings,
            config,
            args.api_key,
            args.task,
            args.auto_approve,
        )
    )

    if task is None:
        sys.exit(1)
    _print_task_summary(task)
    sys.exit(0 if task.status is TaskStatus.COMPLETED else 1)


async def _run_cli(
    remote: RemoteSession,
    settings: Settings,
    config: VNCConfig,
    api_key: str,
    description: str,
    auto_approve: bool,
) -> Task | None:
    agent = build_agent(remote, api_key=api_key, settings=settings)
    agent.context.log.add_listener(_print_entry)

    if auto_approve:
        agent.gate.add_open_listener(lambda _request: agent.gate.approve())
    else:
        ConsoleApprover(agent.gate, asyncio.get_running_loop()).start()

    try:
        agent.start_session(config)
    except TransportError as exc:
        logger.error("Could not connect: %s", exc)
        return None

    try:
        return await agent.run_task(description)
    finally:
        agent.stop_session()
        await agent.close()


def _print_task_summary(task: Task) -> None:
    """Print a human-readable summary of the finished task.

    Args:
        task: The terminal ``Task``.
    """
    separator = "-" * 60
    print(separator)
    print(f"Task:       {task.description}")
    print(f"Status:     {task.status.value.upper()}")
    print(f"Actions:    {task.actions_executed} executed")
    print(f"Model:      {task.model_turns} turn(s)")
    print(f"Duration:   {task.duration_ms:.0f} ms")
    if task.result:
        print(f"Result:     {task.result}")
    if task.error:
        print(f"Error:      {task.error}")
    print(separator)


if __name__ == "__main__":
    main()
