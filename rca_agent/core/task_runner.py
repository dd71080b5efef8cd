"""Task Runner: per-session orchestrator of the action pipeline.

The Task Runner accepts natural-language tasks, queues them, and runs
them one at a time.  For each task it captures the screen, asks the
model collaborator for a batch of actions, and drives every action
strictly in order through one of three paths:

* ``blocked``              -- logged and skipped, never executed,
* ``require_confirmation`` -- held in the Approval Gate until a human
  (or the countdown) resolves it,
* anything else            -- executed directly.

After a batch the outcomes are reported back to the model, which may
propose another batch, until it proposes nothing or the turn budget is
spent.

Each running task is owned by exactly one asyncio task.  External
stops cancel that asyncio task, force any pending approval to a denial,
and leave the task ``cancelled``.  Errors are always appended to the
Activity Log before the task's status changes.

Typical usage::

    runner = TaskRunner(context, model, executor, gate, settings)
    task = await runner.execute("Open example.com and search for cats")
    print(task.status, task.result)

Dependencies:
    * ``model_client`` -- proposes actions via the Gemini API
    * ``action_executor`` -- dispatches actions to the remote session
    * ``approval_gate`` -- timed human confirmation
    * ``session`` -- screenshot cache, status, task list
    * ``errors`` -- error policy
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from rca_agent.config.settings import Settings
from rca_agent.core.action_executor import ActionExecutor
from rca_agent.core.approval_gate import ApprovalGate
from rca_agent.core.errors import (
    AgentError,
    ErrorClassifier,
    ErrorKind,
    TransportError,
    ValidationError,
)
from rca_agent.core.model_client import (
    ActionReport,
    ComputerUseClient,
    ModelResponse,
)
from rca_agent.core.session import AgentStatus, SessionContext
from rca_agent.models.actions import ActionDescriptor
from rca_agent.models.events import ActivityEntry, ActivityType
from rca_agent.models.task import Task

logger = logging.getLogger(__name__)

_DEFAULT_CANCEL_REASON: str = "Task cancelled by user"


class TaskRunner:
    """Queues tasks and runs them through the action pipeline.

    Only one task is ``in_progress`` per session at a time; tasks
    submitted meanwhile wait in a FIFO queue.

    All collaborators are injected via the constructor.  ``submit``
    and ``execute`` must be called from a running event loop.

    Args:
        context: Session context owning the log, task list and
            screenshot cache.
        model: Model collaborator with ``propose`` and ``follow_up``.
        executor: Action executor bound to the remote session.
        gate: Approval gate for actions that need confirmation.
        settings: Global configuration (turn budget).
        classifier: Error policy.  Defaults to ``ErrorClassifier()``.
    """

    def __init__(
        self,
        context: SessionContext,
        model: ComputerUseClient,
        executor: ActionExecutor,
        gate: ApprovalGate,
        settings: Settings | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self._context = context
        self._model = model
        self._executor = executor
        self._gate = gate
        self._settings = settings or Settings()
        self._classifier = classifier or ErrorClassifier()

        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._tasks: dict[str, Task] = {}
        self._done: dict[str, asyncio.Future[Task]] = {}
        self._worker: asyncio.Task[None] | None = None
        self._job: asyncio.Task[None] | None = None
        self._cancel_reason: str = _DEFAULT_CANCEL_REASON

        context.log.add_listener(self._record)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_task(self) -> Task | None:
        """The task currently ``in_progress``, if any."""
        return self._context.current_task

    @property
    def queued(self) -> int:
        """Number of tasks waiting behind the current one."""
        return self._queue.qsize()

    def submit(self, description: str) -> Task:
        """Create a task for *description* and queue it.

        Returns:
            The new ``pending`` task.

        Raises:
            ValueError: If *description* is blank.
        """
        if not description.strip():
            raise ValueError("task description must not be empty")

        task = Task(description=description.strip())
        loop = asyncio.get_running_loop()
        self._tasks[task.id] = task
        self._done[task.id] = loop.create_future()
        self._context.tasks.append(task)

        self._context.log.append(
            ActivityType.OBSERVATION,
            f'Received task: "{task.description}"',
            task_id=task.id,
        )
        self._queue.put_nowait(task)
        self._ensure_worker()
        logger.info("Task %s queued (%d waiting)", task.id, self.queued)
        return task

    async def wait_for(self, task: Task) -> Task:
        """Suspend until *task* reaches a terminal status."""
        if task.is_done:
            return task
        return await asyncio.shield(self._done[task.id])

    async def execute(self, description: str) -> Task:
        """Submit *description* and wait for the task to finish."""
        return await self.wait_for(self.submit(description))

    def cancel_current(self, reason: str = _DEFAULT_CANCEL_REASON) -> bool:
        """Abort the running task, denying any pending approval.

        Returns:
            ``True`` if a task was running.
        """
        job = self._job
        if job is None or job.done():
            return False
        self._cancel_reason = reason
        self._gate.cancel(reason)
        job.cancel()
        logger.info("Cancelling current task: %s", reason)
        return True

    def stop(self, reason: str = _DEFAULT_CANCEL_REASON) -> int:
        """Cancel the running task and every queued task.

        Returns:
            The number of tasks cancelled.
        """
        cancelled = 0
        while not self._queue.empty():
            task = self._queue.get_nowait()
            if task.is_done:
                continue
            self._finish_cancelled(task, reason)
            cancelled += 1
        if self.cancel_current(reason):
            cancelled += 1
        return cancelled

    async def shutdown(self, reason: str = "Session stopped") -> None:
        """Stop every task and the worker, waiting for them to finish."""
        self.stop(reason)
        if self._job is not None:
            await asyncio.wait({self._job})
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._work(), name="task-runner"
            )

    async def _work(self) -> None:
        while True:
            task = await self._queue.get()
            if task.is_done:
                continue
            self._cancel_reason = _DEFAULT_CANCEL_REASON
            self._job = asyncio.get_running_loop().create_task(
                self._run(task), name=task.id
            )
            await asyncio.wait({self._job})
            if not task.is_done:
                # Cancelled before its first step ran.
                self._finish_cancelled(task, self._cancel_reason)

    async def _run(self, task: Task) -> None:
        context = self._context
        context.current_task = task
        task.start()
        logger.info("Task %s started: %s", task.id, task.description)

        try:
            result = await self._drive(task)
        except asyncio.CancelledError:
            self._finish_cancelled(task, self._cancel_reason)
            context.set_status(AgentStatus.IDLE)
        except AgentError as exc:
            classification = self._classifier.classify(exc)
            self._fail(task, str(exc))
            logger.error(
                "Task %s failed: %s", task.id, classification.description
            )
            context.set_status(AgentStatus.ERROR)
        except Exception as exc:
            classification = self._classifier.classify(exc)
            self._fail(task, f"{type(exc).__name__}: {exc}")
            logger.exception(
                "Task %s failed: %s", task.id, classification.description
            )
            context.set_status(AgentStatus.ERROR)
        else:
            task.complete(result)
            context.set_status(AgentStatus.IDLE)
            logger.info(
                "Task %s completed: %d action(s), %d model turn(s), %.0f ms",
                task.id,
                task.actions_executed,
                task.model_turns,
                task.duration_ms,
            )
        finally:
            context.current_task = None
            self._settle_waiter(task)

    # ------------------------------------------------------------------
    # Per-task pipeline
    # ------------------------------------------------------------------

    async def _drive(self, task: Task) -> str | None:
        """Run the model loop for *task* and return the final text.

        Raises:
            AgentError: On a fatal model or executor failure.
        """
        context = self._context
        context.set_status(AgentStatus.THINKING)
        capture = context.capture_screen(announce=True, task_id=task.id)
        response = await self._model.propose(
            task.description,
            capture.png if capture is not None else None,
        )
        task.model_turns = 1

        while True:
            self._log_model_text(task, response)
            if not response.actions:
                break

            reports = await self._process_batch(task, response.actions)

            if task.model_turns >= self._settings.max_model_turns:
                logger.warning(
                    "Task %s reached the model turn limit (%d)",
                    task.id,
                    self._settings.max_model_turns,
                )
                break

            context.set_status(AgentStatus.THINKING)
            capture = context.capture_screen(task_id=task.id)
            response = await self._model.follow_up(
                response,
                reports,
                capture.png if capture is not None else None,
            )
            task.model_turns += 1

        return response.text or None

    async def _process_batch(
        self,
        task: Task,
        actions: list[ActionDescriptor],
    ) -> list[ActionReport]:
        reports: list[ActionReport] = []
        for descriptor in actions:
            reports.append(await self._process_one(task, descriptor))
        return reports

    async def _process_one(
        self,
        task: Task,
        descriptor: ActionDescriptor,
    ) -> ActionReport:
        log = self._context.log
        name = descriptor.name
        entry_type = (
            ActivityType.SAFETY_CHECK
            if descriptor.requires_confirmation
            else ActivityType.ACTION
        )
        log.append(
            entry_type,
            f"Executing: {name}",
            args=descriptor.args,
            task_id=task.id,
        )

        if descriptor.is_blocked:
            explanation = descriptor.safety_decision.explanation
            log.append(
                ActivityType.SAFETY_CHECK,
                f"Blocked action skipped: {name}",
                args={"action": name, "explanation": explanation},
                task_id=task.id,
            )
            return ActionReport(name=name, status="blocked", error=explanation)

        try:
            descriptor = descriptor.validated()
        except ValidationError as exc:
            log.append(
                ActivityType.ERROR,
                f"Invalid action {name}: {exc}",
                args={"action": name, "kind": exc.kind.value},
                task_id=task.id,
            )
            return ActionReport(name=name, status="invalid", error=str(exc))

        acknowledged = False
        if descriptor.requires_confirmation:
            screenshot = self._context.screenshot
            outcome = await self._gate.request_approval(
                descriptor,
                reasoning=descriptor.safety_decision.explanation,
                screenshot=screenshot.png if screenshot is not None else None,
                task_id=task.id,
            )
            if not outcome.approved:
                return ActionReport(
                    name=name,
                    status="denied",
                    error=outcome.resolution.value,
                )
            acknowledged = True

        self._context.set_status(AgentStatus.ACTING)
        result = await self._executor.execute(descriptor, task_id=task.id)
        if result.success:
            task.actions_executed += 1
            return ActionReport(
                name=name,
                status="executed",
                safety_acknowledged=acknowledged,
            )

        classification = self._classifier.classify(
            result.error_kind or ErrorKind.UNKNOWN
        )
        if classification.fatal:
            raise TransportError(result.error)
        return ActionReport(name=name, status="failed", error=result.error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_model_text(self, task: Task, response: ModelResponse) -> None:
        for line in response.text.splitlines():
            if line.strip():
                self._context.log.append(
                    ActivityType.REASONING,
                    line.strip(),
                    task_id=task.id,
                )

    def _fail(self, task: Task, error: str) -> None:
        self._context.log.append(
            ActivityType.ERROR,
            f"Task failed: {error}",
            task_id=task.id,
        )
        task.fail(error)

    def _finish_cancelled(self, task: Task, reason: str) -> None:
        self._gate.cancel(reason)
        self._context.log.append(
            ActivityType.ERROR,
            f"Task cancelled: {reason}",
            task_id=task.id,
        )
        task.cancel(reason)
        self._settle_waiter(task)

    def _settle_waiter(self, task: Task) -> None:
        future = self._done.pop(task.id, None)
        if future is not None and not future.done():
            future.set_result(task)

    def _record(self, entry: ActivityEntry) -> None:
        if entry.task_id is None:
            return
        task = self._tasks.get(entry.task_id)
        if task is not None and not task.is_done:
            task.record(entry)
