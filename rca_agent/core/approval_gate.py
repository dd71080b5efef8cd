"""Timed human-approval gate for actions that need confirmation.

The ``ApprovalGate`` holds at most one action pending a human decision.
Opening a request starts a countdown with one-second resolution; the
request then resolves exactly once, by whichever comes first:

* ``approve()`` -- the held action may run,
* ``deny()`` -- the action is skipped,
* the countdown reaching zero -- treated as a denial (auto-deny),
* ``cancel()`` -- a task stop or emergency stop forces a denial.

Every denial, whatever its cause, appends the same ``error`` entry to
the Activity Log; the cause is carried in the entry's ``args``.

Suspension is cooperative: the Task Runner awaits ``wait()`` (or
``request_approval``) instead of blocking a thread, and observers learn
about new and resolved requests through listeners.

Typical usage::

    gate = ApprovalGate(log, settings)
    outcome = await gate.request_approval(descriptor, reasoning="...")
    if outcome.approved:
        await executor.execute(outcome.request.descriptor)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from rca_agent.config.settings import Settings
from rca_agent.core.activity_log import ActivityLog
from rca_agent.core.errors import GateBusyError, GateStateError
from rca_agent.core.risk_classifier import RiskTier, classify
from rca_agent.models.actions import ActionDescriptor, describe_action
from rca_agent.models.events import ActivityType

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class GateState(Enum):
    """Whether a request is currently pending."""

    IDLE = "idle"
    PENDING = "pending"


class Resolution(Enum):
    """How a pending request was resolved."""

    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


# Cause recorded in the denial log entry for each non-approval.
_DENIAL_CAUSE: dict[Resolution, str] = {
    Resolution.DENIED: "user",
    Resolution.TIMED_OUT: "timeout",
    Resolution.CANCELLED: "cancelled",
}


@dataclass(frozen=True)
class ApprovalRequest:
    """The live state of one pending confirmation.

    Attributes:
        descriptor: The action under review.
        reasoning: Explanation shown to the human (usually the model's
            safety explanation).
        timeout_seconds: Countdown length.
        risk: Display risk tier from the keyword classifier.
        screenshot: PNG capture taken when the action was proposed.
        task_id: Task that proposed the action.
        opened_at: Clock reading when the request was opened.
    """

    descriptor: ActionDescriptor
    reasoning: str
    timeout_seconds: int
    risk: RiskTier
    screenshot: bytes | None = None
    task_id: str | None = None
    opened_at: float = 0.0


@dataclass(frozen=True)
class ApprovalOutcome:
    """Final resolution of an ``ApprovalRequest``.

    Attributes:
        request: The resolved request.
        resolution: How it was resolved.
        elapsed_seconds: Clock time between opening and resolution.
        detail: Free-text note, e.g. the cancellation reason.
    """

    request: ApprovalRequest
    resolution: Resolution
    elapsed_seconds: float
    detail: str = ""

    @property
    def approved(self) -> bool:
        """Whether the held action may run."""
        return self.resolution is Resolution.APPROVED


OpenListener = Callable[[ApprovalRequest], None]
ResolveListener = Callable[[ApprovalOutcome], None]


class ApprovalGate:
    """Single-slot, time-boxed approval state machine.

    Args:
        log: Activity Log that receives approval and denial entries.
        settings: Global configuration (default timeout, risk keywords).
        sleep: Coroutine function used for the countdown ticks.
            Injected so tests can run on a virtual clock.
        clock: Monotonic clock used to measure elapsed time.
    """

    def __init__(
        self,
        log: ActivityLog,
        settings: Settings | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = log
        self._settings = settings or Settings()
        self._sleep = sleep
        self._clock = clock

        self._pending: ApprovalRequest | None = None
        self._future: asyncio.Future[ApprovalOutcome] | None = None
        self._opened: asyncio.Future[ApprovalOutcome] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._remaining: int = 0
        self._last_outcome: ApprovalOutcome | None = None

        self._open_listeners: list[OpenListener] = []
        self._resolve_listeners: list[ResolveListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> GateState:
        """``PENDING`` while a request awaits a decision, else ``IDLE``."""
        return GateState.IDLE if self._pending is None else GateState.PENDING

    @property
    def pending(self) -> ApprovalRequest | None:
        """The request awaiting a decision, if any."""
        return self._pending

    @property
    def remaining_seconds(self) -> int:
        """Whole seconds left on the countdown (0 when idle)."""
        return self._remaining if self._pending is not None else 0

    @property
    def last_outcome(self) -> ApprovalOutcome | None:
        """The most recent resolution."""
        return self._last_outcome

    def add_open_listener(self, listener: OpenListener) -> None:
        """Register a callback invoked when a request opens."""
        self._open_listeners.append(listener)

    def add_resolve_listener(self, listener: ResolveListener) -> None:
        """Register a callback invoked when a request resolves."""
        self._resolve_listeners.append(listener)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def open(
        self,
        descriptor: ActionDescriptor,
        reasoning: str,
        timeout_seconds: float | None = None,
        screenshot: bytes | None = None,
        task_id: str | None = None,
    ) -> ApprovalRequest:
        """Hold *descriptor* pending a decision and start the countdown.

        Must be called from a running event loop.

        Raises:
            GateBusyError: If another request is still pending.
            ValueError: If the timeout is not positive.
        """
        if self._pending is not None:
            raise GateBusyError(
                f"approval already pending for "
                f"'{self._pending.descriptor.name}'"
            )
        if timeout_seconds is None:
            timeout_seconds = self._settings.approval_timeout_seconds
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        loop = asyncio.get_running_loop()
        request = ApprovalRequest(
            descriptor=descriptor,
            reasoning=reasoning,
            timeout_seconds=math.ceil(timeout_seconds),
            risk=classify(descriptor, self._settings.high_risk_keywords),
            screenshot=screenshot,
            task_id=task_id,
            opened_at=self._clock(),
        )
        self._pending = request
        self._remaining = request.timeout_seconds
        self._future = loop.create_future()
        self._opened = self._future

        self._log.append(
            ActivityType.SAFETY_CHECK,
            f"Confirmation required: {describe_action(descriptor)}",
            args={
                "action": descriptor.name,
                "reasoning": reasoning,
                "risk": request.risk.value,
                "timeout": request.timeout_seconds,
            },
            task_id=task_id,
        )
        logger.info(
            "Approval gate opened for %s (%s risk, %ds)",
            descriptor.name,
            request.risk.value,
            request.timeout_seconds,
        )

        self._timer = loop.create_task(self._count_down(request))
        for listener in list(self._open_listeners):
            listener(request)
        return request

    async def wait(self) -> ApprovalOutcome:
        """Suspend until the pending request resolves.

        Cancelling the waiter does not resolve the request; callers
        that stop waiting must call ``cancel``.

        Raises:
            GateStateError: If no request is pending.
        """
        if self._future is None:
            raise GateStateError("no approval request is pending")
        return await asyncio.shield(self._future)

    async def request_approval(
        self,
        descriptor: ActionDescriptor,
        reasoning: str,
        timeout_seconds: float | None = None,
        screenshot: bytes | None = None,
        task_id: str | None = None,
    ) -> ApprovalOutcome:
        """Open a request and wait for its resolution.

        The outcome is delivered even when an open listener resolves
        the request before this coroutine starts waiting.
        """
        self.open(
            descriptor,
            reasoning,
            timeout_seconds=timeout_seconds,
            screenshot=screenshot,
            task_id=task_id,
        )
        return await asyncio.shield(self._opened)

    def approve(self) -> ApprovalOutcome:
        """Approve the pending request.

        Raises:
            GateStateError: If no request is pending.
        """
        return self._resolve(Resolution.APPROVED)

    def deny(self) -> ApprovalOutcome:
        """Deny the pending request.

        Raises:
            GateStateError: If no request is pending.
        """
        return self._resolve(Resolution.DENIED)

    def cancel(self, reason: str = "") -> ApprovalOutcome | None:
        """Force a denial of the pending request, if there is one.

        Returns:
            The outcome, or ``None`` when the gate was idle.
        """
        if self._pending is None:
            return None
        return self._resolve(Resolution.CANCELLED, detail=reason)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _count_down(self, request: ApprovalRequest) -> None:
        remaining = request.timeout_seconds
        while remaining > 0:
            await self._sleep(1.0)
            if self._pending is not request:
                return
            remaining -= 1
            self._remaining = remaining
        if self._pending is request:
            logger.info(
                "Approval for %s timed out after %ds",
                request.descriptor.name,
                request.timeout_seconds,
            )
            self._resolve(Resolution.TIMED_OUT)

    def _resolve(
        self,
        resolution: Resolution,
        detail: str = "",
    ) -> ApprovalOutcome:
        request = self._pending
        future = self._future
        if request is None or future is None:
            raise GateStateError("no approval request is pending")

        self._pending = None
        self._future = None
        self._remaining = 0
        timer, self._timer = self._timer, None
        if timer is not None and timer is not _current_task():
            timer.cancel()

        outcome = ApprovalOutcome(
            request=request,
            resolution=resolution,
            elapsed_seconds=self._clock() - request.opened_at,
            detail=detail,
        )
        name = request.descriptor.name
        if outcome.approved:
            self._log.append(
                ActivityType.SAFETY_CHECK,
                f"Action approved by user: {name}",
                args={"action": name},
                task_id=request.task_id,
            )
        else:
            args = {"action": name, "cause": _DENIAL_CAUSE[resolution]}
            if detail:
                args["detail"] = detail
            self._log.append(
                ActivityType.ERROR,
                f"Action denied by user: {name}",
                args=args,
                task_id=request.task_id,
            )
        logger.info("Approval for %s resolved: %s", name, resolution.value)

        self._last_outcome = outcome
        if not future.done():
            future.set_result(outcome)
        for listener in list(self._resolve_listeners):
            listener(outcome)
        return outcome


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
