"""Execute Action Descriptors against the remote session.

The ``ActionExecutor`` translates one validated ``ActionDescriptor``
into primitive remote-session commands (pointer moves and button masks,
key events, browser-level delegations), then waits a short settle delay
and asks for a fresh screen capture so the next model round-trip sees
the post-action state.

Coordinates arrive in the normalised 0-999 space and are scaled to the
remote surface with ``denormalize``.

Failures are never retried and never swallowed: a remote-session error
becomes an ``error`` entry in the Activity Log and a failed
``ExecutionOutcome`` that the Task Runner turns into a failed task.

Typical usage::

    executor = ActionExecutor(remote, log, settings,
                              capture_fn=context.capture_screen)
    outcome = await executor.execute(descriptor, task_id=task.id)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from rca_agent.config.settings import Settings
from rca_agent.core.activity_log import ActivityLog
from rca_agent.core.errors import (
    AgentError,
    BlockedActionError,
    ErrorKind,
    TransportError,
    ValidationError,
)
from rca_agent.core.keymap import (
    KEY_BACKSPACE,
    KEY_RETURN,
    combination_to_key_events,
    text_to_key_events,
)
from rca_agent.core.session import ScreenCapture
from rca_agent.models.actions import (
    ActionDescriptor,
    ActionName,
    describe_action,
)
from rca_agent.models.events import ActivityType
from rca_agent.remote.interface import (
    BUTTON_LEFT,
    BUTTON_NONE,
    WHEEL_DOWN,
    WHEEL_LEFT,
    WHEEL_RIGHT,
    WHEEL_UP,
    RemoteSession,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
CaptureFn = Callable[[], "ScreenCapture | None"]

_WHEEL_MASKS: dict[str, int] = {
    "up": WHEEL_UP,
    "down": WHEEL_DOWN,
    "left": WHEEL_LEFT,
    "right": WHEEL_RIGHT,
}


def denormalize(
    x: float,
    y: float,
    width: int,
    height: int,
) -> tuple[int, int]:
    """Scale a normalised ``(x, y)`` to pixels on a ``width x height``
    surface, rounding halves up."""
    px = math.floor(x / 1000 * width + 0.5)
    py = math.floor(y / 1000 * height + 0.5)
    return px, py


@dataclass
class ExecutionOutcome:
    """Outcome of executing one ``ActionDescriptor``.

    Attributes:
        descriptor: The action as executed (validated copy when
            validation succeeded).
        success: Whether every command was delivered.
        error: Human-readable error description.  Empty on success.
        error_kind: Kind of the failure, ``None`` on success.
        commands_sent: Number of primitive commands delivered to the
            remote session.
        capture: Screen capture taken after the settle delay.
        timestamp: Unix timestamp when the outcome was produced.
    """

    descriptor: ActionDescriptor
    success: bool
    error: str = ""
    error_kind: ErrorKind | None = None
    commands_sent: int = 0
    capture: ScreenCapture | None = None
    timestamp: float = 0.0


class ActionExecutor:
    """Dispatches actions to a ``RemoteSession``.

    Args:
        remote: The remote-session collaborator.
        log: Activity Log receiving reasoning and error entries.
        settings: Global configuration (delays, scroll and drag tuning).
        capture_fn: Called after the settle delay to refresh the
            screenshot cache.  Owned by the session context.
        sleep: Coroutine function used for every delay.  Injected so
            tests can run on a virtual clock.
    """

    def __init__(
        self,
        remote: RemoteSession,
        log: ActivityLog,
        settings: Settings | None = None,
        capture_fn: CaptureFn | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._remote = remote
        self._log = log
        self._settings = settings or Settings()
        self._capture_fn = capture_fn
        self._sleep = sleep
        self._commands = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        descriptor: ActionDescriptor,
        task_id: str | None = None,
    ) -> ExecutionOutcome:
        """Execute *descriptor* and return the outcome.

        Steps:

        1. Refuse blocked descriptors.
        2. Validate the arguments.
        3. Log a ``reasoning`` entry describing the action.
        4. Dispatch to the handler for the action name.
        5. Wait the settle delay and refresh the screen capture.

        Raises:
            BlockedActionError: If the model flagged the action
                ``blocked``; such actions must never reach this point.
        """
        if descriptor.is_blocked:
            raise BlockedActionError(
                f"blocked action '{descriptor.name}' reached the executor"
            )

        self._commands = 0
        try:
            descriptor = descriptor.validated()
        except ValidationError as exc:
            return self._fail(descriptor, exc, task_id)

        self._log.append(
            ActivityType.REASONING,
            describe_action(descriptor),
            args={"action": descriptor.name},
            task_id=task_id,
        )

        handler = self._DISPATCH[descriptor.action_name]
        try:
            await handler(self, descriptor)
        except AgentError as exc:
            return self._fail(descriptor, exc, task_id)
        except Exception as exc:
            return self._fail(descriptor, TransportError(str(exc)), task_id)

        capture = await self._settle()
        logger.debug(
            "%s executed (%d commands)", descriptor.name, self._commands
        )
        return ExecutionOutcome(
            descriptor=descriptor,
            success=True,
            commands_sent=self._commands,
            capture=capture,
            timestamp=time.time(),
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _click_at(self, descriptor: ActionDescriptor) -> None:
        x, y = self._to_pixels(descriptor.args["x"], descriptor.args["y"])
        self._click(x, y)

    async def _hover_at(self, descriptor: ActionDescriptor) -> None:
        x, y = self._to_pixels(descriptor.args["x"], descriptor.args["y"])
        self._pointer(x, y, BUTTON_NONE)

    async def _type_text_at(self, descriptor: ActionDescriptor) -> None:
        args = descriptor.args
        events = text_to_key_events(args["text"])
        x, y = self._to_pixels(args["x"], args["y"])

        self._click(x, y)
        await self._sleep(self._settings.focus_delay_ms / 1000.0)

        if args["clear_before_typing"]:
            self._keys(combination_to_key_events("Control+a"))
            self._keys([(KEY_BACKSPACE, True), (KEY_BACKSPACE, False)])

        self._keys(events)

        if args["press_enter"]:
            self._keys([(KEY_RETURN, True), (KEY_RETURN, False)])

    async def _key_combination(self, descriptor: ActionDescriptor) -> None:
        self._keys(combination_to_key_events(descriptor.args["keys"]))

    async def _scroll_document(self, descriptor: ActionDescriptor) -> None:
        width, height = self._remote.get_surface_size()
        self._scroll(
            width // 2,
            height // 2,
            descriptor.args["direction"],
            descriptor.args.get("magnitude"),
        )

    async def _scroll_at(self, descriptor: ActionDescriptor) -> None:
        x, y = self._to_pixels(descriptor.args["x"], descriptor.args["y"])
        self._scroll(
            x,
            y,
            descriptor.args["direction"],
            descriptor.args.get("magnitude"),
        )

    async def _drag_and_drop(self, descriptor: ActionDescriptor) -> None:
        args = descriptor.args
        start = self._to_pixels(args["x"], args["y"])
        end = self._to_pixels(args["destination_x"], args["destination_y"])
        steps = max(1, self._settings.drag_steps)

        self._pointer(start[0], start[1], BUTTON_NONE)
        self._pointer(start[0], start[1], BUTTON_LEFT)
        for i in range(1, steps + 1):
            t = i / steps
            x = round(start[0] + (end[0] - start[0]) * t)
            y = round(start[1] + (end[1] - start[1]) * t)
            self._pointer(x, y, BUTTON_LEFT)
        self._pointer(end[0], end[1], BUTTON_NONE)

    async def _wait(self, descriptor: ActionDescriptor) -> None:
        await self._sleep(self._settings.wait_action_seconds)

    async def _open_web_browser(self, descriptor: ActionDescriptor) -> None:
        self._remote.open_web_browser()
        self._commands += 1

    async def _navigate(self, descriptor: ActionDescriptor) -> None:
        self._remote.navigate(descriptor.args["url"])
        self._commands += 1

    async def _go_back(self, descriptor: ActionDescriptor) -> None:
        self._remote.go_back()
        self._commands += 1

    async def _go_forward(self, descriptor: ActionDescriptor) -> None:
        self._remote.go_forward()
        self._commands += 1

    async def _search(self, descriptor: ActionDescriptor) -> None:
        self._remote.search()
        self._commands += 1

    # ------------------------------------------------------------------
    # Dispatch table
    # ------------------------------------------------------------------

    _DISPATCH: dict[
        ActionName,
        Callable[[ActionExecutor, ActionDescriptor], Awaitable[None]],
    ] = {
        ActionName.OPEN_WEB_BROWSER: _open_web_browser,
        ActionName.WAIT_5_SECONDS: _wait,
        ActionName.GO_BACK: _go_back,
        ActionName.GO_FORWARD: _go_forward,
        ActionName.SEARCH: _search,
        ActionName.NAVIGATE: _navigate,
        ActionName.CLICK_AT: _click_at,
        ActionName.HOVER_AT: _hover_at,
        ActionName.TYPE_TEXT_AT: _type_text_at,
        ActionName.KEY_COMBINATION: _key_combination,
        ActionName.SCROLL_DOCUMENT: _scroll_document,
        ActionName.SCROLL_AT: _scroll_at,
        ActionName.DRAG_AND_DROP: _drag_and_drop,
    }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_pixels(self, x: float, y: float) -> tuple[int, int]:
        width, height = self._remote.get_surface_size()
        return denormalize(x, y, width, height)

    def _pointer(self, x: int, y: int, mask: int) -> None:
        self._remote.pointer_event(x, y, mask)
        self._commands += 1

    def _click(self, x: int, y: int) -> None:
        self._pointer(x, y, BUTTON_NONE)
        self._pointer(x, y, BUTTON_LEFT)
        self._pointer(x, y, BUTTON_NONE)

    def _keys(self, events: list[tuple[int, bool]]) -> None:
        for keysym, pressed in events:
            self._remote.key_event(keysym, pressed)
            self._commands += 1

    def _scroll(
        self,
        x: int,
        y: int,
        direction: str,
        magnitude: float | None,
    ) -> None:
        if magnitude is None:
            magnitude = self._settings.scroll_default_magnitude
        notch = max(1, self._settings.scroll_notch_magnitude)
        notches = max(1, math.ceil(magnitude / notch))
        mask = _WHEEL_MASKS[direction]

        self._pointer(x, y, BUTTON_NONE)
        for _ in range(notches):
            self._pointer(x, y, mask)
            self._pointer(x, y, BUTTON_NONE)

    async def _settle(self) -> ScreenCapture | None:
        await self._sleep(self._settings.settle_delay_ms / 1000.0)
        if self._capture_fn is None:
            return None
        return self._capture_fn()

    def _fail(
        self,
        descriptor: ActionDescriptor,
        error: AgentError,
        task_id: str | None,
    ) -> ExecutionOutcome:
        """Log the failure and build a failed ``ExecutionOutcome``."""
        message = f"Failed to execute {descriptor.name}: {error}"
        self._log.append(
            ActivityType.ERROR,
            message,
            args={"action": descriptor.name, "kind": error.kind.value},
            task_id=task_id,
        )
        logger.error("action %s failed: %s", descriptor.name, error)
        return ExecutionOutcome(
            descriptor=descriptor,
            success=False,
            error=str(error),
            error_kind=error.kind,
            commands_sent=self._commands,
            timestamp=time.time(),
        )
