"""Per-session context shared by the Task Runner, gate and executor.

The ``SessionContext`` replaces a global UI state object with one
explicit owner: it holds the Activity Log, the task list and the
current-task slot, the screenshot cache, and the agent and connection
status.  The Approval Gate and the Executor only receive transient
references to the pieces they need.

The screenshot cache is single-owner: only ``capture_screen`` writes
it, and every capture overwrites the previous one.  When the remote
session cannot produce a fresh frame, the last known capture is reused.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import cv2
import numpy as np
from numpy.typing import NDArray

from rca_agent.core.activity_log import ActivityLog
from rca_agent.models.events import ActivityType
from rca_agent.models.task import Task
from rca_agent.remote.interface import ConnectionEvent, RemoteSession

logger = logging.getLogger(__name__)


class AgentStatus(Enum):
    """What the agent is doing right now."""

    IDLE = "idle"
    THINKING = "thinking"
    ACTING = "acting"
    ERROR = "error"
    STOPPED = "stopped"


class ConnectionStatus(Enum):
    """State of the link to the remote desktop."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ScreenCapture:
    """A PNG-encoded screen capture.

    Attributes:
        png: Encoded image bytes.
        width: Frame width in pixels.
        height: Frame height in pixels.
        timestamp: Unix timestamp of the capture.
    """

    png: bytes
    width: int
    height: int
    timestamp: float


def encode_frame(frame: NDArray[np.uint8]) -> bytes:
    """Encode a BGR NumPy frame to PNG bytes.

    Raises:
        RuntimeError: If OpenCV fails to encode the frame.
    """
    success, buffer = cv2.imencode(".png", frame)
    if not success:
        raise RuntimeError("cv2.imencode failed to encode frame as PNG")
    return bytes(buffer)


class SessionContext:
    """State owned by one agent session.

    Args:
        remote: The remote-session collaborator.
        log: Activity Log for this session.  A new one is created when
            omitted.
        name: Display name.  Defaults to ``"Session <local time>"``.
    """

    def __init__(
        self,
        remote: RemoteSession,
        log: ActivityLog | None = None,
        name: str = "",
    ) -> None:
        self.remote = remote
        self.log = log if log is not None else ActivityLog()
        self.id: str = f"session-{uuid.uuid4().hex[:12]}"
        self.name: str = name or (
            f"Session {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        self.created_at: float = time.time()
        self.last_activity: float = self.created_at

        self.status: AgentStatus = AgentStatus.IDLE
        self.connection_status: ConnectionStatus = (
            ConnectionStatus.DISCONNECTED
        )
        self.tasks: list[Task] = []
        self.current_task: Task | None = None
        self._screenshot: ScreenCapture | None = None

        remote.add_connection_listener(self._on_connection_event)

    # ------------------------------------------------------------------
    # Screenshot cache
    # ------------------------------------------------------------------

    @property
    def screenshot(self) -> ScreenCapture | None:
        """The most recent capture, or ``None`` before the first one."""
        return self._screenshot

    def capture_screen(
        self,
        announce: bool = False,
        task_id: str | None = None,
    ) -> ScreenCapture | None:
        """Refresh the screenshot cache from the remote session.

        Falls back to the previous capture when the session returns no
        frame or the capture fails.

        Args:
            announce: Append an ``observation`` entry for the capture.
            task_id: Task to attribute the observation to.

        Returns:
            The fresh capture, the reused previous capture, or ``None``
            when nothing has ever been captured.
        """
        try:
            frame = self.remote.capture_frame()
            png = encode_frame(frame) if frame is not None else None
        except Exception as exc:
            logger.warning("Screen capture failed: %s", exc)
            png = None

        if png is None:
            logger.debug("No fresh frame; reusing last capture")
            return self._screenshot

        height, width = frame.shape[:2]
        self._screenshot = ScreenCapture(
            png=png,
            width=int(width),
            height=int(height),
            timestamp=time.time(),
        )
        if announce:
            self.log.append(
                ActivityType.OBSERVATION,
                "Captured screenshot for analysis",
                args={"width": int(width), "height": int(height)},
                task_id=task_id,
            )
        return self._screenshot

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Record activity now."""
        self.last_activity = time.time()

    def set_status(self, status: AgentStatus, force: bool = False) -> None:
        """Update the agent status.

        ``STOPPED`` is sticky: once stopped, only a forced update (a new
        session start) changes the status.
        """
        if self.status is AgentStatus.STOPPED and not force:
            return
        self.status = status
        self.touch()

    @property
    def is_connected(self) -> bool:
        """Whether the remote session reported a live connection."""
        return self.connection_status is ConnectionStatus.CONNECTED

    def _on_connection_event(
        self,
        event: ConnectionEvent,
        message: str,
    ) -> None:
        if event is ConnectionEvent.CONNECT:
            self.connection_status = ConnectionStatus.CONNECTED
            self.log.append(
                ActivityType.OBSERVATION, "Remote session connected"
            )
        elif event is ConnectionEvent.DISCONNECT:
            self.connection_status = ConnectionStatus.DISCONNECTED
            self.log.append(
                ActivityType.OBSERVATION, "Remote session disconnected"
            )
        else:
            self.connection_status = ConnectionStatus.ERROR
            self.log.append(
                ActivityType.ERROR,
                f"Remote session error: {message}",
            )
        self.touch()

    def __repr__(self) -> str:
        return (
            f"SessionContext(id={self.id!r}, status={self.status.value}, "
            f"connection={self.connection_status.value}, "
            f"tasks={len(self.tasks)})"
        )
