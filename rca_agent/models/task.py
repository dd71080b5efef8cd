"""Task data model: one unit of user-issued work.

A ``Task`` moves through ``pending -> in_progress -> {completed, failed,
cancelled}``.  The transition helpers enforce that lifecycle and refuse
any change once the task has reached a terminal status.  The Task
Runner is the only component that calls them.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rca_agent.core.errors import TaskStateError
from rca_agent.models.events import ActivityEntry


class TaskStatus(Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed."""
        return self in _TERMINAL


_TERMINAL = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


def _new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


@dataclass
class Task:
    """A natural-language task and the record of its execution.

    Attributes:
        description: The instruction given by the user.
        id: Unique identifier.
        status: Current lifecycle status.
        created_at: Unix timestamp of creation.
        started_at: Unix timestamp of the ``in_progress`` transition.
        completed_at: Unix timestamp of the terminal transition.
        entries: Activity Log entries produced while executing this
            task, in append order.
        result: Final free-text answer from the model, if any.
        error: Human-readable error for ``failed`` or ``cancelled``
            tasks.  Empty otherwise.
        actions_executed: Number of actions dispatched to the remote
            session.
        model_turns: Number of model round-trips consumed.
    """

    description: str
    id: str = field(default_factory=_new_task_id)
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    entries: list[ActivityEntry] = field(default_factory=list)
    result: Any = None
    error: str = ""
    actions_executed: int = 0
    model_turns: int = 0

    # -- Transitions ----------------------------------------------------------

    def start(self) -> None:
        """Move ``pending -> in_progress``."""
        if self.status is not TaskStatus.PENDING:
            raise TaskStateError(
                f"task {self.id} cannot start from {self.status.value}"
            )
        self.status = TaskStatus.IN_PROGRESS
        self.started_at = time.time()

    def complete(self, result: Any = None) -> None:
        """Move ``in_progress -> completed``."""
        if self.status is not TaskStatus.IN_PROGRESS:
            raise TaskStateError(
                f"task {self.id} cannot complete from {self.status.value}"
            )
        self.result = result
        self._finish(TaskStatus.COMPLETED)

    def fail(self, error: str) -> None:
        """Move ``in_progress -> failed``."""
        if self.status is not TaskStatus.IN_PROGRESS:
            raise TaskStateError(
                f"task {self.id} cannot fail from {self.status.value}"
            )
        self.error = error
        self._finish(TaskStatus.FAILED)

    def cancel(self, reason: str = "") -> None:
        """Move a pending or running task to ``cancelled``."""
        if self.status.is_terminal:
            raise TaskStateError(
                f"task {self.id} is already {self.status.value}"
            )
        self.error = reason
        self._finish(TaskStatus.CANCELLED)

    def record(self, entry: ActivityEntry) -> None:
        """Attach an Activity Log entry produced for this task."""
        self.entries.append(entry)

    def _finish(self, status: TaskStatus) -> None:
        self.status = status
        self.completed_at = time.time()

    # -- Queries --------------------------------------------------------------

    @property
    def is_done(self) -> bool:
        """Whether the task has reached a terminal status."""
        return self.status.is_terminal

    @property
    def duration_ms(self) -> float:
        """Wall-clock time between start and finish, in milliseconds."""
        if self.started_at is None or self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at) * 1000.0
