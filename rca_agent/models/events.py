"""Activity Log entries.

An ``ActivityEntry`` records one thing that happened while the agent
worked on a task: an observation of the screen, a piece of reasoning,
an action being dispatched, a safety check, or an error.  Entries are
immutable once created; the ``ActivityLog`` hands them out in the order
they were appended.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class ActivityType(Enum):
    """Classification of Activity Log entries.

    Attributes:
        OBSERVATION: Something the agent saw or received (a task, a
            screen capture).
        REASONING: A human-readable explanation of what the agent is
            about to do.
        ACTION: An action proposed by the model entering the pipeline.
        SAFETY_CHECK: An action that needs (or received) a safety
            decision: confirmation requests, approvals, blocks.
        ERROR: A failure, a denial, or a cancellation.
    """

    OBSERVATION = "observation"
    REASONING = "reasoning"
    ACTION = "action"
    SAFETY_CHECK = "safety_check"
    ERROR = "error"


_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class ActivityEntry:
    """An immutable Activity Log record.

    Attributes:
        sequence: Zero-based position in the log.
        type: The kind of entry.
        content: Human-readable description.
        timestamp: Unix timestamp of creation.  Never decreases along
            the log.
        args: Optional structured payload (a read-only view).
        task_id: Identifier of the task that produced the entry, or
            ``None`` for session-level entries.
    """

    sequence: int
    type: ActivityType
    content: str
    timestamp: float
    args: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    task_id: str | None = None
