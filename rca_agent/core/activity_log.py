"""Append-only, time-ordered record of everything the agent does.

The ``ActivityLog`` has a single writer (the Task Runner and the
components it drives) and any number of readers.  Readers either take
a snapshot (``entries``), register a synchronous listener that is
called for every new entry, or iterate asynchronously with ``follow``,
which replays the log from the start and then waits for new entries
until the log is closed.

Entries are never edited or removed.  The log is not persisted; it
lives as long as the session that owns it.

Typical usage::

    log = ActivityLog()
    log.append(ActivityType.OBSERVATION, 'Received task: "open mail"')

    async for entry in log.follow():
        render(entry)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from rca_agent.models.events import ActivityEntry, ActivityType

logger = logging.getLogger(__name__)

Listener = Callable[[ActivityEntry], None]


class ActivityLog:
    """Append-only sequence of ``ActivityEntry`` records.

    Args:
        clock: Wall-clock source for entry timestamps.  Timestamps are
            clamped so that they never decrease along the log.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: list[ActivityEntry] = []
        self._listeners: list[Listener] = []
        self._changed = asyncio.Event()
        self._closed = False

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(
        self,
        entry_type: ActivityType,
        content: str,
        args: Mapping[str, Any] | None = None,
        task_id: str | None = None,
    ) -> ActivityEntry:
        """Append a new entry and notify readers.

        Args:
            entry_type: Kind of the entry.
            content: Human-readable description.
            args: Optional structured payload.  A copy is stored.
            task_id: Task that produced the entry, if any.

        Returns:
            The appended entry.

        Raises:
            RuntimeError: If the log has been closed.
        """
        if self._closed:
            raise RuntimeError("activity log is closed")

        timestamp = self._clock()
        if self._entries and timestamp < self._entries[-1].timestamp:
            timestamp = self._entries[-1].timestamp

        entry = ActivityEntry(
            sequence=len(self._entries),
            type=entry_type,
            content=content,
            timestamp=timestamp,
            args=MappingProxyType(dict(args or {})),
            task_id=task_id,
        )
        self._entries.append(entry)
        logger.debug(
            "[%s] %s%s",
            entry_type.value,
            content,
            f" (task {task_id})" if task_id else "",
        )

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception(
                    "Activity log listener %r failed on entry %d",
                    listener,
                    entry.sequence,
                )

        self._wake()
        return entry

    def close(self) -> None:
        """Stop accepting entries and end every ``follow`` iteration."""
        self._closed = True
        self._wake()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def entries(self) -> tuple[ActivityEntry, ...]:
        """A snapshot of all entries in append order."""
        return tuple(self._entries)

    @property
    def closed(self) -> bool:
        """Whether ``close`` has been called."""
        return self._closed

    def for_task(self, task_id: str) -> list[ActivityEntry]:
        """Return the entries produced for *task_id*, in order."""
        return [e for e in self._entries if e.task_id == task_id]

    def of_type(self, entry_type: ActivityType) -> list[ActivityEntry]:
        """Return the entries of *entry_type*, in order."""
        return [e for e in self._entries if e.type is entry_type]

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback invoked synchronously for new entries.

        Returns:
            A function that unregisters the listener.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def follow(self) -> AsyncIterator[ActivityEntry]:
        """Yield every entry from the start, then new ones as they come.

        The iteration ends once the log is closed and every entry has
        been yielded.
        """
        index = 0
        while True:
            while index < len(self._entries):
                yield self._entries[index]
                index += 1
            if self._closed:
                return
            await self._changed.wait()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ActivityEntry]:
        return iter(tuple(self._entries))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wake(self) -> None:
        # Waiters hold the old event; swapping in a fresh one re-arms
        # the wait for the next append.
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
