"""Shared test doubles for the rca_agent test suite.

``MockRemoteSession`` records every primitive command instead of
talking to a remote desktop.  ``FakeClock`` provides a virtual clock
whose ``sleep`` advances time instantly, so no test waits in real
time.  ``MockModel`` replays canned batches of actions.
"""

from __future__ import annotations

import asyncio

import numpy as np
import pytest
from numpy.typing import NDArray

from rca_agent.core.model_client import ActionReport, ModelResponse
from rca_agent.models.actions import ActionDescriptor
from rca_agent.remote.interface import (
    ConnectionEvent,
    RemoteSession,
    VNCConfig,
)

# ------------------------------------------------------------------
# FakeClock
# ------------------------------------------------------------------


class FakeClock:
    """Virtual clock.  ``sleep`` advances ``now`` and yields once.

    Set ``hang_at`` to a duration to make a sleep of exactly that length
    never return; ``hanging`` is set when one starts.
    """

    def __init__(self) -> None:
        self.now: float = 0.0
        self.sleeps: list[float] = []
        self.hang_at: float | None = None
        self.hanging: asyncio.Event | None = None

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.hang_at is not None and seconds == self.hang_at:
            await _hang(self.hanging)
        self.now += seconds
        await asyncio.sleep(0)


async def _hang(started: asyncio.Event | None) -> None:
    """Suspend until cancelled, setting *started* first."""
    if started is not None:
        started.set()
    await asyncio.get_running_loop().create_future()


# ------------------------------------------------------------------
# MockRemoteSession
# ------------------------------------------------------------------


class MockRemoteSession(RemoteSession):
    """Controllable fake remote session.

    Records every command in ``commands`` as tuples such as
    ``("pointer", x, y, mask)`` or ``("key", keysym, pressed)``.  Set
    ``raise_on_pointer`` / ``raise_on_key`` to an exception instance to
    make those calls fail.
    """

    def __init__(
        self,
        width: int = 1440,
        height: int = 900,
    ) -> None:
        super().__init__()
        self.width = width
        self.height = height
        self.commands: list[tuple] = []
        self.connected_with: VNCConfig | None = None
        self.disconnects: int = 0
        self.frame: NDArray[np.uint8] | None = np.zeros(
            (height, width, 3), dtype=np.uint8
        )

        self.raise_on_pointer: Exception | None = None
        self.raise_on_key: Exception | None = None
        self.raise_on_capture: Exception | None = None
        self.raise_on_connect: Exception | None = None

    # -- Lifecycle -------------------------------------------------

    def connect(self, config: VNCConfig) -> None:
        if self.raise_on_connect is not None:
            self._notify(ConnectionEvent.ERROR, str(self.raise_on_connect))
            raise self.raise_on_connect
        self.connected_with = config
        self._notify(ConnectionEvent.CONNECT)

    def disconnect(self) -> None:
        self.disconnects += 1
        self._notify(ConnectionEvent.DISCONNECT)

    # -- Input -----------------------------------------------------

    def pointer_event(self, x: int, y: int, button_mask: int) -> None:
        if self.raise_on_pointer is not None:
            raise self.raise_on_pointer
        self.commands.append(("pointer", x, y, button_mask))

    def key_event(self, keysym: int, pressed: bool) -> None:
        if self.raise_on_key is not None:
            raise self.raise_on_key
        self.commands.append(("key", keysym, pressed))

    # -- Screen ----------------------------------------------------

    def capture_frame(self) -> NDArray[np.uint8] | None:
        if self.raise_on_capture is not None:
            raise self.raise_on_capture
        return self.frame

    def get_surface_size(self) -> tuple[int, int]:
        return (self.width, self.height)

    # -- Browser ---------------------------------------------------

    def open_web_browser(self) -> None:
        self.commands.append(("open_web_browser",))

    def navigate(self, url: str) -> None:
        self.commands.append(("navigate", url))

    def go_back(self) -> None:
        self.commands.append(("go_back",))

    def go_forward(self) -> None:
        self.commands.append(("go_forward",))

    def search(self) -> None:
        self.commands.append(("search",))

    # -- Helpers ---------------------------------------------------

    @property
    def pointer_events(self) -> list[tuple]:
        return [c for c in self.commands if c[0] == "pointer"]


# ------------------------------------------------------------------
# MockModel
# ------------------------------------------------------------------


class MockModel:
    """Test double for ComputerUseClient.

    ``batches`` maps an instruction to the list of action batches the
    model returns for it, one per turn.  When the batches run out the
    model returns an empty response with ``final_text``.

    Set ``hang_on_propose`` or ``hang_on_follow_up`` to make that call
    wait until cancelled; ``hanging`` is set when it starts.
    """

    def __init__(
        self,
        batches: dict[str, list[list[ActionDescriptor]]] | None = None,
        final_text: str = "",
    ) -> None:
        self.batches = batches or {}
        self.final_text = final_text
        self.propose_calls: list[tuple[str, bytes | None]] = []
        self.reports: list[list[ActionReport]] = []
        self.raise_on_propose: Exception | None = None
        self.raise_on_follow_up: Exception | None = None
        self.hang_on_propose: bool = False
        self.hang_on_follow_up: bool = False
        self.hanging: asyncio.Event | None = None
        self._turns: dict[str, int] = {}

    async def propose(
        self,
        instruction: str,
        capture: bytes | None = None,
    ) -> ModelResponse:
        self.propose_calls.append((instruction, capture))
        await asyncio.sleep(0)
        if self.hang_on_propose:
            await _hang(self.hanging)
        if self.raise_on_propose is not None:
            raise self.raise_on_propose
        self._turns[instruction] = 0
        return self._next(instruction)

    async def follow_up(
        self,
        previous: ModelResponse,
        reports: list[ActionReport],
        capture: bytes | None = None,
    ) -> ModelResponse:
        self.reports.append(list(reports))
        await asyncio.sleep(0)
        if self.hang_on_follow_up:
            await _hang(self.hanging)
        if self.raise_on_follow_up is not None:
            raise self.raise_on_follow_up
        instruction = previous.conversation[0]
        self._turns[instruction] += 1
        return self._next(instruction)

    def _next(self, instruction: str) -> ModelResponse:
        batches = self.batches.get(instruction, [])
        turn = self._turns[instruction]
        if turn < len(batches):
            return ModelResponse(
                actions=list(batches[turn]),
                conversation=[instruction],
            )
        return ModelResponse(
            text=self.final_text,
            conversation=[instruction],
        )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> MockRemoteSession:
    return MockRemoteSession()
