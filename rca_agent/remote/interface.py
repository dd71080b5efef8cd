"""Abstract contract for the remote-session collaborator.

The agent never speaks the remote-desktop wire protocol itself.  A
concrete ``RemoteSession`` (a VNC client, a browser driver, a test
double) accepts primitive input events, produces screen frames, and
reports its connection lifecycle through the callbacks registered with
``add_connection_listener``.

The factory ``load_session_factory`` resolves a ``"module:callable"``
string so that the CLI can plug in any implementation.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray

# RFB pointer button masks.
BUTTON_NONE: int = 0
BUTTON_LEFT: int = 1
BUTTON_MIDDLE: int = 2
BUTTON_RIGHT: int = 4
WHEEL_UP: int = 8
WHEEL_DOWN: int = 16
WHEEL_LEFT: int = 32
WHEEL_RIGHT: int = 64


@dataclass(frozen=True)
class VNCConfig:
    """Connection parameters for a remote desktop.

    Attributes:
        host: Server host name.
        port: Server port.
        password: Optional password.
        quality: JPEG quality level requested from the server (0-9).
        compression: Compression level requested from the server (0-9).
    """

    host: str = "localhost"
    port: int = 5900
    password: str | None = None
    quality: int = 6
    compression: int = 2


class ConnectionEvent(Enum):
    """Lifecycle notifications emitted by a remote session."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ERROR = "error"


ConnectionListener = Callable[[ConnectionEvent, str], None]


class RemoteSession(ABC):
    """Abstract interface to a remote desktop.

    All pointer coordinates are pixels on the remote surface.  Methods
    raise ``TransportError`` (or any exception; the executor converts
    it) when the command cannot be delivered.
    """

    def __init__(self) -> None:
        self._connection_listeners: list[ConnectionListener] = []

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    def connect(self, config: VNCConfig) -> None:
        """Open the connection described by *config*.

        Implementations call ``_notify(ConnectionEvent.CONNECT)`` once
        the session is usable, or ``_notify(ConnectionEvent.ERROR,
        message)`` on failure.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection and notify ``DISCONNECT``."""

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        """Register a callback for connect/disconnect/error events."""
        self._connection_listeners.append(listener)

    def _notify(self, event: ConnectionEvent, message: str = "") -> None:
        for listener in list(self._connection_listeners):
            listener(event, message)

    # ------------------------------------------------------------------
    # Primitive input
    # ------------------------------------------------------------------

    @abstractmethod
    def pointer_event(self, x: int, y: int, button_mask: int) -> None:
        """Move the pointer to ``(x, y)`` with *button_mask* held.

        A mask of ``BUTTON_NONE`` moves the pointer with every button
        released.
        """

    @abstractmethod
    def key_event(self, keysym: int, pressed: bool) -> None:
        """Press or release the key identified by *keysym*."""

    # ------------------------------------------------------------------
    # Screen
    # ------------------------------------------------------------------

    @abstractmethod
    def capture_frame(self) -> NDArray[np.uint8] | None:
        """Return the latest frame as an ``(H, W, 3)`` BGR array.

        Returns ``None`` when no frame is available yet.
        """

    @abstractmethod
    def get_surface_size(self) -> tuple[int, int]:
        """Return the remote surface ``(width, height)`` in pixels."""

    # ------------------------------------------------------------------
    # Browser-level operations
    # ------------------------------------------------------------------

    @abstractmethod
    def open_web_browser(self) -> None:
        """Bring up a web browser on the remote desktop."""

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Point the browser at *url*."""

    @abstractmethod
    def go_back(self) -> None:
        """Go to the previous page."""

    @abstractmethod
    def go_forward(self) -> None:
        """Go to the next page."""

    @abstractmethod
    def search(self) -> None:
        """Open the default search engine home page."""


# ----------------------------------------------------------------------
# Factory
# ----------------------------------------------------------------------


def load_session_factory(path: str) -> Callable[[], RemoteSession]:
    """Resolve ``"package.module:callable"`` to a session factory.

    Raises:
        ValueError: If *path* is not of the form ``module:attribute``.
        ImportError: If the module cannot be imported.
        AttributeError: If the attribute does not exist.
        TypeError: If the attribute is not callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"session factory must look like 'module:callable', got {path!r}"
        )
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise TypeError(f"{path!r} is not callable")
    return factory
