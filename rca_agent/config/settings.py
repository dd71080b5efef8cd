"""Configuration defaults for the Remote Computer Agent.

Provides the ``Settings`` dataclass that holds every tunable parameter
for the model collaborator, the approval gate, the action executor,
the risk classifier, and the remote-session connection.

Typical usage::

    from rca_agent.config.settings import get_default_settings

    settings = get_default_settings()
    print(settings.approval_timeout_seconds)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

_DEFAULT_SYSTEM_INSTRUCTIONS: str = (
    "You are an AI agent that controls computers like a human. You can "
    "interact with web browsers, applications, and system interfaces "
    "through mouse clicks, keyboard input, and navigation. Always "
    "explain your reasoning before taking actions. If you need to "
    "perform potentially risky operations, ask for confirmation. Focus "
    "on completing the user's task efficiently and safely."
)

_DEFAULT_HIGH_RISK_KEYWORDS: tuple[str, ...] = (
    "delete",
    "remove",
    "format",
    "wipe",
    "shutdown",
    "restart",
    "payment",
    "transfer",
    "send",
    "delete_file",
    "delete_folder",
)


@dataclass(frozen=True)
class Settings:
    """Immutable configuration for the entire agent.

    Each attribute group maps to one architectural component.

    Attributes:
        model_id: Identifier of the computer-use model to call.
        system_instructions: System prompt sent with every model
            request.
        api_timeout_seconds: HTTP timeout for one model round-trip.
        max_model_turns: Maximum number of model round-trips per task.
            The task completes once the budget is spent.
        approval_timeout_seconds: Seconds an approval request stays
            pending before it is automatically denied.
        settle_delay_ms: Milliseconds to wait after an action before
            re-capturing the screen.
        focus_delay_ms: Milliseconds to wait between the focusing click
            and the first keystroke of ``type_text_at``.
        wait_action_seconds: Length of the ``wait`` action pause.
        scroll_default_magnitude: Scroll distance (normalised units)
            used when the model omits ``magnitude``.
        scroll_notch_magnitude: Normalised distance covered by one
            wheel notch.
        drag_steps: Number of intermediate pointer moves used by
            ``drag_and_drop``.
        vnc_host: Default remote-desktop host.
        vnc_port: Default remote-desktop port.
        vnc_quality: JPEG quality level requested from the server
            (0-9).
        vnc_compression: Compression level requested from the server
            (0-9).
        high_risk_keywords: Keywords that mark an action as high risk
            for display purposes.
    """

    # -- Model collaborator ---------------------------------------------------
    model_id: str = "gemini-2.5-computer-use-preview-10-2025"
    system_instructions: str = _DEFAULT_SYSTEM_INSTRUCTIONS
    api_timeout_seconds: float = 60.0
    max_model_turns: int = 10

    # -- Approval gate --------------------------------------------------------
    approval_timeout_seconds: int = 30

    # -- Action executor ------------------------------------------------------
    settle_delay_ms: int = 500
    focus_delay_ms: int = 100
    wait_action_seconds: float = 5.0
    scroll_default_magnitude: int = 800
    scroll_notch_magnitude: int = 100
    drag_steps: int = 10

    # -- Remote session -------------------------------------------------------
    vnc_host: str = "localhost"
    vnc_port: int = 5900
    vnc_quality: int = 6
    vnc_compression: int = 2

    # -- Risk classifier ------------------------------------------------------
    high_risk_keywords: tuple[str, ...] = _DEFAULT_HIGH_RISK_KEYWORDS

    # -- Factory & serialisation ----------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Create a ``Settings`` instance from a plain dictionary.

        Unknown keys are silently ignored so that forward-compatible
        config files do not break older agent versions.  A list given
        for ``high_risk_keywords`` is converted to a tuple.

        Args:
            data: Dictionary whose keys correspond to ``Settings``
                field names.

        Returns:
            A new ``Settings`` instance populated from *data*, with
            defaults filling any missing keys.
        """
        known_names = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known_names}
        if "high_risk_keywords" in filtered:
            filtered["high_risk_keywords"] = tuple(
                filtered["high_risk_keywords"]
            )
        return cls(**filtered)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the settings to a plain dictionary.

        Returns:
            A shallow dictionary mapping every field name to its
            current value.
        """
        return asdict(self)


def get_default_settings() -> Settings:
    """Return a ``Settings`` instance with all default values.

    Call ``Settings.from_dict`` when you need to overlay user overrides
    on top of the defaults.
    """
    return Settings()
