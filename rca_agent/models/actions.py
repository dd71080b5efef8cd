"""Action Descriptors proposed by the model collaborator.

An ``ActionDescriptor`` describes *what* the model wants to do on the
remote desktop (click somewhere, type text, navigate, scroll) together
with the model's own safety verdict.  Coordinates are expressed in the
normalised 0-999 space, independent of the remote surface resolution.

``validate_args`` enforces the per-action argument schema and fills in
defaults; the Task Runner calls it before an action is gated or
executed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from rca_agent.core.errors import ValidationError

# Upper bound (inclusive) of the normalised coordinate space.
NORMALIZED_MAX: int = 999


class ActionName(Enum):
    """The fixed action vocabulary of the model collaborator."""

    OPEN_WEB_BROWSER = "open_web_browser"
    WAIT_5_SECONDS = "wait_5_seconds"
    GO_BACK = "go_back"
    GO_FORWARD = "go_forward"
    SEARCH = "search"
    NAVIGATE = "navigate"
    CLICK_AT = "click_at"
    HOVER_AT = "hover_at"
    TYPE_TEXT_AT = "type_text_at"
    KEY_COMBINATION = "key_combination"
    SCROLL_DOCUMENT = "scroll_document"
    SCROLL_AT = "scroll_at"
    DRAG_AND_DROP = "drag_and_drop"


# Short names accepted in addition to the model's canonical ones.
_ALIASES: dict[str, ActionName] = {
    "open_browser": ActionName.OPEN_WEB_BROWSER,
    "wait": ActionName.WAIT_5_SECONDS,
}


class Decision(Enum):
    """The model's safety verdict for one action."""

    ALLOWED = "allowed"
    REQUIRE_CONFIRMATION = "require_confirmation"
    BLOCKED = "blocked"


class ScrollDirection(Enum):
    """Valid scroll directions."""

    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class SafetyDecision:
    """Safety verdict attached to an action by the model collaborator.

    Attributes:
        explanation: Why the model considers the action risky (or not).
        decision: Whether the action may run, needs confirmation, or is
            blocked outright.
    """

    explanation: str
    decision: Decision


@dataclass(frozen=True)
class ActionDescriptor:
    """One proposed remote-control operation.

    ``name`` is kept as the raw string the model produced so that an
    unknown action surfaces as a ``ValidationError`` in the pipeline
    rather than disappearing during parsing.

    Attributes:
        name: Action identifier from the model's vocabulary.
        args: Parameter mapping; the schema depends on ``name``.
        safety_decision: Optional verdict supplied by the model.
    """

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    safety_decision: SafetyDecision | None = None

    @property
    def decision(self) -> Decision:
        """The effective decision; ``ALLOWED`` when none was supplied."""
        if self.safety_decision is None:
            return Decision.ALLOWED
        return self.safety_decision.decision

    @property
    def requires_confirmation(self) -> bool:
        """Whether a human must approve this action before it runs."""
        return self.decision is Decision.REQUIRE_CONFIRMATION

    @property
    def is_blocked(self) -> bool:
        """Whether the model forbade this action."""
        return self.decision is Decision.BLOCKED

    @property
    def action_name(self) -> ActionName:
        """Resolve ``name`` to the ``ActionName`` vocabulary.

        Raises:
            ValidationError: If the name is not part of the vocabulary.
        """
        return resolve_action_name(self.name)

    def validated(self) -> ActionDescriptor:
        """Return a copy with canonical name and schema-checked args.

        Raises:
            ValidationError: If the name or the arguments are invalid.
        """
        action = resolve_action_name(self.name)
        return replace(
            self,
            name=action.value,
            args=validate_args(action, self.args),
        )


def resolve_action_name(name: str) -> ActionName:
    """Map a raw action name (or alias) to ``ActionName``.

    Raises:
        ValidationError: If the name is unknown.
    """
    normalised = name.strip().lower()
    if normalised in _ALIASES:
        return _ALIASES[normalised]
    for member in ActionName:
        if member.value == normalised:
            return member
    raise ValidationError(f"unknown action '{name}'")


def parse_decision(value: str) -> Decision | None:
    """Map a decision string to ``Decision``; ``None`` if unrecognised."""
    normalised = value.strip().lower()
    for member in Decision:
        if member.value == normalised:
            return member
    return None


# ----------------------------------------------------------------------
# Schema validation
# ----------------------------------------------------------------------


def _require_coordinate(args: dict[str, Any], key: str) -> int | float:
    if key not in args:
        raise ValidationError(f"missing required argument '{key}'")
    value = args[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"argument '{key}' must be numeric")
    if not math.isfinite(value) or not 0 <= value <= NORMALIZED_MAX:
        raise ValidationError(
            f"argument '{key}'={value} outside 0-{NORMALIZED_MAX}"
        )
    return value


def _require_string(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"argument '{key}' must be a string")
    return value


def _optional_bool(args: dict[str, Any], key: str, default: bool) -> bool:
    value = args.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"argument '{key}' must be a boolean")
    return value


def _direction(args: dict[str, Any]) -> str:
    value = _require_string(args, "direction").strip().lower()
    if value not in {d.value for d in ScrollDirection}:
        raise ValidationError(f"invalid scroll direction '{value}'")
    return value


def _optional_magnitude(args: dict[str, Any]) -> int | float | None:
    if "magnitude" not in args or args["magnitude"] is None:
        return None
    value = args["magnitude"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("argument 'magnitude' must be numeric")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("argument 'magnitude' must be positive")
    return value


def validate_args(
    action: ActionName,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Check *args* against the schema for *action* and fill defaults.

    Unknown extra keys are preserved untouched.

    Args:
        action: The resolved action.
        args: Raw argument mapping from the model.

    Returns:
        A new dictionary with normalised values.

    Raises:
        ValidationError: If a required argument is missing or has the
            wrong type or range.
    """
    if not isinstance(args, dict):
        raise ValidationError("arguments must be a mapping")
    result = dict(args)

    if action in (ActionName.CLICK_AT, ActionName.HOVER_AT):
        result["x"] = _require_coordinate(args, "x")
        result["y"] = _require_coordinate(args, "y")

    elif action is ActionName.TYPE_TEXT_AT:
        result["x"] = _require_coordinate(args, "x")
        result["y"] = _require_coordinate(args, "y")
        result["text"] = _require_string(args, "text")
        result["press_enter"] = _optional_bool(args, "press_enter", True)
        result["clear_before_typing"] = _optional_bool(
            args, "clear_before_typing", True
        )

    elif action is ActionName.NAVIGATE:
        url = _require_string(args, "url").strip()
        if not url:
            raise ValidationError("argument 'url' must not be empty")
        result["url"] = url

    elif action is ActionName.KEY_COMBINATION:
        keys = _require_string(args, "keys").strip()
        if not keys:
            raise ValidationError("argument 'keys' must not be empty")
        result["keys"] = keys

    elif action is ActionName.SCROLL_DOCUMENT:
        result["direction"] = _direction(args)
        result["magnitude"] = _optional_magnitude(args)

    elif action is ActionName.SCROLL_AT:
        result["x"] = _require_coordinate(args, "x")
        result["y"] = _require_coordinate(args, "y")
        result["direction"] = _direction(args)
        result["magnitude"] = _optional_magnitude(args)

    elif action is ActionName.DRAG_AND_DROP:
        for key in ("x", "y", "destination_x", "destination_y"):
            result[key] = _require_coordinate(args, key)

    return result


# ----------------------------------------------------------------------
# Presentation helpers
# ----------------------------------------------------------------------


def describe_action(descriptor: ActionDescriptor) -> str:
    """Return a one-line human-readable description of an action."""
    args = descriptor.args
    name = descriptor.name
    if name in ("click_at", "hover_at"):
        verb = "Click" if name == "click_at" else "Hover"
        return f"{verb} at ({args.get('x')}, {args.get('y')})"
    if name == "type_text_at":
        return (
            f"Type \"{args.get('text')}\" at "
            f"({args.get('x')}, {args.get('y')})"
        )
    if name == "navigate":
        return f"Navigate to {args.get('url')}"
    if name == "key_combination":
        return f"Press {args.get('keys')}"
    if name in ("scroll_at", "scroll_document"):
        return f"Scroll {args.get('direction')}"
    if name == "drag_and_drop":
        return (
            f"Drag from ({args.get('x')}, {args.get('y')}) to "
            f"({args.get('destination_x')}, {args.get('destination_y')})"
        )
    return f"Execute: {name}"
