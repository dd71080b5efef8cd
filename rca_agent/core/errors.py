"""Error kinds raised by the agent pipeline and how the runner treats them.

The exception classes mark *where* a failure originated (model
collaborator, remote session, malformed action, misuse of the approval
gate).  The ``ErrorClassifier`` is a pure-logic helper that maps an
exception, or an ``ErrorKind`` directly, to the policy the Task Runner
applies: fail the task, skip the descriptor, or carry on because the
outcome was ordinary control flow (a denial or an approval timeout).

This module depends only on the Python standard library.

Typical usage::

    from rca_agent.core.errors import ErrorClassifier, TransportError

    classifier = ErrorClassifier()
    result = classifier.classify(TransportError("socket closed"))
    if result.fatal:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    """Classification of pipeline outcomes that interrupt an action.

    ``APPROVAL_TIMEOUT`` and ``USER_DENIED`` are listed so that callers
    can classify every non-execution outcome uniformly, but they are
    never raised as exceptions.
    """

    MODEL_UNAVAILABLE = "model_unavailable"
    TRANSPORT = "transport"
    VALIDATION = "validation"
    APPROVAL_TIMEOUT = "approval_timeout"
    USER_DENIED = "user_denied"
    UNKNOWN = "unknown"


class AgentError(Exception):
    """Base class for every error raised by the agent."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class ModelUnavailable(AgentError):
    """The model collaborator is unreachable, unauthorised or over quota."""

    kind = ErrorKind.MODEL_UNAVAILABLE


class TransportError(AgentError):
    """The remote-session collaborator failed to deliver a command."""

    kind = ErrorKind.TRANSPORT


class ValidationError(AgentError, ValueError):
    """An Action Descriptor does not satisfy the schema for its name."""

    kind = ErrorKind.VALIDATION


class BlockedActionError(AgentError):
    """A descriptor flagged ``blocked`` was handed to the executor."""

    kind = ErrorKind.VALIDATION


class GateBusyError(AgentError):
    """An approval request was opened while another one is pending."""


class GateStateError(AgentError):
    """``approve`` or ``deny`` was called while no request is pending."""


class TaskStateError(AgentError):
    """A task transition was attempted from an incompatible status."""


@dataclass(frozen=True)
class ErrorClassification:
    """Result of classifying a pipeline error.

    Attributes:
        kind: The classified kind of the error.
        fatal: Whether the current task must be marked ``failed``.
        skip_action: Whether the offending descriptor is skipped while
            the rest of the batch continues.
        description: Human-readable explanation for logs.
    """

    kind: ErrorKind
    fatal: bool
    skip_action: bool
    description: str


_POLICY: dict[ErrorKind, tuple[bool, bool, str]] = {
    ErrorKind.MODEL_UNAVAILABLE: (
        True,
        False,
        "Model collaborator unavailable; task fails without retry.",
    ),
    ErrorKind.TRANSPORT: (
        True,
        False,
        "Remote session failed; the action and its task fail.",
    ),
    ErrorKind.VALIDATION: (
        False,
        True,
        "Malformed action skipped; the batch continues.",
    ),
    ErrorKind.APPROVAL_TIMEOUT: (
        False,
        True,
        "Approval timed out; treated as a denial.",
    ),
    ErrorKind.USER_DENIED: (
        False,
        True,
        "Action denied by the user.",
    ),
    ErrorKind.UNKNOWN: (
        True,
        False,
        "Unexpected error; task fails.",
    ),
}


class ErrorClassifier:
    """Maps errors to the policy the Task Runner applies.

    The classifier is stateless; every call is independent.
    """

    def classify(
        self,
        error: BaseException | ErrorKind,
    ) -> ErrorClassification:
        """Classify an exception or an explicit error kind.

        Args:
            error: An exception raised inside the pipeline, or an
                ``ErrorKind`` for outcomes that are not exceptions
                (denials and approval timeouts).

        Returns:
            An ``ErrorClassification`` describing the policy.
        """
        if isinstance(error, ErrorKind):
            kind = error
            detail = ""
        else:
            kind = getattr(error, "kind", ErrorKind.UNKNOWN)
            if not isinstance(kind, ErrorKind):
                kind = ErrorKind.UNKNOWN
            detail = str(error)

        fatal, skip, description = _POLICY[kind]
        if detail:
            description = f"{description} ({detail})"
        return ErrorClassification(
            kind=kind,
            fatal=fatal,
            skip_action=skip,
            description=description,
        )
