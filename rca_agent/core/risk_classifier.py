"""Display-severity classification of proposed actions.

A static keyword scan over the action name and its serialised arguments
decides how urgently an approval request is presented.  The tier never
gates execution: only the model-supplied ``SafetyDecision`` does that.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from enum import Enum

from rca_agent.config.settings import Settings
from rca_agent.models.actions import ActionDescriptor


class RiskTier(Enum):
    """Display urgency of an action."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def classify(
    descriptor: ActionDescriptor,
    keywords: Iterable[str] | None = None,
) -> RiskTier:
    """Return the display risk tier of *descriptor*.

    Concatenates the action name and a JSON serialisation of its
    arguments, lower-cases the result, and reports ``HIGH`` if any
    keyword occurs in it, ``MEDIUM`` otherwise.

    Args:
        descriptor: The action to classify.
        keywords: High-risk keywords.  Defaults to the keyword set in
            ``Settings``.
    """
    if keywords is None:
        keywords = Settings().high_risk_keywords
    serialised = json.dumps(descriptor.args, default=str)
    haystack = f"{descriptor.name} {serialised}".lower()
    if any(keyword.lower() in haystack for keyword in keywords):
        return RiskTier.HIGH
    return RiskTier.MEDIUM
