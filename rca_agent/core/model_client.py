"""Model collaborator: Gemini computer-use calls over HTTP.

Sends the task instruction plus an optional PNG screen capture to the
Gemini ``generateContent`` endpoint with the computer-use tool enabled,
and parses the returned function calls into ``ActionDescriptor``
objects.  Each function call may carry a ``safety_decision`` that the
Task Runner uses to gate execution.

After a batch has been processed, ``follow_up`` sends one function
response per action (with a fresh capture) and returns the next batch,
continuing the same conversation.

There is no automatic retry: any transport, authentication or quota
failure raises ``ModelUnavailable`` and the current task fails.

Dependencies: ``models.actions``, ``config.settings``, ``httpx``,
``base64``, ``json`` (stdlib).

Typical usage::

    from rca_agent.config.settings import get_default_settings
    from rca_agent.core.model_client import ComputerUseClient

    client = ComputerUseClient(get_default_settings(), api_key="...")
    response = await client.propose("Open example.com", capture=png)
    for action in response.actions:
        print(action.name, action.args)
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from rca_agent.config.settings import Settings
from rca_agent.core.errors import ModelUnavailable
from rca_agent.models.actions import (
    ActionDescriptor,
    Decision,
    SafetyDecision,
    parse_decision,
)

logger = logging.getLogger(__name__)

# Gemini generateContent endpoint; ``{model}`` is the model id.
_API_URL: str = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "{model}:generateContent"
)

# Execution environment advertised to the computer-use tool.
_ENVIRONMENT: str = "ENVIRONMENT_BROWSER"


def _malformed(detail: str) -> ModelUnavailable:
    return ModelUnavailable(f"malformed model response: {detail}")


# ------------------------------------------------------------------
# Request / Response data classes
# ------------------------------------------------------------------


@dataclass
class ActionReport:
    """What happened to one proposed action, sent back to the model.

    Attributes:
        name: Action name as proposed.
        status: One of ``"executed"``, ``"denied"``, ``"blocked"``,
            ``"invalid"``, ``"failed"``.
        error: Error or denial detail.  Empty when executed.
        safety_acknowledged: Whether a human approved an action that
            required confirmation.
    """

    name: str
    status: str
    error: str = ""
    safety_acknowledged: bool = False

    def to_part(self) -> dict[str, Any]:
        """Render as a Gemini ``functionResponse`` part."""
        response: dict[str, Any] = {"status": self.status}
        if self.error:
            response["error"] = self.error
        if self.safety_acknowledged:
            response["safety_acknowledgement"] = "true"
        return {
            "functionResponse": {
                "name": self.name,
                "response": response,
            }
        }


@dataclass
class ModelResponse:
    """One model round-trip.

    Attributes:
        actions: Proposed actions, in order.  May be empty.
        text: Free-text parts of the reply joined by newlines.
        raw_response: Decoded JSON body.
        latency_ms: Round-trip time in milliseconds.
        token_count: Total tokens reported by the API.
        conversation: Contents sent so far plus the model's reply;
            passed back through ``follow_up``.
    """

    actions: list[ActionDescriptor] = field(default_factory=list)
    text: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0
    token_count: int = 0
    conversation: list[dict[str, Any]] = field(default_factory=list)


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------


class ComputerUseClient:
    """Calls the Gemini computer-use model.

    All configuration is injected via ``Settings`` and the API key
    parameter -- there is no global state.

    Args:
        settings: Model id, system instructions and timeout.
        api_key: Gemini API key.  If empty, ``GEMINI_API_KEY`` from the
            environment is used.  A missing key is not an error at
            construction time, but ``propose`` will fail.
    """

    def __init__(
        self,
        settings: Settings,
        api_key: str = "",
    ) -> None:
        self._settings = settings
        self._api_key: str = api_key or os.environ.get("GEMINI_API_KEY", "")

    # -- Prompt construction ----------------------------------------

    def build_user_turn(
        self,
        instruction: str,
        capture: bytes | None = None,
    ) -> dict[str, Any]:
        """Build the opening user turn: instruction plus screenshot."""
        parts: list[dict[str, Any]] = [{"text": instruction}]
        if capture is not None:
            parts.append(self._image_part(capture))
        return {"role": "user", "parts": parts}

    def build_report_turn(
        self,
        reports: list[ActionReport],
        capture: bytes | None = None,
    ) -> dict[str, Any]:
        """Build a user turn carrying function responses."""
        parts: list[dict[str, Any]] = [r.to_part() for r in reports]
        if capture is not None:
            parts.append(self._image_part(capture))
        return {"role": "user", "parts": parts}

    def build_payload(self, contents: list[dict[str, Any]]) -> dict[str, Any]:
        """Build the ``generateContent`` request body."""
        return {
            "contents": contents,
            "system_instruction": {
                "parts": [{"text": self._settings.system_instructions}],
            },
            "tools": [
                {"computer_use": {"environment": _ENVIRONMENT}},
            ],
        }

    # -- Response parsing -------------------------------------------

    def parse_response(
        self,
        body: dict[str, Any],
    ) -> tuple[list[ActionDescriptor], list[str], dict[str, Any]]:
        """Extract actions, text, and the model turn from a response body.

        Only the first candidate is used.  Function calls whose
        ``args`` are not a mapping are kept with empty args so the
        pipeline reports them as invalid instead of dropping them.

        Returns:
            ``(actions, texts, model_content)``.

        Raises:
            ModelUnavailable: If the body does not have the shape of a
                ``generateContent`` response.
        """
        if not isinstance(body, dict):
            raise _malformed("body is not an object")
        candidates = body.get("candidates") or []
        if not isinstance(candidates, list):
            raise _malformed("'candidates' is not a list")
        if not candidates:
            return [], [], {"role": "model", "parts": []}

        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise _malformed("candidate is not an object")
        content = candidate.get("content") or {}
        if not isinstance(content, dict):
            raise _malformed("'content' is not an object")
        parts = content.get("parts") or []
        if not isinstance(parts, list):
            raise _malformed("'parts' is not a list")

        actions: list[ActionDescriptor] = []
        texts: list[str] = []
        for part in parts:
            if not isinstance(part, dict):
                raise _malformed("part is not an object")
            if "functionCall" in part:
                call = part["functionCall"]
                if not isinstance(call, dict):
                    raise _malformed("'functionCall' is not an object")
                actions.append(self._call_to_descriptor(call))
            elif part.get("text"):
                texts.append(str(part["text"]))

        model_content = {"role": content.get("role", "model"), "parts": parts}
        return actions, texts, model_content

    # -- Async round-trips ------------------------------------------

    async def propose(
        self,
        instruction: str,
        capture: bytes | None = None,
    ) -> ModelResponse:
        """Start a conversation and return the first batch of actions.

        Raises:
            ModelUnavailable: On missing key, transport error, or a
                non-200 response.
        """
        contents = [self.build_user_turn(instruction, capture)]
        return await self._generate(contents)

    async def follow_up(
        self,
        previous: ModelResponse,
        reports: list[ActionReport],
        capture: bytes | None = None,
    ) -> ModelResponse:
        """Report the outcome of the previous batch and get the next one.

        Raises:
            ModelUnavailable: On missing key, transport error, or a
                non-200 response.
        """
        contents = list(previous.conversation)
        contents.append(self.build_report_turn(reports, capture))
        return await self._generate(contents)

    # -- Private helpers --------------------------------------------

    async def _generate(
        self,
        contents: list[dict[str, Any]],
    ) -> ModelResponse:
        if not self._api_key:
            raise ModelUnavailable("No API key configured.")

        payload = self.build_payload(contents)
        url = _API_URL.format(model=self._settings.model_id)
        timeout = httpx.Timeout(
            self._settings.api_timeout_seconds,
            connect=10.0,
        )

        start_ns = time.monotonic_ns()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                http_resp = await client.post(
                    url,
                    headers=self._build_headers(),
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.warning("Model request failed: %s", exc)
            raise ModelUnavailable(f"{type(exc).__name__}: {exc}") from exc
        elapsed_ms = (time.monotonic_ns() - start_ns) / 1_000_000

        if http_resp.status_code != 200:
            message = f"HTTP {http_resp.status_code}: {http_resp.text[:200]}"
            logger.warning("Model request rejected: %s", message)
            raise ModelUnavailable(message)

        return self._handle_success(http_resp, contents, elapsed_ms)

    def _build_headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self._api_key,
            "content-type": "application/json",
        }

    def _handle_success(
        self,
        http_resp: httpx.Response,
        contents: list[dict[str, Any]],
        elapsed_ms: float,
    ) -> ModelResponse:
        try:
            body = http_resp.json()
        except json.JSONDecodeError as exc:
            raise ModelUnavailable(f"invalid JSON from model: {exc}") from exc

        actions, texts, model_content = self.parse_response(body)
        usage = body.get("usageMetadata") or {}
        try:
            token_count = int(usage.get("totalTokenCount", 0))
        except (AttributeError, TypeError, ValueError) as exc:
            raise _malformed("invalid 'usageMetadata'") from exc
        logger.info(
            "Model returned %d action(s) in %.0f ms",
            len(actions),
            elapsed_ms,
        )
        return ModelResponse(
            actions=actions,
            text="\n".join(texts),
            raw_response=body,
            latency_ms=elapsed_ms,
            token_count=token_count,
            conversation=[*contents, model_content],
        )

    @staticmethod
    def _image_part(capture: bytes) -> dict[str, Any]:
        return {
            "inline_data": {
                "mime_type": "image/png",
                "data": base64.b64encode(capture).decode("ascii"),
            }
        }

    @staticmethod
    def _call_to_descriptor(call: dict[str, Any]) -> ActionDescriptor:
        """Convert a ``functionCall`` dict to an ``ActionDescriptor``.

        The safety decision is read from ``args["safety_decision"]``
        (removed from the args) or from a ``safety_decision`` key on
        the call itself.  Unrecognised decision strings are treated as
        ``require_confirmation``.
        """
        raw_args = call.get("args")
        args = dict(raw_args) if isinstance(raw_args, dict) else {}
        raw_decision = args.pop("safety_decision", None)
        if raw_decision is None:
            raw_decision = call.get("safety_decision")

        safety: SafetyDecision | None = None
        if isinstance(raw_decision, dict):
            decision = parse_decision(str(raw_decision.get("decision", "")))
            if decision is None:
                logger.warning(
                    "Unknown safety decision %r; requiring confirmation",
                    raw_decision.get("decision"),
                )
                decision = Decision.REQUIRE_CONFIRMATION
            safety = SafetyDecision(
                explanation=str(raw_decision.get("explanation", "")),
                decision=decision,
            )

        return ActionDescriptor(
            name=str(call.get("name", "")),
            args=args,
            safety_decision=safety,
        )
