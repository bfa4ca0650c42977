"""Approval gate - policy check plus approval mode for each tool call."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from typing import Awaitable, Callable, Union

from agent.exceptions import ApprovalDeniedError, ApprovalRequiredError
from agent.response import ApprovalRequest, ApprovalResponse, ToolCall, ToolDefinition


APPROVAL_MODES = ("conservative", "balanced", "trust")
GATED_CATEGORIES = ("filesystem", "terminal", "web")

ApprovalCallback = Callable[
    [ApprovalRequest],
    Union[ApprovalResponse, dict, bool, Awaitable[Union[ApprovalResponse, dict, bool]]],
]


def needs_approval(definition: ToolDefinition, mode: str) -> bool:
    """Static approval table for a tool under an approval mode."""
    if mode == "conservative":
        return definition.dangerous or definition.category in GATED_CATEGORIES
    if mode == "trust":
        return False
    return definition.dangerous


def coerce_response(value: object) -> ApprovalResponse:
    """Accept the shapes hosts tend to return from an approval prompt."""
    if isinstance(value, ApprovalResponse):
        return value
    if isinstance(value, bool):
        return ApprovalResponse(approved=value)
    if isinstance(value, dict):
        return ApprovalResponse(
            approved=bool(value.get("approved", False)),
            reason=value.get("reason"),
            withdrawn=bool(value.get("withdrawn", False)),
        )
    raise TypeError(f"Approval callback returned unsupported value: {value!r}")


class ApprovalGate:
    """
    Runs two checks per tool call. The policy may refuse outright; otherwise
    the mode (or the policy) may require a human decision, which is obtained
    from the registered callback exactly once. Denials raise, approvals
    return the logged outcome.
    """

    def __init__(
        self,
        policy,
        mode: str = "balanced",
        callback: ApprovalCallback | None = None,
        logger: logging.Logger | None = None,
        telemetry=None,
    ):
        self.policy = policy
        self.set_mode(mode)
        self._callback = callback
        self._logger = logger or logging.getLogger("tiered_agents.approval")
        self._telemetry = telemetry

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        if mode not in APPROVAL_MODES:
            raise ValueError(f"Unknown approval mode: {mode}")
        self._mode = mode

    def set_callback(self, callback: ApprovalCallback | None) -> None:
        self._callback = callback

    async def check(self, call: ToolCall, definition: ToolDefinition) -> str:
        result = self.policy.check_permission(call.name, call.arguments)
        if not result.allowed:
            reason = result.reason or "Blocked by security policy"
            self._record(call, "denied", "policy")
            self._logger.warning("Policy denied %s: %s", call.name, reason)
            raise ApprovalDeniedError(call.name, reason)

        required = self._mode != "trust" and (
            result.requires_approval or needs_approval(definition, self._mode)
        )
        if not required:
            self._record(call, "auto-approved", "auto")
            return "auto-approved"

        if self._callback is None:
            self._record(call, "denied", "policy")
            self._logger.error("No approval callback for %s in %s mode", call.name, self._mode)
            raise ApprovalRequiredError(
                call.name, "No approval callback configured for dangerous operation"
            )

        request = self.build_request(call, definition, result.risk_level)
        self._logger.info("Requesting approval for %s (risk %s)", call.name, request.risk)
        response = await self._ask(request)

        if response.withdrawn:
            self._record(call, "withdrawn", "user")
            raise ApprovalDeniedError(
                call.name, response.reason or "Approval request withdrawn", withdrawn=True
            )
        if not response.approved:
            self._record(call, "denied", "user")
            raise ApprovalDeniedError(call.name, response.reason or "User denied the operation")

        self._record(call, "approved", "user")
        return "approved"

    @staticmethod
    def build_request(call: ToolCall, definition: ToolDefinition, policy_risk: str) -> ApprovalRequest:
        high = policy_risk in ("dangerous", "destructive") or definition.dangerous
        return ApprovalRequest(
            id=uuid.uuid4().hex,
            tool_name=call.name,
            operation=definition.description,
            description=f"Execute {call.name} with arguments: {json.dumps(call.arguments, default=str)}",
            arguments=dict(call.arguments),
            risk="high" if high else "medium",
            policy_risk=policy_risk,
        )

    async def _ask(self, request: ApprovalRequest) -> ApprovalResponse:
        if inspect.iscoroutinefunction(self._callback):
            value = await self._callback(request)
        else:
            # plain callables may block on a host channel
            value = await asyncio.to_thread(self._callback, request)
            if inspect.isawaitable(value):
                value = await value
        return coerce_response(value)

    def _record(self, call: ToolCall, outcome: str, actor: str) -> None:
        self.policy.log_execution(call.name, call.arguments, outcome, actor)
        if outcome != "auto-approved":
            self._logger.info("%s %s by %s", call.name, outcome, actor)
        if self._telemetry is not None:
            self._telemetry.record_approval(call.name, outcome, actor)
