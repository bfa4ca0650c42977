"""Message, tool-call and generation result dataclasses."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


ROLES = ("user", "assistant", "system")
FINISH_REASONS = ("stop", "tool_use", "max_tokens")
TOOL_CATEGORIES = ("filesystem", "terminal", "web", "memory", "system", "general")


@dataclass
class Message:
    """One entry in the conversation history."""
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass
class ToolDefinition:
    """Static description of a tool the backend may call."""
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    category: str = "general"
    dangerous: bool = False
    params_model: Any = None

    def to_schema(self) -> dict:
        """JSON-serializable form handed to backend adapters."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass
class ToolCall:
    """Tool invocation requested by a backend."""
    id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool call. Exactly one of result/error is meaningful."""
    tool_call_id: str
    result: Any = None
    error: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    """Normalized backend response."""
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)
    backend_id: str = ""
    model: str = ""


class ChunkType(str, Enum):
    TEXT = "text"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_CALL_END = "tool_call_end"
    TOOL_RESULT = "tool_result"
    DONE = "done"


@dataclass
class StreamChunk:
    """One typed element of a streamed response."""
    type: ChunkType
    content: str = ""
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.type.value, "content": self.content}
        if self.tool_call is not None:
            data["tool_call"] = {
                "id": self.tool_call.id,
                "name": self.tool_call.name,
                "arguments": self.tool_call.arguments,
            }
        if self.tool_result is not None:
            data["tool_result"] = {
                "tool_call_id": self.tool_result.tool_call_id,
                "result": self.tool_result.result,
                "error": self.tool_result.error,
                "reason": self.tool_result.reason,
            }
        if self.finish_reason is not None:
            data["finish_reason"] = self.finish_reason
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass
class ComplexityResult:
    level: str
    score: int
    prefer_local: bool
    reason: str = ""
    features: dict = field(default_factory=dict)


@dataclass
class ApprovalRequest:
    """Request shown to a human before a gated tool call runs."""
    id: str
    tool_name: str
    operation: str
    description: str
    arguments: dict
    risk: str
    policy_risk: str = "safe"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "operation": self.operation,
            "description": self.description,
            "arguments": self.arguments,
            "risk": self.risk,
            "policy_risk": self.policy_risk,
            "created_at": self.created_at,
        }


@dataclass
class ApprovalResponse:
    approved: bool
    reason: str | None = None
    withdrawn: bool = False


@dataclass
class AgentExecutionResult:
    """Everything a single agent turn produced."""
    final_content: str
    response: GenerationResult
    tool_results: list[ToolResult] = field(default_factory=list)
    iterations: int = 0
    history: list[Message] = field(default_factory=list)
