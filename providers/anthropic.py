"""AnthropicBackend - Claude models over the Messages API."""

import json
from typing import AsyncIterator

from agent.response import (
    ChunkType,
    GenerationResult,
    Message,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    Usage,
)
from providers.base import Backend, parse_tool_arguments


ANTHROPIC_VERSION = "2023-06-01"

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
}


class AnthropicBackend(Backend):
    backend_id = "anthropic"
    chars_per_token = 3.5
    default_context_window = 200000

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        status = await self._probe(f"{self.base_url}/v1/models")
        return status == 200

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _endpoint(self, stream: bool) -> str:
        return f"{self.base_url}/v1/messages"

    def _build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        options: dict,
        stream: bool,
    ) -> dict:
        payload = {
            "model": self.model,
            "max_tokens": options.get("max_tokens", self.max_tokens),
            "temperature": options.get("temperature", self.temperature),
            "messages": self._convert_messages(messages),
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in tools
            ]
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict]:
        """
        The Messages API only knows user/assistant turns and expects them to
        alternate; stored system markers are sent as user text and adjacent
        turns of the same role are merged.
        """
        converted: list[dict] = []
        for message in messages:
            role = "assistant" if message.role == "assistant" else "user"
            content = message.content
            if message.role == "system":
                content = f"[System note] {content}"
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"] += "\n\n" + content
            else:
                converted.append({"role": role, "content": content})
        if converted and converted[0]["role"] == "assistant":
            converted.insert(0, {"role": "user", "content": "(conversation continues)"})
        return converted

    def _parse_response(self, data: dict) -> GenerationResult:
        text_parts = []
        tool_calls = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id") or f"call_{len(tool_calls)}",
                    name=block.get("name", ""),
                    arguments=parse_tool_arguments(block.get("input")),
                ))

        usage = data.get("usage") or {}
        return GenerationResult(
            content="".join(text_parts),
            tool_calls=tool_calls,
            finish_reason=STOP_REASONS.get(data.get("stop_reason"), "stop"),
            usage=Usage(
                input_tokens=int(usage.get("input_tokens", 0) or 0),
                output_tokens=int(usage.get("output_tokens", 0) or 0),
            ),
            backend_id=self.backend_id,
            model=data.get("model", self.model),
        )

    async def _stream_request(self, payload: dict) -> AsyncIterator[StreamChunk]:
        usage = Usage()
        finish_reason = "stop"
        # content block index -> [ToolCall, partial json]
        open_tools: dict[int, list] = {}

        async for line in self._iter_lines(self._endpoint(stream=True), payload):
            raw = self._sse_data(line)
            if not raw:
                continue
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                continue

            kind = event.get("type")
            if kind == "message_start":
                start_usage = (event.get("message") or {}).get("usage") or {}
                usage.input_tokens = int(start_usage.get("input_tokens", 0) or 0)
            elif kind == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    call = ToolCall(
                        id=block.get("id") or f"call_{event.get('index', 0)}",
                        name=block.get("name", ""),
                    )
                    open_tools[event.get("index", 0)] = [call, ""]
                    yield StreamChunk(type=ChunkType.TOOL_CALL_START, tool_call=call)
            elif kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    yield StreamChunk(type=ChunkType.TEXT, content=delta.get("text", ""))
                elif delta.get("type") == "input_json_delta":
                    entry = open_tools.get(event.get("index", 0))
                    if entry is not None:
                        partial = delta.get("partial_json", "")
                        entry[1] += partial
                        yield StreamChunk(type=ChunkType.TOOL_CALL_DELTA, content=partial, tool_call=entry[0])
            elif kind == "content_block_stop":
                entry = open_tools.pop(event.get("index", 0), None)
                if entry is not None:
                    call, partial = entry
                    call.arguments = parse_tool_arguments(partial)
                    yield StreamChunk(type=ChunkType.TOOL_CALL_END, tool_call=call)
            elif kind == "message_delta":
                delta = event.get("delta") or {}
                if delta.get("stop_reason"):
                    finish_reason = STOP_REASONS.get(delta["stop_reason"], "stop")
                delta_usage = event.get("usage") or {}
                usage.output_tokens = int(delta_usage.get("output_tokens", usage.output_tokens) or 0)
            elif kind == "message_stop":
                yield StreamChunk(type=ChunkType.DONE, finish_reason=finish_reason, usage=usage)
                return
            elif kind == "error":
                error = event.get("error") or {}
                raise self._error_from_status(
                    529 if error.get("type") == "overloaded_error" else 500,
                    error.get("message", "stream error"),
                )
