"""OpenAIBackend - chat completions API."""

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


FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


class OpenAIBackend(Backend):
    backend_id = "openai"
    chars_per_token = 4.0
    default_context_window = 128000
    context_windows = {
        "gpt-4o": 128000,
        "gpt-4-turbo": 128000,
        "gpt-4": 8192,
        "gpt-3.5-turbo": 16385,
        "o1": 200000,
    }

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        status = await self._probe(f"{self.base_url}/models")
        return status == 200

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _endpoint(self, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def _build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        options: dict,
        stream: bool,
    ) -> dict:
        chat = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        chat.extend({"role": m.role, "content": m.content} for m in messages)

        payload = {
            "model": self.model,
            "messages": chat,
            "max_tokens": options.get("max_tokens", self.max_tokens),
            "temperature": options.get("temperature", self.temperature),
        }
        if tools:
            payload["tools"] = [
                {"type": "function", "function": tool.to_schema()} for tool in tools
            ]
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_response(self, data: dict) -> GenerationResult:
        choices = data.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = []
        for index, raw in enumerate(message.get("tool_calls") or []):
            function = raw.get("function") or {}
            tool_calls.append(ToolCall(
                id=raw.get("id") or f"call_{index}",
                name=function.get("name", ""),
                arguments=parse_tool_arguments(function.get("arguments")),
            ))

        usage = data.get("usage") or {}
        return GenerationResult(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            finish_reason=FINISH_REASONS.get(choice.get("finish_reason"), "stop"),
            usage=Usage(
                input_tokens=int(usage.get("prompt_tokens", 0) or 0),
                output_tokens=int(usage.get("completion_tokens", 0) or 0),
            ),
            backend_id=self.backend_id,
            model=data.get("model", self.model),
        )

    async def _stream_request(self, payload: dict) -> AsyncIterator[StreamChunk]:
        usage = Usage()
        finish_reason = "stop"
        # tool-call index -> [ToolCall, partial arguments]
        open_tools: dict[int, list] = {}

        async for line in self._iter_lines(self._endpoint(stream=True), payload):
            raw = self._sse_data(line)
            if not raw:
                continue
            if raw == "[DONE]":
                break
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                continue

            if event.get("usage"):
                usage.input_tokens = int(event["usage"].get("prompt_tokens", 0) or 0)
                usage.output_tokens = int(event["usage"].get("completion_tokens", 0) or 0)

            for choice in event.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield StreamChunk(type=ChunkType.TEXT, content=delta["content"])

                for raw_call in delta.get("tool_calls") or []:
                    index = raw_call.get("index", 0)
                    function = raw_call.get("function") or {}
                    if index not in open_tools:
                        call = ToolCall(
                            id=raw_call.get("id") or f"call_{index}",
                            name=function.get("name", ""),
                        )
                        open_tools[index] = [call, ""]
                        yield StreamChunk(type=ChunkType.TOOL_CALL_START, tool_call=call)
                    partial = function.get("arguments") or ""
                    if partial:
                        open_tools[index][1] += partial
                        yield StreamChunk(
                            type=ChunkType.TOOL_CALL_DELTA,
                            content=partial,
                            tool_call=open_tools[index][0],
                        )

                if choice.get("finish_reason"):
                    finish_reason = FINISH_REASONS.get(choice["finish_reason"], "stop")

        for index in sorted(open_tools):
            call, partial = open_tools[index]
            call.arguments = parse_tool_arguments(partial)
            yield StreamChunk(type=ChunkType.TOOL_CALL_END, tool_call=call)

        yield StreamChunk(type=ChunkType.DONE, finish_reason=finish_reason, usage=usage)
