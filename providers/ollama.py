"""OllamaBackend - local models over the Ollama REST API."""

import asyncio
import json
from typing import AsyncIterator, Iterable

import aiohttp

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


class OllamaBackend(Backend):
    """Zero-cost local backend. POST /api/chat"""

    backend_id = "ollama"
    is_local = True
    chars_per_token = 4.5
    default_context_window = 8192
    context_windows = {
        "llama3:8b": 8192,
        "llama3.2:latest": 128000,
        "llama3.2": 128000,
        "mistral:7b": 32768,
        "codellama:34b": 16384,
    }

    async def is_available(self) -> bool:
        """Ollama is up and the configured model has been pulled. GET /api/tags"""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(f"{self.base_url}/api/tags") as resp:
                    if resp.status != 200:
                        return False
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._logger.info("ollama probe failed: %s", e)
            return False
        names = [m.get("name", "") for m in data.get("models", [])]
        return self.model_available(self.model, names)

    @staticmethod
    def model_available(required: str, available: Iterable[str]) -> bool:
        """Check whether a model name is available, accounting for tags."""
        available = [m for m in available if m]
        if required in available:
            return True
        tag_prefix = f"{required}:"
        return any(name.startswith(tag_prefix) for name in available)

    def _endpoint(self, stream: bool) -> str:
        return f"{self.base_url}/api/chat"

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
            "stream": stream,
            "options": {
                "temperature": options.get("temperature", self.temperature),
                "num_predict": options.get("max_tokens", self.max_tokens),
            },
        }
        if tools:
            payload["tools"] = [
                {"type": "function", "function": tool.to_schema()} for tool in tools
            ]
        return payload

    def _parse_response(self, data: dict) -> GenerationResult:
        message = data.get("message") or {}
        tool_calls = self._tool_calls(message.get("tool_calls") or [])
        return GenerationResult(
            content=message.get("content", "") or "",
            tool_calls=tool_calls,
            finish_reason=self._finish_reason(data.get("done_reason"), bool(tool_calls)),
            usage=Usage(
                input_tokens=int(data.get("prompt_eval_count", 0) or 0),
                output_tokens=int(data.get("eval_count", 0) or 0),
            ),
            backend_id=self.backend_id,
            model=data.get("model", self.model),
        )

    async def _stream_request(self, payload: dict) -> AsyncIterator[StreamChunk]:
        call_index = 0
        saw_tools = False
        async for line in self._iter_lines(self._endpoint(stream=True), payload):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue

            message = data.get("message") or {}
            if message.get("content"):
                yield StreamChunk(type=ChunkType.TEXT, content=message["content"])

            for call in self._tool_calls(message.get("tool_calls") or [], start=call_index):
                call_index += 1
                saw_tools = True
                yield StreamChunk(type=ChunkType.TOOL_CALL_START, tool_call=call)
                yield StreamChunk(type=ChunkType.TOOL_CALL_END, tool_call=call)

            if data.get("done", False):
                yield StreamChunk(
                    type=ChunkType.DONE,
                    finish_reason=self._finish_reason(data.get("done_reason"), saw_tools),
                    usage=Usage(
                        input_tokens=int(data.get("prompt_eval_count", 0) or 0),
                        output_tokens=int(data.get("eval_count", 0) or 0),
                    ),
                )
                return

    @staticmethod
    def _tool_calls(raw_calls: list, start: int = 0) -> list[ToolCall]:
        calls = []
        for offset, raw in enumerate(raw_calls):
            function = raw.get("function") or {}
            calls.append(ToolCall(
                id=raw.get("id") or f"call_{start + offset}",
                name=function.get("name", ""),
                arguments=parse_tool_arguments(function.get("arguments")),
            ))
        return calls

    @staticmethod
    def _finish_reason(done_reason: str | None, has_tools: bool) -> str:
        if has_tools:
            return "tool_use"
        if done_reason == "length":
            return "max_tokens"
        return "stop"
