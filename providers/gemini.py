"""GeminiBackend - Google generative language API."""

import json
from typing import AsyncIterator

from agent.exceptions import AuthError, BackendError, RateLimitError, UnavailableError
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
    "STOP": "stop",
    "MAX_TOKENS": "max_tokens",
}

# JSON-schema keys the function declaration format rejects
_UNSUPPORTED_SCHEMA_KEYS = {"title", "additionalProperties", "$defs", "$schema", "default"}


def clean_schema(schema: object) -> object:
    if isinstance(schema, dict):
        return {
            key: clean_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    return schema


class GeminiBackend(Backend):
    backend_id = "gemini"
    chars_per_token = 4.0
    default_context_window = 1048576
    context_windows = {
        "gemini-1.5-pro": 2097152,
        "gemini-1.5-flash": 1048576,
        "gemini-1.0-pro": 32768,
    }

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        status = await self._probe(f"{self.base_url}/models/{self.model}?key={self.api_key}")
        return status == 200

    def _endpoint(self, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse&key={self.api_key}"
        return f"{self.base_url}/models/{self.model}:generateContent?key={self.api_key}"

    def _build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        options: dict,
        stream: bool,
    ) -> dict:
        contents: list[dict] = []
        for message in messages:
            role = "model" if message.role == "assistant" else "user"
            text = message.content
            if message.role == "system":
                text = f"[System note] {text}"
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].append({"text": text})
            else:
                contents.append({"role": role, "parts": [{"text": text}]})

        payload = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.get("temperature", self.temperature),
                "maxOutputTokens": options.get("max_tokens", self.max_tokens),
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            payload["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": clean_schema(tool.parameters),
                    }
                    for tool in tools
                ]
            }]
        return payload

    def _error_from_status(self, status: int, body: str, headers=None) -> BackendError:
        """Gemini reports key problems as HTTP 400, so match on the error text too."""
        text = body or ""
        if "API_KEY" in text or "UNAUTHENTICATED" in text or status in (401, 403):
            return AuthError(self.backend_id, f"Authentication failed (HTTP {status})", status=status)
        if "RESOURCE_EXHAUSTED" in text or status == 429:
            return RateLimitError(self.backend_id, retry_after=60.0)
        if "UNAVAILABLE" in text or status == 503:
            return UnavailableError(self.backend_id, f"Service unavailable (HTTP {status})", status=status)
        return super()._error_from_status(status, body, headers)

    def _parse_response(self, data: dict) -> GenerationResult:
        content, tool_calls, finish = self._parse_candidate(data, start=0)
        usage = data.get("usageMetadata") or {}
        return GenerationResult(
            content=content,
            tool_calls=tool_calls,
            finish_reason="tool_use" if tool_calls else FINISH_REASONS.get(finish, "stop"),
            usage=Usage(
                input_tokens=int(usage.get("promptTokenCount", 0) or 0),
                output_tokens=int(usage.get("candidatesTokenCount", 0) or 0),
            ),
            backend_id=self.backend_id,
            model=data.get("modelVersion", self.model),
        )

    @staticmethod
    def _parse_candidate(data: dict, start: int) -> tuple[str, list[ToolCall], str | None]:
        candidates = data.get("candidates") or [{}]
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []

        text_parts = []
        tool_calls = []
        for part in parts:
            if "text" in part:
                text_parts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=f"call_{start + len(tool_calls)}",
                    name=call.get("name", ""),
                    arguments=parse_tool_arguments(call.get("args")),
                ))
        return "".join(text_parts), tool_calls, candidate.get("finishReason")

    async def _stream_request(self, payload: dict) -> AsyncIterator[StreamChunk]:
        usage = Usage()
        finish = None
        call_count = 0

        async for line in self._iter_lines(self._endpoint(stream=True), payload):
            raw = self._sse_data(line)
            if not raw:
                continue
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                continue

            text, tool_calls, chunk_finish = self._parse_candidate(event, start=call_count)
            if text:
                yield StreamChunk(type=ChunkType.TEXT, content=text)
            for call in tool_calls:
                call_count += 1
                yield StreamChunk(type=ChunkType.TOOL_CALL_START, tool_call=call)
                yield StreamChunk(type=ChunkType.TOOL_CALL_END, tool_call=call)
            if chunk_finish:
                finish = chunk_finish

            meta = event.get("usageMetadata") or {}
            if meta:
                usage.input_tokens = int(meta.get("promptTokenCount", 0) or 0)
                usage.output_tokens = int(meta.get("candidatesTokenCount", 0) or 0)

        finish_reason = "tool_use" if call_count else FINISH_REASONS.get(finish, "stop")
        yield StreamChunk(type=ChunkType.DONE, finish_reason=finish_reason, usage=usage)
