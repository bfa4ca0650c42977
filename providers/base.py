"""Backend - shared contract and HTTP plumbing for text-generation backends."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import aiohttp

from agent.config import ProviderConfig, RetrySettings
from agent.exceptions import (
    AuthError,
    BackendError,
    RateLimitError,
    UnavailableError,
)
from agent.response import GenerationResult, Message, StreamChunk, ToolDefinition


T = TypeVar("T")

DEFAULT_CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Character-ratio token estimate, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def parse_tool_arguments(raw: object) -> dict:
    """Decode tool-call arguments that may arrive as a JSON string."""
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return value if isinstance(value, dict) else {"value": value}
    return {"value": raw}


class Backend(ABC):
    """Async adapter for one vendor's generation API."""

    backend_id: str = ""
    is_local: bool = False
    chars_per_token: float = DEFAULT_CHARS_PER_TOKEN
    default_context_window: int = 8192
    context_windows: dict[str, int] = {}

    def __init__(
        self,
        config: ProviderConfig,
        retry: RetrySettings | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.model = config.model
        self.base_url = config.base_url.rstrip("/")
        self.api_key = config.api_key
        self.retry = retry or RetrySettings()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._logger = logger or logging.getLogger(f"tiered_agents.providers.{self.backend_id}")

    # ── Contract ─────────────────────────────────────────────────────

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> GenerationResult:
        """Send one request and return the normalized result."""
        payload = self._build_request(messages, system_prompt, tools, options or {}, stream=False)

        async def _request() -> dict:
            return await self._post_json(self._endpoint(stream=False), payload)

        data = await self._with_retry("generate", _request)
        return self._parse_response(data)

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream typed chunks. Retries only until the first chunk was yielded;
        after that a failure propagates to the caller.
        """
        payload = self._build_request(messages, system_prompt, tools, options or {}, stream=True)

        attempt = 0
        delay = self.retry.base_delay
        while True:
            received_any = False
            try:
                async for chunk in self._stream_request(payload):
                    received_any = True
                    yield chunk
                return
            except BackendError as e:
                attempt += 1
                if received_any or not e.retryable or attempt >= self.retry.max_retries:
                    raise
                wait = self._retry_wait(e, delay)
                self._logger.warning(
                    "%s stream attempt %d failed, retrying in %.1fs: %s",
                    self.backend_id, attempt, wait, e,
                )
                await asyncio.sleep(wait)
                delay = min(delay * 2, self.retry.max_delay)

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability probe. Never raises."""
        ...

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text, self.chars_per_token)

    def context_window_size(self) -> int:
        """Context window for the configured model, matching tagged names by prefix."""
        if self.model in self.context_windows:
            return self.context_windows[self.model]
        for name in sorted(self.context_windows, key=len, reverse=True):
            if self.model.startswith(name):
                return self.context_windows[name]
        return self.default_context_window

    # ── Vendor hooks ─────────────────────────────────────────────────

    @abstractmethod
    def _endpoint(self, stream: bool) -> str:
        ...

    @abstractmethod
    def _build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        options: dict,
        stream: bool,
    ) -> dict:
        ...

    @abstractmethod
    def _parse_response(self, data: dict) -> GenerationResult:
        ...

    @abstractmethod
    def _stream_request(self, payload: dict) -> AsyncIterator[StreamChunk]:
        ...

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    # ── HTTP plumbing ────────────────────────────────────────────────

    def _timeout(self) -> aiohttp.ClientTimeout:
        """Build a client timeout configuration from settings."""
        return aiohttp.ClientTimeout(
            total=None,
            connect=self.retry.connect_timeout,
            sock_connect=self.retry.connect_timeout,
            sock_read=self.retry.read_timeout,
        )

    async def _post_json(self, url: str, payload: dict) -> dict:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, json=payload, headers=self._headers()) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise self._error_from_status(resp.status, body, resp.headers)
                    return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UnavailableError(self.backend_id, f"Connection failed: {e}", status=None) from e

    async def _probe(self, url: str, headers: dict[str, str] | None = None) -> int | None:
        """GET a URL once and return the status, or None when unreachable."""
        timeout = aiohttp.ClientTimeout(total=self.retry.connect_timeout * 2, connect=self.retry.connect_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=headers or self._headers()) as resp:
                    return resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.info("%s probe failed: %s", self.backend_id, e)
            return None

    async def _iter_lines(self, url: str, payload: dict) -> AsyncIterator[str]:
        """POST and yield non-empty decoded response lines."""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, json=payload, headers=self._headers()) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise self._error_from_status(resp.status, body, resp.headers)
                    async for raw in resp.content:
                        line = raw.decode("utf-8", errors="replace").strip()
                        if line:
                            yield line
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UnavailableError(self.backend_id, f"Connection failed: {e}", status=None) from e

    @staticmethod
    def _sse_data(line: str) -> str | None:
        """Return the payload of an SSE ``data:`` line, else None."""
        if not line.startswith("data:"):
            return None
        return line[len("data:"):].strip()

    def _error_from_status(self, status: int, body: str, headers=None) -> BackendError:
        """Map an HTTP failure onto the backend error taxonomy."""
        detail = body[:500] if body else f"HTTP {status}"
        if status in (401, 403):
            return AuthError(self.backend_id, f"Authentication failed (HTTP {status}): {detail}", status=status)
        if status == 429:
            retry_after = 60.0
            value = (headers or {}).get("retry-after") if headers is not None else None
            if value:
                try:
                    retry_after = float(value)
                except (TypeError, ValueError):
                    pass
            return RateLimitError(self.backend_id, retry_after=retry_after)
        if status >= 500:
            return UnavailableError(self.backend_id, f"Server error (HTTP {status}): {detail}", status=status)
        return BackendError(self.backend_id, f"Request failed (HTTP {status}): {detail}", status=status, retryable=False)

    def _retry_wait(self, error: BackendError, delay: float) -> float:
        if isinstance(error, RateLimitError):
            return min(error.retry_after, self.retry.max_delay)
        return min(delay, self.retry.max_delay)

    async def _with_retry(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run an async operation with exponential backoff retries."""
        delay = self.retry.base_delay
        for attempt in range(1, self.retry.max_retries + 1):
            try:
                return await func()
            except BackendError as e:
                if not e.retryable or attempt >= self.retry.max_retries:
                    raise
                wait = self._retry_wait(e, delay)
                self._logger.warning(
                    "%s %s attempt %d/%d failed, retrying in %.1fs: %s",
                    self.backend_id, operation, attempt, self.retry.max_retries, wait, e,
                )
                await asyncio.sleep(wait)
                delay = min(delay * 2, self.retry.max_delay)
        raise UnavailableError(self.backend_id, f"{operation} failed")
