"""BackendSelector - priority-ordered fallback chain over backend adapters."""

from __future__ import annotations

import logging
from typing import AsyncIterator

from agent.exceptions import BackendError, NoBackendsAvailableError
from agent.response import GenerationResult, Message, StreamChunk, ToolDefinition
from providers.base import Backend


class BackendSelector:
    """
    Holds the priority list for one session. The first adapter whose probe
    succeeds becomes current and stays current until it fails at runtime;
    fallback only ever moves forward through the list.
    """

    def __init__(self, backends: list[Backend], logger: logging.Logger | None = None):
        if not backends:
            raise ValueError("BackendSelector needs at least one backend")
        self._backends = list(backends)
        self._current: Backend | None = None
        self._current_index = -1
        self._attempted: list[str] = []
        self._logger = logger or logging.getLogger("tiered_agents.selector")

    @property
    def backends(self) -> list[Backend]:
        return list(self._backends)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_backend(self) -> Backend | None:
        return self._current

    @property
    def current_backend_id(self) -> str | None:
        return self._current.backend_id if self._current else None

    @property
    def is_using_fallback(self) -> bool:
        return self._current_index > 0

    async def current(self) -> Backend:
        """Return the cached backend, resolving it with a first scan if needed."""
        if self._current is not None:
            return self._current
        if self._current_index >= len(self._backends):
            raise NoBackendsAvailableError(self._attempted)

        found = await self._scan_from(0)
        if found is None:
            raise NoBackendsAvailableError(self._attempted)
        return found

    async def fallback_to_next(self) -> Backend | None:
        """
        Resume scanning strictly after the current index. Returns the new
        current backend, or None when nothing later in the list is available.
        """
        previous = self.current_backend_id
        found = await self._scan_from(self._current_index + 1)
        if found is None:
            self._logger.error("No fallback available after %s", previous)
            self._current = None
            self._current_index = len(self._backends)
            return None
        self._logger.warning("Falling back from %s to %s", previous, found.backend_id)
        return found

    def reset(self) -> None:
        """Forget the cached backend so the next call rescans from the top."""
        self._current = None
        self._current_index = -1
        self._attempted = []

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> GenerationResult:
        backend = await self.current()
        while True:
            try:
                return await backend.generate(messages, system_prompt, tools, options)
            except BackendError as e:
                self._logger.warning("%s failed: %s", backend.backend_id, e)
                backend = await self._next_or_raise(e)

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        backend = await self.current()
        while True:
            yielded = False
            try:
                async for chunk in backend.stream(messages, system_prompt, tools, options):
                    yielded = True
                    yield chunk
                return
            except BackendError as e:
                if yielded:
                    raise
                self._logger.warning("%s stream failed: %s", backend.backend_id, e)
                backend = await self._next_or_raise(e)

    async def _next_or_raise(self, error: BackendError) -> Backend:
        nxt = await self.fallback_to_next()
        if nxt is None:
            raise NoBackendsAvailableError(self._attempted) from error
        return nxt

    async def _scan_from(self, start: int) -> Backend | None:
        for index in range(start, len(self._backends)):
            backend = self._backends[index]
            if backend.backend_id not in self._attempted:
                self._attempted.append(backend.backend_id)
            if await backend.is_available():
                self._current = backend
                self._current_index = index
                self._logger.info("Selected backend %s (index %d)", backend.backend_id, index)
                return backend
            self._logger.info("Backend %s unavailable", backend.backend_id)
        return None
