"""Tiered router for sending cheap turns to a local backend."""

from __future__ import annotations

import logging
import threading
from typing import AsyncIterator

from agent.config import TieringConfig
from agent.exceptions import BackendError
from agent.response import (
    ChunkType,
    ComplexityResult,
    GenerationResult,
    Message,
    StreamChunk,
    ToolDefinition,
)
from providers.base import Backend
from providers.complexity import ComplexityClassifier
from providers.selector import BackendSelector


# USD per 1K tokens, used only to estimate what local turns saved
PROVIDER_COSTS = {
    "anthropic": 0.015,
    "openai": 0.01,
    "gemini": 0.00025,
    "ollama": 0.0,
}
DEFAULT_CLOUD_COST = 0.01

LOCAL = "local"
CLOUD = "cloud"


class TieredRouter:
    """Route each turn to the local tier or to the cloud fallback chain."""

    def __init__(
        self,
        selector: BackendSelector,
        config: TieringConfig | None = None,
        local_backend: Backend | None = None,
        classifier: ComplexityClassifier | None = None,
        logger: logging.Logger | None = None,
        cloud_backend: Backend | None = None,
    ):
        self.config = config or TieringConfig()
        self._selector = selector
        self._local = local_backend
        self._cloud = cloud_backend or self._find_cloud_backend()
        self._classifier = classifier or ComplexityClassifier(
            self.config.simple_threshold, self.config.complex_threshold
        )
        self._logger = logger or logging.getLogger("tiered_agents.router")
        self._local_available: bool | None = None
        self._lock = threading.Lock()
        self._stats = self._empty_stats()
        self.last_tier: str | None = None
        self.last_backend: Backend | None = None
        self.last_complexity: ComplexityResult | None = None

    @property
    def selector(self) -> BackendSelector:
        return self._selector

    @property
    def cloud_backend(self) -> Backend | None:
        """Configured cloud provider, tried before the fallback chain."""
        return self._cloud

    def _find_cloud_backend(self) -> Backend | None:
        if not self.config.cloud_provider:
            return None
        for backend in self._selector.backends:
            if backend.backend_id == self.config.cloud_provider and not backend.is_local:
                return backend
        return None

    async def initialize(self) -> None:
        """Probe the local backend once for this session."""
        if not self.is_tiering_enabled():
            self._local_available = False
            return
        self._local_available = await self._local.is_available()
        self._logger.info(
            "Local backend %s reachable: %s", self._local.backend_id, self._local_available
        )

    def set_local_available(self, available: bool) -> None:
        self._local_available = available

    def is_tiering_enabled(self) -> bool:
        return self.config.enabled and self._local is not None

    def cloud_backend_id(self) -> str:
        """Backend id whose price is used for the savings estimate."""
        if self.config.cloud_provider:
            return self.config.cloud_provider
        for backend in self._selector.backends:
            if not backend.is_local:
                return backend.backend_id
        return "gemini"

    # ── Routing decision ─────────────────────────────────────────────

    def select_tier(self, text: str, has_tools: bool) -> tuple[str, ComplexityResult]:
        complexity = self._classifier.classify(text)

        if has_tools:
            return CLOUD, complexity
        if not self.is_tiering_enabled():
            return CLOUD, complexity
        if self.config.always_use_cloud:
            return CLOUD, complexity
        if not self._local_available:
            return CLOUD, complexity
        if self.config.always_use_local:
            return LOCAL, complexity
        if complexity.prefer_local:
            return LOCAL, complexity
        return CLOUD, complexity

    # ── Generation ───────────────────────────────────────────────────

    async def generate(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> GenerationResult:
        tier, complexity = self._route(messages, tools)

        for backend_tier, backend, backend_tools in self._direct_candidates(tier, tools):
            try:
                result = await backend.generate(messages, system_prompt, backend_tools, options)
            except BackendError as e:
                self._on_direct_failure(backend_tier, backend, e)
                continue
            self.last_backend = backend
            self._record(backend_tier, complexity, result.usage.total_tokens)
            return result

        result = await self._selector.generate(messages, system_prompt, tools, options)
        self.last_backend = self._selector.current_backend
        self._record(CLOUD, complexity, result.usage.total_tokens)
        return result

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        tier, complexity = self._route(messages, tools)

        for backend_tier, backend, backend_tools in self._direct_candidates(tier, tools):
            yielded = False
            text = []
            tokens = 0
            try:
                async for chunk in backend.stream(messages, system_prompt, backend_tools, options):
                    yielded = True
                    if chunk.type == ChunkType.TEXT:
                        text.append(chunk.content)
                    if chunk.type == ChunkType.DONE and chunk.usage is not None:
                        tokens = chunk.usage.total_tokens
                    yield chunk
            except BackendError as e:
                if yielded:
                    raise
                self._on_direct_failure(backend_tier, backend, e)
                continue
            if not tokens:
                tokens = backend.count_tokens("".join(text))
            self.last_backend = backend
            self._record(backend_tier, complexity, tokens)
            return

        tokens = 0
        async for chunk in self._selector.stream(messages, system_prompt, tools, options):
            if chunk.type == ChunkType.DONE and chunk.usage is not None:
                tokens = chunk.usage.total_tokens
            yield chunk
        self.last_backend = self._selector.current_backend
        self._record(CLOUD, complexity, tokens)

    def _direct_candidates(
        self, tier: str, tools: list[ToolDefinition] | None
    ) -> list[tuple[str, Backend, list[ToolDefinition] | None]]:
        """Backends tried before the fallback chain, in order."""
        candidates = []
        if tier == LOCAL:
            candidates.append((LOCAL, self._local, None))
        if self._cloud is not None:
            candidates.append((CLOUD, self._cloud, tools))
        return candidates

    def _on_direct_failure(self, tier: str, backend: Backend, error: BackendError) -> None:
        if tier == LOCAL:
            self._logger.warning("Local tier failed, routing turn to cloud: %s", error)
            self.last_tier = CLOUD
        else:
            self._logger.warning(
                "Cloud provider %s failed, using fallback chain: %s", backend.backend_id, error
            )

    def _route(self, messages: list[Message], tools: list[ToolDefinition] | None) -> tuple[str, ComplexityResult]:
        text = self._last_user_message(messages)
        tier, complexity = self.select_tier(text, bool(tools))
        self.last_tier = tier
        self.last_complexity = complexity
        self._logger.info("Routing to %s tier: %s (score %d)", tier, complexity.reason, complexity.score)
        return tier, complexity

    @staticmethod
    def _last_user_message(messages: list[Message]) -> str:
        for message in reversed(messages):
            if message.role == "user":
                return message.content
        return ""

    # ── Usage accounting ─────────────────────────────────────────────

    @staticmethod
    def _empty_stats() -> dict:
        return {
            "total_requests": 0,
            "local_requests": 0,
            "cloud_requests": 0,
            "estimated_savings": 0.0,
            "by_complexity": {"simple": 0, "moderate": 0, "complex": 0},
        }

    def _record(self, tier: str, complexity: ComplexityResult | None, tokens: int) -> None:
        with self._lock:
            self._stats["total_requests"] += 1
            if complexity is not None:
                self._stats["by_complexity"][complexity.level] += 1
            if tier == LOCAL:
                self._stats["local_requests"] += 1
                cost = PROVIDER_COSTS.get(self.cloud_backend_id(), DEFAULT_CLOUD_COST)
                self._stats["estimated_savings"] += max(tokens, 0) / 1000 * cost
            else:
                self._stats["cloud_requests"] += 1

    def stats(self) -> dict:
        with self._lock:
            snapshot = dict(self._stats)
            snapshot["by_complexity"] = dict(self._stats["by_complexity"])
        return snapshot

    def local_ratio(self) -> float:
        with self._lock:
            total = self._stats["total_requests"]
            return self._stats["local_requests"] / total if total else 0.0

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = self._empty_stats()

    def savings_summary(self) -> str:
        stats = self.stats()
        ratio = self.local_ratio()
        return (
            f"{stats['local_requests']}/{stats['total_requests']} requests served locally "
            f"({ratio:.0%}), estimated savings ${stats['estimated_savings']:.4f}"
        )
