"""Build backend adapters from configuration."""

from __future__ import annotations

import logging

from agent.config import AgentConfig
from providers.anthropic import AnthropicBackend
from providers.base import Backend
from providers.gemini import GeminiBackend
from providers.ollama import OllamaBackend
from providers.openai import OpenAIBackend


BACKEND_CLASSES: dict[str, type[Backend]] = {
    "anthropic": AnthropicBackend,
    "openai": OpenAIBackend,
    "gemini": GeminiBackend,
    "ollama": OllamaBackend,
}


def build_backends(config: AgentConfig, logger: logging.Logger | None = None) -> dict[str, Backend]:
    """
    Construct one adapter per backend id the session can reach: everything
    in the priority list plus the tiering local/cloud backends.
    """
    wanted = list(config.provider_priority)
    if config.tiering.enabled:
        for backend_id in (config.tiering.local_provider, config.tiering.cloud_provider):
            if backend_id and backend_id not in wanted:
                wanted.append(backend_id)

    backends: dict[str, Backend] = {}
    for backend_id in wanted:
        cls = BACKEND_CLASSES[backend_id]
        backends[backend_id] = cls(
            config.providers[backend_id],
            retry=config.retry,
            max_tokens=config.agent.max_response_tokens,
            temperature=config.agent.temperature,
            logger=logger,
        )
    return backends
