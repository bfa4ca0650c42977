"""AgentContext - session container that wires one agent's collaborators."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from agent.agent import Agent
from agent.approval import ApprovalCallback, ApprovalGate
from agent.config import AgentConfig
from agent.context_manager import ContextManager
from agent.exceptions import NoBackendsAvailableError
from agent.logs import build_logger, release_logger
from agent.telemetry import Telemetry
from providers.base import Backend
from providers.factory import build_backends
from providers.router import TieredRouter
from providers.selector import BackendSelector
from security.policy import CapabilityPolicy
from tools.tool_registry import ToolRegistry


PROFILES = ("default", "code")


class AgentContext:
    """
    A conversational session. One per user interaction.

    Every collaborator (backends, selector, router, context manager, policy,
    approval gate, tool registry, telemetry) is built here once and handed
    to the agent by reference, so sessions never share mutable state.
    """

    def __init__(
        self,
        config: AgentConfig,
        session_id: str | None = None,
        backends: dict[str, Backend] | None = None,
        policy: CapabilityPolicy | None = None,
        approval_callback: ApprovalCallback | None = None,
        profile: str = "default",
        discover_tools: bool = True,
    ):
        if profile not in PROFILES:
            raise ValueError(f"Unknown profile '{profile}'")
        self.id: str = session_id or uuid.uuid4().hex[:12]
        self.config = config
        self.profile = profile
        self.data: dict = {}
        now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        self.data["session_created_at"] = now
        self.data["session_updated_at"] = now

        self._loggers: list[logging.Logger] = []
        self.logger = self._component_logger("agent")
        provider_logger = self._component_logger("providers")

        self.backends = backends if backends is not None else build_backends(config, provider_logger)
        chain = [self.backends[b] for b in config.provider_priority if b in self.backends]
        self.selector = BackendSelector(chain, self._component_logger("selector"))

        local = cloud = None
        if config.tiering.enabled:
            local = self.backends.get(config.tiering.local_provider)
            if config.tiering.cloud_provider:
                cloud = self.backends.get(config.tiering.cloud_provider)
        self.router = TieredRouter(
            self.selector,
            config.tiering,
            local_backend=local,
            logger=self._component_logger("router"),
            cloud_backend=cloud,
        )

        self.context_manager = ContextManager(
            max_context_tokens=config.agent.max_context_tokens,
            reserve_tokens_for_response=config.agent.max_response_tokens,
            system_prompt=config.agent.system_prompt,
            strict=config.agent.strict_context_budget,
            logger=self._component_logger("context"),
        )

        self.policy = policy or CapabilityPolicy(config.security, self._component_logger("security"))
        self.telemetry = Telemetry(config.telemetry, self.id)
        self.gate = ApprovalGate(
            self.policy,
            mode=config.tool_approval.mode,
            callback=approval_callback,
            logger=self._component_logger("approval"),
            telemetry=self.telemetry,
        )

        self.registry = ToolRegistry(policy=self.policy, logger=self.logger)
        if discover_tools:
            found = self.registry.discover_tools(config=config)
            self.logger.info("Session %s registered tools: %s", self.id, ", ".join(found) or "none")

        max_iterations = (
            config.agent.code_max_iterations if profile == "code" else config.agent.max_iterations
        )
        self.agent = Agent(
            self.router,
            self.context_manager,
            self.gate,
            self.registry,
            name=f"agent-{self.id}",
            max_iterations=max_iterations,
            telemetry=self.telemetry,
            logger=self.logger,
        )

    async def initialize(self) -> None:
        """Resolve the first reachable backend and probe the local tier."""
        try:
            backend = await self.selector.current()
        except NoBackendsAvailableError as e:
            self.logger.warning("Session %s: %s", self.id, e)
            self.selector.reset()
        else:
            self.context_manager.set_backend(backend)
            self.logger.info("Session %s using backend %s", self.id, backend.backend_id)
        await self.router.initialize()

    def touch(self) -> None:
        self.data["session_updated_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")

    def close(self) -> None:
        """Release this session's log file handles. Safe to call twice."""
        for logger in self._loggers:
            release_logger(logger)
        self._loggers = []

    def info(self) -> dict:
        return {
            "session_id": self.id,
            "profile": self.profile,
            "created_at": self.data["session_created_at"],
            "updated_at": self.data["session_updated_at"],
            "backend": self.selector.current_backend_id,
            "approval_mode": self.gate.mode,
            "tiering": self.router.is_tiering_enabled(),
            "messages": len(self.context_manager.messages()),
        }

    def _component_logger(self, name: str) -> logging.Logger:
        logger = build_logger(name, self.config.log_dir, self, self.config.log_level)
        self._loggers.append(logger)
        return logger

