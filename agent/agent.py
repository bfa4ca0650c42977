"""Agent class - the Think -> Execute -> Observe loop."""

from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import AsyncIterator

from agent.approval import ApprovalGate
from agent.context_manager import ContextManager
from agent.exceptions import ApprovalDeniedError, ApprovalRequiredError, ToolError
from agent.response import (
    AgentExecutionResult,
    ChunkType,
    GenerationResult,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    ToolResult,
    Usage,
)
from tools.tool_registry import ToolHandler, ToolRegistry


MAX_ITERATIONS_MESSAGE = (
    "I apologize, but I was unable to complete the task within the allowed iterations."
)


class LoopState(str, Enum):
    THINKING = "thinking"
    EXECUTING = "executing"
    OBSERVING = "observing"
    DONE = "done"


class Agent:
    """
    One agent bound to one conversation.

    Every collaborator is passed in by the owning session, so two agents
    never share history, routing state or approval settings. Tool calls in a
    batch run strictly one after another; a denial or failure becomes that
    call's ``ToolResult.error`` and never stops its siblings.
    """

    def __init__(
        self,
        router,
        context: ContextManager,
        gate: ApprovalGate,
        registry: ToolRegistry,
        name: str = "agent",
        max_iterations: int = 10,
        telemetry=None,
        logger: logging.Logger | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.name = name
        self.router = router
        self.context_manager = context
        self.gate = gate
        self.registry = registry
        self.max_iterations = max_iterations
        self.telemetry = telemetry
        self.state = LoopState.DONE
        self._logger = logger or logging.getLogger(f"tiered_agents.agent.{id(self)}")

    # ── Public API ───────────────────────────────────────────────────

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        self.registry.register(definition, handler)

    def tool_definitions(self) -> list[ToolDefinition]:
        return self.registry.definitions()

    def set_memory(self, memory: str) -> None:
        self.context_manager.set_memory(memory)

    def clear_history(self) -> None:
        self.context_manager.clear_messages()
        self._logger.info("%s history cleared", self.name)

    def context(self) -> dict:
        return {
            "messages": self.context_manager.messages(),
            "system_prompt": self.context_manager.full_system_prompt(),
            "tools": self.tool_definitions(),
        }

    async def run(self, user_message: str) -> GenerationResult:
        result = await self.execute(user_message)
        return result.response

    async def execute(self, user_message: str) -> AgentExecutionResult:
        """Run one turn to completion."""
        self.context_manager.add_message("user", user_message)
        self._logger.info("%s executing turn (%d chars)", self.name, len(user_message))

        iteration = 0
        all_results: list[ToolResult] = []
        response: GenerationResult | None = None
        results: list[ToolResult] = []
        self.state = LoopState.THINKING

        while self.state != LoopState.DONE:
            if self.state == LoopState.THINKING:
                if iteration >= self.max_iterations:
                    return self._max_iterations_result(iteration, all_results, response)
                started = time.monotonic()
                response = await self._think()
                if not response.tool_calls:
                    self.context_manager.add_message("assistant", response.content)
                    iteration += 1
                    self._record_iteration(iteration, "stop", started)
                    self.state = LoopState.DONE
                else:
                    self.state = LoopState.EXECUTING

            elif self.state == LoopState.EXECUTING:
                results = await self._execute_tool_calls(response.tool_calls)
                all_results.extend(results)
                self.state = LoopState.OBSERVING

            elif self.state == LoopState.OBSERVING:
                self._observe(response.content, response.tool_calls, results)
                iteration += 1
                self._record_iteration(
                    iteration, "tools:" + ",".join(c.name for c in response.tool_calls), started
                )
                self.state = LoopState.THINKING

        if self.telemetry is not None:
            self.telemetry.finalize(response.finish_reason)
        return AgentExecutionResult(
            final_content=response.content,
            response=response,
            tool_results=all_results,
            iterations=iteration,
            history=self.context_manager.messages(),
        )

    async def run_stream(self, user_message: str) -> AsyncIterator[StreamChunk]:
        """
        Streaming variant of ``execute``. Backend chunks are passed through
        as they arrive, tool outcomes follow as ``tool_result`` chunks, and a
        single ``done`` chunk closes the turn.
        """
        self.context_manager.add_message("user", user_message)
        self._logger.info("%s streaming turn (%d chars)", self.name, len(user_message))

        iteration = 0
        self.state = LoopState.THINKING
        while iteration < self.max_iterations:
            started = time.monotonic()
            messages = self.context_manager.optimized_messages()
            system_prompt = self.context_manager.full_system_prompt()
            tools = self.tool_definitions() or None

            text: list[str] = []
            tool_calls: list[ToolCall] = []
            finish_reason = "stop"
            usage = Usage()
            async for chunk in self.router.stream(messages, system_prompt, tools):
                if chunk.type == ChunkType.DONE:
                    finish_reason = chunk.finish_reason or finish_reason
                    usage = chunk.usage or usage
                    continue
                if chunk.type == ChunkType.TEXT:
                    text.append(chunk.content)
                elif chunk.type == ChunkType.TOOL_CALL_END and chunk.tool_call is not None:
                    tool_calls.append(chunk.tool_call)
                yield chunk

            content = "".join(text)
            backend = getattr(self.router, "last_backend", None)
            self._record_llm_call(
                usage, started, getattr(self.router, "last_tier", None),
                backend_id=getattr(backend, "backend_id", ""), model=getattr(backend, "model", ""),
            )

            if not tool_calls:
                self.context_manager.add_message("assistant", content)
                iteration += 1
                self._record_iteration(iteration, "stop", started)
                self.state = LoopState.DONE
                if self.telemetry is not None:
                    self.telemetry.finalize(finish_reason)
                yield StreamChunk(type=ChunkType.DONE, content=content, finish_reason=finish_reason, usage=usage)
                return

            self.state = LoopState.EXECUTING
            results = await self._execute_tool_calls(tool_calls)
            for result in results:
                yield StreamChunk(type=ChunkType.TOOL_RESULT, tool_result=result)

            self.state = LoopState.OBSERVING
            self._observe(content, tool_calls, results)
            iteration += 1
            self._record_iteration(iteration, "tools:" + ",".join(c.name for c in tool_calls), started)
            self.state = LoopState.THINKING

        self._logger.warning("%s reached max iterations (%d)", self.name, self.max_iterations)
        self.state = LoopState.DONE
        if self.telemetry is not None:
            self.telemetry.finalize("max_iterations")
        yield StreamChunk(type=ChunkType.DONE, content=MAX_ITERATIONS_MESSAGE, finish_reason="stop")

    # ── Loop phases ──────────────────────────────────────────────────

    async def _think(self) -> GenerationResult:
        messages = self.context_manager.optimized_messages()
        system_prompt = self.context_manager.full_system_prompt()
        tools = self.tool_definitions() or None

        started = time.monotonic()
        response = await self.router.generate(messages, system_prompt, tools)
        self._record_llm_call(
            response.usage, started, getattr(self.router, "last_tier", None),
            backend_id=response.backend_id, model=response.model,
        )
        self._logger.info(
            "%s thought via %s: %d tool call(s), %d tokens",
            self.name, response.backend_id or "?", len(response.tool_calls), response.usage.total_tokens,
        )
        return response

    async def _execute_tool_calls(self, calls: list[ToolCall]) -> list[ToolResult]:
        results = []
        for call in calls:
            started = time.monotonic()
            result = await self._execute_one(call)
            results.append(result)
            if self.telemetry is not None:
                self.telemetry.record_tool_call(
                    tool_name=call.name,
                    args=call.arguments,
                    duration_ms=(time.monotonic() - started) * 1000,
                    result_summary=_summarize(result),
                    error=result.error,
                )
        return results

    async def _execute_one(self, call: ToolCall) -> ToolResult:
        definition = self.registry.get_definition(call.name)
        if definition is None:
            self._logger.warning("%s requested unknown tool %s", self.name, call.name)
            return ToolResult(tool_call_id=call.id, error=f"Tool not found: {call.name}")

        try:
            await self.gate.check(call, definition)
        except ApprovalDeniedError as e:
            outcome = "withdrawn" if e.withdrawn else "denied"
            return ToolResult(tool_call_id=call.id, error=outcome, reason=e.reason)
        except ApprovalRequiredError as e:
            return ToolResult(tool_call_id=call.id, error="denied", reason=str(e))

        try:
            value = await self.registry.execute(call)
        except ToolError as e:
            self._logger.warning("Tool %s failed: %s", call.name, e)
            return ToolResult(tool_call_id=call.id, error=str(e))
        return ToolResult(tool_call_id=call.id, result=value)

    def _observe(self, content: str, calls: list[ToolCall], results: list[ToolResult]) -> None:
        summary = " ".join(f"[Calling {call.name}]" for call in calls)
        self.context_manager.add_message("assistant", f"{content}\n{summary}" if content else summary)

        names = {call.id: call.name for call in calls}
        for result in results:
            name = names.get(result.tool_call_id, "unknown")
            if result.error is not None:
                error = f"{result.error} ({result.reason})" if result.reason else result.error
                text = f"[Tool {name} error: {error}]"
            else:
                text = f"[Tool {name} result: {json.dumps(result.result, default=str)}]"
            self.context_manager.add_message("user", text)

    def _max_iterations_result(
        self,
        iteration: int,
        all_results: list[ToolResult],
        last: GenerationResult | None,
    ) -> AgentExecutionResult:
        self._logger.warning("%s reached max iterations (%d)", self.name, self.max_iterations)
        self.state = LoopState.DONE
        response = GenerationResult(
            content=MAX_ITERATIONS_MESSAGE,
            finish_reason="stop",
            backend_id=last.backend_id if last else "",
            model=last.model if last else "",
        )
        if self.telemetry is not None:
            self.telemetry.finalize("max_iterations")
        return AgentExecutionResult(
            final_content=MAX_ITERATIONS_MESSAGE,
            response=response,
            tool_results=all_results,
            iterations=iteration,
            history=self.context_manager.messages(),
        )

    # ── Telemetry ────────────────────────────────────────────────────

    def _record_llm_call(
        self,
        usage: Usage,
        started: float,
        tier: str | None,
        backend_id: str = "",
        model: str = "",
    ) -> None:
        if self.telemetry is None:
            return
        self.telemetry.record_llm_call(
            backend_id=backend_id,
            model=model,
            tier=tier or "cloud",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    def _record_iteration(self, iteration: int, decision: str, started: float) -> None:
        if self.telemetry is None:
            return
        self.telemetry.record_iteration(
            iteration=iteration,
            decision=decision,
            duration_ms=(time.monotonic() - started) * 1000,
        )


def _summarize(result: ToolResult, limit: int = 200) -> str:
    if result.error is not None:
        return f"error: {result.error}"
    text = json.dumps(result.result, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
