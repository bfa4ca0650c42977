"""Tool registration, discovery and dispatch."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
from typing import Any, Callable

from pydantic import ValidationError

from agent.exceptions import ToolError, ToolExecutionError, ToolNotFoundError
from agent.response import TOOL_CATEGORIES, ToolCall, ToolDefinition
from tools.base_tool import Tool


ToolHandler = Callable[[Any], Any]


class ToolRegistry:
    """
    Holds the tools one agent may call. Definitions are validated when they
    are registered; arguments are validated into the tool's pydantic model
    (or passed as a plain dict for tools without one) at call time.
    """

    def __init__(self, policy=None, default_timeout: float | None = None, logger: logging.Logger | None = None):
        self._policy = policy
        self.default_timeout = default_timeout
        self._tools: dict[str, tuple[ToolDefinition, ToolHandler]] = {}
        self._logger = logger or logging.getLogger("tiered_agents.tools")

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        if not definition.name or not definition.name.strip():
            raise ValueError("Tool name must be a non-empty string")
        if definition.name in self._tools:
            raise ValueError(f"Tool '{definition.name}' is already registered")
        if definition.category not in TOOL_CATEGORIES:
            raise ValueError(
                f"Tool '{definition.name}' has unknown category '{definition.category}'"
            )
        if not callable(handler):
            raise TypeError(f"Handler for tool '{definition.name}' is not callable")
        if definition.params_model is not None:
            definition.parameters = definition.params_model.model_json_schema()

        self._tools[definition.name] = (definition, handler)
        if self._policy is not None and self._policy.get_permission(definition.name) is None:
            self._policy.register_definition(definition)

    def register_tool(self, tool: Tool) -> None:
        self.register(tool.definition(), tool.execute)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def discover_tools(self, tools_dir: str | None = None, config=None) -> list[str]:
        """Scan the tools/ directory and register every concrete Tool subclass."""
        if tools_dir is None:
            tools_dir = os.path.dirname(os.path.abspath(__file__))

        found = []
        for filename in sorted(os.listdir(tools_dir)):
            if not filename.endswith(".py") or filename.startswith("_") or filename in (
                "base_tool.py", "tool_registry.py",
            ):
                continue

            module_name = f"tools.{filename[:-3]}"
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                self._logger.warning("Failed to load %s: %s", module_name, e)
                continue
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if (
                    issubclass(obj, Tool)
                    and obj is not Tool
                    and not inspect.isabstract(obj)
                    and obj.name
                    and obj.name not in self._tools
                ):
                    self.register_tool(obj(config))
                    found.append(obj.name)
        return found

    def get_definition(self, name: str) -> ToolDefinition | None:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def definitions(self) -> list[ToolDefinition]:
        return [self._tools[name][0] for name in sorted(self._tools)]

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, call: ToolCall) -> Any:
        """Validate arguments and run the handler, wrapping failures as tool errors."""
        entry = self._tools.get(call.name)
        if entry is None:
            raise ToolNotFoundError(call.name)
        definition, handler = entry

        if definition.params_model is not None:
            try:
                params = definition.params_model.model_validate(call.arguments)
            except ValidationError as e:
                raise ToolExecutionError(call.name, f"Invalid arguments for {call.name}: {e}") from e
        else:
            params = dict(call.arguments)

        try:
            result = handler(params)
            if inspect.isawaitable(result):
                if self.default_timeout:
                    result = await asyncio.wait_for(result, timeout=self.default_timeout)
                else:
                    result = await result
        except ToolError:
            raise
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(
                call.name, f"Tool '{call.name}' timed out after {self.default_timeout}s"
            ) from e
        except Exception as e:
            raise ToolExecutionError(call.name, str(e) or e.__class__.__name__) from e
        return result
