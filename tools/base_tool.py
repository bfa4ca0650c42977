"""Abstract base class for built-in tools."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from agent.response import ToolDefinition


GENERIC_PARAMETERS = {"type": "object", "properties": {}, "additionalProperties": True}


class Tool(ABC):
    """Base class for agent tools. Subclass this and set ``Params`` to a pydantic model."""

    name: str = ""
    description: str = ""
    category: str = "general"
    dangerous: bool = False
    Params: type[BaseModel] | None = None

    def __init__(self, config=None):
        self.config = config

    @abstractmethod
    async def execute(self, params: Any) -> Any:
        """Run the tool with validated parameters and return a JSON-friendly value."""
        ...

    def definition(self) -> ToolDefinition:
        if self.Params is not None:
            parameters = self.Params.model_json_schema()
        else:
            parameters = dict(GENERIC_PARAMETERS)
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=parameters,
            category=self.category,
            dangerous=self.dangerous,
            params_model=self.Params,
        )
