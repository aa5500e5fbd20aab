"""Tool interface for functions the model may call."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

EMPTY_SCHEMA: dict = {"type": "object", "properties": {}, "required": []}


def normalize_schema(schema: dict | None) -> dict:
    """
    Fill in the parts of an argument schema that vendors insist on.

    Every dialect expects an ``object`` schema with ``properties`` and
    ``required`` present, even when empty.
    """
    s = dict(schema or EMPTY_SCHEMA)
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    s.setdefault("required", [])
    return s


class Tool(ABC):
    """
    A callable the orchestrator can expose to the model.

    ``execute`` receives the validated arguments as keyword arguments and
    may return anything; the executor normalises the value into a
    ``ToolResult``.  Raise ``ToolExecutionError`` to fail with an explicit
    error code.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @property
    def wants_auth(self) -> bool:
        """When true, the caller's auth token is passed as ``auth_token=``."""
        return False

    @abstractmethod
    async def execute(self, **kwargs) -> Any: ...

    def prompt_line(self) -> str:
        required = normalize_schema(self.parameters)["required"]
        args = f" (requires: {', '.join(required)})" if required else ""
        return f"- **{self.name}**: {self.description}{args}"

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }
