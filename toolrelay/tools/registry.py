from __future__ import annotations

import logging
from typing import Iterable, Iterator

from toolrelay.tools.base import Tool
from toolrelay.tools.validation import check_schema

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Named tools offered to the model.

    Argument schemas are checked when a tool is registered so that a broken
    schema fails at startup rather than on the first call.
    """

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if not tool.name or not tool.name.replace("_", "").replace("-", "").isalnum():
            raise ValueError(f"Invalid tool name: {tool.name!r}")
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        problem = check_schema(tool.parameters)
        if problem:
            raise ValueError(f"Tool {tool.name}: invalid parameter schema: {problem}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise KeyError(name)
        return t

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def names(self) -> list[str]:
        return [t.name for t in self.list()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.list())

    def __len__(self) -> int:
        return len(self._tools)

    def to_openai_schema(self, only: Iterable[str] | None = None) -> list[dict]:
        """OpenAI ``tools`` array, optionally restricted to the names in *only*."""
        wanted = set(only) if only is not None else None
        return [
            t.to_openai_schema()
            for t in self.list()
            if wanted is None or t.name in wanted
        ]
