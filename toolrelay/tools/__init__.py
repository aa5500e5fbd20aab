"""Tool definitions, registry, and argument validation."""

from toolrelay.tools.base import Tool
from toolrelay.tools.registry import ToolRegistry
from toolrelay.tools.validation import ToolValidator

__all__ = ["Tool", "ToolRegistry", "ToolValidator"]
