"""Tests for ToolRegistry."""

import pytest

from toolrelay.tools.registry import ToolRegistry
from tests.mock_tools import CreateEventTool, DeniedTool, EchoTool, SlowTool


class BrokenSchemaTool(EchoTool):
    @property
    def name(self) -> str:
        return "broken"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {"x": {"type": "not-a-type"}}}


class BadNameTool(EchoTool):
    @property
    def name(self) -> str:
        return "has spaces"


class TestToolRegistry:
    """Test suite for ToolRegistry."""

    def test_register_and_get(self):
        reg = ToolRegistry()
        tool = EchoTool()
        reg.register(tool)
        assert reg.get("echo") is tool
        assert "echo" in reg

    def test_get_returns_none_for_unknown(self):
        assert ToolRegistry().get("nonexistent") is None

    def test_require_raises_keyerror_for_unknown(self):
        with pytest.raises(KeyError, match="nonexistent"):
            ToolRegistry().require("nonexistent")

    def test_duplicate_registration_raises_valueerror(self):
        reg = ToolRegistry([EchoTool()])
        with pytest.raises(ValueError, match="already registered"):
            reg.register(EchoTool())

    def test_duplicate_registration_with_overwrite(self):
        reg = ToolRegistry([EchoTool()])
        tool2 = EchoTool()
        reg.register(tool2, overwrite=True)
        assert reg.get("echo") is tool2
        assert len(reg) == 1

    def test_invalid_schema_rejected(self):
        with pytest.raises(ValueError, match="invalid parameter schema"):
            ToolRegistry().register(BrokenSchemaTool())

    def test_invalid_name_rejected(self):
        with pytest.raises(ValueError, match="Invalid tool name"):
            ToolRegistry().register(BadNameTool())

    def test_unregister(self):
        reg = ToolRegistry([EchoTool()])
        assert reg.unregister("echo") is True
        assert reg.unregister("echo") is False
        assert len(reg) == 0

    def test_list_sorted_by_name(self):
        reg = ToolRegistry([SlowTool(), EchoTool(), DeniedTool(), CreateEventTool()])
        assert reg.names() == ["create_event", "echo", "slow", "update_record"]
        assert [t.name for t in reg] == reg.names()

    def test_openai_schema(self):
        reg = ToolRegistry([EchoTool(), CreateEventTool()])
        schemas = reg.to_openai_schema()
        assert [s["function"]["name"] for s in schemas] == ["create_event", "echo"]
        assert all(s["type"] == "function" for s in schemas)
        params = schemas[1]["function"]["parameters"]
        assert params["type"] == "object"
        assert params["required"] == ["message"]

    def test_openai_schema_subset(self):
        reg = ToolRegistry([EchoTool(), CreateEventTool()])
        schemas = reg.to_openai_schema(only=["echo"])
        assert [s["function"]["name"] for s in schemas] == ["echo"]
