"""Tests for LLMRouter."""

from __future__ import annotations

import pytest

from tests.mock_providers import MockProvider, text_stream
from toolrelay.config import ToolrelayConfig
from toolrelay.llm.providers import GroqProvider, OpenAICompatProvider
from toolrelay.llm.router import LLMRouter
from toolrelay.llm.types import LLMResponse, Message

USER = [Message(role="user", content="hi")]


class TestRegistration:
    def test_first_registered_becomes_active(self):
        router = LLMRouter()
        a, b = MockProvider(provider_name="a"), MockProvider(provider_name="b")
        router.register_provider("a", a)
        router.register_provider("b", b)
        assert router.active_name == "a"
        assert router.active_provider is a
        assert router.provider_names == ["a", "b"]

    def test_set_active(self):
        router = LLMRouter()
        router.register_provider("a", MockProvider())
        router.register_provider("b", MockProvider())
        router.set_active("b")
        assert router.active_name == "b"

    def test_set_unknown_active(self):
        router = LLMRouter()
        with pytest.raises(KeyError):
            router.set_active("ghost")

    def test_no_active_provider(self):
        with pytest.raises(RuntimeError):
            LLMRouter().active_provider

    def test_from_config(self):
        cfg = ToolrelayConfig()
        cfg.llm.active = "groq"
        router = LLMRouter.from_config(cfg)
        assert router.active_name == "groq"
        assert isinstance(router.active_provider, GroqProvider)
        assert isinstance(router.get("openai"), OpenAICompatProvider)
        assert set(router.available()) == set(cfg.providers)


class TestCalls:
    async def test_stream_uses_active(self):
        router = LLMRouter()
        mock = MockProvider(streams=[text_stream("hello there")])
        router.register_provider("mock", mock)

        chunks = [c async for c in router.stream(USER)]
        assert "".join(c.content for c in chunks) == "hello there"
        assert mock.call_count == 1

    async def test_complete_uses_active(self):
        router = LLMRouter()
        router.register_provider("mock", MockProvider(responses=[LLMResponse(content="done")]))
        resp = await router.complete(USER)
        assert resp.content == "done"

    async def test_named_provider_per_call(self):
        router = LLMRouter()
        router.register_provider("a", MockProvider(streams=[text_stream("from a")]))
        router.register_provider("b", MockProvider(streams=[text_stream("from b")]))

        chunks = [c async for c in router.stream(USER, provider="b")]
        assert "".join(c.content for c in chunks) == "from b"
        assert router.active_name == "a"

    def test_resolve(self):
        router = LLMRouter()
        a, b = MockProvider(), MockProvider()
        router.register_provider("a", a)
        router.register_provider("b", b)
        assert router.resolve() is a
        assert router.resolve("b") is b
        with pytest.raises(KeyError):
            router.resolve("ghost")
