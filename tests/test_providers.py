"""Tests for the HTTP provider adapters, driven through httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from toolrelay.config import (
    CerebrasConfig,
    DeepSeekConfig,
    GroqConfig,
    LiminalityConfig,
    OpenAICompatConfig,
    ResponsesConfig,
    XAIConfig,
)
from toolrelay.llm.errors import ProviderError
from toolrelay.llm.providers import (
    CerebrasProvider,
    DeepSeekProvider,
    GroqProvider,
    LiminalityProvider,
    OpenAICompatProvider,
    ResponsesEventMapper,
    ResponsesProvider,
    XAIProvider,
    create_provider,
)
from toolrelay.llm.tool_call_accumulator import ToolCallAccumulator
from toolrelay.llm.types import (
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ImageAttachment,
    Message,
    ToolCall,
)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "echo",
            "description": "Echo text",
            "parameters": {"type": "object", "properties": {"text": {"type": "string"}}},
        },
    }
]


class Recorder:
    """Transport handler that replays canned responses and keeps the requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _sse(*payloads: dict, done: bool = True) -> httpx.Response:
    body = "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)
    if done:
        body += "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


def _completion(message: dict, finish: str = "stop", usage: dict | None = None) -> httpx.Response:
    data = {
        "model": "gpt-test",
        "choices": [{"index": 0, "message": message, "finish_reason": finish}],
    }
    if usage:
        data["usage"] = usage
    return httpx.Response(200, json=data)


def _provider(cls, config, recorder: Recorder):
    return cls(config, transport=httpx.MockTransport(recorder), retry_base_delay=0)


def _openai(recorder: Recorder, **overrides) -> OpenAICompatProvider:
    config = OpenAICompatConfig(**{"api_key": "sk-test", "max_retries": 2, **overrides})
    return _provider(OpenAICompatProvider, config, recorder)


async def _collect(stream) -> list:
    return [chunk async for chunk in stream]


USER = [Message(role="user", content="hello")]


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------

class TestOpenAINonStreaming:
    async def test_text_reply(self):
        rec = Recorder(_completion({"role": "assistant", "content": "Hi there"}, usage={
            "prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5,
        }))
        resp = await _openai(rec).call_with_messages(USER)

        assert resp.content == "Hi there"
        assert resp.tool_calls == []
        assert resp.finish_reason == FINISH_STOP
        assert resp.usage.total_tokens == 5

        request = rec.requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = rec.bodies[0]
        assert body["stream"] is False
        assert body["messages"] == [{"role": "user", "content": "hello"}]
        assert body["max_tokens"] == 4096
        assert "tools" not in body

    async def test_tools_offered_with_auto_choice(self):
        rec = Recorder(_completion({"role": "assistant", "content": "ok"}))
        await _openai(rec).call_with_messages(USER, TOOLS)
        body = rec.bodies[0]
        assert body["tools"] == TOOLS
        assert body["tool_choice"] == "auto"

    async def test_tool_calls_parsed_and_repaired(self):
        rec = Recorder(_completion(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_1", "type": "function",
                     "function": {"name": "echo", "arguments": '{"text": "a"}'}},
                    {"type": "function", "function": {"name": "echo", "arguments": "{broken"}},
                    {"id": "call_3", "type": "function", "function": {"arguments": "{}"}},
                ],
            },
            finish="tool_calls",
        ))
        resp = await _openai(rec).call_with_messages(USER, TOOLS)

        assert resp.finish_reason == FINISH_TOOL_CALLS
        assert len(resp.tool_calls) == 2
        assert resp.tool_calls[0].id == "call_1"
        assert resp.tool_calls[1].id.startswith("call_")
        assert resp.tool_calls[1].arguments == "{}"

    async def test_call_appends_user_turn(self):
        rec = Recorder(_completion({"role": "assistant", "content": "pong"}))
        history = [Message(role="system", content="be terse")]
        resp = await _openai(rec).call("ping", history)
        assert resp.content == "pong"
        assert rec.bodies[0]["messages"] == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "ping"},
        ]

    async def test_empty_choices(self):
        rec = Recorder(httpx.Response(200, json={"choices": []}))
        resp = await _openai(rec).call_with_messages(USER)
        assert resp.content == ""
        assert resp.tool_calls == []


class TestOpenAIStreaming:
    async def test_text_and_tool_fragments(self):
        rec = Recorder(_sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Let me "}}]},
            {"choices": [{"delta": {"content": "check."}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_9", "type": "function",
                 "function": {"name": "echo", "arguments": '{"te'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": 'xt": "x"}'}},
            ]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        ))
        chunks = await _collect(_openai(rec).call_with_messages_stream(USER, TOOLS))

        assert rec.bodies[0]["stream"] is True
        assert rec.requests[0].headers["accept"] == "text/event-stream"
        assert "".join(c.content for c in chunks) == "Let me check."
        assert chunks[-1].type == "done"
        assert any(c.finish_reason == FINISH_TOOL_CALLS for c in chunks)

        acc = ToolCallAccumulator()
        for c in chunks:
            for delta in c.tool_calls or []:
                acc.feed(delta)
        calls = acc.finish()
        assert [(c.id, c.name) for c in calls] == [("call_9", "echo")]
        assert calls[0].parsed_arguments() == {"text": "x"}

    async def test_error_payload_stops_stream(self):
        rec = Recorder(_sse(
            {"choices": [{"delta": {"content": "par"}}]},
            {"error": {"message": "overloaded"}},
            {"choices": [{"delta": {"content": "never"}}]},
        ))
        chunks = await _collect(_openai(rec).call_with_messages_stream(USER))
        assert chunks[-1].type == "error"
        assert chunks[-1].error == "overloaded"
        assert "never" not in "".join(c.content for c in chunks)

    async def test_stream_retried_before_first_payload(self):
        rec = Recorder(
            httpx.Response(503, json={"error": {"message": "busy"}}),
            _sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}),
        )
        chunks = await _collect(_openai(rec).call_with_messages_stream(USER))
        assert len(rec.requests) == 2
        assert chunks[0].content == "ok"

    async def test_stream_client_error_not_retried(self):
        rec = Recorder(httpx.Response(400, json={"error": {"message": "bad", "code": "invalid_request"}}))
        with pytest.raises(ProviderError) as exc_info:
            await _collect(_openai(rec).call_with_messages_stream(USER))
        assert exc_info.value.status_code == 400
        assert len(rec.requests) == 1


class TestHTTPErrors:
    async def test_client_error_raises_immediately(self):
        rec = Recorder(httpx.Response(401, json={"error": {"message": "bad key", "type": "auth_error"}}))
        with pytest.raises(ProviderError) as exc_info:
            await _openai(rec).call_with_messages(USER)

        err = exc_info.value
        assert err.status_code == 401
        assert err.error_code == "auth_error"
        assert err.provider == "openai"
        assert "bad key" in str(err)
        assert len(rec.requests) == 1

    async def test_server_error_retried_then_succeeds(self):
        rec = Recorder(
            httpx.Response(500, text="oops"),
            httpx.Response(429, text="slow down"),
            _completion({"role": "assistant", "content": "finally"}),
        )
        resp = await _openai(rec).call_with_messages(USER)
        assert resp.content == "finally"
        assert len(rec.requests) == 3

    async def test_retries_exhausted(self):
        rec = Recorder(httpx.Response(502, text="bad gateway"))
        with pytest.raises(ProviderError) as exc_info:
            await _openai(rec, max_retries=1).call_with_messages(USER)
        assert exc_info.value.status_code == 502
        assert len(rec.requests) == 2

    async def test_invalid_json(self):
        rec = Recorder(httpx.Response(200, content=b"<html>"))
        with pytest.raises(ProviderError) as exc_info:
            await _openai(rec).call_with_messages(USER)
        assert exc_info.value.error_code == "invalid_response"

    async def test_missing_key_is_not_configured(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        rec = Recorder(_completion({"content": "unused"}))
        provider = _provider(OpenAICompatProvider, OpenAICompatConfig(), rec)

        assert provider.is_available() is False
        with pytest.raises(ProviderError) as exc_info:
            await provider.call_with_messages(USER)
        assert exc_info.value.error_code == "not_configured"
        assert rec.requests == []

    async def test_key_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        rec = Recorder(_completion({"content": "ok"}))
        await _provider(OpenAICompatProvider, OpenAICompatConfig(), rec).call_with_messages(USER)
        assert rec.requests[0].headers["authorization"] == "Bearer sk-env"


class TestWireMessages:
    async def test_assistant_tool_calls_and_tool_messages(self):
        rec = Recorder(_completion({"content": "done"}))
        history = [
            Message(role="user", content="echo a"),
            Message(role="assistant", content="", tool_calls=[ToolCall(id="c1", name="echo", arguments='{"text": "a"}')]),
            Message(role="tool", content='{"success": true}', tool_call_id="c1", name="echo"),
        ]
        await _openai(rec).call_with_messages(history, TOOLS)
        wire = rec.bodies[0]["messages"]

        assert wire[1]["content"] is None
        assert wire[1]["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text": "a"}'}
        assert wire[2] == {
            "role": "tool",
            "content": '{"success": true}',
            "tool_call_id": "c1",
            "name": "echo",
        }

    async def test_inline_images(self):
        rec = Recorder(_completion({"content": "a cat"}))
        msg = Message(
            role="user",
            content="what is this?",
            images=[ImageAttachment(url="https://img.test/cat.png")],
        )
        await _openai(rec).call_with_messages([msg])
        content = rec.bodies[0]["messages"][0]["content"]
        assert content[0] == {
            "type": "image_url",
            "image_url": {"url": "https://img.test/cat.png", "detail": "auto"},
        }
        assert content[-1] == {"type": "text", "text": "what is this?"}

    async def test_unanswered_exchange_not_sent(self):
        rec = Recorder(_completion({"content": "ok"}))
        history = [
            Message(role="user", content="hi"),
            Message(role="assistant", tool_calls=[ToolCall(id="lost", name="echo")]),
            Message(role="user", content="again"),
        ]
        await _openai(rec).call_with_messages(history)
        assert [m["role"] for m in rec.bodies[0]["messages"]] == ["user", "user"]


# ---------------------------------------------------------------------------
# Vendor adapters
# ---------------------------------------------------------------------------

class TestVendorBodies:
    async def test_groq_fields(self):
        rec = Recorder(_completion({"content": "ok"}))
        config = GroqConfig(api_key="k", reasoning_effort="low", service_tier="flex")
        await _provider(GroqProvider, config, rec).call_with_messages(USER, TOOLS)
        body = rec.bodies[0]

        assert body["max_completion_tokens"] == 4096
        assert "max_tokens" not in body
        assert body["service_tier"] == "flex"
        assert body["reasoning_effort"] == "low"
        assert body["parallel_tool_calls"] is True

    async def test_groq_parallel_flag_only_with_tools(self):
        rec = Recorder(_completion({"content": "ok"}))
        await _provider(GroqProvider, GroqConfig(api_key="k"), rec).call_with_messages(USER)
        body = rec.bodies[0]
        assert "parallel_tool_calls" not in body
        assert "reasoning_effort" not in body

    async def test_xai_fields(self):
        rec = Recorder(_completion({"content": "ok"}))
        await _provider(XAIProvider, XAIConfig(api_key="k"), rec).call_with_messages(USER, TOOLS)
        body = rec.bodies[0]
        assert body["max_tokens"] == 4096
        assert body["parallel_tool_calls"] is True

    async def test_cerebras_strict_tools_and_no_tool_name(self):
        rec = Recorder(_completion({"content": "ok"}))
        config = CerebrasConfig(api_key="k", strict_tools=True)
        history = [
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[ToolCall(id="c1", name="echo")]),
            Message(role="tool", content="{}", tool_call_id="c1", name="echo"),
        ]
        await _provider(CerebrasProvider, config, rec).call_with_messages(history, TOOLS)
        body = rec.bodies[0]

        assert body["tools"][0]["function"]["strict"] is True
        assert "strict" not in TOOLS[0]["function"]
        assert body["parallel_tool_calls"] is False
        assert "name" not in body["messages"][2]
        assert body["messages"][2]["tool_call_id"] == "c1"

    async def test_deepseek_reasoning_content(self):
        rec = Recorder(_completion({"content": "ok"}))
        history = [
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[ToolCall(id="c1", name="echo")]),
            Message(role="tool", content="{}", tool_call_id="c1", name="echo"),
        ]
        await _provider(DeepSeekProvider, DeepSeekConfig(api_key="k"), rec).call_with_messages(history)
        assistant = rec.bodies[0]["messages"][1]
        assert assistant["reasoning_content"] == "Calling tools to answer the request."

    async def test_deepseek_keeps_real_reasoning(self):
        rec = Recorder(_completion({"content": "ok"}))
        history = [
            Message(role="assistant", reasoning="need data", tool_calls=[ToolCall(id="c1", name="echo")]),
            Message(role="tool", content="{}", tool_call_id="c1", name="echo"),
        ]
        await _provider(DeepSeekProvider, DeepSeekConfig(api_key="k"), rec).call_with_messages(history)
        assert rec.bodies[0]["messages"][0]["reasoning_content"] == "need data"

    async def test_groq_strips_images(self):
        rec = Recorder(_completion({"content": "ok"}))
        msg = Message(role="user", content="look", images=[ImageAttachment(url="https://img.test/a.png")])
        await _provider(GroqProvider, GroqConfig(api_key="k"), rec).call_with_messages([msg])
        assert rec.bodies[0]["messages"][0]["content"] == "look"


# ---------------------------------------------------------------------------
# Liminality
# ---------------------------------------------------------------------------

def _liminality(recorder: Recorder | None = None) -> LiminalityProvider:
    recorder = recorder or Recorder(httpx.Response(200, json={}))
    return _provider(LiminalityProvider, LiminalityConfig(api_key="lk-test"), recorder)


class TestLiminalityMessages:
    def test_tool_exchange_conversion(self):
        provider = _liminality()
        wire = provider.convert_messages([
            Message(role="user", content="go"),
            Message(
                role="assistant",
                reasoning="thinking",
                tool_calls=[ToolCall(id="c1", name="echo", arguments='{"text": "a"}')],
            ),
            Message(role="tool", content='{"success": true}', tool_call_id="c1", name="echo"),
        ])

        assert wire[1]["tool_calls"] == [{"id": "c1", "name": "echo", "arguments": {"text": "a"}}]
        assert wire[1]["reasoning"] == "thinking"
        assert wire[2] == {
            "role": "tool_response",
            "tool_calls": [{"tool_call_id": "c1", "content": '{"success": true}', "tool_name": "echo"}],
        }

    def test_invalid_arguments_sent_as_empty_object(self):
        wire = _liminality().convert_messages([
            Message(role="assistant", tool_calls=[ToolCall(id="c1", name="echo", arguments="{oops")]),
            Message(role="tool", content="{}", tool_call_id="c1", name="echo"),
        ])
        assert wire[0]["tool_calls"][0]["arguments"] == {}

    def test_images_in_metadata(self):
        wire = _liminality().convert_messages([
            Message(role="user", content="see", images=[ImageAttachment(url="https://img.test/x.png", mime_type="image/png")]),
        ])
        assert wire[0]["content"] == "see"
        assert wire[0]["metadata"] == {
            "images": [{"url": "https://img.test/x.png", "file_name": None, "mime_type": "image/png"}]
        }

    def test_convert_tools(self):
        converted = LiminalityProvider.convert_tools(TOOLS + [{"type": "function", "function": {}}])
        assert converted == [
            {
                "type": "custom",
                "name": "echo",
                "description": "Echo text",
                "parameters": TOOLS[0]["function"]["parameters"],
            }
        ]
        assert LiminalityProvider.convert_tools(None) == []


class TestLiminalityStreamEvents:
    def test_text_events(self):
        provider = _liminality()
        assert provider.convert_stream_event({"type": "text.delta", "delta": "Hel"}).content == "Hel"
        assert provider.convert_stream_event({"type": "chunk", "content": "lo"}).content == "lo"

    def test_silent_and_invalid_events_skipped(self):
        provider = _liminality()
        assert provider.convert_stream_event({"type": "start"}) is None
        assert provider.convert_stream_event({"type": "mystery"}) is None
        assert provider.convert_stream_event("garbage") is None

    def test_error_event(self):
        chunk = _liminality().convert_stream_event({"type": "error", "error": {"message": "quota"}})
        assert chunk.type == "error"
        assert chunk.error == "quota"

    def test_end_event(self):
        chunk = _liminality().convert_stream_event({"type": "end", "usage": {"total_tokens": 9}})
        assert chunk.finish_reason == FINISH_STOP
        assert chunk.usage.total_tokens == 9

    def test_done_with_tool_request(self):
        chunk = _liminality().convert_stream_event({
            "type": "done",
            "complete": False,
            "messages": [
                {"role": "assistant", "content": "thinking"},
                {
                    "role": "tool_request",
                    "tool_calls": [
                        {"id": "c1", "name": "echo", "arguments": {"text": "a"}},
                        {"id": "c2", "name": "echo", "arguments": '{"text": "b"}'},
                        {"name": "broken"},
                    ],
                },
            ],
        })
        assert chunk.finish_reason == FINISH_TOOL_CALLS
        assert [(d.index, d.id, d.name) for d in chunk.tool_calls] == [(0, "c1", "echo"), (1, "c2", "echo")]
        assert json.loads(chunk.tool_calls[0].arguments) == {"text": "a"}

    def test_done_without_tools_is_stop(self):
        chunk = _liminality().convert_stream_event({"type": "done", "complete": True, "messages": []})
        assert chunk.finish_reason == FINISH_STOP
        assert chunk.tool_calls is None


class TestLiminalityRequests:
    async def test_round_payload(self):
        rec = Recorder(httpx.Response(200, json={
            "message": {
                "content": "",
                "tool_calls": [{"id": "c1", "name": "echo", "arguments": {"text": "x"}}],
            },
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        }))
        resp = await _liminality(rec).call_with_messages(USER, TOOLS)

        request = rec.requests[0]
        assert str(request.url) == "https://origin.synesia.app/llm-exec/round"
        assert request.headers["x-api-key"] == "lk-test"
        body = rec.bodies[0]
        assert body["tools"][0]["type"] == "custom"
        assert body["llmConfig"]["parallel_tool_calls"] is False
        assert body["config"] == {"max_loops": 10}

        assert resp.finish_reason == FINISH_TOOL_CALLS
        assert resp.tool_calls[0].parsed_arguments() == {"text": "x"}

    async def test_stream(self):
        rec = Recorder(_sse(
            {"type": "start"},
            {"type": "text.delta", "delta": "Hi"},
            {"type": "done", "complete": True, "messages": []},
            done=False,
        ))
        chunks = await _collect(_liminality(rec).call_with_messages_stream(USER))
        assert str(rec.requests[0].url).endswith("/llm-exec/round/stream")
        assert [c.content for c in chunks if c.content] == ["Hi"]
        assert chunks[-1].type == "done"


# ---------------------------------------------------------------------------
# Responses API
# ---------------------------------------------------------------------------

def _responses(recorder: Recorder | None = None) -> ResponsesProvider:
    recorder = recorder or Recorder(httpx.Response(200, json={}))
    return _provider(ResponsesProvider, ResponsesConfig(api_key="xai-test"), recorder)


def _accumulate(chunks) -> tuple[str, list[ToolCall]]:
    acc = ToolCallAccumulator()
    for chunk in chunks:
        for delta in chunk.tool_calls or []:
            acc.feed(delta)
    return "".join(c.content for c in chunks if c.content), acc.finish()


class TestResponsesMessages:
    def test_input_items(self):
        wire = _responses().convert_messages([
            Message(role="system", content="be brief"),
            Message(role="user", content="hi", name="alice"),
            Message(
                role="assistant",
                content=None,
                tool_calls=[ToolCall(id="c1", name="echo", arguments='{"text":"a"}')],
            ),
            Message(role="tool", content='{"success": true}', tool_call_id="c1", name="echo"),
        ])
        assert wire == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi", "name": "alice"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": '{"text":"a"}'}}
                ],
            },
            {"role": "tool", "content": '{"success": true}', "tool_call_id": "c1"},
        ]

    def test_unanswered_call_is_dropped(self):
        wire = _responses().convert_messages([
            Message(role="user", content="q"),
            Message(role="assistant", content="", tool_calls=[ToolCall(id="c1", name="echo", arguments="{}")]),
        ])
        assert [m["role"] for m in wire] == ["user"]

    def test_images_are_not_sent(self):
        msg = Message(role="user", content="look", images=[ImageAttachment(url="https://img.test/a.png")])
        assert _responses().convert_messages([msg]) == [{"role": "user", "content": "look"}]

    def test_tools_are_flat(self):
        assert ResponsesProvider.convert_tools(TOOLS) == [
            {
                "type": "function",
                "name": "echo",
                "description": "Echo text",
                "parameters": {"type": "object", "properties": {"text": {"type": "string"}}},
            }
        ]


class TestResponsesEvents:
    def test_text_then_completed(self):
        mapper = ResponsesEventMapper()
        text = mapper.convert({"type": "response.output_text.delta", "delta": "Hel"})
        assert text.content == "Hel"
        assert mapper.convert({"type": "response.created", "response": {}}) is None
        done = mapper.convert({
            "type": "response.completed",
            "response": {"status": "completed", "usage": {"input_tokens": 4, "output_tokens": 2}},
        })
        assert done.finish_reason == FINISH_STOP
        assert done.usage.total_tokens == 6

    def test_function_call_with_streamed_arguments(self):
        mapper = ResponsesEventMapper()
        events = [
            {"type": "response.output_item.added", "output_index": 1,
             "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "echo", "arguments": ""}},
            {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": '{"text"'},
            {"type": "response.function_call_arguments.delta", "output_index": 1, "delta": ':"x"}'},
            {"type": "response.output_item.done", "output_index": 1,
             "item": {"type": "function_call", "call_id": "call_1", "name": "echo", "arguments": '{"text":"x"}'}},
            {"type": "response.completed", "response": {"status": "completed"}},
        ]
        chunks = [c for c in (mapper.convert(e) for e in events) if c is not None]
        _, calls = _accumulate(chunks)
        assert calls == [ToolCall(id="call_1", name="echo", arguments='{"text":"x"}')]
        assert chunks[-1].finish_reason == FINISH_TOOL_CALLS

    def test_arguments_only_on_done_item(self):
        mapper = ResponsesEventMapper()
        events = [
            {"type": "response.output_item.added", "output_index": 0,
             "item": {"type": "function_call", "call_id": "call_2", "name": "echo"}},
            {"type": "response.output_item.done", "output_index": 0,
             "item": {"type": "function_call", "call_id": "call_2", "name": "echo", "arguments": {"text": "y"}}},
        ]
        _, calls = _accumulate([c for c in (mapper.convert(e) for e in events) if c is not None])
        assert calls == [ToolCall(id="call_2", name="echo", arguments='{"text":"y"}')]

    def test_server_side_items_are_ignored(self):
        mapper = ResponsesEventMapper()
        assert mapper.convert({
            "type": "response.output_item.added",
            "output_index": 0,
            "item": {"type": "mcp_call", "id": "m1", "name": "search"},
        }) is None

    def test_incomplete_maps_to_length(self):
        chunk = ResponsesEventMapper().convert({
            "type": "response.incomplete",
            "response": {"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}},
        })
        assert chunk.finish_reason == FINISH_LENGTH

    def test_failure_is_error_chunk(self):
        chunk = ResponsesEventMapper().convert({
            "type": "response.failed",
            "response": {"error": {"message": "model overloaded"}},
        })
        assert chunk.type == "error"
        assert chunk.error == "model overloaded"

    def test_invalid_events_are_skipped(self):
        mapper = ResponsesEventMapper()
        assert mapper.convert("nope") is None
        assert mapper.convert({"delta": "no type"}) is None


class TestResponsesRequests:
    async def test_non_streaming_output_items(self):
        rec = Recorder(httpx.Response(200, json={
            "model": "grok-test",
            "status": "completed",
            "output": [
                {"type": "reasoning", "summary": [{"type": "summary_text", "text": "check echo"}]},
                {"type": "message", "role": "assistant",
                 "content": [{"type": "output_text", "text": "Calling echo."}]},
                {"type": "function_call", "call_id": "call_9", "name": "echo", "arguments": '{"text":"z"}'},
                {"type": "function_call", "call_id": "call_10", "arguments": "{}"},
            ],
            "usage": {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
        }))
        resp = await _responses(rec).call_with_messages(USER, TOOLS)

        request = rec.requests[0]
        assert str(request.url) == "https://api.x.ai/v1/responses"
        assert request.headers["authorization"] == "Bearer xai-test"
        body = rec.bodies[0]
        assert body["input"] == [{"role": "user", "content": "hello"}]
        assert "messages" not in body
        assert body["stream"] is False
        assert body["tools"][0]["name"] == "echo"
        assert body["tool_choice"] == "auto"

        assert resp.content == "Calling echo."
        assert resp.reasoning == "check echo"
        assert resp.tool_calls == [ToolCall(id="call_9", name="echo", arguments='{"text":"z"}')]
        assert resp.finish_reason == FINISH_TOOL_CALLS
        assert resp.usage.total_tokens == 15

    async def test_stream(self):
        rec = Recorder(_sse(
            {"type": "response.created", "response": {"status": "in_progress"}},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "Hi "},
            {"type": "response.output_text.delta", "output_index": 0, "delta": "there"},
            {"type": "response.completed", "response": {"status": "completed", "usage": {"total_tokens": 3}}},
        ))
        chunks = await _collect(_responses(rec).call_with_messages_stream(USER))

        assert rec.bodies[0]["stream"] is True
        assert rec.requests[0].headers["accept"] == "text/event-stream"
        text, calls = _accumulate(chunks)
        assert text == "Hi there"
        assert calls == []
        assert any(c.finish_reason == FINISH_STOP for c in chunks)
        assert chunks[-1].type == "done"

    async def test_stream_error_event_ends_stream(self):
        rec = Recorder(_sse(
            {"type": "response.output_text.delta", "delta": "par"},
            {"type": "error", "error": {"message": "quota exceeded"}},
            {"type": "response.output_text.delta", "delta": "never"},
        ))
        chunks = await _collect(_responses(rec).call_with_messages_stream(USER))
        assert chunks[-1].type == "error"
        assert chunks[-1].error == "quota exceeded"
        assert "never" not in "".join(c.content for c in chunks if c.content)

    async def test_http_error_raises(self):
        rec = Recorder(httpx.Response(401, json={"error": {"message": "bad key"}}))
        with pytest.raises(ProviderError) as exc_info:
            await _responses(rec).call_with_messages(USER)
        assert exc_info.value.status_code == 401

    async def test_missing_key_is_not_configured(self, monkeypatch):
        monkeypatch.delenv("XAI_API_KEY", raising=False)
        provider = ResponsesProvider(ResponsesConfig())
        assert provider.is_available() is False
        with pytest.raises(ProviderError) as exc_info:
            await provider.call_with_messages(USER)
        assert exc_info.value.error_code == "not_configured"


class TestCreateProvider:
    @pytest.mark.parametrize(
        "config, cls",
        [
            (OpenAICompatConfig(), OpenAICompatProvider),
            (GroqConfig(), GroqProvider),
            (XAIConfig(), XAIProvider),
            (DeepSeekConfig(), DeepSeekProvider),
            (CerebrasConfig(), CerebrasProvider),
            (LiminalityConfig(), LiminalityProvider),
            (ResponsesConfig(), ResponsesProvider),
        ],
    )
    def test_vendor_mapping(self, config, cls):
        provider = create_provider(config)
        assert type(provider) is cls
        assert provider.name == config.vendor

    def test_custom_name(self):
        provider = create_provider(OpenAICompatConfig(base_url="http://localhost:8000/v1"), name="local")
        assert provider.name == "local"
        assert provider.model == "gpt-4o-mini"
