"""Tests for ToolCallAccumulator."""

from __future__ import annotations

import json

from toolrelay.llm.tool_call_accumulator import ToolCallAccumulator, fabricate_call_id
from toolrelay.llm.types import ToolCallDelta


class TestSingleCall:
    def test_fragments_by_index(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="call_1", name="get_weather"))
        acc.feed(ToolCallDelta(index=0, arguments='{"city": '))
        acc.feed(ToolCallDelta(index=0, arguments='"Paris"}'))

        calls = acc.finish()
        assert len(calls) == 1
        assert calls[0].id == "call_1"
        assert calls[0].name == "get_weather"
        assert json.loads(calls[0].arguments) == {"city": "Paris"}

    def test_fragments_by_repeated_id(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(id="call_1", name="f", arguments='{"a"'))
        acc.feed(ToolCallDelta(id="call_1", arguments=": 1}"))
        assert acc.finish()[0].parsed_arguments() == {"a": 1}

    def test_empty_arguments_become_object(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="c", name="ping"))
        assert acc.finish()[0].arguments == "{}"

    def test_fragments_without_id_or_index_continue_last_call(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(id="c1", name="f", arguments='{"x":'))
        acc.feed(ToolCallDelta(arguments=" 2}"))
        assert acc.finish()[0].parsed_arguments() == {"x": 2}


class TestMultipleCalls:
    def test_interleaved_indices(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="a", name="first"))
        acc.feed(ToolCallDelta(index=1, id="b", name="second"))
        acc.feed(ToolCallDelta(index=1, arguments='{"n": 2}'))
        acc.feed(ToolCallDelta(index=0, arguments='{"n": 1}'))

        calls = acc.finish()
        assert [c.id for c in calls] == ["a", "b"]
        assert [c.parsed_arguments()["n"] for c in calls] == [1, 2]

    def test_first_seen_order_preserved(self):
        acc = ToolCallAccumulator()
        for i, cid in enumerate(["z", "a", "m"]):
            acc.feed(ToolCallDelta(index=i, id=cid, name="t"))
        assert acc.order == ["z", "a", "m"]
        assert len(acc) == 3


class TestMissingIds:
    def test_id_fabricated_when_never_sent(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name="lookup"))
        acc.feed(ToolCallDelta(index=0, arguments="{}"))
        calls = acc.finish()
        assert len(calls) == 1
        assert calls[0].id.startswith("call_")

    def test_late_id_replaces_fabricated_one(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, name="lookup", arguments='{"q":'))
        acc.feed(ToolCallDelta(index=0, id="call_real", arguments=' "x"}'))
        calls = acc.finish()
        assert [c.id for c in calls] == ["call_real"]
        assert calls[0].parsed_arguments() == {"q": "x"}

    def test_fabricated_ids_are_unique(self):
        assert len({fabricate_call_id() for _ in range(50)}) == 50


class TestInvalidInput:
    def test_call_without_name_discarded(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="c", arguments="{}"))
        assert acc.finish() == []
        assert acc.errors

    def test_invalid_json_repaired_to_empty_object(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="c", name="f", arguments='{"key": INVALID'))
        calls = acc.finish()
        assert calls[0].arguments == "{}"
        assert any("json_parse_failed" in e for e in acc.errors)

    def test_partial_snapshot_and_reset(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallDelta(index=0, id="c", name="f", arguments='{"a'))
        assert acc.partial()["c"].arguments == '{"a'
        acc.reset()
        assert len(acc) == 0
        assert acc.finish() == []
