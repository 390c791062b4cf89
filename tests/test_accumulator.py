"""Tests for the tool-call accumulator."""

import json
import logging

import pytest

from deskpilot.accumulator import (
    AccumulatorState,
    ArgumentPolicy,
    ToolCallAccumulator,
    ToolCallAccumulatorSet,
    build_tool_call,
    parse_arguments,
)
from deskpilot.exceptions import ToolArgumentError


class TestParseArguments:
    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_empty_means_no_arguments(self, text):
        assert parse_arguments(text) == {}

    def test_object(self):
        assert parse_arguments('{"path": "a.txt", "n": 2}') == {"path": "a.txt", "n": 2}

    def test_dict_passthrough(self):
        assert parse_arguments({"a": 1}) == {"a": 1}

    def test_invalid_json(self):
        with pytest.raises(ToolArgumentError) as exc_info:
            parse_arguments('{"path": ')
        assert exc_info.value.raw == '{"path": '

    def test_non_object(self):
        with pytest.raises(ToolArgumentError, match="JSON object"):
            parse_arguments("[1, 2]")


class TestBuildToolCall:
    def test_empty_policy_keeps_call(self, caplog):
        with caplog.at_level(logging.WARNING, logger="deskpilot.accumulator"):
            call = build_tool_call("c1", "write_file", "not json", ArgumentPolicy.EMPTY)
        assert call.arguments == {}
        assert call.argument_error
        assert "malformed arguments" in caplog.text

    def test_abort_policy_drops_call(self, caplog):
        with caplog.at_level(logging.WARNING, logger="deskpilot.accumulator"):
            call = build_tool_call("c1", "write_file", "not json", "abort")
        assert call is None
        assert "Dropping tool call" in caplog.text

    def test_missing_id_generated(self):
        call = build_tool_call(None, "noop", "")
        assert call.id.startswith("call-")
        assert call.argument_error is None


class TestToolCallAccumulator:
    def test_lifecycle(self):
        acc = ToolCallAccumulator()
        assert acc.state is AccumulatorState.IDLE
        acc.start("call_1", "read_file")
        assert acc.state is AccumulatorState.ACCUMULATING
        acc.append('{"path": ')
        acc.append('"notes.txt"}')
        call = acc.finalize()
        assert acc.state is AccumulatorState.FINALIZED
        assert call.id == "call_1"
        assert call.name == "read_file"
        assert call.arguments == {"path": "notes.txt"}

    def test_cannot_append_before_start(self):
        with pytest.raises(RuntimeError):
            ToolCallAccumulator().append("x")

    def test_cannot_finalize_twice(self):
        acc = ToolCallAccumulator()
        acc.start("c", "n")
        acc.finalize()
        with pytest.raises(RuntimeError):
            acc.finalize()

    def test_no_fragments_means_empty_arguments(self):
        acc = ToolCallAccumulator()
        acc.start("c", "screenshot")
        assert acc.finalize().arguments == {}

    def test_late_name_filled_in(self):
        acc = ToolCallAccumulator()
        acc.start("c", None)
        acc.update(name="screenshot")
        assert acc.finalize().name == "screenshot"

    @pytest.mark.parametrize("pieces", [1, 2, 3, 7, 1000])
    def test_fragmentation_does_not_change_result(self, pieces):
        arguments = {"filePath": "C:/Users/me/notes.txt", "content": "héllo, \"world\"\n"}
        text = json.dumps(arguments, ensure_ascii=False)
        size = max(1, -(-len(text) // pieces))

        whole = ToolCallAccumulator()
        whole.start("c1", "write_file")
        whole.append(text)

        split = ToolCallAccumulator()
        split.start("c1", "write_file")
        for i in range(0, len(text), size):
            split.append(text[i : i + size])

        assert split.finalize() == whole.finalize()


class TestToolCallAccumulatorSet:
    def test_interleaved_calls_by_index(self):
        calls = ToolCallAccumulatorSet()
        calls.feed(0, call_id="a", name="read_file", fragment='{"path":')
        calls.feed(1, call_id="b", name="screenshot", fragment="")
        calls.feed(0, fragment=' "x.txt"}')
        calls.feed(1, fragment="{}")

        result = calls.finalize_all()

        assert [c.id for c in result] == ["a", "b"]
        assert result[0].arguments == {"path": "x.txt"}
        assert result[1].arguments == {}
        assert len(calls) == 0

    def test_keyless_fragment_joins_last_call(self):
        calls = ToolCallAccumulatorSet()
        calls.feed(None, call_id="a", name="read_file", fragment='{"path"')
        calls.feed(None, fragment=': "y"}')
        assert calls.finalize_all()[0].arguments == {"path": "y"}

    def test_orphan_fragment_dropped(self):
        calls = ToolCallAccumulatorSet()
        calls.feed(None, fragment="{}")
        assert calls.finalize_all() == []

    def test_abort_policy_drops_only_bad_call(self):
        calls = ToolCallAccumulatorSet(ArgumentPolicy.ABORT)
        calls.feed(0, call_id="a", name="bad", fragment="{oops")
        calls.feed(1, call_id="b", name="good", fragment='{"x": 1}')
        result = calls.finalize_all()
        assert [c.name for c in result] == ["good"]
