"""Tests for the orchestration loop."""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest

from deskpilot.adapters import THINKING_CLOSE, THINKING_OPEN, ProviderFamily
from deskpilot.config import DeskPilotConfig
from deskpilot.events import ErrorEvent, StreamChunkEvent, StreamEndEvent, ToolResultEvent
from deskpilot.exceptions import ProviderError, TransientProviderError
from deskpilot.loop import (
    COMPLETION_NOTICE,
    ROUND_LIMIT_NOTICE,
    LoopResult,
    LoopState,
    Orchestrator,
    TerminationReason,
    format_tool_result,
)
from deskpilot.models import Response, Role, StreamChunk, ToolCall, ToolDefinition, ToolResult
from deskpilot.sessions import SessionStore
from deskpilot.tasks import TaskCallbacks, TaskExecutor
from deskpilot.tools import ToolRegistry

STALL = object()


class ScriptedAdapter:
    """Plays back one pre-recorded turn per request."""

    name = "scripted"
    family = ProviderFamily.DELTA

    def __init__(self, *turns):
        self.turns = list(turns)
        self.requests = []

    def _next_turn(self, messages, tools):
        self.requests.append((list(messages), tools))
        return self.turns.pop(0)

    async def chat(self, messages, tools=None):
        items = self._next_turn(messages, tools)
        if isinstance(items, Exception):
            raise items
        return Response(
            content="".join(c.text for c in items if c.text),
            tool_calls=[c.tool_call for c in items if c.tool_call],
        )

    async def stream(self, messages, tools=None):
        items = self._next_turn(messages, tools)
        if isinstance(items, Exception):
            raise items
        for item in items:
            if item is STALL:
                await asyncio.sleep(10)
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    async def aclose(self):
        pass


def turn(*items, final=True):
    chunks = []
    for item in items:
        if isinstance(item, str):
            chunks.append(StreamChunk(text=item))
        elif isinstance(item, ToolCall):
            chunks.append(StreamChunk(tool_call=item))
        else:
            chunks.append(item)
    if final:
        chunks.append(StreamChunk(is_final=True))
    return chunks


def make_call(name, call_id=None, **arguments):
    return ToolCall(id=call_id or f"call-{name}", name=name, arguments=arguments)


def make_registry(**handlers):
    registry = ToolRegistry()
    for name, handler in handlers.items():
        registry.register(ToolDefinition(name=name, description=f"The {name} tool"), handler)
    return registry.freeze()


def make_bot(adapter, registry=None, executor=None, **config_kwargs):
    config = DeskPilotConfig(provider="ollama", **config_kwargs)
    return Orchestrator(
        adapter, registry or make_registry(), SessionStore(), config, executor=executor
    )


async def collect_events(bot, session_id, text, stream=True):
    return [event async for event in bot.run(session_id, text, stream=stream)]


def contents(result):
    return [(m.role, m.content) for m in result.messages]


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    @pytest.mark.asyncio
    async def test_text_only_turn(self):
        adapter = ScriptedAdapter(turn("现在", "是下午三点"))
        bot = make_bot(adapter)

        result = await bot.process_message("s1", "现在几点")

        assert result.state is LoopState.COMPLETE
        assert result.reason is TerminationReason.NO_TOOL_CALLS
        assert result.rounds == 1
        assert result.notice is None
        assert contents(result) == [
            (Role.USER, "现在几点"),
            (Role.ASSISTANT, "现在是下午三点"),
        ]

    @pytest.mark.asyncio
    async def test_text_only_turn_events(self):
        bot = make_bot(ScriptedAdapter(turn("现在", "是下午三点")))

        events = await collect_events(bot, "s1", "现在几点")

        assert [e.type for e in events] == [
            "stream:start",
            "stream:chunk",
            "stream:chunk",
            "stream:end",
        ]
        assert [e.text_delta for e in events[1:3]] == ["现在", "是下午三点"]
        assert all(e.session_id == "s1" for e in events)
        assert [m["content"] for m in events[-1].messages] == ["现在几点", "现在是下午三点"]

    @pytest.mark.asyncio
    async def test_screenshot_then_answer(self):
        screenshot = MagicMock(return_value={"path": "/tmp/screen.png"})
        adapter = ScriptedAdapter(
            turn(make_call("screenshot", "c1")),
            turn("已完成截图"),
        )
        bot = make_bot(adapter, make_registry(screenshot=screenshot))

        result = await bot.process_message("s1", "截个屏")

        assert result.state is LoopState.COMPLETE
        assert result.reason is TerminationReason.NO_TOOL_CALLS
        assert result.rounds == 2
        screenshot.assert_called_once_with()
        assert result.tool_results == [ToolResult.ok({"path": "/tmp/screen.png"})]
        assert contents(result) == [
            (Role.USER, "截个屏"),
            (
                Role.SYSTEM,
                'Tool screenshot result: {"success": true, "data": {"path": "/tmp/screen.png"}}',
            ),
            (Role.ASSISTANT, "已完成截图"),
        ]
        # round 2 sees round 1's result
        second_context = adapter.requests[1][0]
        assert second_context[-1].content.startswith("Tool screenshot result:")

    @pytest.mark.asyncio
    async def test_screenshot_events(self):
        adapter = ScriptedAdapter(turn(make_call("screenshot", "c1")), turn("已完成截图"))
        bot = make_bot(adapter, make_registry(screenshot=lambda: {"path": "/tmp/s.png"}))

        events = await collect_events(bot, "s1", "截个屏")

        assert [e.type for e in events] == [
            "stream:start",
            "stream:chunk",
            "tool:result",
            "stream:chunk",
            "stream:end",
        ]
        assert events[1].tool_call["name"] == "screenshot"
        result_event = events[2]
        assert isinstance(result_event, ToolResultEvent)
        assert result_event.tool_call_id == "c1"
        assert result_event.result == {"success": True, "data": {"path": "/tmp/s.png"}}

    @pytest.mark.asyncio
    async def test_non_streaming_turns(self):
        adapter = ScriptedAdapter(turn(make_call("screenshot")), turn("done"))
        bot = make_bot(adapter, make_registry(screenshot=lambda: "ok"))

        result = await bot.process_message("s1", "go", stream=False)

        assert result.state is LoopState.COMPLETE
        assert result.rounds == 2
        assert contents(result)[-1] == (Role.ASSISTANT, "done")


# ---------------------------------------------------------------------------
# Termination rules
# ---------------------------------------------------------------------------


class TestRoundLimit:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_rounds", [1, 2, 3, 5])
    async def test_stops_after_exactly_max_rounds(self, max_rounds):
        executed = []
        turns = [turn(make_call("step", f"c{i}", n=i)) for i in range(max_rounds + 5)]
        adapter = ScriptedAdapter(*turns)
        bot = make_bot(
            adapter, make_registry(step=lambda n: executed.append(n)), max_rounds=max_rounds
        )

        result = await bot.process_message("s1", "keep going")

        assert result.rounds == max_rounds
        assert len(adapter.requests) == max_rounds
        assert result.reason is TerminationReason.ROUND_LIMIT
        assert result.state is LoopState.COMPLETE
        assert result.notice == ROUND_LIMIT_NOTICE
        # the last permitted turn's calls are not executed
        assert executed == list(range(max_rounds - 1))

    @pytest.mark.asyncio
    async def test_notice_emitted_but_not_persisted(self):
        adapter = ScriptedAdapter(turn(make_call("step", n=1)))
        bot = make_bot(adapter, make_registry(step=lambda n: n), max_rounds=1)

        events = await collect_events(bot, "s1", "go")

        assert isinstance(events[-2], StreamChunkEvent)
        assert events[-2].text_delta == ROUND_LIMIT_NOTICE
        assert isinstance(events[-1], StreamEndEvent)
        assert all(ROUND_LIMIT_NOTICE not in m["content"] for m in events[-1].messages)

    @pytest.mark.asyncio
    async def test_default_cap_is_five(self):
        turns = [turn(make_call("step", n=i)) for i in range(10)]
        bot = make_bot(ScriptedAdapter(*turns), make_registry(step=lambda n: n))
        result = await bot.process_message("s1", "go")
        assert result.rounds == 5


class TestDuplicateGuard:
    @pytest.mark.asyncio
    async def test_identical_call_without_text_stops(self):
        handler = MagicMock(return_value="written")
        adapter = ScriptedAdapter(
            turn(make_call("write_file", "c1", filePath="a.txt", content="x")),
            turn(make_call("write_file", "c2", content="x", filePath="a.txt")),
            turn("should never be requested"),
        )
        bot = make_bot(adapter, make_registry(write_file=handler))

        result = await bot.process_message("s1", "write the file")

        assert result.rounds == 2
        assert handler.call_count == 1
        assert result.reason is TerminationReason.DUPLICATE_CALL
        assert result.state is LoopState.COMPLETE
        assert result.notice == COMPLETION_NOTICE
        assert len(adapter.turns) == 1

    @pytest.mark.asyncio
    async def test_thinking_only_text_counts_as_empty(self):
        handler = MagicMock(return_value="written")
        adapter = ScriptedAdapter(
            turn(make_call("write_file", filePath="a.txt")),
            turn("[thinking]", "once more", "[/thinking]", make_call("write_file", filePath="a.txt")),
        )
        bot = make_bot(adapter, make_registry(write_file=handler))

        result = await bot.process_message("s1", "write the file")

        assert result.reason is TerminationReason.DUPLICATE_CALL
        assert handler.call_count == 1
        # thinking is kept in the log
        assert contents(result)[-1] == (Role.ASSISTANT, "[thinking]once more[/thinking]")

    @pytest.mark.asyncio
    async def test_identical_call_with_text_executes(self):
        handler = MagicMock(return_value="written")
        adapter = ScriptedAdapter(
            turn(make_call("write_file", filePath="a.txt")),
            turn("The first write failed, retrying.", make_call("write_file", filePath="a.txt")),
            turn("Done."),
        )
        bot = make_bot(adapter, make_registry(write_file=handler))

        result = await bot.process_message("s1", "write the file")

        assert result.reason is TerminationReason.NO_TOOL_CALLS
        assert handler.call_count == 2
        assert result.rounds == 3

    @pytest.mark.asyncio
    async def test_different_arguments_execute(self):
        handler = MagicMock(return_value="written")
        adapter = ScriptedAdapter(
            turn(make_call("write_file", filePath="a.txt")),
            turn(make_call("write_file", filePath="b.txt")),
            turn("Both written."),
        )
        bot = make_bot(adapter, make_registry(write_file=handler))

        result = await bot.process_message("s1", "write two files")

        assert handler.call_count == 2
        assert result.reason is TerminationReason.NO_TOOL_CALLS

    @pytest.mark.asyncio
    async def test_compares_against_last_call_of_previous_round(self):
        handler = MagicMock(return_value="ok")
        adapter = ScriptedAdapter(
            turn(make_call("open_app", app="notepad"), make_call("type_text", text="hi")),
            turn(make_call("open_app", app="notepad")),
            turn("Done."),
        )
        bot = make_bot(adapter, make_registry(open_app=handler, type_text=handler))

        result = await bot.process_message("s1", "open notepad and type")

        assert result.reason is TerminationReason.NO_TOOL_CALLS
        assert handler.call_count == 3


# ---------------------------------------------------------------------------
# Turn handling
# ---------------------------------------------------------------------------


class TestTurnHandling:
    @pytest.mark.asyncio
    async def test_tool_markup_stripped_before_storing(self):
        markup = '<minimax:tool_call><invoke name="screenshot"></invoke></minimax:tool_call>'
        adapter = ScriptedAdapter(
            turn("Taking a screenshot.", markup, make_call("screenshot")),
            turn("Done."),
        )
        bot = make_bot(adapter, make_registry(screenshot=lambda: "ok"))

        result = await bot.process_message("s1", "screenshot please")

        assistant = [m.content for m in result.messages if m.role is Role.ASSISTANT]
        assert assistant == ["Taking a screenshot.", "Done."]

    @pytest.mark.asyncio
    async def test_empty_text_not_persisted(self):
        adapter = ScriptedAdapter(turn(make_call("noop")), turn())
        bot = make_bot(adapter, make_registry(noop=lambda: None))

        result = await bot.process_message("s1", "go")

        assert [m.role for m in result.messages] == [Role.USER, Role.SYSTEM]

    @pytest.mark.asyncio
    async def test_calls_run_in_order_and_failures_continue(self):
        order = []

        def explode():
            order.append("explode")
            raise RuntimeError("no permission")

        adapter = ScriptedAdapter(
            turn(make_call("explode"), make_call("noop")),
            turn("Partly done."),
        )
        bot = make_bot(
            adapter, make_registry(explode=explode, noop=lambda: order.append("noop"))
        )

        result = await bot.process_message("s1", "go")

        assert order == ["explode", "noop"]
        assert [r.success for r in result.tool_results] == [False, True]
        system = [m.content for m in result.messages if m.role is Role.SYSTEM]
        assert system[0].startswith("Tool explode result:")
        assert json.loads(system[0].split("result: ", 1)[1])["success"] is False
        assert result.state is LoopState.COMPLETE

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_back(self):
        adapter = ScriptedAdapter(turn(make_call("format_disk")), turn("I cannot do that."))
        bot = make_bot(adapter)

        result = await bot.process_message("s1", "format the disk")

        assert result.tool_results == [ToolResult.fail("Tool not found: format_disk")]
        assert result.state is LoopState.COMPLETE

    @pytest.mark.asyncio
    async def test_turn_ends_at_final_chunk(self):
        adapter = ScriptedAdapter(turn("a") + [StreamChunk(text="after final")])
        result = await make_bot(adapter).process_message("s1", "hi")
        assert contents(result)[-1] == (Role.ASSISTANT, "a")

    @pytest.mark.asyncio
    async def test_turn_without_final_chunk(self):
        adapter = ScriptedAdapter(turn("partial", final=False))
        result = await make_bot(adapter).process_message("s1", "hi")
        assert result.state is LoopState.COMPLETE
        assert contents(result)[-1] == (Role.ASSISTANT, "partial")

    @pytest.mark.asyncio
    async def test_context_is_system_prompt_plus_recent_log(self):
        adapter = ScriptedAdapter(turn("ok"))
        bot = make_bot(
            adapter,
            make_registry(screenshot=lambda: None),
            context_window=3,
            system_prompt="Always answer in English.",
        )
        bot.sessions.create_session("s1")
        for i in range(5):
            bot.sessions.add_message("s1", Role.USER, f"old {i}")

        await bot.process_message("s1", "new")

        messages, tools = adapter.requests[0]
        assert messages[0].role is Role.SYSTEM
        assert messages[0].content.startswith("Always answer in English.")
        assert "screenshot" in messages[0].content
        assert [m.content for m in messages[1:]] == ["old 3", "old 4", "new"]
        assert [t.name for t in tools] == ["screenshot"]

    @pytest.mark.asyncio
    async def test_unknown_session_is_created(self):
        bot = make_bot(ScriptedAdapter(turn("hi")))
        await bot.process_message("fresh-session", "hello")
        assert bot.sessions.get_session("fresh-session") is not None

    @pytest.mark.asyncio
    async def test_conversation_continues_across_messages(self):
        adapter = ScriptedAdapter(turn("first answer"), turn("second answer"))
        bot = make_bot(adapter)

        await bot.process_message("s1", "first")
        result = await bot.process_message("s1", "second")

        assert [m.content for m in result.messages] == [
            "first",
            "first answer",
            "second",
            "second answer",
        ]
        assert [m.content for m in adapter.requests[1][0][1:]] == ["first", "first answer", "second"]

    @pytest.mark.asyncio
    async def test_custom_executor_callbacks(self):
        updates = []
        registry = make_registry(noop=lambda: None)
        executor = TaskExecutor(
            registry, TaskCallbacks(on_task_update=lambda task: updates.append(task.status.value))
        )
        adapter = ScriptedAdapter(turn(make_call("noop")), turn("ok"))
        bot = make_bot(adapter, registry, executor=executor)

        await bot.process_message("s1", "go")

        assert updates == ["running", "completed"]
        assert executor.list_tasks("s1")[0].tool_call.name == "noop"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_error_mid_stream(self):
        adapter = ScriptedAdapter(turn("Starting", ProviderError("connection reset"), final=False))
        bot = make_bot(adapter)

        events = await collect_events(bot, "s1", "go")

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].message == "connection reset"
        assert not any(isinstance(e, StreamEndEvent) for e in events)

    @pytest.mark.asyncio
    async def test_provider_error_result(self):
        adapter = ScriptedAdapter(ProviderError("HTTP 401"))
        result = await make_bot(adapter).process_message("s1", "go")

        assert result.state is LoopState.FAILED
        assert result.reason is TerminationReason.ERROR
        assert result.error == "HTTP 401"
        assert contents(result) == [(Role.USER, "go")]

    @pytest.mark.asyncio
    async def test_transient_error_in_non_streaming_mode(self):
        adapter = ScriptedAdapter(TransientProviderError("gave up", attempts=3))
        result = await make_bot(adapter).process_message("s1", "go", stream=False)
        assert result.state is LoopState.FAILED

    @pytest.mark.asyncio
    async def test_raw_http_error(self):
        adapter = ScriptedAdapter(httpx.ConnectError("refused"))
        result = await make_bot(adapter).process_message("s1", "go")
        assert result.state is LoopState.FAILED
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out(self):
        adapter = ScriptedAdapter(turn("Thinking about it", STALL, final=False))
        bot = make_bot(adapter, stream_timeout=0.05)

        events = await collect_events(bot, "s1", "go")

        assert events[1].text_delta == "Thinking about it"
        assert isinstance(events[-1], ErrorEvent)
        assert "No stream data received" in events[-1].message

    @pytest.mark.asyncio
    async def test_stalled_thinking_is_closed_before_error(self):
        adapter = ScriptedAdapter(turn(THINKING_OPEN, "pondering", STALL, final=False))
        bot = make_bot(adapter, stream_timeout=0.05)

        events = await collect_events(bot, "s1", "go")

        assert [e.text_delta for e in events[1:-1]] == [THINKING_OPEN, "pondering", THINKING_CLOSE]
        assert isinstance(events[-1], ErrorEvent)

    @pytest.mark.asyncio
    async def test_provider_error_inside_thinking_closes_it(self):
        adapter = ScriptedAdapter(turn(THINKING_OPEN, "hmm", ProviderError("overloaded"), final=False))
        bot = make_bot(adapter)

        events = await collect_events(bot, "s1", "go")

        text = "".join(e.text_delta for e in events if isinstance(e, StreamChunkEvent))
        assert text == f"{THINKING_OPEN}hmm{THINKING_CLOSE}"
        assert isinstance(events[-1], ErrorEvent)

    @pytest.mark.asyncio
    async def test_closed_thinking_not_closed_twice(self):
        adapter = ScriptedAdapter(
            turn(THINKING_OPEN, "hmm", THINKING_CLOSE, "Working", ProviderError("reset"), final=False)
        )
        events = await collect_events(make_bot(adapter), "s1", "go")

        text = "".join(e.text_delta for e in events if isinstance(e, StreamChunkEvent))
        assert text.count(THINKING_CLOSE) == 1

    @pytest.mark.asyncio
    async def test_failure_in_later_round_keeps_earlier_results(self):
        adapter = ScriptedAdapter(turn(make_call("noop")), ProviderError("overloaded"))
        bot = make_bot(adapter, make_registry(noop=lambda: "ok"))

        result = await bot.process_message("s1", "go")

        assert result.state is LoopState.FAILED
        assert result.rounds == 2
        assert [m.role for m in result.messages] == [Role.USER, Role.SYSTEM]


# ---------------------------------------------------------------------------
# Session resources and results
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_end_session_releases_resources(self):
        browser = MagicMock(spec=["close"])

        async def open_page(url, context):
            page = await context.resources.acquire("browser", lambda: browser)
            return {"opened": url, "same": page is browser}

        adapter = ScriptedAdapter(turn(make_call("open_page", url="https://example.com")), turn("ok"))
        bot = make_bot(adapter, make_registry(open_page=open_page))

        result = await bot.process_message("s1", "open the page")
        assert result.tool_results[0].data == {"opened": "https://example.com", "same": True}

        await bot.end_session("s1")
        browser.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_resources(self):
        created = []

        async def open_page(context):
            await context.resources.acquire("browser", lambda: created.append(1) or object())
            return len(created)

        adapter = ScriptedAdapter(
            turn(make_call("open_page")), turn("a"), turn(make_call("open_page")), turn("b")
        )
        bot = make_bot(adapter, make_registry(open_page=open_page))

        await bot.process_message("s1", "open")
        await bot.process_message("s2", "open")

        assert len(created) == 2

    @pytest.mark.asyncio
    async def test_end_session_forgets_session_lock(self):
        bot = make_bot(ScriptedAdapter(turn("hi"), turn("welcome back")))

        await bot.process_message("s1", "hello")
        assert "s1" in bot._locks
        await bot.end_session("s1")
        assert "s1" not in bot._locks

        result = await bot.process_message("s1", "I am back")
        assert result.completed
        assert len(bot.sessions.get_messages("s1")) == 4


class TestLoopResult:
    def test_to_dict(self):
        result = LoopResult(
            session_id="s1",
            state=LoopState.COMPLETE,
            reason=TerminationReason.ROUND_LIMIT,
            rounds=5,
            notice=ROUND_LIMIT_NOTICE,
        )
        data = result.to_dict()
        assert data["state"] == "complete"
        assert data["reason"] == "round_limit"
        assert data["rounds"] == 5
        assert result.completed

    def test_format_tool_result(self):
        text = format_tool_result(make_call("read_file"), ToolResult.ok("内容"))
        assert text == 'Tool read_file result: {"success": true, "data": "内容"}'
