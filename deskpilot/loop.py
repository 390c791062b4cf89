"""
DeskPilot - Orchestration loop.

Drives one user message through a bounded cycle of assistant turns:
stream a turn, collect its text and finalized tool calls, execute the calls,
feed the results back, and repeat until the model stops calling tools.

Termination:

* the turn contains no tool call;
* the duplicate-call guard fires: from round 2 on, a turn with no visible
  text whose first call repeats the last call executed in the previous
  round;
* the round cap is reached: calls of the last permitted turn are not
  executed and a truncation notice is emitted;
* the provider fails, in which case an ``error`` event ends the run.

Usage:
    ```python
    from deskpilot import DeskPilotConfig, Orchestrator, SessionStore, ToolRegistry
    from deskpilot.adapters import create_adapter

    config = DeskPilotConfig.from_env()
    async with create_adapter(config) as adapter:
        bot = Orchestrator(adapter, ToolRegistry().freeze(), SessionStore(), config)
        async for event in bot.run("session-1", "What time is it?"):
            print(event.to_payload())
    ```
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

import httpx

from .adapters.base import THINKING_CLOSE, ProviderAdapter, thinking_left_open
from .adapters.xml_calls import strip_tool_markup, visible_text
from .config import DeskPilotConfig
from .events import (
    ChatEvent,
    ErrorEvent,
    StreamChunkEvent,
    StreamEndEvent,
    StreamStartEvent,
    ToolResultEvent,
)
from .exceptions import DeskPilotError, StreamTimeoutError
from .models import Message, Role, StreamChunk, ToolCall, ToolResult
from .prompts import build_system_prompt
from .sessions import SessionStore
from .tasks import TaskExecutor
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger("deskpilot.loop")

COMPLETION_NOTICE = "\n\nTask completed."
ROUND_LIMIT_NOTICE = "\n\n[Reached the maximum number of rounds; the task may be incomplete]"


class LoopState(str, Enum):
    AWAITING_TURN = "awaiting_turn"
    STREAMING_TURN = "streaming_turn"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETE = "complete"
    FAILED = "failed"


class TerminationReason(str, Enum):
    """Why a run stopped."""

    NO_TOOL_CALLS = "no_tool_calls"
    DUPLICATE_CALL = "duplicate_call"
    ROUND_LIMIT = "round_limit"
    ERROR = "error"


@dataclass
class LoopResult:
    """Outcome of processing one user message."""

    session_id: str
    state: LoopState = LoopState.AWAITING_TURN
    reason: Optional[TerminationReason] = None
    rounds: int = 0
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    notice: Optional[str] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state is LoopState.COMPLETE

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "rounds": self.rounds,
            "messages": [m.to_dict() for m in self.messages],
            "tool_results": [r.to_dict() for r in self.tool_results],
            "notice": self.notice,
            "error": self.error,
        }


def format_tool_result(call: ToolCall, result: ToolResult) -> str:
    """Render a tool result as the system message fed back to the model."""
    payload = json.dumps(result.to_dict(), ensure_ascii=False, default=str)
    return f"Tool {call.name} result: {payload}"


class Orchestrator:
    """Runs the emit-text / call-tools / feed-results-back loop per session."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        registry: ToolRegistry,
        sessions: Optional[SessionStore] = None,
        config: Optional[DeskPilotConfig] = None,
        executor: Optional[TaskExecutor] = None,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._sessions = sessions or SessionStore()
        self._config = config or getattr(adapter, "config", None) or DeskPilotConfig()
        self._executor = executor or TaskExecutor(registry)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def executor(self) -> TaskExecutor:
        return self._executor

    @property
    def config(self) -> DeskPilotConfig:
        return self._config

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def run(
        self, session_id: str, text: str, stream: bool = True
    ) -> AsyncIterator[ChatEvent]:
        """Process one user message, yielding transport events as they happen."""
        async for event in self._run(session_id, text, stream, LoopResult(session_id)):
            yield event

    async def process_message(
        self, session_id: str, text: str, stream: bool = True
    ) -> LoopResult:
        """Process one user message to completion and return its outcome."""
        result = LoopResult(session_id)
        async for _event in self._run(session_id, text, stream, result):
            pass
        return result

    async def end_session(self, session_id: str) -> None:
        """Release the tool resources held by a session."""
        await self._sessions.release_resources(session_id)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
        logger.info("Session %s ended; resources released", session_id)

    async def aclose(self) -> None:
        """Release every session's resources."""
        for session in self._sessions.list_sessions():
            await self._sessions.release_resources(session.id)

    # -----------------------------------------------------------------------
    # Loop
    # -----------------------------------------------------------------------

    async def _run(
        self, session_id: str, text: str, stream: bool, result: LoopResult
    ) -> AsyncIterator[ChatEvent]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get_or_create(session_id)
            self._sessions.add_message(session_id, Role.USER, text)
            yield StreamStartEvent(session_id=session_id)

            last_executed: Optional[ToolCall] = None
            try:
                while True:
                    result.rounds += 1
                    round_no = result.rounds
                    result.state = LoopState.STREAMING_TURN
                    logger.info(
                        "Session %s: round %d/%d", session_id, round_no, self._config.max_rounds
                    )

                    turn_text: list[str] = []
                    calls: list[ToolCall] = []
                    async for chunk in self._turn(self._build_context(session_id), stream):
                        if chunk.text:
                            turn_text.append(chunk.text)
                            yield StreamChunkEvent.text(session_id, chunk.text)
                        if chunk.tool_call is not None:
                            calls.append(chunk.tool_call)
                            yield StreamChunkEvent.call(session_id, chunk.tool_call)

                    content = "".join(turn_text)
                    stored = strip_tool_markup(content)
                    if stored:
                        self._sessions.add_message(session_id, Role.ASSISTANT, stored)

                    if not calls:
                        result.reason = TerminationReason.NO_TOOL_CALLS
                        break

                    if (
                        round_no >= 2
                        and last_executed is not None
                        and not visible_text(content)
                        and calls[0].signature() == last_executed.signature()
                    ):
                        logger.warning(
                            "Session %s: model repeated %s with identical arguments; stopping",
                            session_id,
                            calls[0].name,
                        )
                        result.reason = TerminationReason.DUPLICATE_CALL
                        result.notice = COMPLETION_NOTICE
                        break

                    if round_no >= self._config.max_rounds:
                        logger.warning(
                            "Session %s: reached %d rounds; %d tool call(s) not executed",
                            session_id,
                            round_no,
                            len(calls),
                        )
                        result.reason = TerminationReason.ROUND_LIMIT
                        result.notice = ROUND_LIMIT_NOTICE
                        break

                    result.state = LoopState.EXECUTING_TOOLS
                    context = ToolContext(session_id=session_id, resources=session.resources)
                    for call in calls:
                        tool_result = await self._executor.run_call(call, session_id, context)
                        result.tool_results.append(tool_result)
                        self._sessions.add_message(
                            session_id, Role.SYSTEM, format_tool_result(call, tool_result)
                        )
                        yield ToolResultEvent.from_result(session_id, call, tool_result)
                    last_executed = calls[-1]

            except (DeskPilotError, httpx.HTTPError) as e:
                logger.error("Session %s: round %d failed: %s", session_id, result.rounds, e)
                result.state = LoopState.FAILED
                result.reason = TerminationReason.ERROR
                result.error = str(e)
                result.messages = self._sessions.get_messages(session_id)
                yield ErrorEvent(session_id=session_id, message=str(e))
                return

            result.state = LoopState.COMPLETE
            logger.info(
                "Session %s: complete after %d round(s) (%s)",
                session_id,
                result.rounds,
                result.reason.value,
            )
            if result.notice:
                yield StreamChunkEvent.text(session_id, result.notice)
            result.messages = self._sessions.get_messages(session_id)
            yield StreamEndEvent.from_log(session_id, result.messages)

    def _build_context(self, session_id: str) -> list[Message]:
        prompt = build_system_prompt(
            self._registry.list_definitions(), self._config.system_prompt
        )
        history = self._sessions.get_messages(session_id, self._config.context_window)
        return [Message(role=Role.SYSTEM, content=prompt)] + history

    async def _turn(self, messages: list[Message], stream: bool) -> AsyncIterator[StreamChunk]:
        """Yield one turn's chunks, ending at the final chunk or end of stream."""
        tools = self._registry.list_definitions()

        if not stream:
            response = await self._adapter.chat(messages, tools)
            for chunk in response.to_chunks():
                yield chunk
            return

        timeout = self._config.stream_timeout
        chunks = self._adapter.stream(messages, tools)
        thinking_open = False
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    if thinking_open:
                        yield StreamChunk(text=THINKING_CLOSE)
                    raise StreamTimeoutError(
                        f"No stream data received for {timeout:g}s",
                        provider=getattr(self._adapter, "name", None),
                        timeout=timeout,
                    ) from e
                except (DeskPilotError, httpx.HTTPError):
                    if thinking_open:
                        yield StreamChunk(text=THINKING_CLOSE)
                    raise
                if chunk.text:
                    thinking_open = thinking_left_open(thinking_open, chunk.text)
                yield chunk
                if chunk.is_final:
                    return
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
