"""Messages API provider adapter (Anthropic Claude and compatible endpoints).

Wire format: ``POST {base_url}/v1/messages``. Streaming responses are typed
SSE events:

* ``content_block_start`` opens a text, thinking or tool_use block; a
  tool_use block carries the call's id and name.
* ``content_block_delta`` appends ``text_delta``, ``thinking_delta`` or
  ``input_json_delta`` (raw argument text) to the open block.
* ``content_block_stop`` closes a block; a tool_use block is parsed here.
* ``message_stop`` ends the turn.

Thinking content is wrapped in ``[thinking]`` / ``[/thinking]``. The close
marker is synthesized when text or a tool_use block starts while thinking is
open, and again at the end of the turn, so markers always balance.

Example:
    from deskpilot import DeskPilotConfig
    from deskpilot.adapters import AnthropicAdapter

    adapter = AnthropicAdapter(DeskPilotConfig(provider="anthropic", api_key="sk-ant-..."))
    response = await adapter.chat(messages, tools)
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

from deskpilot.accumulator import ArgumentPolicy, ToolCallAccumulator, build_tool_call
from deskpilot.adapters.base import BaseAdapter, ProviderFamily, ThinkingSentinels, wrap_thinking
from deskpilot.exceptions import ProviderError
from deskpilot.models import (
    Message,
    Response,
    Role,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    Usage,
)
from deskpilot.streaming import SSEEvent, iter_sse_events

logger = logging.getLogger("deskpilot.adapters.anthropic")

ANTHROPIC_VERSION = "2023-06-01"


class ContentBlockTranslator:
    """Per-stream state for translating content-block events into chunks.

    Tool calls are surfaced in block-open order. With ``defer_tool_calls``
    they are held in :attr:`deferred_calls` instead of being emitted.
    """

    def __init__(self, policy: ArgumentPolicy, defer_tool_calls: bool = False) -> None:
        self._policy = policy
        self._defer = defer_tool_calls
        self._thinking = ThinkingSentinels()
        # block index -> accumulator, in block-open order
        self._open_blocks: dict[Any, ToolCallAccumulator] = {}
        self._queue: list[tuple[Any, Optional[ToolCall], bool]] = []
        self._text_parts: list[str] = []
        self.deferred_calls: list[ToolCall] = []
        self.stopped = False
        self.usage = Usage()

    @property
    def text(self) -> str:
        """Ordinary (non-thinking) text seen so far."""
        return "".join(self._text_parts)

    def handle(self, event: SSEEvent) -> list[StreamChunk]:
        data = event.data
        etype = data.get("type") or event.type
        chunks: list[StreamChunk] = []

        if etype == "content_block_start":
            block = data.get("content_block") or {}
            btype = block.get("type")
            if btype == "tool_use":
                self._close_thinking(chunks)
                acc = ToolCallAccumulator(self._policy)
                acc.start(block.get("id"), block.get("name"))
                initial = block.get("input")
                if isinstance(initial, dict) and initial:
                    acc.append(json.dumps(initial))
                index = data.get("index", len(self._queue))
                self._open_blocks[index] = acc
                self._queue.append((index, None, False))
            elif btype == "text" and block.get("text"):
                self._emit_text(block["text"], chunks)

        elif etype == "content_block_delta":
            delta = data.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "thinking_delta" and delta.get("thinking"):
                marker = self._thinking.open()
                if marker:
                    chunks.append(StreamChunk(text=marker))
                chunks.append(StreamChunk(text=delta["thinking"]))
            elif dtype in ("text_delta", "text") and delta.get("text"):
                self._emit_text(delta["text"], chunks)
            elif dtype == "input_json_delta":
                acc = self._open_blocks.get(data.get("index"))
                if acc is None and self._open_blocks:
                    acc = list(self._open_blocks.values())[-1]
                if acc is not None:
                    acc.append(delta.get("partial_json"))
                else:
                    logger.debug("input_json_delta with no open tool_use block")

        elif etype == "content_block_stop":
            index = data.get("index")
            acc = self._open_blocks.pop(index, None)
            if acc is not None:
                self._mark_finalized(index, acc.finalize())
                self._flush_calls(chunks)

        elif etype == "message_delta":
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                self.usage.completion_tokens = usage["output_tokens"]

        elif etype == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self.usage.prompt_tokens = usage.get("input_tokens", 0)

        elif etype == "message_stop":
            self.stopped = True

        elif etype == "error":
            error = data.get("error") or {}
            raise ProviderError(
                f"Stream error event: {error.get('message', event.raw)}",
                response=data,
            )

        return chunks

    def finish(self) -> list[StreamChunk]:
        """Close any open thinking block and surface calls still being accumulated."""
        chunks: list[StreamChunk] = []
        self._close_thinking(chunks)
        for index, acc in list(self._open_blocks.items()):
            self._mark_finalized(index, acc.finalize())
        self._open_blocks.clear()
        self._flush_calls(chunks)
        return chunks

    def _emit_text(self, text: str, chunks: list[StreamChunk]) -> None:
        self._close_thinking(chunks)
        self._text_parts.append(text)
        chunks.append(StreamChunk(text=text))

    def _close_thinking(self, chunks: list[StreamChunk]) -> None:
        marker = self._thinking.close()
        if marker:
            chunks.append(StreamChunk(text=marker))

    def _mark_finalized(self, index: Any, call: Optional[ToolCall]) -> None:
        for i, (queued_index, _, done) in enumerate(self._queue):
            if queued_index == index and not done:
                self._queue[i] = (index, call, True)
                return

    def _flush_calls(self, chunks: list[StreamChunk]) -> None:
        while self._queue and self._queue[0][2]:
            _, call, _ = self._queue.pop(0)
            if call is None:
                continue
            if self._defer:
                self.deferred_calls.append(call)
            else:
                chunks.append(StreamChunk(tool_call=call))


class AnthropicAdapter(BaseAdapter):
    """Adapter for the Messages API (content-block family)."""

    name = "anthropic"
    family = ProviderFamily.CONTENT_BLOCK
    _endpoint = "/v1/messages"
    _defer_tool_calls = False

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if self._config.api_key:
            headers["x-api-key"] = self._config.api_key
        return headers

    def _format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        # Only the leading system prompt has a dedicated field; later system
        # messages (tool results) are sent as user turns.
        return [
            {
                "role": "assistant" if m.role is Role.ASSISTANT else "user",
                "content": m.content,
            }
            for m in messages
        ]

    def _build_request(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]],
        stream: bool,
    ) -> dict[str, Any]:
        system, conversation = self._split_system(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._format_messages(conversation),
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
            "stream": stream,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = [t.to_anthropic() for t in tools]
        return body

    def _parse_response(self, data: dict[str, Any]) -> Response:
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in data.get("content") or []:
            btype = block.get("type")
            if btype == "text":
                text_parts.append(block.get("text", ""))
            elif btype == "thinking":
                thinking_parts.append(block.get("thinking", ""))
            elif btype == "tool_use":
                call = build_tool_call(
                    block.get("id"),
                    block.get("name", ""),
                    block.get("input"),
                    self._argument_policy,
                )
                if call is not None:
                    tool_calls.append(call)

        text = "".join(text_parts)
        usage = data.get("usage") or {}
        return Response(
            content=wrap_thinking("".join(thinking_parts), text),
            tool_calls=self._merge_calls(tool_calls, text),
            usage=Usage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            finish_reason=data.get("stop_reason"),
        )

    def _merge_calls(self, structured: list[ToolCall], text: str) -> list[ToolCall]:
        """Combine structured calls with any calls found in the turn's text."""
        return structured

    async def _translate_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        translator = ContentBlockTranslator(
            self._argument_policy, defer_tool_calls=self._defer_tool_calls
        )
        async for event in iter_sse_events(lines):
            for chunk in translator.handle(event):
                yield chunk
            if translator.stopped:
                break

        for chunk in translator.finish():
            yield chunk
        if self._defer_tool_calls:
            for call in self._merge_calls(translator.deferred_calls, translator.text):
                yield StreamChunk(tool_call=call)
        yield StreamChunk(is_final=True)
