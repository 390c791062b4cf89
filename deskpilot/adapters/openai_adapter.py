"""Chat-completions provider adapter (OpenAI, DeepSeek and compatible APIs).

Wire format: ``POST {base_url}/chat/completions``. Streaming responses are
SSE events carrying ``choices[0].delta``. A tool call's id and name arrive
once; its argument text arrives across many deltas keyed by the call's
``index``. ``finish_reason`` marks the point where every open call is
parsed and surfaced.

DeepSeek reasoning models stream ``reasoning_content`` ahead of the answer;
it is wrapped in the thinking sentinels so callers can render it apart.

Example:
    from deskpilot import DeskPilotConfig
    from deskpilot.adapters import OpenAIAdapter

    adapter = OpenAIAdapter(DeskPilotConfig(provider="openai", api_key="sk-..."))
    async for chunk in adapter.stream(messages, tools):
        ...
"""

from typing import Any, AsyncIterator, Optional

from deskpilot.accumulator import ToolCallAccumulatorSet, build_tool_call
from deskpilot.adapters.base import BaseAdapter, ProviderFamily, ThinkingSentinels, wrap_thinking
from deskpilot.models import Message, Response, StreamChunk, ToolDefinition, Usage
from deskpilot.streaming import iter_sse_events


class OpenAIAdapter(BaseAdapter):
    """Adapter for chat-completions style APIs (delta-accumulation family)."""

    name = "openai"
    family = ProviderFamily.DELTA
    _endpoint = "/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        return [{"role": m.role.value, "content": m.content} for m in messages]

    def _build_request(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]],
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._format_messages(messages),
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_tokens,
            "stream": stream,
        }
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
        return body

    def _parse_response(self, data: dict[str, Any]) -> Response:
        choice = data["choices"][0]
        message = choice.get("message") or {}

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            call = build_tool_call(
                tc.get("id"),
                func.get("name", ""),
                func.get("arguments"),
                self._argument_policy,
            )
            if call is not None:
                tool_calls.append(call)

        usage = data.get("usage") or {}
        return Response(
            content=wrap_thinking(
                message.get("reasoning_content") or "", message.get("content") or ""
            ),
            tool_calls=tool_calls,
            usage=Usage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            ),
            finish_reason=choice.get("finish_reason"),
        )

    async def _translate_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        calls = ToolCallAccumulatorSet(self._argument_policy)
        thinking = ThinkingSentinels()

        async for event in iter_sse_events(lines):
            if event.is_done:
                break
            choices = event.data.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}

            reasoning = delta.get("reasoning_content")
            if reasoning:
                marker = thinking.open()
                if marker:
                    yield StreamChunk(text=marker)
                yield StreamChunk(text=reasoning)

            content = delta.get("content")
            if content:
                marker = thinking.close()
                if marker:
                    yield StreamChunk(text=marker)
                yield StreamChunk(text=content)

            for tc in delta.get("tool_calls") or []:
                func = tc.get("function") or {}
                calls.feed(
                    tc.get("index"),
                    call_id=tc.get("id"),
                    name=func.get("name"),
                    fragment=func.get("arguments"),
                )

            if choice.get("finish_reason"):
                break

        marker = thinking.close()
        if marker:
            yield StreamChunk(text=marker)
        for call in calls.finalize_all():
            yield StreamChunk(tool_call=call)
        yield StreamChunk(is_final=True)


class DeepSeekAdapter(OpenAIAdapter):
    """DeepSeek chat and reasoner models over the chat-completions wire format."""

    name = "deepseek"
