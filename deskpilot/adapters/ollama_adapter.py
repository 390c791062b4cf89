"""Ollama provider adapter (line-delimited local inference).

Wire format: ``POST {base_url}/api/chat``; a streaming response is one JSON
object per line, the last one carrying ``"done": true``. Tool calling is not
used with local models: the tool catalog is ignored and the adapter only
produces text deltas and a final marker.
"""

import logging
from typing import Any, AsyncIterator, Optional

from deskpilot.adapters.base import BaseAdapter, ProviderFamily, ThinkingSentinels, wrap_thinking
from deskpilot.exceptions import ProviderError
from deskpilot.models import Message, Response, StreamChunk, ToolDefinition, Usage
from deskpilot.streaming import iter_json_lines

logger = logging.getLogger("deskpilot.adapters.ollama")


class OllamaAdapter(BaseAdapter):
    """Adapter for a local Ollama server (line-delimited family)."""

    name = "ollama"
    family = ProviderFamily.LINE_DELIMITED
    _endpoint = "/api/chat"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _build_request(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]],
        stream: bool,
    ) -> dict[str, Any]:
        if tools:
            logger.debug("Ignoring %d tool definition(s): not supported by %s", len(tools), self.name)
        return {
            "model": self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "stream": stream,
            "options": {
                "temperature": self._config.temperature,
                "num_predict": self._config.max_tokens,
            },
        }

    def _parse_response(self, data: dict[str, Any]) -> Response:
        message = data.get("message") or {}
        return Response(
            content=wrap_thinking(message.get("thinking") or "", message.get("content") or ""),
            usage=Usage(
                prompt_tokens=data.get("prompt_eval_count", 0),
                completion_tokens=data.get("eval_count", 0),
            ),
            finish_reason=data.get("done_reason"),
        )

    async def _translate_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        thinking = ThinkingSentinels()
        async for data in iter_json_lines(lines):
            if data.get("error"):
                raise ProviderError(f"Ollama stream error: {data['error']}", provider=self.name)

            message = data.get("message") or {}
            if message.get("thinking"):
                marker = thinking.open()
                if marker:
                    yield StreamChunk(text=marker)
                yield StreamChunk(text=message["thinking"])
            if message.get("content"):
                marker = thinking.close()
                if marker:
                    yield StreamChunk(text=marker)
                yield StreamChunk(text=message["content"])

            if data.get("done"):
                break

        marker = thinking.close()
        if marker:
            yield StreamChunk(text=marker)
        yield StreamChunk(is_final=True)
