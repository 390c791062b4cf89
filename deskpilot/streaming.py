"""
DeskPilot - Wire stream readers.

Turns an httpx streaming response into Server-Sent Events (chat-completion
and content-block providers) or into decoded JSON objects (line-delimited
local-inference providers).
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

logger = logging.getLogger("deskpilot.streaming")

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """An event received from a provider's SSE stream."""

    type: str
    data: dict[str, Any]
    id: Optional[str] = None
    raw: str = ""

    @classmethod
    def from_raw(
        cls, event_type: str, data_str: str, event_id: Optional[str] = None
    ) -> "SSEEvent":
        """Create an SSEEvent from raw SSE data."""
        try:
            data = json.loads(data_str) if data_str else {}
        except json.JSONDecodeError:
            data = {"raw": data_str}
        if not isinstance(data, dict):
            data = {"raw": data}
        if event_type == "message" and isinstance(data.get("type"), str):
            event_type = data["type"]
        return cls(type=event_type, data=data, id=event_id, raw=data_str)

    @property
    def is_done(self) -> bool:
        return self.raw == DONE_SENTINEL


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Parse SSE lines into events.

    Events without an ``event:`` field take their type from the JSON
    payload's ``type`` key when present.
    """
    event_type = "message"
    event_data = ""
    event_id: Optional[str] = None

    async for line in lines:
        line = line.rstrip("\r\n")

        if line.startswith(":"):
            continue

        if not line.strip():
            if event_data:
                yield SSEEvent.from_raw(event_type, event_data.strip(), event_id)
            event_type = "message"
            event_data = ""
            event_id = None
            continue

        if ":" in line:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
        else:
            field = line
            value = ""

        if field == "event":
            event_type = value
        elif field == "data":
            event_data += value + "\n"
        elif field == "id":
            event_id = value

    if event_data:
        yield SSEEvent.from_raw(event_type, event_data.strip(), event_id)


async def iter_json_lines(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode newline-delimited JSON, skipping blank and unparseable lines."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparseable stream line: %r", line[:200])
            continue
        if isinstance(data, dict):
            yield data


async def read_error_body(response: httpx.Response) -> str:
    """Read a (possibly streaming) error response body for diagnostics."""
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return ""
    return body.decode("utf-8", errors="replace")[:2000]
