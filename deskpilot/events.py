"""
DeskPilot - Chat events pushed to a client transport.

The orchestrator yields these while a message is processed. A realtime
channel serializes them with ``event.to_payload()``, which uses the
camelCase wire names (``sessionId``, ``textDelta``, ...).
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import Message, ToolCall, ToolResult


class _Event(BaseModel):
    session_id: str = Field(..., alias="sessionId")

    class Config:
        populate_by_name = True

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StreamStartEvent(_Event):
    type: Literal["stream:start"] = "stream:start"


class StreamChunkEvent(_Event):
    type: Literal["stream:chunk"] = "stream:chunk"
    text_delta: Optional[str] = Field(None, alias="textDelta")
    tool_call: Optional[Dict[str, Any]] = Field(None, alias="toolCall")

    @classmethod
    def text(cls, session_id: str, text: str) -> "StreamChunkEvent":
        return cls(session_id=session_id, text_delta=text)

    @classmethod
    def call(cls, session_id: str, tool_call: ToolCall) -> "StreamChunkEvent":
        return cls(session_id=session_id, tool_call=tool_call.to_dict())


class ToolResultEvent(_Event):
    type: Literal["tool:result"] = "tool:result"
    tool_call_id: str = Field(..., alias="toolCallId")
    name: str
    result: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(
        cls, session_id: str, tool_call: ToolCall, result: ToolResult
    ) -> "ToolResultEvent":
        return cls(
            session_id=session_id,
            tool_call_id=tool_call.id,
            name=tool_call.name,
            result=result.to_dict(),
        )


class StreamEndEvent(_Event):
    type: Literal["stream:end"] = "stream:end"
    messages: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_log(cls, session_id: str, messages: List[Message]) -> "StreamEndEvent":
        return cls(session_id=session_id, messages=[m.to_dict() for m in messages])


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


ChatEvent = Union[StreamStartEvent, StreamChunkEvent, ToolResultEvent, StreamEndEvent, ErrorEvent]
