"""
DeskPilot - Canonical data models shared by adapters, the tool loop and transports.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .exceptions import TaskStateError

if TYPE_CHECKING:
    from .tools import SessionResources


class Role(str, Enum):
    """Author of a message in the conversation log."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TaskStatus(str, Enum):
    """Status of a tool invocation task in its lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class Message:
    """A single entry in a session's append-only message log."""

    role: Role
    content: str
    timestamp: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=Role(data.get("role", "user")),
            content=data.get("content", ""),
            timestamp=data.get("timestamp", 0.0),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """
    Definition of a tool the model may call.

    ``parameters`` is a JSON-schema object describing the arguments.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def to_openai(self) -> dict[str, Any]:
        """Return the chat-completions function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        """Return the Messages API tool format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolDefinition":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            parameters=data.get("parameters") or {"type": "object", "properties": {}},
        )


@dataclass(frozen=True)
class ToolCall:
    """
    A fully finalized tool invocation requested by the model.

    ``arguments`` is always a mapping. When the raw argument text could not
    be parsed, ``argument_error`` says why and ``arguments`` is empty.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    argument_error: Optional[str] = None

    def signature(self) -> tuple[str, str]:
        """Identity used to compare calls regardless of their id."""
        return (self.name, json.dumps(self.arguments, sort_keys=True, default=str))

    def to_dict(self) -> dict[str, Any]:
        result = {"id": self.id, "name": self.name, "arguments": self.arguments}
        if self.argument_error:
            result["argument_error"] = self.argument_error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=dict(data.get("arguments") or {}),
            argument_error=data.get("argument_error"),
        )


@dataclass
class Usage:
    """Token accounting reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Response:
    """Result of a non-streaming chat call."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_chunks(self) -> list["StreamChunk"]:
        """Express this response as the canonical chunk sequence of one turn."""
        chunks: list[StreamChunk] = []
        if self.content:
            chunks.append(StreamChunk(text=self.content))
        for call in self.tool_calls:
            chunks.append(StreamChunk(tool_call=call))
        chunks.append(StreamChunk(is_final=True))
        return chunks

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "usage": self.usage.to_dict(),
            "finish_reason": self.finish_reason,
        }


@dataclass(frozen=True)
class StreamChunk:
    """
    Normalized unit of a streamed assistant turn.

    Carries a text delta, a finalized tool call, or the end-of-turn flag.
    """

    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    is_final: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"is_final": self.is_final}
        if self.text is not None:
            result["text"] = self.text
        if self.tool_call is not None:
            result["tool_call"] = self.tool_call.to_dict()
        return result


@dataclass
class ToolResult:
    """Outcome of a tool execution. Failures are values, never exceptions."""

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            success=bool(data.get("success", False)),
            data=data.get("data"),
            error=data.get("error"),
        )


@dataclass
class Task:
    """
    Lifecycle record wrapping one tool invocation.

    Moves pending -> running -> completed | failed | cancelled. A pending
    task may also be cancelled before dispatch. Terminal states are final.
    """

    id: str
    tool_call: ToolCall
    session_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[ToolResult] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def can_transition(self, status: TaskStatus) -> bool:
        return status in _TASK_TRANSITIONS[self.status]

    def transition(self, status: TaskStatus) -> None:
        if not self.can_transition(status):
            raise TaskStateError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "tool_call": self.tool_call.to_dict(),
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Session:
    """A conversation owning its ordered message log and scoped resources."""

    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    resources: Optional["SessionResources"] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
