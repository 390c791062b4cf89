"""
DeskPilot - Provider-normalization and tool-orchestration core for a desktop agent.

Talks to interchangeable LLM backends, converts their wire protocols into one
canonical chunk stream, and runs a bounded tool-calling loop on top of it.
"""

from .accumulator import ArgumentPolicy, ToolCallAccumulator, ToolCallAccumulatorSet
from .adapters import BaseAdapter, ProviderAdapter, ProviderFamily, create_adapter
from .config import DeskPilotConfig, known_models, resolve_provider, supported_providers
from .events import (
    ChatEvent,
    ErrorEvent,
    StreamChunkEvent,
    StreamEndEvent,
    StreamStartEvent,
    ToolResultEvent,
)
from .exceptions import (
    ConfigurationError,
    DeskPilotError,
    ProviderError,
    StreamTimeoutError,
    TaskStateError,
    ToolArgumentError,
    TransientProviderError,
)
from .loop import (
    COMPLETION_NOTICE,
    ROUND_LIMIT_NOTICE,
    LoopResult,
    LoopState,
    Orchestrator,
    TerminationReason,
)
from .models import (
    Message,
    Response,
    Role,
    Session,
    StreamChunk,
    Task,
    TaskStatus,
    ToolCall,
    ToolDefinition,
    ToolResult,
    Usage,
)
from .prompts import build_system_prompt
from .sessions import SessionStore
from .tasks import TaskCallbacks, TaskExecutor
from .tools import SessionResources, ToolContext, ToolRegistry, ToolSpec, define_tool

__version__ = "0.1.0"

__all__ = [
    # Config
    "DeskPilotConfig",
    "known_models",
    "resolve_provider",
    "supported_providers",
    # Models
    "Message",
    "Response",
    "Role",
    "Session",
    "StreamChunk",
    "Task",
    "TaskStatus",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    "Usage",
    # Adapters
    "BaseAdapter",
    "ProviderAdapter",
    "ProviderFamily",
    "create_adapter",
    # Accumulator
    "ArgumentPolicy",
    "ToolCallAccumulator",
    "ToolCallAccumulatorSet",
    # Tools and tasks
    "SessionResources",
    "ToolContext",
    "ToolRegistry",
    "ToolSpec",
    "define_tool",
    "TaskCallbacks",
    "TaskExecutor",
    # Loop
    "COMPLETION_NOTICE",
    "ROUND_LIMIT_NOTICE",
    "LoopResult",
    "LoopState",
    "Orchestrator",
    "SessionStore",
    "TerminationReason",
    "build_system_prompt",
    # Events
    "ChatEvent",
    "ErrorEvent",
    "StreamChunkEvent",
    "StreamEndEvent",
    "StreamStartEvent",
    "ToolResultEvent",
    # Exceptions
    "ConfigurationError",
    "DeskPilotError",
    "ProviderError",
    "StreamTimeoutError",
    "TaskStateError",
    "ToolArgumentError",
    "TransientProviderError",
]
