"""
DeskPilot - Tool registry.

The core never implements tools itself. Concrete tools (filesystem, process
control, pointer/keyboard, browser automation) are registered here by the
host application at startup; the loop only sees the catalog and the
``execute(name, arguments) -> ToolResult`` contract.

Usage:
    ```python
    from deskpilot import ToolRegistry, define_tool

    @define_tool(description="Capture the screen.", parameters={
        "type": "object",
        "properties": {"filePath": {"type": "string"}},
    })
    async def screenshot(filePath: str = "screen.png") -> dict:
        ...
        return {"path": filePath}

    registry = ToolRegistry()
    registry.add(screenshot)
    registry.freeze()
    ```
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from .models import ToolDefinition, ToolResult

logger = logging.getLogger("deskpilot.tools")

DEFAULT_PARAMETERS = {"type": "object", "properties": {}}


class SessionResources:
    """Long-lived tool resources owned by exactly one session.

    A resource (for example an automation-controlled browser) is created on
    first use through ``acquire`` and released when the session ends.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._resources: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    def __contains__(self, key: str) -> bool:
        return key in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, key: str) -> Any:
        return self._resources.get(key)

    async def acquire(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the resource for ``key``, creating it with ``factory`` on first use."""
        if self._closed:
            raise RuntimeError(f"Resources for session {self.session_id} are already released")
        async with self._lock:
            if key not in self._resources:
                resource = factory()
                if inspect.isawaitable(resource):
                    resource = await resource
                self._resources[key] = resource
                logger.debug("Acquired resource %r for session %s", key, self.session_id)
            return self._resources[key]

    async def aclose(self) -> None:
        """Release every resource, newest first."""
        self._closed = True
        while self._resources:
            key, resource = self._resources.popitem()
            try:
                if hasattr(resource, "aclose"):
                    await resource.aclose()
                elif hasattr(resource, "close"):
                    result = resource.close()
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                logger.exception(
                    "Failed to release resource %r for session %s", key, self.session_id
                )
            else:
                logger.debug("Released resource %r for session %s", key, self.session_id)


@dataclass
class ToolContext:
    """Per-invocation context handed to handlers that accept a ``context`` argument."""

    session_id: Optional[str] = None
    resources: Optional[SessionResources] = None
    task_id: Optional[str] = None


ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class ToolSpec:
    """A tool definition bundled with the callable that implements it."""

    definition: ToolDefinition
    handler: ToolHandler
    accepts_context: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        try:
            params = inspect.signature(self.handler).parameters
        except (TypeError, ValueError):
            params = {}
        self.accepts_context = "context" in params

    @property
    def name(self) -> str:
        return self.definition.name


def define_tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
) -> Callable[[ToolHandler], ToolSpec]:
    """Decorator that turns a function into a :class:`ToolSpec`.

    The function's ``__name__`` is used as the tool name unless *name* is
    supplied; its docstring is the fallback description.
    """

    def decorator(func: ToolHandler) -> ToolSpec:
        tool_name = name or func.__name__
        return ToolSpec(
            definition=ToolDefinition(
                name=tool_name,
                description=description or (func.__doc__ or "").strip() or f"Tool: {tool_name}",
                parameters=parameters or dict(DEFAULT_PARAMETERS),
            ),
            handler=func,
        )

    return decorator


def _to_result(raw: Any) -> ToolResult:
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict) and "success" in raw:
        return ToolResult.from_dict(raw)
    return ToolResult.ok(raw)


class ToolRegistry:
    """Catalog of tools and dispatcher for their execution.

    Populated once at startup, then frozen; after ``freeze()`` the catalog is
    read-only and safe to share between concurrent sessions.
    """

    def __init__(self, tools: Optional[list[ToolSpec]] = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._frozen = False
        for spec in tools or []:
            self.add(spec)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> ToolSpec:
        """Register a handler under ``definition.name``."""
        return self.add(ToolSpec(definition=definition, handler=handler))

    def add(self, spec: ToolSpec) -> ToolSpec:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen; register tools before freeze()")
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec
        return spec

    def tool(
        self,
        name: Optional[str] = None,
        description: str = "",
        parameters: Optional[dict] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register` that leaves the function unchanged."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.add(define_tool(name, description, parameters)(func))
            return func

        return decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_definition(self, name: str) -> Optional[ToolDefinition]:
        spec = self._tools.get(name)
        return spec.definition if spec else None

    def list_definitions(self) -> list[ToolDefinition]:
        return [spec.definition for spec in self._tools.values()]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        """Run a tool. Unknown tools and handler exceptions become failure results."""
        spec = self._tools.get(name)
        if spec is None:
            logger.warning("Unknown tool requested: %s", name)
            return ToolResult.fail(f"Tool not found: {name}")

        kwargs = dict(arguments)
        if spec.accepts_context:
            kwargs["context"] = context or ToolContext()

        try:
            raw = spec.handler(**kwargs)
            if inspect.isawaitable(raw):
                raw = await raw
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolResult.fail(f"Tool execution failed: {e}")
        return _to_result(raw)
