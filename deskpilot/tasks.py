"""
DeskPilot - Task wrapper around tool execution.

Every tool call the loop executes is wrapped in a :class:`~deskpilot.models.Task`
that moves through ``pending -> running -> completed | failed``, with
best-effort cancellation. Observers are notified at each step through
:class:`TaskCallbacks`.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Union

from .models import Task, TaskStatus, ToolCall, ToolResult
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger("deskpilot.tasks")

Callback = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class TaskCallbacks:
    """Lifecycle observers.

    Attributes:
        on_task_update: Called with the Task after every status change.
        on_tool_call: Called with (task, tool_call) just before dispatch.
        on_tool_result: Called with (task, result) after the tool returns.
    """

    on_task_update: Optional[Callback] = None
    on_tool_call: Optional[Callback] = None
    on_tool_result: Optional[Callback] = None


class TaskExecutor:
    """Runs tool calls through a :class:`ToolRegistry`, tracking each as a Task."""

    def __init__(
        self,
        registry: ToolRegistry,
        callbacks: Optional[TaskCallbacks] = None,
    ) -> None:
        self._registry = registry
        self._callbacks = callbacks or TaskCallbacks()
        self._tasks: dict[str, Task] = {}
        self._pending_notifications: set[asyncio.Task] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def create_task(self, tool_call: ToolCall, session_id: Optional[str] = None) -> Task:
        """Create a pending task for a tool call and index it."""
        task = Task(
            id=f"task-{uuid.uuid4().hex[:12]}",
            tool_call=tool_call,
            session_id=session_id,
        )
        self._tasks[task.id] = task
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_running_tasks(self) -> list[Task]:
        return [t for t in self._tasks.values() if t.status is TaskStatus.RUNNING]

    def list_tasks(self, session_id: Optional[str] = None) -> list[Task]:
        if session_id is None:
            return list(self._tasks.values())
        return [t for t in self._tasks.values() if t.session_id == session_id]

    def cancel_task(self, task_id: str) -> bool:
        """Mark a pending or running task cancelled.

        A running tool is not interrupted; its result is still recorded
        when it returns, but the task keeps the ``cancelled`` status.
        """
        task = self._tasks.get(task_id)
        if task is None or not task.can_transition(TaskStatus.CANCELLED):
            return False
        task.transition(TaskStatus.CANCELLED)
        logger.info("Cancelled task %s (%s)", task.id, task.tool_call.name)
        self._notify_soon("on_task_update", task)
        return True

    async def execute(self, task: Task, context: Optional[ToolContext] = None) -> Task:
        """Run one task to a terminal state."""
        if task.status is TaskStatus.CANCELLED:
            logger.info("Skipping cancelled task %s", task.id)
            return task

        task.transition(TaskStatus.RUNNING)
        await self._notify("on_task_update", task)

        call = task.tool_call
        await self._notify("on_tool_call", task, call)
        logger.info("Executing tool %s (task %s)", call.name, task.id)

        if context is None:
            context = ToolContext(session_id=task.session_id)
        context = replace(context, task_id=task.id)
        result = await self._registry.execute(call.name, call.arguments, context)

        task.result = result
        if not result.success:
            task.error = result.error
        await self._notify("on_tool_result", task, result)

        if task.status is TaskStatus.CANCELLED:
            logger.info("Task %s finished after cancellation; result kept", task.id)
            await self._notify("on_task_update", task)
            return task

        task.transition(TaskStatus.COMPLETED if result.success else TaskStatus.FAILED)
        await self._notify("on_task_update", task)
        return task

    async def execute_all(
        self,
        tool_calls: list[ToolCall],
        session_id: Optional[str] = None,
        context: Optional[ToolContext] = None,
    ) -> list[Task]:
        """Execute calls in order. A failed call does not stop the rest."""
        tasks = []
        for call in tool_calls:
            task = self.create_task(call, session_id=session_id)
            await self.execute(task, context)
            tasks.append(task)
        return tasks

    async def run_call(
        self,
        tool_call: ToolCall,
        session_id: Optional[str] = None,
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        """Create, execute and return the result of a single call."""
        task = await self.execute(self.create_task(tool_call, session_id), context)
        return task.result or ToolResult.fail("Task was cancelled before it ran")

    async def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Task callback %s raised", name)

    def _notify_soon(self, name: str, *args: Any) -> None:
        """Notify from synchronous code; async callbacks run on the current loop."""
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Task callback %s raised", name)
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; async %s callback dropped", name)
            if inspect.iscoroutine(result):
                result.close()
            return
        pending = loop.create_task(self._await_callback(name, result))
        self._pending_notifications.add(pending)
        pending.add_done_callback(self._pending_notifications.discard)

    async def _await_callback(self, name: str, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Task callback %s raised", name)
