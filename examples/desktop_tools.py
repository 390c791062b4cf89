#!/usr/bin/env python3
"""
DeskPilot - Desktop Tools Example

Registers a few host tools, including one that keeps a per-session
resource alive across calls, and lets the model drive them through the
tool-calling loop. Task lifecycle callbacks print what is running.

Prerequisites:
    pip install deskpilot

Usage:
    export DESKPILOT_PROVIDER=minimax
    export DESKPILOT_API_KEY=...
    python desktop_tools.py
"""

import asyncio
import logging
import os
import platform
import sys
from datetime import datetime

from deskpilot import (
    ConfigurationError,
    DeskPilotConfig,
    Orchestrator,
    SessionStore,
    TaskCallbacks,
    TaskExecutor,
    ToolContext,
    ToolRegistry,
    create_adapter,
)

registry = ToolRegistry()


@registry.tool(description="Return the current local date and time.")
def get_time() -> dict:
    return {"now": datetime.now().isoformat(timespec="seconds")}


@registry.tool(
    description="List the entries of a directory.",
    parameters={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Directory to list"}},
        "required": ["path"],
    },
)
def list_dir(path: str) -> dict:
    entries = sorted(os.listdir(os.path.expanduser(path)))
    return {"path": path, "entries": entries[:50], "total": len(entries)}


class Notebook:
    """Stand-in for a browser or app handle that lives for the whole session."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def close(self) -> None:
        print(f"[notebook closed with {len(self.lines)} lines]")


@registry.tool(
    description="Append a line to the session notebook and return its contents.",
    parameters={
        "type": "object",
        "properties": {"line": {"type": "string"}},
        "required": ["line"],
    },
)
async def write_note(line: str, context: ToolContext) -> dict:
    notebook = await context.resources.acquire("notebook", Notebook)
    notebook.lines.append(line)
    return {"lines": notebook.lines}


def on_task_update(task):
    print(f"  [task {task.id}] {task.tool_call.name}: {task.status.value}")


async def main() -> int:
    try:
        config = DeskPilotConfig.from_env(max_rounds=6)
        config.validate_credentials()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=config.log_level.upper())
    registry.freeze()
    executor = TaskExecutor(registry, TaskCallbacks(on_task_update=on_task_update))

    async with create_adapter(config) as adapter:
        bot = Orchestrator(adapter, registry, SessionStore(), config, executor)
        prompt = (
            f"I'm on {platform.system()}. Tell me the time, list my home directory, "
            "and note the three largest-sounding folder names in the notebook."
        )
        result = await bot.process_message("desk", prompt)

        print(f"\nFinished in {result.rounds} round(s): {result.reason.value}")
        for message in result.messages:
            print(f"- {message.role.value}: {message.content[:120]}")

        await bot.end_session("desk")
    return 0 if result.completed else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
