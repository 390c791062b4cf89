"""
DeskPilot - System prompt assembly.
"""

from typing import Optional

from .models import ToolDefinition

OPERATING_RULES = (
    "\nRules:"
    "\n- Work one step at a time: call a tool, read its result, then decide the next step."
    "\n- After each tool result, tell the user in plain text what happened."
    "\n- Never repeat a tool call with identical arguments; if the previous call"
    " already succeeded, report the result instead."
    "\n- When the task is done, answer without calling any tool."
)


def build_system_prompt(
    tools: list[ToolDefinition],
    custom_prompt: Optional[str] = None,
) -> str:
    """Build the system message sent at the head of every turn."""
    parts = []

    if custom_prompt:
        parts.append(custom_prompt)

    parts.append(
        "You are a desktop assistant that completes tasks on the user's computer"
        " by calling tools."
    )

    if tools:
        parts.append("\nYou have access to the following tools:")
        for tool in tools:
            parts.append(f"  - {tool.name}: {tool.description}")
    else:
        parts.append("\nNo tools are available; answer in text only.")

    parts.append(OPERATING_RULES)

    return "\n".join(parts)
