#!/usr/bin/env python3
"""
DeskPilot - Basic Chat Example

Sends one message through the orchestration loop and prints the streamed
reply. No tools are registered, so the model answers in text.

Prerequisites:
    pip install deskpilot

Usage:
    export DESKPILOT_PROVIDER=deepseek
    export DESKPILOT_API_KEY=sk-...
    python basic_chat.py "What can you do?"
"""

import asyncio
import logging
import sys

from deskpilot import (
    ConfigurationError,
    DeskPilotConfig,
    ErrorEvent,
    Orchestrator,
    StreamChunkEvent,
    StreamEndEvent,
    ToolRegistry,
    create_adapter,
)


async def main(text: str) -> int:
    try:
        config = DeskPilotConfig.from_env()
        config.validate_credentials()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=config.log_level.upper())
    print(f"Provider: {config.provider} ({config.family}), model: {config.model}\n")

    async with create_adapter(config) as adapter:
        bot = Orchestrator(adapter, ToolRegistry().freeze(), config=config)

        async for event in bot.run("example", text):
            if isinstance(event, StreamChunkEvent) and event.text_delta:
                print(event.text_delta, end="", flush=True)
            elif isinstance(event, ErrorEvent):
                print(f"\nError: {event.message}", file=sys.stderr)
                return 1
            elif isinstance(event, StreamEndEvent):
                print(f"\n\nSession log now holds {len(event.messages)} messages.")

        await bot.end_session("example")
    return 0


if __name__ == "__main__":
    message = " ".join(sys.argv[1:]) or "Hello! What can you help me with?"
    sys.exit(asyncio.run(main(message)))
