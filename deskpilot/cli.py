"""
DeskPilot CLI - Talk to a provider through the orchestration loop.

Commands:
    deskpilot providers              List supported providers
    deskpilot chat -m "hello"        Send one message and print the reply
    deskpilot chat                   Interactive session (empty line or Ctrl-D exits)
"""

import argparse
import asyncio
import logging
import sys
import uuid
from typing import Optional

from . import __version__
from .config import LOG_LEVELS, PROVIDER_DEFAULTS, DeskPilotConfig, known_models
from .exceptions import ConfigurationError


def cmd_providers(args: argparse.Namespace) -> None:
    """List provider tags, their wire family and default model.

    With --verbose, also print the endpoint root and the known models.
    """
    print("Supported providers:\n")
    for tag, (family, model, base_url) in PROVIDER_DEFAULTS.items():
        print(f"  {tag:<10} {family:<15} {model}")
        if args.verbose:
            print(f"  {'':<10} {base_url}")
            print(f"  {'':<10} models: {', '.join(known_models(tag))}")


def _load_config(args: argparse.Namespace) -> DeskPilotConfig:
    overrides = {
        "provider": args.provider,
        "model": args.model,
        "log_level": args.log_level,
    }
    if args.config:
        return DeskPilotConfig.from_yaml(args.config, **overrides)
    return DeskPilotConfig.from_env(**overrides)


async def _chat(config: DeskPilotConfig, message: Optional[str], stream: bool) -> int:
    from .adapters import create_adapter
    from .events import ErrorEvent, StreamChunkEvent
    from .loop import Orchestrator
    from .sessions import SessionStore
    from .tools import ToolRegistry

    session_id = f"cli-{uuid.uuid4().hex[:8]}"
    status = 0
    async with create_adapter(config) as adapter:
        bot = Orchestrator(adapter, ToolRegistry().freeze(), SessionStore(), config)
        try:
            while True:
                text = message
                if text is None:
                    try:
                        text = input("> ").strip()
                    except EOFError:
                        text = ""
                    if not text:
                        break

                async for event in bot.run(session_id, text, stream=stream):
                    if isinstance(event, StreamChunkEvent) and event.text_delta:
                        print(event.text_delta, end="", flush=True)
                    elif isinstance(event, ErrorEvent):
                        print(f"\nError: {event.message}", file=sys.stderr)
                        status = 1
                print()

                if message is not None:
                    break
        finally:
            await bot.end_session(session_id)
    return status


def cmd_chat(args: argparse.Namespace) -> None:
    """Run one message, or an interactive session, through the loop."""
    try:
        config = _load_config(args)
        config.validate_credentials()
    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        status = asyncio.run(_chat(config, args.message, stream=not args.no_stream))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
    sys.exit(status)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deskpilot",
        description="DeskPilot CLI - Chat with an LLM through the tool-calling loop",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Providers command
    providers_parser = subparsers.add_parser("providers", help="List supported providers")
    providers_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Also show default endpoints and known models"
    )
    providers_parser.set_defaults(func=cmd_providers)

    # Chat command
    chat_parser = subparsers.add_parser("chat", help="Send a message to the model")
    chat_parser.add_argument(
        "--message", "-m", help="Message to send (omit for an interactive session)"
    )
    chat_parser.add_argument("--config", "-c", help="Path to a YAML config file")
    chat_parser.add_argument(
        "--provider",
        "-p",
        help=f"Provider tag ({', '.join(PROVIDER_DEFAULTS)}); default from DESKPILOT_PROVIDER",
    )
    chat_parser.add_argument("--model", help="Model name (default: provider default)")
    chat_parser.add_argument(
        "--no-stream", action="store_true", help="Use non-streaming requests"
    )
    chat_parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Logging level (default: info)",
    )
    chat_parser.set_defaults(func=cmd_chat)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    args.func(args)


if __name__ == "__main__":
    main()
