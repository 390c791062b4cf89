"""MiniMax provider adapter (hybrid text/XML family).

MiniMax serves its models through a Messages-compatible endpoint, so the
wire events are the same typed content-block events the Anthropic adapter
handles. In addition, the model may write ``<invoke name="...">`` markup
directly into its text. The adapter therefore holds structured tool calls
until the turn ends, scans the turn's full text for inline invocations, and
surfaces the union of both, de-duplicated by identical (name, arguments).
"""

import logging

from deskpilot.adapters.anthropic_adapter import AnthropicAdapter
from deskpilot.adapters.base import ProviderFamily
from deskpilot.adapters.xml_calls import extract_inline_calls, merge_tool_calls
from deskpilot.models import ToolCall

logger = logging.getLogger("deskpilot.adapters.minimax")


class MiniMaxAdapter(AnthropicAdapter):
    """Adapter for MiniMax models (structured and inline tool calls)."""

    name = "minimax"
    family = ProviderFamily.HYBRID
    _defer_tool_calls = True

    def _merge_calls(self, structured: list[ToolCall], text: str) -> list[ToolCall]:
        inline = extract_inline_calls(text)
        if inline:
            logger.info(
                "Found %d inline tool call(s) alongside %d structured call(s)",
                len(inline),
                len(structured),
            )
        return merge_tool_calls(structured, inline)
