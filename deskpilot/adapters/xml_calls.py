"""Inline tool-call markup embedded in ordinary model text.

Some models write tool invocations into their prose instead of (or as well
as) using structured tool-use blocks::

    <minimax:tool_call>
    <invoke name="write_file">
      <parameters>
        <filePath>notes.txt</filePath>
        <content>hello</content>
      </parameters>
    </invoke>
    </minimax:tool_call>

This module extracts such calls, merges them with structured calls, and
strips the markup from text before it is stored. Thinking segments
(``[thinking]...[/thinking]``) are left untouched.
"""

import logging
import re
from typing import Any, Iterable

from deskpilot.accumulator import generate_call_id
from deskpilot.adapters.base import THINKING_CLOSE, THINKING_OPEN
from deskpilot.models import ToolCall

logger = logging.getLogger("deskpilot.adapters.xml_calls")

WRAPPER_RE = re.compile(r"<minimax:tool_call>.*?</minimax:tool_call>", re.S)
INVOKE_RE = re.compile(r'<invoke\s+name="([^"]+)"\s*>(.*?)</invoke>', re.S)
PARAMETERS_RE = re.compile(r"<parameters>(.*?)</parameters>", re.S)
NAMED_PARAM_RE = re.compile(r'<parameter\s+name="([^"]+)"\s*>(.*?)</parameter>', re.S)
KEY_TAG_RE = re.compile(r"<([A-Za-z_][\w\-.]*)>(.*?)</\1>", re.S)
THINKING_RE = re.compile(
    re.escape(THINKING_OPEN) + r".*?(?:" + re.escape(THINKING_CLOSE) + r"|\Z)", re.S
)


def _parse_value(raw: str) -> Any:
    if KEY_TAG_RE.search(raw) or NAMED_PARAM_RE.search(raw):
        return parse_parameters(raw)
    return raw.strip()


def parse_parameters(body: str) -> dict[str, Any]:
    """Parse nested ``<key>value</key>`` / ``<parameter name="key">`` tags into a mapping.

    Leaf values stay strings; a value that itself contains tags becomes a
    nested mapping.
    """
    wrapped = PARAMETERS_RE.search(body)
    if wrapped:
        body = wrapped.group(1)

    params: dict[str, Any] = {}
    for match in NAMED_PARAM_RE.finditer(body):
        params[match.group(1)] = _parse_value(match.group(2))

    remainder = NAMED_PARAM_RE.sub("", body)
    for match in KEY_TAG_RE.finditer(remainder):
        params[match.group(1)] = _parse_value(match.group(2))
    return params


def extract_inline_calls(text: str) -> list[ToolCall]:
    """Find every ``<invoke name="...">`` block in ``text`` and return it as a ToolCall."""
    calls = []
    for match in INVOKE_RE.finditer(text):
        name = match.group(1).strip()
        arguments = parse_parameters(match.group(2))
        logger.debug("Extracted inline tool call %s(%s)", name, arguments)
        calls.append(ToolCall(id=generate_call_id(), name=name, arguments=arguments))
    return calls


def merge_tool_calls(*groups: Iterable[ToolCall]) -> list[ToolCall]:
    """Union several call lists, keeping the first of each identical (name, arguments)."""
    seen: set[tuple[str, str]] = set()
    merged: list[ToolCall] = []
    for group in groups:
        for call in group:
            signature = call.signature()
            if signature in seen:
                logger.debug("Dropping duplicate tool call %s", call.name)
                continue
            seen.add(signature)
            merged.append(call)
    return merged


def _strip_markup(segment: str) -> str:
    segment = WRAPPER_RE.sub("", segment)
    return INVOKE_RE.sub("", segment)


def strip_tool_markup(text: str) -> str:
    """Remove inline tool-call markup, preserving thinking segments verbatim."""
    out: list[str] = []
    pos = 0
    for match in THINKING_RE.finditer(text):
        out.append(_strip_markup(text[pos : match.start()]))
        out.append(match.group(0))
        pos = match.end()
    out.append(_strip_markup(text[pos:]))
    return "".join(out).strip()


def visible_text(text: str) -> str:
    """Text the user would see as an answer: no thinking segments, no tool markup."""
    return _strip_markup(THINKING_RE.sub("", text)).strip()
