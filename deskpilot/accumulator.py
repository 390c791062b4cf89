"""
Tool-call accumulator.

Providers deliver tool calls in pieces: the id and name arrive once, the
argument JSON arrives as text fragments spread over many wire events. The
accumulator reassembles one call and parses its arguments when the provider
signals the call is complete.

Usage:
    ```python
    acc = ToolCallAccumulator()
    acc.start("call_1", "read_file")
    acc.append('{"path": ')
    acc.append('"notes.txt"}')
    call = acc.finalize()   # ToolCall(id="call_1", name="read_file", arguments={...})
    ```
"""

import json
import logging
import uuid
from enum import Enum
from typing import Any, Hashable, Optional, Union

from .exceptions import ToolArgumentError
from .models import ToolCall

logger = logging.getLogger("deskpilot.accumulator")


class ArgumentPolicy(str, Enum):
    """What to do with tool-call argument text that is not a JSON object."""

    EMPTY = "empty"
    ABORT = "abort"


class AccumulatorState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZED = "finalized"


def generate_call_id() -> str:
    return f"call-{uuid.uuid4().hex[:12]}"


def parse_arguments(text: Union[str, dict, None]) -> dict[str, Any]:
    """Parse raw argument text into a mapping.

    Empty text means "no arguments". Anything that is not a JSON object
    raises ToolArgumentError.
    """
    if text is None:
        return {}
    if isinstance(text, dict):
        return dict(text)
    if not text.strip():
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolArgumentError(f"Invalid JSON arguments: {e.msg}", raw=text) from e
    if not isinstance(value, dict):
        raise ToolArgumentError(
            f"Arguments must be a JSON object, got {type(value).__name__}", raw=text
        )
    return value


def build_tool_call(
    call_id: Optional[str],
    name: str,
    raw_arguments: Union[str, dict, None],
    policy: Union[ArgumentPolicy, str] = ArgumentPolicy.EMPTY,
) -> Optional[ToolCall]:
    """Create a ToolCall from raw parts, applying the argument policy.

    Returns None when the policy is ``abort`` and the arguments are malformed.
    """
    policy = ArgumentPolicy(policy)
    call_id = call_id or generate_call_id()
    try:
        arguments = parse_arguments(raw_arguments)
    except ToolArgumentError as e:
        if policy is ArgumentPolicy.ABORT:
            logger.warning(
                "Dropping tool call %s (%s): %s; raw=%r", name, call_id, e.message, e.raw[:200]
            )
            return None
        logger.warning(
            "Tool call %s (%s) has malformed arguments, using {}: %s; raw=%r",
            name,
            call_id,
            e.message,
            e.raw[:200],
        )
        return ToolCall(id=call_id, name=name, arguments={}, argument_error=e.message)
    return ToolCall(id=call_id, name=name, arguments=arguments)


class ToolCallAccumulator:
    """Per-call state machine: IDLE -> ACCUMULATING -> FINALIZED."""

    def __init__(self, policy: Union[ArgumentPolicy, str] = ArgumentPolicy.EMPTY) -> None:
        self._policy = ArgumentPolicy(policy)
        self._state = AccumulatorState.IDLE
        self._id: Optional[str] = None
        self._name = ""
        self._fragments: list[str] = []

    @property
    def state(self) -> AccumulatorState:
        return self._state

    @property
    def call_id(self) -> Optional[str]:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    def start(self, call_id: Optional[str], name: Optional[str]) -> None:
        if self._state is not AccumulatorState.IDLE:
            raise RuntimeError(f"Accumulator already {self._state.value}")
        self._id = call_id or generate_call_id()
        self._name = name or ""
        self._state = AccumulatorState.ACCUMULATING

    def update(self, call_id: Optional[str] = None, name: Optional[str] = None) -> None:
        """Fill in an id or name that arrived after the call was opened."""
        if call_id and not self._id:
            self._id = call_id
        if name and not self._name:
            self._name = name

    def append(self, fragment: Optional[str]) -> None:
        if self._state is not AccumulatorState.ACCUMULATING:
            raise RuntimeError(f"Cannot append to a {self._state.value} accumulator")
        if fragment:
            self._fragments.append(fragment)

    def finalize(self) -> Optional[ToolCall]:
        if self._state is not AccumulatorState.ACCUMULATING:
            raise RuntimeError(f"Cannot finalize a {self._state.value} accumulator")
        self._state = AccumulatorState.FINALIZED
        return build_tool_call(self._id, self._name, self.text, self._policy)


class ToolCallAccumulatorSet:
    """Independent accumulators keyed by call identity, finalized in first-seen order."""

    def __init__(self, policy: Union[ArgumentPolicy, str] = ArgumentPolicy.EMPTY) -> None:
        self._policy = ArgumentPolicy(policy)
        self._accumulators: dict[Hashable, ToolCallAccumulator] = {}
        self._last_key: Optional[Hashable] = None

    def __len__(self) -> int:
        return len(self._accumulators)

    def feed(
        self,
        key: Optional[Hashable],
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        fragment: Optional[str] = None,
    ) -> None:
        """Route one wire fragment to the accumulator for ``key``.

        A fragment without a key belongs to the most recently opened call.
        """
        if key is None:
            key = call_id if call_id is not None else self._last_key
        if key is None:
            logger.debug("Dropping tool-call fragment with no call to attach to")
            return

        acc = self._accumulators.get(key)
        if acc is None:
            acc = ToolCallAccumulator(self._policy)
            acc.start(call_id, name)
            self._accumulators[key] = acc
        else:
            acc.update(call_id, name)
        self._last_key = key
        acc.append(fragment)

    def finalize_all(self) -> list[ToolCall]:
        calls = []
        for acc in self._accumulators.values():
            if acc.state is AccumulatorState.ACCUMULATING:
                call = acc.finalize()
                if call is not None:
                    calls.append(call)
        self._accumulators.clear()
        self._last_key = None
        return calls
