"""Base adapter for LLM provider integrations.

Every provider variant exposes the same two operations:

* ``chat(messages, tools)`` - one blocking request, retried on failure with
  a linearly growing delay.
* ``stream(messages, tools)`` - a single-pass async iterator of canonical
  :class:`~deskpilot.models.StreamChunk` objects. Never retried: partial
  output may already have been delivered.

Variants only hold immutable configuration and their HTTP client. All
per-turn parsing state (accumulators, open thinking blocks) lives inside
the iterator created by each ``stream()`` call.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol, runtime_checkable

import httpx

from deskpilot.accumulator import ArgumentPolicy
from deskpilot.config import DeskPilotConfig
from deskpilot.exceptions import ProviderError, StreamTimeoutError, TransientProviderError
from deskpilot.models import Message, Response, Role, StreamChunk, ToolDefinition
from deskpilot.streaming import read_error_body

logger = logging.getLogger("deskpilot.adapters")

THINKING_OPEN = "[thinking]"
THINKING_CLOSE = "[/thinking]"


class ProviderFamily(str, Enum):
    """Wire-protocol family a provider variant speaks."""

    DELTA = "delta"
    CONTENT_BLOCK = "content_block"
    LINE_DELIMITED = "line_delimited"
    HYBRID = "hybrid"


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability interface shared by all provider variants."""

    name: str
    family: ProviderFamily

    async def chat(
        self, messages: list[Message], tools: Optional[list[ToolDefinition]] = None
    ) -> Response: ...

    def stream(
        self, messages: list[Message], tools: Optional[list[ToolDefinition]] = None
    ) -> AsyncIterator[StreamChunk]: ...

    async def aclose(self) -> None: ...


@dataclass
class AdapterConfig:
    """Observability hooks for provider adapters.

    Attributes:
        on_error: Optional callback for adapter errors: failed streams,
            exhausted retries and hooks that raise. Signature:
            (error: Exception, context: dict) -> None
        on_stream_start: Optional callback invoked when a stream begins.
            Signature: (stream_id: str, model: str, provider: str) -> None
        on_token: Optional callback invoked for each text delta during
            streaming. Signature: (token: str, stream_id: str) -> None
        on_stream_end: Optional callback invoked when a stream completes.
            Signature: (stream_id: str, content: str, chunks: int) -> None
        on_stream_error: Optional callback invoked when a stream fails.
            Signature: (error: Exception, stream_id: str) -> None
    """

    on_error: Optional[Callable[[Exception, dict[str, Any]], None]] = None
    on_stream_start: Optional[Callable[[str, str, str], None]] = None
    on_token: Optional[Callable[[str, str], None]] = None
    on_stream_end: Optional[Callable[[str, str, int], None]] = None
    on_stream_error: Optional[Callable[[Exception, str], None]] = None


class ThinkingSentinels:
    """Keeps chain-of-thought open/close markers balanced within one stream."""

    def __init__(self) -> None:
        self.is_open = False

    def open(self) -> Optional[str]:
        if self.is_open:
            return None
        self.is_open = True
        return THINKING_OPEN

    def close(self) -> Optional[str]:
        if not self.is_open:
            return None
        self.is_open = False
        return THINKING_CLOSE


def thinking_left_open(is_open: bool, text: str) -> bool:
    """Return whether a thinking segment is still open after emitting ``text``."""
    opened = text.rfind(THINKING_OPEN)
    closed = text.rfind(THINKING_CLOSE)
    if opened == closed == -1:
        return is_open
    return opened > closed


def wrap_thinking(thinking: str, text: str) -> str:
    """Prefix non-streamed text with its sentinel-wrapped thinking."""
    if not thinking:
        return text
    return f"{THINKING_OPEN}{thinking}{THINKING_CLOSE}{text}"


class BaseAdapter:
    """Shared plumbing for provider variants.

    Subclasses implement the wire translation:

    * ``_endpoint`` - request path appended to the base URL
    * ``_headers()`` - authentication and protocol headers
    * ``_build_request(messages, tools, stream)`` - vendor request body
    * ``_parse_response(data)`` - vendor JSON -> :class:`Response`
    * ``_translate_stream(lines)`` - vendor stream lines -> StreamChunks
    """

    name = "base"
    family = ProviderFamily.DELTA
    _endpoint = ""

    def __init__(
        self,
        config: DeskPilotConfig,
        adapter_config: Optional[AdapterConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the adapter.

        Args:
            config: Provider and model settings.
            adapter_config: Optional observability hooks.
            http_client: Optional pre-built client (e.g. with a mock transport).
                When omitted the adapter owns and closes its own client.
        """
        self._config = config
        self._hooks = adapter_config or AdapterConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout)
        )
        self._argument_policy = ArgumentPolicy(config.argument_policy)

    @property
    def config(self) -> DeskPilotConfig:
        """The provider configuration."""
        return self._config

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def url(self) -> str:
        return f"{self._config.base_url}{self._endpoint}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BaseAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -----------------------------------------------------------------------
    # Wire translation hooks
    # -----------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _build_request(
        self,
        messages: list[Message],
        tools: Optional[list[ToolDefinition]],
        stream: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: dict[str, Any]) -> Response:
        raise NotImplementedError

    def _translate_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def chat(
        self, messages: list[Message], tools: Optional[list[ToolDefinition]] = None
    ) -> Response:
        """Send one non-streaming request, retrying transient failures."""
        body = self._build_request(messages, tools, stream=False)
        data = await self._post_with_retry(body)
        try:
            return self._parse_response(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(
                f"{self.name} returned an unexpected payload: {e}",
                provider=self.name,
                response=data,
            ) from e

    async def stream(
        self, messages: list[Message], tools: Optional[list[ToolDefinition]] = None
    ) -> AsyncIterator[StreamChunk]:
        """Stream one assistant turn as canonical chunks."""
        stream_id = self._generate_id()
        body = self._build_request(messages, tools, stream=True)
        self._invoke_stream_start(stream_id)

        content_parts: list[str] = []
        chunk_count = 0
        thinking_open = False
        try:
            async with self._client.stream(
                "POST",
                self.url,
                json=body,
                headers=self._headers(),
                timeout=httpx.Timeout(
                    self._config.request_timeout, read=self._config.stream_timeout
                ),
            ) as response:
                if response.status_code >= 400:
                    detail = await read_error_body(response)
                    raise ProviderError(
                        f"{self.name} stream failed with status {response.status_code}: {detail}",
                        provider=self.name,
                        status_code=response.status_code,
                        response=detail,
                    )
                logger.debug("%s stream %s opened", self.name, stream_id)
                async for chunk in self._translate_stream(response.aiter_lines()):
                    chunk_count += 1
                    if chunk.text:
                        content_parts.append(chunk.text)
                        thinking_open = thinking_left_open(thinking_open, chunk.text)
                        self._invoke_on_token(chunk.text, stream_id)
                    yield chunk
        except (httpx.HTTPError, ProviderError) as e:
            error = self._stream_failure(e)
            self._invoke_stream_error(error, stream_id)
            self._handle_error(error, {"phase": "stream", "stream_id": stream_id})
            # Output already delivered must not end inside a thinking segment.
            if thinking_open:
                yield StreamChunk(text=THINKING_CLOSE)
            if error is e:
                raise error
            raise error from e

        self._invoke_stream_end(stream_id, "".join(content_parts), chunk_count)

    def _stream_failure(self, error: Exception) -> ProviderError:
        if isinstance(error, ProviderError):
            return error
        if isinstance(error, httpx.TimeoutException):
            return StreamTimeoutError(
                f"{self.name} stream timed out: {error}",
                provider=self.name,
                timeout=self._config.stream_timeout,
            )
        return ProviderError(f"{self.name} stream transport failed: {error}", provider=self.name)

    async def _post_with_retry(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST with bounded retry; attempt ``n`` waits ``retry_delay * n`` before retrying."""
        attempts = self._config.max_retries
        last_error = ""
        last_status: Optional[int] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.post(self.url, json=body, headers=self._headers())
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            else:
                if response.is_success:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ProviderError(
                            f"{self.name} returned invalid JSON",
                            provider=self.name,
                            status_code=response.status_code,
                        ) from e
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}: {response.text[:500]}"

            if attempt < attempts:
                delay = self._config.retry_delay * attempt
                logger.warning(
                    "%s request failed (attempt %d/%d): %s; retrying in %.1fs",
                    self.name,
                    attempt,
                    attempts,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        logger.error("%s request failed after %d attempts: %s", self.name, attempts, last_error)
        error = TransientProviderError(
            f"{self.name} request failed after {attempts} attempts: {last_error}",
            provider=self.name,
            attempts=attempts,
            status_code=last_status,
        )
        self._handle_error(error, {"phase": "chat", "attempts": attempts})
        raise error

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _split_system(messages: list[Message]) -> tuple[Optional[str], list[Message]]:
        """Separate the leading system prompt from the rest of the conversation."""
        if messages and messages[0].role is Role.SYSTEM:
            return messages[0].content, list(messages[1:])
        return None, list(messages)

    def _handle_error(self, error: Exception, context: dict[str, Any]) -> None:
        """Report an adapter error to the on_error hook, if configured."""
        if self._hooks.on_error:
            try:
                self._hooks.on_error(error, context)
            except Exception:
                logger.exception("on_error hook raised")

    def _invoke_stream_start(self, stream_id: str) -> None:
        """Invoke the on_stream_start hook if configured."""
        if self._hooks.on_stream_start:
            try:
                self._hooks.on_stream_start(stream_id, self.model, self.name)
            except Exception as e:
                self._handle_error(e, {"phase": "stream_start", "stream_id": stream_id})

    def _invoke_on_token(self, token: str, stream_id: str) -> None:
        """Invoke the on_token hook if configured."""
        if self._hooks.on_token:
            try:
                self._hooks.on_token(token, stream_id)
            except Exception as e:
                self._handle_error(e, {"phase": "token", "stream_id": stream_id})

    def _invoke_stream_end(self, stream_id: str, content: str, chunks: int) -> None:
        """Invoke the on_stream_end hook if configured."""
        if self._hooks.on_stream_end:
            try:
                self._hooks.on_stream_end(stream_id, content, chunks)
            except Exception as e:
                self._handle_error(e, {"phase": "stream_end", "stream_id": stream_id})

    def _invoke_stream_error(self, error: Exception, stream_id: str) -> None:
        """Invoke the on_stream_error hook if configured."""
        logger.error("%s stream %s failed: %s", self.name, stream_id, error)
        if self._hooks.on_stream_error:
            try:
                self._hooks.on_stream_error(error, stream_id)
            except Exception as e:
                self._handle_error(e, {"phase": "stream_error", "stream_id": stream_id})

    def _generate_id(self) -> str:
        """Generate a unique ID for tracking."""
        return str(uuid.uuid4())
