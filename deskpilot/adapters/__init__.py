"""Provider adapters.

Each adapter translates canonical messages and tool definitions into one
vendor's wire format, and that vendor's responses and streams back into
canonical :class:`~deskpilot.models.Response` and
:class:`~deskpilot.models.StreamChunk` objects.

Supported providers:
- ``openai``, ``deepseek``: chat-completions deltas
- ``anthropic`` (alias ``claude``): Messages API content blocks, with thinking
- ``ollama``: line-delimited local inference, text only
- ``minimax``: content blocks plus inline ``<invoke>`` markup

Streaming hooks:
All adapters support streaming hooks via AdapterConfig:
- on_stream_start(stream_id, model, provider): Called when a stream begins
- on_token(token, stream_id): Called for each text delta during streaming
- on_stream_end(stream_id, content, chunks): Called when a stream completes
- on_stream_error(error, stream_id): Called when a stream fails

Example:

    from deskpilot import DeskPilotConfig
    from deskpilot.adapters import AdapterConfig, create_adapter

    hooks = AdapterConfig(on_token=lambda token, sid: print(token, end=""))
    adapter = create_adapter(DeskPilotConfig.from_env(), adapter_config=hooks)
"""

from typing import Optional, Union

import httpx

from deskpilot.adapters.anthropic_adapter import AnthropicAdapter
from deskpilot.adapters.base import (
    THINKING_CLOSE,
    THINKING_OPEN,
    AdapterConfig,
    BaseAdapter,
    ProviderAdapter,
    ProviderFamily,
)
from deskpilot.adapters.minimax_adapter import MiniMaxAdapter
from deskpilot.adapters.ollama_adapter import OllamaAdapter
from deskpilot.adapters.openai_adapter import DeepSeekAdapter, OpenAIAdapter
from deskpilot.config import (
    DeskPilotConfig,
    default_base_url,
    default_model,
    normalize_provider,
    supported_providers,
)
from deskpilot.exceptions import ConfigurationError

ADAPTERS: dict[str, type[BaseAdapter]] = {
    "deepseek": DeepSeekAdapter,
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "ollama": OllamaAdapter,
    "minimax": MiniMaxAdapter,
}


def create_adapter(
    config: Union[DeskPilotConfig, str],
    adapter_config: Optional[AdapterConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    check_credentials: bool = True,
) -> BaseAdapter:
    """Create the adapter variant for a provider.

    Args:
        config: A full configuration, or just a provider tag (defaults are
            used for everything else).
        adapter_config: Optional observability hooks.
        http_client: Optional pre-built httpx client.
        check_credentials: Raise ConfigurationError when a required API key
            is missing.

    Raises:
        ConfigurationError: Unsupported provider or missing credential.
    """
    if isinstance(config, str):
        config = DeskPilotConfig(provider=config)

    adapter_cls = ADAPTERS.get(normalize_provider(config.provider))
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported provider: {config.provider!r}")
    if check_credentials:
        config.validate_credentials()
    return adapter_cls(config, adapter_config=adapter_config, http_client=http_client)


def get_supported_providers() -> list[str]:
    """Return provider tags accepted by :func:`create_adapter`."""
    return supported_providers()


def get_default_model(provider: str) -> str:
    """Return the default model name for a provider."""
    return default_model(provider)


def get_default_base_url(provider: str) -> str:
    """Return the default endpoint root for a provider."""
    return default_base_url(provider)


__all__ = [
    "ADAPTERS",
    "AdapterConfig",
    "AnthropicAdapter",
    "BaseAdapter",
    "DeepSeekAdapter",
    "MiniMaxAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderFamily",
    "THINKING_CLOSE",
    "THINKING_OPEN",
    "create_adapter",
    "get_default_base_url",
    "get_default_model",
    "get_supported_providers",
]
