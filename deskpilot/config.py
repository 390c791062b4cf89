"""
DeskPilot configuration.

All values are pass-through settings the core receives; nothing here talks
to a provider. Configuration can be built directly, from environment
variables, or from a YAML file.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .exceptions import ConfigurationError

# provider tag -> (family, default model, default base url)
PROVIDER_DEFAULTS: dict[str, tuple[str, str, str]] = {
    "deepseek": ("delta", "deepseek-chat", "https://api.deepseek.com/v1"),
    "openai": ("delta", "gpt-4o", "https://api.openai.com/v1"),
    "anthropic": ("content_block", "claude-3-5-sonnet-20241022", "https://api.anthropic.com"),
    "ollama": ("line_delimited", "llama3", "http://localhost:11434"),
    "minimax": ("hybrid", "MiniMax-M2.1", "https://api.minimaxi.com/anthropic"),
}

# provider tag -> models known to work, default first
KNOWN_MODELS: dict[str, tuple[str, ...]] = {
    "deepseek": ("deepseek-chat", "deepseek-reasoner"),
    "openai": ("gpt-4o", "gpt-4o-mini", "gpt-4"),
    "anthropic": ("claude-3-5-sonnet-20241022", "claude-3-sonnet-20240229"),
    "ollama": ("llama3", "llama2"),
    "minimax": (
        "MiniMax-M2.1",
        "MiniMax-Text-01",
        "abab6.5s-chat",
        "abab6.5-chat",
        "abab6-chat",
        "abab5.5s-chat",
        "abab5.5-chat",
    ),
}

PROVIDER_ALIASES = {"claude": "anthropic"}

KEYLESS_PROVIDERS = {"ollama"}

ARGUMENT_POLICIES = ("empty", "abort")

LOG_LEVELS = ("debug", "info", "warning", "error")


def normalize_provider(provider: str) -> str:
    """Lower-case a provider tag and resolve aliases (``claude`` -> ``anthropic``)."""
    tag = (provider or "").strip().lower()
    return PROVIDER_ALIASES.get(tag, tag)


def supported_providers() -> list[str]:
    """Return the provider tags the adapter factory understands."""
    return list(PROVIDER_DEFAULTS)


def default_model(provider: str) -> str:
    """Return the default model for a provider, or "" if unknown."""
    entry = PROVIDER_DEFAULTS.get(normalize_provider(provider))
    return entry[1] if entry else ""


def default_base_url(provider: str) -> str:
    """Return the default endpoint root for a provider, or "" if unknown."""
    entry = PROVIDER_DEFAULTS.get(normalize_provider(provider))
    return entry[2] if entry else ""


def known_models(provider: str) -> list[str]:
    """Return the models listed for a provider, default first.

    Ollama serves whatever has been pulled locally, so its list is only a
    starting point; any model name is accepted.
    """
    return list(KNOWN_MODELS.get(normalize_provider(provider), ()))


def resolve_provider(model: str) -> str:
    """Infer provider from model name if not explicitly set."""
    m = model.lower()
    if m.startswith("claude"):
        return "anthropic"
    if m.startswith("deepseek"):
        return "deepseek"
    if m.startswith("minimax") or m.startswith("abab"):
        return "minimax"
    if m.startswith("gpt") or m.startswith("o1") or m.startswith("o3"):
        return "openai"
    if ":" in m or m.startswith("llama") or m.startswith("qwen") or m.startswith("mistral"):
        return "ollama"
    return "openai"


def _infer_provider(values: dict[str, Any]) -> dict[str, Any]:
    """Fill in the provider from the model name when only a model is given."""
    if not values.get("provider"):
        values.pop("provider", None)
        if values.get("model"):
            values["provider"] = resolve_provider(values["model"])
    return values


@dataclass
class DeskPilotConfig:
    """Configuration for providers and the tool loop."""

    provider: str = "deepseek"
    model: str = ""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    max_rounds: int = 5
    context_window: int = 20
    request_timeout: float = 60.0
    stream_timeout: float = 120.0
    max_retries: int = 3
    retry_delay: float = 1.0
    argument_policy: str = "empty"
    system_prompt: Optional[str] = None
    log_level: str = "info"

    def __post_init__(self):
        self.provider = normalize_provider(self.provider)
        if self.provider not in PROVIDER_DEFAULTS:
            raise ConfigurationError(
                f"Unsupported provider: {self.provider!r}. "
                f"Supported providers: {', '.join(supported_providers())}"
            )
        if not self.model:
            self.model = default_model(self.provider)
        if not self.base_url:
            self.base_url = default_base_url(self.provider)
        self.base_url = self.base_url.rstrip("/")

        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"temperature must be within [0, 2], got {self.temperature}")
        if self.max_tokens < 1:
            raise ConfigurationError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.max_rounds < 1:
            raise ConfigurationError(f"max_rounds must be at least 1, got {self.max_rounds}")
        if self.context_window < 1:
            raise ConfigurationError(
                f"context_window must be at least 1, got {self.context_window}"
            )
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry_delay must not be negative, got {self.retry_delay}")
        if self.request_timeout <= 0 or self.stream_timeout <= 0:
            raise ConfigurationError("request_timeout and stream_timeout must be positive")
        if self.argument_policy not in ARGUMENT_POLICIES:
            raise ConfigurationError(
                f"argument_policy must be one of {ARGUMENT_POLICIES}, got {self.argument_policy!r}"
            )
        self.log_level = self.log_level.lower()
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {LOG_LEVELS}")

    @property
    def family(self) -> str:
        return PROVIDER_DEFAULTS[self.provider][0]

    @property
    def requires_api_key(self) -> bool:
        return self.provider not in KEYLESS_PROVIDERS

    def validate_credentials(self) -> None:
        """Raise ConfigurationError if the provider needs a key and none is set."""
        if self.requires_api_key and not self.api_key:
            raise ConfigurationError(
                f"No API key configured for provider {self.provider!r}. "
                "Set DESKPILOT_API_KEY or pass api_key."
            )

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data["api_key"]:
            data["api_key"] = "***"
        return data

    @classmethod
    def from_env(cls, **overrides: Any) -> "DeskPilotConfig":
        """Create configuration from environment variables.

        When no provider is set but a model is, the provider is inferred
        from the model name with :func:`resolve_provider`.
        """
        env = os.environ
        kwargs: dict[str, Any] = {
            "provider": env.get("DESKPILOT_PROVIDER", ""),
            "model": env.get("DESKPILOT_MODEL", ""),
            "api_key": env.get("DESKPILOT_API_KEY") or None,
            "base_url": env.get("DESKPILOT_BASE_URL") or None,
            "argument_policy": env.get("DESKPILOT_ARGUMENT_POLICY", "empty"),
            "log_level": env.get("DESKPILOT_LOG_LEVEL", "info"),
        }
        numeric = {
            "temperature": ("DESKPILOT_TEMPERATURE", float),
            "max_tokens": ("DESKPILOT_MAX_TOKENS", int),
            "max_rounds": ("DESKPILOT_MAX_ROUNDS", int),
            "context_window": ("DESKPILOT_CONTEXT_WINDOW", int),
            "request_timeout": ("DESKPILOT_REQUEST_TIMEOUT", float),
            "stream_timeout": ("DESKPILOT_STREAM_TIMEOUT", float),
            "max_retries": ("DESKPILOT_MAX_RETRIES", int),
            "retry_delay": ("DESKPILOT_RETRY_DELAY", float),
        }
        for name, (var, cast) in numeric.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                kwargs[name] = cast(raw)
            except ValueError:
                raise ConfigurationError(f"{var} must be a number, got {raw!r}") from None
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**_infer_provider(kwargs))

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> "DeskPilotConfig":
        """Load configuration from a YAML mapping file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys in {path}: {', '.join(unknown)}")

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**_infer_provider(data))
