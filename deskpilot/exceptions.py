"""
DeskPilot - Custom exceptions for error handling.
"""

from typing import Any, Optional


class DeskPilotError(Exception):
    """Base exception for all DeskPilot errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ConfigurationError(DeskPilotError):
    """Raised when configuration is missing or invalid (fatal at startup)."""

    pass


class ProviderError(DeskPilotError):
    """Raised when a provider request fails or returns an unusable payload."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Raised when a non-streaming request keeps failing after every retry."""

    def __init__(self, message: str, attempts: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class StreamTimeoutError(ProviderError):
    """Raised when a provider stream stays silent longer than the idle timeout."""

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ToolArgumentError(DeskPilotError):
    """Raised when tool-call argument text cannot be parsed into a mapping."""

    def __init__(self, message: str, raw: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.raw = raw


class TaskStateError(DeskPilotError):
    """Raised on an illegal task lifecycle transition."""

    pass
