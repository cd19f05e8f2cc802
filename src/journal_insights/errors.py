"""Exception hierarchy for the analytics engine.

Every error carries a machine-readable ``error_type`` so tool callers can
branch on it without parsing messages.
"""

from __future__ import annotations


class InsightsError(Exception):
    """Base exception for engine operations."""
    error_type = "insights_error"


class ProviderError(InsightsError):
    """Base class for failures reported by an external provider."""
    error_type = "provider_error"


class TransientProviderError(ProviderError):
    """Network failure, timeout, or server error. Retried with backoff."""
    error_type = "transient_provider_error"


class RateLimitedError(TransientProviderError):
    """Provider asked us to slow down (HTTP 429)."""
    error_type = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidInputError(ProviderError):
    """Provider rejected the request payload. Not retried."""
    error_type = "invalid_input"


class UnauthorizedError(ProviderError):
    """Credentials missing or rejected. Fatal to the current run."""
    error_type = "unauthorized"


class MalformedResponseError(ProviderError):
    """Provider returned data violating the expected schema. Not retried."""
    error_type = "malformed_response"


class ValidationError(InsightsError):
    """Provider value outside its declared range and not clamp-safe."""
    error_type = "validation_error"


class StorageError(InsightsError):
    """Persistence failure. Prior committed writes are left intact."""
    error_type = "storage_error"


class CancellationError(InsightsError):
    """Cooperative stop of a background run; completed work is kept."""
    error_type = "cancelled"


class ToolError(InsightsError):
    """Base class for dispatch-time tool errors."""
    error_type = "tool_error"


class UnknownToolError(ToolError):
    """No tool is registered under the requested name."""
    error_type = "unknown_tool"

    def __init__(self, name: str, available: list[str]):
        super().__init__(f"Unknown tool: {name!r}. Available tools: {', '.join(available)}")
        self.name = name
        self.available = available


class InvalidArgumentError(ToolError):
    """A tool argument is missing, has the wrong type, or is out of range."""
    error_type = "invalid_argument"

    def __init__(self, argument: str, message: str):
        super().__init__(f"Invalid argument {argument!r}: {message}")
        self.argument = argument
