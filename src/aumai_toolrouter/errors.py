"""Error types for aumai-toolrouter."""

from __future__ import annotations

__all__ = [
    "ToolRouterError",
    "ConfigError",
    "EmbeddingError",
    "ModelLoadError",
    "EmbeddingTimeoutError",
    "WorkerClosedError",
    "IndexMismatchError",
    "CatalogError",
    "StateTransitionError",
]


class ToolRouterError(Exception):
    """Base class for every error raised by the router."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(ToolRouterError):
    """Settings could not be read or validated."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> ConfigError:
        return cls(f"Failed to parse config at {path}: {reason}")


class EmbeddingError(ToolRouterError):
    """The worker could not produce an embedding for a piece of text."""

    retryable = True

    def __init__(self, message: str, text: str | None = None) -> None:
        super().__init__(message)
        self.text = text


class ModelLoadError(EmbeddingError):
    """Neither the primary nor the fallback model could be constructed.

    Terminal for the embedding capability until the worker is reset.
    """

    retryable = False

    def __init__(self, primary_error: str, fallback_error: str) -> None:
        super().__init__(
            f"Primary model failed: {primary_error}; "
            f"fallback model failed: {fallback_error}"
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error


class EmbeddingTimeoutError(EmbeddingError):
    """The worker did not answer within the configured timeout."""


class WorkerClosedError(EmbeddingError):
    """The embedding worker was terminated while a request was pending."""

    retryable = False


class IndexMismatchError(ToolRouterError, ValueError):
    """A vector does not belong to the same embedding space as the index."""


class CatalogError(ToolRouterError, ValueError):
    """A tool catalog entry is malformed."""


class StateTransitionError(ToolRouterError, ValueError):
    """A status change that the session state machine does not allow."""
