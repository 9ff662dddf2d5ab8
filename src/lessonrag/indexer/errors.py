"""Exception hierarchy for the indexing and retrieval pipeline."""

import re
from typing import Optional


class LessonRagError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(LessonRagError):
    """Raised when the run cannot start because configuration is missing or invalid."""


class ProviderError(LessonRagError):
    """The embedding provider failed to return a usable vector."""


class TransientProviderError(ProviderError):
    """Retryable provider failure (throttling, timeouts, 5xx, resource exhaustion)."""


class TerminalProviderError(ProviderError):
    """Non-retryable provider failure (auth, malformed request)."""


class RetryExhaustedError(TerminalProviderError):
    """All retry attempts for a transient failure were used up."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Embedding failed after {attempts} attempt(s): {last_error}")


class DimensionMismatchError(ProviderError):
    """The provider returned a vector of the wrong length."""

    def __init__(self, expected: int, actual: Optional[int], detail: str = ""):
        self.expected = expected
        self.actual = actual
        message = f"Embedding dimension mismatch: got {actual}, expected {expected}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StorageError(LessonRagError):
    """A read or write against the embedding store failed."""


_TRANSIENT_MARKERS = re.compile(
    r"429|rate|too many|resource_exhausted|timeout|timed out|temporarily|unavailable"
    r"|\b50[0234]\b",
    re.IGNORECASE,
)


def looks_transient(error: BaseException) -> bool:
    """Heuristic for errors that carry no type information: match on the message."""
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return bool(_TRANSIENT_MARKERS.search(str(error)))


def classify_provider_error(error: Exception) -> ProviderError:
    """Wrap an arbitrary provider exception into the taxonomy."""
    if isinstance(error, ProviderError):
        return error
    message = str(error) or type(error).__name__
    if looks_transient(error):
        return TransientProviderError(message)
    return TerminalProviderError(message)
