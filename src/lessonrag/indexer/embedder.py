"""Embedding client for lesson chunks and search queries.

The pipeline talks to the provider through a single call,
``provider.embed(text, output_dimensionality, task_type)``. The
``EmbeddingClient`` wraps that call, maps provider exceptions onto the
error taxonomy, and validates that every returned vector has exactly the
configured dimensionality before it can reach storage.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence

import httpx
import openai
from openai import OpenAI

from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    classify_provider_error,
)
from .models import Vector

if TYPE_CHECKING:
    from lessonrag.config import Settings

logger = logging.getLogger(__name__)

# Constants
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSION = 768


class TaskType(str, Enum):
    """Hint telling the provider what the embedded text will be used for."""

    RETRIEVAL_DOCUMENT = "retrieval_document"
    RETRIEVAL_QUERY = "retrieval_query"


# nomic-embed models expect the task as an input prefix
_NOMIC_TASK_PREFIXES = {
    TaskType.RETRIEVAL_DOCUMENT: "search_document: ",
    TaskType.RETRIEVAL_QUERY: "search_query: ",
}


class EmbeddingProvider(Protocol):
    def embed(
        self, text: str, output_dimensionality: int, task_type: TaskType
    ) -> Sequence[float]: ...


def _create_openai_client(
    api_key: str,
    base_url: str,
    headers: Optional[dict[str, str]] = None,
    timeout: float = 60.0,
) -> OpenAI:
    """Create an OpenAI client with compatibility fallback."""
    kwargs: dict[str, Any] = {
        "api_key": api_key,
        "base_url": base_url,
        "timeout": httpx.Timeout(timeout, connect=10.0),
        # Retries are owned by the pipeline's retry policy.
        "max_retries": 0,
    }
    if headers:
        kwargs["default_headers"] = headers

    try:
        return OpenAI(**kwargs)
    except TypeError as exc:
        exc_str = str(exc)
        if (
            "proxies" not in exc_str
            and "default_headers" not in exc_str
            and "timeout" not in exc_str
        ):
            raise

        # Fallback for SDK/httpx incompatibilities.
        fallback_kwargs = {k: v for k, v in kwargs.items() if k not in ("default_headers", "timeout")}
        return OpenAI(
            **fallback_kwargs,
            http_client=httpx.Client(
                timeout=httpx.Timeout(timeout, connect=10.0),
                headers=headers if headers else None,
            ),
        )


def _translate_openai_error(exc: Exception) -> ProviderError:
    """Map OpenAI SDK exceptions onto transient/terminal provider errors."""
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return TransientProviderError(str(exc))
    if isinstance(exc, openai.InternalServerError):
        return TransientProviderError(str(exc))
    if isinstance(
        exc,
        (
            openai.AuthenticationError,
            openai.PermissionDeniedError,
            openai.BadRequestError,
            openai.NotFoundError,
            openai.UnprocessableEntityError,
        ),
    ):
        return TerminalProviderError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code in (408, 409, 429):
            return TransientProviderError(str(exc))
        return TerminalProviderError(str(exc))
    return classify_provider_error(exc)


class OpenAIEmbeddingProvider:
    """Embedding provider backed by any OpenAI-compatible embeddings endpoint."""

    def __init__(self, client: OpenAI, model: str = EMBEDDING_MODEL, send_dimensions: bool = True):
        self.client = client
        self.model = model
        self.send_dimensions = send_dimensions

    def _format_input(self, text: str, task_type: TaskType) -> str:
        if "nomic" in self.model.lower():
            return f"{_NOMIC_TASK_PREFIXES[task_type]}{text}"
        return text

    def embed(self, text: str, output_dimensionality: int, task_type: TaskType) -> list[float]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": [self._format_input(text, task_type)],
        }
        if self.send_dimensions:
            kwargs["dimensions"] = output_dimensionality

        try:
            response = self.client.embeddings.create(**kwargs)
        except openai.OpenAIError as exc:
            raise _translate_openai_error(exc) from exc

        if not response.data:
            raise DimensionMismatchError(output_dimensionality, None, "empty embedding response")
        return response.data[0].embedding


class EmbeddingClient:
    """Single-call embedding client with dimension validation.

    Usage:
        client = EmbeddingClient(provider, dimension=768)
        vector = client.embed("chunk text")
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimension: int = EMBEDDING_DIMENSION,
        task_type: TaskType = TaskType.RETRIEVAL_DOCUMENT,
    ):
        if dimension <= 0:
            raise ConfigurationError(f"Embedding dimension must be positive, got {dimension}")
        self.provider = provider
        self.dimension = dimension
        self.task_type = task_type

    def embed(self, text: str, task_type: Optional[TaskType] = None) -> Vector:
        """Embed a text and return a validated vector.

        Raises:
            TransientProviderError: Retryable provider failure.
            TerminalProviderError: Non-retryable provider failure.
            DimensionMismatchError: The response is not a vector of ``dimension`` floats.
        """
        try:
            raw = self.provider.embed(text, self.dimension, task_type or self.task_type)
        except ProviderError:
            raise
        except Exception as exc:
            raise classify_provider_error(exc) from exc
        return Vector.validated(raw, self.dimension)

    def for_task(self, task_type: TaskType) -> "EmbeddingClient":
        """Return a client sharing this provider but with a different default task type."""
        return EmbeddingClient(self.provider, self.dimension, task_type)


def get_embedding_client(settings: "Settings") -> EmbeddingClient:
    """Build an embedding client from settings.

    Raises:
        ConfigurationError: If no API key is configured.
    """
    if not settings.api_key:
        raise ConfigurationError(
            "No API key configured for embeddings. "
            "Set LESSONRAG_API_KEY (or OPENAI_API_KEY) or add api_key to settings.yaml."
        )

    client = _create_openai_client(
        api_key=settings.api_key,
        base_url=settings.api_base_url,
        headers=settings.api_headers or None,
        timeout=settings.request_timeout,
    )
    provider = OpenAIEmbeddingProvider(
        client,
        model=settings.embedding_model,
        send_dimensions=settings.embedding_request_dimensions,
    )
    logger.debug(
        f"Embedding client ready: model={settings.embedding_model}, "
        f"dimension={settings.embedding_dimension}"
    )
    return EmbeddingClient(provider, dimension=settings.embedding_dimension)
