"""Bounded retries with capped exponential backoff around the embedding client."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .embedder import EmbeddingClient, TaskType
from .errors import ProviderError, RetryExhaustedError, TransientProviderError, looks_transient
from .models import Vector

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 0.6
DEFAULT_MAX_DELAY = 10.0


def is_transient_error(error: BaseException) -> bool:
    """Default retry predicate: only classified-transient failures are retried."""
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, ProviderError):
        return False
    return looks_transient(error)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait between attempts.

    ``max_retries`` counts retries after the first attempt, so a policy with
    ``max_retries=2`` makes at most three calls.
    """

    max_retries: int = 2
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    is_retryable: Callable[[BaseException], bool] = is_transient_error

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Backoff before the given retry (0-based): base * 2**n, capped at max_delay."""
        return min(self.max_delay, self.base_delay * (2**retry_number))


class RetryingEmbedder:
    """Embedding client wrapper that retries transient failures.

    Non-retryable errors (auth, malformed input, dimension mismatch) are
    raised immediately. When retries run out the last transient error is
    wrapped in ``RetryExhaustedError``.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        return self.client.dimension

    def embed(self, text: str, task_type: Optional[TaskType] = None) -> Vector:
        attempt = 0
        while True:
            try:
                return self.client.embed(text, task_type)
            except Exception as exc:
                if not self.policy.is_retryable(exc):
                    raise
                if attempt >= self.policy.max_retries:
                    raise RetryExhaustedError(self.policy.max_attempts, exc) from exc
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"Transient embedding failure (attempt {attempt + 1}/"
                    f"{self.policy.max_attempts}), retrying in {delay:.1f}s: {exc}"
                )
                self._sleep(delay)
                attempt += 1


def embed_with_retry(
    client: EmbeddingClient,
    text: str,
    max_retries: int,
    sleep: Callable[[float], None] = time.sleep,
) -> Vector:
    """One-shot helper: embed ``text`` retrying transient failures up to ``max_retries`` times."""
    return RetryingEmbedder(client, RetryPolicy(max_retries=max_retries), sleep=sleep).embed(text)
