"""Nearest-neighbor retrieval of lesson chunks for a query."""

import logging
import time
from typing import Callable, Optional

from .embedder import EmbeddingClient, TaskType
from .models import RetrievalScope, RetrievedChunk
from .retry import RetryingEmbedder, RetryPolicy
from .vector_store import EmbeddingStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
DEFAULT_QUERY_RETRIES = 1
# Keep waits short: retrieval sits on a user-facing request path.
_QUERY_RETRY_BASE_DELAY = 0.3
_QUERY_RETRY_MAX_DELAY = 2.0


def retrieve(
    query_text: str,
    scope: RetrievalScope,
    top_k: int,
    client: EmbeddingClient,
    store: EmbeddingStore,
    max_retries: int = DEFAULT_QUERY_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> list[RetrievedChunk]:
    """Embed a query and return the closest chunks within the scope.

    Returns at most ``top_k`` chunks in non-decreasing distance order. A
    scope without indexed content (or with no courses) yields an empty
    list; presenting a "no data" message is up to the caller.

    Raises:
        ProviderError: If the query cannot be embedded.
        StorageError: If the store cannot be read.
    """
    if top_k <= 0 or not scope.course_ids:
        return []
    query_text = (query_text or "").strip()
    if not query_text:
        return []

    embedder = RetryingEmbedder(
        client.for_task(TaskType.RETRIEVAL_QUERY),
        RetryPolicy(
            max_retries=max_retries,
            base_delay=_QUERY_RETRY_BASE_DELAY,
            max_delay=_QUERY_RETRY_MAX_DELAY,
        ),
        sleep=sleep,
    )
    query_vec = embedder.embed(query_text)

    results = store.knn_search(
        query_vec,
        course_ids=list(scope.course_ids),
        lesson_id=scope.lesson_id,
        k=top_k,
    )
    logger.debug(
        f"Retrieved {len(results)} chunk(s) for scope courses={list(scope.course_ids)}, "
        f"lesson={scope.lesson_id}"
    )
    return results


def format_context(chunks: list[RetrievedChunk], max_chars: Optional[int] = None) -> str:
    """Render retrieved chunks as numbered reference blocks for a tutor prompt."""
    blocks = []
    used = 0
    for position, chunk in enumerate(chunks, start=1):
        block = f"[{position}] (lesson {chunk.lesson_id}, chunk {chunk.chunk_index})\n{chunk.content}"
        if max_chars is not None and used + len(block) > max_chars:
            break
        blocks.append(block)
        used += len(block)
    return "\n\n".join(blocks)
