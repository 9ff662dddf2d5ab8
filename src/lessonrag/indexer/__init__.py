"""Lesson embedding index and retrieval pipeline.

Public API:
  run_indexing(selector, options, lessons, store, client) - batch indexing
  index_lesson(lesson, store, embedder, options, budget)  - one lesson
  retrieve(query, scope, top_k, client, store)            - nearest neighbors
  prune_removed_lessons(lessons, store)                   - drop deleted lessons

Building blocks:
  chunker.chunk_text, hashing.content_hash, embedder.EmbeddingClient,
  retry.RetryingEmbedder, pool.run_bounded, vector_store.EmbeddingStore
"""

from .batch import prune_removed_lessons, run_indexing, select_lessons
from .chunker import chunk_text
from .embedder import (
    EMBEDDING_DIMENSION,
    EMBEDDING_MODEL,
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    TaskType,
    get_embedding_client,
)
from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    LessonRagError,
    ProviderError,
    RetryExhaustedError,
    StorageError,
    TerminalProviderError,
    TransientProviderError,
)
from .hashing import content_hash
from .lesson_indexer import EmbeddingBudget, index_lesson
from .models import (
    BUDGET_EXHAUSTED,
    Chunk,
    EmbeddingRecord,
    IndexingRunResult,
    Lesson,
    LessonError,
    RetrievalScope,
    RetrievedChunk,
    Vector,
)
from .options import IndexingOptions, LessonSelector
from .pool import TaskOutcome, run_bounded
from .retrieval import retrieve
from .retry import RetryingEmbedder, RetryPolicy, embed_with_retry
from .vector_store import EmbeddingStore

__all__ = [
    # Orchestration
    "run_indexing",
    "select_lessons",
    "prune_removed_lessons",
    "index_lesson",
    "EmbeddingBudget",
    "IndexingOptions",
    "LessonSelector",
    # Chunking & hashing
    "chunk_text",
    "content_hash",
    # Embedding
    "EmbeddingClient",
    "OpenAIEmbeddingProvider",
    "TaskType",
    "get_embedding_client",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSION",
    "RetryingEmbedder",
    "RetryPolicy",
    "embed_with_retry",
    "run_bounded",
    "TaskOutcome",
    # Storage & retrieval
    "EmbeddingStore",
    "retrieve",
    # Models
    "BUDGET_EXHAUSTED",
    "Chunk",
    "EmbeddingRecord",
    "IndexingRunResult",
    "Lesson",
    "LessonError",
    "RetrievalScope",
    "RetrievedChunk",
    "Vector",
    # Errors
    "LessonRagError",
    "ConfigurationError",
    "ProviderError",
    "TransientProviderError",
    "TerminalProviderError",
    "RetryExhaustedError",
    "DimensionMismatchError",
    "StorageError",
]
