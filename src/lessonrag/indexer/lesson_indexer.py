"""Index a single lesson: chunk, hash, embed what changed, reconcile."""

import logging
import threading
import time
from typing import Optional

from .chunker import chunk_text
from .errors import ConfigurationError
from .hashing import content_hash
from .models import BUDGET_EXHAUSTED, Chunk, EmbeddingRecord, IndexingRunResult, Lesson, LessonError
from .options import IndexingOptions
from .pool import run_bounded
from .retry import RetryingEmbedder
from .vector_store import EmbeddingStore

logger = logging.getLogger(__name__)


class EmbeddingBudget:
    """Remaining number of embedding requests allowed in one run.

    One budget instance is threaded through every lesson of a batch so the
    halting condition lives in a single place.
    """

    def __init__(self, limit: int):
        if limit < 0:
            raise ValueError(f"Budget limit must be >= 0, got {limit}")
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> int:
        return self.limit - self._used

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def try_take(self) -> bool:
        """Reserve one embedding; False when nothing is left."""
        with self._lock:
            if self._used >= self.limit:
                return False
            self._used += 1
            return True


def _embed_and_store(
    lesson: Lesson,
    chunk: Chunk,
    digest: str,
    embedder: RetryingEmbedder,
    store: EmbeddingStore,
) -> int:
    vector = embedder.embed(chunk.content)
    store.upsert(
        EmbeddingRecord(
            lesson_id=lesson.id,
            course_id=lesson.course_id,
            chunk_index=chunk.index,
            content=chunk.content,
            content_hash=digest,
            embedding=vector,
        )
    )
    return chunk.index


def index_lesson(
    lesson: Lesson,
    store: EmbeddingStore,
    embedder: Optional[RetryingEmbedder],
    options: IndexingOptions,
    budget: EmbeddingBudget,
) -> IndexingRunResult:
    """Chunk, embed, and reconcile one lesson.

    Chunks whose hash matches the persisted row are skipped unless
    ``options.force`` is set. Changed chunks are embedded under the
    concurrency cap while the budget lasts; a failing chunk is recorded
    without aborting its siblings. Rows beyond the new last chunk index are
    deleted once the embedding phase has finished.

    With ``options.dry_run`` nothing is embedded or written: the returned
    counts are projections.

    Args:
        lesson: Lesson to index.
        store: Embedding store holding the lesson's rows.
        embedder: Retrying embedder; may be None only for dry runs.
        options: Validated run options.
        budget: Run-wide embedding budget, decremented per queued chunk.

    Returns:
        Per-lesson result with total/embedded/skipped/deleted/failed counts.
    """
    started = time.perf_counter()
    result = IndexingRunResult(processed_lessons=1, dry_run=options.dry_run, force=options.force)

    chunks = chunk_text(lesson.full_text, options.max_chars)
    result.total_chunks = len(chunks)
    existing_hashes = store.get_chunk_hashes(lesson.id)

    queued: list[tuple[Chunk, str]] = []
    for chunk in chunks:
        digest = content_hash(chunk.content)
        if not options.force and existing_hashes.get(chunk.index) == digest:
            result.skipped_chunks += 1
            continue
        if not budget.try_take():
            result.stopped_reason = BUDGET_EXHAUSTED
            logger.info(f"Embedding budget exhausted while indexing lesson {lesson.id}")
            break
        queued.append((chunk, digest))

    max_index = chunks[-1].index if chunks else -1

    if options.dry_run:
        result.embedded_chunks = len(queued)
        result.deleted_chunks = sum(1 for index in existing_hashes if index > max_index)
        return result

    if embedder is None:
        raise ConfigurationError("An embedding client is required unless dry_run is set")

    if queued:
        tasks = [
            lambda chunk=chunk, digest=digest: _embed_and_store(
                lesson, chunk, digest, embedder, store
            )
            for chunk, digest in queued
        ]
        outcomes = run_bounded(tasks, options.concurrency)

        for (chunk, _digest), outcome in zip(queued, outcomes):
            if outcome.ok:
                result.embedded_chunks += 1
                continue
            result.failed_chunks += 1
            message = f"chunk {chunk.index}: {outcome.error}"
            result.errors.append(LessonError(lesson.id, message))
            logger.warning(f"Failed to index lesson {lesson.id} {message}")

    # Reconcile only after every dispatched embedding has finished.
    result.deleted_chunks = store.delete_beyond(lesson.id, max_index)
    store.set_incomplete(lesson.id, bool(result.failed_chunks or result.stopped_reason))

    logger.info(
        f"Indexed lesson {lesson.id}: total={result.total_chunks}, "
        f"embedded={result.embedded_chunks}, skipped={result.skipped_chunks}, "
        f"deleted={result.deleted_chunks}, failed={result.failed_chunks}, "
        f"duration={int((time.perf_counter() - started) * 1000)}ms"
    )
    return result
