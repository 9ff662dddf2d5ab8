"""Batch orchestration: select lessons, share one budget, aggregate results."""

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

from .embedder import EmbeddingClient
from .errors import ConfigurationError, LessonRagError, StorageError
from .lesson_indexer import EmbeddingBudget, index_lesson
from .models import BUDGET_EXHAUSTED, IndexingRunResult, Lesson, LessonError
from .options import IndexingOptions, LessonSelector, SelectorKind
from .retry import RetryingEmbedder, RetryPolicy
from .vector_store import EmbeddingStore, LessonWatermark, as_utc

if TYPE_CHECKING:
    from lessonrag.lessons import LessonSource

logger = logging.getLogger(__name__)


def select_lessons(selector: LessonSelector, lessons: "LessonSource") -> list[Lesson]:
    """Resolve a selector into candidate lessons."""
    if selector.kind is SelectorKind.LESSON:
        if not selector.lesson_id:
            raise ConfigurationError("A lesson selector needs a lesson_id")
        lesson = lessons.get(selector.lesson_id)
        if lesson is None:
            return []
        if selector.course_id is not None and lesson.course_id != selector.course_id:
            return []
        return [lesson]

    if selector.limit is None or selector.limit < 1:
        raise ConfigurationError(f"Selector limit must be >= 1, got {selector.limit}")

    if selector.kind is SelectorKind.COURSE:
        if not selector.course_id:
            raise ConfigurationError("A course selector needs a course_id")
        return lessons.list_by_course(selector.course_id, selector.limit)

    return lessons.list_recent(selector.limit)


def _is_up_to_date(lesson: Lesson, watermark: Optional[LessonWatermark]) -> bool:
    """True when the lesson's chunks were written after its last update and the run completed."""
    if watermark is None or watermark.incomplete:
        return False
    if watermark.chunk_count == 0 or watermark.last_indexed_at is None:
        return False
    return as_utc(watermark.last_indexed_at) >= as_utc(lesson.updated_at)


def _flag_if_edited_during_run(
    lesson: Lesson, lessons: "LessonSource", store: EmbeddingStore
) -> None:
    """Mark a lesson incomplete when the lesson store now holds a newer version than was indexed."""
    try:
        current = lessons.get(lesson.id)
        if current is not None and as_utc(current.updated_at) > as_utc(lesson.updated_at):
            store.set_incomplete(lesson.id, True)
            logger.info(f"Lesson {lesson.id} changed while it was being indexed; queued for the next run")
    except StorageError as e:
        logger.warning(f"Could not re-check lesson {lesson.id} after indexing: {e}")


def _reconcile_removed_lesson(
    lesson_id: str,
    lessons: "LessonSource",
    store: EmbeddingStore,
    summary: IndexingRunResult,
) -> None:
    """Drop rows of a lesson that no longer exists in the lesson store."""
    if lessons.get(lesson_id) is not None:
        return
    try:
        if summary.dry_run:
            removed = store.count_beyond(lesson_id, -1)
        else:
            removed = store.delete_lesson(lesson_id)
    except StorageError as e:
        summary.errors.append(LessonError(lesson_id, str(e)))
        logger.warning(f"Failed to remove rows of deleted lesson {lesson_id}: {e}")
        return
    if removed:
        summary.deleted_chunks += removed
        logger.info(f"Lesson {lesson_id} no longer exists; removed {removed} indexed chunk(s)")


def run_indexing(
    selector: LessonSelector,
    options: IndexingOptions,
    lessons: "LessonSource",
    store: EmbeddingStore,
    client: Optional[EmbeddingClient] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_lesson: Optional[Callable[[Lesson, IndexingRunResult], None]] = None,
) -> IndexingRunResult:
    """Index every lesson picked by ``selector`` and return the aggregate summary.

    One embedding budget (``options.max_embeddings_per_run``) is shared by
    all lessons; once it runs out the loop stops and ``stopped_reason`` is
    set. A failing lesson is recorded in ``errors`` and the loop moves on.

    Args:
        selector: Single lesson, a course, or the most recent lessons.
        options: Run options; validated before anything is read.
        lessons: Read-only lesson source.
        store: Embedding store.
        client: Embedding client; required unless ``options.dry_run``.
        sleep: Backoff sleep function (injectable for tests).
        on_lesson: Optional callback(lesson, result) after each indexed lesson.

    Raises:
        ConfigurationError: If options are invalid or no client is available
            for a non-dry run. Nothing has been processed in that case.
    """
    options.validate()
    if client is None and not options.dry_run:
        raise ConfigurationError("An embedding client is required unless dry_run is set")

    embedder = None
    if client is not None:
        embedder = RetryingEmbedder(
            client, RetryPolicy(max_retries=options.retry_attempts), sleep=sleep
        )

    started = time.perf_counter()
    summary = IndexingRunResult(dry_run=options.dry_run, force=options.force)
    budget = EmbeddingBudget(options.max_embeddings_per_run)

    candidates = select_lessons(selector, lessons)
    logger.info(f"Indexing {len(candidates)} candidate lesson(s) from {selector.describe()}")

    if selector.kind is SelectorKind.LESSON and not candidates and selector.lesson_id:
        _reconcile_removed_lesson(selector.lesson_id, lessons, store, summary)

    watermarks: dict[str, LessonWatermark] = {}
    if options.uses_lesson_watermarks and candidates:
        try:
            watermarks = store.get_lesson_watermarks([lesson.id for lesson in candidates])
        except StorageError as e:
            logger.warning(f"Could not read lesson watermarks, indexing all candidates: {e}")

    for lesson in candidates:
        if budget.exhausted:
            summary.stopped_reason = BUDGET_EXHAUSTED
            logger.info(
                f"Embedding budget of {budget.limit} exhausted; "
                "remaining lessons left for the next run"
            )
            break

        if options.uses_lesson_watermarks and _is_up_to_date(lesson, watermarks.get(lesson.id)):
            summary.skipped_lessons += 1
            logger.debug(f"Skipping unchanged lesson {lesson.id}")
            continue

        try:
            result = index_lesson(lesson, store, embedder, options, budget)
        except ConfigurationError:
            raise
        except Exception as e:
            summary.processed_lessons += 1
            summary.errors.append(LessonError(lesson.id, str(e) or type(e).__name__))
            logger.warning(
                f"Indexing lesson {lesson.id} failed: {e}",
                exc_info=not isinstance(e, LessonRagError),
            )
            continue

        summary.absorb(result)
        if not options.dry_run:
            _flag_if_edited_during_run(lesson, lessons, store)
        if on_lesson is not None:
            on_lesson(lesson, result)
        if result.stopped_reason:
            break

    logger.info(
        f"Indexing run finished in {time.perf_counter() - started:.1f}s: "
        f"lessons={summary.processed_lessons} (+{summary.skipped_lessons} unchanged), "
        f"embedded={summary.embedded_chunks}, skipped={summary.skipped_chunks}, "
        f"deleted={summary.deleted_chunks}, errors={len(summary.errors)}, "
        f"stopped_reason={summary.stopped_reason}"
    )
    return summary


def prune_removed_lessons(
    lessons: "LessonSource",
    store: EmbeddingStore,
    dry_run: bool = False,
) -> IndexingRunResult:
    """Delete indexed rows of every lesson that no longer exists in the lesson store."""
    summary = IndexingRunResult(dry_run=dry_run)
    for lesson_id in sorted(store.indexed_lesson_ids()):
        _reconcile_removed_lesson(lesson_id, lessons, store, summary)
    return summary
