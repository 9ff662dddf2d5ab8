"""Tests for batch indexing orchestration."""

from datetime import timedelta
from importlib.util import find_spec
from unittest.mock import patch

import pytest

from helpers.fakes import BASE_TIME, FakeProvider, StepClock, make_client, make_lesson, paragraph
from lessonrag.indexer import batch
from lessonrag.indexer.batch import prune_removed_lessons, run_indexing, select_lessons
from lessonrag.indexer.errors import (
    ConfigurationError,
    StorageError,
    TerminalProviderError,
    TransientProviderError,
)
from lessonrag.indexer.models import BUDGET_EXHAUSTED
from lessonrag.indexer.options import IndexingOptions, LessonSelector
from lessonrag.indexer.vector_store import EmbeddingStore
from lessonrag.lessons import InMemoryLessonSource

SQLITE_VEC_AVAILABLE = find_spec("sqlite_vec") is not None

pytestmark = pytest.mark.skipif(
    not SQLITE_VEC_AVAILABLE,
    reason="sqlite-vec not installed (pip install sqlite-vec)",
)

THREE_CHUNKS = "\n\n".join([paragraph("Alpha"), paragraph("Beta"), paragraph("Gamma")])
LATER = BASE_TIME + timedelta(days=30)


@pytest.fixture
def store(tmp_path):
    with EmbeddingStore(tmp_path / "index.db", dimension=8, clock=StepClock()) as s:
        yield s


def _options(**kwargs):
    kwargs.setdefault("max_chars", 300)
    return IndexingOptions(**kwargs)


def _no_sleep(seconds):
    pass


class TestSelectLessons:
    """Tests for select_lessons."""

    def test_single_lesson(self):
        source = InMemoryLessonSource([make_lesson("l1"), make_lesson("l2")])
        assert [l.id for l in select_lessons(LessonSelector.lesson("l2"), source)] == ["l2"]

    def test_single_lesson_wrong_course(self):
        source = InMemoryLessonSource([make_lesson("l1", course_id="c1")])
        assert select_lessons(LessonSelector.lesson("l1", course_id="c2"), source) == []

    def test_missing_lesson(self):
        assert select_lessons(LessonSelector.lesson("nope"), InMemoryLessonSource()) == []

    def test_course_ordered_by_recency_and_limited(self):
        source = InMemoryLessonSource(
            [
                make_lesson("old", updated_at=BASE_TIME),
                make_lesson("new", updated_at=LATER),
                make_lesson("other", course_id="c2", updated_at=LATER),
            ]
        )
        selected = select_lessons(LessonSelector.course("c1", limit=1), source)
        assert [l.id for l in selected] == ["new"]

    def test_recent_spans_courses(self):
        source = InMemoryLessonSource(
            [
                make_lesson("a", course_id="c1", updated_at=BASE_TIME),
                make_lesson("b", course_id="c2", updated_at=LATER),
            ]
        )
        assert [l.id for l in select_lessons(LessonSelector.recent(5), source)] == ["b", "a"]

    def test_invalid_limit(self):
        with pytest.raises(ConfigurationError):
            select_lessons(LessonSelector.recent(0), InMemoryLessonSource())


class TestRunIndexing:
    """Tests for run_indexing."""

    def test_end_to_end_edit_and_shrink(self, store):
        source = InMemoryLessonSource([make_lesson("L", content=THREE_CHUNKS)])
        provider = FakeProvider()
        client = make_client(provider)
        options = _options(max_embeddings_per_run=10)

        first = run_indexing(LessonSelector.lesson("L"), options, source, store, client, sleep=_no_sleep)

        assert (first.total_chunks, first.embedded_chunks) == (3, 3)
        assert (first.skipped_chunks, first.deleted_chunks) == (0, 0)

        edited = "\n\n".join([paragraph("Alpha"), paragraph("Delta")])
        source.put(make_lesson("L", content=edited, updated_at=LATER))
        second = run_indexing(LessonSelector.lesson("L"), options, source, store, client, sleep=_no_sleep)

        assert second.total_chunks == 2
        assert second.embedded_chunks == 1
        assert second.skipped_chunks == 1
        assert second.deleted_chunks == 1
        assert second.succeeded
        assert sorted(store.get_chunk_hashes("L")) == [0, 1]

    def test_second_run_is_idempotent(self, store):
        source = InMemoryLessonSource(
            [make_lesson("a", content=THREE_CHUNKS), make_lesson("b", content=paragraph("Solo"))]
        )
        provider = FakeProvider()
        client = make_client(provider)

        run_indexing(LessonSelector.course("c1"), _options(), source, store, client, sleep=_no_sleep)
        snapshot = {lid: store.get_records(lid) for lid in ("a", "b")}
        calls_after_first = len(provider.calls)

        second = run_indexing(LessonSelector.course("c1"), _options(), source, store, client, sleep=_no_sleep)

        assert second.embedded_chunks == 0
        assert second.skipped_lessons == 2
        assert len(provider.calls) == calls_after_first
        assert {lid: store.get_records(lid) for lid in ("a", "b")} == snapshot

    def test_without_lesson_watermarks_chunks_are_hash_skipped(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        client = make_client()
        options = _options(skip_unchanged_lessons=False)

        run_indexing(LessonSelector.lesson("a"), options, source, store, client, sleep=_no_sleep)
        second = run_indexing(LessonSelector.lesson("a"), options, source, store, client, sleep=_no_sleep)

        assert second.skipped_lessons == 0
        assert second.processed_lessons == 1
        assert second.skipped_chunks == 3
        assert second.embedded_chunks == 0

    def test_changing_one_lesson_leaves_others_untouched(self, store):
        source = InMemoryLessonSource(
            [make_lesson("a", content=THREE_CHUNKS), make_lesson("b", content=THREE_CHUNKS)]
        )
        client = make_client()
        run_indexing(LessonSelector.course("c1"), _options(), source, store, client, sleep=_no_sleep)
        untouched = store.get_records("b")

        edited = "\n\n".join([paragraph("Alpha"), paragraph("Omega"), paragraph("Gamma")])
        source.put(make_lesson("a", content=edited, updated_at=LATER))
        result = run_indexing(LessonSelector.course("c1"), _options(), source, store, client, sleep=_no_sleep)

        assert result.embedded_chunks == 1
        assert result.skipped_lessons == 1
        assert store.get_records("b") == untouched

    def test_budget_is_shared_across_lessons(self, store):
        source = InMemoryLessonSource(
            [
                make_lesson("a", content=THREE_CHUNKS, updated_at=LATER),
                make_lesson("b", content=THREE_CHUNKS, updated_at=LATER - timedelta(hours=1)),
                make_lesson("c", content=THREE_CHUNKS, updated_at=BASE_TIME),
            ]
        )
        provider = FakeProvider()

        result = run_indexing(
            LessonSelector.course("c1"),
            _options(max_embeddings_per_run=4),
            source,
            store,
            make_client(provider),
            sleep=_no_sleep,
        )

        assert result.embedded_chunks == 4
        assert len(provider.calls) == 4
        assert result.stopped_reason == BUDGET_EXHAUSTED
        assert result.processed_lessons == 2
        assert store.get_chunk_hashes("c") == {}

    def test_halts_when_budget_reaches_zero_between_lessons(self, store):
        source = InMemoryLessonSource(
            [
                make_lesson("a", content=THREE_CHUNKS, updated_at=LATER),
                make_lesson("b", content=THREE_CHUNKS, updated_at=BASE_TIME),
            ]
        )
        provider = FakeProvider()

        result = run_indexing(
            LessonSelector.course("c1"),
            _options(max_embeddings_per_run=3),
            source,
            store,
            make_client(provider),
            sleep=_no_sleep,
        )

        assert result.embedded_chunks == 3
        assert result.processed_lessons == 1
        assert result.stopped_reason == BUDGET_EXHAUSTED

    def test_budget_resumes_on_next_run(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        client = make_client()
        options = _options(max_embeddings_per_run=2)

        first = run_indexing(LessonSelector.lesson("a"), options, source, store, client, sleep=_no_sleep)
        second = run_indexing(LessonSelector.lesson("a"), options, source, store, client, sleep=_no_sleep)

        assert first.embedded_chunks == 2
        assert second.embedded_chunks == 1
        assert second.skipped_chunks == 2
        assert second.stopped_reason is None
        assert second.skipped_lessons == 0

    def test_lesson_with_failed_chunk_is_retried_next_run(self, store):
        failing = {"on": True}
        provider = FakeProvider(
            fail_with=lambda text, attempt: (
                TerminalProviderError("bad") if failing["on"] and "Beta" in text else None
            )
        )
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        client = make_client(provider)

        first = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)
        failing["on"] = False
        second = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)
        third = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)

        assert first.failed_chunks == 1
        assert second.embedded_chunks == 1
        assert second.skipped_chunks == 2
        assert third.skipped_lessons == 1

    def test_edit_during_run_is_picked_up_next_run(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        edited = make_lesson(
            "a",
            content="\n\n".join([THREE_CHUNKS, paragraph("Delta")]),
            updated_at=BASE_TIME + timedelta(hours=1),
        )
        editing = {"on": True}

        def edit_while_embedding(text, attempt):
            if editing["on"]:
                source.put(edited)
            return None

        client = make_client(FakeProvider(fail_with=edit_while_embedding))
        first = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)
        assert first.embedded_chunks == 3
        assert store.get_lesson_watermarks(["a"])["a"].incomplete is True

        editing["on"] = False
        second = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)
        third = run_indexing(LessonSelector.lesson("a"), _options(), source, store, client, sleep=_no_sleep)

        assert second.skipped_lessons == 0
        assert (second.embedded_chunks, second.skipped_chunks) == (1, 3)
        assert third.skipped_lessons == 1

    def test_dimension_mismatch_is_isolated_to_its_chunk(self, store):
        provider = FakeProvider(dimension_for=lambda text: 12 if "Gamma" in text else None)
        source = InMemoryLessonSource(
            [make_lesson("a", content=THREE_CHUNKS), make_lesson("b", content=paragraph("Delta"))]
        )

        result = run_indexing(
            LessonSelector.recent(), _options(), source, store, make_client(provider), sleep=_no_sleep
        )

        assert result.processed_lessons == 2
        assert result.embedded_chunks == 3
        assert result.failed_chunks == 1
        assert [e.lesson_id for e in result.errors] == ["a"]
        assert result.errors[0].error_message.startswith("chunk 2: Embedding dimension mismatch")
        assert sorted(store.get_chunk_hashes("a")) == [0, 1]
        assert store.get_lesson_watermarks(["a", "b"])["a"].incomplete is True
        assert store.get_lesson_watermarks(["a", "b"])["b"].incomplete is False
        assert not result.succeeded

    def test_retries_do_not_consume_budget(self, store):
        sleeps = []
        provider = FakeProvider(
            fail_with=lambda text, attempt: TransientProviderError("429") if attempt == 0 else None
        )
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])

        result = run_indexing(
            LessonSelector.lesson("a"),
            _options(max_embeddings_per_run=3, retry_attempts=2),
            source,
            store,
            make_client(provider),
            sleep=sleeps.append,
        )

        assert result.embedded_chunks == 3
        assert result.stopped_reason is None
        assert len(provider.calls) == 6
        assert len(sleeps) == 3

    def test_exhausted_retries_are_recorded(self, store):
        provider = FakeProvider(fail_with=lambda text, attempt: TransientProviderError("503"))
        source = InMemoryLessonSource([make_lesson("a", content=paragraph("Solo"))])

        result = run_indexing(
            LessonSelector.lesson("a"),
            _options(retry_attempts=1),
            source,
            store,
            make_client(provider),
            sleep=_no_sleep,
        )

        assert result.failed_chunks == 1
        assert not result.succeeded
        assert "after 2 attempt(s)" in result.errors[0].error_message

    def test_lesson_failure_does_not_abort_batch(self, store):
        source = InMemoryLessonSource(
            [
                make_lesson("bad", content=THREE_CHUNKS, updated_at=LATER),
                make_lesson("good", content=THREE_CHUNKS, updated_at=BASE_TIME),
            ]
        )
        real_index_lesson = batch.index_lesson

        def flaky(lesson, *args, **kwargs):
            if lesson.id == "bad":
                raise StorageError("disk full")
            return real_index_lesson(lesson, *args, **kwargs)

        with patch.object(batch, "index_lesson", side_effect=flaky):
            result = run_indexing(
                LessonSelector.course("c1"), _options(), source, store, make_client(), sleep=_no_sleep
            )

        assert [(e.lesson_id, e.error_message) for e in result.errors] == [("bad", "disk full")]
        assert result.processed_lessons == 2
        assert result.embedded_chunks == 3
        assert sorted(store.get_chunk_hashes("good")) == [0, 1, 2]

    def test_dry_run_writes_nothing(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])

        result = run_indexing(
            LessonSelector.lesson("a"), _options(dry_run=True), source, store, client=None
        )

        assert result.dry_run is True
        assert result.embedded_chunks == 3
        assert store.get_chunk_hashes("a") == {}

    def test_dry_run_respects_budget(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])

        result = run_indexing(
            LessonSelector.lesson("a"),
            _options(dry_run=True, max_embeddings_per_run=2),
            source,
            store,
        )

        assert result.embedded_chunks == 2
        assert result.stopped_reason == BUDGET_EXHAUSTED

    def test_on_lesson_callback(self, store):
        source = InMemoryLessonSource([make_lesson("a"), make_lesson("b")])
        seen = []

        run_indexing(
            LessonSelector.course("c1"),
            _options(),
            source,
            store,
            make_client(),
            sleep=_no_sleep,
            on_lesson=lambda lesson, result: seen.append((lesson.id, result.embedded_chunks)),
        )

        assert sorted(seen) == [("a", 1), ("b", 1)]

    def test_requires_client_unless_dry_run(self, store):
        with pytest.raises(ConfigurationError):
            run_indexing(LessonSelector.recent(), _options(), InMemoryLessonSource(), store)

    def test_invalid_options_rejected_before_work(self, store):
        provider = FakeProvider()
        source = InMemoryLessonSource([make_lesson("a")])
        with pytest.raises(ConfigurationError):
            run_indexing(
                LessonSelector.lesson("a"), _options(max_chars=100), source, store, make_client(provider)
            )
        assert provider.calls == []


class TestRemovedLessons:
    """Tests for reconciling lessons that no longer exist."""

    def _index(self, store, source, lesson_id):
        run_indexing(
            LessonSelector.lesson(lesson_id), _options(), source, store, make_client(), sleep=_no_sleep
        )

    def test_single_missing_lesson_rows_are_deleted(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        self._index(store, source, "a")
        source.remove("a")

        result = run_indexing(LessonSelector.lesson("a"), _options(), source, store, make_client())

        assert result.deleted_chunks == 3
        assert store.get_chunk_hashes("a") == {}

    def test_missing_lesson_dry_run_only_counts(self, store):
        source = InMemoryLessonSource([make_lesson("a", content=THREE_CHUNKS)])
        self._index(store, source, "a")
        source.remove("a")

        result = run_indexing(LessonSelector.lesson("a"), _options(dry_run=True), source, store)

        assert result.deleted_chunks == 3
        assert len(store.get_chunk_hashes("a")) == 3

    def test_prune_removed_lessons(self, store):
        source = InMemoryLessonSource(
            [make_lesson("a", content=THREE_CHUNKS), make_lesson("b", content=paragraph("Solo"))]
        )
        self._index(store, source, "a")
        self._index(store, source, "b")
        source.remove("a")

        result = prune_removed_lessons(source, store)

        assert result.deleted_chunks == 3
        assert store.indexed_lesson_ids() == {"b"}
