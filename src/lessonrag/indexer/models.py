"""Data types shared by the indexing and retrieval pipeline."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from numbers import Real
from typing import Any, Iterator, Optional

from .errors import DimensionMismatchError

BUDGET_EXHAUSTED = "budget exhausted"


@dataclass(frozen=True)
class Chunk:
    """A bounded, order-preserving slice of a lesson's normalized text."""

    index: int
    content: str


@dataclass(frozen=True)
class Lesson:
    """Read-only view of a lesson owned by the lesson store."""

    id: str
    course_id: str
    title: str
    content: str
    updated_at: datetime

    @property
    def full_text(self) -> str:
        """Text that gets chunked: the title as a heading followed by the body."""
        return f"# {self.title}\n\n{self.content or ''}".strip()


@dataclass(frozen=True)
class Vector:
    """Embedding vector whose length has been checked against the configured dimension."""

    values: tuple[float, ...]

    @property
    def dimension(self) -> int:
        return len(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[float]:
        return iter(self.values)

    @classmethod
    def validated(cls, raw: Any, expected_dimension: int) -> "Vector":
        """Build a Vector from an untyped provider payload.

        Anything that is not a flat sequence of exactly ``expected_dimension``
        finite numbers is rejected, as is the all-zero vector.

        Raises:
            DimensionMismatchError: If the payload has the wrong shape.
        """
        if raw is None or isinstance(raw, (str, bytes, dict)):
            raise DimensionMismatchError(expected_dimension, None, "response is not a vector")
        try:
            items = list(raw)
        except TypeError:
            raise DimensionMismatchError(expected_dimension, None, "response is not a vector")

        if len(items) != expected_dimension:
            raise DimensionMismatchError(expected_dimension, len(items))

        values: list[float] = []
        for position, item in enumerate(items):
            if isinstance(item, bool) or not isinstance(item, Real):
                raise DimensionMismatchError(
                    expected_dimension,
                    len(items),
                    f"non-numeric component at position {position}",
                )
            value = float(item)
            if not math.isfinite(value):
                raise DimensionMismatchError(
                    expected_dimension,
                    len(items),
                    f"non-finite component at position {position}",
                )
            values.append(value)
        if expected_dimension and not any(values):
            raise DimensionMismatchError(expected_dimension, len(items), "zero-magnitude vector")
        return cls(tuple(values))


@dataclass(frozen=True)
class EmbeddingRecord:
    """Persisted embedding row, unique on (lesson_id, chunk_index)."""

    lesson_id: str
    course_id: str
    chunk_index: int
    content: str
    content_hash: str
    embedding: Vector
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RetrievalScope:
    """Restricts retrieval to a set of courses and optionally a single lesson."""

    course_ids: tuple[str, ...]
    lesson_id: Optional[str] = None

    @classmethod
    def for_courses(cls, course_ids, lesson_id: Optional[str] = None) -> "RetrievalScope":
        # Deduplicate while preserving order
        return cls(tuple(dict.fromkeys(course_ids)), lesson_id)


@dataclass(frozen=True)
class RetrievedChunk:
    lesson_id: str
    course_id: str
    chunk_index: int
    content: str
    distance: float


@dataclass(frozen=True)
class LessonError:
    lesson_id: str
    error_message: str


@dataclass
class IndexingRunResult:
    """Counts for one lesson, or the aggregate of a whole batch run."""

    total_chunks: int = 0
    embedded_chunks: int = 0
    skipped_chunks: int = 0
    deleted_chunks: int = 0
    failed_chunks: int = 0
    processed_lessons: int = 0
    skipped_lessons: int = 0
    stopped_reason: Optional[str] = None
    dry_run: bool = False
    force: bool = False
    errors: list[LessonError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """False when any lesson or chunk failed; the run may still have partially succeeded."""
        return not self.errors

    def absorb(self, other: "IndexingRunResult") -> None:
        """Add another result's counts and errors into this one."""
        self.total_chunks += other.total_chunks
        self.embedded_chunks += other.embedded_chunks
        self.skipped_chunks += other.skipped_chunks
        self.deleted_chunks += other.deleted_chunks
        self.failed_chunks += other.failed_chunks
        self.processed_lessons += other.processed_lessons
        self.skipped_lessons += other.skipped_lessons
        self.errors.extend(other.errors)
        if self.stopped_reason is None:
            self.stopped_reason = other.stopped_reason

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
