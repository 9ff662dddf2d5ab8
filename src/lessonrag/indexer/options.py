"""Run options and lesson selectors for indexing."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .chunker import DEFAULT_MAX_CHARS
from .errors import ConfigurationError
from .pool import MAX_CONCURRENCY, MIN_CONCURRENCY

if TYPE_CHECKING:
    from lessonrag.config import Settings

MAX_CHARS_RANGE = (300, 4000)
MAX_EMBEDDINGS_RANGE = (1, 2000)
CONCURRENCY_RANGE = (MIN_CONCURRENCY, MAX_CONCURRENCY)
RETRY_ATTEMPTS_RANGE = (0, 5)

DEFAULT_MAX_EMBEDDINGS = 200
DEFAULT_CONCURRENCY = 2
DEFAULT_RETRY_ATTEMPTS = 2
DEFAULT_RECENT_LIMIT = 25
DEFAULT_COURSE_LIMIT = 100


@dataclass(frozen=True)
class IndexingOptions:
    """Options for one indexing run.

    ``retry_attempts`` counts retries after the first embedding attempt.
    ``max_embeddings_per_run`` is shared by every lesson in the run.
    """

    dry_run: bool = False
    force: bool = False
    max_chars: int = DEFAULT_MAX_CHARS
    max_embeddings_per_run: int = DEFAULT_MAX_EMBEDDINGS
    concurrency: int = DEFAULT_CONCURRENCY
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    skip_unchanged_lessons: bool = True

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "IndexingOptions":
        """Build options from configured defaults, applying non-None overrides."""
        options = cls(
            max_chars=settings.max_chars,
            max_embeddings_per_run=settings.max_embeddings_per_run,
            concurrency=settings.concurrency,
            retry_attempts=settings.retry_attempts,
        )
        return replace(options, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> "IndexingOptions":
        """Check every bound and return self.

        Raises:
            ConfigurationError: If any option is outside its allowed range.
        """
        _check_range("max_chars", self.max_chars, MAX_CHARS_RANGE)
        _check_range("max_embeddings_per_run", self.max_embeddings_per_run, MAX_EMBEDDINGS_RANGE)
        _check_range("concurrency", self.concurrency, CONCURRENCY_RANGE)
        _check_range("retry_attempts", self.retry_attempts, RETRY_ATTEMPTS_RANGE)
        return self

    @property
    def uses_lesson_watermarks(self) -> bool:
        """Whether whole lessons may be skipped by comparing updated_at watermarks."""
        return self.skip_unchanged_lessons and not self.dry_run and not self.force


def _check_range(name: str, value: int, bounds: tuple[int, int]) -> None:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ConfigurationError(f"{name} must be an integer in [{low}, {high}], got {value!r}")


class SelectorKind(str, Enum):
    LESSON = "lesson"
    COURSE = "course"
    RECENT = "recent"


@dataclass(frozen=True)
class LessonSelector:
    """Which lessons an indexing run considers."""

    kind: SelectorKind
    lesson_id: Optional[str] = None
    course_id: Optional[str] = None
    limit: Optional[int] = None

    @classmethod
    def lesson(cls, lesson_id: str, course_id: Optional[str] = None) -> "LessonSelector":
        """A single lesson, optionally required to belong to ``course_id``."""
        return cls(SelectorKind.LESSON, lesson_id=lesson_id, course_id=course_id)

    @classmethod
    def course(cls, course_id: str, limit: int = DEFAULT_COURSE_LIMIT) -> "LessonSelector":
        """A course's lessons, most recently updated first."""
        return cls(SelectorKind.COURSE, course_id=course_id, limit=limit)

    @classmethod
    def recent(cls, limit: int = DEFAULT_RECENT_LIMIT) -> "LessonSelector":
        """The ``limit`` most recently updated lessons system-wide."""
        return cls(SelectorKind.RECENT, limit=limit)

    def describe(self) -> str:
        if self.kind is SelectorKind.LESSON:
            return f"lesson {self.lesson_id}"
        if self.kind is SelectorKind.COURSE:
            return f"course {self.course_id} (limit {self.limit})"
        return f"{self.limit} most recent lessons"
