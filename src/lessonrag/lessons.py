"""Read-only access to lessons owned by the course system."""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

from lessonrag.indexer.errors import StorageError
from lessonrag.indexer.models import Lesson
from lessonrag.indexer.vector_store import as_utc


class LessonSource(Protocol):
    def get(self, lesson_id: str) -> Optional[Lesson]: ...

    def list_by_course(self, course_id: str, limit: int) -> list[Lesson]: ...

    def list_recent(self, limit: int) -> list[Lesson]: ...


def _by_recency(lessons: Iterable[Lesson]) -> list[Lesson]:
    return sorted(lessons, key=lambda lesson: (as_utc(lesson.updated_at), lesson.id), reverse=True)


class InMemoryLessonSource:
    """Lesson source backed by a dict; useful for tests and embedding callers."""

    def __init__(self, lessons: Iterable[Lesson] = ()):
        self._lessons: dict[str, Lesson] = {lesson.id: lesson for lesson in lessons}

    def put(self, lesson: Lesson) -> None:
        self._lessons[lesson.id] = lesson

    def remove(self, lesson_id: str) -> None:
        self._lessons.pop(lesson_id, None)

    def get(self, lesson_id: str) -> Optional[Lesson]:
        return self._lessons.get(lesson_id)

    def list_by_course(self, course_id: str, limit: int) -> list[Lesson]:
        return _by_recency(l for l in self._lessons.values() if l.course_id == course_id)[:limit]

    def list_recent(self, limit: int) -> list[Lesson]:
        return _by_recency(self._lessons.values())[:limit]


class SQLiteLessonSource:
    """Lesson source reading a ``lessons`` table.

    Expected columns: ``id``, ``course_id``, ``title``, ``content``, and
    ``updated_at`` as an ISO-8601 string.
    """

    _COLUMNS = "id, course_id, title, content, updated_at"

    def __init__(self, db_path: Path | str, table: str = "lessons"):
        self.db_path = Path(db_path)
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self.table = table
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if not self.db_path.exists():
                raise StorageError(f"Lesson database not found: {self.db_path}")
            self._conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _query(self, sql: str, params: tuple) -> list[Lesson]:
        try:
            rows = self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Lesson query failed: {e}") from e
        return [
            Lesson(
                id=str(row["id"]),
                course_id=str(row["course_id"]),
                title=row["title"] or "",
                content=row["content"] or "",
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    def get(self, lesson_id: str) -> Optional[Lesson]:
        lessons = self._query(
            f"SELECT {self._COLUMNS} FROM {self.table} WHERE id = ? LIMIT 1", (lesson_id,)
        )
        return lessons[0] if lessons else None

    def list_by_course(self, course_id: str, limit: int) -> list[Lesson]:
        return self._query(
            f"SELECT {self._COLUMNS} FROM {self.table} WHERE course_id = ? "
            "ORDER BY updated_at DESC, id DESC LIMIT ?",
            (course_id, limit),
        )

    def list_recent(self, limit: int) -> list[Lesson]:
        return self._query(
            f"SELECT {self._COLUMNS} FROM {self.table} ORDER BY updated_at DESC, id DESC LIMIT ?",
            (limit,),
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "SQLiteLessonSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
