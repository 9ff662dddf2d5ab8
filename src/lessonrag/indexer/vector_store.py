"""Embedding store for lesson chunks using SQLite and sqlite-vec.

Rows are keyed by ``(lesson_id, chunk_index)`` and hold the chunk text, its
content hash and a float32 embedding blob. Nearest-neighbor queries use
sqlite-vec's ``vec_distance_cosine`` over the rows in scope.

A single connection is shared between the indexing worker threads, so
every statement runs under one lock and every write is committed on its
own: a reader never sees a torn row.
"""

import sqlite3
import struct
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from .embedder import EMBEDDING_DIMENSION
from .errors import DimensionMismatchError, StorageError
from .models import EmbeddingRecord, RetrievedChunk, Vector

IN_MEMORY = ":memory:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class LessonWatermark:
    """Aggregate over a lesson's persisted chunks."""

    chunk_count: int
    last_indexed_at: Optional[datetime]
    incomplete: bool = False


class EmbeddingStore:
    """Persist and search lesson chunk embeddings.

    Usage:
        with EmbeddingStore(db_path, dimension=768) as store:
            store.upsert(record)
            store.delete_beyond(lesson_id, max_valid_index)
            results = store.knn_search(query_vec, course_ids=["c1"], k=5)
    """

    def __init__(
        self,
        db_path: Path | str,
        dimension: int = EMBEDDING_DIMENSION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the store.

        Args:
            db_path: SQLite database file, or ``":memory:"``.
            dimension: Required length of every stored vector.
            clock: Source of ``updated_at`` timestamps.
        """
        if str(db_path) == IN_MEMORY:
            self.db_path: Optional[Path] = None
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.dimension = dimension
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            target = str(self.db_path) if self.db_path is not None else IN_MEMORY
            try:
                conn = sqlite3.connect(target, check_same_thread=False)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open embedding store at {target}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._load_sqlite_vec(conn)
            self._conn = conn
            self._ensure_schema()
        return self._conn

    @staticmethod
    def _load_sqlite_vec(conn: sqlite3.Connection) -> None:
        """Load the sqlite-vec extension into the connection."""
        try:
            import sqlite_vec
        except ImportError as e:
            raise StorageError(
                "sqlite-vec extension not available.\nInstall with: pip install sqlite-vec"
            ) from e

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as e:
            raise StorageError(
                f"Failed to load sqlite-vec extension: {e}\n"
                "Note: some Python builds do not support SQLite extensions."
            ) from e

    def _ensure_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        conn = self._conn
        if conn is None:
            return

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lesson_embedding_chunks (
                lesson_id    TEXT NOT NULL,
                course_id    TEXT NOT NULL,
                chunk_index  INTEGER NOT NULL CHECK (chunk_index >= 0),
                content      TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                embedding    BLOB NOT NULL,
                updated_at   TEXT NOT NULL,
                PRIMARY KEY (lesson_id, chunk_index)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_lesson_embedding_chunks_course "
            "ON lesson_embedding_chunks(course_id)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lesson_index_incomplete (
                lesson_id  TEXT PRIMARY KEY,
                marked_at  TEXT NOT NULL
            )
            """
        )
        conn.commit()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run one operation under the store lock, translating SQLite failures."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"{operation} failed: {e}") from e

    def _serialize_vector(self, vector: Sequence[float]) -> bytes:
        """Serialize a vector to float32 bytes for sqlite-vec."""
        return struct.pack(f"{len(vector)}f", *vector)

    def _deserialize_vector(self, data: bytes) -> tuple[float, ...]:
        """Deserialize float32 bytes to a tuple of floats."""
        count = len(data) // 4  # 4 bytes per float
        return struct.unpack(f"{count}f", data)

    def _check_dimension(self, vector: Vector) -> None:
        if vector.dimension != self.dimension:
            raise DimensionMismatchError(self.dimension, vector.dimension)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, record: EmbeddingRecord) -> None:
        """Write or overwrite the row for ``(lesson_id, chunk_index)``.

        Repeating an upsert with identical input leaves the row untouched,
        including its ``updated_at``.

        Raises:
            DimensionMismatchError: If the embedding has the wrong length.
            StorageError: If the write fails.
        """
        self._check_dimension(record.embedding)
        updated_at = _format_timestamp(record.updated_at or self._clock())

        with self._transaction("upsert") as conn:
            conn.execute(
                """
                INSERT INTO lesson_embedding_chunks (
                    lesson_id, course_id, chunk_index, content,
                    content_hash, embedding, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (lesson_id, chunk_index) DO UPDATE SET
                    course_id = excluded.course_id,
                    content = excluded.content,
                    content_hash = excluded.content_hash,
                    embedding = excluded.embedding,
                    updated_at = excluded.updated_at
                WHERE lesson_embedding_chunks.course_id IS NOT excluded.course_id
                   OR lesson_embedding_chunks.content IS NOT excluded.content
                   OR lesson_embedding_chunks.content_hash IS NOT excluded.content_hash
                   OR lesson_embedding_chunks.embedding IS NOT excluded.embedding
                """,
                (
                    record.lesson_id,
                    record.course_id,
                    record.chunk_index,
                    record.content,
                    record.content_hash,
                    self._serialize_vector(record.embedding.values),
                    updated_at,
                ),
            )

    def delete_beyond(self, lesson_id: str, max_valid_index: int) -> int:
        """Delete a lesson's rows whose chunk_index exceeds ``max_valid_index``.

        Pass ``-1`` to delete every row of the lesson.

        Returns:
            Number of rows deleted.
        """
        with self._transaction("delete_beyond") as conn:
            cursor = conn.execute(
                "DELETE FROM lesson_embedding_chunks WHERE lesson_id = ? AND chunk_index > ?",
                (lesson_id, max_valid_index),
            )
            return cursor.rowcount

    def delete_lesson(self, lesson_id: str) -> int:
        """Delete every row of a lesson. Returns the number of rows deleted."""
        deleted = self.delete_beyond(lesson_id, -1)
        self.set_incomplete(lesson_id, False)
        return deleted

    def set_incomplete(self, lesson_id: str, incomplete: bool) -> None:
        """Flag a lesson whose last run left chunks unembedded (budget stop or failures).

        Flagged lessons are never skipped by the watermark pre-filter.
        """
        with self._transaction("set_incomplete") as conn:
            if incomplete:
                conn.execute(
                    "INSERT OR REPLACE INTO lesson_index_incomplete (lesson_id, marked_at) "
                    "VALUES (?, ?)",
                    (lesson_id, _format_timestamp(self._clock())),
                )
            else:
                conn.execute(
                    "DELETE FROM lesson_index_incomplete WHERE lesson_id = ?", (lesson_id,)
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count_beyond(self, lesson_id: str, max_valid_index: int) -> int:
        """Number of rows ``delete_beyond`` would remove."""
        with self._transaction("count_beyond") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM lesson_embedding_chunks "
                "WHERE lesson_id = ? AND chunk_index > ?",
                (lesson_id, max_valid_index),
            ).fetchone()
            return int(row["cnt"])

    def get_chunk_hashes(self, lesson_id: str) -> dict[int, str]:
        """Map chunk_index to content_hash for a lesson's persisted rows."""
        with self._transaction("get_chunk_hashes") as conn:
            cursor = conn.execute(
                "SELECT chunk_index, content_hash FROM lesson_embedding_chunks "
                "WHERE lesson_id = ? ORDER BY chunk_index ASC",
                (lesson_id,),
            )
            return {row["chunk_index"]: row["content_hash"] for row in cursor}

    def get_lesson_watermarks(self, lesson_ids: Sequence[str]) -> dict[str, LessonWatermark]:
        """Return (count, max(updated_at), incomplete) per lesson; lessons without rows are omitted."""
        if not lesson_ids:
            return {}

        placeholders = ",".join("?" * len(lesson_ids))
        with self._transaction("get_lesson_watermarks") as conn:
            cursor = conn.execute(
                f"""
                SELECT c.lesson_id,
                       COUNT(*) AS chunk_count,
                       MAX(c.updated_at) AS last_indexed_at,
                       MAX(i.lesson_id IS NOT NULL) AS incomplete
                FROM lesson_embedding_chunks c
                LEFT JOIN lesson_index_incomplete i ON i.lesson_id = c.lesson_id
                WHERE c.lesson_id IN ({placeholders})
                GROUP BY c.lesson_id
                """,
                tuple(lesson_ids),
            )
            return {
                row["lesson_id"]: LessonWatermark(
                    chunk_count=row["chunk_count"],
                    last_indexed_at=(
                        datetime.fromisoformat(row["last_indexed_at"])
                        if row["last_indexed_at"]
                        else None
                    ),
                    incomplete=bool(row["incomplete"]),
                )
                for row in cursor
            }

    def get_records(self, lesson_id: str) -> list[EmbeddingRecord]:
        """All persisted rows of a lesson, ordered by chunk_index."""
        with self._transaction("get_records") as conn:
            cursor = conn.execute(
                """
                SELECT lesson_id, course_id, chunk_index, content, content_hash,
                       embedding, updated_at
                FROM lesson_embedding_chunks
                WHERE lesson_id = ?
                ORDER BY chunk_index ASC
                """,
                (lesson_id,),
            )
            return [
                EmbeddingRecord(
                    lesson_id=row["lesson_id"],
                    course_id=row["course_id"],
                    chunk_index=row["chunk_index"],
                    content=row["content"],
                    content_hash=row["content_hash"],
                    embedding=Vector(self._deserialize_vector(row["embedding"])),
                    updated_at=datetime.fromisoformat(row["updated_at"]),
                )
                for row in cursor
            ]

    def indexed_lesson_ids(self) -> set[str]:
        """Lesson IDs that have at least one persisted row."""
        with self._transaction("indexed_lesson_ids") as conn:
            cursor = conn.execute("SELECT DISTINCT lesson_id FROM lesson_embedding_chunks")
            return {row["lesson_id"] for row in cursor}

    def knn_search(
        self,
        query_vec: Vector,
        course_ids: Sequence[str],
        lesson_id: Optional[str] = None,
        k: int = 5,
    ) -> list[RetrievedChunk]:
        """Return the k chunks closest to ``query_vec`` within the scope.

        Args:
            query_vec: Query embedding; must match the store dimension.
            course_ids: Courses to search. An empty list yields no results.
            lesson_id: Optional single-lesson restriction.
            k: Maximum number of results.

        Returns:
            Chunks ordered by ascending cosine distance.
        """
        if k <= 0 or not course_ids:
            return []
        self._check_dimension(query_vec)

        placeholders = ",".join("?" * len(course_ids))
        params: list[Any] = [self._serialize_vector(query_vec.values), *course_ids]
        lesson_filter = ""
        if lesson_id is not None:
            lesson_filter = "AND lesson_id = ?"
            params.append(lesson_id)
        params.append(k)

        with self._transaction("knn_search") as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM (
                    SELECT lesson_id, course_id, chunk_index, content,
                           vec_distance_cosine(embedding, ?) AS distance
                    FROM lesson_embedding_chunks
                    WHERE course_id IN ({placeholders})
                      {lesson_filter}
                )
                WHERE distance IS NOT NULL
                ORDER BY distance ASC, lesson_id ASC, chunk_index ASC
                LIMIT ?
                """,
                tuple(params),
            )
            return [
                RetrievedChunk(
                    lesson_id=row["lesson_id"],
                    course_id=row["course_id"],
                    chunk_index=row["chunk_index"],
                    content=row["content"],
                    distance=float(row["distance"]),
                )
                for row in cursor
            ]

    def get_stats(self) -> dict[str, Any]:
        """Get statistics about the store.

        Returns:
            Dict with keys: chunk_count, lesson_count, course_count,
            db_size_bytes, last_indexed_at.
        """
        with self._transaction("get_stats") as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS chunk_count,
                       COUNT(DISTINCT lesson_id) AS lesson_count,
                       COUNT(DISTINCT course_id) AS course_count,
                       MAX(updated_at) AS last_indexed_at
                FROM lesson_embedding_chunks
                """
            ).fetchone()

        db_size = 0
        if self.db_path is not None and self.db_path.exists():
            db_size = self.db_path.stat().st_size

        return {
            "chunk_count": row["chunk_count"],
            "lesson_count": row["lesson_count"],
            "course_count": row["course_count"],
            "db_size_bytes": db_size,
            "last_indexed_at": row["last_indexed_at"],
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "EmbeddingStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
