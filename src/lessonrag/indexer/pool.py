"""Bounded worker pool that captures every task's outcome."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 5


@dataclass(frozen=True)
class TaskOutcome(Generic[T]):
    """Result of one task: either ``value`` or ``error`` is set."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _capture(task: Callable[[], T]) -> TaskOutcome[T]:
    try:
        return TaskOutcome(value=task())
    except Exception as exc:
        return TaskOutcome(error=exc)


def run_bounded(
    tasks: Sequence[Callable[[], T]],
    concurrency: int,
    thread_name_prefix: str = "lessonrag-embed",
) -> list[TaskOutcome[T]]:
    """Run zero-argument tasks with at most ``concurrency`` in flight.

    A failing task never cancels its siblings; its exception is captured in
    the matching ``TaskOutcome``. Outcomes are returned in task order, and
    the call blocks until every task has finished.

    Raises:
        ValueError: If ``concurrency`` is outside 1..5.
    """
    if not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
        raise ValueError(
            f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, "
            f"got {concurrency}"
        )
    if not tasks:
        return []

    if concurrency == 1 or len(tasks) == 1:
        return [_capture(task) for task in tasks]

    workers = min(concurrency, len(tasks))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as executor:
        futures = [executor.submit(_capture, task) for task in tasks]
        outcomes = [future.result() for future in futures]

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    if failed:
        logger.debug(f"{failed}/{len(outcomes)} pooled task(s) failed")
    return outcomes
