"""Bounded worker pool for tasks that each spawn an external process."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional, Sequence, TypeVar

from slidedeck.constants import MAX_SLIDES_WORKERS

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]


def clamp_workers(workers: int, upper: int = MAX_SLIDES_WORKERS) -> int:
    """Clamp a requested worker count to ``[1, upper]``."""
    return max(1, min(upper, int(round(workers))))


def run_with_concurrency(
    tasks: Sequence[Callable[[], T]],
    workers: int,
    on_progress: Optional[ProgressCallback] = None,
) -> list[T]:
    """Run tasks on at most ``workers`` threads and return results in task order.

    Each task writes only to its own result slot, so completion order does
    not matter. ``on_progress(completed, total)`` fires after every task,
    including failed ones. If any task raised, the first exception (by task
    index) is re-raised once all tasks have settled.

    Args:
        tasks: Zero-argument callables.
        workers: Requested concurrency (clamped to 1-16).
        on_progress: Optional completion callback.

    Returns:
        List of task results, index-aligned with ``tasks``.
    """
    if not tasks:
        return []

    total = len(tasks)
    concurrency = min(clamp_workers(workers), total)
    results: list[Optional[T]] = [None] * total
    errors: dict[int, BaseException] = {}
    completed = 0

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="slides") as executor:
        futures = {executor.submit(task): index for index, task in enumerate(tasks)}
        for future in as_completed(futures):
            index = futures[future]
            try:
                results[index] = future.result()
            except Exception as exc:
                errors[index] = exc
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

    if errors:
        first = min(errors)
        logger.debug(f"{len(errors)}/{total} pool tasks failed; raising task {first}")
        raise errors[first]

    return results  # type: ignore[return-value]
