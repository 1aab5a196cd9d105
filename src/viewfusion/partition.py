"""
Work partitioning and task execution.

Splits flattened index spaces into contiguous portions and runs one task per
portion on a thread pool, joining synchronously.
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, Executor, ThreadPoolExecutor, wait
from contextlib import contextmanager
from multiprocessing import cpu_count
from typing import Any, Callable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# Portions target roughly one 64x64x64 block of voxels each.
PORTION_VOXELS = 64 * 64 * 64


class WorkPortion(NamedTuple):
    """A contiguous slice ``[start, start + length)`` of a flat index space."""

    start: int
    length: int

    @property
    def stop(self) -> int:
        return self.start + self.length


def default_num_threads() -> int:
    """Number of worker threads used when the caller does not supply one."""
    return max(1, cpu_count())


def divide_into_portions(n: int, num_threads: Optional[int] = None) -> List[WorkPortion]:
    """
    Divide ``[0, n)`` into contiguous, ordered, non-overlapping portions.

    Parameters
    ----------
    n : int
        Total number of indices.
    num_threads : int, optional
        Worker count. Defaults to the number of CPUs.

    Returns
    -------
    portions : list of WorkPortion
        Portions whose lengths sum to ``n``. Empty when ``n == 0``.
    """
    n = int(n)
    if n < 0:
        raise ValueError("n must be >= 0.")
    threads = default_num_threads() if num_threads is None else int(num_threads)
    if threads < 1:
        raise ValueError("num_threads must be >= 1.")

    if n == 0:
        return []

    if n <= threads:
        num_portions = n
    else:
        num_portions = max(threads, n // PORTION_VOXELS)

    chunk = n // num_portions
    while chunk == 0:
        num_portions -= 1
        chunk = n // num_portions
    remainder = n % num_portions

    portions = []
    for portion_id in range(num_portions):
        length = chunk + remainder if portion_id == num_portions - 1 else chunk
        portions.append(WorkPortion(portion_id * chunk, length))
    return portions


def portion_blocks(
    shape: Sequence[int], portion: WorkPortion
) -> Iterator[Tuple[Tuple[int, ...], Tuple[int, ...]]]:
    """
    Decompose a C-order flat index range into rectangular blocks.

    Parameters
    ----------
    shape : sequence of int
        Shape of the volume the flat index space belongs to.
    portion : WorkPortion
        Flat range to cover.

    Yields
    ------
    (offset, block_shape) : tuple of tuples
        Blocks in C order that together cover exactly the flat range.
    """
    yield from _range_blocks(tuple(int(s) for s in shape), portion.start, portion.stop)


def _range_blocks(shape, start, stop):
    if start >= stop:
        return
    if len(shape) == 1:
        yield (start,), (stop - start,)
        return

    inner = 1
    for s in shape[1:]:
        inner *= s
    first, first_rem = divmod(start, inner)
    last, last_rem = divmod(stop, inner)

    if first == last:
        for off, shp in _range_blocks(shape[1:], first_rem, last_rem):
            yield (first,) + off, (1,) + shp
        return

    if first_rem:
        for off, shp in _range_blocks(shape[1:], first_rem, inner):
            yield (first,) + off, (1,) + shp
        first += 1

    if last > first:
        yield (first,) + (0,) * (len(shape) - 1), (last - first,) + shape[1:]

    if last_rem:
        for off, shp in _range_blocks(shape[1:], 0, last_rem):
            yield (last,) + off, (1,) + shp


@contextmanager
def thread_pool(
    executor: Optional[Executor] = None, num_threads: Optional[int] = None
) -> Iterator[Executor]:
    """
    Provide an executor for the duration of a ``with`` block.

    An externally supplied executor is borrowed and left running. Otherwise a
    ThreadPoolExecutor is created and shut down on every exit path.
    """
    if executor is not None:
        yield executor
        return

    workers = default_num_threads() if num_threads is None else int(num_threads)
    own = ThreadPoolExecutor(max_workers=max(1, workers))
    try:
        yield own
    finally:
        own.shutdown(wait=True, cancel_futures=True)


def run_tasks(
    tasks: Sequence[Callable[[], Any]],
    job_description: str,
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
) -> Optional[List[Any]]:
    """
    Submit all tasks together and block until they finish.

    Parameters
    ----------
    tasks : sequence of callables
        Zero-argument callables, typically one per work portion.
    job_description : str
        Human readable name used when reporting failures (e.g. "copy image").
    executor : Executor, optional
        Pool to submit to. When None, a pool of ``num_threads`` is created.
    num_threads : int, optional
        Size of the pool created when no executor is given.

    Returns
    -------
    results : list or None
        Task results in submission order, or None if any task failed. Side
        effects of tasks that completed before the failure are not undone.
    """
    if not tasks:
        return []

    with thread_pool(executor, num_threads) as pool:
        futures = [pool.submit(task) for task in tasks]
        try:
            done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        except KeyboardInterrupt:
            for future in futures:
                future.cancel()
            raise

        failed = [f for f in futures if f in done and f.exception() is not None]
        if failed:
            for future in not_done:
                future.cancel()
            exc = failed[0].exception()
            logger.error("Failed to %s: %s", job_description, exc, exc_info=exc)
            return None

        return [f.result() for f in futures]


def exec_tasks(
    tasks: Sequence[Callable[[], Any]],
    job_description: str,
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
) -> bool:
    """Run tasks like :func:`run_tasks` and report success as a bool."""
    return run_tasks(tasks, job_description, executor, num_threads) is not None
