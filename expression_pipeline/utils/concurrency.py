"""
Worker pool and cooperative cancellation helpers.

Inner loops (permutation chunks, network blocks, enrichment collections)
are submitted to a bounded thread pool. Workers only read their inputs and
return a partial result; the caller merges results itself.
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .errors import PipelineCancelled

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Deadline/flag checked between units of work."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self.cancelled:
            raise PipelineCancelled("run cancelled or timed out", stage=stage)


def resolve_workers(n_workers: Optional[int]) -> int:
    """Pool size: explicit value or the number of available cores."""
    if n_workers is not None and n_workers > 0:
        return n_workers
    return os.cpu_count() or 1


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def run_in_pool(
    func: Callable[[T], R],
    items: Iterable[T],
    n_workers: Optional[int] = None,
    token: Optional[CancellationToken] = None,
    stage: Optional[str] = None,
) -> List[R]:
    """Apply ``func`` to every item on a bounded pool.

    Results come back in input order regardless of completion order. The
    token is checked every time a unit finishes; on cancellation pending
    units are dropped and nothing is returned.
    """
    items = list(items)
    if not items:
        return []

    results: Dict[int, R] = {}
    workers = min(resolve_workers(n_workers), len(items))

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(func, item): idx for idx, item in enumerate(items)}
        try:
            for future in as_completed(futures):
                results[futures[future]] = future.result()
                if token is not None:
                    token.raise_if_cancelled(stage)
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    return [results[i] for i in range(len(items))]


def block_ranges(n: int, block_size: int) -> List[Tuple[int, int]]:
    """Disjoint [start, stop) row ranges covering 0..n."""
    block_size = max(1, block_size)
    return [(start, min(start + block_size, n)) for start in range(0, n, block_size)]
