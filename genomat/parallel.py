"""Static work partitioning over a fixed-size thread pool.

Every parallel stage in genomat splits its work unit (markers, individuals,
pedigree records) into contiguous, non-overlapping ranges BEFORE any worker
starts. Workers never share a counter and never touch each other's range,
so the only synchronization is the final join.

NumPy releases the GIL inside its kernels, so a ThreadPoolExecutor is
enough to keep several cores busy on the array work.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

Range = Tuple[int, int]


def resolve_threads(threads: Optional[int]) -> int:
    """Non-positive or missing thread counts fall back to serial execution."""
    if threads is None or threads < 1:
        return 1
    return int(threads)


def partition_ranges(n: int, n_parts: int, align: int = 1) -> List[Range]:
    """Split ``range(n)`` into at most ``n_parts`` contiguous ranges.

    Every internal boundary is a multiple of ``align``. With ``align=4``
    on an individual axis, each packed genotype byte (four calls) lands in
    exactly one range.

    Args:
        n: Number of work items.
        n_parts: Desired number of ranges (clamped to ≥ 1).
        align: Boundary granularity (≥ 1).

    Returns:
        List of (start, stop) pairs covering [0, n) in order. Empty ranges
        are dropped, so fewer than ``n_parts`` may be returned.
    """
    if n <= 0:
        return []
    if align < 1:
        raise ValueError(f"align must be >= 1, got {align}")
    n_parts = max(1, int(n_parts))

    n_units = -(-n // align)                 # ceil(n / align)
    n_parts = min(n_parts, n_units)
    base, extra = divmod(n_units, n_parts)

    ranges: List[Range] = []
    start_unit = 0
    for i in range(n_parts):
        width = base + (1 if i < extra else 0)
        stop_unit = start_unit + width
        start = start_unit * align
        stop = min(stop_unit * align, n)
        if stop > start:
            ranges.append((start, stop))
        start_unit = stop_unit
    return ranges


def run_partitions(
    func: Callable[[int, int], T],
    ranges: Sequence[Range],
    threads: Optional[int] = 1,
) -> List[T]:
    """Run ``func(start, stop)`` for every range and return results in order.

    Serial when only one thread (or one range) is available. Exceptions
    raised by a worker propagate to the caller.
    """
    n_threads = resolve_threads(threads)
    if n_threads == 1 or len(ranges) <= 1:
        return [func(start, stop) for start, stop in ranges]

    with ThreadPoolExecutor(max_workers=min(n_threads, len(ranges))) as pool:
        futures = [pool.submit(func, start, stop) for start, stop in ranges]
        return [fut.result() for fut in futures]
