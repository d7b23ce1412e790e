"""
Worker pool sizing and tile partitioning.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterator, List, Optional

logger = logging.getLogger(__name__)


def resolve_worker_count(requested: Optional[int]) -> int:
    """
    Number of worker threads for a merge.

    None means one worker per CPU core; larger requests are capped to the
    core count.
    """
    cpu_cores = os.cpu_count() or 1
    if requested is None:
        return cpu_cores
    requested = int(requested)
    if requested < 1:
        raise ValueError(f"worker_count must be >= 1, got {requested}")
    if requested > cpu_cores:
        logger.warning(f"worker_count ({requested}) exceeds CPU cores ({cpu_cores}), capping to {cpu_cores}")
        return cpu_cores
    return requested


@contextmanager
def worker_pool(workers: int) -> Iterator[Optional[ThreadPoolExecutor]]:
    """Thread pool for `workers` > 1, None (run inline) otherwise."""
    if workers <= 1:
        yield None
        return
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='burst-merge') as pool:
        yield pool


def partition_tiles(n_tiles: int, n_arenas: int) -> List[List[int]]:
    """
    Assign tile i to arena i % n_arenas.

    Each arena lists its tiles in ascending order.
    """
    n_arenas = max(1, min(int(n_arenas), max(n_tiles, 1)))
    return [list(range(a, n_tiles, n_arenas)) for a in range(n_arenas)]
