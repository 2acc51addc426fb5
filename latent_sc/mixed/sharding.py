"""
Splitting gene index sets into independent shards and merging the results.

Per-gene fits only read Y, the technical noise and the kernels, so shards
can run in threads, processes or on different machines. Results are merged
by gene index and do not depend on how the index set was split.
"""

import inspect
import logging
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar
from tqdm import tqdm

from ..errors import InputError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def partition_indices(indices: Sequence[int], n_shards: int) -> List[np.ndarray]:
    """
    Split an index list into at most ``n_shards`` disjoint contiguous shards.

    Examples
    --------
    >>> partition_indices(range(10), 3)
    [array([0, 1, 2, 3]), array([4, 5, 6]), array([7, 8, 9])]
    """
    if n_shards < 1:
        raise InputError(f"n_shards must be >= 1, got {n_shards}")
    idx = np.asarray(list(indices), dtype=int)
    shards = np.array_split(idx, min(n_shards, max(idx.size, 1)))
    return [s for s in shards if s.size > 0]


def parallel_map(
    func: Callable[[T], R],
    items: Sequence[T],
    n_jobs: int = 1,
    desc: Optional[str] = None,
) -> List[R]:
    """
    Apply ``func`` to every item; output order always follows input order.

    A progress bar labelled ``desc`` is shown when desc is given.
    """
    items = list(items)
    if n_jobs <= 1 or len(items) <= 1:
        iterator = items if desc is None else tqdm(items, desc=desc)
        return [func(item) for item in iterator]
    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        results = pool.map(func, items)
        if desc is not None:
            results = tqdm(results, total=len(items), desc=desc)
        return list(results)


def run_sharded(
    func: Callable[..., R],
    indices: Sequence[int],
    n_shards: int,
    n_jobs: int = 1,
    **kwargs,
) -> R:
    """
    Run ``func(gene_indices=shard, **kwargs)`` per shard and merge the results.

    Parameters
    ----------
    func : Callable
        A batch routine such as ``variance_decomposition`` or ``fit_lmm``
        whose result type provides ``merge``
    indices : Sequence[int]
        Full gene index set
    n_shards : int
        Number of shards
    n_jobs : int
        Shards processed concurrently

    Returns
    -------
    merged : result of ``func``
        Same as a single call on the full index set

    Notes
    -----
    For ``fit_lmm`` without ``fixed_indices`` or ``reference``, the full
    index set is used as fixed-effect genes in every shard, so the merged
    result is the gene x gene matrix of a single call.
    """
    indices = np.asarray(list(indices), dtype=int)
    params = inspect.signature(func).parameters
    if (
        "fixed_indices" in params
        and kwargs.get("fixed_indices") is None
        and kwargs.get("reference") is None
    ):
        # every shard must test the same columns
        kwargs["fixed_indices"] = indices

    shards = partition_indices(indices, n_shards)
    if not shards:
        raise InputError("Cannot shard an empty index set")
    logger.info(f"Running {func.__name__} on {len(shards)} shards")
    results = parallel_map(lambda shard: func(gene_indices=shard, **kwargs), shards, n_jobs)
    return type(results[0]).merge(results)
