"""
Materialization of lazy volumes.

A fused volume can be used as is (virtual), wrapped in a bounded cell cache
(cached), or copied into a dense in-memory buffer (precomputed). All three
return identical values.
"""

import logging
import threading
from concurrent.futures import Executor
from enum import Enum
from itertools import product
from typing import Callable, Optional, Sequence

import numpy as np
import psutil
from tqdm import tqdm

from .cache import BoundedCache
from .config import DEFAULT_CELL_DIMS
from .partition import default_num_threads, divide_into_portions, exec_tasks, portion_blocks
from .volume import LazyVolume

logger = logging.getLogger(__name__)

# Share of the available RAM the cell cache may fill when no size is given.
CACHE_RAM_FRACTION = 0.25


class ImgDataType(Enum):
    VIRTUAL = "virtual"
    CACHED = "cached"
    PRECOMPUTED = "precomputed"


def default_cache_size(cell_dims: Sequence[int], itemsize: int = 4, ram_fraction: float = CACHE_RAM_FRACTION) -> int:
    """Number of cells that fit in a fraction of the currently available RAM."""
    available_ram = psutil.virtual_memory().available
    cell_bytes = int(np.prod(cell_dims, dtype=np.int64)) * itemsize
    return max(1, int(available_ram * ram_fraction) // cell_bytes)


class CachedVolume(LazyVolume):
    """
    Cell-wise cache in front of a lazy volume.

    The volume is tiled into cells of ``cell_dims``; each cell is computed from
    the source on first access and kept until evicted.

    Parameters
    ----------
    source : LazyVolume
        Volume to cache.
    cell_dims : tuple of int
        Cell shape (Z, Y, X); border cells are truncated.
    max_cache_size : int, optional
        Maximum number of cells kept. None derives it from available RAM.
    policy : {'lru', 'fifo'}
        Eviction order.
    """

    def __init__(
        self,
        source: LazyVolume,
        cell_dims: Sequence[int] = DEFAULT_CELL_DIMS,
        max_cache_size: Optional[int] = None,
        policy="lru",
    ):
        super().__init__(source.shape, source.origin)
        self.source = source
        self.dtype = source.dtype
        self.cell_dims = tuple(int(c) for c in cell_dims)
        if len(self.cell_dims) != self.ndim or any(c < 1 for c in self.cell_dims):
            raise ValueError("cell_dims must be positive and match the volume dimensionality.")
        self.grid_shape = tuple(-(-n // c) for n, c in zip(self.shape, self.cell_dims))

        if max_cache_size is None:
            num_cells = int(np.prod(self.grid_shape, dtype=np.int64))
            max_cache_size = min(num_cells, default_cache_size(self.cell_dims, self.dtype.itemsize))
        self.cache = BoundedCache(max_cache_size, policy)

    # -------------------------------------------------------------------------
    # Cells
    # -------------------------------------------------------------------------

    def _cell_extent(self, cell):
        offset = tuple(i * c for i, c in zip(cell, self.cell_dims))
        shape = tuple(min(c, n - o) for o, c, n in zip(offset, self.cell_dims, self.shape))
        return offset, shape

    def cell(self, index: Sequence[int]) -> np.ndarray:
        """Data of the cell at grid position ``index``, computed on first access."""
        key = tuple(int(i) for i in index)

        def load():
            offset, shape = self._cell_extent(key)
            return np.ascontiguousarray(self.source.read_block(offset, shape))

        return self.cache.get_or_compute(key, load)

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def read_block(self, offset, shape) -> np.ndarray:
        offset, shape = self._check_block(offset, shape)
        out = np.empty(shape, dtype=self.dtype)
        first = [o // c for o, c in zip(offset, self.cell_dims)]
        last = [(o + s - 1) // c for o, s, c in zip(offset, shape, self.cell_dims)]

        for cell in product(*[range(a, b + 1) for a, b in zip(first, last)]):
            cell_offset, _ = self._cell_extent(cell)
            data = self.cell(cell)
            src, dst = [], []
            for d in range(self.ndim):
                lo = max(offset[d], cell_offset[d])
                hi = min(offset[d] + shape[d], cell_offset[d] + data.shape[d])
                src.append(slice(lo - cell_offset[d], hi - cell_offset[d]))
                dst.append(slice(lo - offset[d], hi - offset[d]))
            out[tuple(dst)] = data[tuple(src)]
        return out

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.int64).reshape(-1, self.ndim)
        out = np.empty(len(pts), dtype=self.dtype)
        if len(pts) == 0:
            return out
        cells = pts // np.asarray(self.cell_dims, dtype=np.int64)
        unique, inverse = np.unique(cells, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        for k, cell in enumerate(unique):
            sel = np.flatnonzero(inverse == k)
            data = self.cell(tuple(cell))
            local = pts[sel] - cell * np.asarray(self.cell_dims, dtype=np.int64)
            out[sel] = data[tuple(local.T)]
        return out


class PrecomputedVolume(LazyVolume):
    """Dense in-memory copy of a volume; ``data`` is the writable buffer."""

    def __init__(self, data: np.ndarray, origin: Optional[Sequence[int]] = None):
        super().__init__(data.shape, origin)
        self.data = data
        self.dtype = data.dtype

    def read_block(self, offset, shape) -> np.ndarray:
        offset, shape = self._check_block(offset, shape)
        key = tuple(slice(o, o + s) for o, s in zip(offset, shape))
        return self.data[key].copy()

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.int64).reshape(-1, self.ndim)
        return self.data[tuple(pts.T)]

    def __array__(self, dtype=None, copy=None):
        return self.data if dtype is None else self.data.astype(dtype)


def copy_volume(
    source: LazyVolume,
    target: np.ndarray,
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
    show_progress: bool = False,
    progress: Optional[Callable[[float], None]] = None,
) -> None:
    """
    Copy a lazy volume into a dense buffer of the same shape, in parallel.

    The flattened volume is divided into work portions; every portion is
    written block-wise, so writes of different portions never overlap.

    Parameters
    ----------
    source : LazyVolume
        Volume to evaluate.
    target : ndarray
        Destination with ``source.shape``.
    executor : Executor, optional
        Pool to run on; a private pool is used otherwise.
    num_threads : int, optional
        Worker count used for partitioning and the private pool.
    show_progress : bool
        Show a tqdm bar over portions.
    progress : callable, optional
        Called with the completed fraction in [0, 1] after each portion.

    Raises
    ------
    RuntimeError
        If any portion fails; ``target`` is then only partially written.
    """
    if tuple(target.shape) != tuple(source.shape):
        raise ValueError(f"target shape {target.shape} does not match source shape {source.shape}")

    threads = default_num_threads() if num_threads is None else int(num_threads)
    portions = divide_into_portions(source.size, threads)
    total = len(portions)
    bar = tqdm(total=total, desc="copy image", leave=True) if show_progress else None
    done = [0]
    done_lock = threading.Lock()

    def make_task(portion):
        def task():
            for offset, shape in portion_blocks(source.shape, portion):
                key = tuple(slice(o, o + s) for o, s in zip(offset, shape))
                target[key] = source.read_block(offset, shape)
            with done_lock:
                done[0] += 1
                if bar is not None:
                    bar.update(1)
                if progress is not None:
                    progress(done[0] / total)

        return task

    try:
        ok = exec_tasks([make_task(p) for p in portions], "copy image", executor, threads)
    finally:
        if bar is not None:
            bar.close()
    if not ok:
        raise RuntimeError("Failed to copy image")


def materialize(
    volume: LazyVolume,
    mode: ImgDataType = ImgDataType.VIRTUAL,
    cell_dims: Sequence[int] = DEFAULT_CELL_DIMS,
    max_cache_size: Optional[int] = None,
    policy="lru",
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
    show_progress: bool = False,
    progress: Optional[Callable[[float], None]] = None,
) -> LazyVolume:
    """
    Wrap or copy a lazy volume according to ``mode``.

    Parameters
    ----------
    volume : LazyVolume
        Usually a FusedVolume.
    mode : ImgDataType
        VIRTUAL returns ``volume`` itself, CACHED a CachedVolume, PRECOMPUTED
        a PrecomputedVolume filled in parallel.
    cell_dims, max_cache_size, policy
        Cache layout (CACHED only).
    executor, num_threads, show_progress, progress
        Parallel copy settings (PRECOMPUTED only).

    Returns
    -------
    volume : LazyVolume
        Same shape, origin and values as the input.
    """
    mode = ImgDataType(mode)
    if mode is ImgDataType.VIRTUAL:
        return volume
    if mode is ImgDataType.CACHED:
        return CachedVolume(volume, cell_dims, max_cache_size, policy)

    # MemoryError from the allocation propagates.
    data = np.empty(volume.shape, dtype=volume.dtype)
    logger.info("Precomputing volume of shape %s (%.2f GB)", volume.shape, data.nbytes / 1e9)
    copy_volume(volume, data, executor, num_threads, show_progress, progress)
    return PrecomputedVolume(data, volume.origin)
