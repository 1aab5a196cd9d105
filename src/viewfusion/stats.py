"""
Intensity statistics and normalization of volumes.
"""

import logging
import math
from concurrent.futures import Executor
from typing import Optional, Tuple, Union

import numpy as np

from .materialize import PrecomputedVolume
from .partition import default_num_threads, divide_into_portions, exec_tasks, portion_blocks, run_tasks
from .volume import LazyVolume

logger = logging.getLogger(__name__)

# Fixed seed so approximate statistics are reproducible between runs.
APPROX_SEED = 3535


def _read(volume, offset, shape) -> np.ndarray:
    if isinstance(volume, LazyVolume):
        return volume.read_block(offset, shape)
    key = tuple(slice(o, o + s) for o, s in zip(offset, shape))
    return np.asarray(volume[key])


def _sample(volume, points: np.ndarray) -> np.ndarray:
    if isinstance(volume, LazyVolume):
        return volume.sample_points(points)
    return np.asarray(volume)[tuple(points.T)]


def min_max(
    volume: Union[LazyVolume, np.ndarray],
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
) -> Optional[Tuple[float, float]]:
    """
    Exact minimum and maximum of a volume, computed in parallel.

    Returns
    -------
    (min, max) : tuple of float, or None
        None when the volume is empty or a worker failed.
    """
    shape = tuple(volume.shape)
    threads = default_num_threads() if num_threads is None else int(num_threads)
    portions = divide_into_portions(int(np.prod(shape, dtype=np.int64)), threads)
    if not portions:
        return None

    def make_task(portion):
        def task():
            lo, hi = math.inf, -math.inf
            for offset, block_shape in portion_blocks(shape, portion):
                block = _read(volume, offset, block_shape)
                lo = min(lo, float(block.min()))
                hi = max(hi, float(block.max()))
            return lo, hi

        return task

    results = run_tasks([make_task(p) for p in portions], "compute min/max", executor, threads)
    if results is None:
        return None
    return min(r[0] for r in results), max(r[1] for r in results)


def _random_points(shape, num_pixels: int, rng) -> np.ndarray:
    rng = np.random.default_rng(APPROX_SEED) if rng is None else rng
    return np.stack([rng.integers(0, n, size=num_pixels) for n in shape], axis=1)


def min_max_approx(
    volume: Union[LazyVolume, np.ndarray],
    num_pixels: int = 1000,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[float, float]:
    """
    Minimum and maximum over ``num_pixels`` randomly sampled voxels.

    The default generator is seeded with a fixed value, so repeated calls on
    the same volume return the same result.
    """
    if num_pixels < 1:
        raise ValueError("num_pixels must be >= 1.")
    values = _sample(volume, _random_points(volume.shape, num_pixels, rng))
    return float(values.min()), float(values.max())


def min_max_avg_approx(
    volume: Union[LazyVolume, np.ndarray],
    num_pixels: int = 1000,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[float, float, float]:
    """Like :func:`min_max_approx`, additionally returning the sample mean."""
    if num_pixels < 1:
        raise ValueError("num_pixels must be >= 1.")
    values = _sample(volume, _random_points(volume.shape, num_pixels, rng)).astype(np.float64)
    return float(values.min()), float(values.max()), float(values.mean())


def normalize_image(
    image: Union[np.ndarray, PrecomputedVolume],
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
) -> bool:
    """
    Rescale a floating point image in place to [0, 1].

    Parameters
    ----------
    image : ndarray or PrecomputedVolume
        Writable float buffer.
    min_value, max_value : float, optional
        Intensity range to map to [0, 1]; computed exactly when omitted.

    Returns
    -------
    ok : bool
        False, with the image untouched, when the range is empty or not
        finite, or when a worker failed.
    """
    data = image.data if isinstance(image, PrecomputedVolume) else image
    if not np.issubdtype(data.dtype, np.floating):
        raise ValueError(f"Can only normalize floating point images, got {data.dtype}")

    threads = default_num_threads() if num_threads is None else int(num_threads)
    if min_value is None or max_value is None:
        result = min_max(data, executor, threads)
        if result is None:
            return False
        min_value = result[0] if min_value is None else min_value
        max_value = result[1] if max_value is None else max_value

    diff = float(max_value) - float(min_value)
    if diff == 0 or not math.isfinite(diff):
        logger.warning(
            "Cannot normalize image: min=%s, max=%s gives an empty range", min_value, max_value
        )
        return False

    shape = data.shape
    lo = float(min_value)

    def make_task(portion):
        def task():
            for offset, block_shape in portion_blocks(shape, portion):
                key = tuple(slice(o, o + s) for o, s in zip(offset, block_shape))
                block = data[key]
                block -= lo
                block /= diff

        return task

    portions = divide_into_portions(data.size, threads)
    return exec_tasks([make_task(p) for p in portions], "normalize image", executor, threads)
