"""
Bounding boxes and affine transform helpers.

Coordinates follow numpy axis order (z, y, x). Affine models are 4x4
homogeneous matrices mapping a view's native pixel grid into the global frame.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """
    Axis-aligned integer interval with inclusive ``min`` and ``max``.

    Parameters
    ----------
    min : tuple of int
        Lower corner (z, y, x).
    max : tuple of int
        Upper corner (z, y, x), inclusive.
    """

    min: Tuple[int, ...]
    max: Tuple[int, ...]

    def __post_init__(self):
        lo = tuple(int(v) for v in self.min)
        hi = tuple(int(v) for v in self.max)
        if len(lo) != len(hi):
            raise ValueError("min and max must have the same length.")
        if any(h < l for l, h in zip(lo, hi)):
            raise ValueError(f"Empty bounding box: min={lo}, max={hi}")
        object.__setattr__(self, "min", lo)
        object.__setattr__(self, "max", hi)

    @classmethod
    def from_shape(cls, shape: Sequence[int], origin: Optional[Sequence[int]] = None) -> "BoundingBox":
        """Box of the given shape starting at ``origin`` (zero by default)."""
        origin = tuple(origin) if origin is not None else (0,) * len(shape)
        return cls(origin, tuple(o + int(s) - 1 for o, s in zip(origin, shape)))

    @property
    def ndim(self) -> int:
        return len(self.min)

    @property
    def shape(self) -> Tuple[int, ...]:
        """Number of voxels along each axis."""
        return tuple(h - l + 1 for l, h in zip(self.min, self.max))

    def is_zero_min(self) -> bool:
        return all(v == 0 for v in self.min)

    def translate(self, offset: Sequence[int]) -> "BoundingBox":
        return BoundingBox(
            tuple(v + int(o) for v, o in zip(self.min, offset)),
            tuple(v + int(o) for v, o in zip(self.max, offset)),
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def effective_downsampling(downsampling: Optional[float]) -> float:
    """Return ``downsampling``, treating None and non-finite values as 1.0."""
    if downsampling is None:
        return 1.0
    ds = float(downsampling)
    if not math.isfinite(ds):
        return 1.0
    if ds <= 0:
        raise ValueError("downsampling must be > 0.")
    return ds


def num_pixels(
    box: Union[BoundingBox, Sequence[int]], downsampling: Optional[float] = None
) -> int:
    """
    Number of output voxels of a box after downsampling.

    Parameters
    ----------
    box : BoundingBox or sequence of int
        Bounding box, or plain dimensions of a zero-min box.
    downsampling : float, optional
        Downsampling factor; None or NaN means no downsampling.

    Returns
    -------
    n : int
        Product over axes of ``round((max - min + 1) / downsampling)``.
    """
    ds = effective_downsampling(downsampling)
    dims = box.shape if isinstance(box, BoundingBox) else tuple(int(d) for d in box)
    n = 1
    for d in dims:
        n *= _round_half_up(d / ds)
    return n


def scale_bounding_box(box: BoundingBox, factor: float) -> BoundingBox:
    """Scale both corners of a box by ``factor``, rounding to integers."""
    return BoundingBox(
        tuple(_round_half_up(v * factor) for v in box.min),
        tuple(_round_half_up(v * factor) for v in box.max),
    )


def scale_transform(model: np.ndarray, factor: float) -> np.ndarray:
    """Return a copy of ``model`` followed by an isotropic scaling of ``factor``."""
    model = np.asarray(model, dtype=np.float64)
    n = model.shape[0] - 1
    scale = np.eye(n + 1, dtype=np.float64)
    scale[:n, :n] *= factor
    return scale @ model


def scaling(size: Sequence[int], model: np.ndarray) -> np.ndarray:
    """
    Per-axis scale factors of ``model`` (output units per native pixel).

    Each native axis is traversed across the view's extent, mapped through the
    model, and the mapped length is divided by the native length.

    Parameters
    ----------
    size : sequence of int
        Native extent of the view in pixels.
    model : (4, 4) ndarray
        Affine transform into the output frame.

    Returns
    -------
    scale : ndarray of float64
    """
    model = np.asarray(model, dtype=np.float64)
    n = len(size)
    scale = np.empty(n, dtype=np.float64)
    origin = model[:n, n]
    for d in range(n):
        length = max(int(size[d]) - 1, 1)
        end = np.zeros(n)
        end[d] = length
        mapped = model[:n, :n] @ end + model[:n, n]
        scale[d] = np.linalg.norm(mapped - origin) / length
    return scale


def transformed_corners(size: Sequence[int], model: np.ndarray) -> np.ndarray:
    """Corners of a view's native extent mapped into the output frame, shape (2**n, n)."""
    model = np.asarray(model, dtype=np.float64)
    n = len(size)
    grids = np.meshgrid(*[(0.0, float(s) - 1.0) for s in size], indexing="ij")
    corners = np.stack([g.ravel() for g in grids], axis=1)
    return corners @ model[:n, :n].T + model[:n, n]


def maximal_bounding_box(
    shapes_and_models: Iterable[Tuple[Sequence[int], np.ndarray]]
) -> BoundingBox:
    """Smallest integer box enclosing every transformed view."""
    lo = None
    hi = None
    for size, model in shapes_and_models:
        corners = transformed_corners(size, model)
        c_lo = np.floor(corners.min(axis=0))
        c_hi = np.ceil(corners.max(axis=0))
        lo = c_lo if lo is None else np.minimum(lo, c_lo)
        hi = c_hi if hi is None else np.maximum(hi, c_hi)
    if lo is None:
        raise ValueError("Cannot compute a bounding box without views.")
    return BoundingBox(tuple(int(v) for v in lo), tuple(int(v) for v in hi))


def flatten_bounding_box(box: BoundingBox, anisotropy: float, axis: int = 0) -> BoundingBox:
    """Compress ``axis`` of a box by the anisotropy factor (min floors, max ceils)."""
    lo = list(box.min)
    hi = list(box.max)
    lo[axis] = int(math.floor(lo[axis] / anisotropy))
    hi[axis] = int(math.ceil(hi[axis] / anisotropy))
    return BoundingBox(tuple(lo), tuple(hi))


def anisotropy_transform(model: np.ndarray, anisotropy: float, axis: int = 0) -> np.ndarray:
    """Return a copy of ``model`` followed by a ``1 / anisotropy`` scaling of ``axis``."""
    model = np.asarray(model, dtype=np.float64)
    flatten = np.eye(model.shape[0], dtype=np.float64)
    flatten[axis, axis] = 1.0 / anisotropy
    return flatten @ model


def translation(offset: Sequence[float]) -> np.ndarray:
    """Homogeneous translation matrix."""
    n = len(offset)
    model = np.eye(n + 1, dtype=np.float64)
    model[:n, n] = offset
    return model
