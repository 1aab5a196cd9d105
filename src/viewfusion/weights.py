"""
Per-view confidence weights.

Weights are evaluated at native (view-local) coordinates, shape (3, N), so the
same inverse-mapped coordinates serve both resampling and weighting.
"""

import logging
from enum import Enum
from typing import Sequence, Tuple

import numpy as np
from scipy.ndimage import map_coordinates
from skimage.filters import difference_of_gaussians

from .geometry import scaling
from .resample import EPSILON

logger = logging.getLogger(__name__)


class CombineType(Enum):
    MUL = "mul"
    ADD = "add"


def _scale_factors(size: Sequence[int], model: np.ndarray) -> np.ndarray:
    scale = scaling(size, model)
    assert np.all(np.isfinite(scale)) and np.all(scale != 0), f"Degenerate view scaling {scale}"
    return scale


def adjust_blending(
    size: Sequence[int],
    blending: Sequence[float],
    border: Sequence[float],
    model: np.ndarray,
    name: str = "",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute how much blending the input needs so the target blending range and
    border are reached in the fused image.

    Compensates for anisotropy, downsampling and the registration itself.

    Parameters
    ----------
    size : sequence of int
        Native extent of the view (Z, Y, X).
    blending : sequence of float
        Target blending range in output voxels, e.g. 40.
    border : sequence of float
        Target blending border in output voxels, e.g. 0.
    model : (4, 4) ndarray
        Transform from the (downsampled) input into the output frame.
    name : str
        Label used when logging the view's scale.

    Returns
    -------
    blending, border : ndarray
        Values in native pixels of the view.
    """
    scale = _scale_factors(size, model)
    logger.info(
        "View %s is currently scaled by: (%.3f, %.3f, %.3f)", name, *scale
    )
    return (
        np.asarray(blending, dtype=np.float64) / scale,
        np.asarray(border, dtype=np.float64) / scale,
    )


def adjust_content_based(
    size: Sequence[int],
    sigma1: Sequence[float],
    sigma2: Sequence[float],
    model: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Rescale the content-based sigmas from output voxels to native pixels."""
    scale = _scale_factors(size, model)
    return (
        np.asarray(sigma1, dtype=np.float64) / scale,
        np.asarray(sigma2, dtype=np.float64) / scale,
    )


def blending_ramp(rel: np.ndarray, ramp: str = "cosine") -> np.ndarray:
    """
    Ramp from 0 to 1 over relative distances in [0, 1], 1 beyond.

    The cosine ramp is ``(cos((1 - r) * pi) + 1) / 2``; the linear ramp is ``r``.
    """
    rel = np.clip(rel, 0.0, 1.0)
    if ramp == "linear":
        return rel
    return (np.cos((1.0 - rel) * np.pi) + 1.0) / 2.0


class UniformWeight:
    """Weight 1 everywhere inside the view."""

    def __call__(self, coords: np.ndarray) -> np.ndarray:
        return np.ones(coords.shape[1], dtype=np.float32)


class BlendingWeight:
    """
    Border-distance weight of one view.

    Parameters
    ----------
    size : sequence of int
        Native extent (Z, Y, X).
    border : sequence of float
        Zero-weight margin at each face, in native pixels.
    blending : sequence of float
        Ramp width after the border, in native pixels.
    ramp : {'cosine', 'linear'}
    """

    def __init__(self, size, border, blending, ramp: str = "cosine"):
        self.size = tuple(int(s) for s in size)
        self.border = np.asarray(border, dtype=np.float64)
        self.blending = np.asarray(blending, dtype=np.float64)
        self.ramp = ramp

    def __call__(self, coords: np.ndarray) -> np.ndarray:
        n = coords.shape[1]
        weight = np.ones(n, dtype=np.float64)
        for d, size in enumerate(self.size):
            if size <= 1:
                continue
            dim_max = size - 1
            loc = coords[d]
            outside = (loc < -EPSILON) | (loc > dim_max + EPSILON)
            dist = np.minimum(loc, dim_max - loc)
            rel = (dist - self.border[d]) / self.blending[d]
            factor = np.where(dist < self.border[d], 0.0, blending_ramp(rel, self.ramp))
            factor[outside] = 0.0
            weight *= factor
        return weight.astype(np.float32)


class ContentBasedWeight:
    """
    Local-contrast weight ``|G_sigma1(I) - G_sigma2(I)|`` of one view.

    The field needs neighborhood access, so it is computed once over the
    requested native region and then interpolated at arbitrary coordinates.

    Parameters
    ----------
    source : PixelSource
        Native pixel data.
    region : tuple of (lo, hi)
        Native region to evaluate, ``lo`` inclusive and ``hi`` exclusive.
    sigma1, sigma2 : sequence of float
        Gaussian sigmas in native pixels, ``sigma1 < sigma2``.
    """

    def __init__(self, source, region, sigma1, sigma2):
        lo, hi = (np.asarray(r, dtype=np.int64) for r in region)
        self.lo = lo
        key = tuple(slice(int(a), int(b)) for a, b in zip(lo, hi))
        image = np.asarray(source[key], dtype=np.float32)

        i_min = float(image.min()) if image.size else 0.0
        i_max = float(image.max()) if image.size else 0.0
        if i_max > i_min:
            image = (image - i_min) / (i_max - i_min)
        else:
            image = np.zeros_like(image)

        dog = difference_of_gaussians(
            image, low_sigma=tuple(sigma1), high_sigma=tuple(sigma2), mode="nearest"
        )
        self.field = np.abs(dog).astype(np.float32)

    def __call__(self, coords: np.ndarray) -> np.ndarray:
        if coords.shape[1] == 0:
            return np.zeros(0, dtype=np.float32)
        local = coords - self.lo[:, None]
        return map_coordinates(self.field, local, order=1, mode="nearest", output=np.float32)


class CombinedWeight:
    """Pointwise combination of two weight fields."""

    def __init__(self, first, second, combine: CombineType = CombineType.MUL):
        self.first = first
        self.second = second
        self.combine = combine

    def __call__(self, coords: np.ndarray) -> np.ndarray:
        a = self.first(coords)
        b = self.second(coords)
        if self.combine is CombineType.ADD:
            return a + b
        return a * b


def combine_weights(blending=None, content_based=None, combine: CombineType = CombineType.MUL):
    """
    Select the weight of a view from the enabled weighting schemes.

    Both enabled combine pointwise, one enabled is used directly, none gives
    a uniform weight.
    """
    if blending is not None and content_based is not None:
        return CombinedWeight(blending, content_based, combine)
    if blending is not None:
        return blending
    if content_based is not None:
        return content_based
    return UniformWeight()
