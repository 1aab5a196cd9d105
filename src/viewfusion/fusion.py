"""
Lazy multi-view fusion.

Numba-accelerated weighted accumulation and normalization kernels, and the
fused volume that evaluates them for any requested output region.
"""

import logging
from typing import List, Mapping, Optional, Sequence

import numpy as np
from numba import njit

from .config import FusionOptions
from .geometry import (
    BoundingBox,
    effective_downsampling,
    maximal_bounding_box,
    scale_bounding_box,
    scale_transform,
)
from .partition import PORTION_VOXELS, WorkPortion, portion_blocks
from .resample import TransformedView
from .views import View, ViewId, transform_for
from .volume import LazyVolume
from .weights import (
    BlendingWeight,
    ContentBasedWeight,
    UniformWeight,
    adjust_blending,
    adjust_content_based,
    combine_weights,
)

logger = logging.getLogger(__name__)

# Larger reads are fused in sub-blocks so per-voxel temporaries stay bounded.
MAX_BLOCK_VOXELS = PORTION_VOXELS


# Kernels release the GIL; blocks are fused concurrently by the thread pool.
@njit(nogil=True)
def accumulate_view(
    fused: np.ndarray,
    weight: np.ndarray,
    indices: np.ndarray,
    values: np.ndarray,
    weights: np.ndarray,
) -> None:
    """
    Weighted accumulation of one view's samples into flat fusion buffers.

    Parameters
    ----------
    fused : float64[N]
        Accumulation buffer of ``sample * weight``.
    weight : float64[N]
        Accumulation buffer of weights.
    indices : int64[M]
        Unique positions in the buffers covered by the view.
    values : float32[M]
        Resampled view values at ``indices``.
    weights : float32[M]
        View weights at ``indices``.
    """
    for k in range(indices.shape[0]):
        w_val = weights[k]
        if w_val > 0.0:
            i = indices[k]
            fused[i] += values[k] * w_val
            weight[i] += w_val


@njit(nogil=True)
def normalize_shard(fused: np.ndarray, weight: np.ndarray, fallback: float) -> None:
    """
    Normalize the fused buffer by its weight buffer, in-place.

    Positions without any weight receive ``fallback``.
    """
    for i in range(fused.shape[0]):
        w_val = weight[i]
        fused[i] = fused[i] / w_val if w_val > 0.0 else fallback


def block_points(offset: Sequence[int], shape: Sequence[int]) -> np.ndarray:
    """Integer coordinates (N, ndim) of a block in C order."""
    grid = np.indices(tuple(shape), dtype=np.int64).reshape(len(shape), -1)
    return (grid + np.asarray(offset, dtype=np.int64)[:, None]).T


class FusedVolume(LazyVolume):
    """
    Weighted combination of resampled views, recomputed on every read.

    ``value(x) = sum_v sample(v, x) * w(v, x) / sum_v w(v, x)``, or ``fallback``
    where no view carries weight.

    Parameters
    ----------
    shape : tuple of int
        Output shape (Z, Y, X).
    images : list of TransformedView
        Views resampled into the output frame.
    weights : list of callables, optional
        One weight field per image, evaluated at native coordinates. None
        weights every view uniformly.
    origin : tuple of int, optional
        Global position of index 0.
    fallback : float
        Value where the total weight is zero.
    """

    def __init__(
        self,
        shape: Sequence[int],
        images: Sequence[TransformedView],
        weights: Optional[Sequence] = None,
        origin: Optional[Sequence[int]] = None,
        fallback: float = 0.0,
    ):
        super().__init__(shape, origin)
        self.images: List[TransformedView] = list(images)
        if weights is None:
            weights = [UniformWeight() for _ in self.images]
        if len(weights) != len(self.images):
            raise ValueError("Need exactly one weight field per image.")
        self.weights = list(weights)
        self.fallback = float(fallback)

    def _fuse(self, points: np.ndarray, active: Sequence[int]) -> np.ndarray:
        n = len(points)
        fused = np.zeros(n, dtype=np.float64)
        weight = np.zeros(n, dtype=np.float64)

        for i in active:
            image = self.images[i]
            coords = image.local_coordinates(points)
            idx = np.flatnonzero(image.inside(coords))
            if idx.size == 0:
                continue
            inside = coords[:, idx]
            values = image.sample(inside)
            w = np.asarray(self.weights[i](inside), dtype=np.float32)
            accumulate_view(fused, weight, idx.astype(np.int64), values, w)

        normalize_shard(fused, weight, self.fallback)
        return fused.astype(np.float32)

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.int64).reshape(-1, self.ndim)
        out = np.empty(len(pts), dtype=np.float32)
        everything = range(len(self.images))
        for start in range(0, len(pts), MAX_BLOCK_VOXELS):
            stop = start + MAX_BLOCK_VOXELS
            out[start:stop] = self._fuse(pts[start:stop], everything)
        return out

    def _fuse_block(self, offset, shape) -> np.ndarray:
        active = [i for i, image in enumerate(self.images) if image.overlaps(offset, shape)]
        if not active:
            return np.full(shape, self.fallback, dtype=np.float32)
        return self._fuse(block_points(offset, shape), active).reshape(shape)

    def read_block(self, offset, shape) -> np.ndarray:
        offset, shape = self._check_block(offset, shape)
        n = int(np.prod(shape, dtype=np.int64))
        if n <= MAX_BLOCK_VOXELS:
            return self._fuse_block(offset, shape)

        out = np.empty(shape, dtype=np.float32)
        for start in range(0, n, MAX_BLOCK_VOXELS):
            portion = WorkPortion(start, min(MAX_BLOCK_VOXELS, n - start))
            for sub_offset, sub_shape in portion_blocks(shape, portion):
                key = tuple(slice(o, o + s) for o, s in zip(sub_offset, sub_shape))
                out[key] = self._fuse_block(
                    tuple(a + b for a, b in zip(offset, sub_offset)), sub_shape
                )
        return out


def fuse_virtual(
    views: Sequence[View],
    bounding_box: BoundingBox,
    options: Optional[FusionOptions] = None,
    registrations: Optional[Mapping[ViewId, np.ndarray]] = None,
) -> FusedVolume:
    """
    Virtually fuse views over a bounding box.

    Parameters
    ----------
    views : sequence of View
        Views to fuse.
    bounding_box : BoundingBox
        Output region in global coordinates (before downsampling).
    options : FusionOptions, optional
        Weighting, interpolation and downsampling. Defaults to blending only.
    registrations : mapping of ViewId to (4, 4) array, optional
        Transform registry; views missing from it use their own transform.

    Returns
    -------
    volume : FusedVolume
        Lazy fused volume; its ``origin`` is the (downsampled) box minimum.
    """
    options = options or FusionOptions()
    ds = effective_downsampling(options.downsampling)
    bb = scale_bounding_box(bounding_box, 1.0 / ds) if ds != 1.0 else bounding_box

    images = []
    weights = []
    for view in views:
        model = transform_for(view, registrations)
        if ds != 1.0:
            model = scale_transform(model, 1.0 / ds)

        image = TransformedView(view.source, model, bb, options.interpolation)
        images.append(image)

        blending = content_based = None
        if options.use_blending:
            blending_px, border_px = adjust_blending(
                view.size,
                options.blending_range,
                options.blending_border,
                model,
                name=f"(tp={view.view_id.timepoint}, setup={view.view_id.setup})",
            )
            blending = BlendingWeight(view.size, border_px, blending_px, options.blending_ramp)

        if options.use_content_based:
            sigma1, sigma2 = adjust_content_based(view.size, options.sigma1, options.sigma2, model)
            region = image.native_region()
            if region is not None:
                content_based = ContentBasedWeight(view.source, region, sigma1, sigma2)

        weights.append(combine_weights(blending, content_based))

    logger.debug("Fusing %d views into %s", len(images), bb)
    return FusedVolume(bb.shape, images, weights, origin=bb.min, fallback=options.fallback)


def fuse_data(
    views: Sequence[View],
    bounding_box: Optional[BoundingBox] = None,
    downsampling: Optional[float] = None,
    registrations: Optional[Mapping[ViewId, np.ndarray]] = None,
) -> FusedVolume:
    """
    Virtually fuse views with blending, over the maximal bounding box by default.
    """
    if bounding_box is None:
        bounding_box = maximal_bounding_box(
            (view.size, transform_for(view, registrations)) for view in views
        )
    options = FusionOptions(use_blending=True, downsampling=downsampling)
    return fuse_virtual(views, bounding_box, options, registrations)
