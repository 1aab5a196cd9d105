"""
Resampling of views into the output frame.

Output coordinates are mapped through the inverse of a view's model into its
native pixel grid, and the pixel source is interpolated there. Only the part
of the source that covers the requested points is read.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.ndimage import map_coordinates, spline_filter

from .geometry import BoundingBox, transformed_corners

# Tolerance for points that land on a view's border after inverse mapping.
EPSILON = 1e-5


class TransformedView:
    """
    A view resampled into the zero-min frame of an output bounding box.

    Parameters
    ----------
    source : PixelSource
        Native pixel data (Z, Y, X).
    model : (4, 4) ndarray
        Affine transform from native pixels into the global output frame.
    bounding_box : BoundingBox
        Output box; output index ``i`` corresponds to global ``box.min + i``.
    interpolation : int
        Spline order (0 nearest neighbor, 1 linear, up to 5).

    Notes
    -----
    Higher-order splines are not local: their coefficients depend on every
    pixel of the filtered region. For orders above 1 the coefficients are
    computed once, over the native region the whole output box maps onto, so
    a voxel gets the same value whichever block requests it.
    """

    def __init__(self, source, model: np.ndarray, bounding_box: BoundingBox, interpolation: int = 1):
        self.source = source
        self.model = np.array(model, dtype=np.float64)
        self.bounding_box = bounding_box
        self.interpolation = int(interpolation)
        self.size = tuple(int(s) for s in source.shape)

        inverse = np.linalg.inv(self.model)
        origin = np.asarray(bounding_box.min, dtype=np.float64)
        # Fold the box origin into the inverse so zero-min points map directly.
        self._linear = inverse[:3, :3]
        self._offset = inverse[:3, :3] @ origin + inverse[:3, 3]
        self._max = np.asarray(self.size, dtype=np.float64) - 1.0

        corners = transformed_corners(self.size, self.model) - origin
        self._out_lo = np.floor(corners.min(axis=0)).astype(np.int64)
        self._out_hi = np.ceil(corners.max(axis=0)).astype(np.int64)

        self._coefficients: Optional[np.ndarray] = None
        self._coefficients_lo: Optional[np.ndarray] = None
        if self.interpolation > 1:
            region = self.native_region()
            if region is not None:
                lo, hi = region
                key = tuple(slice(int(a), int(b)) for a, b in zip(lo, hi))
                data = np.asarray(self.source[key], dtype=np.float32)
                self._coefficients = spline_filter(
                    data, order=self.interpolation, output=np.float32, mode="nearest"
                )
                self._coefficients_lo = lo

    def overlaps(self, offset: Sequence[int], shape: Sequence[int]) -> bool:
        """Whether the view can contribute to the zero-min output block."""
        lo = np.asarray(offset, dtype=np.int64)
        hi = lo + np.asarray(shape, dtype=np.int64) - 1
        return bool(np.all(hi >= self._out_lo) and np.all(lo <= self._out_hi))

    def native_region(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Native region ``(lo, hi)`` (hi exclusive) that the output box maps onto,
        clipped to the view's extent, or None if they do not intersect.
        """
        shape = self.bounding_box.shape
        grids = np.meshgrid(*[(0.0, float(s) - 1.0) for s in shape], indexing="ij")
        corners = np.stack([g.ravel() for g in grids], axis=1)
        coords = self.local_coordinates(corners)
        lo = np.maximum(np.floor(coords.min(axis=1)).astype(np.int64) - 1, 0)
        hi = np.minimum(np.ceil(coords.max(axis=1)).astype(np.int64) + 2, self.size)
        if np.any(hi <= lo):
            return None
        return lo, hi

    def local_coordinates(self, points: np.ndarray) -> np.ndarray:
        """
        Map zero-min output points (N, 3) to native coordinates (3, N).
        """
        pts = np.asarray(points, dtype=np.float64)
        return self._linear @ pts.T + self._offset[:, None]

    def inside(self, coords: np.ndarray) -> np.ndarray:
        """Mask of native coordinates (3, N) that fall within the view's extent."""
        return np.all(
            (coords >= -EPSILON) & (coords <= self._max[:, None] + EPSILON), axis=0
        )

    def _read_region(self, coords: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        lo = np.floor(coords.min(axis=1)).astype(np.int64) - 1
        hi = np.ceil(coords.max(axis=1)).astype(np.int64) + 2
        lo = np.clip(lo, 0, np.asarray(self.size) - 1)
        hi = np.clip(hi, lo + 1, np.asarray(self.size))
        key = tuple(slice(int(a), int(b)) for a, b in zip(lo, hi))
        region = np.asarray(self.source[key], dtype=np.float32)
        return region, lo

    def sample(self, coords: np.ndarray) -> np.ndarray:
        """
        Interpolate the source at native coordinates (3, N).

        All coordinates are expected to be inside the view; callers filter
        with :meth:`inside` first.

        Returns
        -------
        values : (N,) float32
        """
        if coords.shape[1] == 0:
            return np.zeros(0, dtype=np.float32)

        clipped = np.clip(coords, 0.0, self._max[:, None])
        if self._coefficients is not None:
            return map_coordinates(
                self._coefficients,
                clipped - self._coefficients_lo[:, None],
                order=self.interpolation,
                mode="nearest",
                prefilter=False,
                output=np.float32,
            )

        region, lo = self._read_region(clipped)
        local = clipped - lo[:, None]

        if self.interpolation == 0:
            idx = np.floor(local + 0.5).astype(np.int64)
            for d in range(3):
                np.clip(idx[d], 0, region.shape[d] - 1, out=idx[d])
            return region[idx[0], idx[1], idx[2]]

        return map_coordinates(region, local, order=1, mode="nearest", prefilter=False, output=np.float32)

    def sample_points(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Resample at zero-min output points (N, 3).

        Returns
        -------
        values : (N,) float32
            Interpolated values, 0 where the view is absent.
        mask : (N,) bool
            True where the view covers the point.
        """
        coords = self.local_coordinates(points)
        mask = self.inside(coords)
        values = np.zeros(coords.shape[1], dtype=np.float32)
        if mask.any():
            values[mask] = self.sample(coords[:, mask])
        return values, mask
