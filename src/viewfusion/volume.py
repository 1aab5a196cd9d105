"""
Lazy volume base class.

Volumes are indexed zero-min; ``origin`` records where index 0 sits in the
global frame so results can be translated back at the boundary.
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from .geometry import BoundingBox


class LazyVolume:
    """
    Read-only 3D volume computed on demand.

    Subclasses implement :meth:`read_block`; point sampling and numpy-style
    indexing are derived from it.
    """

    dtype = np.dtype(np.float32)

    def __init__(self, shape: Sequence[int], origin: Optional[Sequence[int]] = None):
        self.shape: Tuple[int, ...] = tuple(int(s) for s in shape)
        if any(s < 1 for s in self.shape):
            raise ValueError(f"Volume dimensions must be positive, got {self.shape}")
        self.origin: Tuple[int, ...] = (
            tuple(int(o) for o in origin) if origin is not None else (0,) * len(self.shape)
        )

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def bounding_box(self) -> BoundingBox:
        """Extent of the volume in the global frame."""
        return BoundingBox.from_shape(self.shape, self.origin)

    def to_global(self, index: Sequence[int]) -> Tuple[int, ...]:
        return tuple(int(i) + o for i, o in zip(index, self.origin))

    def to_local(self, coordinate: Sequence[int]) -> Tuple[int, ...]:
        return tuple(int(c) - o for c, o in zip(coordinate, self.origin))

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def read_block(self, offset: Sequence[int], shape: Sequence[int]) -> np.ndarray:
        """Values of the zero-min block starting at ``offset`` with ``shape``."""
        raise NotImplementedError

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        """Values at zero-min integer points of shape (N, ndim)."""
        pts = np.asarray(points, dtype=np.int64).reshape(-1, self.ndim)
        out = np.empty(len(pts), dtype=self.dtype)
        for i, p in enumerate(pts):
            out[i] = self.read_block(tuple(p), (1,) * self.ndim).reshape(-1)[0]
        return out

    def _check_block(self, offset, shape):
        offset = tuple(int(o) for o in offset)
        shape = tuple(int(s) for s in shape)
        if len(offset) != self.ndim or len(shape) != self.ndim:
            raise ValueError("offset and shape must match the volume dimensionality.")
        for o, s, n in zip(offset, shape, self.shape):
            if o < 0 or s < 0 or o + s > n:
                raise IndexError(f"Block offset={offset} shape={shape} outside volume {self.shape}")
        return offset, shape

    def __getitem__(self, key) -> np.ndarray:
        if not isinstance(key, tuple):
            key = (key,)
        if len(key) > self.ndim:
            raise IndexError("Too many indices.")
        key = key + (slice(None),) * (self.ndim - len(key))

        offset, shape, squeeze = [], [], []
        for axis, (k, n) in enumerate(zip(key, self.shape)):
            if isinstance(k, slice):
                start, stop, step = k.indices(n)
                if step != 1:
                    raise IndexError("Only unit-step slices are supported.")
                offset.append(start)
                shape.append(max(stop - start, 0))
            else:
                i = int(k)
                if i < 0:
                    i += n
                if not 0 <= i < n:
                    raise IndexError(f"Index {k} out of range for axis {axis} of size {n}")
                offset.append(i)
                shape.append(1)
                squeeze.append(axis)

        if 0 in shape:
            block = np.zeros(shape, dtype=self.dtype)
        else:
            block = self.read_block(offset, shape)
        if squeeze:
            block = block.squeeze(axis=tuple(squeeze))
        return block

    def __array__(self, dtype=None, copy=None):
        arr = self.read_block((0,) * self.ndim, self.shape)
        return arr if dtype is None else arr.astype(dtype)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape}, origin={self.origin})"


class ConvertedVolume(LazyVolume):
    """
    Lazily rescale a float volume into an unsigned integer type.

    ``out = round((v - min) / (max - min) * type_max)``, clipped to the type.
    """

    def __init__(self, source: LazyVolume, min_value: float, max_value: float, dtype=np.uint16):
        super().__init__(source.shape, source.origin)
        self.source = source
        self.dtype = np.dtype(dtype)
        self.min_value = float(min_value)
        self.max_value = float(max_value)
        self._type_max = float(np.iinfo(self.dtype).max)
        diff = self.max_value - self.min_value
        self._scale = self._type_max / diff if diff != 0 else 0.0

    def _convert(self, values: np.ndarray) -> np.ndarray:
        scaled = (values.astype(np.float64) - self.min_value) * self._scale
        return np.clip(np.floor(scaled + 0.5), 0, self._type_max).astype(self.dtype)

    def read_block(self, offset, shape) -> np.ndarray:
        return self._convert(self.source.read_block(offset, shape))

    def sample_points(self, points: np.ndarray) -> np.ndarray:
        return self._convert(self.source.sample_points(points))
