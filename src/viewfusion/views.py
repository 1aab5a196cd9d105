"""
Input views: identity, transform, pixel source and acquisition attributes.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Tuple

import numpy as np


class PixelSource(Protocol):
    """
    Lazy, read-only 3D pixel data.

    Anything exposing ``shape`` and numpy-style slicing qualifies: numpy
    arrays, memory maps, tensorstore stores. Slices must be safe to read from
    several threads at once.
    """

    shape: Tuple[int, ...]

    def __getitem__(self, key: Any) -> Any:
        ...


@dataclass(frozen=True, order=True)
class ViewId:
    """Identifies one view by timepoint and view setup."""

    timepoint: int
    setup: int


@dataclass(eq=False)
class View:
    """
    One registered acquisition.

    Parameters
    ----------
    view_id : ViewId
        Identity of the view.
    transform : (4, 4) array-like
        Affine model from the native pixel grid (z, y, x) into the global frame.
    source : PixelSource
        Pixel data with shape (Z, Y, X).
    voxel_size : tuple of float, optional
        Physical voxel size (z, y, x), recorded in export provenance.
    channel, illumination : int
        Acquisition attributes used for grouping and titles.
    angle, tile : int
        Acquisition attributes recorded in export provenance.
    attributes : mapping
        Free-form metadata copied into export provenance.
    """

    view_id: ViewId
    transform: np.ndarray
    source: PixelSource
    voxel_size: Optional[Tuple[float, float, float]] = None
    channel: int = 0
    illumination: int = 0
    angle: int = 0
    tile: int = 0
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        model = np.array(self.transform, dtype=np.float64)
        if model.shape == (3, 4):
            model = np.vstack([model, [0.0, 0.0, 0.0, 1.0]])
        if model.shape != (4, 4):
            raise ValueError(f"transform must be 3x4 or 4x4, got {model.shape}")
        self.transform = model
        if len(self.source.shape) != 3:
            raise ValueError(f"source must be 3D (Z, Y, X), got shape {self.source.shape}")

    @property
    def size(self) -> Tuple[int, int, int]:
        """Native extent in pixels (Z, Y, X)."""
        return tuple(int(s) for s in self.source.shape)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(getattr(self.source, "dtype", np.float32))


def transform_for(
    view: View, registrations: Optional[Mapping[ViewId, Any]] = None
) -> np.ndarray:
    """
    Look up the model of a view, preferring an explicit registry entry.

    Always returns a private copy so callers may rescale it freely.
    """
    if registrations is not None and view.view_id in registrations:
        model = np.array(registrations[view.view_id], dtype=np.float64)
        if model.shape == (3, 4):
            model = np.vstack([model, [0.0, 0.0, 0.0, 1.0]])
        return model
    return view.transform.copy()
