"""
Fusion configuration.

A single immutable options value is passed into each fusion call.
"""

import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

DEFAULT_BLENDING_RANGE = 40.0
DEFAULT_BLENDING_BORDER = 0.0
DEFAULT_CONTENT_BASED_SIGMA1 = 20.0
DEFAULT_CONTENT_BASED_SIGMA2 = 40.0
DEFAULT_CELL_DIMS = (64, 64, 64)


def _triple(value, name: str) -> Tuple[float, float, float]:
    if hasattr(value, "__len__"):
        if len(value) != 3:
            raise ValueError(f"{name} must be a scalar or a 3-tuple.")
        return tuple(float(v) for v in value)
    return (float(value),) * 3


@dataclass(frozen=True)
class FusionOptions:
    """
    Parameters of one fusion call.

    Parameters
    ----------
    use_blending : bool
        Weight views by distance to their borders.
    use_content_based : bool
        Weight views by local image contrast.
    blending_range : float or 3-tuple
        Width of the blending ramp in output voxels, per axis (z, y, x).
    blending_border : float or 3-tuple
        Margin at each face that receives zero weight, in output voxels.
    blending_ramp : {'cosine', 'linear'}
        Shape of the blending ramp.
    sigma1, sigma2 : float or 3-tuple
        Gaussian sigmas of the content-based weight, in output voxels.
    interpolation : int
        Spline order used for resampling (0 nearest, 1 linear, up to 5).
    downsampling : float, optional
        Output downsampling. None or NaN means no downsampling.
    anisotropy_factor : float, optional
        Flatten the output along z by this factor. None or NaN disables it.
    fallback : float
        Value of voxels that no view contributes to.
    cell_dims : 3-tuple of int
        Cell size of the cached materialization.
    max_cache_size : int, optional
        Maximum number of cached cells. None derives it from available RAM.
    num_threads : int, optional
        Worker threads for parallel work. None uses all CPUs.
    """

    use_blending: bool = True
    use_content_based: bool = False
    blending_range: Tuple[float, float, float] = (DEFAULT_BLENDING_RANGE,) * 3
    blending_border: Tuple[float, float, float] = (DEFAULT_BLENDING_BORDER,) * 3
    blending_ramp: str = "cosine"
    sigma1: Tuple[float, float, float] = (DEFAULT_CONTENT_BASED_SIGMA1,) * 3
    sigma2: Tuple[float, float, float] = (DEFAULT_CONTENT_BASED_SIGMA2,) * 3
    interpolation: int = 1
    downsampling: Optional[float] = None
    anisotropy_factor: Optional[float] = None
    fallback: float = 0.0
    cell_dims: Tuple[int, int, int] = DEFAULT_CELL_DIMS
    max_cache_size: Optional[int] = None
    num_threads: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "blending_range", _triple(self.blending_range, "blending_range"))
        object.__setattr__(self, "blending_border", _triple(self.blending_border, "blending_border"))
        object.__setattr__(self, "sigma1", _triple(self.sigma1, "sigma1"))
        object.__setattr__(self, "sigma2", _triple(self.sigma2, "sigma2"))

        if any(r <= 0 for r in self.blending_range):
            raise ValueError("blending_range must be > 0.")
        if any(b < 0 for b in self.blending_border):
            raise ValueError("blending_border must be >= 0.")
        if self.blending_ramp not in ("cosine", "linear"):
            raise ValueError('blending_ramp must be "cosine" or "linear".')
        if any(s1 <= 0 or s1 >= s2 for s1, s2 in zip(self.sigma1, self.sigma2)):
            raise ValueError("sigma1 must be > 0 and smaller than sigma2.")
        if not 0 <= int(self.interpolation) <= 5:
            raise ValueError("interpolation must be between 0 and 5.")
        object.__setattr__(self, "interpolation", int(self.interpolation))

        if len(self.cell_dims) != 3 or any(int(c) < 1 for c in self.cell_dims):
            raise ValueError("cell_dims must be a 3-tuple of positive ints.")
        object.__setattr__(self, "cell_dims", tuple(int(c) for c in self.cell_dims))
        if self.max_cache_size is not None and int(self.max_cache_size) < 1:
            raise ValueError("max_cache_size must be >= 1.")
        if self.num_threads is not None and int(self.num_threads) < 1:
            raise ValueError("num_threads must be >= 1.")

        if self.anisotropy_factor is not None and math.isfinite(self.anisotropy_factor):
            if self.anisotropy_factor <= 0:
                raise ValueError("anisotropy_factor must be > 0.")

    @property
    def has_anisotropy(self) -> bool:
        return self.anisotropy_factor is not None and math.isfinite(self.anisotropy_factor)

    def with_changes(self, **changes) -> "FusionOptions":
        """Copy of these options with some fields replaced."""
        return replace(self, **changes)
