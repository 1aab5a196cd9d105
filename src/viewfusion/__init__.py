"""
viewfusion - lazy, weighted fusion of registered 3D views.

Views are resampled into a common output box and combined with border
blending and/or content-based weights. The fused volume is evaluated on
demand and can be cached cell-wise or precomputed in parallel.
"""

import logging

from .config import FusionOptions
from .fusion import FusedVolume, fuse_data, fuse_virtual
from .geometry import BoundingBox, maximal_bounding_box, num_pixels
from .materialize import CachedVolume, ImgDataType, PrecomputedVolume, copy_volume, materialize
from .partition import WorkPortion, divide_into_portions
from .pipeline import SplittingType, fuse, get_title, group_views
from .stats import min_max, min_max_approx, min_max_avg_approx, normalize_image
from .views import View, ViewId
from .volume import ConvertedVolume, LazyVolume

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "BoundingBox",
    "CachedVolume",
    "ConvertedVolume",
    "FusedVolume",
    "FusionOptions",
    "ImgDataType",
    "LazyVolume",
    "PrecomputedVolume",
    "SplittingType",
    "View",
    "ViewId",
    "WorkPortion",
    "copy_volume",
    "divide_into_portions",
    "fuse",
    "fuse_data",
    "fuse_virtual",
    "get_title",
    "group_views",
    "materialize",
    "maximal_bounding_box",
    "min_max",
    "min_max_approx",
    "min_max_avg_approx",
    "normalize_image",
    "num_pixels",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
