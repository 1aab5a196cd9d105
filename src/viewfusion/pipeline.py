"""
End-to-end fusion of a dataset: grouping, optional flattening and bit-depth
conversion, materialization and export.
"""

import logging
from concurrent.futures import Executor
from enum import Enum
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from .config import FusionOptions
from .fusion import fuse_virtual
from .geometry import (
    BoundingBox,
    anisotropy_transform,
    effective_downsampling,
    flatten_bounding_box,
    maximal_bounding_box,
)
from .materialize import ImgDataType, materialize
from .stats import min_max
from .views import View, ViewId, transform_for
from .volume import ConvertedVolume, LazyVolume

logger = logging.getLogger(__name__)


class SplittingType(Enum):
    """How views are split into separately fused output images."""

    EACH_TIMEPOINT_CHANNEL = 0
    EACH_TIMEPOINT_CHANNEL_ILLUMINATION = 1
    ALL_VIEWS_TOGETHER = 2
    EACH_VIEW = 3


class ExportSink(Protocol):
    """Receives each fused image together with its provenance."""

    def export_image(
        self,
        volume: LazyVolume,
        bounding_box: BoundingBox,
        downsampling: float,
        anisotropy: Optional[float],
        title: str,
        group: Sequence[View],
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
    ) -> bool:
        ...

    def finish(self) -> None:
        ...


def _group_key(view: View, splitting: SplittingType) -> Tuple[int, ...]:
    tp = view.view_id.timepoint
    if splitting is SplittingType.EACH_TIMEPOINT_CHANNEL:
        return (tp, view.channel)
    if splitting is SplittingType.EACH_TIMEPOINT_CHANNEL_ILLUMINATION:
        return (tp, view.channel, view.illumination)
    if splitting is SplittingType.ALL_VIEWS_TOGETHER:
        return ()
    return (tp, view.view_id.setup)


def group_views(views: Sequence[View], splitting: SplittingType) -> List[List[View]]:
    """
    Split views into fusion groups.

    Groups are ordered by their key (timepoint first), and the views inside a
    group by view id.
    """
    splitting = SplittingType(splitting)
    groups: Dict[Tuple[int, ...], List[View]] = {}
    for view in views:
        groups.setdefault(_group_key(view, splitting), []).append(view)
    return [sorted(groups[key], key=lambda v: v.view_id) for key in sorted(groups)]


def get_title(splitting: SplittingType, group: Sequence[View]) -> str:
    """Output title of a group, derived from its first view."""
    splitting = SplittingType(splitting)
    vd0 = group[0]
    tp = vd0.view_id.timepoint
    if splitting is SplittingType.EACH_TIMEPOINT_CHANNEL:
        return f"fused_tp_{tp}_ch_{vd0.channel}"
    if splitting is SplittingType.EACH_TIMEPOINT_CHANNEL_ILLUMINATION:
        return f"fused_tp_{tp}_ch_{vd0.channel}_illum_{vd0.illumination}"
    if splitting is SplittingType.ALL_VIEWS_TOGETHER:
        return "fused"
    return f"fused_tp_{tp}_vs_{vd0.view_id.setup}"


def determine_input_bit_depth(
    group: Sequence[View],
    volume: LazyVolume,
    executor: Optional[Executor] = None,
    num_threads: Optional[int] = None,
) -> Optional[Tuple[float, float]]:
    """
    Intensity range used to convert a fused group to 16 bit.

    8- and 16-bit inputs keep their natural range; any other input type needs
    the exact range of the fused volume.

    Returns
    -------
    (min, max) : tuple of float, or None
        None when the exact range could not be computed.
    """
    dtype = group[0].dtype
    if dtype == np.uint8:
        return 0.0, 255.0
    if dtype == np.uint16:
        return 0.0, 65535.0

    logger.warning(
        "Saving a non-8/16 bit input (%s) as 16 bit, determining min/max of the fused image.",
        dtype,
    )
    return min_max(volume, executor, num_threads)


def cache_and_export(
    volume: LazyVolume,
    sink: ExportSink,
    title: str,
    group: Sequence[View],
    bounding_box: BoundingBox,
    options: FusionOptions,
    mode: ImgDataType = ImgDataType.VIRTUAL,
    min_max_range: Optional[Tuple[float, float]] = None,
    executor: Optional[Executor] = None,
    show_progress: bool = False,
) -> bool:
    """
    Materialize a fused volume and hand it to the export sink.

    Returns
    -------
    ok : bool
        The sink's result.
    """
    processed = materialize(
        volume,
        mode,
        cell_dims=options.cell_dims,
        max_cache_size=options.max_cache_size,
        executor=executor,
        num_threads=options.num_threads,
        show_progress=show_progress,
    )
    downsampling = effective_downsampling(options.downsampling)
    anisotropy = options.anisotropy_factor if options.has_anisotropy else None

    if min_max_range is None:
        return sink.export_image(processed, bounding_box, downsampling, anisotropy, title, group)
    return sink.export_image(
        processed,
        bounding_box,
        downsampling,
        anisotropy,
        title,
        group,
        min_value=min_max_range[0],
        max_value=min_max_range[1],
    )


def fuse(
    views: Sequence[View],
    sink: ExportSink,
    options: Optional[FusionOptions] = None,
    splitting: SplittingType = SplittingType.ALL_VIEWS_TOGETHER,
    bounding_box: Optional[BoundingBox] = None,
    registrations: Optional[Mapping[ViewId, np.ndarray]] = None,
    mode: ImgDataType = ImgDataType.VIRTUAL,
    convert_to_16bit: bool = False,
    executor: Optional[Executor] = None,
    show_progress: bool = False,
) -> bool:
    """
    Fuse and export every group of views.

    Parameters
    ----------
    views : sequence of View
        Views to fuse.
    sink : ExportSink
        Destination of the fused images.
    options : FusionOptions, optional
        Weighting, interpolation, downsampling, anisotropy and cache settings.
    splitting : SplittingType
        How views are grouped into output images.
    bounding_box : BoundingBox, optional
        Output region; defaults to the maximal bounding box of all views.
    registrations : mapping of ViewId to (4, 4) array, optional
        Transform registry overriding the views' own transforms.
    mode : ImgDataType
        Materialization of each fused image before export.
    convert_to_16bit : bool
        Export uint16 images instead of float32.
    executor : Executor, optional
        Pool shared by all parallel steps.
    show_progress : bool
        Show tqdm bars while precomputing.

    Returns
    -------
    ok : bool
        False as soon as one group fails; the sink is then not finished.
    """
    options = options or FusionOptions()
    if not views:
        raise ValueError("No views to fuse.")

    if bounding_box is None:
        bounding_box = maximal_bounding_box(
            (view.size, transform_for(view, registrations)) for view in views
        )
    if options.has_anisotropy:
        bounding_box = flatten_bounding_box(bounding_box, options.anisotropy_factor)

    groups = group_views(views, splitting)
    for i, group in enumerate(groups, start=1):
        title = get_title(splitting, group)
        logger.info("Fusing group %d/%d (%s, %d views)", i, len(groups), title, len(group))

        group_registrations = registrations
        if options.has_anisotropy:
            group_registrations = {
                view.view_id: anisotropy_transform(
                    transform_for(view, registrations), options.anisotropy_factor
                )
                for view in group
            }

        volume: LazyVolume = fuse_virtual(group, bounding_box, options, group_registrations)

        min_max_range = None
        if convert_to_16bit:
            min_max_range = determine_input_bit_depth(group, volume, executor, options.num_threads)
            if min_max_range is None:
                logger.error("Could not determine the intensity range of %s", title)
                return False
            logger.info(
                "Range for conversion to 16-bit, min=%s, max=%s", min_max_range[0], min_max_range[1]
            )
            volume = ConvertedVolume(volume, min_max_range[0], min_max_range[1], np.uint16)

        if not cache_and_export(
            volume,
            sink,
            title,
            group,
            bounding_box,
            options,
            mode,
            min_max_range,
            executor,
            show_progress,
        ):
            logger.error("Export of %s failed", title)
            return False

    sink.finish()
    logger.info("Fusion done.")
    return True
