"""
Zarr v3 export of fused volumes via tensorstore.
"""

import itertools
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import tensorstore as ts
from tqdm import tqdm

from ..geometry import BoundingBox
from ..partition import default_num_threads
from ..volume import LazyVolume

logger = logging.getLogger(__name__)


def _view_record(view) -> Dict:
    """Identity and acquisition attributes of a fused view."""
    voxel_size = view.voxel_size
    return {
        "timepoint": view.view_id.timepoint,
        "setup": view.view_id.setup,
        "channel": view.channel,
        "illumination": view.illumination,
        "angle": view.angle,
        "tile": view.tile,
        "voxel_size": list(voxel_size) if voxel_size is not None else None,
        "attributes": dict(view.attributes),
    }


def create_zarr_store(
    path: Union[str, Path],
    shape: Tuple[int, ...],
    dtype: np.dtype,
    chunk_shape: Tuple[int, ...],
    max_workers: int,
) -> ts.TensorStore:
    """
    Create (or overwrite) a Zarr v3 array on disk.

    Parameters
    ----------
    path : str or Path
        Array directory.
    shape : tuple of int
        Array shape (Z, Y, X).
    dtype : numpy dtype
        Element type.
    chunk_shape : tuple of int
        Chunk shape; clipped to ``shape``.
    max_workers : int
        Limit on concurrent file I/O and data copies.
    """
    chunk = [max(1, min(int(c), int(s))) for c, s in zip(chunk_shape, shape)]
    config = {
        "context": {
            "file_io_concurrency": {"limit": max_workers},
            "data_copy_concurrency": {"limit": max_workers},
        },
        "driver": "zarr3",
        "kvstore": {"driver": "file", "path": str(path)},
        "metadata": {
            "shape": [int(s) for s in shape],
            "chunk_grid": {"name": "regular", "configuration": {"chunk_shape": chunk}},
            "chunk_key_encoding": {"name": "default"},
            "codecs": [
                {"name": "bytes", "configuration": {"endian": "little"}},
                {
                    "name": "blosc",
                    "configuration": {"cname": "zstd", "clevel": 5, "shuffle": "bitshuffle"},
                },
            ],
            "data_type": np.dtype(dtype).name,
            "dimension_names": ["t", "c", "z", "y", "x"][-len(shape):],
        },
    }
    return ts.open(config, create=True, delete_existing=True).result()


class ZarrExportSink:
    """
    Export sink writing each fused image to ``<root>/<title>.zarr``.

    Next to every array a ``provenance.json`` records the bounding box,
    downsampling, anisotropy, intensity range and the fused views.

    Parameters
    ----------
    root : str or Path
        Output directory, created if missing.
    chunk_shape : tuple of int
        Chunk shape of the written arrays (Z, Y, X).
    max_workers : int, optional
        I/O concurrency; defaults to the number of CPUs.
    show_progress : bool
        Show a tqdm bar over written chunks.
    """

    def __init__(
        self,
        root: Union[str, Path],
        chunk_shape: Tuple[int, int, int] = (64, 256, 256),
        max_workers: Optional[int] = None,
        show_progress: bool = False,
    ):
        self.root = Path(root)
        self.chunk_shape = tuple(int(c) for c in chunk_shape)
        self.max_workers = max_workers or default_num_threads()
        self.show_progress = show_progress
        self.exported: List[str] = []
        self.finished = False

    def path_for(self, title: str) -> Path:
        return self.root / f"{title}.zarr"

    def export_image(
        self,
        volume: LazyVolume,
        bounding_box: BoundingBox,
        downsampling: float,
        anisotropy: Optional[float],
        title: str,
        group: Sequence,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
    ) -> bool:
        out = self.path_for(title)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            store = create_zarr_store(
                out, volume.shape, volume.dtype, self.chunk_shape, self.max_workers
            )
            self._write(store, volume, title)
            self._write_provenance(
                out, volume, bounding_box, downsampling, anisotropy, group, min_value, max_value
            )
        except (OSError, ValueError) as exc:
            logger.error("Failed to export %s to %s: %s", title, out, exc)
            return False

        self.exported.append(title)
        logger.info("Exported %s (%s, %s) to %s", title, volume.shape, volume.dtype, out)
        return True

    def _write(self, store: ts.TensorStore, volume: LazyVolume, title: str) -> None:
        shape = volume.shape
        step = [max(1, min(c, n)) for c, n in zip(self.chunk_shape, shape)]
        offsets = list(itertools.product(*(range(0, n, s) for n, s in zip(shape, step))))
        if self.show_progress:
            offsets = tqdm(offsets, desc=title, leave=True)

        pending = []
        for offset in offsets:
            block_shape = tuple(min(s, n - o) for o, s, n in zip(offset, step, shape))
            block = volume.read_block(offset, block_shape)
            key = tuple(slice(o, o + s) for o, s in zip(offset, block_shape))
            pending.append(store[key].write(block))
            # Bound the number of chunks held in memory.
            if len(pending) >= self.max_workers:
                pending.pop(0).result()
        for future in pending:
            future.result()

    def _write_provenance(
        self, out, volume, bounding_box, downsampling, anisotropy, group, min_value, max_value
    ) -> None:
        record: Dict = {
            "created": datetime.now().isoformat(timespec="seconds"),
            "shape": list(volume.shape),
            "dtype": str(volume.dtype),
            "origin": list(volume.origin),
            "bounding_box": {"min": list(bounding_box.min), "max": list(bounding_box.max)},
            "downsampling": downsampling,
            "anisotropy": anisotropy,
            "min_value": min_value,
            "max_value": max_value,
            "views": [_view_record(v) for v in group],
        }
        (out / "provenance.json").write_text(json.dumps(record, indent=2, default=str))

    def finish(self) -> None:
        """Write an index of all exported images."""
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / "fused.json").write_text(json.dumps({"images": self.exported}, indent=2))
        self.finished = True
