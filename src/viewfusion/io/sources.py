"""
Pixel sources backed by files.

Both sources expose ``shape``, ``dtype`` and numpy-style slicing, and only
read the planes or chunks that a slice touches.
"""

import logging
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import tensorstore as ts
import tifffile

logger = logging.getLogger(__name__)


class TiffSource:
    """
    3D TIFF stack (Z, Y, X) read lazily with tifffile.

    Uncompressed contiguous files are memory-mapped. Otherwise each thread
    keeps its own TiffFile handle and reads only the requested z-planes.

    Parameters
    ----------
    path : str or Path
        TIFF file. 2D images are exposed with a z extent of 1.
    series : int
        Index of the image series to read.
    """

    def __init__(self, path: Union[str, Path], series: int = 0):
        self.path = Path(path)
        self.series = int(series)

        with tifffile.TiffFile(self.path) as tif:
            s = tif.series[self.series]
            shape = tuple(int(v) for v in s.shape)
            self.dtype = np.dtype(s.dtype)
            n_pages = len(s.pages)

        if len(shape) == 2:
            shape = (1,) + shape
        if len(shape) != 3:
            raise ValueError(f"{self.path} is not a 3D stack (shape {shape})")
        self.shape = shape
        self._per_page = n_pages == shape[0]

        self._memmap: Optional[np.ndarray] = None
        try:
            self._memmap = tifffile.memmap(self.path, series=self.series, mode="r").reshape(shape)
        except ValueError:
            logger.debug("%s is not memory-mappable, reading planes on demand", self.path)

        # Thread-local storage for TiffFile handles (thread-safe concurrent access)
        self._thread_local = threading.local()
        self._handles_lock = threading.Lock()
        self._all_handles: List[tifffile.TiffFile] = []
        self._data: Optional[np.ndarray] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close every handle opened by reader threads. Only call once reads are done."""
        with self._handles_lock:
            for handle in self._all_handles:
                handle.close()
            self._all_handles.clear()
        self._thread_local = threading.local()

    def _handle(self) -> tifffile.TiffFile:
        handle = getattr(self._thread_local, "tiff_handle", None)
        if handle is not None and handle.filehandle is not None and not handle.filehandle.closed:
            return handle
        handle = tifffile.TiffFile(self.path)
        self._thread_local.tiff_handle = handle
        with self._handles_lock:
            self._all_handles.append(handle)
        return handle

    def _read_planes(self, planes: Sequence[int]) -> np.ndarray:
        _, Y, X = self.shape
        if not planes:
            return np.empty((0, Y, X), dtype=self.dtype)
        if self._memmap is not None:
            return self._memmap[list(planes)]
        if self._per_page:
            data = self._handle().asarray(key=list(planes), series=self.series)
            return np.asarray(data).reshape(len(planes), Y, X)

        # Single-page volumes cannot be read plane by plane; load once.
        handle = self._handle()
        with self._handles_lock:
            if self._data is None:
                self._data = handle.series[self.series].asarray().reshape(self.shape)
        return self._data[list(planes)]

    def __getitem__(self, key) -> np.ndarray:
        if not isinstance(key, tuple):
            key = (key,)
        key = key + (slice(None),) * (3 - len(key))
        z_key, rest = key[0], key[1:]

        if isinstance(z_key, slice):
            planes = range(*z_key.indices(self.shape[0]))
            return self._read_planes(list(planes))[(slice(None),) + rest]

        z = int(z_key)
        if z < 0:
            z += self.shape[0]
        if not 0 <= z < self.shape[0]:
            raise IndexError(f"z index {z_key} out of range for {self.shape[0]} planes")
        return self._read_planes([z])[(0,) + rest]

    def __repr__(self) -> str:
        return f"TiffSource({str(self.path)!r}, shape={self.shape}, dtype={self.dtype})"


class TensorStoreSource:
    """
    Read-only 3D view of a tensorstore array.

    Leading axes beyond the last three (e.g. t, c) are fixed by ``index``.
    """

    def __init__(self, store: ts.TensorStore, index: Sequence[int] = ()):
        extra = store.rank - 3
        if extra < 0:
            raise ValueError(f"Store must have at least 3 dimensions, got {store.rank}")
        index = tuple(int(i) for i in index) or (0,) * extra
        if len(index) != extra:
            raise ValueError(f"Need {extra} leading indices, got {len(index)}")
        self._store = store[index] if extra else store
        self.shape = tuple(int(s) for s in self._store.shape)
        self.dtype = np.dtype(self._store.dtype.numpy_dtype)

    def __getitem__(self, key) -> np.ndarray:
        return np.asarray(self._store[key].read().result())

    def __repr__(self) -> str:
        return f"TensorStoreSource(shape={self.shape}, dtype={self.dtype})"


def open_zarr_source(
    path: Union[str, Path], index: Sequence[int] = (), max_workers: Optional[int] = None
) -> TensorStoreSource:
    """
    Open a Zarr v3 array as a pixel source.

    Parameters
    ----------
    path : str or Path
        Array directory.
    index : sequence of int
        Positions along the leading non-spatial axes; zeros by default.
    max_workers : int, optional
        Limit on concurrent file reads.
    """
    config = {"driver": "zarr3", "kvstore": {"driver": "file", "path": str(path)}}
    if max_workers is not None:
        config["context"] = {"file_io_concurrency": {"limit": int(max_workers)}}
    store = ts.open(config, read=True).result()
    return TensorStoreSource(store, index)
