"""
I/O adapters: pixel sources for TIFF and Zarr v3 inputs, and a Zarr v3 export sink.
"""

from .sources import TensorStoreSource, TiffSource, open_zarr_source
from .zarr import ZarrExportSink, create_zarr_store

__all__ = [
    "TensorStoreSource",
    "TiffSource",
    "ZarrExportSink",
    "create_zarr_store",
    "open_zarr_source",
]
