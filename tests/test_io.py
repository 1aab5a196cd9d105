"""Tests for viewfusion.io module."""

import json
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import tifffile

from viewfusion.config import FusionOptions
from viewfusion.geometry import BoundingBox, translation
from viewfusion.io import TiffSource, ZarrExportSink, create_zarr_store, open_zarr_source
from viewfusion.materialize import PrecomputedVolume
from viewfusion.pipeline import fuse
from viewfusion.views import View, ViewId


@pytest.fixture
def stack():
    return np.random.default_rng(5).integers(0, 65535, (6, 20, 24), dtype=np.uint16)


class TestTiffSource:
    """Tests for TiffSource."""

    def test_memory_mapped_stack(self, tmp_path, stack):
        """Uncompressed stacks are sliced like arrays."""
        path = tmp_path / "view.tif"
        tifffile.imwrite(path, stack)
        with TiffSource(path) as source:
            assert source.shape == (6, 20, 24)
            assert source.dtype == np.uint16
            np.testing.assert_array_equal(source[1:4, 2:10, 5], stack[1:4, 2:10, 5])
            np.testing.assert_array_equal(source[-1], stack[-1])

    def test_compressed_stack_reads_planes(self, tmp_path, stack):
        """Compressed stacks are read plane by plane from several threads."""
        path = tmp_path / "view_zlib.tif"
        tifffile.imwrite(path, stack, compression="zlib")
        source = TiffSource(path)
        try:
            with ThreadPoolExecutor(max_workers=4) as executor:
                blocks = list(executor.map(lambda z: source[z : z + 2, :, 3:7], range(5)))
            for z, block in enumerate(blocks):
                np.testing.assert_array_equal(block, stack[z : z + 2, :, 3:7])
        finally:
            source.close()

    def test_2d_image_has_unit_depth(self, tmp_path):
        """A single plane is exposed as a stack of depth 1."""
        path = tmp_path / "plane.tif"
        plane = np.arange(12, dtype=np.float32).reshape(3, 4)
        tifffile.imwrite(path, plane)
        with TiffSource(path) as source:
            assert source.shape == (1, 3, 4)
            np.testing.assert_array_equal(source[0], plane)

    def test_out_of_range_plane(self, tmp_path, stack):
        """Plane indices are bounds checked."""
        path = tmp_path / "view.tif"
        tifffile.imwrite(path, stack)
        with TiffSource(path) as source:
            with pytest.raises(IndexError):
                source[6]

    def test_fuse_from_tiff(self, tmp_path, stack):
        """A TIFF-backed view fuses like the array it contains."""
        path = tmp_path / "view.tif"
        tifffile.imwrite(path, stack)
        with TiffSource(path) as source:
            view = View(ViewId(0, 0), np.eye(4), source)
            sink = ZarrExportSink(tmp_path / "out")
            assert fuse([view], sink, FusionOptions(use_blending=False))
        data = open_zarr_source(tmp_path / "out" / "fused.zarr")[:, :, :]
        np.testing.assert_allclose(data, stack.astype(np.float32))


class TestZarr:
    """Tests for the tensorstore-backed source and sink."""

    def test_open_zarr_source(self, tmp_path, stack):
        """A Zarr v3 array opens as a pixel source."""
        store = create_zarr_store(tmp_path / "in.zarr", stack.shape, stack.dtype, (4, 8, 8), 2)
        store.write(stack).result()
        source = open_zarr_source(tmp_path / "in.zarr")
        assert source.shape == stack.shape
        assert source.dtype == np.uint16
        np.testing.assert_array_equal(source[2:5, 1:9, 0:3], stack[2:5, 1:9, 0:3])

    def test_leading_axes_are_indexed(self, tmp_path, stack):
        """Extra leading axes are fixed by the given index."""
        data = np.stack([stack, stack + 1])
        store = create_zarr_store(tmp_path / "tczyx.zarr", data.shape, data.dtype, (1, 4, 8, 8), 2)
        store.write(data).result()
        source = open_zarr_source(tmp_path / "tczyx.zarr", index=(1,))
        assert source.shape == stack.shape
        np.testing.assert_array_equal(source[0, :, :], stack[0] + 1)

    def test_sink_writes_volume_and_provenance(self, tmp_path):
        """The sink stores the data, a provenance record and a final index."""
        data = np.random.default_rng(6).uniform(size=(5, 6, 7)).astype(np.float32)
        volume = PrecomputedVolume(data, origin=(2, 0, 0))
        group = [
            View(
                ViewId(3, 1), np.eye(4), np.zeros((2, 2, 2), dtype=np.float32),
                voxel_size=(2.0, 0.5, 0.5), channel=1, angle=90, tile=4,
                attributes={"objective": "10x"},
            )
        ]
        sink = ZarrExportSink(tmp_path / "out", chunk_shape=(2, 4, 4), max_workers=2)

        box = BoundingBox((2, 0, 0), (6, 5, 6))
        assert sink.export_image(volume, box, 1.0, None, "fused_tp_3_vs_1", group, 0.0, 1.0)
        sink.finish()

        written = open_zarr_source(tmp_path / "out" / "fused_tp_3_vs_1.zarr")[:, :, :]
        np.testing.assert_array_equal(written, data)

        record = json.loads((tmp_path / "out" / "fused_tp_3_vs_1.zarr" / "provenance.json").read_text())
        assert record["bounding_box"] == {"min": [2, 0, 0], "max": [6, 5, 6]}
        assert record["origin"] == [2, 0, 0]
        assert record["max_value"] == 1.0
        assert record["views"] == [
            {
                "timepoint": 3,
                "setup": 1,
                "channel": 1,
                "illumination": 0,
                "angle": 90,
                "tile": 4,
                "voxel_size": [2.0, 0.5, 0.5],
                "attributes": {"objective": "10x"},
            }
        ]

        index = json.loads((tmp_path / "out" / "fused.json").read_text())
        assert index == {"images": ["fused_tp_3_vs_1"]}
        assert sink.finished

    def test_sink_reads_chunk_sized_blocks(self, tmp_path):
        """Volumes are read and written one chunk at a time, never a whole plane."""
        data = np.random.default_rng(8).uniform(size=(5, 9, 10)).astype(np.float32)

        class RecordingVolume(PrecomputedVolume):
            def __init__(self, array):
                super().__init__(array)
                self.requests = []

            def read_block(self, offset, shape):
                self.requests.append(tuple(shape))
                return super().read_block(offset, shape)

        volume = RecordingVolume(data)
        sink = ZarrExportSink(tmp_path / "out", chunk_shape=(2, 4, 4), max_workers=2)
        assert sink.export_image(volume, volume.bounding_box, 1.0, None, "fused", [])

        assert len(volume.requests) == 3 * 3 * 3
        assert all(s[0] <= 2 and s[1] <= 4 and s[2] <= 4 for s in volume.requests)
        np.testing.assert_array_equal(open_zarr_source(tmp_path / "out" / "fused.zarr")[:, :, :], data)

    def test_sink_in_pipeline_16bit(self, tmp_path):
        """16-bit fused output lands in the store as uint16."""
        data = np.random.default_rng(7).integers(0, 255, (8, 8, 8), dtype=np.uint8)
        views = [View(ViewId(0, i), translation((4 * i, 0, 0)), data) for i in range(2)]
        sink = ZarrExportSink(tmp_path / "out", chunk_shape=(4, 8, 8))
        assert fuse(views, sink, convert_to_16bit=True)
        source = open_zarr_source(tmp_path / "out" / "fused.zarr")
        assert source.dtype == np.uint16
        assert source.shape == (12, 8, 8)
