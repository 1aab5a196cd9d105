"""Tests for viewfusion.pipeline module."""

import numpy as np
import pytest

from viewfusion.config import FusionOptions
from viewfusion.geometry import BoundingBox, translation
from viewfusion.materialize import CachedVolume, ImgDataType, PrecomputedVolume
from viewfusion.pipeline import (
    SplittingType,
    determine_input_bit_depth,
    fuse,
    get_title,
    group_views,
)
from viewfusion.views import View, ViewId
from viewfusion.volume import ConvertedVolume


class RecordingSink:
    """Export sink that keeps everything it receives."""

    def __init__(self, fail_on=None):
        self.exports = []
        self.finished = False
        self.fail_on = fail_on

    def export_image(self, volume, bounding_box, downsampling, anisotropy, title, group,
                     min_value=None, max_value=None):
        self.exports.append(
            dict(
                volume=volume,
                data=np.asarray(volume),
                bounding_box=bounding_box,
                downsampling=downsampling,
                anisotropy=anisotropy,
                title=title,
                group=list(group),
                min_value=min_value,
                max_value=max_value,
            )
        )
        return title != self.fail_on

    def finish(self):
        self.finished = True


def make_views(dtype=np.float32):
    """Two timepoints x two channels x two illuminations of 8^3 views."""
    rng = np.random.default_rng(4)
    views = []
    setup = 0
    for tp in range(2):
        for ch in range(2):
            for il in range(2):
                data = (rng.uniform(0, 200, (8, 8, 8))).astype(dtype)
                views.append(
                    View(ViewId(tp, setup % 4), translation((4 * il, 0, 0)), data, channel=ch, illumination=il)
                )
                setup += 1
    return views


class TestGrouping:
    """Tests for group_views and get_title."""

    def test_each_timepoint_channel(self):
        """Views split by timepoint and channel, in sorted order."""
        groups = group_views(make_views(), SplittingType.EACH_TIMEPOINT_CHANNEL)
        titles = [get_title(SplittingType.EACH_TIMEPOINT_CHANNEL, g) for g in groups]
        assert titles == ["fused_tp_0_ch_0", "fused_tp_0_ch_1", "fused_tp_1_ch_0", "fused_tp_1_ch_1"]
        assert all(len(g) == 2 for g in groups)

    def test_each_timepoint_channel_illumination(self):
        """Illuminations get separate groups and titles."""
        groups = group_views(make_views(), SplittingType.EACH_TIMEPOINT_CHANNEL_ILLUMINATION)
        assert len(groups) == 8
        assert get_title(SplittingType.EACH_TIMEPOINT_CHANNEL_ILLUMINATION, groups[1]) == "fused_tp_0_ch_0_illum_1"

    def test_all_views_together(self):
        """Everything is fused into a single image."""
        groups = group_views(make_views(), SplittingType.ALL_VIEWS_TOGETHER)
        assert len(groups) == 1
        assert get_title(SplittingType.ALL_VIEWS_TOGETHER, groups[0]) == "fused"

    def test_each_view(self):
        """Every view is its own group, titled by timepoint and setup."""
        groups = group_views(make_views(), SplittingType.EACH_VIEW)
        assert len(groups) == 8
        assert get_title(SplittingType.EACH_VIEW, groups[-1]) == "fused_tp_1_vs_3"

    def test_views_sorted_within_group(self):
        """Views inside a group are ordered by id."""
        views = make_views()[::-1]
        group = group_views(views, SplittingType.ALL_VIEWS_TOGETHER)[0]
        ids = [v.view_id for v in group]
        assert ids == sorted(ids)


class TestBitDepth:
    """Tests for determine_input_bit_depth."""

    def test_uint8_and_uint16(self):
        """Integer inputs keep their natural range."""
        views8 = make_views(np.uint8)
        views16 = make_views(np.uint16)
        assert determine_input_bit_depth(views8, None) == (0.0, 255.0)
        assert determine_input_bit_depth(views16, None) == (0.0, 65535.0)

    def test_float_uses_fused_range(self, caplog):
        """Other inputs use the exact range of the fused volume."""
        data = np.arange(27, dtype=np.float32).reshape(3, 3, 3)
        assert determine_input_bit_depth(make_views(), data, num_threads=2) == (0.0, 26.0)
        assert "16 bit" in caplog.text


class TestFuse:
    """Tests for the end-to-end fuse entry point."""

    def test_exports_each_group(self):
        """Every group is exported with its provenance, then the sink is finished."""
        sink = RecordingSink()
        box = BoundingBox((0, 0, 0), (11, 7, 7))
        assert fuse(make_views(), sink, FusionOptions(), SplittingType.EACH_TIMEPOINT_CHANNEL, box)
        assert sink.finished
        assert [e["title"] for e in sink.exports] == [
            "fused_tp_0_ch_0", "fused_tp_0_ch_1", "fused_tp_1_ch_0", "fused_tp_1_ch_1",
        ]
        first = sink.exports[0]
        assert first["bounding_box"] == box
        assert first["downsampling"] == 1.0
        assert first["anisotropy"] is None
        assert first["min_value"] is None
        assert first["data"].shape == (12, 8, 8)
        assert first["data"].dtype == np.float32

    def test_default_bounding_box(self):
        """Without a box, the maximal box of all views is used."""
        sink = RecordingSink()
        assert fuse(make_views(), sink)
        assert sink.exports[0]["bounding_box"] == BoundingBox((0, 0, 0), (11, 7, 7))

    def test_failed_export_aborts(self):
        """A failing export stops the run before finishing the sink."""
        sink = RecordingSink(fail_on="fused_tp_0_ch_1")
        ok = fuse(make_views(), sink, splitting=SplittingType.EACH_TIMEPOINT_CHANNEL)
        assert ok is False
        assert len(sink.exports) == 2
        assert not sink.finished

    def test_convert_to_16bit(self):
        """16-bit export maps the input range onto uint16 and reports it."""
        sink = RecordingSink()
        views = make_views(np.uint8)
        assert fuse(
            views, sink, FusionOptions(use_blending=False), SplittingType.EACH_VIEW, convert_to_16bit=True
        )
        export = sink.exports[0]
        assert isinstance(export["volume"], ConvertedVolume)
        assert export["data"].dtype == np.uint16
        assert (export["min_value"], export["max_value"]) == (0.0, 255.0)

        # A single-coverage voxel equals its view value scaled to 16 bit.
        expected = np.floor(float(views[0].source[0, 3, 3]) / 255.0 * 65535.0 + 0.5)
        assert export["data"][0, 3, 3] == expected

    def test_anisotropy_flattens_z(self):
        """The anisotropy factor compresses the box and the data along z."""
        sink = RecordingSink()
        options = FusionOptions(use_blending=False, anisotropy_factor=2.0)
        assert fuse(make_views(), sink, options)
        export = sink.exports[0]
        assert export["anisotropy"] == 2.0
        assert export["bounding_box"] == BoundingBox((0, 0, 0), (6, 7, 7))
        assert export["data"].shape == (7, 8, 8)

    @pytest.mark.parametrize(
        "mode,cls", [(ImgDataType.CACHED, CachedVolume), (ImgDataType.PRECOMPUTED, PrecomputedVolume)]
    )
    def test_modes_produce_same_export(self, mode, cls):
        """Cached and precomputed exports match the virtual one."""
        options = FusionOptions(cell_dims=(4, 4, 4), max_cache_size=16, num_threads=2)
        virtual, other = RecordingSink(), RecordingSink()
        assert fuse(make_views(), virtual, options)
        assert fuse(make_views(), other, options, mode=mode)
        assert isinstance(other.exports[0]["volume"], cls)
        np.testing.assert_array_equal(other.exports[0]["data"], virtual.exports[0]["data"])

    def test_no_views(self):
        """Fusing nothing is an error."""
        with pytest.raises(ValueError):
            fuse([], RecordingSink())
