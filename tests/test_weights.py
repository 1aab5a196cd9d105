"""Tests for viewfusion.weights module."""

import logging

import numpy as np
import pytest

from viewfusion.weights import (
    BlendingWeight,
    CombinedWeight,
    CombineType,
    ContentBasedWeight,
    UniformWeight,
    adjust_blending,
    adjust_content_based,
    blending_ramp,
    combine_weights,
)


def coords(*points):
    return np.asarray(points, dtype=np.float64).T


class TestBlendingRamp:
    """Tests for blending_ramp."""

    def test_cosine_ramp_values(self):
        """The cosine ramp rises from 0 to 1 through 0.5 at the midpoint."""
        np.testing.assert_allclose(blending_ramp(np.array([0.0, 0.5, 1.0, 2.0])), [0.0, 0.5, 1.0, 1.0], atol=1e-12)

    def test_linear_ramp(self):
        """The linear ramp is the clipped relative distance."""
        np.testing.assert_allclose(blending_ramp(np.array([-1.0, 0.25, 3.0]), "linear"), [0.0, 0.25, 1.0])


class TestBlendingWeight:
    """Tests for BlendingWeight."""

    @pytest.fixture
    def weight(self):
        return BlendingWeight((10, 10, 10), border=(0, 0, 0), blending=(4, 4, 4))

    def test_interior_is_one(self, weight):
        """Points farther than the range from every face have weight 1."""
        np.testing.assert_allclose(weight(coords((5, 5, 5))), [1.0])

    def test_face_is_zero(self, weight):
        """Points on a face get weight 0."""
        np.testing.assert_allclose(weight(coords((0, 5, 5), (5, 9, 5))), [0.0, 0.0], atol=1e-7)

    def test_ramp_midpoint(self, weight):
        """Halfway into the ramp the weight is 0.5."""
        np.testing.assert_allclose(weight(coords((2, 5, 5), (5, 5, 7))), [0.5, 0.5], atol=1e-6)

    def test_weight_is_product_over_axes(self, weight):
        """Axis factors multiply."""
        np.testing.assert_allclose(weight(coords((2, 2, 5))), [0.25], atol=1e-6)

    def test_outside_is_zero(self, weight):
        """Points outside the view's extent get weight 0."""
        np.testing.assert_allclose(weight(coords((-1, 5, 5), (5, 5, 10))), [0.0, 0.0])

    def test_border_zeroes_margin(self):
        """Distances below the border receive zero weight."""
        weight = BlendingWeight((10, 10, 10), border=(1, 1, 1), blending=(4, 4, 4))
        np.testing.assert_allclose(weight(coords((0, 5, 5), (1, 5, 5), (3, 5, 5))), [0.0, 0.0, 0.5], atol=1e-6)

    def test_singleton_axis_ignored(self):
        """An axis of extent 1 does not reduce the weight."""
        weight = BlendingWeight((1, 10, 10), border=(0, 0, 0), blending=(4, 4, 4))
        np.testing.assert_allclose(weight(coords((0, 5, 5))), [1.0])


class TestAdjusters:
    """Tests for the scale-compensated parameter adjusters."""

    def test_blending_divided_by_scale(self, caplog):
        """Blending and border shrink on axes the model stretches."""
        model = np.diag([2.0, 1.0, 0.5, 1.0])
        with caplog.at_level(logging.INFO, logger="viewfusion.weights"):
            blending, border = adjust_blending((10, 10, 10), (40, 40, 40), (4, 4, 4), model, name="v0")
        np.testing.assert_allclose(blending, [20.0, 40.0, 80.0])
        np.testing.assert_allclose(border, [2.0, 4.0, 8.0])
        assert "v0" in caplog.text

    def test_sigmas_divided_by_scale(self):
        """Content-based sigmas are rescaled like the blending range."""
        s1, s2 = adjust_content_based((10, 10, 10), (20, 20, 20), (40, 40, 40), np.diag([4.0, 1.0, 1.0, 1.0]))
        np.testing.assert_allclose(s1, [5.0, 20.0, 20.0])
        np.testing.assert_allclose(s2, [10.0, 40.0, 40.0])

    def test_degenerate_model_asserts(self):
        """A model collapsing an axis is rejected."""
        with pytest.raises(AssertionError):
            adjust_blending((10, 10, 10), (40, 40, 40), (0, 0, 0), np.diag([0.0, 1.0, 1.0, 1.0]))


class TestContentBasedWeight:
    """Tests for ContentBasedWeight."""

    def test_constant_image_has_zero_weight(self):
        """A flat image carries no local contrast."""
        source = np.full((12, 12, 12), 7, dtype=np.uint16)
        weight = ContentBasedWeight(source, ((0, 0, 0), (12, 12, 12)), (1, 1, 1), (2, 2, 2))
        np.testing.assert_allclose(weight(coords((6, 6, 6), (0, 0, 0))), [0.0, 0.0], atol=1e-6)

    def test_structure_outweighs_background(self):
        """A bright spot weighs more than distant flat background."""
        source = np.zeros((16, 16, 16), dtype=np.float32)
        source[8, 8, 8] = 100.0
        weight = ContentBasedWeight(source, ((0, 0, 0), (16, 16, 16)), (1, 1, 1), (2, 2, 2))
        near, far = weight(coords((8, 8, 8), (1, 1, 1)))
        assert near > far

    def test_region_offset(self):
        """Coordinates are interpreted in the view frame, not the region frame."""
        source = np.zeros((16, 16, 16), dtype=np.float32)
        source[10, 10, 10] = 100.0
        full = ContentBasedWeight(source, ((0, 0, 0), (16, 16, 16)), (1, 1, 1), (2, 2, 2))
        part = ContentBasedWeight(source, ((4, 4, 4), (16, 16, 16)), (1, 1, 1), (2, 2, 2))
        np.testing.assert_allclose(part(coords((10, 10, 10))), full(coords((10, 10, 10))), rtol=1e-4)


class TestCombineWeights:
    """Tests for combine_weights."""

    def test_none_is_uniform(self):
        """Without weighting schemes, every covered voxel weighs 1."""
        weight = combine_weights()
        assert isinstance(weight, UniformWeight)
        np.testing.assert_array_equal(weight(coords((1, 2, 3), (4, 5, 6))), [1.0, 1.0])

    def test_single_scheme_used_directly(self):
        """A single scheme is returned as is."""
        blending = BlendingWeight((10, 10, 10), (0, 0, 0), (4, 4, 4))
        assert combine_weights(blending=blending) is blending

    def test_both_multiply(self):
        """Blending and content-based weights multiply by default."""
        blending = BlendingWeight((10, 10, 10), (0, 0, 0), (4, 4, 4))
        combined = combine_weights(blending, UniformWeight())
        assert isinstance(combined, CombinedWeight)
        np.testing.assert_allclose(combined(coords((2, 5, 5))), [0.5], atol=1e-6)

    def test_add(self):
        """The additive combination sums both weights."""
        combined = CombinedWeight(UniformWeight(), UniformWeight(), CombineType.ADD)
        np.testing.assert_array_equal(combined(coords((0, 0, 0))), [2.0])
