"""
Tests for B-spline shape functions (weights, tie rule, stencil sizes)
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.interpolate import BSpline

from picspecies.errors import ShapeOrderUnsupported
from picspecies.pic.shape import (
    required_ghost_nodes,
    shape_weights,
    stencil_half_width,
    validate_shape_order,
)


def bspline_reference(order, offset):
    """Centred cardinal B-spline of the given order, evaluated at node offsets."""
    knots = np.arange(order + 2) - (order + 1) / 2.0
    values = BSpline.basis_element(knots, extrapolate=False)(np.atleast_1d(offset))
    return np.nan_to_num(values)


class TestShapeWeights:
    """Weights against the analytic B-splines"""

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_weights_sum_to_one(self, order):
        rng = np.random.default_rng(order)
        for xi in rng.uniform(2.0, 20.0, 200):
            _, w = shape_weights(xi, order)
            assert len(w) == order + 1
            assert abs(np.sum(w) - 1.0) < 1e-14
            assert np.all(w >= 0.0)

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_matches_scipy_bspline(self, order):
        """Each stencil node gets the B-spline value at its distance to the particle"""
        rng = np.random.default_rng(10 + order)
        for xi in rng.uniform(3.0, 9.0, 50):
            first, w = shape_weights(xi, order)
            nodes = first + np.arange(order + 1)
            expected = bspline_reference(order, xi - nodes)
            assert_allclose(w, expected, atol=1e-14)

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_no_weight_outside_stencil(self, order):
        rng = np.random.default_rng(20 + order)
        for xi in rng.uniform(3.0, 9.0, 50):
            first, _ = shape_weights(xi, order)
            outside = np.array([first - 1, first + order + 1])
            assert_allclose(bspline_reference(order, xi - outside), 0.0, atol=1e-14)

    def test_stencil_centred_on_particle(self):
        """Orders >= 1 reproduce linear functions: sum_k w_k * node_k = xi"""
        for order in (1, 2, 3):
            for xi in (4.0, 4.25, 4.5, 4.999):
                first, w = shape_weights(xi, order)
                nodes = first + np.arange(order + 1)
                assert abs(np.dot(w, nodes) - xi) < 1e-13


class TestBoundarySplit:
    """Particles exactly on nodes or breakpoints"""

    def test_linear_at_midpoint(self):
        first, w = shape_weights(2.5, 1)
        assert first == 2
        assert_allclose(w, [0.5, 0.5])

    def test_nearest_grid_point_on_node(self):
        first, w = shape_weights(3.0, 0)
        assert first == 3
        assert_allclose(w, [1.0])

    def test_nearest_grid_point_tie_goes_up(self):
        """A particle on the breakpoint between two nodes belongs to the upper one"""
        first, w = shape_weights(2.5, 0)
        assert first == 3
        assert_allclose(w, [1.0])

    def test_linear_on_node(self):
        first, w = shape_weights(3.0, 1)
        assert first == 3
        assert_allclose(w, [1.0, 0.0])

    def test_cubic_on_node(self):
        first, w = shape_weights(5.0, 3)
        assert first == 4
        assert_allclose(w, [1.0 / 6.0, 2.0 / 3.0, 1.0 / 6.0, 0.0], atol=1e-15)

    def test_quadratic_on_breakpoint(self):
        first, w = shape_weights(4.5, 2)
        assert first == 4
        assert_allclose(w, [0.5, 0.5, 0.0], atol=1e-15)


class TestShapeOrderValidation:
    """Setup-time order checks"""

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_supported_orders(self, order):
        assert validate_shape_order(order) == order

    @pytest.mark.parametrize("order", [-1, 4, 7, 1.5, True, "2"])
    def test_unsupported_orders(self, order):
        with pytest.raises(ShapeOrderUnsupported):
            validate_shape_order(order)

    def test_shape_weights_rejects_order(self):
        with pytest.raises(ShapeOrderUnsupported):
            shape_weights(1.0, 4)

    def test_half_width_and_ghosts(self):
        assert [stencil_half_width(o) for o in range(4)] == [1, 1, 2, 2]
        assert [required_ghost_nodes(o) for o in range(4)] == [2, 2, 3, 3]
