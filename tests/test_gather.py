"""
Tests for field gather (interpolation of nodal E and B to particles)
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from picspecies.errors import STATUS_OK, STATUS_STENCIL, DomainViolation
from picspecies.pic.gather import gather, gather_fields
from picspecies.pic.mesh import Box, FieldView, LevelGeometry


@pytest.fixture
def geometry():
    """4x4x4 cells of 1 mm, one box with 3 ghost nodes"""
    box = Box(lo=(0, 0, 0), hi=(4, 4, 4), n_ghost=3)
    return LevelGeometry(0, (0.0, 0.0, 0.0), (4e-3, 4e-3, 4e-3), (4, 4, 4), [box])


def random_fields(box, seed):
    rng = np.random.default_rng(seed)
    return FieldView(box, *[rng.normal(size=box.shape) for _ in range(6)])


def random_positions(geometry, n, seed):
    rng = np.random.default_rng(seed)
    lo, hi = geometry.box_bounds(0)
    return lo + rng.random((n, 3)) * (hi - lo)


class TestUniformField:
    """A uniform field is reproduced exactly by every order"""

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_uniform_field(self, geometry, order):
        box = geometry.boxes[0]
        fields = FieldView.uniform(box, E=(1.0, -2.0, 3.0), B=(0.1, 0.2, -0.3))
        x = random_positions(geometry, 100, order)

        E, B, status = gather_fields(x, fields, geometry.array_origin(0), geometry.dx, order)

        assert np.all(status == STATUS_OK)
        assert_allclose(E, np.tile([1.0, -2.0, 3.0], (100, 1)), rtol=1e-13)
        assert_allclose(B, np.tile([0.1, 0.2, -0.3], (100, 1)), rtol=1e-13)


class TestLinearity:
    """gather(a F1 + b F2) = a gather(F1) + b gather(F2)"""

    @pytest.mark.parametrize("order", [0, 1, 2, 3])
    def test_linear_in_fields(self, geometry, order):
        box = geometry.boxes[0]
        f1 = random_fields(box, 1)
        f2 = random_fields(box, 2)
        a, b = 2.5, -0.75
        combined = FieldView(box, *[a * c1 + b * c2 for c1, c2 in zip(f1.components, f2.components)])
        x = random_positions(geometry, 50, 3)
        origin, dx = geometry.array_origin(0), geometry.dx

        E1, B1, _ = gather_fields(x, f1, origin, dx, order)
        E2, B2, _ = gather_fields(x, f2, origin, dx, order)
        E, B, _ = gather_fields(x, combined, origin, dx, order)

        assert_allclose(E, a * E1 + b * E2, atol=1e-12)
        assert_allclose(B, a * B1 + b * B2, atol=1e-12)

    @pytest.mark.parametrize("order", [1, 2, 3])
    def test_linear_profile_reproduced(self, geometry, order):
        """Orders >= 1 interpolate a field varying linearly in space exactly"""
        box = geometry.boxes[0]
        origin, dx = geometry.array_origin(0), geometry.dx
        nodes_x = origin[0] + np.arange(box.shape[0]) * dx[0]
        Ex = np.ascontiguousarray(np.broadcast_to(5.0 + 1e3 * nodes_x[:, None, None], box.shape))
        zeros = np.zeros(box.shape)
        fields = FieldView(box, Ex, zeros, zeros, zeros, zeros, zeros)
        x = random_positions(geometry, 40, 4)

        E, _, _ = gather_fields(x, fields, origin, dx, order)

        assert_allclose(E[:, 0], 5.0 + 1e3 * x[:, 0], rtol=1e-12)


class TestSingleParticle:
    """Single-particle interface"""

    def test_particle_on_node(self, geometry):
        """Linear weighting at a node returns the nodal value"""
        box = geometry.boxes[0]
        fields = random_fields(box, 7)
        origin, dx = geometry.array_origin(0), geometry.dx
        # Physical node (1, 2, 3) mm is array node (4, 5, 6)
        E, B = gather([1e-3, 2e-3, 3e-3], fields, origin, dx, 1)

        assert_allclose(E[0], fields.Ex[4, 5, 6], rtol=1e-12, atol=1e-12)
        assert_allclose(B[2], fields.Bz[4, 5, 6], rtol=1e-12, atol=1e-12)

    def test_deterministic(self, geometry):
        fields = random_fields(geometry.boxes[0], 8)
        args = (geometry.array_origin(0), geometry.dx, 3)
        E1, B1 = gather([1.3e-3, 2.2e-3, 0.7e-3], fields, *args)
        E2, B2 = gather([1.3e-3, 2.2e-3, 0.7e-3], fields, *args)
        assert np.array_equal(E1, E2) and np.array_equal(B1, B2)

    def test_stencil_outside_arrays_raises(self, geometry):
        fields = FieldView.uniform(geometry.boxes[0], E=(1.0, 0.0, 0.0))
        with pytest.raises(DomainViolation):
            gather([-5e-3, 1e-3, 1e-3], fields, geometry.array_origin(0), geometry.dx, 1)


class TestTileGather:
    """Tile kernel status reporting"""

    def test_outside_particle_flagged(self, geometry):
        fields = FieldView.uniform(geometry.boxes[0], E=(1.0, 2.0, 3.0))
        x = np.array([[1e-3, 1e-3, 1e-3], [20e-3, 1e-3, 1e-3]])

        E, _, status = gather_fields(x, fields, geometry.array_origin(0), geometry.dx, 2)

        assert status[0] == STATUS_OK
        assert status[1] == STATUS_STENCIL
        assert_allclose(E[0], [1.0, 2.0, 3.0])
        assert np.all(E[1] == 0.0)

    def test_inactive_particles_skipped(self, geometry):
        fields = FieldView.uniform(geometry.boxes[0], E=(1.0, 0.0, 0.0))
        x = random_positions(geometry, 4, 5)
        active = np.array([True, False, True, False])

        E, _, status = gather_fields(x, fields, geometry.array_origin(0), geometry.dx, 1,
                                     active=active)

        assert np.all(status == STATUS_OK)
        assert_allclose(E[active, 0], 1.0)
        assert np.all(E[~active] == 0.0)

    def test_field_view_is_read_only(self, geometry):
        fields = FieldView.uniform(geometry.boxes[0])
        with pytest.raises(ValueError):
            fields.Ex[0, 0, 0] = 1.0
