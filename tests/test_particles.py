"""
Tests for the per-box particle tile (SoA storage)
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from picspecies.constants import m_e
from picspecies.particles import TILE_FIELDS, ParticleTile, sample_thermal_momentum


def filled_tile(n=5, capacity=4):
    tile = ParticleTile(level=0, box_index=2, capacity=capacity)
    x = np.arange(3 * n, dtype=float).reshape(n, 3)
    u = np.ones((n, 3))
    tile.add_particles(x, u, weight=2.0, ids=np.arange(1, n + 1), cpu=3)
    return tile


class TestParticleTile:

    def test_initialization(self):
        tile = ParticleTile(capacity=10)
        assert tile.capacity == 10
        assert tile.n_particles == 0
        assert len(tile) == 0
        assert tile.x.shape == (10, 3)
        assert tile.ids.dtype == np.int64

    def test_add_grows_capacity(self):
        tile = filled_tile(n=5, capacity=4)

        assert tile.n_particles == 5
        assert tile.capacity >= 5
        assert_allclose(tile.x[4], [12.0, 13.0, 14.0])
        assert list(tile.ids[:5]) == [1, 2, 3, 4, 5]
        assert np.all(tile.cpu[:5] == 3)
        assert np.all(tile.weight[:5] == 2.0)
        assert np.all(tile.active[:5])

    def test_add_returns_indices(self):
        tile = filled_tile(n=2)
        idx = tile.add_particles([[0.0, 0.0, 0.0]], [[0.0, 0.0, 0.0]], 1.0, [99])
        assert list(idx) == [2]

    def test_add_single_particle_vectors(self):
        tile = ParticleTile()
        tile.add_particles([1.0, 2.0, 3.0], [0.0, 0.0, 0.0], 1.0, [7])
        assert tile.n_particles == 1

    def test_rejects_bad_shapes(self):
        tile = ParticleTile()
        with pytest.raises(ValueError):
            tile.add_particles(np.zeros((2, 3)), np.zeros((3, 3)), 1.0, [1, 2])

    def test_rejects_non_positive_weight(self):
        tile = ParticleTile()
        with pytest.raises(ValueError):
            tile.add_particles(np.zeros((2, 3)), np.zeros((2, 3)), [1.0, 0.0], [1, 2])

    def test_remove_inactive(self):
        tile = filled_tile(n=5)
        tile.active[[1, 3]] = False
        tile.remove_inactive()

        assert tile.n_particles == 3
        assert list(tile.ids[:3]) == [1, 3, 5]
        assert np.all(tile.active[:3])
        assert tile.count_active() == 3

    def test_checkpoint_round_trip(self):
        tile = filled_tile(n=4)
        tile.active[2] = False
        tile.injected[[0, 3]] = False
        data = tile.as_dict()

        restored = ParticleTile()
        restored.load(data)

        assert restored.n_particles == 4
        assert set(data) == set(TILE_FIELDS)
        for name in TILE_FIELDS:
            assert np.array_equal(getattr(restored, name)[:4], getattr(tile, name)[:4])
        assert list(restored.injected[:4]) == [False, True, True, False]

    def test_load_rejects_inconsistent_arrays(self):
        data = filled_tile(n=4).as_dict()
        data["ids"] = data["ids"][:3]
        with pytest.raises(ValueError):
            ParticleTile().load(data)

    def test_load_rejects_missing_field(self):
        data = filled_tile(n=4).as_dict()
        del data["injected"]
        with pytest.raises(ValueError, match="injected"):
            ParticleTile().load(data)

    @pytest.mark.parametrize("bad", [0.0, -1.0, np.nan])
    def test_load_rejects_non_positive_weight(self, bad):
        data = filled_tile(n=4).as_dict()
        data["weight"][1] = bad
        restored = ParticleTile()
        with pytest.raises(ValueError, match="positive"):
            restored.load(data)
        assert restored.n_particles == 0

    def test_momentum(self):
        tile = ParticleTile()
        u = np.array([[1e3, 0.0, 0.0], [0.0, 2e3, 0.0]])
        tile.add_particles(np.zeros((2, 3)), u, [1.0, 2.0], [1, 2])
        tile.active[1] = False
        assert_allclose(tile.momentum(m_e), m_e * np.array([1e3, 0.0, 0.0]))


class TestThermalSampling:

    def test_spread(self):
        u = sample_thermal_momentum(1e5, 20000, np.random.default_rng(0))
        assert u.shape == (20000, 3)
        assert_allclose(np.std(u, axis=0), 1e5, rtol=0.03)
        assert np.all(np.abs(np.mean(u, axis=0)) < 3e3)
