"""
Tests for diagnostic utilities (continuity residual, energy, tracker)
"""

import csv
import logging

import numpy as np
from numpy.testing import assert_allclose

from picspecies.config import SpeciesConfig
from picspecies.constants import c, m_e
from picspecies.diagnostics import (
    DiagnosticTracker,
    check_energy_conservation,
    continuity_residual,
    species_kinetic_energy,
    species_momentum,
    tile_summary,
)
from picspecies.pic.mesh import MeshContext
from picspecies.species import SpeciesContainer


def populated_electrons():
    context = MeshContext.single_box((0.0, 0.0, 0.0), (4e-3, 4e-3, 4e-3), (4, 4, 4))
    species = SpeciesContainer(SpeciesConfig.from_database("e", relativistic=False), context)
    species.alloc_data()
    u = np.array([[1e5, 0.0, 0.0], [0.0, -2e5, 0.0]])
    species.init_data(lambda s: s.add_particles(0, 0, np.full((2, 3), 1e-3), u, [1.0, 3.0]))
    return species


class TestContinuityResidual:

    def test_single_edge_current(self):
        """Charge moving across one x-edge: residual vanishes"""
        shape = (4, 3, 3)
        dx = np.array([0.5, 1.0, 1.0])
        dt = 2.0
        rho_old = np.zeros(shape)
        rho_new = np.zeros(shape)
        rho_old[1, 1, 1] = 1.0
        rho_new[2, 1, 1] = 1.0
        jx = np.zeros(shape)
        jx[1, 1, 1] = dx[0] / dt
        zeros = np.zeros(shape)

        residual = continuity_residual(rho_old, rho_new, jx, zeros, zeros, dx, dt)

        assert_allclose(residual, 0.0, atol=1e-15)

    def test_missing_current_detected(self):
        shape = (3, 3, 3)
        rho_new = np.zeros(shape)
        rho_new[1, 1, 1] = 1.0
        zeros = np.zeros(shape)
        residual = continuity_residual(zeros, rho_new, zeros, zeros, zeros, np.ones(3), 1.0)
        assert residual[1, 1, 1] == 1.0


class TestSpeciesTotals:

    def test_energy_and_momentum(self):
        species = populated_electrons()
        assert_allclose(species_kinetic_energy(species), m_e * (0.5e10 + 3.0 * 2e10))
        assert_allclose(species_momentum(species), m_e * np.array([1e5, -6e5, 0.0]))

    def test_relativistic_energy(self):
        """(gamma - 1) m c^2 at u = c, and m u^2 / 2 in the slow limit"""
        context = MeshContext.single_box((0.0, 0.0, 0.0), (4e-3, 4e-3, 4e-3), (4, 4, 4))
        species = SpeciesContainer(SpeciesConfig.from_database("e"), context)
        species.alloc_data()
        species.init_data(lambda s: s.add_particles(
            0, 0, np.full((2, 3), 1e-3), [[c, 0.0, 0.0], [1e3, 0.0, 0.0]], 1.0))

        expected = (np.sqrt(2.0) - 1.0) * m_e * c**2 + 0.5 * m_e * 1e6
        assert_allclose(species_kinetic_energy(species), expected, rtol=1e-12)

    def test_energy_conservation_check(self):
        error, ok = check_energy_conservation(1.001, 1.0)
        assert ok and abs(error - 1e-3) < 1e-12

    def test_tile_summary_logs(self, caplog):
        species = populated_electrons()
        with caplog.at_level(logging.INFO, logger="picspecies.diagnostics"):
            rows = tile_summary(species)
        assert rows == [(0, 0, 2, 2, 64)]
        assert "2 active particles" in caplog.text


class TestDiagnosticTracker:

    def test_record_and_save(self, tmp_path):
        species = populated_electrons()
        tracker = DiagnosticTracker(n_steps=10, output_interval=5)
        tracker.record(0, 0.0, species)
        tracker.record(5, 1e-9, species)

        assert tracker.output_idx == 2
        assert_allclose(tracker.energy_error(), [0.0, 0.0])

        path = tmp_path / "diag.csv"
        tracker.save_csv(str(path))
        with open(path) as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "step"
        assert len(rows) == 3
