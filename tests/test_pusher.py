"""
Tests for the relativistic Boris pusher (exact rotation)
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from picspecies.constants import c, cyclotron_frequency, e, m_e
from picspecies.errors import STATUS_OK, STATUS_OVERFLOW, NumericOverflow
from picspecies.pic.pusher import (
    boris_push_relativistic,
    lorentz_factor,
    push,
    push_photons,
)

ZERO = [0.0, 0.0, 0.0]


class TestElectricKick:
    """Pure electric field"""

    def test_analytic_uniform_acceleration(self):
        """100 steps of dt = 0.01 in E = 1 with q/m = 1 give u_x = 1"""
        x = np.zeros(3)
        u = np.zeros(3)
        for _ in range(100):
            x, u = push(x, u, [1.0, 0.0, 0.0], ZERO, 1.0, 1.0, 0.01)

        assert abs(u[0] - 1.0) < 1e-6
        assert u[1] == 0.0 and u[2] == 0.0

    def test_zero_B_is_pure_kick(self):
        _, u = push(ZERO, [3.0, 0.0, 0.0], [0.0, 2.0, 0.0], ZERO, 1.0, 1.0, 0.5)
        assert_allclose(u, [3.0, 1.0, 0.0])


class TestBallisticMotion:
    """Zero fields"""

    def test_straight_line(self):
        u0 = np.array([1e6, -2e5, 3e5])
        x = np.zeros(3)
        u = u0.copy()
        dt, n_steps = 1e-9, 50
        for _ in range(n_steps):
            x, u = push(x, u, ZERO, ZERO, -e, m_e, dt)

        gamma = lorentz_factor(*u0, True)
        assert_allclose(u, u0)
        assert_allclose(x, n_steps * dt * u0 / gamma, rtol=1e-12)

    def test_non_relativistic_uses_unit_gamma(self):
        u0 = [0.5 * c, 0.0, 0.0]
        x_rel, _ = push(ZERO, u0, ZERO, ZERO, -e, m_e, 1e-9, relativistic=True)
        x_nr, _ = push(ZERO, u0, ZERO, ZERO, -e, m_e, 1e-9, relativistic=False)

        assert_allclose(x_nr[0], 0.5 * c * 1e-9)
        assert_allclose(x_rel[0], 0.5 * c * 1e-9 / np.sqrt(1.25))

    def test_time_reversal(self):
        """Pushing back with reversed momentum returns to the start"""
        x0 = np.array([0.01, -0.02, 0.03])
        u0 = np.array([1e7, -2e7, 5e6])
        x, u = x0.copy(), u0.copy()
        n_steps, dt = 50, 1e-9
        for _ in range(n_steps):
            x, u = push(x, u, ZERO, ZERO, -e, m_e, dt)
        u = -u
        for _ in range(n_steps):
            x, u = push(x, u, ZERO, ZERO, -e, m_e, dt)

        assert_allclose(x, x0, rtol=0, atol=1e-12)
        assert_allclose(-u, u0)


class TestMagneticRotation:
    """Pure magnetic field"""

    def test_momentum_magnitude_preserved(self):
        B = [0.0, 0.0, 1.0]
        u0 = np.array([1e7, 0.0, 2e6])
        x, u = np.zeros(3), u0.copy()
        for _ in range(1000):
            x, u = push(x, u, ZERO, B, -e, m_e, 1e-12)

        assert_allclose(np.linalg.norm(u), np.linalg.norm(u0), rtol=1e-12)
        assert_allclose(u[2], u0[2], rtol=1e-12)

    @pytest.mark.parametrize("u_perp", [1e6, 0.9 * c, 10.0 * c])
    def test_gyration_period_and_radius(self, u_perp):
        """The exact rotation closes an orbit after one relativistic period"""
        B0 = 0.5
        n_steps = 200
        gamma = np.sqrt(1.0 + (u_perp / c) ** 2)
        omega = cyclotron_frequency(B0, -e, m_e, u_perp)
        dt = 2.0 * np.pi / (omega * n_steps)

        x, u = np.zeros(3), np.array([u_perp, 0.0, 0.0])
        xs = []
        for _ in range(n_steps):
            x, u = push(x, u, ZERO, [0.0, 0.0, B0], -e, m_e, dt)
            xs.append(x.copy())
        xs = np.array(xs)

        r_larmor = u_perp / (gamma * omega)
        assert_allclose(u, [u_perp, 0.0, 0.0], atol=1e-9 * u_perp)
        assert np.linalg.norm(x) < 1e-9 * r_larmor
        assert_allclose(np.ptp(xs[:, 1]), 2.0 * r_larmor, rtol=1e-3)

    def test_cyclotron_frequency(self):
        """|q| B / (gamma m), independent of the charge sign"""
        assert_allclose(cyclotron_frequency(1.0), e / m_e)
        assert cyclotron_frequency(1.0, -e, m_e) == cyclotron_frequency(1.0, e, m_e)
        u = np.sqrt(3.0) * c  # gamma = 2
        assert_allclose(cyclotron_frequency(1.0, u=u), 0.5 * e / m_e)


class TestOverflow:
    """Non-finite momentum is reported, never clamped"""

    def test_push_raises(self):
        with pytest.raises(NumericOverflow):
            push(ZERO, [1.7e308, 0.0, 0.0], [1e308, 0.0, 0.0], ZERO, 1.0, 1.0, 1.0)

    def test_tile_kernel_leaves_particle_unchanged(self):
        x = np.zeros((2, 3))
        u = np.array([[1.7e308, 0.0, 0.0], [1.0, 0.0, 0.0]])
        E = np.array([[1e308, 0.0, 0.0], [0.0, 0.0, 0.0]])
        B = np.zeros((2, 3))
        active = np.ones(2, dtype=bool)
        status = np.zeros(2, dtype=np.int8)

        boris_push_relativistic(x, u, E, B, active, status, 1.0, 1.0, 1.0, True, 2)

        assert status[0] == STATUS_OVERFLOW
        assert status[1] == STATUS_OK
        assert u[0, 0] == 1.7e308
        assert np.all(x[0] == 0.0)
        assert x[1, 0] > 0.0

    def test_lorentz_factor_stable_for_huge_momentum(self):
        gamma = lorentz_factor(1e200, 0.0, 0.0, True)
        assert np.isfinite(gamma)
        assert_allclose(gamma, 1e200 / c)


class TestPhotons:
    """Massless particles move at c"""

    def test_photon_speed(self):
        x = np.zeros((1, 3))
        u = np.array([[3.0, 4.0, 0.0]])
        active = np.ones(1, dtype=bool)
        status = np.zeros(1, dtype=np.int8)

        push_photons(x, u, active, status, 1e-9, 1)

        assert_allclose(np.linalg.norm(x[0]), c * 1e-9)
        assert_allclose(x[0], c * 1e-9 * np.array([0.6, 0.8, 0.0]))
