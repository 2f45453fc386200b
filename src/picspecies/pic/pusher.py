"""
Relativistic Boris Pusher

Half-kick / rotate / half-kick integrator for the proper momentum per unit
rest mass u = gamma * v:

    u-  = u^n + (q dt / 2m) E
    u+  = R(B, dt / gamma-) u-          (exact rotation)
    u^{n+1} = u+ + (q dt / 2m) E
    x^{n+1} = x^n + dt u^{n+1} / gamma^{n+1}

The rotation uses t = b tan(q|B|dt / 2m gamma) instead of the usual small
angle t = q B dt / 2m gamma, so the momentum turns by exactly the cyclotron
angle of the step.

Reference:
    Boris (1970), Proc. 4th Conf. Num. Sim. Plasmas
    Birdsall & Langdon (2004), Section 15.4
"""

import math

import numpy as np
import numba
from numba import prange

from ..constants import c
from ..errors import STATUS_OK, STATUS_OVERFLOW, NumericOverflow

INV_C = 1.0 / c


@numba.njit(cache=True, nogil=True)
def lorentz_factor(ux, uy, uz, relativistic):
    """
    gamma = sqrt(1 + |u|^2 / c^2), evaluated with hypot.

    hypot avoids the overflow of |u|^2 for ultra-relativistic momenta and
    loses nothing for |u| << c. Returns 1 for non-relativistic species.
    """
    if not relativistic:
        return 1.0
    u_norm = math.hypot(math.hypot(ux, uy), uz) * INV_C
    return math.hypot(1.0, u_norm)


@numba.njit(cache=True, nogil=True, parallel=True)
def boris_push_relativistic(
    x, u, E_particles, B_particles, active, status, charge, mass, dt,
    relativistic, n_particles
):
    """
    Push particles one step with the exact-rotation Boris scheme.

    Args:
        x: Positions [n, 3] [m] (modified in-place)
        u: Proper momentum per unit mass [n, 3] [m/s] (modified in-place)
        E_particles: Electric field at particles [n, 3] [V/m]
        B_particles: Magnetic field at particles [n, 3] [T]
        active: Active flags [n]
        status: Per-particle status [n]; set to STATUS_OVERFLOW when the new
            momentum or gamma is not finite (the particle is left unchanged)
        charge: Species charge [C]
        mass: Species mass [kg]
        dt: Timestep [s]
        relativistic: Use gamma from the momentum (False: gamma = 1)
        n_particles: Number of particles to process
    """
    qdt_2m = charge * dt / (2.0 * mass)

    for p in prange(n_particles):
        if not active[p] or status[p] != STATUS_OK:
            continue

        # First half electric impulse
        ux = u[p, 0] + qdt_2m * E_particles[p, 0]
        uy = u[p, 1] + qdt_2m * E_particles[p, 1]
        uz = u[p, 2] + qdt_2m * E_particles[p, 2]

        gamma = lorentz_factor(ux, uy, uz, relativistic)
        if not math.isfinite(gamma):
            status[p] = STATUS_OVERFLOW
            continue

        # Magnetic rotation
        bx = B_particles[p, 0]
        by = B_particles[p, 1]
        bz = B_particles[p, 2]
        b_norm = math.hypot(math.hypot(bx, by), bz)
        if b_norm > 0.0:
            k = math.tan(qdt_2m * b_norm / gamma) / b_norm
            tx = k * bx
            ty = k * by
            tz = k * bz
            s_factor = 2.0 / (1.0 + tx * tx + ty * ty + tz * tz)
            sx = s_factor * tx
            sy = s_factor * ty
            sz = s_factor * tz

            # u' = u- + u- x t
            upx = ux + (uy * tz - uz * ty)
            upy = uy + (uz * tx - ux * tz)
            upz = uz + (ux * ty - uy * tx)

            # u+ = u- + u' x s
            ux = ux + (upy * sz - upz * sy)
            uy = uy + (upz * sx - upx * sz)
            uz = uz + (upx * sy - upy * sx)

        # Second half electric impulse
        ux += qdt_2m * E_particles[p, 0]
        uy += qdt_2m * E_particles[p, 1]
        uz += qdt_2m * E_particles[p, 2]

        gamma = lorentz_factor(ux, uy, uz, relativistic)
        if not (math.isfinite(ux) and math.isfinite(uy) and math.isfinite(uz)
                and math.isfinite(gamma)):
            status[p] = STATUS_OVERFLOW
            continue

        u[p, 0] = ux
        u[p, 1] = uy
        u[p, 2] = uz

        inv_gamma = 1.0 / gamma
        x[p, 0] += dt * ux * inv_gamma
        x[p, 1] += dt * uy * inv_gamma
        x[p, 2] += dt * uz * inv_gamma


@numba.njit(cache=True, nogil=True, parallel=True)
def push_photons(x, u, active, status, dt, n_particles):
    """
    Move massless particles at c along their momentum direction.

    Args:
        x: Positions [n, 3] [m] (modified in-place)
        u: Momentum direction carrier [n, 3] (only the direction is used)
        active: Active flags [n]
        status: Per-particle status [n]
        dt: Timestep [s]
        n_particles: Number of particles to process
    """
    for p in prange(n_particles):
        if not active[p] or status[p] != STATUS_OK:
            continue
        u_norm = math.hypot(math.hypot(u[p, 0], u[p, 1]), u[p, 2])
        if u_norm == 0.0:
            continue
        if not math.isfinite(u_norm):
            status[p] = STATUS_OVERFLOW
            continue
        scale = c * dt / u_norm
        x[p, 0] += scale * u[p, 0]
        x[p, 1] += scale * u[p, 1]
        x[p, 2] += scale * u[p, 2]


# Single-threaded builds for callers that already run boxes concurrently
boris_push_serial = numba.njit(nogil=True)(boris_push_relativistic.py_func)
push_photons_serial = numba.njit(nogil=True)(push_photons.py_func)


def push(position, momentum, E, B, charge, mass, dt, relativistic=True):
    """
    Advance a single particle by one timestep.

    Args:
        position: [3] [m]
        momentum: Proper momentum per unit mass [3] [m/s]
        E: Electric field at the particle [3] [V/m]
        B: Magnetic field at the particle [3] [T]
        charge: Particle charge [C]
        mass: Particle mass [kg]
        dt: Timestep [s] (negative values integrate backwards)
        relativistic: Use the Lorentz factor (default: True)

    Returns:
        position_new: [3] [m]
        momentum_new: [3] [m/s]

    Raises:
        NumericOverflow: If the momentum or gamma becomes non-finite

    Example:
        >>> x, u = push([0, 0, 0], [0, 0, 0], [1, 0, 0], [0, 0, 0], 1.0, 1.0, 0.01)
        >>> u
        array([0.01, 0.  , 0.  ])
    """
    x = np.array(position, dtype=np.float64).reshape(1, 3)
    u = np.array(momentum, dtype=np.float64).reshape(1, 3)
    E_p = np.array(E, dtype=np.float64).reshape(1, 3)
    B_p = np.array(B, dtype=np.float64).reshape(1, 3)
    active = np.ones(1, dtype=np.bool_)
    status = np.zeros(1, dtype=np.int8)

    boris_push_relativistic(
        x, u, E_p, B_p, active, status, float(charge), float(mass), float(dt),
        bool(relativistic), 1,
    )
    if status[0] == STATUS_OVERFLOW:
        raise NumericOverflow(
            f"Non-finite momentum or gamma pushing u={np.asarray(momentum).tolist()}"
        )
    return x[0], u[0]
