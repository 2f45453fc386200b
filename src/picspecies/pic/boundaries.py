"""
Particle Boundary Handling at the Physical Domain Edges

Applied per axis after the current of the step has been deposited, so the
deposition always sees the unmodified trajectory.

Kinds:
- "periodic":   wrap the position back into the domain
- "absorbing":  deactivate the particle
- "reflecting": mirror the position, reverse the normal momentum
- "none":       leaving the domain is a fault (STATUS_DOMAIN)

The domain is the half-open interval [lo, hi) on every axis.
"""

import numpy as np
import numba

from ..errors import STATUS_DOMAIN, STATUS_OK

BOUNDARY_KINDS = ("periodic", "absorbing", "reflecting", "none")


@numba.njit(cache=True, nogil=True)
def flag_domain_violations(x, active, status, axis, x_min, x_max, n_particles):
    """
    Flag particles outside [x_min, x_max) on an axis without boundary handling.

    Returns:
        n_flagged: Number of particles set to STATUS_DOMAIN
    """
    n_flagged = 0
    for i in range(n_particles):
        if not active[i] or status[i] != STATUS_OK:
            continue
        if x[i, axis] < x_min or x[i, axis] >= x_max:
            status[i] = STATUS_DOMAIN
            n_flagged += 1
    return n_flagged


@numba.njit(cache=True, nogil=True)
def apply_periodic_bc(x, active, status, axis, x_min, x_max, n_particles):
    """
    Wrap particles around the domain on one axis.

    Returns:
        n_wrapped: Number of wrapped particles
    """
    L = x_max - x_min
    n_wrapped = 0
    for i in range(n_particles):
        if not active[i] or status[i] != STATUS_OK:
            continue
        if x[i, axis] < x_min or x[i, axis] >= x_max:
            x[i, axis] = x_min + (x[i, axis] - x_min) % L
            # Rounding can land exactly on x_max
            if x[i, axis] >= x_max:
                x[i, axis] = x_min
            n_wrapped += 1
    return n_wrapped


@numba.njit(cache=True, nogil=True)
def apply_absorbing_bc(x, active, status, axis, x_min, x_max, n_particles):
    """
    Deactivate particles that left the domain on one axis.

    Returns:
        n_absorbed: Number of particles absorbed
    """
    n_absorbed = 0
    for i in range(n_particles):
        if not active[i] or status[i] != STATUS_OK:
            continue
        if x[i, axis] < x_min or x[i, axis] >= x_max:
            active[i] = False
            n_absorbed += 1
    return n_absorbed


@numba.njit(cache=True, nogil=True)
def apply_reflecting_bc(x, u, active, status, axis, x_min, x_max, n_particles):
    """
    Specular reflection at the walls of one axis.

    Physics:
        - Position mirrored: x_new = 2*x_wall - x_old
        - Normal momentum reversed: u_new = -u_old
        - |u| (and so gamma) unchanged

    Returns:
        n_reflected: Number of reflections
    """
    n_reflected = 0
    for i in range(n_particles):
        if not active[i] or status[i] != STATUS_OK:
            continue

        x_p = x[i, axis]
        if x_p < x_min:
            x[i, axis] = 2.0 * x_min - x_p
            u[i, axis] = -u[i, axis]
            n_reflected += 1
        elif x_p >= x_max:
            x_new = 2.0 * x_max - x_p
            # Domain is half-open: a particle landing on x_max stays inside
            if x_new >= x_max:
                x_new = np.nextafter(x_max, x_min)
            x[i, axis] = x_new
            u[i, axis] = -u[i, axis]
            n_reflected += 1
    return n_reflected


def find_migrants(x, active, status, box_lo, box_hi, n_particles):
    """
    Indices of healthy active particles outside their box's valid region.

    Args:
        x: Positions [n, 3] [m]
        active: Active flags [n]
        status: Per-particle status [n]
        box_lo, box_hi: Valid region of the owning box [3] [m]
        n_particles: Number of particles

    Returns:
        indices: Array of particle indices
    """
    xs = x[:n_particles]
    outside = np.any((xs < box_lo) | (xs >= box_hi), axis=1)
    mask = outside & active[:n_particles] & (status[:n_particles] == STATUS_OK)
    return np.nonzero(mask)[0]
