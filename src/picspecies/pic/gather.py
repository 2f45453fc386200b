"""
Field Gather (Grid -> Particles)

Separable tensor-product interpolation of nodal E and B to particle
positions using the shape functions of ``shape.py``. The gather is linear in
the field arrays and has no side effects.
"""

import numpy as np
import numba
from numba import prange

from ..errors import STATUS_OK, STATUS_STENCIL, DomainViolation
from .shape import MAX_STENCIL, shape_factors, validate_shape_order


@numba.njit(cache=True, nogil=True)
def _interpolate(F, i0, j0, k0, sx, sy, sz, n):
    """Weighted sum of F over an n x n x n stencil."""
    total = 0.0
    for a in range(n):
        for b in range(n):
            wab = sx[a] * sy[b]
            for c in range(n):
                total += wab * sz[c] * F[i0 + a, j0 + b, k0 + c]
    return total


@numba.njit(cache=True, nogil=True, parallel=True)
def gather_fields_kernel(
    x, active, status, Ex, Ey, Ez, Bx, By, Bz, origin, inv_dx, order,
    E_out, B_out, n_particles
):
    """
    Interpolate nodal E and B to all particles of a tile.

    Args:
        x: Particle positions [n, 3] [m]
        active: Active flags [n]
        status: Per-particle status [n] (set to STATUS_STENCIL if the
            stencil leaves the array)
        Ex, Ey, Ez, Bx, By, Bz: Nodal field arrays [nx, ny, nz]
        origin: Physical position of array node (0, 0, 0) [3] [m]
        inv_dx: Inverse cell size [3] [1/m]
        order: Shape order
        E_out, B_out: Output fields at particles [n, 3] (modified in-place)
        n_particles: Number of particles to process

    Note:
        Inactive or already-faulted particles get zero fields.
    """
    nx, ny, nz = Ex.shape
    n = order + 1
    for p in prange(n_particles):
        for d in range(3):
            E_out[p, d] = 0.0
            B_out[p, d] = 0.0
        if not active[p] or status[p] != STATUS_OK:
            continue

        sx = np.empty(MAX_STENCIL)
        sy = np.empty(MAX_STENCIL)
        sz = np.empty(MAX_STENCIL)
        i0 = shape_factors((x[p, 0] - origin[0]) * inv_dx[0], order, sx)
        j0 = shape_factors((x[p, 1] - origin[1]) * inv_dx[1], order, sy)
        k0 = shape_factors((x[p, 2] - origin[2]) * inv_dx[2], order, sz)

        if (i0 < 0 or j0 < 0 or k0 < 0
                or i0 + n > nx or j0 + n > ny or k0 + n > nz):
            status[p] = STATUS_STENCIL
            continue

        E_out[p, 0] = _interpolate(Ex, i0, j0, k0, sx, sy, sz, n)
        E_out[p, 1] = _interpolate(Ey, i0, j0, k0, sx, sy, sz, n)
        E_out[p, 2] = _interpolate(Ez, i0, j0, k0, sx, sy, sz, n)
        B_out[p, 0] = _interpolate(Bx, i0, j0, k0, sx, sy, sz, n)
        B_out[p, 1] = _interpolate(By, i0, j0, k0, sx, sy, sz, n)
        B_out[p, 2] = _interpolate(Bz, i0, j0, k0, sx, sy, sz, n)


# Single-threaded build for callers that already run boxes concurrently
gather_fields_serial = numba.njit(nogil=True)(gather_fields_kernel.py_func)


def gather_fields(x, fields, origin, dx, order, active=None, status=None):
    """
    Gather E and B at many particle positions (Python interface).

    Args:
        x: Positions [n, 3] [m]
        fields: FieldView of the box holding the particles
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        order: Shape order
        active: Optional active flags [n] (default: all active)
        status: Optional status array [n] updated in-place

    Returns:
        E: [n, 3] [V/m]
        B: [n, 3] [T]
        status: [n] per-particle status
    """
    order = validate_shape_order(order)
    x = np.ascontiguousarray(np.atleast_2d(x), dtype=np.float64)
    n_particles = x.shape[0]
    if active is None:
        active = np.ones(n_particles, dtype=np.bool_)
    if status is None:
        status = np.zeros(n_particles, dtype=np.int8)

    E = np.zeros((n_particles, 3), dtype=np.float64)
    B = np.zeros((n_particles, 3), dtype=np.float64)
    gather_fields_kernel(
        x, active, status, *fields.components,
        np.asarray(origin, dtype=np.float64),
        1.0 / np.asarray(dx, dtype=np.float64),
        order, E, B, n_particles,
    )
    return E, B, status


def gather(position, fields, origin, dx, order):
    """
    Gather E and B at a single particle position.

    Args:
        position: [3] [m]
        fields: FieldView
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        order: Shape order

    Returns:
        E: [3] [V/m]
        B: [3] [T]

    Raises:
        DomainViolation: If the stencil reaches beyond the ghost nodes
    """
    E, B, status = gather_fields(position, fields, origin, dx, order)
    if status[0] != STATUS_OK:
        raise DomainViolation(
            f"Gather stencil at {np.asarray(position).tolist()} leaves the field arrays",
            position=np.asarray(position, dtype=np.float64),
        )
    return E[0], B[0]
