"""
Charge-Conserving Current Deposition (Esirkepov Scheme)

For a particle moving from x^n to x^{n+1}, the trajectory is split at every
breakpoint of the shape function it crosses (in any dimension). For each
sub-segment the decomposition vector W is built from the difference of the
assignment functions at the segment ends:

    DS_d = S_d(end) - S_d(start)

    W_x = DS_x (S0_y S0_z + DS_y S0_z / 2 + S0_y DS_z / 2 + DS_y DS_z / 3)

(and cyclic), which satisfies W_x + W_y + W_z = S(end) - S(start) exactly.
The edge currents are the running sums

    J_x[i+1/2] = -q w dx / (dt dV) * sum_{i' <= i} W_x[i']

so that (rho^{n+1} - rho^n)/dt + div J = 0 holds node by node at machine
precision, for every shape order and any number of crossings.

Tile deposition is a reduction: particles are split into chunks, each chunk
accumulates into its own buffer, and the buffers are summed afterwards.

Reference:
    Esirkepov (2001), Comput. Phys. Commun. 135, 144-153
"""

import math

import numpy as np
import numba
from numba import prange

from ..errors import STATUS_OK, STATUS_STENCIL, DomainViolation
from .shape import MAX_STENCIL, breakpoint_offset, shape_factors, validate_shape_order

# Window of one sub-segment: order+1 nodes, one extra per index change.
MAX_WINDOW = MAX_STENCIL + 4

ONE_THIRD = 1.0 / 3.0


# ==================== SEGMENT KERNEL ====================


@numba.njit(cache=True, nogil=True)
def _window(a, b, order, Sa, Sb, DS):
    """
    Start and end assignment weights of one dimension on a common window.

    Args:
        a, b: Start and end positions in grid units
        order: Shape order
        Sa: Output start weights [MAX_WINDOW] (modified in-place)
        Sb: Output end weights [MAX_WINDOW] (modified in-place)
        DS: Output difference Sb - Sa [MAX_WINDOW] (modified in-place)

    Returns:
        first: Array index of window node 0
        length: Number of window nodes (0 if the window is too wide)
    """
    wa = np.empty(MAX_STENCIL)
    wb = np.empty(MAX_STENCIL)
    ia = shape_factors(a, order, wa)
    ib = shape_factors(b, order, wb)
    first = min(ia, ib)
    length = max(ia, ib) + order + 1 - first
    if length > MAX_WINDOW:
        return first, 0

    for k in range(length):
        Sa[k] = 0.0
        Sb[k] = 0.0
    for k in range(order + 1):
        Sa[ia - first + k] = wa[k]
        Sb[ib - first + k] = wb[k]
    for k in range(length):
        DS[k] = Sb[k] - Sa[k]
    return first, length


@numba.njit(cache=True, nogil=True)
def _deposit_segment(start, end, order, coef, J):
    """
    Esirkepov current of one sub-segment, added to J.

    Args:
        start, end: Segment ends in grid units [3]
        order: Shape order
        coef: -q w dx_d / (dt dV) per dimension [3]
        J: Current buffer [3, nx, ny, nz] (modified in-place)

    Returns:
        ok: False if the window leaves the buffer (nothing is written)
    """
    Sx0 = np.empty(MAX_WINDOW)
    Sx1 = np.empty(MAX_WINDOW)
    DSx = np.empty(MAX_WINDOW)
    Sy0 = np.empty(MAX_WINDOW)
    Sy1 = np.empty(MAX_WINDOW)
    DSy = np.empty(MAX_WINDOW)
    Sz0 = np.empty(MAX_WINDOW)
    Sz1 = np.empty(MAX_WINDOW)
    DSz = np.empty(MAX_WINDOW)

    i0, Lx = _window(start[0], end[0], order, Sx0, Sx1, DSx)
    j0, Ly = _window(start[1], end[1], order, Sy0, Sy1, DSy)
    k0, Lz = _window(start[2], end[2], order, Sz0, Sz1, DSz)

    nx = J.shape[1]
    ny = J.shape[2]
    nz = J.shape[3]
    if Lx == 0 or Ly == 0 or Lz == 0:
        return False
    if (i0 < 0 or j0 < 0 or k0 < 0
            or i0 + Lx > nx or j0 + Ly > ny or k0 + Lz > nz):
        return False

    # J_x: running sum along x
    for j in range(Ly):
        for k in range(Lz):
            yz = (Sy0[j] * Sz0[k] + 0.5 * DSy[j] * Sz0[k]
                  + 0.5 * Sy0[j] * DSz[k] + ONE_THIRD * DSy[j] * DSz[k])
            acc = 0.0
            for i in range(Lx):
                acc += DSx[i] * yz
                J[0, i0 + i, j0 + j, k0 + k] += coef[0] * acc

    # J_y: running sum along y
    for i in range(Lx):
        for k in range(Lz):
            xz = (Sx0[i] * Sz0[k] + 0.5 * DSx[i] * Sz0[k]
                  + 0.5 * Sx0[i] * DSz[k] + ONE_THIRD * DSx[i] * DSz[k])
            acc = 0.0
            for j in range(Ly):
                acc += DSy[j] * xz
                J[1, i0 + i, j0 + j, k0 + k] += coef[1] * acc

    # J_z: running sum along z
    for i in range(Lx):
        for j in range(Ly):
            xy = (Sx0[i] * Sy0[j] + 0.5 * DSx[i] * Sy0[j]
                  + 0.5 * Sx0[i] * DSy[j] + ONE_THIRD * DSx[i] * DSy[j])
            acc = 0.0
            for k in range(Lz):
                acc += DSz[k] * xy
                J[2, i0 + i, j0 + j, k0 + k] += coef[2] * acc

    return True


# ==================== TRAJECTORY SPLITTING ====================


@numba.njit(cache=True, nogil=True)
def _crossing_fractions(p0, p1, offset):
    """
    Sorted trajectory fractions t in [0, 1] of all breakpoint crossings,
    including both ends.

    Args:
        p0, p1: Start and end in grid units [3]
        offset: Breakpoint offset from the integer nodes (0 or 0.5)
    """
    n_cross = 0
    for d in range(3):
        a = int(math.floor(p0[d] - offset))
        b = int(math.floor(p1[d] - offset))
        n_cross += abs(b - a)

    ts = np.empty(n_cross + 2)
    ts[0] = 0.0
    n = 1
    for d in range(3):
        a = int(math.floor(p0[d] - offset))
        b = int(math.floor(p1[d] - offset))
        if a == b:
            continue
        delta = p1[d] - p0[d]
        for m in range(min(a, b) + 1, max(a, b) + 1):
            t = (m + offset - p0[d]) / delta
            ts[n] = min(max(t, 0.0), 1.0)
            n += 1
    ts[n] = 1.0
    ts.sort()
    return ts


@numba.njit(cache=True, nogil=True)
def _trajectory_in_bounds(p0, p1, order, shape):
    """Check that the whole trajectory window fits in an array of this shape."""
    w = np.empty(MAX_STENCIL)
    for d in range(3):
        ia = shape_factors(p0[d], order, w)
        ib = shape_factors(p1[d], order, w)
        if min(ia, ib) < 0 or max(ia, ib) + order + 1 > shape[d]:
            return False
    return True


@numba.njit(cache=True, nogil=True)
def deposit_trajectory(p0, p1, order, coef, J):
    """
    Deposit the current of one straight trajectory, split at breakpoints.

    Args:
        p0, p1: Start and end in grid units [3]
        order: Shape order
        coef: -q w dx_d / (dt dV) per dimension [3]
        J: Current buffer [3, nx, ny, nz] (modified in-place)

    Returns:
        ok: False if the trajectory window leaves the buffer
    """
    shape = (J.shape[1], J.shape[2], J.shape[3])
    if not _trajectory_in_bounds(p0, p1, order, shape):
        return False

    offset = breakpoint_offset(order)
    ts = _crossing_fractions(p0, p1, offset)
    n_points = ts.shape[0]

    # Shared segment ends keep the charge telescoping exactly
    points = np.empty((n_points, 3))
    for s in range(n_points):
        for d in range(3):
            if ts[s] == 0.0:
                points[s, d] = p0[d]
            elif ts[s] == 1.0:
                points[s, d] = p1[d]
            else:
                points[s, d] = p0[d] + ts[s] * (p1[d] - p0[d])

    for s in range(n_points - 1):
        if ts[s + 1] == ts[s]:
            continue
        if not _deposit_segment(points[s], points[s + 1], order, coef, J):
            return False
    return True


# ==================== TILE KERNELS ====================


@numba.njit(cache=True, nogil=True, parallel=True)
def deposit_current_kernel(
    x_old, x_new, weight, active, status, charge, dt, order, origin, dx,
    n_particles, local
):
    """
    Deposit the current of all particles of a tile into chunk buffers.

    Args:
        x_old: Positions before the push [n, 3] [m]
        x_new: Positions after the push [n, 3] [m]
        weight: Macro-particle weights [n]
        active: Active flags [n]
        status: Per-particle status [n]; particles not at STATUS_OK are
            skipped, particles whose stencil leaves the buffer are set to
            STATUS_STENCIL
        charge: Species charge [C]
        dt: Timestep [s]
        order: Shape order
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        n_particles: Number of particles
        local: Chunk buffers [n_chunks, 3, nx, ny, nz] (zeroed by caller)
    """
    n_chunks = local.shape[0]
    inv_dV = 1.0 / (dx[0] * dx[1] * dx[2])

    for chunk in prange(n_chunks):
        start = chunk * n_particles // n_chunks
        stop = (chunk + 1) * n_particles // n_chunks
        J = local[chunk]
        p0 = np.empty(3)
        p1 = np.empty(3)
        coef = np.empty(3)
        for p in range(start, stop):
            if not active[p] or status[p] != STATUS_OK:
                continue
            q = charge * weight[p]
            if q == 0.0:
                continue
            for d in range(3):
                p0[d] = (x_old[p, d] - origin[d]) / dx[d]
                p1[d] = (x_new[p, d] - origin[d]) / dx[d]
                coef[d] = -q * dx[d] * inv_dV / dt
            if not deposit_trajectory(p0, p1, order, coef, J):
                status[p] = STATUS_STENCIL


# Single-threaded build for callers that already run boxes concurrently
deposit_current_serial = numba.njit(nogil=True)(deposit_current_kernel.py_func)


@numba.njit(cache=True, nogil=True)
def deposit_charge_kernel(x, weight, active, charge, order, origin, dx, rho, n_particles):
    """
    Deposit nodal charge density with the same shape functions.

    Args:
        x: Positions [n, 3] [m]
        weight: Macro-particle weights [n]
        active: Active flags [n]
        charge: Species charge [C]
        order: Shape order
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        rho: Charge density [nx, ny, nz] [C/m^3] (modified in-place)
        n_particles: Number of particles

    Returns:
        n_skipped: Particles whose stencil leaves the array
    """
    nx, ny, nz = rho.shape
    n = order + 1
    inv_dV = 1.0 / (dx[0] * dx[1] * dx[2])
    sx = np.empty(MAX_STENCIL)
    sy = np.empty(MAX_STENCIL)
    sz = np.empty(MAX_STENCIL)
    n_skipped = 0

    for p in range(n_particles):
        if not active[p]:
            continue
        i0 = shape_factors((x[p, 0] - origin[0]) / dx[0], order, sx)
        j0 = shape_factors((x[p, 1] - origin[1]) / dx[1], order, sy)
        k0 = shape_factors((x[p, 2] - origin[2]) / dx[2], order, sz)
        if (i0 < 0 or j0 < 0 or k0 < 0
                or i0 + n > nx or j0 + n > ny or k0 + n > nz):
            n_skipped += 1
            continue
        q = charge * weight[p] * inv_dV
        for a in range(n):
            for b in range(n):
                for c in range(n):
                    rho[i0 + a, j0 + b, k0 + c] += q * sx[a] * sy[b] * sz[c]

    return n_skipped


# ==================== PYTHON INTERFACE ====================


def deposit_current(x_old, x_new, weight, charge, dt, order, current, origin, dx,
                    active=None, status=None, n_chunks=1):
    """
    Deposit the current of many particles into a CurrentView.

    Args:
        x_old: Positions before the push [n, 3] [m]
        x_new: Positions after the push [n, 3] [m]
        weight: Weights [n] (or scalar)
        charge: Species charge [C]
        dt: Timestep [s]
        order: Shape order
        current: CurrentView receiving the contribution
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        active: Optional active flags [n]
        status: Optional status array [n] updated in-place
        n_chunks: Number of independent accumulators (>= 1)

    Returns:
        status: [n] per-particle status
    """
    order = validate_shape_order(order)
    x_old = np.ascontiguousarray(np.atleast_2d(x_old), dtype=np.float64)
    x_new = np.ascontiguousarray(np.atleast_2d(x_new), dtype=np.float64)
    n_particles = x_old.shape[0]
    weight = np.broadcast_to(np.asarray(weight, dtype=np.float64), (n_particles,)).copy()
    if active is None:
        active = np.ones(n_particles, dtype=np.bool_)
    if status is None:
        status = np.zeros(n_particles, dtype=np.int8)

    n_chunks = max(1, min(int(n_chunks), max(n_particles, 1)))
    local = np.zeros((n_chunks, 3) + current.box.shape, dtype=np.float64)
    deposit_current_kernel(
        x_old, x_new, weight, active, status, float(charge), float(dt), order,
        np.asarray(origin, dtype=np.float64), np.asarray(dx, dtype=np.float64),
        n_particles, local,
    )
    current.accumulate(local.sum(axis=0))
    return status


def deposit(old_position, new_position, weight, charge, dt, order, current, origin, dx):
    """
    Deposit the current of a single particle trajectory.

    Args:
        old_position: [3] [m]
        new_position: [3] [m]
        weight: Macro-particle weight
        charge: Particle charge [C]
        dt: Timestep [s]
        order: Shape order
        current: CurrentView receiving the contribution
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]

    Raises:
        DomainViolation: If the trajectory stencil leaves the current arrays
    """
    status = deposit_current(
        old_position, new_position, weight, charge, dt, order, current, origin, dx
    )
    if status[0] != STATUS_OK:
        raise DomainViolation(
            "Deposition stencil leaves the current arrays",
            position=np.asarray(new_position, dtype=np.float64),
        )


def deposit_charge(x, weight, charge, order, rho, origin, dx, active=None):
    """
    Deposit nodal charge density (Python interface).

    Args:
        x: Positions [n, 3] [m]
        weight: Weights [n] (or scalar)
        charge: Species charge [C]
        order: Shape order
        rho: Nodal charge density [nx, ny, nz] (modified in-place)
        origin: Physical position of array node (0, 0, 0) [3] [m]
        dx: Cell size [3] [m]
        active: Optional active flags [n]

    Returns:
        n_skipped: Particles whose stencil leaves the array
    """
    order = validate_shape_order(order)
    x = np.ascontiguousarray(np.atleast_2d(x), dtype=np.float64)
    n_particles = x.shape[0]
    weight = np.broadcast_to(np.asarray(weight, dtype=np.float64), (n_particles,)).copy()
    if active is None:
        active = np.ones(n_particles, dtype=np.bool_)
    return deposit_charge_kernel(
        x, weight, active, float(charge), order,
        np.asarray(origin, dtype=np.float64), np.asarray(dx, dtype=np.float64),
        rho, n_particles,
    )
