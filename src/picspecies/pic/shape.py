"""
Particle Shape Functions (Node-Centred B-Splines)

The same assignment function is used to gather fields to particles and to
scatter charge and current back to the grid, which keeps the scheme free of
self-forces.

Order   Name                  Support (cells)   Breakpoints
  0     Nearest-grid-point    1                 half-integers
  1     Cloud-in-cell         2                 integers
  2     Triangular (TSC)      3                 half-integers
  3     Cubic spline          4                 integers

Positions are expressed in grid units ``xi`` measured from the first node of
the array. The first stencil node is always computed with ``floor``, so a
particle sitting exactly on a breakpoint belongs to the upper interval and
exactly one split of its weight applies.

Reference:
    Birdsall & Langdon (2004), "Plasma Physics via Computer Simulation",
    Chapter 8
"""

import math

import numpy as np
import numba

from ..errors import ShapeOrderUnsupported

SUPPORTED_ORDERS = (0, 1, 2, 3)
MAX_ORDER = 3
MAX_STENCIL = MAX_ORDER + 1

ONE_SIXTH = 1.0 / 6.0


def validate_shape_order(order):
    """
    Check that a shape order is implemented.

    Called once at setup; the kernels never see an unsupported order.

    Raises:
        ShapeOrderUnsupported: If order is not one of 0, 1, 2, 3
    """
    if isinstance(order, bool) or not isinstance(order, (int, np.integer)):
        raise ShapeOrderUnsupported(order)
    if int(order) not in SUPPORTED_ORDERS:
        raise ShapeOrderUnsupported(order)
    return int(order)


def stencil_half_width(order):
    """Half-width ceil((o+1)/2) of the stencil, in cells."""
    validate_shape_order(order)
    return (order + 2) // 2


def required_ghost_nodes(order):
    """
    Ghost nodes a box needs so that a particle inside the box, moving less
    than one cell per step, can be gathered and deposited.
    """
    return stencil_half_width(order) + 1


@numba.njit(cache=True, nogil=True)
def breakpoint_offset(order):
    """Offset of the shape breakpoints from the integer nodes (0 or 0.5)."""
    return 0.0 if order % 2 == 1 else 0.5


@numba.njit(cache=True, nogil=True)
def shape_factors(xi, order, w):
    """
    Evaluate the 1D assignment weights at a position.

    Args:
        xi: Position in grid units (node index space)
        order: Shape order (0-3, validated by the caller)
        w: Output weights, length >= order+1 (modified in-place)

    Returns:
        first: Index of the node receiving w[0]
    """
    if order == 0:
        first = int(math.floor(xi + 0.5))
        w[0] = 1.0
        return first
    elif order == 1:
        first = int(math.floor(xi))
        f = xi - first
        w[0] = 1.0 - f
        w[1] = f
        return first
    elif order == 2:
        centre = int(math.floor(xi + 0.5))
        d = xi - centre
        w[0] = 0.5 * (0.5 - d) * (0.5 - d)
        w[1] = 0.75 - d * d
        w[2] = 0.5 * (0.5 + d) * (0.5 + d)
        return centre - 1
    else:
        cell = int(math.floor(xi))
        f = xi - cell
        f2 = f * f
        f3 = f2 * f
        g = 1.0 - f
        w[0] = ONE_SIXTH * g * g * g
        w[1] = ONE_SIXTH * (4.0 - 6.0 * f2 + 3.0 * f3)
        w[2] = ONE_SIXTH * (1.0 + 3.0 * f + 3.0 * f2 - 3.0 * f3)
        w[3] = ONE_SIXTH * f3
        return cell - 1


def shape_weights(xi, order):
    """
    Python interface to shape_factors.

    Args:
        xi: Position in grid units
        order: Shape order

    Returns:
        first: Index of the first stencil node
        weights: Array of order+1 weights (sum = 1)

    Example:
        >>> shape_weights(2.5, 1)
        (2, array([0.5, 0.5]))
    """
    order = validate_shape_order(order)
    w = np.zeros(MAX_STENCIL, dtype=np.float64)
    first = shape_factors(float(xi), order, w)
    return first, w[:order + 1].copy()
