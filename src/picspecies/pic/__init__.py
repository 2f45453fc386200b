"""
Particle-in-Cell (PIC) Kernels

Grid/particle coupling for one species on a 3D Cartesian, box-decomposed
mesh.

Components:
- shape: B-spline shape functions of order 0-3
- mesh: Mesh context, boxes, field and current views
- gather: Field interpolation to particles
- pusher: Relativistic Boris pusher with exact rotation
- deposition: Charge-conserving (Esirkepov) current deposition
- boundaries: Domain boundary handling and migration detection
"""

from .shape import (
    SUPPORTED_ORDERS,
    validate_shape_order,
    stencil_half_width,
    required_ghost_nodes,
    shape_factors,
    shape_weights,
)
from .mesh import Box, LevelGeometry, MeshContext, FieldView, CurrentView
from .gather import gather, gather_fields, gather_fields_kernel
from .pusher import (
    push,
    boris_push_relativistic,
    push_photons,
    lorentz_factor,
)
from .deposition import (
    deposit,
    deposit_current,
    deposit_current_kernel,
    deposit_charge,
    deposit_trajectory,
)
from .boundaries import (
    BOUNDARY_KINDS,
    apply_periodic_bc,
    apply_absorbing_bc,
    apply_reflecting_bc,
    flag_domain_violations,
    find_migrants,
)

__all__ = [
    # Shape
    "SUPPORTED_ORDERS",
    "validate_shape_order",
    "stencil_half_width",
    "required_ghost_nodes",
    "shape_factors",
    "shape_weights",
    # Mesh
    "Box",
    "LevelGeometry",
    "MeshContext",
    "FieldView",
    "CurrentView",
    # Gather
    "gather",
    "gather_fields",
    "gather_fields_kernel",
    # Pusher
    "push",
    "boris_push_relativistic",
    "push_photons",
    "lorentz_factor",
    # Deposition
    "deposit",
    "deposit_current",
    "deposit_current_kernel",
    "deposit_charge",
    "deposit_trajectory",
    # Boundaries
    "BOUNDARY_KINDS",
    "apply_periodic_bc",
    "apply_absorbing_bc",
    "apply_reflecting_bc",
    "flag_domain_violations",
    "find_migrants",
]
