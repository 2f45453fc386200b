"""
Fault Kinds Raised by the Particle Core

Migration of a particle into a neighbouring box is not a fault; it is
reported through ``EvolveResult.migrations``.
"""


class PICError(Exception):
    """Base class for all particle-core faults."""


class DomainViolation(PICError):
    """
    Particle left the physical domain through a side with no boundary
    handling, or its stencil reached beyond the ghost region of its box.

    Attributes:
        particle_id: Id of the offending particle (None if unknown)
        position: Position after the push [m]
    """

    def __init__(self, message, particle_id=None, position=None):
        super().__init__(message)
        self.particle_id = particle_id
        self.position = position


class ShapeOrderUnsupported(PICError):
    """Configured interpolation order is not implemented (setup-time only)."""

    def __init__(self, order):
        super().__init__(
            f"Shape order {order} is not supported (expected one of 0, 1, 2, 3)"
        )
        self.order = order


class NumericOverflow(PICError):
    """
    Momentum or Lorentz factor became non-finite during a push.

    Attributes:
        particle_id: Id of the offending particle (None if unknown)
    """

    def __init__(self, message, particle_id=None):
        super().__init__(message)
        self.particle_id = particle_id


class LifecycleError(PICError):
    """Operation called while the container is in the wrong state."""


class RestartMismatch(PICError):
    """Checkpoint representation does not match the current decomposition."""


# ==================== KERNEL STATUS CODES ====================

# Per-particle status written by the numba kernels; 0 means the particle
# was processed normally.
STATUS_OK = 0
STATUS_DOMAIN = 1  # left the physical domain with no boundary handling
STATUS_OVERFLOW = 2  # non-finite momentum or gamma
STATUS_STENCIL = 3  # interpolation stencil beyond the ghost region
