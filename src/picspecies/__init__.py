"""
picspecies: Particle Species Core for Particle-in-Cell Simulation

Field gather, relativistic push and charge-conserving current deposition
for one particle species, organized in per-box particle tiles on a
refined, box-decomposed 3D mesh.
"""

__version__ = "0.1.0"

from .config import SpeciesConfig, SpeciesKind, BoundaryConfig, EvolveConfig
from .errors import (
    PICError,
    DomainViolation,
    ShapeOrderUnsupported,
    NumericOverflow,
    LifecycleError,
    RestartMismatch,
)
from .particles import ParticleTile, uniform_injector
from .pic.mesh import Box, LevelGeometry, MeshContext, FieldView, CurrentView
from .species import (
    SpeciesContainer,
    SpeciesState,
    SpeciesCapabilities,
    EvolveResult,
    MigrationRecord,
    ParticleFault,
)

__all__ = [
    "SpeciesConfig",
    "SpeciesKind",
    "BoundaryConfig",
    "EvolveConfig",
    "PICError",
    "DomainViolation",
    "ShapeOrderUnsupported",
    "NumericOverflow",
    "LifecycleError",
    "RestartMismatch",
    "ParticleTile",
    "uniform_injector",
    "Box",
    "LevelGeometry",
    "MeshContext",
    "FieldView",
    "CurrentView",
    "SpeciesContainer",
    "SpeciesState",
    "SpeciesCapabilities",
    "EvolveResult",
    "MigrationRecord",
    "ParticleFault",
]
