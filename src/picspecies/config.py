"""Pydantic v2 configuration for a particle species.

Provides validated, typed configuration for the species constants, the
boundary handling of the physical domain and the evolve policy. Supports
JSON I/O.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from .constants import SPECIES

BoundaryKind = Literal["periodic", "absorbing", "reflecting", "none"]


class SpeciesKind(str, Enum):
    """Physics variant of a species."""

    PHYSICAL = "physical"
    RIGID_INJECTED = "rigid_injected"
    PHOTON = "photon"


class BoundaryConfig(BaseModel):
    """Particle boundary handling at the physical domain edges, per axis."""

    x: BoundaryKind = Field("none", description="Boundary kind along x")
    y: BoundaryKind = Field("none", description="Boundary kind along y")
    z: BoundaryKind = Field("none", description="Boundary kind along z")

    def per_axis(self) -> tuple[str, str, str]:
        return (self.x, self.y, self.z)

    @classmethod
    def all(cls, kind: BoundaryKind) -> BoundaryConfig:
        return cls(x=kind, y=kind, z=kind)


class EvolveConfig(BaseModel):
    """How a step is executed and how faults are reported."""

    fault_policy: Literal["raise", "aggregate"] = Field(
        "raise",
        description="'raise': first fault aborts the step; 'aggregate': collect and report",
    )
    n_workers: int = Field(1, ge=1, description="Threads processing boxes concurrently")
    n_chunks: int = Field(
        4, ge=1, description="Independent current accumulators per tile (reduction width)"
    )


class SpeciesConfig(BaseModel):
    """Top-level species configuration."""

    name: str = Field(..., min_length=1, description="Species name")
    kind: SpeciesKind = Field(SpeciesKind.PHYSICAL, description="Physics variant")
    charge: float = Field(..., description="Particle charge [C]")
    mass: float = Field(..., ge=0, description="Particle rest mass [kg]")
    relativistic: bool = Field(True, description="Use the Lorentz factor in the push")
    shape_order: int = Field(1, description="Interpolation order (0-3)")

    injection_plane: float | None = Field(
        None, description="Rigid-injected only: plane position along injection_axis [m]"
    )
    injection_axis: int = Field(2, ge=0, le=2, description="Axis normal to the injection plane")
    recompute_on_restart: bool | None = Field(
        None,
        description="Run the kind's restart hook after a reload (None = kind default)",
    )

    boundaries: BoundaryConfig = Field(default_factory=BoundaryConfig)
    evolve: EvolveConfig = Field(default_factory=EvolveConfig)

    @model_validator(mode="after")
    def check_kind_constants(self) -> SpeciesConfig:
        if self.kind == SpeciesKind.PHOTON:
            if self.charge != 0.0 or self.mass != 0.0:
                raise ValueError("photon species must have zero charge and mass")
        elif self.mass <= 0.0:
            raise ValueError(f"{self.kind.value} species needs a positive mass")
        if self.kind == SpeciesKind.RIGID_INJECTED and self.injection_plane is None:
            raise ValueError("rigid_injected species needs an injection_plane")
        return self

    @classmethod
    def from_database(cls, name: str, **overrides) -> SpeciesConfig:
        """Build a configuration from the constants database (e.g. 'e', 'p')."""
        if name not in SPECIES:
            raise ValueError(f"Unknown species: {name}")
        data = SPECIES[name]
        values = {"name": name, "charge": data.charge, "mass": data.mass}
        if name == "photon":
            values["kind"] = SpeciesKind.PHOTON
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_json(cls, text: str) -> SpeciesConfig:
        """Parse configuration from a JSON string."""
        return cls.model_validate_json(text)

    @classmethod
    def from_file(cls, path: str | Path) -> SpeciesConfig:
        """Load configuration from a JSON file."""
        path = Path(path)
        with path.open() as f:
            data = json.load(f)
        return cls(**data)

    def to_json(self, path: str | Path | None = None) -> str:
        """Serialize to JSON string, optionally writing to file."""
        out = self.model_dump_json(indent=2)
        if path is not None:
            Path(path).write_text(out)
        return out
