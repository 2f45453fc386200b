"""
Mesh Context, Boxes and Grid Views for the Particle Core

Grid layout (per dimension, box of 3 cells with 2 ghost nodes):

    Array node:  0   1   2   3   4   5   6   7   8
                 g   g   |   |   |   |   g   g
    Box node:           lo          hi

- E, B and rho are nodal.
- j_d[i, j, k] lives on the d-edge between node i and node i+1 along d,
  which is where the continuity equation closes exactly.

Design:
- No global mesh handle: a MeshContext value is passed into every operation.
- FieldView holds read-only arrays; CurrentView holds the caller's writable
  arrays and is only ever added to.
"""

from dataclasses import dataclass, field

import numpy as np


# ==================== BOXES ====================


@dataclass(frozen=True)
class Box:
    """
    Index-space subdomain of one refinement level.

    Attributes:
        lo: First cell index per dimension (inclusive)
        hi: Last cell index per dimension (exclusive)
        n_ghost: Ghost nodes on every side of the nodal arrays
    """

    lo: tuple
    hi: tuple
    n_ghost: int = 3

    def __post_init__(self):
        object.__setattr__(self, "lo", tuple(int(v) for v in self.lo))
        object.__setattr__(self, "hi", tuple(int(v) for v in self.hi))
        if len(self.lo) != 3 or len(self.hi) != 3:
            raise ValueError(f"Box needs 3D indices, got lo={self.lo}, hi={self.hi}")
        if any(h <= l for l, h in zip(self.lo, self.hi)):
            raise ValueError(f"Empty box: lo={self.lo}, hi={self.hi}")
        if self.n_ghost < 0:
            raise ValueError(f"n_ghost must be >= 0, got {self.n_ghost}")

    @property
    def n_cells(self):
        return tuple(h - l for l, h in zip(self.lo, self.hi))

    @property
    def shape(self):
        """Shape of the nodal arrays including ghost nodes."""
        return tuple(n + 1 + 2 * self.n_ghost for n in self.n_cells)


# ==================== LEVEL GEOMETRY ====================


class LevelGeometry:
    """
    Geometry and box layout of one refinement level.

    Attributes:
        level: Refinement level index
        prob_lo: Physical domain lower corner [3] [m]
        prob_hi: Physical domain upper corner [3] [m]
        n_cells: Domain size in cells [3]
        dx: Cell size [3] [m]
        boxes: List of Box covering (part of) the domain
    """

    def __init__(self, level, prob_lo, prob_hi, n_cells, boxes):
        self.level = int(level)
        self.prob_lo = np.asarray(prob_lo, dtype=np.float64)
        self.prob_hi = np.asarray(prob_hi, dtype=np.float64)
        self.n_cells = tuple(int(n) for n in n_cells)
        self.boxes = list(boxes)

        if self.prob_lo.shape != (3,) or self.prob_hi.shape != (3,):
            raise ValueError("prob_lo and prob_hi must have 3 components")
        if np.any(self.prob_hi <= self.prob_lo):
            raise ValueError("prob_hi must exceed prob_lo in every dimension")

        self.dx = (self.prob_hi - self.prob_lo) / np.asarray(self.n_cells, dtype=np.float64)

        for box in self.boxes:
            if any(l < 0 or h > n for l, h, n in zip(box.lo, box.hi, self.n_cells)):
                raise ValueError(f"{box} extends beyond the level domain {self.n_cells}")

    @property
    def cell_volume(self):
        return float(np.prod(self.dx))

    def box_bounds(self, box_index):
        """
        Physical bounds of a box (valid region, no ghosts).

        Returns:
            lo, hi: Arrays [3] [m]
        """
        box = self.boxes[box_index]
        lo = self.prob_lo + np.asarray(box.lo) * self.dx
        hi = self.prob_lo + np.asarray(box.hi) * self.dx
        return lo, hi

    def array_origin(self, box_index):
        """Physical position of array node (0, 0, 0) of a box, ghosts included [m]."""
        box = self.boxes[box_index]
        return self.prob_lo + (np.asarray(box.lo) - box.n_ghost) * self.dx

    def find_box(self, position):
        """
        Index of the box whose valid region contains a position.

        Args:
            position: [3] [m]

        Returns:
            box_index: Box index, or -1 if no box of this level contains it
        """
        position = np.asarray(position, dtype=np.float64)
        cell = np.floor((position - self.prob_lo) / self.dx).astype(np.int64)
        for b, box in enumerate(self.boxes):
            if all(box.lo[d] <= cell[d] < box.hi[d] for d in range(3)):
                return b
        return -1

    def nearest_box(self, position, candidates=None):
        """Index of the box (among `candidates`) whose valid region is closest to a position."""
        position = np.asarray(position, dtype=np.float64)
        if candidates is None:
            candidates = range(len(self.boxes))
        best, best_dist = -1, np.inf
        for b in candidates:
            lo, hi = self.box_bounds(b)
            gap = np.maximum(np.maximum(lo - position, position - hi), 0.0)
            dist = float(np.sum(gap**2))
            if dist < best_dist:
                best, best_dist = b, dist
        return best

    def signature(self):
        """Hashable description of the layout, used to detect remeshing."""
        return (
            self.level,
            tuple(self.prob_lo.tolist()),
            tuple(self.prob_hi.tolist()),
            self.n_cells,
            tuple((b.lo, b.hi, b.n_ghost) for b in self.boxes),
        )

    def __repr__(self):
        return (
            f"LevelGeometry(level={self.level}, n_cells={self.n_cells}, "
            f"n_boxes={len(self.boxes)})"
        )


# ==================== MESH CONTEXT ====================


@dataclass
class MeshContext:
    """
    Explicit mesh context handed to every container operation.

    Attributes:
        levels: LevelGeometry per refinement level
        owned: Optional {level: [box indices]} owned by this process;
            levels missing from the map own all their boxes
    """

    levels: list
    owned: dict = field(default_factory=dict)

    def geometry(self, level):
        if level < 0 or level >= len(self.levels):
            raise ValueError(f"Level {level} not in context ({len(self.levels)} levels)")
        return self.levels[level]

    def owned_boxes(self, level):
        geom = self.geometry(level)
        if level in self.owned:
            return list(self.owned[level])
        return list(range(len(geom.boxes)))

    def signature(self):
        return tuple(g.signature() for g in self.levels)

    @classmethod
    def single_box(cls, prob_lo, prob_hi, n_cells, n_ghost=3):
        """Context with one level covered by a single box."""
        box = Box(lo=(0, 0, 0), hi=tuple(n_cells), n_ghost=n_ghost)
        return cls(levels=[LevelGeometry(0, prob_lo, prob_hi, n_cells, [box])])


# ==================== GRID VIEWS ====================


def _read_only(array, shape, name):
    view = np.asarray(array, dtype=np.float64).view()
    if view.shape != shape:
        raise ValueError(f"{name} has shape {view.shape}, expected {shape}")
    view.flags.writeable = False
    return view


class FieldView:
    """
    Read-only nodal E and B arrays of one box, ghosts already filled.

    Attributes:
        box: Box the arrays belong to
        Ex, Ey, Ez: Electric field [shape] [V/m] (read-only)
        Bx, By, Bz: Magnetic field [shape] [T] (read-only)
    """

    def __init__(self, box, Ex, Ey, Ez, Bx, By, Bz):
        self.box = box
        shape = box.shape
        self.Ex = _read_only(Ex, shape, "Ex")
        self.Ey = _read_only(Ey, shape, "Ey")
        self.Ez = _read_only(Ez, shape, "Ez")
        self.Bx = _read_only(Bx, shape, "Bx")
        self.By = _read_only(By, shape, "By")
        self.Bz = _read_only(Bz, shape, "Bz")

    @property
    def components(self):
        return (self.Ex, self.Ey, self.Ez, self.Bx, self.By, self.Bz)

    @classmethod
    def uniform(cls, box, E=(0.0, 0.0, 0.0), B=(0.0, 0.0, 0.0)):
        """Spatially uniform fields (tests and simple drivers)."""
        shape = box.shape
        arrays = [np.full(shape, float(v)) for v in tuple(E) + tuple(B)]
        return cls(box, *arrays)


class CurrentView:
    """
    Additive target for the current density of one box.

    The arrays are the caller's memory and must be zeroed by the caller
    before the first deposition of a step.

    Attributes:
        box: Box the arrays belong to
        jx, jy, jz: Edge-centred current density [shape] [A/m^2]
    """

    def __init__(self, box, jx, jy, jz):
        self.box = box
        shape = box.shape
        for name, arr in (("jx", jx), ("jy", jy), ("jz", jz)):
            if not isinstance(arr, np.ndarray) or arr.dtype != np.float64:
                raise TypeError(f"{name} must be a float64 numpy array")
            if arr.shape != shape:
                raise ValueError(f"{name} has shape {arr.shape}, expected {shape}")
            if not arr.flags.writeable:
                raise ValueError(f"{name} is read-only and cannot receive current")
        if (np.shares_memory(jx, jy) or np.shares_memory(jy, jz)
                or np.shares_memory(jx, jz)):
            raise ValueError("Current components must not share memory")
        self.jx = jx
        self.jy = jy
        self.jz = jz

    @property
    def components(self):
        return (self.jx, self.jy, self.jz)

    def accumulate(self, contribution):
        """
        Add a [3, *shape] contribution to the current arrays.

        Args:
            contribution: Array of shape (3,) + box.shape
        """
        self.jx += contribution[0]
        self.jy += contribution[1]
        self.jz += contribution[2]

    def aliases(self, fields):
        """True if any current array shares memory with a field array."""
        return any(
            np.shares_memory(j, f) for j in self.components for f in fields.components
        )

    @classmethod
    def zeros(cls, box):
        shape = box.shape
        return cls(box, np.zeros(shape), np.zeros(shape), np.zeros(shape))
