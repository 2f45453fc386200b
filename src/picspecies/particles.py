"""
Particle Tile: Structure-of-Arrays Storage for One Box

Uses Structure-of-Arrays (SoA) layout for cache efficiency and Numba performance.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

TILE_FIELDS = ("x", "u", "weight", "ids", "cpu", "active", "injected")


class ParticleTile:
    """
    Particles of one species in one box at one refinement level.

    Each property is stored in a separate array so the numba kernels can
    stream over positions without touching momenta and vice versa.

    Attributes:
        x: Position vectors [capacity, 3] in meters
        u: Proper momentum per unit rest mass [capacity, 3] in m/s
        weight: Macro-particle weight (number of real particles represented)
        ids: Unique particle id (unique together with cpu)
        cpu: Origin tag (process that created the particle)
        active: Boolean mask for active particles
        injected: Field-coupled flag (rigid-injected species only)
        n_particles: Number of stored particles (active or not)
        level, box_index: Owning level and box
    """

    def __init__(self, level=0, box_index=0, capacity=64):
        self.level = int(level)
        self.box_index = int(box_index)
        self.n_particles = 0
        self._allocate(max(int(capacity), 1))

    def _allocate(self, capacity):
        self.x = np.zeros((capacity, 3), dtype=np.float64)  # Position [m]
        self.u = np.zeros((capacity, 3), dtype=np.float64)  # Momentum/mass [m/s]
        self.weight = np.ones(capacity, dtype=np.float64)
        self.ids = np.zeros(capacity, dtype=np.int64)
        self.cpu = np.zeros(capacity, dtype=np.int32)
        self.active = np.zeros(capacity, dtype=np.bool_)
        self.injected = np.ones(capacity, dtype=np.bool_)

    @property
    def capacity(self):
        return self.x.shape[0]

    def reserve(self, capacity):
        """Grow the arrays to hold at least `capacity` particles."""
        if capacity <= self.capacity:
            return
        new_capacity = max(capacity, 2 * self.capacity)
        n = self.n_particles
        old = {name: getattr(self, name)[:n].copy() for name in TILE_FIELDS}
        self._allocate(new_capacity)
        for name, values in old.items():
            getattr(self, name)[:n] = values

    def add_particles(self, x, u, weight, ids, cpu=0):
        """
        Append particles to the tile.

        Args:
            x: Positions, shape (n, 3) or (3,) [m]
            u: Momenta per unit mass, shape (n, 3) or (3,) [m/s]
            weight: Weights, scalar or shape (n,)
            ids: Particle ids, shape (n,)
            cpu: Origin tag, scalar or shape (n,)

        Returns:
            indices: Array indices of added particles

        Raises:
            ValueError: If shapes disagree or a weight is not positive
        """
        x = np.atleast_2d(np.asarray(x, dtype=np.float64))
        u = np.atleast_2d(np.asarray(u, dtype=np.float64))
        n_add = x.shape[0]

        if x.shape != (n_add, 3) or u.shape != (n_add, 3):
            raise ValueError(f"Expected positions and momenta of shape ({n_add}, 3)")

        weight = np.broadcast_to(np.asarray(weight, dtype=np.float64), (n_add,))
        if np.any(~(weight > 0)):
            raise ValueError("Particle weights must be positive")
        ids = np.broadcast_to(np.asarray(ids, dtype=np.int64), (n_add,))
        cpu = np.broadcast_to(np.asarray(cpu, dtype=np.int32), (n_add,))

        start_idx = self.n_particles
        end_idx = start_idx + n_add
        self.reserve(end_idx)

        self.x[start_idx:end_idx] = x
        self.u[start_idx:end_idx] = u
        self.weight[start_idx:end_idx] = weight
        self.ids[start_idx:end_idx] = ids
        self.cpu[start_idx:end_idx] = cpu
        self.active[start_idx:end_idx] = True
        self.injected[start_idx:end_idx] = True

        self.n_particles = end_idx

        return np.arange(start_idx, end_idx)

    def remove_inactive(self):
        """
        Compact the arrays by removing inactive particles.

        This is O(n) and invalidates particle indices (ids stay valid).
        """
        if self.n_particles == 0:
            return

        active_mask = self.active[:self.n_particles].copy()
        n_active = int(np.sum(active_mask))

        for name in TILE_FIELDS:
            arr = getattr(self, name)
            arr[:n_active] = arr[:self.n_particles][active_mask]
        self.active[n_active:self.n_particles] = False

        self.n_particles = n_active

    def take(self, indices):
        """Copy the selected particles into a dict of arrays."""
        return {name: getattr(self, name)[indices].copy() for name in TILE_FIELDS}

    def as_dict(self):
        """Arrays of all stored particles (checkpoint representation)."""
        return self.take(np.arange(self.n_particles))

    def load(self, data):
        """
        Replace the tile content with arrays from `as_dict`.

        Raises:
            ValueError: If a field is missing, the arrays disagree in length
                or a weight is not positive
        """
        missing = [name for name in TILE_FIELDS if name not in data]
        if missing:
            raise ValueError(f"Checkpoint is missing fields {missing}")
        n = len(data["weight"])
        for name in TILE_FIELDS:
            if len(data[name]) != n:
                raise ValueError(f"Checkpoint field '{name}' has {len(data[name])} entries, expected {n}")
        if np.any(~(np.asarray(data["weight"], dtype=np.float64) > 0)):
            raise ValueError("Particle weights must be positive")
        self.n_particles = 0
        self.reserve(n)
        for name in TILE_FIELDS:
            getattr(self, name)[:n] = data[name]
        self.n_particles = n

    def count_active(self):
        return int(np.sum(self.active[:self.n_particles]))

    def momentum(self, mass):
        """
        Total momentum of all active particles.

        Returns:
            p: Momentum vector [px, py, pz] in kg·m/s
        """
        n = self.n_particles
        mask = self.active[:n]
        return mass * np.sum(self.u[:n][mask] * self.weight[:n][mask, None], axis=0)

    def __repr__(self):
        return (f"ParticleTile(level={self.level}, box={self.box_index}, "
                f"n_particles={self.n_particles}, active={self.count_active()}, "
                f"capacity={self.capacity})")

    def __len__(self):
        """Return number of particles (including inactive)."""
        return self.n_particles


# ==================== HELPER FUNCTIONS ====================


def sample_thermal_momentum(u_th, n_samples, rng=None):
    """
    Sample momenta per unit mass from an isotropic Gaussian.

    Args:
        u_th: Thermal spread per component [m/s]
        n_samples: Number of samples
        rng: Optional numpy Generator

    Returns:
        u: Momentum array of shape (n_samples, 3) in m/s
    """
    rng = np.random.default_rng() if rng is None else rng
    return rng.normal(0.0, u_th, size=(n_samples, 3))


def uniform_injector(particles_per_box, u_th=0.0, u_drift=(0.0, 0.0, 0.0),
                     weight=1.0, level=0, seed=None):
    """
    Injection policy placing particles uniformly in every owned box.

    Args:
        particles_per_box: Particles per box
        u_th: Thermal spread of the momentum [m/s]
        u_drift: Drift momentum per unit mass [3] [m/s]
        weight: Macro-particle weight
        level: Level to populate
        seed: Random seed

    Returns:
        injector: Callable taking a SpeciesContainer
    """
    rng = np.random.default_rng(seed)

    def inject(container):
        geom = container.context.geometry(level)
        for b in container.context.owned_boxes(level):
            lo, hi = geom.box_bounds(b)
            x = lo + rng.random((particles_per_box, 3)) * (hi - lo)
            u = sample_thermal_momentum(u_th, particles_per_box, rng) + np.asarray(u_drift)
            container.add_particles(level, b, x, u, weight)
        logger.debug("Injected %d particles per box on level %d", particles_per_box, level)

    return inject
