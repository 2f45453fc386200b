"""
Species Container and Level Coordinator

Owns the particle tiles of one species and advances them through a time
step:

    alloc_data()   -> one tile per owned (level, box) of the decomposition
    init_data()    -> external injection policy fills the tiles
    evolve()       -> gather -> push -> deposit -> boundaries -> migration list
    post_restart() -> reload tiles from a checkpoint representation

Lifecycle:

    UNINITIALIZED -> ALLOCATED -> POPULATED -> EVOLVING <-> RESTARTED

Physics variants are selected by SpeciesKind and dispatched through a
capability table instead of subclassing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .config import SpeciesConfig, SpeciesKind
from .errors import (
    STATUS_DOMAIN,
    STATUS_OK,
    STATUS_OVERFLOW,
    STATUS_STENCIL,
    DomainViolation,
    LifecycleError,
    NumericOverflow,
    RestartMismatch,
)
from .particles import TILE_FIELDS, ParticleTile
from .pic.boundaries import (
    apply_absorbing_bc,
    apply_periodic_bc,
    apply_reflecting_bc,
    find_migrants,
    flag_domain_violations,
)
from .pic.deposition import deposit_charge_kernel, deposit_current_kernel, deposit_current_serial
from .pic.gather import gather_fields_kernel, gather_fields_serial
from .pic.pusher import boris_push_relativistic, boris_push_serial, push_photons, push_photons_serial
from .pic.shape import required_ghost_nodes, validate_shape_order

logger = logging.getLogger(__name__)


class SpeciesState(Enum):
    UNINITIALIZED = "uninitialized"
    ALLOCATED = "allocated"
    POPULATED = "populated"
    EVOLVING = "evolving"
    RESTARTED = "restarted"


# ==================== STEP RESULTS ====================


@dataclass(frozen=True)
class MigrationRecord:
    """
    A particle that left its box's valid region during a step.

    Attributes:
        level: Refinement level
        src_box: Box that still stores the particle
        dst_box: Box of the same level containing the new position
            (-1 if no box of this level covers it)
        particle_index: Index in the source tile (valid until compaction)
        particle_id, cpu: Unique identity of the particle
    """

    level: int
    src_box: int
    dst_box: int
    particle_index: int
    particle_id: int
    cpu: int


@dataclass(frozen=True)
class ParticleFault:
    """A particle that could not be advanced; its state was rolled back."""

    kind: str
    level: int
    box_index: int
    particle_index: int
    particle_id: int
    position: tuple
    reason: str

    def to_exception(self, n_faults=1):
        message = (f"{self.reason} (particle id {self.particle_id}, box {self.box_index}, "
                   f"level {self.level}; {n_faults} fault(s) in step)")
        if self.kind == "NumericOverflow":
            return NumericOverflow(message, particle_id=self.particle_id)
        return DomainViolation(message, particle_id=self.particle_id,
                               position=np.asarray(self.position))


_FAULT_REASONS = {
    STATUS_DOMAIN: ("DomainViolation", "Particle left the physical domain without boundary handling"),
    STATUS_STENCIL: ("DomainViolation", "Particle stencil reaches beyond the ghost region of its box"),
    STATUS_OVERFLOW: ("NumericOverflow", "Non-finite momentum or Lorentz factor"),
}


@dataclass
class EvolveResult:
    """Outcome of evolve() on one level."""

    level: int
    n_pushed: int = 0
    n_absorbed: int = 0
    n_reflected: int = 0
    n_wrapped: int = 0
    migrations: list = field(default_factory=list)
    faults: list = field(default_factory=list)

    def merge(self, other):
        self.n_pushed += other.n_pushed
        self.n_absorbed += other.n_absorbed
        self.n_reflected += other.n_reflected
        self.n_wrapped += other.n_wrapped
        self.migrations.extend(other.migrations)
        self.faults.extend(other.faults)


# ==================== SPECIES CAPABILITIES ====================


@dataclass(frozen=True)
class KernelSet:
    """Tile kernels used by one evolve() call."""

    gather: Callable
    push: Callable
    push_photons: Callable
    deposit: Callable


# prange over the particles of a tile
PARALLEL_KERNELS = KernelSet(
    gather_fields_kernel, boris_push_relativistic, push_photons, deposit_current_kernel
)
# One thread per tile; used when boxes run in a thread pool
SERIAL_KERNELS = KernelSet(
    gather_fields_serial, boris_push_serial, push_photons_serial, deposit_current_serial
)


def _advance_physical(container, tile, E_p, B_p, status, dt, kernels):
    kernels.push(
        tile.x, tile.u, E_p, B_p, tile.active, status,
        container.charge, container.mass, dt, container.config.relativistic,
        tile.n_particles,
    )


def _advance_rigid_injected(container, tile, E_p, B_p, status, dt, kernels):
    """Particles behind the injection plane coast without feeling the fields."""
    n = tile.n_particles
    axis = container.config.injection_axis
    coasting = ~tile.injected[:n]
    E_p[coasting] = 0.0
    B_p[coasting] = 0.0
    _advance_physical(container, tile, E_p, B_p, status, dt, kernels)
    crossed = coasting & (tile.x[:n, axis] >= container.config.injection_plane) & (status == STATUS_OK)
    tile.injected[:n] |= crossed


def _advance_photon(container, tile, E_p, B_p, status, dt, kernels):
    kernels.push_photons(tile.x, tile.u, tile.active, status, dt, tile.n_particles)


def _injected_at(container, x):
    """Field-coupled flag of rigid-injected particles at positions x."""
    return x[:, container.config.injection_axis] >= container.config.injection_plane


def _rebuild_injected_flags(container):
    """
    Mark rigid-injected particles past the injection plane as injected.

    A particle that has crossed once stays injected, also when it later
    moves back behind the plane.
    """
    for tile in container.tiles.values():
        n = tile.n_particles
        tile.injected[:n] |= _injected_at(container, tile.x[:n])


@dataclass(frozen=True)
class SpeciesCapabilities:
    """
    What a species kind does in each container operation.

    Attributes:
        gathers_fields: Interpolate E and B before the push
        deposits_current: Scatter current after the push
        advance: Push function (container, tile, E_p, B_p, status, dt, kernels)
        rebuild_state: Optional hook recomputing per-particle kind state
            from positions; run after init_data and, when enabled, after
            post_restart
        recompute_on_restart: Default for SpeciesConfig.recompute_on_restart
    """

    gathers_fields: bool
    deposits_current: bool
    advance: Callable
    rebuild_state: Optional[Callable] = None
    recompute_on_restart: bool = False


CAPABILITIES = {
    SpeciesKind.PHYSICAL: SpeciesCapabilities(
        gathers_fields=True,
        deposits_current=True,
        advance=_advance_physical,
    ),
    SpeciesKind.RIGID_INJECTED: SpeciesCapabilities(
        gathers_fields=True,
        deposits_current=True,
        advance=_advance_rigid_injected,
        rebuild_state=_rebuild_injected_flags,
        recompute_on_restart=True,
    ),
    SpeciesKind.PHOTON: SpeciesCapabilities(
        gathers_fields=False,
        deposits_current=False,
        advance=_advance_photon,
    ),
}


# ==================== CONTAINER ====================


def _freeze(value):
    """Lists to tuples, recursively, so signatures survive a JSON round trip."""
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


class SpeciesContainer:
    """
    Per-box particle storage of one species and its time advance.

    Attributes:
        config: SpeciesConfig
        context: MeshContext describing levels and boxes
        order: Validated shape order
        capabilities: SpeciesCapabilities of the configured kind
        tiles: {(level, box_index): ParticleTile}
        state: SpeciesState
        cpu: Origin tag given to particles created here
    """

    def __init__(self, config: SpeciesConfig, context, cpu: int = 0):
        self.config = config
        self.context = context
        self.cpu = int(cpu)
        self._charge = float(config.charge)
        self._mass = float(config.mass)
        self.order = validate_shape_order(config.shape_order)
        self.capabilities = CAPABILITIES[config.kind]
        self.tiles = {}
        self.state = SpeciesState.UNINITIALIZED
        self._signature = None
        self._next_id = 1

    @property
    def name(self):
        return self.config.name

    @property
    def charge(self):
        return self._charge

    @property
    def mass(self):
        return self._mass

    def _require(self, operation, *states):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise LifecycleError(
                f"{operation}() needs state in ({allowed}), species '{self.name}' "
                f"is {self.state.value}"
            )

    def _tile(self, level, box_index):
        try:
            return self.tiles[(level, box_index)]
        except KeyError:
            raise ValueError(f"No tile for level {level}, box {box_index}") from None

    # -------------------- allocation --------------------

    def alloc_data(self, context=None):
        """
        Create one tile per owned (level, box) of the decomposition.

        Idempotent while the decomposition is unchanged. After a remesh the
        stored particles are re-binned into the new boxes by position.

        Args:
            context: Optional new MeshContext (after remeshing)
        """
        if context is not None:
            self.context = context
        signature = self.context.signature()
        if signature == self._signature and self.tiles.keys() == set(self._owned_keys()):
            logger.debug("alloc_data: decomposition unchanged for species '%s'", self.name)
            return

        self._check_ghosts()
        old_tiles = self.tiles
        self.tiles = {
            (level, b): ParticleTile(level, b) for level, b in self._owned_keys()
        }
        if any(t.n_particles for t in old_tiles.values()):
            self._rebin(old_tiles)
        self._signature = signature

        if self.state == SpeciesState.UNINITIALIZED:
            self.state = SpeciesState.ALLOCATED
        logger.info(
            "Allocated %d tiles on %d level(s) for species '%s'",
            len(self.tiles), len(self.context.levels), self.name,
        )

    def _owned_keys(self):
        keys = []
        for level in range(len(self.context.levels)):
            keys.extend((level, b) for b in self.context.owned_boxes(level))
        return keys

    def _check_ghosts(self):
        need = required_ghost_nodes(self.order)
        for geom in self.context.levels:
            for box in geom.boxes:
                if box.n_ghost < need:
                    raise ValueError(
                        f"Shape order {self.order} needs {need} ghost nodes, "
                        f"box {box} on level {geom.level} has {box.n_ghost}"
                    )

    def _rebin(self, old_tiles):
        n_orphans = 0
        for tile in old_tiles.values():
            if tile.level >= len(self.context.levels):
                logger.warning("Dropping %d particles of removed level %d",
                               tile.n_particles, tile.level)
                continue
            geom = self.context.geometry(tile.level)
            owned = self.context.owned_boxes(tile.level)
            if not owned:
                logger.warning("Dropping %d particles of level %d, which owns no boxes",
                               tile.n_particles, tile.level)
                continue
            data = tile.as_dict()

            destinations = np.empty(tile.n_particles, dtype=np.int64)
            for i in range(tile.n_particles):
                b = geom.find_box(data["x"][i])
                if b not in owned:
                    b = geom.nearest_box(data["x"][i], candidates=owned)
                    n_orphans += 1
                destinations[i] = b

            for b in np.unique(destinations):
                idx = np.nonzero(destinations == b)[0]
                dst = self.tiles[(tile.level, int(b))]
                new = dst.add_particles(data["x"][idx], data["u"][idx], data["weight"][idx],
                                        data["ids"][idx], data["cpu"][idx])
                dst.active[new] = data["active"][idx]
                dst.injected[new] = data["injected"][idx]

        if n_orphans:
            logger.warning("%d particles outside every owned box were kept in the nearest box",
                           n_orphans)

    # -------------------- population --------------------

    def init_data(self, injector):
        """
        Populate the tiles with an external injection policy.

        Args:
            injector: Callable receiving this container; adds particles with
                add_particles()
        """
        self._require("init_data", SpeciesState.ALLOCATED)
        injector(self)
        if self.capabilities.rebuild_state is not None:
            self.capabilities.rebuild_state(self)
        self.state = SpeciesState.POPULATED
        logger.info("Species '%s' populated with %d particles", self.name, self.total_particles())

    def add_particles(self, level, box_index, x, u, weight, ids=None, cpu=None):
        """
        Add particles to one tile.

        Args:
            level, box_index: Destination tile
            x: Positions [n, 3] [m]
            u: Momenta per unit mass [n, 3] [m/s]
            weight: Weights, scalar or [n]
            ids: Optional particle ids [n] (default: next free ids)
            cpu: Optional origin tag (default: this container's cpu)

        Returns:
            indices: Indices of the new particles in the tile
        """
        if self.state == SpeciesState.UNINITIALIZED:
            raise LifecycleError("add_particles() needs alloc_data() first")
        tile = self._tile(level, box_index)
        n_add = np.atleast_2d(x).shape[0]
        if ids is None:
            ids = np.arange(self._next_id, self._next_id + n_add, dtype=np.int64)
        else:
            ids = np.asarray(ids, dtype=np.int64)
        if n_add:
            self._next_id = max(self._next_id, int(np.max(ids)) + 1)
        idx = tile.add_particles(x, u, weight, ids, self.cpu if cpu is None else cpu)
        if self.config.kind == SpeciesKind.RIGID_INJECTED:
            tile.injected[idx] = _injected_at(self, tile.x[idx])
        return idx

    def total_particles(self):
        return sum(t.count_active() for t in self.tiles.values())

    def remove_inactive(self):
        """Compact all tiles (invalidates particle indices of migration records)."""
        for tile in self.tiles.values():
            tile.remove_inactive()

    # -------------------- time advance --------------------

    def evolve(self, level, fields, currents, dt):
        """
        Advance every particle of the owned boxes of a level by one step.

        Args:
            level: Refinement level
            fields: {box_index: FieldView} for the owned boxes
            currents: {box_index: CurrentView} for the owned boxes,
                zeroed by the caller before the first deposition of the step
            dt: Timestep [s]

        Returns:
            EvolveResult with migration list, counters and collected faults

        Raises:
            DomainViolation, NumericOverflow: With fault_policy "raise"
        """
        self._require("evolve", SpeciesState.POPULATED, SpeciesState.EVOLVING,
                      SpeciesState.RESTARTED)
        if not (np.isfinite(dt) and dt > 0.0):
            raise ValueError(f"dt must be positive and finite, got {dt}")

        geom = self.context.geometry(level)
        boxes = self.context.owned_boxes(level)
        for b in boxes:
            if b not in fields or b not in currents:
                raise ValueError(f"Missing field or current view for box {b} on level {level}")
            if fields[b].box != geom.boxes[b] or currents[b].box != geom.boxes[b]:
                raise ValueError(f"Views for box {b} do not match the level geometry")
            if currents[b].aliases(fields[b]):
                raise ValueError(f"Current arrays of box {b} alias its field arrays")

        self.state = SpeciesState.EVOLVING
        policy = self.config.evolve.fault_policy
        n_workers = self.config.evolve.n_workers
        result = EvolveResult(level=level)

        if n_workers > 1 and len(boxes) > 1:
            with ThreadPoolExecutor(max_workers=n_workers) as pool:
                futures = [
                    pool.submit(self._evolve_box, level, b, fields[b], currents[b], dt,
                                SERIAL_KERNELS)
                    for b in boxes
                ]
                box_results = [f.result() for f in futures]
        else:
            box_results = []
            for b in boxes:
                box_result = self._evolve_box(level, b, fields[b], currents[b], dt,
                                              PARALLEL_KERNELS)
                box_results.append(box_result)
                if policy == "raise" and box_result.faults:
                    break

        for box_result in box_results:
            result.merge(box_result)

        if result.faults:
            if policy == "raise":
                raise result.faults[0].to_exception(len(result.faults))
            for fault in result.faults:
                logger.warning("%s: %s (particle id %d, box %d)", fault.kind, fault.reason,
                               fault.particle_id, fault.box_index)

        logger.debug(
            "Species '%s' level %d: pushed=%d migrated=%d absorbed=%d faults=%d",
            self.name, level, result.n_pushed, len(result.migrations),
            result.n_absorbed, len(result.faults),
        )
        return result

    def _evolve_box(self, level, box_index, fields, currents, dt, kernels):
        tile = self.tiles[(level, box_index)]
        result = EvolveResult(level=level)
        n = tile.n_particles
        if n == 0:
            return result

        geom = self.context.geometry(level)
        origin = geom.array_origin(box_index)
        dx = geom.dx
        caps = self.capabilities

        status = np.zeros(n, dtype=np.int8)
        x_old = tile.x[:n].copy()
        u_old = tile.u[:n].copy()
        injected_old = tile.injected[:n].copy()
        E_p = np.zeros((n, 3), dtype=np.float64)
        B_p = np.zeros((n, 3), dtype=np.float64)

        # 1. Gather
        if caps.gathers_fields:
            kernels.gather(
                tile.x, tile.active, status, *fields.components,
                origin, 1.0 / dx, self.order, E_p, B_p, n,
            )

        # 2. Push
        caps.advance(self, tile, E_p, B_p, status, dt, kernels)

        # 3. Leaving the domain where no boundary applies
        boundaries = self.config.boundaries.per_axis()
        for axis, kind in enumerate(boundaries):
            if kind == "none":
                flag_domain_violations(tile.x, tile.active, status, axis,
                                       geom.prob_lo[axis], geom.prob_hi[axis], n)

        # 4. Deposit (unmodified trajectory)
        if caps.deposits_current and self.charge != 0.0:
            n_chunks = max(1, min(self.config.evolve.n_chunks, n))
            local = np.zeros((n_chunks, 3) + fields.box.shape, dtype=np.float64)
            kernels.deposit(
                x_old, tile.x, tile.weight, tile.active, status, self.charge, dt,
                self.order, origin, dx, n, local,
            )
            currents.accumulate(local.sum(axis=0))

        # 5. Roll back faulted particles
        faulted = np.nonzero((status != STATUS_OK) & tile.active[:n])[0]
        for i in faulted:
            kind, reason = _FAULT_REASONS[int(status[i])]
            result.faults.append(ParticleFault(
                kind=kind, level=level, box_index=box_index, particle_index=int(i),
                particle_id=int(tile.ids[i]), position=tuple(tile.x[i].tolist()),
                reason=reason,
            ))
        tile.x[faulted] = x_old[faulted]
        tile.u[faulted] = u_old[faulted]
        tile.injected[faulted] = injected_old[faulted]

        result.n_pushed = int(np.sum(tile.active[:n] & (status == STATUS_OK)))

        # 6. Boundary handling
        for axis, kind in enumerate(boundaries):
            lo, hi = geom.prob_lo[axis], geom.prob_hi[axis]
            if kind == "periodic":
                result.n_wrapped += apply_periodic_bc(tile.x, tile.active, status, axis, lo, hi, n)
            elif kind == "absorbing":
                result.n_absorbed += apply_absorbing_bc(tile.x, tile.active, status, axis, lo, hi, n)
            elif kind == "reflecting":
                result.n_reflected += apply_reflecting_bc(
                    tile.x, tile.u, tile.active, status, axis, lo, hi, n
                )

        # 7. Migration list (executed by the surrounding container)
        box_lo, box_hi = geom.box_bounds(box_index)
        for i in find_migrants(tile.x, tile.active, status, box_lo, box_hi, n):
            result.migrations.append(MigrationRecord(
                level=level, src_box=box_index, dst_box=geom.find_box(tile.x[i]),
                particle_index=int(i), particle_id=int(tile.ids[i]), cpu=int(tile.cpu[i]),
            ))

        return result

    # -------------------- charge density --------------------

    def deposit_charge(self, level, rho):
        """
        Deposit the nodal charge density of a level.

        Args:
            level: Refinement level
            rho: {box_index: array of box.shape} receiving the density
                [C/m^3] (added to)

        Returns:
            n_skipped: Particles whose stencil left their box arrays
        """
        geom = self.context.geometry(level)
        n_skipped = 0
        for b in self.context.owned_boxes(level):
            tile = self.tiles[(level, b)]
            n_skipped += deposit_charge_kernel(
                tile.x, tile.weight, tile.active, self.charge, self.order,
                geom.array_origin(b), geom.dx, rho[b], tile.n_particles,
            )
        return n_skipped

    # -------------------- restart --------------------

    def checkpoint_state(self):
        """
        In-memory checkpoint representation of the particle state.

        Returns:
            snapshot: dict with species name, decomposition signature,
                next id and {(level, box): tile arrays}
        """
        if self.state == SpeciesState.UNINITIALIZED:
            raise LifecycleError("checkpoint_state() needs alloc_data() first")
        return {
            "species": self.name,
            "kind": self.config.kind.value,
            "decomposition": self._signature,
            "next_id": self._next_id,
            "tiles": {key: tile.as_dict() for key, tile in self.tiles.items()},
        }

    def post_restart(self, snapshot):
        """
        Reload particle state from a checkpoint representation.

        The snapshot must match the current decomposition. Whether the
        species kind recomputes derived per-particle state afterwards is
        decided by SpeciesConfig.recompute_on_restart (None: kind default).

        Raises:
            LifecycleError: If alloc_data() has not run
            RestartMismatch: If the snapshot does not fit the decomposition
        """
        if self.state == SpeciesState.UNINITIALIZED:
            raise LifecycleError("post_restart() needs alloc_data() first")
        if snapshot.get("species") != self.name:
            raise RestartMismatch(
                f"Checkpoint is for species '{snapshot.get('species')}', not '{self.name}'"
            )
        if _freeze(snapshot.get("decomposition")) != _freeze(self._signature):
            raise RestartMismatch("Checkpoint decomposition differs from the current one")

        tiles = {tuple(key): data for key, data in snapshot["tiles"].items()}
        unknown = set(tiles) - set(self.tiles)
        if unknown:
            raise RestartMismatch(f"Checkpoint holds tiles not owned here: {sorted(unknown)}")
        for key, data in tiles.items():
            self._check_restart_tile(key, data)

        empty = ParticleTile().as_dict()
        for key, tile in self.tiles.items():
            tile.load(tiles.get(key, empty))
        self._next_id = max(
            int(snapshot.get("next_id", 1)),
            max((int(np.max(t.ids[:t.n_particles])) + 1
                 for t in self.tiles.values() if t.n_particles), default=1),
        )

        recompute = self.config.recompute_on_restart
        if recompute is None:
            recompute = self.capabilities.recompute_on_restart
        if recompute and self.capabilities.rebuild_state is not None:
            self.capabilities.rebuild_state(self)
            logger.info("Recomputed %s state of species '%s' after restart",
                        self.config.kind.value, self.name)

        self.state = SpeciesState.RESTARTED
        logger.info("Species '%s' restarted with %d particles", self.name, self.total_particles())

    def _check_restart_tile(self, key, data):
        level, b = key
        missing = [name for name in TILE_FIELDS if name not in data]
        if missing:
            raise RestartMismatch(f"Checkpoint tile {key} is missing fields {missing}")
        if np.any(~(np.asarray(data["weight"], dtype=np.float64) > 0)):
            raise RestartMismatch(f"Checkpoint tile {key} holds non-positive weights")
        geom = self.context.geometry(level)
        box = geom.boxes[b]
        lo = geom.array_origin(b)
        hi = lo + (np.asarray(box.shape) - 1) * geom.dx
        x = np.asarray(data["x"], dtype=np.float64).reshape(-1, 3)
        active = np.asarray(data["active"], dtype=bool)
        outside = np.any((x < lo) | (x > hi), axis=1) & active
        if np.any(outside):
            raise RestartMismatch(
                f"{int(np.sum(outside))} checkpointed particles lie outside box {b} "
                f"of level {level}"
            )

    def __repr__(self):
        return (f"SpeciesContainer(name='{self.name}', kind={self.config.kind.value}, "
                f"state={self.state.value}, tiles={len(self.tiles)}, "
                f"particles={self.total_particles()})")
