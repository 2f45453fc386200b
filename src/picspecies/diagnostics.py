"""
Diagnostic utilities for the particle species core.

- Charge continuity residual of a deposited step
- Kinetic energy and momentum totals of a species
- Time series tracking with CSV export and plots
"""

import csv
import logging

import numpy as np
from numba import njit

from .constants import c

logger = logging.getLogger(__name__)


def continuity_residual(rho_old, rho_new, jx, jy, jz, dx, dt):
    """
    Node-wise residual of the discrete continuity equation.

        (rho_new - rho_old)/dt + (jx[i] - jx[i-1])/dx + ... = 0

    with j_d[i] living on the edge between nodes i and i+1 along d.

    Args:
        rho_old, rho_new: Nodal charge density before/after the step [C/m^3]
        jx, jy, jz: Edge current density deposited during the step [A/m^2]
        dx: Cell size [3] [m]
        dt: Timestep [s]

    Returns:
        residual: Array of the nodal shape [C/(m^3 s)]
    """
    div_j = (np.diff(jx, axis=0, prepend=0.0) / dx[0]
             + np.diff(jy, axis=1, prepend=0.0) / dx[1]
             + np.diff(jz, axis=2, prepend=0.0) / dx[2])
    return (rho_new - rho_old) / dt + div_j


def relative_continuity_error(rho_old, rho_new, jx, jy, jz, dx, dt):
    """Max |residual| normalized by max |d rho/dt| (0 if nothing moved)."""
    residual = continuity_residual(rho_old, rho_new, jx, jy, jz, dx, dt)
    scale = np.max(np.abs(rho_new - rho_old)) / dt
    if scale == 0.0:
        return float(np.max(np.abs(residual)))
    return float(np.max(np.abs(residual)) / scale)


@njit
def _kinetic_energy_kernel(u, weight, active, n_particles, relativistic):
    total = 0.0
    for i in range(n_particles):
        if not active[i]:
            continue
        u2 = u[i, 0]**2 + u[i, 1]**2 + u[i, 2]**2
        if relativistic:
            gamma = np.sqrt(1.0 + u2 / c**2)
            total += weight[i] * u2 / (gamma + 1.0)
        else:
            total += weight[i] * 0.5 * u2
    return total


def species_kinetic_energy(container):
    """
    Total kinetic energy of all active particles of a species.

    Returns:
        KE: Kinetic energy [J] (photons: m = 0, so 0)
    """
    total = 0.0
    for tile in container.tiles.values():
        total += _kinetic_energy_kernel(tile.u, tile.weight, tile.active, tile.n_particles,
                                        container.config.relativistic)
    return container.mass * total


def species_momentum(container):
    """
    Total momentum of all active particles of a species.

    Returns:
        p: Momentum (3,) [kg*m/s]
    """
    p = np.zeros(3, dtype=np.float64)
    for tile in container.tiles.values():
        p += tile.momentum(container.mass)
    return p


def tile_summary(container):
    """
    Per-tile particle counts of a species, also logged at INFO.

    Returns:
        rows: List of (level, box_index, n_stored, n_active, capacity)
    """
    rows = []
    for (level, b), tile in sorted(container.tiles.items()):
        rows.append((level, b, tile.n_particles, tile.count_active(), tile.capacity))
        logger.info("  level %d box %3d: %8d stored, %8d active, capacity %8d", *rows[-1])
    logger.info("Species '%s': %d active particles in %d tiles",
                container.name, container.total_particles(), len(rows))
    return rows


def check_energy_conservation(E_final, E_initial):
    """
    Fractional change of a conserved energy.

    Returns:
        error: Fractional error
        is_conserved: True if error < 1%
    """
    error = abs(E_final - E_initial) / E_initial if E_initial > 0 else 0.0
    return error, error < 0.01


class DiagnosticTracker:
    """
    Tracks species diagnostics over time.

    Usage:
        tracker = DiagnosticTracker(n_steps=1000, output_interval=10)
        for step in range(n_steps):
            result = container.evolve(...)
            if step % output_interval == 0:
                tracker.record(step, time, container, result)
        tracker.save_csv('diagnostics.csv')
        tracker.plot()
    """

    def __init__(self, n_steps: int, output_interval: int):
        self.n_outputs = n_steps // output_interval + 1
        self.output_idx = 0

        self.time = np.zeros(self.n_outputs)
        self.step = np.zeros(self.n_outputs, dtype=np.int64)
        self.n_particles = np.zeros(self.n_outputs, dtype=np.int64)
        self.kinetic_energy = np.zeros(self.n_outputs)
        self.momentum = np.zeros((self.n_outputs, 3))
        self.n_migrated = np.zeros(self.n_outputs, dtype=np.int64)
        self.n_faults = np.zeros(self.n_outputs, dtype=np.int64)

    def record(self, step: int, time: float, container, result=None):
        """
        Record one sample.

        Args:
            step: Step number
            time: Simulation time [s]
            container: SpeciesContainer
            result: Optional EvolveResult of the step
        """
        if self.output_idx >= self.n_outputs:
            logger.warning("DiagnosticTracker full, sample at step %d dropped", step)
            return

        idx = self.output_idx
        self.step[idx] = step
        self.time[idx] = time
        self.n_particles[idx] = container.total_particles()
        self.kinetic_energy[idx] = species_kinetic_energy(container)
        self.momentum[idx] = species_momentum(container)
        if result is not None:
            self.n_migrated[idx] = len(result.migrations)
            self.n_faults[idx] = len(result.faults)

        self.output_idx += 1

    def energy_error(self):
        """Fractional kinetic energy change relative to the first sample."""
        n = self.output_idx
        if n == 0 or self.kinetic_energy[0] == 0.0:
            return np.zeros(n)
        return np.abs(self.kinetic_energy[:n] - self.kinetic_energy[0]) / self.kinetic_energy[0]

    def save_csv(self, filename: str):
        """
        Save diagnostic data to CSV file.

        Args:
            filename: Output CSV filename
        """
        with open(filename, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow([
                'step', 'time_s', 'n_particles', 'kinetic_energy_J',
                'px', 'py', 'pz', 'n_migrated', 'n_faults',
            ])
            for i in range(self.output_idx):
                writer.writerow([
                    self.step[i],
                    self.time[i],
                    self.n_particles[i],
                    self.kinetic_energy[i],
                    *self.momentum[i],
                    self.n_migrated[i],
                    self.n_faults[i],
                ])

        logger.info("Diagnostics saved to %s", filename)

    def plot(self, show=True, save_filename=None):
        """
        Create diagnostic plots.

        Args:
            show: Display plots interactively
            save_filename: Save figure to file (optional)
        """
        import matplotlib.pyplot as plt

        n = self.output_idx
        time_ns = self.time[:n] * 1e9
        fig, axes = plt.subplots(1, 3, figsize=(16, 5))

        ax = axes[0]
        ax.plot(time_ns, self.n_particles[:n], 'b-', linewidth=2)
        ax.set_xlabel('Time (ns)', fontsize=12)
        ax.set_ylabel('Active Particles', fontsize=12)
        ax.set_title('Particle Population', fontsize=14, fontweight='bold')
        ax.grid(True, alpha=0.3)

        ax = axes[1]
        ax.plot(time_ns, self.kinetic_energy[:n], 'r-', linewidth=2)
        ax.set_xlabel('Time (ns)', fontsize=12)
        ax.set_ylabel('Kinetic Energy (J)', fontsize=12)
        ax.set_title('Species Kinetic Energy', fontsize=14, fontweight='bold')
        ax.grid(True, alpha=0.3)

        ax = axes[2]
        ax.plot(time_ns, self.n_migrated[:n], 'g-', linewidth=2, label='Migrated')
        ax.plot(time_ns, self.n_faults[:n], 'k--', linewidth=2, label='Faults')
        ax.set_xlabel('Time (ns)', fontsize=12)
        ax.set_ylabel('Particles per Step', fontsize=12)
        ax.set_title('Migration and Faults', fontsize=14, fontweight='bold')
        ax.legend(fontsize=10)
        ax.grid(True, alpha=0.3)

        plt.tight_layout()

        if save_filename:
            plt.savefig(save_filename, dpi=150, bbox_inches='tight')
            logger.info("Plot saved to %s", save_filename)

        if show:
            plt.show()
        return fig

    def summary(self):
        """Log summary statistics of the recorded series."""
        if self.output_idx == 0:
            logger.info("No diagnostics recorded")
            return
        idx = self.output_idx - 1
        logger.info("Final state: %d active particles, KE = %.4e J", self.n_particles[idx],
                    self.kinetic_energy[idx])
        logger.info("Energy change since first sample: %.2e", self.energy_error()[idx])
        logger.info("Total migrations: %d, total faults: %d",
                    int(np.sum(self.n_migrated[:self.output_idx])),
                    int(np.sum(self.n_faults[:self.output_idx])))
