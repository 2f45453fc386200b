"""
Demo: Electron Gyration in a Uniform Magnetic Field

Drives the full species pipeline (alloc -> init -> evolve) for a handful of
electrons in a periodic box with B along z and a weak E along y:

- Gather of uniform E and B (shape order 2)
- Relativistic Boris push with exact rotation
- Esirkepov current deposition, checked against the continuity equation
- E x B drift of the guiding centre

Physics:
    Larmor radius  r_L = u_perp / (gamma * omega_c)
    Drift velocity v_d = E x B / B^2
"""

import logging
import os

import matplotlib.pyplot as plt
import numpy as np

from picspecies import (
    CurrentView,
    FieldView,
    MeshContext,
    SpeciesConfig,
    SpeciesContainer,
)
from picspecies.constants import c, cyclotron_frequency, e
from picspecies.diagnostics import DiagnosticTracker, relative_continuity_error

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

# ==================== SIMULATION PARAMETERS ====================

L = 1e-3  # Box size [m]
n_cells = 16  # Cells per dimension
B0 = 0.1  # Magnetic field along z [T]
E0 = 1e3  # Electric field along y [V/m]
u_perp = 1e6  # Initial perpendicular momentum per mass [m/s]
n_electrons = 4

gamma = np.sqrt(1.0 + (u_perp / c) ** 2)
omega_c = cyclotron_frequency(B0, u=u_perp)
r_larmor = u_perp / (gamma * omega_c)
v_drift = E0 / B0

steps_per_orbit = 100
n_orbits = 3
dt = 2.0 * np.pi / (omega_c * steps_per_orbit)
n_steps = steps_per_orbit * n_orbits

# ==================== SETUP ====================

print("=" * 60)
print("Electron Gyration Demo")
print("=" * 60)
print(f"  Larmor radius: {r_larmor * 1e6:.2f} um ({r_larmor / (L / n_cells):.2f} cells)")
print(f"  Period: {2 * np.pi / omega_c * 1e9:.3f} ns, dt = {dt * 1e12:.2f} ps")
print(f"  E x B drift: {v_drift:.1f} m/s")
print()

context = MeshContext.single_box((0.0, 0.0, 0.0), (L, L, L), (n_cells,) * 3)
config = SpeciesConfig.from_database(
    "e", shape_order=2, boundaries={"x": "periodic", "y": "periodic", "z": "periodic"}
)
electrons = SpeciesContainer(config, context)
electrons.alloc_data()


def inject(species):
    x = np.tile([0.5 * L, 0.5 * L, 0.5 * L], (n_electrons, 1))
    x[:, 2] += np.linspace(-0.2, 0.2, n_electrons) * L
    u = np.tile([u_perp, 0.0, 0.0], (n_electrons, 1))
    species.add_particles(0, 0, x, u, 1.0)


electrons.init_data(inject)

geom = context.geometry(0)
box = geom.boxes[0]
fields = {0: FieldView.uniform(box, E=(0.0, E0, 0.0), B=(0.0, 0.0, B0))}

# ==================== TIME LOOP ====================

tracker = DiagnosticTracker(n_steps, output_interval=10)
orbit = np.zeros((n_steps + 1, 3))
tile = electrons.tiles[(0, 0)]
orbit[0] = tile.x[0]
worst_continuity = 0.0

for step in range(n_steps):
    currents = {0: CurrentView.zeros(box)}
    rho_old = np.zeros(box.shape)
    rho_new = np.zeros(box.shape)

    electrons.deposit_charge(0, {0: rho_old})
    result = electrons.evolve(0, fields, currents, dt)
    electrons.deposit_charge(0, {0: rho_new})

    if result.n_wrapped == 0:
        worst_continuity = max(worst_continuity, relative_continuity_error(
            rho_old, rho_new, *currents[0].components, geom.dx, dt))

    orbit[step + 1] = tile.x[0]
    if step % 10 == 0:
        tracker.record(step, step * dt, electrons, result)

t_total = n_steps * dt
drift_measured = (orbit[-1, 0] - orbit[0, 0]) / t_total
print(f"  Worst continuity residual: {worst_continuity:.2e}")
print(f"  Measured drift: {drift_measured:.1f} m/s (expected {v_drift:.1f})")
tracker.summary()

# ==================== PLOTS ====================

fig, axes = plt.subplots(1, 2, figsize=(13, 5))

ax = axes[0]
ax.plot((orbit[:, 0] - orbit[0, 0]) * 1e6, (orbit[:, 1] - orbit[0, 1]) * 1e6, 'b-', linewidth=1.5)
ax.set_xlabel('x (um)', fontsize=12)
ax.set_ylabel('y (um)', fontsize=12)
ax.set_title('Guiding-Centre Drift of a Gyrating Electron', fontsize=14, fontweight='bold')
ax.set_aspect('equal')
ax.grid(True, alpha=0.3)

ax = axes[1]
n = tracker.output_idx
ax.plot(tracker.time[:n] * 1e9, tracker.kinetic_energy[:n] / e, 'r-', linewidth=2)
ax.set_xlabel('Time (ns)', fontsize=12)
ax.set_ylabel('Kinetic Energy (eV)', fontsize=12)
ax.set_title('Species Kinetic Energy', fontsize=14, fontweight='bold')
ax.grid(True, alpha=0.3)

plt.tight_layout()
output_file = os.path.join(os.path.dirname(__file__), 'gyration_orbit.png')
plt.savefig(output_file, dpi=150)
print(f"\nPlot saved to {output_file}")
plt.show()
