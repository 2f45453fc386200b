"""
Physical Constants and Species Properties

All units in SI unless otherwise noted.
"""

import numpy as np

# ==================== FUNDAMENTAL CONSTANTS ====================

e = 1.602176634e-19  # Elementary charge [C]
m_e = 9.1093837015e-31  # Electron mass [kg]
m_p = 1.67262192369e-27  # Proton mass [kg]
c = 299792458.0  # Speed of light [m/s]
AMU = 1.66053906660e-27  # Atomic mass unit [kg]

# ==================== SPECIES DATABASE ====================


class SpeciesData:
    """
    Physical constants of a particle species.

    Attributes:
        mass: Rest mass [kg] (0 for photons)
        charge: Charge [C] (0 for neutrals and photons)
    """

    def __init__(self, mass, charge=0.0):
        self.mass = mass
        self.charge = charge

    def __repr__(self):
        return f"SpeciesData(mass={self.mass:.6e}, charge={self.charge:.6e})"


SPECIES = {
    # Leptons
    'e': SpeciesData(mass=m_e, charge=-e),
    'e+': SpeciesData(mass=m_e, charge=e),

    # Ions
    'p': SpeciesData(mass=m_p, charge=e),
    'H+': SpeciesData(mass=1.00794 * AMU, charge=e),
    'He++': SpeciesData(mass=4.002602 * AMU, charge=2 * e),
    'N2+': SpeciesData(mass=28.014 * AMU, charge=e),

    # Massless
    'photon': SpeciesData(mass=0.0, charge=0.0),
}

# ==================== PLASMA PARAMETERS ====================


def cyclotron_frequency(B, charge=e, mass=m_e, u=0.0):
    """
    Relativistic cyclotron frequency |q| B / (gamma m).

    Args:
        B: Magnetic field magnitude [T]
        charge: Particle charge [C]
        mass: Particle mass [kg]
        u: Momentum per unit mass |u| [m/s] (0: non-relativistic limit)

    Returns:
        omega_c: Cyclotron frequency [rad/s]
    """
    gamma = np.sqrt(1.0 + (u / c)**2)
    return abs(charge) * B / (gamma * mass)
