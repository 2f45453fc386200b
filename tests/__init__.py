"""
picspecies Test Suite

Tests organized by:
- test_shape.py: B-spline weights and tie rule
- test_gather.py, test_pusher.py, test_deposition.py: PIC kernels
- test_boundaries.py: Domain boundaries and migration detection
- test_particles.py: Particle tile storage
- test_species.py: Container lifecycle, evolve and restart
- test_config.py, test_diagnostics.py: Configuration and diagnostics
"""
