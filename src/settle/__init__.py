"""
settle - Idempotent host convergence.

Probe, decide, back up, apply, record. Re-run safely.
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
