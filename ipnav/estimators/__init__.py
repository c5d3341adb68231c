"""
Least squares solvers used by the fitters and the refinement stage.

Available solvers:
    - Linear LS and weighted LS (minimal-subset fits)
    - Nonlinear LS (Gauss-Newton, Levenberg-Marquardt) for refinement
"""

from ipnav.estimators.least_squares import (
    linear_least_squares,
    weighted_least_squares,
)
from ipnav.estimators.nonlinear_least_squares import (
    gauss_newton,
    levenberg_marquardt,
    NonlinearLSResult,
)

__all__ = [
    # Linear LS
    "linear_least_squares",
    "weighted_least_squares",
    # Nonlinear LS
    "gauss_newton",
    "levenberg_marquardt",
    "NonlinearLSResult",
]
