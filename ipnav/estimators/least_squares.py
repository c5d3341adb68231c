"""
Linear least squares solvers.

These solvers are used by the minimal-subset fitters: trilateration,
path-loss and sphere fits are all linearized into an over- or exactly
determined system A x = b and solved here.

Functions:
    - linear_least_squares: Ordinary LS, x = (A'A)^(-1) A'b
    - weighted_least_squares: Weighted LS, x = (A'WA)^(-1) A'Wb

Both raise numpy.linalg.LinAlgError when the system has no unique
solution and ValueError on malformed arguments.
"""

from typing import Optional, Tuple

import numpy as np


def linear_least_squares(
    A: np.ndarray, b: np.ndarray, return_covariance: bool = False
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Ordinary linear least squares.

    Solves: x_hat = argmin ||Ax - b||²

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        return_covariance: If True, compute covariance σ² (A'A)^(-1), where σ²
            is the unbiased residual variance (1 for exactly determined systems).

    Returns:
        Tuple of:
            - x_hat: Estimated parameter vector (n,).
            - P: Covariance matrix (n × n), or None if return_covariance is False.

    Raises:
        ValueError: If A and b dimensions don't match.
        numpy.linalg.LinAlgError: If the system is underdetermined or A is
            rank deficient.

    Example:
        >>> import numpy as np
        >>> A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        >>> b = np.array([1.0, 2.0, 3.0])
        >>> x_hat, _ = linear_least_squares(A, b)
        >>> np.allclose(x_hat, [1.0, 2.0])
        True
    """
    return weighted_least_squares(A, b, None, return_covariance=return_covariance)


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    weights: Optional[np.ndarray],
    return_covariance: bool = False,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted linear least squares with diagonal weights.

    Solves: x_hat = argmin (Ax - b)' W (Ax - b), W = diag(weights)

    Args:
        A: Design matrix (m × n), where m ≥ n.
        b: Observation vector (m,).
        weights: Non-negative weights (m,), or None for uniform weights.
        return_covariance: If True, compute covariance σ² (A'WA)^(-1).

    Returns:
        Tuple of (x_hat, P), P being None unless return_covariance is True.

    Raises:
        ValueError: If dimensions don't match or weights are negative.
        numpy.linalg.LinAlgError: If A'WA is singular.
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)

    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(f"A must be 2D and b must be 1D. Got A: {A.shape}, b: {b.shape}")

    m, n = A.shape
    if len(b) != m:
        raise ValueError(f"Dimension mismatch: A has {m} rows, b has {len(b)} elements")

    if weights is None:
        w = np.ones(m)
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != (m,):
            raise ValueError(f"weights length mismatch: expected {m}, got {w.shape}")
        if np.any(w < 0):
            raise ValueError("Weights must be non-negative")

    if m < n:
        raise np.linalg.LinAlgError(f"Underdetermined system: m={m} < n={n}")

    # Normal equations: A'WA x = A'Wb
    AtW = A.T * w
    AtWA = AtW @ A
    AtWb = AtW @ b

    rank = np.linalg.matrix_rank(AtWA)
    if rank < n:
        raise np.linalg.LinAlgError(f"A'WA is rank deficient: rank={rank} < n={n}")

    x_hat = np.linalg.solve(AtWA, AtWb)

    P = None
    if return_covariance:
        residuals = b - A @ x_hat
        if m > n:
            sigma2 = float(residuals @ (w * residuals)) / (m - n)
        else:
            sigma2 = 1.0
        P = sigma2 * np.linalg.inv(AtWA)

    return x_hat, P
