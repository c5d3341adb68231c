"""
Iterative solvers for weighted nonlinear least squares.

Refinement re-fits a robustly estimated model over its inliers. Both solvers
below minimize

    F(x) = ½ Σ w_i (y_i - h_i(x))²

and return the Jacobian at the solution so that the caller can propagate
the measurement noise into a parameter covariance.

    - gauss_newton: undamped steps (J'WJ) Δx = J'W r. Fast when started
      close to the optimum, may diverge otherwise.
    - levenberg_marquardt: damped steps (J'WJ + μI) Δx = J'W r with μ
      adapted from the gain ratio of each trial step (Nielsen's rule).
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

ModelFunction = Callable[[np.ndarray], np.ndarray]

# Damping above which a rejected step is taken to mean x is already optimal
_MAX_DAMPING = 1e10


@dataclass
class NonlinearLSResult:
    """Outcome of a nonlinear least squares run.

    Attributes:
        x: Estimated parameter vector (n,).
        jacobian: ∂h/∂x evaluated at x (m × n).
        iterations: Number of outer iterations performed.
        residuals: y - h(x) at the estimate.
        cost: ½ r'Wr at the estimate.
        converged: True if the step or gradient fell below tolerance.
    """

    x: np.ndarray
    jacobian: np.ndarray
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool


def _prepare(
    y: np.ndarray, x0: np.ndarray, weights: Optional[np.ndarray]
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    y = np.asarray(y, dtype=float)
    x0 = np.array(x0, dtype=float)
    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")

    if weights is None:
        return y, x0, np.ones(len(y))

    w = np.asarray(weights, dtype=float)
    if w.shape != y.shape:
        raise ValueError(f"weights must be 1D array of length {len(y)}")
    if np.any(w < 0):
        raise ValueError("weights must be non-negative")
    return y, x0, w


def _weighted_cost(r: np.ndarray, w: np.ndarray) -> float:
    return 0.5 * float(r @ (w * r))


def _linearize(h: ModelFunction, jacobian: ModelFunction, x, y, w):
    """Residuals, normal matrix J'WJ, gradient J'Wr and cost at x."""
    m, n = len(y), len(x)
    hx = np.asarray(h(x), dtype=float)
    if hx.shape != (m,):
        raise ValueError(f"h(x) returned {hx.size} elements, expected {m}")
    J = np.asarray(jacobian(x), dtype=float)
    if J.shape != (m, n):
        raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

    r = y - hx
    JtW = J.T * w
    return r, JtW @ J, JtW @ r, _weighted_cost(r, w)


def _result(h, jacobian, x, y, w, iterations, converged) -> NonlinearLSResult:
    r = y - h(x)
    return NonlinearLSResult(
        x=x,
        jacobian=np.asarray(jacobian(x), dtype=float),
        iterations=iterations,
        residuals=r,
        cost=_weighted_cost(r, w),
        converged=converged,
    )


def gauss_newton(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = 1e-10,
) -> NonlinearLSResult:
    """
    Gauss-Newton solver.

    Args:
        h: Measurement model h: R^n → R^m.
        jacobian: Function returning J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial parameter estimate (n,).
        weights: Non-negative measurement weights (m,), uniform if None.
        max_iter: Maximum number of iterations.
        tol: Convergence tolerance on ‖Δx‖.

    Returns:
        NonlinearLSResult with the estimate, Jacobian and diagnostics.

    Raises:
        ValueError: On shape mismatches or negative weights.
        numpy.linalg.LinAlgError: If J'WJ becomes singular.

    Example:
        >>> import numpy as np
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     return diff / np.linalg.norm(diff, axis=1, keepdims=True)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = gauss_newton(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> np.allclose(result.x, [3.0, 4.0])
        True
    """
    y, x, w = _prepare(y, x0, weights)

    converged = False
    iterations = 0
    while iterations < max_iter and not converged:
        iterations += 1
        _, normal, gradient, _ = _linearize(h, jacobian, x, y, w)
        step = np.linalg.solve(normal, gradient)
        x = x + step
        converged = bool(np.linalg.norm(step) < tol)

    return _result(h, jacobian, x, y, w, iterations, converged)


def levenberg_marquardt(
    h: ModelFunction,
    jacobian: ModelFunction,
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-10,
    mu0: float = 1e-3,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver.

    Each outer iteration tries damped steps until one lowers the cost. The
    damping shrinks after a good step and doubles (then quadruples, ...)
    after each rejected one.

    Args:
        h: Measurement model h: R^n → R^m.
        jacobian: Function returning J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial parameter estimate (n,).
        weights: Non-negative measurement weights (m,), uniform if None.
        max_iter: Maximum number of outer iterations.
        tol: Convergence tolerance on ‖Δx‖ and on the gradient ‖J'Wr‖∞.
        mu0: Initial damping.

    Returns:
        NonlinearLSResult with the estimate, Jacobian and diagnostics.
    """
    y, x, w = _prepare(y, x0, weights)
    identity = np.eye(len(x))
    mu = mu0

    converged = False
    iterations = 0
    while iterations < max_iter and not converged:
        iterations += 1
        _, normal, gradient, cost = _linearize(h, jacobian, x, y, w)
        if np.max(np.abs(gradient), initial=0.0) < tol:
            converged = True
            break

        nu = 2.0
        step = np.zeros_like(x)
        while mu <= _MAX_DAMPING:
            trial_step = np.linalg.solve(normal + mu * identity, gradient)
            trial_x = x + trial_step
            trial_cost = _weighted_cost(y - h(trial_x), w)

            # Gain ratio against the decrease predicted by the damped model
            predicted = 0.5 * float(trial_step @ (mu * trial_step + gradient))
            gain = (cost - trial_cost) / predicted if predicted > 1e-15 else 0.0
            if gain > 0.0:
                x, step = trial_x, trial_step
                mu *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                break
            mu *= nu
            nu *= 2.0

        converged = bool(np.linalg.norm(step) < tol)

    return _result(h, jacobian, x, y, w, iterations, converged)
