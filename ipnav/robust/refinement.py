"""
Refinement and covariance stage of robust estimation.

The best candidate of a robust estimator is fitted from a minimal subset
only. Refinement re-fits the model over all of its inliers by weighted
nonlinear least squares and propagates the measurement uncertainty into the
parameter covariance:

    w_i = s_i / σ_i²                 (s_i: soft weight, 1 unless MSAC)
    x̂  = argmin Σ w_i (y_i - h_i(x))²
    P   = σ̂² (J'WJ)⁻¹,  σ̂² = r'Wr / (m - n)  (1 when m = n)

When samples carry an uncertain anchor position, their variance σ_i² is
inflated by the projected position covariance (see the fitters), assuming
range/RSSI noise and position noise are independent.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ipnav.robust.exceptions import RefinementError
from ipnav.robust.fitter import ModelFitter
from ipnav.robust.types import InliersData

logger = logging.getLogger(__name__)


@dataclass
class RefinementOutcome:
    """Refined model and (optionally) its covariance."""

    model: np.ndarray
    covariance: Optional[np.ndarray] = None


def refinement_weights(
    fitter: ModelFitter,
    samples: Sequence,
    inliers_data: InliersData,
    model: np.ndarray,
    use_sample_covariances: bool = True,
) -> np.ndarray:
    """
    Weights of the inlier samples used by refinement.

    Args:
        fitter: Model fitter providing per-sample variances.
        samples: All samples.
        inliers_data: Inlier classification of the model.
        model: Model at which variances are evaluated.
        use_sample_covariances: Whether sample covariances inflate variances.

    Returns:
        Weights (num_inliers,), in inlier order.

    Raises:
        RefinementError: If a sample variance is not positive and finite.
    """
    indices = inliers_data.inlier_indices
    inlier_samples = [samples[i] for i in indices]

    variances = np.asarray(
        fitter.sample_variances(model, inlier_samples, use_sample_covariances), dtype=float
    )
    if variances.shape != (len(indices),):
        raise RefinementError(
            f"Expected {len(indices)} sample variances, got shape {variances.shape}"
        )
    if np.any(~np.isfinite(variances)) or np.any(variances <= 0.0):
        raise RefinementError("Sample variances must be positive and finite")

    if inliers_data.weights is None:
        soft = np.ones(len(indices))
    else:
        soft = inliers_data.weights[indices]

    return soft / variances


def propagate_covariance(
    jacobian: np.ndarray, residuals: np.ndarray, weights: np.ndarray
) -> np.ndarray:
    """
    Covariance of least squares parameters, P = σ̂² (J'WJ)⁻¹.

    Args:
        jacobian: Jacobian at the solution (m × n).
        residuals: Residuals at the solution (m,).
        weights: Measurement weights (m,).

    Returns:
        Covariance matrix (n × n).

    Raises:
        RefinementError: If J'WJ is singular.

    Example:
        >>> import numpy as np
        >>> J = np.ones((4, 1))
        >>> r = np.array([1.0, -1.0, 1.0, -1.0])
        >>> propagate_covariance(J, r, np.ones(4)).item()  # σ̂² / m = (4/3) / 4
        0.3333333333333333
    """
    m, n = jacobian.shape
    JtWJ = (jacobian.T * weights) @ jacobian

    rank = np.linalg.matrix_rank(JtWJ)
    if rank < n:
        raise RefinementError(f"J'WJ is rank deficient: rank={rank} < n={n}")

    if m > n:
        sigma2 = float(residuals @ (weights * residuals)) / (m - n)
    else:
        sigma2 = 1.0

    try:
        return sigma2 * np.linalg.inv(JtWJ)
    except np.linalg.LinAlgError as e:
        raise RefinementError(f"Failed to invert J'WJ: {e}") from e


def refine(
    fitter: ModelFitter,
    samples: Sequence,
    inliers_data: InliersData,
    model: np.ndarray,
    keep_covariance: bool = True,
    use_sample_covariances: bool = True,
) -> RefinementOutcome:
    """
    Refine a robust candidate over its inliers.

    Args:
        fitter: Model fitter.
        samples: All samples.
        inliers_data: Inlier classification of the candidate.
        model: Candidate model.
        keep_covariance: Whether to compute the parameter covariance.
        use_sample_covariances: Whether sample covariances inflate variances.

    Returns:
        RefinementOutcome with the refined model and optional covariance.

    Raises:
        RefinementError: If there are too few inliers or the weighted system
            is singular.
    """
    indices = inliers_data.inlier_indices
    if len(indices) < fitter.dimensions:
        raise RefinementError(
            f"Not enough inliers to refine: {len(indices)} < {fitter.dimensions}"
        )

    weights = refinement_weights(fitter, samples, inliers_data, model, use_sample_covariances)
    refined = fitter.refine([samples[i] for i in indices], weights, model)

    covariance = None
    if keep_covariance:
        covariance = propagate_covariance(refined.jacobian, refined.residuals, weights)

    logger.debug(
        "Refined model over %d inliers, parameter change %.3g",
        len(indices),
        float(np.linalg.norm(refined.model - model)),
    )
    return RefinementOutcome(model=refined.model, covariance=covariance)
