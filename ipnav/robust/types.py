"""Data types and configuration for robust estimation.

This module defines the method selector, the estimator configuration and the
result containers shared by the robust estimator engine, the refinement
stage and the sequential composition controller.

Default values are kept here as module constants so that every estimator
(and the sequential controller) starts from the same configuration.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional

import numpy as np

# Default estimator configuration
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_REFINE_RESULT = True
DEFAULT_KEEP_COVARIANCE = True
DEFAULT_USE_SAMPLE_COVARIANCES = True
DEFAULT_INLIER_FACTOR = 1.5
DEFAULT_MAX_FIT_RETRIES = 10

# Default thresholds: inlier threshold for RANSAC/MSAC/PROSAC and stop
# threshold on the median residual for LMedS/PROMedS
DEFAULT_THRESHOLD = 1e-2
DEFAULT_STOP_THRESHOLD = 1e-4

MIN_CONFIDENCE = 0.0
MAX_CONFIDENCE = 1.0
MIN_ITERATIONS = 1
MIN_PROGRESS_DELTA = 0.0
MAX_PROGRESS_DELTA = 1.0


class RobustEstimatorMethod(Enum):
    """Robust estimation methods.

    Attributes:
        RANSAC: Random sample consensus, maximizes inlier count.
        LMEDS: Least median of squares, minimizes the median residual.
        MSAC: M-estimator sample consensus, minimizes truncated squared cost.
        PROSAC: Progressive sample consensus, RANSAC with quality-ordered sampling.
        PROMEDS: PROSAC sampling with the LMedS median rule.
    """

    RANSAC = "ransac"
    LMEDS = "lmeds"
    MSAC = "msac"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def requires_quality_scores(self) -> bool:
        """True for methods that sample according to quality scores."""
        return self in (RobustEstimatorMethod.PROSAC, RobustEstimatorMethod.PROMEDS)

    @property
    def uses_median(self) -> bool:
        """True for methods whose inlier threshold is estimated from the median residual."""
        return self in (RobustEstimatorMethod.LMEDS, RobustEstimatorMethod.PROMEDS)

    @property
    def default_threshold(self) -> float:
        return DEFAULT_STOP_THRESHOLD if self.uses_median else DEFAULT_THRESHOLD


def validate_confidence(confidence: float) -> float:
    if not MIN_CONFIDENCE < confidence < MAX_CONFIDENCE:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(confidence)


def validate_max_iterations(max_iterations: int) -> int:
    if int(max_iterations) != max_iterations or max_iterations < MIN_ITERATIONS:
        raise ValueError(f"max_iterations must be an integer >= 1, got {max_iterations}")
    return int(max_iterations)


def validate_progress_delta(progress_delta: float) -> float:
    if not MIN_PROGRESS_DELTA <= progress_delta <= MAX_PROGRESS_DELTA:
        raise ValueError(f"progress_delta must be in [0, 1], got {progress_delta}")
    return float(progress_delta)


def validate_threshold(threshold: Optional[float]) -> Optional[float]:
    if threshold is None:
        return None
    if not threshold > 0.0:
        raise ValueError(f"threshold must be positive, got {threshold}")
    return float(threshold)


@dataclass(frozen=True)
class RobustEstimatorConfig:
    """Configuration of a robust estimator.

    Attributes:
        confidence: Probability of having drawn at least one outlier-free
            subset when iterations stop. Must be in (0, 1).
        max_iterations: Upper bound on the number of iterations (>= 1).
        threshold: Inlier threshold on the residual for RANSAC, MSAC and
            PROSAC, or stop threshold on the median residual for LMedS and
            PROMedS. None uses the fitter or method default.
        progress_delta: Minimum progress increment between two progress
            notifications. Must be in [0, 1].
        result_refined: Whether the best candidate is refined over its inliers.
        covariance_kept: Whether the covariance of the refined parameters is kept.
        refinement_required: If True, a refinement failure makes estimate()
            fail instead of returning the unrefined candidate.
        use_sample_covariances: Whether per-sample measurement covariances
            (e.g. anchor position uncertainty) inflate refinement variances.
        preliminary_subset_size: Samples per candidate fit. None uses the
            fitter's minimum number of samples.
        inlier_factor: Multiplier of the robust scale used as inlier
            threshold by LMedS and PROMedS.
        max_fit_retries: Degenerate subsets redrawn within one iteration
            before the estimation fails.
        seed: Seed of the random generator used for subset sampling.

    Example:
        >>> config = RobustEstimatorConfig(confidence=0.95, max_iterations=100)
        >>> config.with_updates(threshold=0.5).threshold
        0.5
    """

    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    threshold: Optional[float] = None
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    result_refined: bool = DEFAULT_REFINE_RESULT
    covariance_kept: bool = DEFAULT_KEEP_COVARIANCE
    refinement_required: bool = False
    use_sample_covariances: bool = DEFAULT_USE_SAMPLE_COVARIANCES
    preliminary_subset_size: Optional[int] = None
    inlier_factor: float = DEFAULT_INLIER_FACTOR
    max_fit_retries: int = DEFAULT_MAX_FIT_RETRIES
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        validate_confidence(self.confidence)
        validate_max_iterations(self.max_iterations)
        validate_threshold(self.threshold)
        validate_progress_delta(self.progress_delta)
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise ValueError(
                f"preliminary_subset_size must be positive, got {self.preliminary_subset_size}"
            )
        if not self.inlier_factor > 0.0:
            raise ValueError(f"inlier_factor must be positive, got {self.inlier_factor}")
        if self.max_fit_retries < 1:
            raise ValueError(f"max_fit_retries must be >= 1, got {self.max_fit_retries}")

    def with_updates(self, **changes) -> "RobustEstimatorConfig":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class InliersData:
    """Inlier classification of the best candidate.

    Attributes:
        inliers: Boolean inlier mask, one entry per sample.
        residuals: Absolute residual of every sample against the candidate.
        threshold: Threshold used to classify inliers (fixed or estimated).
        weights: Optional soft weights used by refinement (MSAC).
    """

    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float
    weights: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.inliers.shape != self.residuals.shape:
            raise ValueError(
                f"inliers {self.inliers.shape} and residuals {self.residuals.shape} "
                "must have the same shape"
            )
        if self.weights is not None and self.weights.shape != self.residuals.shape:
            raise ValueError(
                f"weights {self.weights.shape} must match residuals {self.residuals.shape}"
            )

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        return self.num_inliers / len(self.inliers) if len(self.inliers) else 0.0

    @property
    def inlier_indices(self) -> np.ndarray:
        return np.flatnonzero(self.inliers)

    @property
    def outlier_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.inliers)


@dataclass
class EstimationResult:
    """Result of a robust estimation.

    Attributes:
        model: Estimated model parameters.
        inliers_data: Inlier classification of the best candidate.
        method: Robust method that produced the result.
        iterations: Number of iterations performed.
        refined: Whether the model was refined over the inliers.
        covariance: Covariance of the model parameters, or None.
        variances: Covariance blocks per named parameter group (e.g.
            "position"), available when covariance is available.
    """

    model: np.ndarray
    inliers_data: InliersData
    method: RobustEstimatorMethod
    iterations: int
    refined: bool = False
    covariance: Optional[np.ndarray] = None
    variances: Dict[str, np.ndarray] = field(default_factory=dict)
