"""
Candidate scoring and stopping policy for robust estimators.

Each robust method scores a candidate model from the residuals of all
samples and decides whether a candidate improves on the best one so far:

    | Method          | Score                       | Better when | Threshold        |
    |-----------------|-----------------------------|-------------|------------------|
    | RANSAC, PROSAC  | number of r ≤ t             | higher      | fixed            |
    | MSAC            | Σ min(r², t²)               | lower       | fixed            |
    | LMedS, PROMedS  | median(r²)                  | lower       | from robust scale|

For median-based methods the inlier threshold is estimated from the
residual distribution of the candidate:

    s = 1.4826 · (1 + 5 / (n - k)) · √median(r²)
    t = max(inlier_factor · s, stop_threshold)

where 1.4826 makes the scale consistent with a Gaussian standard deviation
and (1 + 5 / (n - k)) corrects the small-sample bias (Rousseeuw & Leroy).

The number of iterations needed to draw at least one outlier-free subset of
size k with probability p, given inlier ratio w, is

    N = log(1 - p) / log(1 - w^k)
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ipnav.robust.types import InliersData

# Consistency factor of the median absolute deviation for Gaussian noise
MAD_CONSISTENCY = 1.4826

# Smallest soft weight assigned to an MSAC inlier
MIN_SOFT_WEIGHT = 1e-6

# Inlier ratio assumed by the iteration bound of median-based methods
MEDIAN_BREAKDOWN_RATIO = 0.5


@dataclass
class CandidateScore:
    """Score of a candidate model against all samples.

    Attributes:
        value: Comparison value (inlier count, truncated cost or median).
        inliers: Boolean inlier mask.
        residuals: Absolute residuals.
        threshold: Threshold used to classify inliers.
        weights: Optional soft weights for refinement.
    """

    value: float
    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float
    weights: Optional[np.ndarray] = None

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        return self.num_inliers / len(self.inliers)

    def to_inliers_data(self) -> InliersData:
        return InliersData(
            inliers=self.inliers.copy(),
            residuals=self.residuals.copy(),
            threshold=self.threshold,
            weights=None if self.weights is None else self.weights.copy(),
        )


def robust_scale(residuals: np.ndarray, subset_size: int) -> float:
    """
    Robust standard deviation of residuals from their median.

    Args:
        residuals: Residuals of all samples (n,).
        subset_size: Number of samples k used to fit the model.

    Returns:
        Scale s = 1.4826 · (1 + 5 / (n - k)) · √median(r²).

    Example:
        >>> import numpy as np
        >>> r = np.array([1.0, -1.0, 1.0, -1.0, 1.0, 100.0])
        >>> round(robust_scale(r, 1), 4)
        2.9652
    """
    residuals = np.asarray(residuals, dtype=float)
    n = len(residuals)
    if n == 0:
        raise ValueError("residuals must not be empty")

    correction = 1.0 + 5.0 / (n - subset_size) if n > subset_size else 1.0
    return MAD_CONSISTENCY * correction * math.sqrt(float(np.median(residuals ** 2)))


def required_iterations(
    confidence: float, inlier_ratio: float, subset_size: int, max_iterations: int
) -> int:
    """
    Number of iterations needed to draw an outlier-free subset.

    Implements N = log(1 - confidence) / log(1 - w^k), clamped to
    [1, max_iterations].

    Args:
        confidence: Desired probability in (0, 1).
        inlier_ratio: Current inlier ratio w in [0, 1].
        subset_size: Subset size k.
        max_iterations: Upper bound.

    Returns:
        Number of iterations.

    Example:
        >>> required_iterations(0.99, 0.5, 3, 5000)
        35
        >>> required_iterations(0.99, 1.0, 3, 5000)
        1
    """
    if inlier_ratio >= 1.0:
        return 1
    if inlier_ratio <= 0.0:
        return max_iterations

    p_clean = inlier_ratio ** subset_size
    if p_clean <= 0.0:
        return max_iterations

    n = math.log(1.0 - confidence) / math.log1p(-p_clean)
    if not math.isfinite(n) or n >= max_iterations:
        return max_iterations
    return max(1, int(math.ceil(n)))


class ScoringFunction:
    """Base class of the per-method scoring rules."""

    def score(self, residuals: np.ndarray) -> CandidateScore:
        raise NotImplementedError

    def is_better(self, candidate: CandidateScore, best: Optional[CandidateScore]) -> bool:
        raise NotImplementedError

    def is_converged(self, best: CandidateScore) -> bool:
        """Whether the best candidate is good enough to stop iterating."""
        return best.inlier_ratio >= 1.0

    def bound_inlier_ratio(self, best: CandidateScore) -> float:
        """Inlier ratio w used for the adaptive iteration bound."""
        return best.inlier_ratio


class InlierCountScoring(ScoringFunction):
    """RANSAC/PROSAC rule: maximize the number of residuals within threshold.

    Ties on inlier count are broken by the lower sum of inlier residuals.
    """

    def __init__(self, threshold: float):
        self.threshold = threshold

    def score(self, residuals: np.ndarray) -> CandidateScore:
        inliers = residuals <= self.threshold
        return CandidateScore(
            value=float(np.count_nonzero(inliers)),
            inliers=inliers,
            residuals=residuals,
            threshold=self.threshold,
        )

    def is_better(self, candidate: CandidateScore, best: Optional[CandidateScore]) -> bool:
        if best is None:
            return True
        if candidate.value != best.value:
            return candidate.value > best.value
        return (
            np.sum(candidate.residuals[candidate.inliers])
            < np.sum(best.residuals[best.inliers])
        )


class TruncatedCostScoring(ScoringFunction):
    """MSAC rule: minimize Σ min(r², t²).

    Inliers get soft refinement weights 1 - (r / t)², so samples close to the
    threshold contribute less to the refined model.
    """

    def __init__(self, threshold: float):
        self.threshold = threshold

    def score(self, residuals: np.ndarray) -> CandidateScore:
        t2 = self.threshold ** 2
        squared = residuals ** 2
        inliers = residuals <= self.threshold
        weights = np.where(inliers, np.maximum(1.0 - squared / t2, MIN_SOFT_WEIGHT), 0.0)
        return CandidateScore(
            value=float(np.sum(np.minimum(squared, t2))),
            inliers=inliers,
            residuals=residuals,
            threshold=self.threshold,
            weights=weights,
        )

    def is_better(self, candidate: CandidateScore, best: Optional[CandidateScore]) -> bool:
        return best is None or candidate.value < best.value


class MedianScoring(ScoringFunction):
    """LMedS/PROMedS rule: minimize the median squared residual.

    Args:
        stop_threshold: Iterations stop once the best median residual is
            below this value. Also the smallest inlier threshold.
        subset_size: Samples used per candidate fit.
        inlier_factor: Multiplier of the robust scale giving the inlier threshold.
    """

    def __init__(self, stop_threshold: float, subset_size: int, inlier_factor: float):
        self.stop_threshold = stop_threshold
        self.subset_size = subset_size
        self.inlier_factor = inlier_factor

    def score(self, residuals: np.ndarray) -> CandidateScore:
        median = float(np.median(residuals ** 2))
        scale = robust_scale(residuals, self.subset_size)
        threshold = max(self.inlier_factor * scale, self.stop_threshold)
        return CandidateScore(
            value=median,
            inliers=np.isfinite(residuals) & (residuals <= threshold),
            residuals=residuals,
            threshold=threshold,
        )

    def is_better(self, candidate: CandidateScore, best: Optional[CandidateScore]) -> bool:
        return best is None or candidate.value < best.value

    def is_converged(self, best: CandidateScore) -> bool:
        return best.value <= self.stop_threshold ** 2

    def bound_inlier_ratio(self, best: CandidateScore) -> float:
        # Inlier counts from a threshold that scales with the candidate
        # error say nothing about contamination
        return min(best.inlier_ratio, MEDIAN_BREAKDOWN_RATIO)
