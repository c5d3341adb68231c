"""
Generic robust estimator engine.

RobustEstimator fits a model from redundant, outlier-contaminated samples
with one of five methods (RANSAC, LMedS, MSAC, PROSAC, PROMedS). The model
itself is provided by a ModelFitter, so the same engine estimates positions
from ranges, radio-source power from RSSI or magnetometer hard-iron offsets.

Algorithm:
    1. Draw a subset of samples (uniformly, or progressively by quality for
       PROSAC/PROMedS) and fit a candidate model. Degenerate subsets are
       redrawn up to max_fit_retries times.
    2. Score the candidate against every sample and keep it if it improves
       on the best one (see ipnav.robust.scoring).
    3. On improvement, update the number of iterations needed to reach the
       requested confidence: N = log(1 - p) / log(1 - w^k).
    4. Stop after N iterations or as soon as the best candidate is converged.
    5. Optionally refine the best candidate over its inliers and compute the
       parameter covariance (see ipnav.robust.refinement).

Concurrency:
    estimate() runs synchronously on the calling thread and holds a
    non-blocking lock for its whole duration. While locked, every setter and
    any nested estimate() raise LockedException; getters keep working.
"""

import logging
import threading
import warnings
from typing import Optional, Sequence

import numpy as np

from ipnav.robust.exceptions import (
    DegenerateSubsetError,
    LockedException,
    NotReadyException,
    RefinementError,
    RobustEstimatorException,
)
from ipnav.robust.fitter import ModelFitter
from ipnav.robust.listener import RobustEstimatorListener
from ipnav.robust.refinement import refine
from ipnav.robust.samplers import ProsacSampler, Sampler, UniformSampler
from ipnav.robust.scoring import (
    CandidateScore,
    InlierCountScoring,
    MedianScoring,
    ScoringFunction,
    TruncatedCostScoring,
    required_iterations,
)
from ipnav.robust.types import (
    EstimationResult,
    InliersData,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
)

logger = logging.getLogger(__name__)


class RobustEstimator:
    """
    Robust estimator of a model from outlier-contaminated samples.

    Args:
        fitter: Fitter of the model to estimate.
        method: Robust method (default RANSAC).
        samples: Optional samples. At least fitter.minimum_samples are required.
        quality_scores: Optional quality score per sample (higher is better).
            Required by PROSAC and PROMedS.
        listener: Optional listener of estimation events.
        config: Optional configuration. Defaults to RobustEstimatorConfig().
        **overrides: Configuration fields overriding those of config.

    Raises:
        ValueError: If samples, quality scores or configuration are invalid.

    Example:
        >>> from ipnav.rf import RangingPositionFitter, RangingReading
        >>> import numpy as np
        >>> anchors = [[0, 0], [10, 0], [0, 10], [10, 10], [5, 12]]
        >>> readings = [
        ...     RangingReading(np.array(a, dtype=float), float(np.hypot(a[0] - 3, a[1] - 4)))
        ...     for a in anchors
        ... ]
        >>> estimator = RobustEstimator(RangingPositionFitter(2), samples=readings, seed=0)
        >>> result = estimator.estimate()
        >>> np.allclose(result.model, [3.0, 4.0])
        True
    """

    def __init__(
        self,
        fitter: ModelFitter,
        method: RobustEstimatorMethod = RobustEstimatorMethod.RANSAC,
        samples: Optional[Sequence] = None,
        quality_scores: Optional[Sequence[float]] = None,
        listener: Optional[RobustEstimatorListener] = None,
        config: Optional[RobustEstimatorConfig] = None,
        **overrides,
    ):
        if not isinstance(fitter, ModelFitter):
            raise TypeError(f"fitter must be a ModelFitter, got {type(fitter)}")

        self._fitter = fitter
        self._method = RobustEstimatorMethod(method)
        self._lock = threading.Lock()

        config = config if config is not None else RobustEstimatorConfig()
        if overrides:
            config = config.with_updates(**overrides)
        self._check_subset_size(config.preliminary_subset_size, None)
        self._config = config

        self._listener = listener
        self._samples: Optional[tuple] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._result: Optional[EstimationResult] = None

        if samples is not None:
            self.set_samples(samples, quality_scores)
        elif quality_scores is not None:
            self.set_quality_scores(quality_scores)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def fitter(self) -> ModelFitter:
        return self._fitter

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @property
    def is_locked(self) -> bool:
        """True while estimate() is running."""
        return self._lock.locked()

    @property
    def is_ready(self) -> bool:
        """True when samples (and quality scores, if required) are available."""
        if self._samples is None:
            return False
        if len(self._samples) < self.preliminary_subset_size:
            return False
        if self._method.requires_quality_scores:
            return self._quality_scores is not None and len(self._quality_scores) == len(
                self._samples
            )
        return True

    @property
    def result(self) -> Optional[EstimationResult]:
        """Result of the last successful estimation, or None."""
        return self._result

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return None if self._result is None else self._result.inliers_data

    @property
    def samples(self) -> Optional[tuple]:
        return self._samples

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _check_not_locked(self) -> None:
        if self.is_locked:
            raise LockedException()

    def _check_subset_size(self, subset_size: Optional[int], samples: Optional[Sequence]) -> None:
        if subset_size is None:
            return
        minimum = self._fitter.minimum_samples
        if subset_size < minimum:
            raise ValueError(
                f"preliminary_subset_size must be >= {minimum}, got {subset_size}"
            )
        if samples is not None and subset_size > len(samples):
            raise ValueError(
                f"preliminary_subset_size {subset_size} exceeds the {len(samples)} samples"
            )

    def _update_config(self, **changes) -> None:
        self._check_not_locked()
        self._config = self._config.with_updates(**changes)

    @property
    def config(self) -> RobustEstimatorConfig:
        return self._config

    @config.setter
    def config(self, config: RobustEstimatorConfig) -> None:
        self._check_not_locked()
        if not isinstance(config, RobustEstimatorConfig):
            raise TypeError(f"config must be a RobustEstimatorConfig, got {type(config)}")
        self._check_subset_size(config.preliminary_subset_size, self._samples)
        self._config = config

    @property
    def listener(self) -> Optional[RobustEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[RobustEstimatorListener]) -> None:
        self._check_not_locked()
        self._listener = listener

    @property
    def confidence(self) -> float:
        return self._config.confidence

    @confidence.setter
    def confidence(self, confidence: float) -> None:
        self._update_config(confidence=confidence)

    @property
    def max_iterations(self) -> int:
        return self._config.max_iterations

    @max_iterations.setter
    def max_iterations(self, max_iterations: int) -> None:
        self._update_config(max_iterations=max_iterations)

    @property
    def threshold(self) -> Optional[float]:
        """Configured threshold (None when the default is used)."""
        return self._config.threshold

    @threshold.setter
    def threshold(self, threshold: Optional[float]) -> None:
        self._update_config(threshold=threshold)

    @property
    def effective_threshold(self) -> float:
        """Threshold actually used: configured, fitter default or method default.

        Inlier threshold for RANSAC/MSAC/PROSAC, stop threshold on the median
        residual for LMedS/PROMedS.
        """
        if self._config.threshold is not None:
            return self._config.threshold
        if self._method.uses_median:
            fitter_default = self._fitter.default_stop_threshold
        else:
            fitter_default = self._fitter.default_threshold
        if fitter_default is not None:
            return fitter_default
        return self._method.default_threshold

    @property
    def progress_delta(self) -> float:
        return self._config.progress_delta

    @progress_delta.setter
    def progress_delta(self, progress_delta: float) -> None:
        self._update_config(progress_delta=progress_delta)

    @property
    def result_refined(self) -> bool:
        return self._config.result_refined

    @result_refined.setter
    def result_refined(self, result_refined: bool) -> None:
        self._update_config(result_refined=bool(result_refined))

    @property
    def covariance_kept(self) -> bool:
        return self._config.covariance_kept

    @covariance_kept.setter
    def covariance_kept(self, covariance_kept: bool) -> None:
        self._update_config(covariance_kept=bool(covariance_kept))

    @property
    def refinement_required(self) -> bool:
        return self._config.refinement_required

    @refinement_required.setter
    def refinement_required(self, refinement_required: bool) -> None:
        self._update_config(refinement_required=bool(refinement_required))

    @property
    def use_sample_covariances(self) -> bool:
        return self._config.use_sample_covariances

    @use_sample_covariances.setter
    def use_sample_covariances(self, use_sample_covariances: bool) -> None:
        self._update_config(use_sample_covariances=bool(use_sample_covariances))

    @property
    def inlier_factor(self) -> float:
        return self._config.inlier_factor

    @inlier_factor.setter
    def inlier_factor(self, inlier_factor: float) -> None:
        self._update_config(inlier_factor=inlier_factor)

    @property
    def max_fit_retries(self) -> int:
        return self._config.max_fit_retries

    @max_fit_retries.setter
    def max_fit_retries(self, max_fit_retries: int) -> None:
        self._update_config(max_fit_retries=max_fit_retries)

    @property
    def seed(self) -> Optional[int]:
        return self._config.seed

    @seed.setter
    def seed(self, seed: Optional[int]) -> None:
        self._update_config(seed=seed)

    @property
    def preliminary_subset_size(self) -> int:
        """Samples used per candidate fit (defaults to the fitter minimum)."""
        if self._config.preliminary_subset_size is None:
            return self._fitter.minimum_samples
        return self._config.preliminary_subset_size

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, subset_size: Optional[int]) -> None:
        self._check_not_locked()
        self._check_subset_size(subset_size, self._samples)
        self._update_config(preliminary_subset_size=subset_size)

    def set_samples(
        self, samples: Sequence, quality_scores: Optional[Sequence[float]] = None
    ) -> None:
        """
        Set the samples, and optionally their quality scores.

        Raises:
            LockedException: If estimating.
            ValueError: If there are fewer samples than the fitter needs, or
                quality scores are missing (PROSAC/PROMedS) or do not have
                one entry per sample. Methods that ignore scores drop stored
                scores of another length instead.
        """
        self._check_not_locked()
        samples = tuple(samples)

        minimum = self._fitter.minimum_samples
        if len(samples) < minimum:
            raise ValueError(f"At least {minimum} samples are required, got {len(samples)}")
        self._check_subset_size(self._config.preliminary_subset_size, samples)

        if quality_scores is not None:
            scores = self._validate_quality_scores(quality_scores, len(samples))
        else:
            scores = self._quality_scores
            if scores is None and self._method.requires_quality_scores:
                raise ValueError(f"{self._method.name} requires quality scores")
            if scores is not None and len(scores) != len(samples):
                if self._method.requires_quality_scores:
                    raise ValueError(
                        f"quality_scores length {len(scores)} does not match "
                        f"{len(samples)} samples"
                    )
                # Scores are unused by this method; stale ones are dropped
                scores = None

        self._samples = samples
        self._quality_scores = scores

    def set_quality_scores(self, quality_scores: Optional[Sequence[float]]) -> None:
        """
        Set one quality score per sample.

        Raises:
            LockedException: If estimating.
            ValueError: If scores are None for PROSAC/PROMedS, or their length
                does not match the number of samples.
        """
        self._check_not_locked()
        if quality_scores is None:
            if self._method.requires_quality_scores:
                raise ValueError(f"{self._method.name} requires quality scores")
            self._quality_scores = None
            return

        num_samples = None if self._samples is None else len(self._samples)
        self._quality_scores = self._validate_quality_scores(quality_scores, num_samples)

    @quality_scores.setter
    def quality_scores(self, quality_scores: Optional[Sequence[float]]) -> None:
        self.set_quality_scores(quality_scores)

    def _validate_quality_scores(
        self, quality_scores: Sequence[float], num_samples: Optional[int]
    ) -> np.ndarray:
        scores = np.array(quality_scores, dtype=float)
        if scores.ndim != 1:
            raise ValueError(f"quality_scores must be 1D, got shape {scores.shape}")
        if not np.all(np.isfinite(scores)):
            raise ValueError("quality_scores must be finite")
        if num_samples is not None and len(scores) != num_samples:
            raise ValueError(
                f"quality_scores length {len(scores)} does not match {num_samples} samples"
            )
        if len(scores) < self._fitter.minimum_samples:
            raise ValueError(
                f"At least {self._fitter.minimum_samples} quality scores are required, "
                f"got {len(scores)}"
            )
        return scores

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def estimate(self) -> EstimationResult:
        """
        Robustly estimate the model.

        Returns:
            EstimationResult with the model, inliers and optional covariance.

        Raises:
            LockedException: If an estimation is already running.
            NotReadyException: If the estimator is not ready.
            RobustEstimatorException: If no model can be estimated.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedException()
        try:
            if not self.is_ready:
                raise NotReadyException()

            self._result = None
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            result = self._estimate()

            if self._listener is not None:
                self._listener.on_estimate_end(self)

            self._result = result
            return result
        finally:
            self._lock.release()

    def _create_sampler(self, rng: np.random.Generator, subset_size: int) -> Sampler:
        if self._method.requires_quality_scores:
            return ProsacSampler(
                self._quality_scores,
                subset_size,
                rng,
                convergence_draws=self._config.max_iterations,
            )
        return UniformSampler(len(self._samples), rng)

    def _create_scoring(self, subset_size: int) -> ScoringFunction:
        threshold = self.effective_threshold
        if self._method.uses_median:
            return MedianScoring(threshold, subset_size, self._config.inlier_factor)
        if self._method == RobustEstimatorMethod.MSAC:
            return TruncatedCostScoring(threshold)
        return InlierCountScoring(threshold)

    def _fit_candidate(self, sampler: Sampler, subset_size: int) -> np.ndarray:
        retries = self._config.max_fit_retries
        for _ in range(retries):
            indices = sampler.draw(subset_size)
            try:
                return np.asarray(
                    self._fitter.fit([self._samples[i] for i in indices]), dtype=float
                )
            except (DegenerateSubsetError, np.linalg.LinAlgError) as e:
                logger.debug("Degenerate subset %s: %s", indices.tolist(), e)

        raise RobustEstimatorException(
            f"Could not fit a model from {retries} consecutive sample subsets"
        )

    def _residuals(self, model: np.ndarray) -> np.ndarray:
        residuals = np.asarray(self._fitter.residuals(model, self._samples), dtype=float)
        if residuals.shape != (len(self._samples),):
            raise RobustEstimatorException(
                f"Fitter returned residuals of shape {residuals.shape}, "
                f"expected ({len(self._samples)},)"
            )
        # Non-finite residuals never count as inliers
        return np.where(np.isfinite(residuals), np.abs(residuals), np.inf)

    def _estimate(self) -> EstimationResult:
        config = self._config
        subset_size = self.preliminary_subset_size
        rng = np.random.default_rng(config.seed)
        sampler = self._create_sampler(rng, subset_size)
        scoring = self._create_scoring(subset_size)

        best: Optional[CandidateScore] = None
        best_model: Optional[np.ndarray] = None
        dynamic_max_iterations = config.max_iterations
        last_progress = 0.0
        iteration = 0

        while iteration < dynamic_max_iterations:
            model = self._fit_candidate(sampler, subset_size)
            score = scoring.score(self._residuals(model))

            if scoring.is_better(score, best) and score.num_inliers > 0:
                best, best_model = score, model
                dynamic_max_iterations = required_iterations(
                    config.confidence,
                    scoring.bound_inlier_ratio(score),
                    subset_size,
                    config.max_iterations,
                )
                logger.debug(
                    "Iteration %d: new best %s candidate with %d/%d inliers, "
                    "%d iterations required",
                    iteration + 1,
                    self._method.name,
                    score.num_inliers,
                    len(score.inliers),
                    dynamic_max_iterations,
                )

            iteration += 1
            converged = best is not None and scoring.is_converged(best)
            if converged:
                dynamic_max_iterations = iteration

            if self._listener is not None:
                self._listener.on_estimate_next_iteration(self, iteration)
                progress = min(1.0, iteration / dynamic_max_iterations)
                if progress > last_progress and progress - last_progress >= config.progress_delta:
                    last_progress = progress
                    self._listener.on_estimate_progress_change(self, progress)

            if converged:
                break

        if best is None:
            raise RobustEstimatorException(
                f"No valid model found after {iteration} iterations"
            )

        inliers_data = best.to_inliers_data()
        model = best_model
        covariance = None
        refined = False

        if config.result_refined:
            try:
                outcome = refine(
                    self._fitter,
                    self._samples,
                    inliers_data,
                    best_model,
                    keep_covariance=config.covariance_kept,
                    use_sample_covariances=config.use_sample_covariances,
                )
            except RefinementError as e:
                if config.refinement_required:
                    raise
                warnings.warn(
                    f"Refinement failed, returning unrefined {self._method.name} model: {e}",
                    RuntimeWarning,
                )
            else:
                model = outcome.model
                covariance = outcome.covariance
                refined = True

        variances = {}
        if covariance is not None:
            variances = {
                name: covariance[block, block]
                for name, block in self._fitter.parameter_blocks.items()
            }

        return EstimationResult(
            model=model,
            inliers_data=inliers_data,
            method=self._method,
            iterations=iteration,
            refined=refined,
            covariance=covariance,
            variances=variances,
        )
