"""
Sequential robust estimation of a radio source from ranging and RSSI readings.

The source position is estimated robustly from the ranging part of the
readings. With that position held fixed, the transmitted power and/or the
path-loss exponent are then estimated robustly from the RSSI part. Running
the two stages in sequence keeps every robust problem small (dim + 1 and at
most 2 samples per subset) instead of fitting all parameters at once.

Classes:
    - SequentialRangingAndRssiRadioSourceEstimator
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np

from ipnav.rf.fitters import (
    DEFAULT_PATH_LOSS_EXPONENT,
    RangingPositionFitter,
    RssiPathLossFitter,
)
from ipnav.rf.readings import RangingAndRssiReading, to_ranging_readings, to_rssi_readings
from ipnav.robust.exceptions import LockedException, NotReadyException
from ipnav.robust.listener import RobustEstimatorListener
from ipnav.robust.sequential import SequentialEstimationResult, SequentialRobustEstimator
from ipnav.robust.types import (
    DEFAULT_CONFIDENCE,
    DEFAULT_KEEP_COVARIANCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_REFINE_RESULT,
    DEFAULT_USE_SAMPLE_COVARIANCES,
    InliersData,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    validate_confidence,
    validate_max_iterations,
    validate_progress_delta,
    validate_threshold,
)

logger = logging.getLogger(__name__)

DEFAULT_RANGING_METHOD = RobustEstimatorMethod.PROMEDS
DEFAULT_RSSI_METHOD = RobustEstimatorMethod.PROMEDS
DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED = True
DEFAULT_PATH_LOSS_ESTIMATION_ENABLED = False


def dbm_to_power(dbm: float) -> float:
    """
    Convert power from dBm to milliwatts.

    Example:
        >>> dbm_to_power(20.0)
        100.0
    """
    return 10.0 ** (dbm / 10.0)


class _ProgressRelay(RobustEstimatorListener):
    """Forward composite progress to the radio-source estimator listener."""

    def __init__(self, owner: "SequentialRangingAndRssiRadioSourceEstimator"):
        self.owner = owner

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        listener = self.owner.listener
        if listener is not None:
            listener.on_estimate_progress_change(self.owner, progress)


class SequentialRangingAndRssiRadioSourceEstimator:
    """
    Robust estimator of radio-source position, transmitted power and path loss.

    Stage 1 estimates the position from ranging readings, stage 2 estimates
    the enabled path-loss parameters from RSSI readings at that position.
    If neither transmitted power nor path-loss exponent is estimated, only
    stage 1 runs and both parameters report their initial values.

    Args:
        readings: Ranging and RSSI readings of the source.
        quality_scores: Optional quality score per reading (higher is
            better), shared by both stages. Required by PROSAC/PROMedS.
        dims: Position dimension (2 or 3).
        ranging_method: Robust method of the position stage.
        rssi_method: Robust method of the path-loss stage.
        ranging_threshold: Threshold of the position stage (meters), or None.
        rssi_threshold: Threshold of the path-loss stage (dB), or None.
        ranging_confidence: Confidence of the position stage.
        rssi_confidence: Confidence of the path-loss stage.
        ranging_max_iterations: Maximum iterations of the position stage.
        rssi_max_iterations: Maximum iterations of the path-loss stage.
        result_refined: Refine each stage over its inliers.
        covariance_kept: Keep the covariance of refined parameters.
        use_reading_position_covariances: Inflate measurement variances with
            the covariance of the reading positions.
        transmitted_power_estimation_enabled: Estimate the transmitted power.
        path_loss_estimation_enabled: Estimate the path-loss exponent.
        initial_transmitted_power_dbm: Transmitted power used when it is not
            estimated. Required when only the path-loss exponent is estimated.
        initial_path_loss_exponent: Path-loss exponent used when it is not
            estimated.
        initial_position: Starting point of the position stage subset
            solutions, or None for closed-form trilateration.
        progress_delta: Minimum progress increment between notifications.
        listener: Listener of estimation events.
        seed: Seed of the subset sampling of both stages.

    Example:
        >>> from ipnav.rf.measurement_models import rss_pathloss
        >>> source = np.array([2.0, 3.0])
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10], [5, -4]], dtype=float)
        >>> readings = [
        ...     RangingAndRssiReading(
        ...         a, np.linalg.norm(a - source),
        ...         rss_pathloss(-30.0, np.linalg.norm(a - source), 2.0))
        ...     for a in anchors
        ... ]
        >>> estimator = SequentialRangingAndRssiRadioSourceEstimator(
        ...     readings, dims=2,
        ...     ranging_method=RobustEstimatorMethod.RANSAC,
        ...     rssi_method=RobustEstimatorMethod.RANSAC, seed=0)
        >>> _ = estimator.estimate()
        >>> np.allclose(estimator.estimated_position, source)
        True
        >>> round(estimator.estimated_transmitted_power_dbm, 6)
        -30.0
    """

    def __init__(
        self,
        readings: Optional[Sequence[RangingAndRssiReading]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        dims: int = 3,
        ranging_method: RobustEstimatorMethod = DEFAULT_RANGING_METHOD,
        rssi_method: RobustEstimatorMethod = DEFAULT_RSSI_METHOD,
        ranging_threshold: Optional[float] = None,
        rssi_threshold: Optional[float] = None,
        ranging_confidence: float = DEFAULT_CONFIDENCE,
        rssi_confidence: float = DEFAULT_CONFIDENCE,
        ranging_max_iterations: int = DEFAULT_MAX_ITERATIONS,
        rssi_max_iterations: int = DEFAULT_MAX_ITERATIONS,
        result_refined: bool = DEFAULT_REFINE_RESULT,
        covariance_kept: bool = DEFAULT_KEEP_COVARIANCE,
        use_reading_position_covariances: bool = DEFAULT_USE_SAMPLE_COVARIANCES,
        transmitted_power_estimation_enabled: bool = DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
        path_loss_estimation_enabled: bool = DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        initial_position: Optional[np.ndarray] = None,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        listener: Optional[RobustEstimatorListener] = None,
        seed: Optional[int] = None,
    ):
        if dims not in (2, 3):
            raise ValueError(f"dims must be 2 or 3, got {dims}")
        self._dims = dims
        self._lock = threading.Lock()

        self._ranging_method = RobustEstimatorMethod(ranging_method)
        self._rssi_method = RobustEstimatorMethod(rssi_method)
        self._ranging_threshold = validate_threshold(ranging_threshold)
        self._rssi_threshold = validate_threshold(rssi_threshold)
        self._ranging_confidence = validate_confidence(ranging_confidence)
        self._rssi_confidence = validate_confidence(rssi_confidence)
        self._ranging_max_iterations = validate_max_iterations(ranging_max_iterations)
        self._rssi_max_iterations = validate_max_iterations(rssi_max_iterations)
        self._result_refined = bool(result_refined)
        self._covariance_kept = bool(covariance_kept)
        self._use_reading_position_covariances = bool(use_reading_position_covariances)
        self._transmitted_power_estimation_enabled = bool(transmitted_power_estimation_enabled)
        self._path_loss_estimation_enabled = bool(path_loss_estimation_enabled)
        self._initial_transmitted_power_dbm = (
            None if initial_transmitted_power_dbm is None else float(initial_transmitted_power_dbm)
        )
        self._initial_path_loss_exponent = float(initial_path_loss_exponent)
        self._initial_position = self._validate_initial_position(initial_position)
        self._progress_delta = validate_progress_delta(progress_delta)
        self._listener = listener
        self._seed = seed

        self._readings: Optional[tuple] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._clear_result()

        if readings is not None:
            self.set_readings(readings)
        if quality_scores is not None:
            self.quality_scores = quality_scores

    def _clear_result(self) -> None:
        self._result: Optional[SequentialEstimationResult] = None
        self._estimated_position: Optional[np.ndarray] = None
        self._estimated_position_covariance: Optional[np.ndarray] = None
        self._estimated_transmitted_power_dbm: Optional[float] = None
        self._estimated_transmitted_power_variance: Optional[float] = None
        self._estimated_path_loss_exponent: Optional[float] = None
        self._estimated_path_loss_exponent_variance: Optional[float] = None
        self._covariance: Optional[np.ndarray] = None

    def _check_not_locked(self) -> None:
        if self.is_locked:
            raise LockedException()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    @property
    def rssi_stage_enabled(self) -> bool:
        """True when at least one path-loss parameter is estimated."""
        return self._transmitted_power_estimation_enabled or self._path_loss_estimation_enabled

    @property
    def minimum_readings(self) -> int:
        """Readings needed by the position stage (dim + 1)."""
        return self._dims + 1

    @property
    def is_ready(self) -> bool:
        if self._readings is None or len(self._readings) < self.minimum_readings:
            return False
        methods = [self._ranging_method]
        if self.rssi_stage_enabled:
            methods.append(self._rssi_method)
            if (
                not self._transmitted_power_estimation_enabled
                and self._initial_transmitted_power_dbm is None
            ):
                return False
        if any(m.requires_quality_scores for m in methods):
            return self._quality_scores is not None
        return True

    @property
    def readings(self) -> Optional[tuple]:
        return self._readings

    def set_readings(self, readings: Sequence[RangingAndRssiReading]) -> None:
        """
        Set the readings.

        Raises:
            LockedException: If estimating.
            TypeError: If a reading is not a RangingAndRssiReading.
            ValueError: If there are too few readings, their dimension does
                not match, or the quality scores no longer match.
        """
        self._check_not_locked()
        readings = tuple(readings)
        for reading in readings:
            if not isinstance(reading, RangingAndRssiReading):
                raise TypeError(f"Expected RangingAndRssiReading, got {type(reading)}")
            if reading.dimensions != self._dims:
                raise ValueError(
                    f"Expected {self._dims}D readings, got a {reading.dimensions}D reading"
                )
        if len(readings) < self.minimum_readings:
            raise ValueError(
                f"At least {self.minimum_readings} readings are required, got {len(readings)}"
            )
        if self._quality_scores is not None and len(self._quality_scores) != len(readings):
            raise ValueError(
                f"quality_scores length {len(self._quality_scores)} does not match "
                f"{len(readings)} readings"
            )
        self._readings = readings

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, quality_scores: Optional[Sequence[float]]) -> None:
        self._check_not_locked()
        if quality_scores is None:
            self._quality_scores = None
            return
        scores = np.array(quality_scores, dtype=float)
        if scores.ndim != 1 or not np.all(np.isfinite(scores)):
            raise ValueError("quality_scores must be a finite 1D sequence")
        if len(scores) < self.minimum_readings:
            raise ValueError(
                f"At least {self.minimum_readings} quality scores are required, got {len(scores)}"
            )
        if self._readings is not None and len(scores) != len(self._readings):
            raise ValueError(
                f"quality_scores length {len(scores)} does not match "
                f"{len(self._readings)} readings"
            )
        self._quality_scores = scores

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def listener(self) -> Optional[RobustEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[RobustEstimatorListener]) -> None:
        self._check_not_locked()
        self._listener = listener

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, progress_delta: float) -> None:
        self._check_not_locked()
        self._progress_delta = validate_progress_delta(progress_delta)

    @property
    def ranging_method(self) -> RobustEstimatorMethod:
        return self._ranging_method

    @ranging_method.setter
    def ranging_method(self, method: RobustEstimatorMethod) -> None:
        self._check_not_locked()
        self._ranging_method = RobustEstimatorMethod(method)

    @property
    def rssi_method(self) -> RobustEstimatorMethod:
        return self._rssi_method

    @rssi_method.setter
    def rssi_method(self, method: RobustEstimatorMethod) -> None:
        self._check_not_locked()
        self._rssi_method = RobustEstimatorMethod(method)

    @property
    def ranging_threshold(self) -> Optional[float]:
        return self._ranging_threshold

    @ranging_threshold.setter
    def ranging_threshold(self, threshold: Optional[float]) -> None:
        self._check_not_locked()
        self._ranging_threshold = validate_threshold(threshold)

    @property
    def rssi_threshold(self) -> Optional[float]:
        return self._rssi_threshold

    @rssi_threshold.setter
    def rssi_threshold(self, threshold: Optional[float]) -> None:
        self._check_not_locked()
        self._rssi_threshold = validate_threshold(threshold)

    @property
    def ranging_confidence(self) -> float:
        return self._ranging_confidence

    @ranging_confidence.setter
    def ranging_confidence(self, confidence: float) -> None:
        self._check_not_locked()
        self._ranging_confidence = validate_confidence(confidence)

    @property
    def rssi_confidence(self) -> float:
        return self._rssi_confidence

    @rssi_confidence.setter
    def rssi_confidence(self, confidence: float) -> None:
        self._check_not_locked()
        self._rssi_confidence = validate_confidence(confidence)

    @property
    def ranging_max_iterations(self) -> int:
        return self._ranging_max_iterations

    @ranging_max_iterations.setter
    def ranging_max_iterations(self, max_iterations: int) -> None:
        self._check_not_locked()
        self._ranging_max_iterations = validate_max_iterations(max_iterations)

    @property
    def rssi_max_iterations(self) -> int:
        return self._rssi_max_iterations

    @rssi_max_iterations.setter
    def rssi_max_iterations(self, max_iterations: int) -> None:
        self._check_not_locked()
        self._rssi_max_iterations = validate_max_iterations(max_iterations)

    @property
    def result_refined(self) -> bool:
        return self._result_refined

    @result_refined.setter
    def result_refined(self, result_refined: bool) -> None:
        self._check_not_locked()
        self._result_refined = bool(result_refined)

    @property
    def covariance_kept(self) -> bool:
        return self._covariance_kept

    @covariance_kept.setter
    def covariance_kept(self, covariance_kept: bool) -> None:
        self._check_not_locked()
        self._covariance_kept = bool(covariance_kept)

    @property
    def use_reading_position_covariances(self) -> bool:
        return self._use_reading_position_covariances

    @use_reading_position_covariances.setter
    def use_reading_position_covariances(self, enabled: bool) -> None:
        self._check_not_locked()
        self._use_reading_position_covariances = bool(enabled)

    @property
    def transmitted_power_estimation_enabled(self) -> bool:
        return self._transmitted_power_estimation_enabled

    @transmitted_power_estimation_enabled.setter
    def transmitted_power_estimation_enabled(self, enabled: bool) -> None:
        self._check_not_locked()
        self._transmitted_power_estimation_enabled = bool(enabled)

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, enabled: bool) -> None:
        self._check_not_locked()
        self._path_loss_estimation_enabled = bool(enabled)

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        return self._initial_transmitted_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, power_dbm: Optional[float]) -> None:
        self._check_not_locked()
        self._initial_transmitted_power_dbm = None if power_dbm is None else float(power_dbm)

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, exponent: float) -> None:
        self._check_not_locked()
        self._initial_path_loss_exponent = float(exponent)

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position: Optional[np.ndarray]) -> None:
        self._check_not_locked()
        self._initial_position = self._validate_initial_position(position)

    def _validate_initial_position(self, position: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if position is None:
            return None
        position = np.array(position, dtype=float)
        if position.shape != (self._dims,):
            raise ValueError(
                f"initial_position must have shape ({self._dims},), got {position.shape}"
            )
        return position

    @property
    def seed(self) -> Optional[int]:
        return self._seed

    @seed.setter
    def seed(self, seed: Optional[int]) -> None:
        self._check_not_locked()
        self._seed = seed

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def result(self) -> Optional[SequentialEstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return self._estimated_position

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        """Available when the position was refined and its covariance kept."""
        return self._estimated_position_covariance

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._estimated_transmitted_power_dbm

    @property
    def estimated_transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts."""
        if self._estimated_transmitted_power_dbm is None:
            return None
        return dbm_to_power(self._estimated_transmitted_power_dbm)

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return self._estimated_transmitted_power_variance

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._estimated_path_loss_exponent

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return self._estimated_path_loss_exponent_variance

    @property
    def covariance(self) -> Optional[np.ndarray]:
        """
        Covariance of [position, transmitted power, path-loss exponent].

        Only estimated parameters are included. None unless every stage
        provides a covariance.
        """
        return self._covariance

    @property
    def ranging_inliers_data(self) -> Optional[InliersData]:
        return None if self._result is None else self._result.first.inliers_data

    @property
    def rssi_inliers_data(self) -> Optional[InliersData]:
        if self._result is None or self._result.second is None:
            return None
        return self._result.second.inliers_data

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _stage_config(
        self, threshold: Optional[float], confidence: float, max_iterations: int
    ) -> RobustEstimatorConfig:
        return RobustEstimatorConfig(
            confidence=confidence,
            max_iterations=max_iterations,
            threshold=threshold,
            result_refined=self._result_refined,
            covariance_kept=self._covariance_kept,
            use_sample_covariances=self._use_reading_position_covariances,
            seed=self._seed,
        )

    def _rssi_fitter(self) -> RssiPathLossFitter:
        initial_power = self._initial_transmitted_power_dbm
        return RssiPathLossFitter(
            transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
            path_loss_estimation_enabled=self._path_loss_estimation_enabled,
            initial_transmitted_power_dbm=0.0 if initial_power is None else initial_power,
            initial_path_loss_exponent=self._initial_path_loss_exponent,
        )

    def _build_estimator(self) -> SequentialRobustEstimator:
        rssi_stage = self.rssi_stage_enabled
        # Only used for its sample handling when the RSSI stage is disabled
        rssi_fitter = self._rssi_fitter() if rssi_stage else RssiPathLossFitter()

        def scores_for(method: RobustEstimatorMethod) -> Optional[np.ndarray]:
            return self._quality_scores if method.requires_quality_scores else None

        return SequentialRobustEstimator(
            RangingPositionFitter(self._dims, initial_position=self._initial_position),
            rssi_fitter,
            first_samples=to_ranging_readings(self._readings),
            second_samples=to_rssi_readings(self._readings) if rssi_stage else None,
            first_method=self._ranging_method,
            second_method=self._rssi_method,
            first_quality_scores=scores_for(self._ranging_method),
            second_quality_scores=scores_for(self._rssi_method) if rssi_stage else None,
            first_config=self._stage_config(
                self._ranging_threshold, self._ranging_confidence, self._ranging_max_iterations
            ),
            second_config=self._stage_config(
                self._rssi_threshold, self._rssi_confidence, self._rssi_max_iterations
            ),
            progress_delta=self._progress_delta,
            second_stage_enabled=rssi_stage,
            listener=_ProgressRelay(self),
        )

    def estimate(self) -> SequentialEstimationResult:
        """
        Robustly estimate position, transmitted power and path-loss exponent.

        Raises:
            LockedException: If an estimation is already running.
            NotReadyException: If readings, quality scores or initial values
                are missing.
            RobustEstimatorException: If either stage fails.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedException()
        try:
            if not self.is_ready:
                raise NotReadyException()

            self._clear_result()
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            result = self._build_estimator().estimate()
            self._store_result(result)

            if self._listener is not None:
                self._listener.on_estimate_end(self)
            return result
        finally:
            self._lock.release()

    def _store_result(self, result: SequentialEstimationResult) -> None:
        self._estimated_position = result.first.model
        self._estimated_position_covariance = result.first.covariance
        self._covariance = result.covariance

        power = self._initial_transmitted_power_dbm
        exponent = self._initial_path_loss_exponent
        power_variance = None
        exponent_variance = None

        if result.second is not None:
            fitted_power, fitted_exponent = self._rssi_fitter().unpack(result.second.model)
            variances = result.second.variances
            if self._transmitted_power_estimation_enabled:
                power = fitted_power
                if "transmitted_power" in variances:
                    power_variance = float(variances["transmitted_power"][0, 0])
            if self._path_loss_estimation_enabled:
                exponent = fitted_exponent
                if "path_loss_exponent" in variances:
                    exponent_variance = float(variances["path_loss_exponent"][0, 0])

        self._estimated_transmitted_power_dbm = power
        self._estimated_transmitted_power_variance = power_variance
        self._estimated_path_loss_exponent = exponent
        self._estimated_path_loss_exponent_variance = exponent_variance
        self._result = result

        logger.debug(
            "Radio source at %s, transmitted power %s dBm, path-loss exponent %.3f",
            np.array2string(self._estimated_position, precision=3),
            "n/a" if power is None else f"{power:.2f}",
            exponent,
        )
