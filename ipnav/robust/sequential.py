"""
Sequential composition of two robust estimations.

Some models are easier to estimate in two robust steps, the second one
using the first result as a fixed anchor. For a radio source, the position
is first estimated robustly from ranging readings, then transmitted power
and path-loss exponent are estimated robustly from RSSI readings with the
position held fixed.

The composite estimator:
    - runs stage 1, anchors the stage 2 fitter at its result and runs stage 2,
    - reports a single progress stream: stage 1 maps to [0, 0.5] and
      stage 2 to [0.5, 1],
    - combines the covariances block-diagonally, or omits the combined
      covariance when either stage has none,
    - stays locked for the full duration of both stages.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ipnav.robust.covariance import build_block_diagonal
from ipnav.robust.engine import RobustEstimator
from ipnav.robust.exceptions import LockedException, NotReadyException
from ipnav.robust.fitter import AnchoredModelFitter, ModelFitter
from ipnav.robust.listener import RobustEstimatorListener
from ipnav.robust.types import (
    DEFAULT_PROGRESS_DELTA,
    EstimationResult,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
    validate_progress_delta,
)

logger = logging.getLogger(__name__)


@dataclass
class SequentialEstimationResult:
    """Result of a sequential robust estimation.

    Attributes:
        first: Result of stage 1.
        second: Result of stage 2, or None if stage 2 is disabled.
        covariance: Block-diagonal covariance of both stages, the stage 1
            covariance if stage 2 is disabled, or None if a required block
            is missing.
    """

    first: EstimationResult
    second: Optional[EstimationResult]
    covariance: Optional[np.ndarray]

    @property
    def model(self) -> np.ndarray:
        """Concatenated parameters of both stages."""
        if self.second is None:
            return self.first.model
        return np.concatenate([self.first.model, self.second.model])


class _StageProgressForwarder(RobustEstimatorListener):
    """Rescale the progress of one stage into the composite progress stream."""

    def __init__(self, owner: "SequentialRobustEstimator", offset: float, scale: float):
        self.owner = owner
        self.offset = offset
        self.scale = scale

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        listener = self.owner.listener
        if listener is not None:
            listener.on_estimate_progress_change(self.owner, self.offset + self.scale * progress)


class SequentialRobustEstimator:
    """
    Two-stage robust estimator.

    Args:
        first_fitter: Fitter of stage 1.
        second_fitter: Fitter of stage 2, anchored at the stage 1 result
            before stage 2 runs.
        first_samples: Samples of stage 1.
        second_samples: Samples of stage 2.
        first_method: Robust method of stage 1.
        second_method: Robust method of stage 2.
        first_quality_scores: Quality scores of stage 1 samples.
        second_quality_scores: Quality scores of stage 2 samples.
        first_config: Configuration of stage 1.
        second_config: Configuration of stage 2.
        progress_delta: Minimum composite progress increment between two
            progress notifications.
        second_stage_enabled: If False, only stage 1 runs.
        listener: Listener of composite estimation events.

    Raises:
        ValueError: If samples, quality scores or configuration are invalid.
    """

    def __init__(
        self,
        first_fitter: ModelFitter,
        second_fitter: AnchoredModelFitter,
        first_samples: Optional[Sequence] = None,
        second_samples: Optional[Sequence] = None,
        first_method: RobustEstimatorMethod = RobustEstimatorMethod.RANSAC,
        second_method: RobustEstimatorMethod = RobustEstimatorMethod.RANSAC,
        first_quality_scores: Optional[Sequence[float]] = None,
        second_quality_scores: Optional[Sequence[float]] = None,
        first_config: Optional[RobustEstimatorConfig] = None,
        second_config: Optional[RobustEstimatorConfig] = None,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        second_stage_enabled: bool = True,
        listener: Optional[RobustEstimatorListener] = None,
    ):
        if not isinstance(second_fitter, AnchoredModelFitter):
            raise TypeError(
                f"second_fitter must be an AnchoredModelFitter, got {type(second_fitter)}"
            )

        self._lock = threading.Lock()
        # Stage estimators hold and validate samples, scores and configuration.
        # estimate() runs copies of them; stage 2 gets the anchored fitter.
        self._first = RobustEstimator(
            first_fitter,
            first_method,
            samples=first_samples,
            quality_scores=first_quality_scores,
            config=first_config,
        )
        self._second = RobustEstimator(
            second_fitter,
            second_method,
            samples=second_samples,
            quality_scores=second_quality_scores,
            config=second_config,
        )
        self._progress_delta = validate_progress_delta(progress_delta)
        self._second_stage_enabled = bool(second_stage_enabled)
        self._listener = listener
        self._result: Optional[SequentialEstimationResult] = None

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    @property
    def is_ready(self) -> bool:
        if not self._first.is_ready:
            return False
        return not self._second_stage_enabled or self._second.is_ready

    @property
    def result(self) -> Optional[SequentialEstimationResult]:
        return self._result

    def _check_not_locked(self) -> None:
        if self.is_locked:
            raise LockedException()

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
    def second_stage_enabled(self) -> bool:
        return self._second_stage_enabled

    @second_stage_enabled.setter
    def second_stage_enabled(self, enabled: bool) -> None:
        self._check_not_locked()
        self._second_stage_enabled = bool(enabled)

    @property
    def first_method(self) -> RobustEstimatorMethod:
        return self._first.method

    @property
    def second_method(self) -> RobustEstimatorMethod:
        return self._second.method

    @property
    def first_config(self) -> RobustEstimatorConfig:
        return self._first.config

    @first_config.setter
    def first_config(self, config: RobustEstimatorConfig) -> None:
        self._check_not_locked()
        self._first.config = config

    @property
    def second_config(self) -> RobustEstimatorConfig:
        return self._second.config

    @second_config.setter
    def second_config(self, config: RobustEstimatorConfig) -> None:
        self._check_not_locked()
        self._second.config = config

    @property
    def first_fitter(self) -> ModelFitter:
        return self._first.fitter

    @property
    def second_fitter(self) -> AnchoredModelFitter:
        return self._second.fitter

    @property
    def first_samples(self) -> Optional[tuple]:
        return self._first.samples

    @property
    def second_samples(self) -> Optional[tuple]:
        return self._second.samples

    def set_first_samples(
        self, samples: Sequence, quality_scores: Optional[Sequence[float]] = None
    ) -> None:
        self._check_not_locked()
        self._first.set_samples(samples, quality_scores)

    def set_second_samples(
        self, samples: Sequence, quality_scores: Optional[Sequence[float]] = None
    ) -> None:
        self._check_not_locked()
        self._second.set_samples(samples, quality_scores)

    def estimate(self) -> SequentialEstimationResult:
        """
        Run both stages.

        Raises:
            LockedException: If an estimation is already running.
            NotReadyException: If a stage is not ready.
            RobustEstimatorException: If either stage fails.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedException()
        try:
            if not self.is_ready:
                raise NotReadyException()

            self._result = None
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            if self._second_stage_enabled:
                stage_delta = min(1.0, 2.0 * self._progress_delta)
                scale = 0.5
            else:
                stage_delta = self._progress_delta
                scale = 1.0

            first = self._run_stage(self._first, self._first.fitter, stage_delta, 0.0, scale)
            logger.debug("Stage 1 finished after %d iterations", first.iterations)

            second = None
            covariance = first.covariance
            if self._second_stage_enabled:
                anchored = self._second.fitter.anchored(first)
                second = self._run_stage(self._second, anchored, stage_delta, 0.5, 0.5)
                logger.debug("Stage 2 finished after %d iterations", second.iterations)
                covariance = build_block_diagonal([first.covariance, second.covariance])

            result = SequentialEstimationResult(first=first, second=second, covariance=covariance)

            if self._listener is not None:
                self._listener.on_estimate_end(self)

            self._result = result
            return result
        finally:
            self._lock.release()

    def _run_stage(
        self,
        stage: RobustEstimator,
        fitter: ModelFitter,
        progress_delta: float,
        offset: float,
        scale: float,
    ) -> EstimationResult:
        """Run a stage on a copy of its estimator; stage settings stay untouched."""
        estimator = RobustEstimator(
            fitter,
            stage.method,
            samples=stage.samples,
            quality_scores=stage.quality_scores,
            listener=_StageProgressForwarder(self, offset, scale),
            config=stage.config.with_updates(progress_delta=progress_delta),
        )
        return estimator.estimate()
