"""
Robust magnetometer hard-iron calibration.

Without distortion, magnetometer readings taken while the device rotates lie
on a sphere centered at the origin with radius equal to the local field
magnitude B. A hard-iron offset b (e.g. a speaker magnet next to the sensor)
moves the sphere center:

    ||m_k - b|| = B

Expanding the square gives an equation linear in (b, c):

    ||m_k||² = 2 m_k'b + c,  c = B² - ||b||²

so four readings determine a candidate and a robust estimator rejects
readings disturbed by transient fields (elevators, passing vehicles).

Functions and classes:
    - HardIronFitter: Sphere fitter for RobustEstimator
    - calibrate_hard_iron: Robust calibration of a batch of readings
    - compensate_hard_iron: Remove a hard-iron offset from readings
"""

from typing import Dict, Optional, Sequence

import numpy as np

from ipnav.estimators.least_squares import linear_least_squares
from ipnav.robust.engine import RobustEstimator
from ipnav.robust.exceptions import DegenerateSubsetError
from ipnav.robust.fitter import LeastSquaresModelFitter
from ipnav.robust.listener import RobustEstimatorListener
from ipnav.robust.types import EstimationResult, RobustEstimatorMethod


class HardIronFitter(LeastSquaresModelFitter):
    """
    Fitter of hard-iron offset and field magnitude.

    Samples are magnetometer readings of shape (3,). The model is
    [b_x, b_y, b_z, B] and the residual of a reading is | ||m - b|| - B |.

    Args:
        noise_std: Standard deviation of the readings (units of the
                   readings), used to weight the refinement.

    Example:
        >>> fitter = HardIronFitter()
        >>> offset = np.array([5.0, -2.0, 1.0])
        >>> readings = [offset + 40.0 * u for u in np.eye(3)] + [offset - [0.0, 0.0, 40.0]]
        >>> np.allclose(fitter.fit(readings), [5.0, -2.0, 1.0, 40.0])
        True
    """

    def __init__(self, noise_std: float = 1.0):
        if not noise_std > 0.0:
            raise ValueError(f"noise_std must be positive, got {noise_std}")
        self.noise_std = float(noise_std)

    @property
    def minimum_samples(self) -> int:
        return 4

    @property
    def dimensions(self) -> int:
        return 4

    @property
    def parameter_blocks(self) -> Dict[str, slice]:
        return {"offset": slice(0, 3), "field_magnitude": slice(3, 4)}

    @staticmethod
    def _stack(samples: Sequence) -> np.ndarray:
        m = np.array([np.asarray(s, dtype=float) for s in samples])
        if m.ndim != 2 or m.shape[1] != 3:
            raise ValueError(f"Magnetometer readings must have shape (3,), got {m.shape[1:]}")
        return m

    def fit(self, samples: Sequence) -> np.ndarray:
        m = self._stack(samples)
        A = np.column_stack([2.0 * m, np.ones(len(m))])
        y = np.sum(m**2, axis=1)
        try:
            params, _ = linear_least_squares(A, y)
        except np.linalg.LinAlgError as e:
            raise DegenerateSubsetError(f"Coplanar magnetometer readings: {e}") from e

        offset = params[:3]
        radius_sq = params[3] + offset @ offset
        if radius_sq <= 0.0:
            raise DegenerateSubsetError(f"Fitted sphere has no real radius: B²={radius_sq}")
        return np.append(offset, np.sqrt(radius_sq))

    def observations(self, samples: Sequence) -> np.ndarray:
        return np.zeros(len(samples))

    def predict(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        m = self._stack(samples)
        return np.linalg.norm(m - model[:3], axis=1) - model[3]

    def jacobian(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        m = self._stack(samples)
        diff = m - model[:3]
        norms = np.linalg.norm(diff, axis=1)
        J = np.zeros((len(m), 4))
        nonzero = norms > 0.0
        J[nonzero, :3] = -diff[nonzero] / norms[nonzero, None]
        J[:, 3] = -1.0
        return J

    def sample_variances(
        self, model: np.ndarray, samples: Sequence, use_covariances: bool = True
    ) -> np.ndarray:
        return np.full(len(samples), self.noise_std**2)


def calibrate_hard_iron(
    mag_readings: np.ndarray,
    method: RobustEstimatorMethod = RobustEstimatorMethod.RANSAC,
    quality_scores: Optional[Sequence[float]] = None,
    noise_std: float = 1.0,
    listener: Optional[RobustEstimatorListener] = None,
    **config,
) -> EstimationResult:
    """
    Robustly estimate the hard-iron offset from magnetometer readings.

    Args:
        mag_readings: Readings taken while rotating the device, shape (N, 3).
        method: Robust method.
        quality_scores: Quality score per reading (PROSAC/PROMedS).
        noise_std: Reading noise standard deviation.
        listener: Optional listener of estimation events.
        **config: RobustEstimatorConfig fields (threshold, seed, ...).
                  The threshold is in the units of the readings.

    Returns:
        EstimationResult with model [b_x, b_y, b_z, B] and, when refined,
        "offset" and "field_magnitude" variances.

    Raises:
        ValueError: If readings do not have shape (N, 3) with N >= 4.
        RobustEstimatorException: If no sphere can be fitted.
    """
    mag_readings = np.asarray(mag_readings, dtype=float)
    if mag_readings.ndim != 2 or mag_readings.shape[1] != 3:
        raise ValueError(f"mag_readings must have shape (N, 3), got {mag_readings.shape}")

    estimator = RobustEstimator(
        HardIronFitter(noise_std),
        method,
        samples=list(mag_readings),
        quality_scores=quality_scores,
        listener=listener,
        **config,
    )
    return estimator.estimate()


def compensate_hard_iron(mag_raw: np.ndarray, offset: np.ndarray) -> np.ndarray:
    """
    Correct magnetometer hard-iron bias.

    Correction:
        mag_corrected = mag_raw - offset

    Args:
        mag_raw: Raw magnetometer readings in body frame, shape (3,) or (N, 3).
        offset: Hard-iron offset in body frame, shape (3,). Units must match.

    Returns:
        Hard-iron corrected readings, same shape as mag_raw.

    Example:
        >>> mag_raw = np.array([25.0, 5.0, -35.0])
        >>> offset = np.array([5.0, 0.0, 5.0])
        >>> compensate_hard_iron(mag_raw, offset)
        array([ 20.,   5., -40.])
    """
    mag_raw = np.asarray(mag_raw, dtype=float)
    offset = np.asarray(offset, dtype=float)
    if mag_raw.shape[-1:] != (3,) or mag_raw.ndim > 2:
        raise ValueError(f"mag_raw must have shape (3,) or (N, 3), got {mag_raw.shape}")
    if offset.shape != (3,):
        raise ValueError(f"offset must have shape (3,), got {offset.shape}")

    return mag_raw - offset
