"""
Model fitters for radio-source estimation.

Classes:
    - RangingPositionFitter: Source position from ranging readings
      (linear trilateration on minimal subsets, nonlinear refinement)
    - RssiPathLossFitter: Transmitted power and/or path-loss exponent from
      RSSI readings, with the source position known

Both fitters work on reading objects (see ipnav.rf.readings) and can be
plugged into ipnav.robust.RobustEstimator.
"""

from typing import Dict, Optional, Sequence

import numpy as np

from ipnav.estimators.least_squares import linear_least_squares
from ipnav.estimators.nonlinear_least_squares import levenberg_marquardt
from ipnav.rf.measurement_models import (
    rss_distance_derivative,
    rss_pathloss,
    toa_range_jacobian,
)
from ipnav.rf.readings import stack_positions
from ipnav.robust.exceptions import DegenerateSubsetError
from ipnav.robust.fitter import AnchoredModelFitter, LeastSquaresModelFitter
from ipnav.robust.types import EstimationResult

#: Default path-loss exponent (free space)
DEFAULT_PATH_LOSS_EXPONENT = 2.0

#: Default transmitted power (dBm at 1 m) used when it is not estimated
DEFAULT_TRANSMITTED_POWER_DBM = 0.0

#: Variance assumed for readings without standard deviation
DEFAULT_MEASUREMENT_VARIANCE = 1.0


def _projected_variances(gradients: np.ndarray, covariances: Sequence) -> np.ndarray:
    """g_i' Σ_i g_i for every reading, 0 for readings without covariance."""
    out = np.zeros(len(gradients))
    for i, (g, cov) in enumerate(zip(gradients, covariances)):
        if cov is not None:
            out[i] = float(g @ cov @ g)
    return out


class RangingPositionFitter(LeastSquaresModelFitter):
    """
    Fitter of a radio-source position from ranging readings.

    Minimal subsets (dim + 1 readings) are solved in closed form by
    subtracting the first range equation from the others:

        ||p - a_i||² - ||p - a_0||² = d_i² - d_0²
        ⇒ 2(a_i - a_0)'p = ||a_i||² - ||a_0||² - d_i² + d_0²

    Refinement minimizes the weighted range residuals d_i - ||p - a_i||.

    With an initial position, minimal subsets are instead solved by nonlinear
    least squares on the range residuals, starting from that position.

    Args:
        dims: Position dimension (2 or 3).
        initial_position: Starting point of the subset solutions, or None
            for the closed-form solution.

    Example:
        >>> from ipnav.rf.readings import RangingReading
        >>> fitter = RangingPositionFitter(2)
        >>> readings = [
        ...     RangingReading(np.array([0.0, 0.0]), 5.0),
        ...     RangingReading(np.array([6.0, 0.0]), 5.0),
        ...     RangingReading(np.array([0.0, 8.0]), 5.0),
        ... ]
        >>> fitter.fit(readings)
        array([3., 4.])
    """

    def __init__(self, dims: int = 3, initial_position: Optional[np.ndarray] = None):
        if dims not in (2, 3):
            raise ValueError(f"dims must be 2 or 3, got {dims}")
        self.dims = dims
        if initial_position is not None:
            initial_position = np.array(initial_position, dtype=float)
            if initial_position.shape != (dims,):
                raise ValueError(
                    f"initial_position must have shape ({dims},), got {initial_position.shape}"
                )
        self.initial_position = initial_position

    @property
    def minimum_samples(self) -> int:
        return self.dims + 1

    @property
    def dimensions(self) -> int:
        return self.dims

    @property
    def parameter_blocks(self) -> Dict[str, slice]:
        return {"position": slice(0, self.dims)}

    def _positions(self, readings: Sequence) -> np.ndarray:
        positions = stack_positions(readings)
        if positions.shape[1] != self.dims:
            raise ValueError(
                f"Expected {self.dims}D readings, got {positions.shape[1]}D readings"
            )
        return positions

    def fit(self, samples: Sequence) -> np.ndarray:
        if self.initial_position is not None:
            return self._fit_from_initial_position(samples)

        anchors = self._positions(samples)
        distances = self.observations(samples)

        A = 2.0 * (anchors[1:] - anchors[0])
        b = (
            np.sum(anchors[1:] ** 2, axis=1)
            - np.sum(anchors[0] ** 2)
            - distances[1:] ** 2
            + distances[0] ** 2
        )
        try:
            position, _ = linear_least_squares(A, b)
        except np.linalg.LinAlgError as e:
            raise DegenerateSubsetError(f"Anchors do not determine a position: {e}") from e
        return position

    def _fit_from_initial_position(self, samples: Sequence) -> np.ndarray:
        try:
            result = levenberg_marquardt(
                lambda x: self.predict(x, samples),
                lambda x: self.jacobian(x, samples),
                self.observations(samples),
                self.initial_position,
                max_iter=self.max_refine_iterations,
            )
        except np.linalg.LinAlgError as e:
            raise DegenerateSubsetError(f"Anchors do not determine a position: {e}") from e
        if not np.all(np.isfinite(result.x)):
            raise DegenerateSubsetError("Position solution diverged")
        return result.x

    def observations(self, samples: Sequence) -> np.ndarray:
        return np.array([reading.distance for reading in samples], dtype=float)

    def predict(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        return np.linalg.norm(self._positions(samples) - model, axis=1)

    def jacobian(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        return toa_range_jacobian(model, self._positions(samples))

    def sample_variances(
        self, model: np.ndarray, samples: Sequence, use_covariances: bool = True
    ) -> np.ndarray:
        """
        Range variance of each reading.

            σ_i² = σ_d,i² + g_i' Σ_a,i g_i

        where g_i is the unit vector between anchor and source and Σ_a,i the
        reading position covariance (ignored if use_covariances is False).
        """
        variances = np.array(
            [
                DEFAULT_MEASUREMENT_VARIANCE if r.distance_std is None else r.distance_std**2
                for r in samples
            ]
        )
        if use_covariances:
            gradients = toa_range_jacobian(model, self._positions(samples))
            variances = variances + _projected_variances(
                gradients, [r.position_covariance for r in samples]
            )
        return variances


class RssiPathLossFitter(LeastSquaresModelFitter, AnchoredModelFitter):
    """
    Fitter of transmitted power and path-loss exponent from RSSI readings.

    With the source position p known, the log-distance model

        rssi_i = P0 - 10 n log10(||p - a_i||)

    is linear in the transmitted power P0 (dBm at 1 m) and the path-loss
    exponent n. Either parameter can be held at its initial value; the model
    vector then only contains the estimated ones, in the order [P0, n].

    Args:
        position: Known source position, or None until anchored.
        position_covariance: Covariance of the source position, or None.
        transmitted_power_estimation_enabled: Estimate P0.
        path_loss_estimation_enabled: Estimate n.
        initial_transmitted_power_dbm: P0 used when it is not estimated.
        initial_path_loss_exponent: n used when it is not estimated.

    Raises:
        ValueError: If neither parameter is estimated.
    """

    def __init__(
        self,
        position: Optional[np.ndarray] = None,
        position_covariance: Optional[np.ndarray] = None,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = True,
        initial_transmitted_power_dbm: float = DEFAULT_TRANSMITTED_POWER_DBM,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ):
        if not (transmitted_power_estimation_enabled or path_loss_estimation_enabled):
            raise ValueError(
                "At least one of transmitted power or path-loss exponent must be estimated"
            )
        self.position = None if position is None else np.asarray(position, dtype=float)
        if position_covariance is not None:
            position_covariance = np.asarray(position_covariance, dtype=float)
            dim = None if self.position is None else self.position.shape[0]
            if dim is None or position_covariance.shape != (dim, dim):
                raise ValueError(
                    f"position_covariance must match the position dimension, "
                    f"got {position_covariance.shape}"
                )
        self.position_covariance = position_covariance
        self.transmitted_power_estimation_enabled = bool(transmitted_power_estimation_enabled)
        self.path_loss_estimation_enabled = bool(path_loss_estimation_enabled)
        self.initial_transmitted_power_dbm = float(initial_transmitted_power_dbm)
        self.initial_path_loss_exponent = float(initial_path_loss_exponent)

    @property
    def minimum_samples(self) -> int:
        return self.dimensions

    @property
    def dimensions(self) -> int:
        return int(self.transmitted_power_estimation_enabled) + int(
            self.path_loss_estimation_enabled
        )

    @property
    def parameter_blocks(self) -> Dict[str, slice]:
        blocks = {}
        index = 0
        if self.transmitted_power_estimation_enabled:
            blocks["transmitted_power"] = slice(index, index + 1)
            index += 1
        if self.path_loss_estimation_enabled:
            blocks["path_loss_exponent"] = slice(index, index + 1)
        return blocks

    def anchored(self, result: EstimationResult) -> "RssiPathLossFitter":
        return RssiPathLossFitter(
            position=result.model,
            position_covariance=result.covariance,
            transmitted_power_estimation_enabled=self.transmitted_power_estimation_enabled,
            path_loss_estimation_enabled=self.path_loss_estimation_enabled,
            initial_transmitted_power_dbm=self.initial_transmitted_power_dbm,
            initial_path_loss_exponent=self.initial_path_loss_exponent,
        )

    def unpack(self, model: np.ndarray) -> tuple:
        """Split a model vector into (transmitted power dBm, path-loss exponent)."""
        model = np.asarray(model, dtype=float)
        index = 0
        power = self.initial_transmitted_power_dbm
        exponent = self.initial_path_loss_exponent
        if self.transmitted_power_estimation_enabled:
            power = float(model[index])
            index += 1
        if self.path_loss_estimation_enabled:
            exponent = float(model[index])
        return power, exponent

    def _distances(self, samples: Sequence) -> np.ndarray:
        if self.position is None:
            raise ValueError("Source position is required, anchor the fitter first")
        positions = stack_positions(samples)
        if positions.shape[1] != self.position.shape[0]:
            raise ValueError(
                f"Expected {self.position.shape[0]}D readings, got {positions.shape[1]}D readings"
            )
        return np.linalg.norm(positions - self.position, axis=1)

    def _log_distances(self, samples: Sequence) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log10(self._distances(samples))

    def _design_matrix(self, log_distances: np.ndarray) -> np.ndarray:
        columns = []
        if self.transmitted_power_estimation_enabled:
            columns.append(np.ones_like(log_distances))
        if self.path_loss_estimation_enabled:
            columns.append(-10.0 * log_distances)
        return np.column_stack(columns)

    def fit(self, samples: Sequence) -> np.ndarray:
        log_d = self._log_distances(samples)
        if not np.all(np.isfinite(log_d)):
            raise DegenerateSubsetError("Reading located at the source position")

        # Move the fixed parameter to the observation side
        b = self.observations(samples)
        if not self.transmitted_power_estimation_enabled:
            b = b - self.initial_transmitted_power_dbm
        if not self.path_loss_estimation_enabled:
            b = b + 10.0 * self.initial_path_loss_exponent * log_d

        try:
            params, _ = linear_least_squares(self._design_matrix(log_d), b)
        except np.linalg.LinAlgError as e:
            raise DegenerateSubsetError(f"Readings do not determine the path loss: {e}") from e
        return params

    def observations(self, samples: Sequence) -> np.ndarray:
        return np.array([reading.rssi for reading in samples], dtype=float)

    def predict(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        power, exponent = self.unpack(model)
        d = self._distances(samples)
        if np.any(d <= 0):
            # Readings at the source position cannot be predicted
            out = np.full(len(d), np.inf)
            out[d > 0] = rss_pathloss(power, d[d > 0], exponent)
            return out
        return rss_pathloss(power, d, exponent)

    def jacobian(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        return self._design_matrix(self._log_distances(samples))

    def sample_variances(
        self, model: np.ndarray, samples: Sequence, use_covariances: bool = True
    ) -> np.ndarray:
        """
        RSSI variance of each reading.

            σ_i² = σ_rssi,i² + (∂p/∂d)² g_i' (Σ_a,i + Σ_p) g_i,  ∂p/∂d = -10n / (ln(10) d)

        with Σ_a,i the reading position covariance and Σ_p the source
        position covariance (both ignored if use_covariances is False).
        """
        variances = np.array(
            [
                DEFAULT_MEASUREMENT_VARIANCE if r.rssi_std is None else r.rssi_std**2
                for r in samples
            ]
        )
        if not use_covariances:
            return variances

        _, exponent = self.unpack(model)
        positions = stack_positions(samples)
        gradients = toa_range_jacobian(self.position, positions)

        covariances = []
        for r in samples:
            cov = r.position_covariance
            if self.position_covariance is not None:
                cov = self.position_covariance if cov is None else cov + self.position_covariance
            covariances.append(cov)

        projected = _projected_variances(gradients, covariances)
        d = self._distances(samples)
        # Readings at the source position are never inliers of a finite model
        slope = np.zeros_like(d)
        slope[d > 0] = rss_distance_derivative(d[d > 0], exponent)
        return variances + slope**2 * projected
