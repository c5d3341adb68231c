"""
Located readings of a radio source.

A reading is a measurement of a radio source (access point, beacon) taken
at a known position:
    - RangingReading: measured distance to the source
    - RssiReading: received signal strength (dBm)
    - RangingAndRssiReading: both, taken at the same position

Every reading may carry the standard deviation of its measurement and the
covariance of the position where it was taken. Both default to None; fitters
then assume unit measurement variance and an exact position.

Positions are 2D [x, y] or 3D [x, y, z] in meters.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np


def _validate_position(position, name: str) -> np.ndarray:
    position = np.asarray(position, dtype=float)
    if position.ndim != 1 or position.shape[0] not in (2, 3):
        raise ValueError(f"{name}.position must have shape (2,) or (3,), got {position.shape}")
    if not np.all(np.isfinite(position)):
        raise ValueError(f"{name}.position must be finite, got {position}")
    return position


def _validate_position_covariance(covariance, dim: int, name: str) -> Optional[np.ndarray]:
    if covariance is None:
        return None
    covariance = np.asarray(covariance, dtype=float)
    if covariance.shape != (dim, dim):
        raise ValueError(
            f"{name}.position_covariance must have shape ({dim}, {dim}), "
            f"got {covariance.shape}"
        )
    if not np.allclose(covariance, covariance.T):
        raise ValueError(f"{name}.position_covariance must be symmetric")
    return covariance


def _validate_std(std: Optional[float], field_name: str) -> Optional[float]:
    if std is None:
        return None
    if not std > 0.0 or not np.isfinite(std):
        raise ValueError(f"{field_name} must be positive and finite, got {std}")
    return float(std)


@dataclass(frozen=True)
class RangingReading:
    """
    Distance to a radio source measured at a known position.

    Attributes:
        position: Reading position (2,) or (3,) in meters.
        distance: Measured distance to the source in meters (>= 0).
        distance_std: Standard deviation of the distance in meters, or None.
        position_covariance: Covariance of the reading position (dim × dim),
                             or None if the position is exact.

    Example:
        >>> reading = RangingReading(np.array([0.0, 0.0]), 5.0, distance_std=0.1)
        >>> reading.dimensions
        2
    """

    position: np.ndarray
    distance: float
    distance_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate position, distance and uncertainties."""
        position = _validate_position(self.position, "RangingReading")
        object.__setattr__(self, "position", position)
        if not self.distance >= 0.0 or not np.isfinite(self.distance):
            raise ValueError(
                f"RangingReading.distance must be non-negative and finite, got {self.distance}"
            )
        object.__setattr__(self, "distance", float(self.distance))
        object.__setattr__(
            self, "distance_std", _validate_std(self.distance_std, "RangingReading.distance_std")
        )
        object.__setattr__(
            self,
            "position_covariance",
            _validate_position_covariance(
                self.position_covariance, position.shape[0], "RangingReading"
            ),
        )

    @property
    def dimensions(self) -> int:
        return self.position.shape[0]


@dataclass(frozen=True)
class RssiReading:
    """
    Received signal strength of a radio source measured at a known position.

    Attributes:
        position: Reading position (2,) or (3,) in meters.
        rssi: Received power in dBm.
        rssi_std: Standard deviation of the received power in dB, or None.
        position_covariance: Covariance of the reading position (dim × dim),
                             or None if the position is exact.
    """

    position: np.ndarray
    rssi: float
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate position, RSSI and uncertainties."""
        position = _validate_position(self.position, "RssiReading")
        object.__setattr__(self, "position", position)
        if not np.isfinite(self.rssi):
            raise ValueError(f"RssiReading.rssi must be finite, got {self.rssi}")
        object.__setattr__(self, "rssi", float(self.rssi))
        object.__setattr__(self, "rssi_std", _validate_std(self.rssi_std, "RssiReading.rssi_std"))
        object.__setattr__(
            self,
            "position_covariance",
            _validate_position_covariance(
                self.position_covariance, position.shape[0], "RssiReading"
            ),
        )

    @property
    def dimensions(self) -> int:
        return self.position.shape[0]


@dataclass(frozen=True)
class RangingAndRssiReading:
    """
    Distance and received power of a radio source measured at the same position.

    Attributes:
        position: Reading position (2,) or (3,) in meters.
        distance: Measured distance to the source in meters.
        rssi: Received power in dBm.
        distance_std: Standard deviation of the distance, or None.
        rssi_std: Standard deviation of the received power, or None.
        position_covariance: Covariance of the reading position, or None.
    """

    position: np.ndarray
    distance: float
    rssi: float
    distance_std: Optional[float] = None
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        """Validate through the ranging and RSSI readings."""
        ranging = self.to_ranging()
        rssi = self.to_rssi()
        object.__setattr__(self, "position", ranging.position)
        object.__setattr__(self, "distance", ranging.distance)
        object.__setattr__(self, "rssi", rssi.rssi)
        object.__setattr__(self, "distance_std", ranging.distance_std)
        object.__setattr__(self, "rssi_std", rssi.rssi_std)
        object.__setattr__(self, "position_covariance", ranging.position_covariance)

    @property
    def dimensions(self) -> int:
        return self.position.shape[0]

    def to_ranging(self) -> RangingReading:
        return RangingReading(
            self.position, self.distance, self.distance_std, self.position_covariance
        )

    def to_rssi(self) -> RssiReading:
        return RssiReading(self.position, self.rssi, self.rssi_std, self.position_covariance)


def to_ranging_readings(readings: Sequence[RangingAndRssiReading]) -> List[RangingReading]:
    """Ranging part of combined readings, in the same order."""
    return [reading.to_ranging() for reading in readings]


def to_rssi_readings(readings: Sequence[RangingAndRssiReading]) -> List[RssiReading]:
    """RSSI part of combined readings, in the same order."""
    return [reading.to_rssi() for reading in readings]


def stack_positions(readings: Sequence) -> np.ndarray:
    """
    Stack reading positions into an (m × dim) array.

    Raises:
        ValueError: If readings do not all have the same dimension.

    Example:
        >>> readings = [RssiReading([0.0, 0.0], -40.0), RssiReading([1.0, 2.0], -45.0)]
        >>> stack_positions(readings)
        array([[0., 0.],
               [1., 2.]])
    """
    if len(readings) == 0:
        raise ValueError("At least one reading is required")
    dims = {reading.position.shape[0] for reading in readings}
    if len(dims) != 1:
        raise ValueError(f"Readings must share the same dimension, got {sorted(dims)}")
    return np.vstack([reading.position for reading in readings])
