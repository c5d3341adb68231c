"""
RF (Radio Frequency) radio-source estimation module.

Submodules:
    readings: Located ranging / RSSI readings of a radio source
    measurement_models: Range and RSS path-loss measurement functions
    fitters: Robust-estimator fitters for position and path loss
    radio_source: Sequential robust radio-source estimator
"""

from ipnav.rf.fitters import (
    DEFAULT_PATH_LOSS_EXPONENT,
    RangingPositionFitter,
    RssiPathLossFitter,
)
from ipnav.rf.measurement_models import (
    rss_distance_derivative,
    rss_pathloss,
    rss_to_distance,
    toa_range,
    toa_range_jacobian,
)
from ipnav.rf.radio_source import (
    SequentialRangingAndRssiRadioSourceEstimator,
    dbm_to_power,
)
from ipnav.rf.readings import (
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
    stack_positions,
    to_ranging_readings,
    to_rssi_readings,
)

__all__ = [
    # Readings
    "RangingReading",
    "RssiReading",
    "RangingAndRssiReading",
    "to_ranging_readings",
    "to_rssi_readings",
    "stack_positions",
    # Measurement models
    "toa_range",
    "toa_range_jacobian",
    "rss_pathloss",
    "rss_to_distance",
    "rss_distance_derivative",
    # Fitters
    "RangingPositionFitter",
    "RssiPathLossFitter",
    "DEFAULT_PATH_LOSS_EXPONENT",
    # Radio source
    "SequentialRangingAndRssiRadioSourceEstimator",
    "dbm_to_power",
]
