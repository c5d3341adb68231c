"""
Sensor calibration.

Submodules:
    magnetometer_calibration: Robust hard-iron calibration of magnetometers
"""

from ipnav.sensors.magnetometer_calibration import (
    HardIronFitter,
    calibrate_hard_iron,
    compensate_hard_iron,
)

__all__ = [
    "HardIronFitter",
    "calibrate_hard_iron",
    "compensate_hard_iron",
]
