"""
Unit tests for robust magnetometer hard-iron calibration.
"""

import unittest

import numpy as np
import pytest

from ipnav.robust import RobustEstimatorException, RobustEstimatorMethod
from ipnav.sensors import HardIronFitter, calibrate_hard_iron, compensate_hard_iron

OFFSET = np.array([12.0, -7.0, 3.0])
FIELD = 45.0  # µT


def rotating_readings(n=100, noise=0.2, disturbed=(), seed=0):
    """Readings of a device rotated in a constant field, with transient disturbances."""
    rng = np.random.default_rng(seed)
    directions = rng.normal(size=(n, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    readings = OFFSET + FIELD * directions + noise * rng.normal(size=(n, 3))
    for i in disturbed:
        readings[i] = OFFSET + 1.5 * FIELD * directions[i]
    return readings


class TestHardIronFitter(unittest.TestCase):
    """Test the sphere fitter."""

    def test_minimal_fit(self):
        readings = rotating_readings(n=4, noise=0.0)

        model = HardIronFitter().fit(list(readings))

        np.testing.assert_allclose(model[:3], OFFSET, atol=1e-8)
        self.assertAlmostEqual(model[3], FIELD, places=8)

    def test_residuals(self):
        fitter = HardIronFitter()
        model = np.append(OFFSET, FIELD)
        readings = [OFFSET + [FIELD, 0.0, 0.0], OFFSET + [0.0, 0.0, FIELD + 2.0]]

        np.testing.assert_allclose(fitter.residuals(model, readings), [0.0, 2.0], atol=1e-12)

    def test_coplanar_readings_are_degenerate(self):
        angles = np.linspace(0.0, np.pi, 4)
        readings = [np.array([np.cos(a), np.sin(a), 0.0]) * FIELD for a in angles]

        with self.assertRaises(RobustEstimatorException):
            HardIronFitter().fit(readings)

    def test_invalid_noise(self):
        with self.assertRaises(ValueError):
            HardIronFitter(noise_std=0.0)

    def test_variances_from_noise(self):
        fitter = HardIronFitter(noise_std=0.5)

        np.testing.assert_allclose(
            fitter.sample_variances(np.zeros(4), [np.ones(3)] * 3), [0.25, 0.25, 0.25]
        )


class TestCalibrateHardIron:
    """Test robust calibration against disturbed readings."""

    DISTURBED = list(range(0, 100, 7))

    @pytest.mark.parametrize(
        "method, threshold",
        [
            (RobustEstimatorMethod.RANSAC, 1.0),
            (RobustEstimatorMethod.MSAC, 1.0),
            (RobustEstimatorMethod.LMEDS, None),
        ],
    )
    def test_offset_recovered(self, method, threshold):
        readings = rotating_readings(disturbed=self.DISTURBED)

        result = calibrate_hard_iron(
            readings,
            method=method,
            noise_std=0.2,
            threshold=threshold,
            confidence=0.9999,
            seed=0,
        )

        np.testing.assert_allclose(result.model[:3], OFFSET, atol=0.2)
        assert result.model[3] == pytest.approx(FIELD, abs=0.2)
        assert set(self.DISTURBED) <= set(result.inliers_data.outlier_indices.tolist())

    def test_quality_ordered_calibration(self):
        readings = rotating_readings(disturbed=self.DISTURBED)
        scores = np.ones(len(readings))
        scores[self.DISTURBED] = 0.0

        result = calibrate_hard_iron(
            readings,
            method=RobustEstimatorMethod.PROSAC,
            quality_scores=scores,
            threshold=1.0,
            seed=0,
        )

        np.testing.assert_allclose(result.model[:3], OFFSET, atol=0.2)

    def test_covariance_blocks(self):
        result = calibrate_hard_iron(rotating_readings(), threshold=1.0, noise_std=0.2, seed=0)

        assert result.refined
        assert result.variances["offset"].shape == (3, 3)
        assert result.variances["field_magnitude"].shape == (1, 1)
        assert np.all(np.diag(result.variances["offset"]) > 0.0)

    def test_compensated_readings_centered(self):
        readings = rotating_readings(n=200, noise=0.0)

        result = calibrate_hard_iron(readings, threshold=0.1, seed=0)
        corrected = compensate_hard_iron(readings, result.model[:3])

        np.testing.assert_allclose(np.linalg.norm(corrected, axis=1), FIELD, atol=1e-6)

    def test_invalid_shape(self):
        with pytest.raises(ValueError):
            calibrate_hard_iron(np.zeros((10, 2)))


class TestCompensateHardIron(unittest.TestCase):
    """Test hard-iron correction."""

    def test_single_reading(self):
        corrected = compensate_hard_iron(np.array([25.0, 5.0, -35.0]), np.array([5.0, 2.0, 5.0]))

        np.testing.assert_array_almost_equal(corrected, [20.0, 3.0, -40.0])

    def test_batch(self):
        mag = np.array([[25.0, 5.0, -35.0], [15.0, -5.0, -45.0]])

        corrected = compensate_hard_iron(mag, np.array([5.0, 5.0, 5.0]))

        np.testing.assert_array_almost_equal(corrected, [[20.0, 0.0, -40.0], [10.0, -10.0, -50.0]])

    def test_invalid_shapes(self):
        with pytest.raises(ValueError, match="mag_raw must have shape"):
            compensate_hard_iron(np.array([25.0, 5.0]), np.zeros(3))

        with pytest.raises(ValueError, match="offset must have shape"):
            compensate_hard_iron(np.zeros(3), np.zeros(2))


if __name__ == "__main__":
    unittest.main()
