"""
Unit tests for RF measurement models (range and log-distance path loss).
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from ipnav.rf import (
    rss_distance_derivative,
    rss_pathloss,
    rss_to_distance,
    toa_range,
    toa_range_jacobian,
)


class TestToaRange(unittest.TestCase):
    """Test cases for range measurements."""

    def test_range_2d_and_3d(self):
        self.assertAlmostEqual(toa_range(np.zeros(2), np.array([3.0, 4.0])), 5.0)
        self.assertAlmostEqual(toa_range(np.zeros(3), np.array([1.0, 2.0, 2.0])), 3.0)

    def test_range_is_symmetric(self):
        a = np.array([1.0, -2.0, 0.5])
        b = np.array([-3.0, 4.0, 2.0])

        self.assertAlmostEqual(toa_range(a, b), toa_range(b, a))

    def test_shape_mismatch_raises(self):
        with self.assertRaises(ValueError):
            toa_range(np.zeros(2), np.zeros(3))


class TestToaRangeJacobian(unittest.TestCase):
    """Test cases for the range Jacobian."""

    def test_rows_are_unit_vectors(self):
        source = np.array([1.0, 2.0, 3.0])
        anchors = np.array([[0.0, 0.0, 0.0], [5.0, 5.0, 5.0], [1.0, -4.0, 3.0]])

        J = toa_range_jacobian(source, anchors)

        assert_allclose(np.linalg.norm(J, axis=1), np.ones(3))
        assert_allclose(J[2], [0.0, 1.0, 0.0])

    def test_matches_finite_differences(self):
        source = np.array([2.0, -1.0])
        anchors = np.array([[0.0, 0.0], [4.0, 3.0], [-2.0, 5.0]])
        eps = 1e-6

        J = toa_range_jacobian(source, anchors)

        for k in range(2):
            step = np.zeros(2)
            step[k] = eps
            plus = np.linalg.norm(anchors - (source + step), axis=1)
            minus = np.linalg.norm(anchors - (source - step), axis=1)
            assert_allclose(J[:, k], (plus - minus) / (2 * eps), atol=1e-6)

    def test_anchor_at_source_gives_zero_row(self):
        J = toa_range_jacobian(np.array([1.0, 1.0]), np.array([[1.0, 1.0], [1.0, 3.0]]))

        assert_allclose(J, [[0.0, 0.0], [0.0, -1.0]])


class TestRssPathLoss(unittest.TestCase):
    """Test cases for the log-distance path-loss model."""

    def test_reference_distance_gives_reference_power(self):
        self.assertAlmostEqual(rss_pathloss(-30.0, 1.0, 3.0), -30.0)

    def test_decade_loss(self):
        # 10 dB per decade per unit of exponent
        self.assertAlmostEqual(rss_pathloss(-30.0, 100.0, 2.0), -70.0)

    def test_vectorized(self):
        rss = rss_pathloss(0.0, np.array([1.0, 10.0, 100.0]), 2.5)

        assert_allclose(rss, [0.0, -25.0, -50.0])

    def test_scalar_returns_float(self):
        self.assertIsInstance(rss_pathloss(0.0, 2.0), float)

    def test_non_positive_distance_raises(self):
        with self.assertRaises(ValueError):
            rss_pathloss(0.0, 0.0)
        with self.assertRaises(ValueError):
            rss_pathloss(0.0, np.array([1.0, -1.0]))

    def test_inverse_model(self):
        for d in [0.5, 3.0, 42.0]:
            rss = rss_pathloss(-45.0, d, 3.2)
            self.assertAlmostEqual(rss_to_distance(rss, -45.0, 3.2), d)

    def test_zero_exponent_inverse_raises(self):
        with self.assertRaises(ValueError):
            rss_to_distance(-50.0, -40.0, 0.0)

    def test_distance_derivative(self):
        d = np.array([2.0, 8.0])
        eps = 1e-6

        numeric = (rss_pathloss(-40.0, d + eps, 2.7) - rss_pathloss(-40.0, d - eps, 2.7)) / (2 * eps)

        assert_allclose(rss_distance_derivative(d, 2.7), numeric, rtol=1e-6)


if __name__ == "__main__":
    unittest.main()
