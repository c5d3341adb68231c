"""
Unit tests for the radio-source model fitters.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ipnav.rf import (
    RangingPositionFitter,
    RangingReading,
    RssiPathLossFitter,
    RssiReading,
    rss_pathloss,
)
from ipnav.robust import DegenerateSubsetError, EstimationResult, InliersData, RobustEstimatorMethod
from ipnav.robust.refinement import refine

SOURCE_3D = np.array([1.0, 2.0, 1.5])
ANCHORS_3D = np.array(
    [
        [0.0, 0.0, 0.0],
        [10.0, 0.0, 0.0],
        [0.0, 10.0, 0.0],
        [0.0, 0.0, 3.0],
        [10.0, 10.0, 3.0],
    ]
)


def ranging_readings(source, anchors, **kwargs):
    return [RangingReading(a, np.linalg.norm(a - source), **kwargs) for a in anchors]


def rssi_readings(source, anchors, power, exponent, **kwargs):
    return [
        RssiReading(a, rss_pathloss(power, np.linalg.norm(a - source), exponent), **kwargs)
        for a in anchors
    ]


def fake_result(model, covariance=None):
    n = 3
    return EstimationResult(
        model=np.asarray(model, dtype=float),
        inliers_data=InliersData(np.ones(n, dtype=bool), np.zeros(n), 1.0),
        method=RobustEstimatorMethod.RANSAC,
        iterations=1,
        covariance=covariance,
    )


class TestRangingPositionFitter:
    def test_minimal_fit_3d(self):
        fitter = RangingPositionFitter(3)
        readings = ranging_readings(SOURCE_3D, ANCHORS_3D[:4])

        assert fitter.minimum_samples == 4
        assert_allclose(fitter.fit(readings), SOURCE_3D, atol=1e-10)

    def test_overdetermined_fit(self):
        fitter = RangingPositionFitter(3)

        assert_allclose(fitter.fit(ranging_readings(SOURCE_3D, ANCHORS_3D)), SOURCE_3D, atol=1e-10)

    def test_residuals(self):
        fitter = RangingPositionFitter(3)
        readings = ranging_readings(SOURCE_3D, ANCHORS_3D)

        biased = RangingReading(ANCHORS_3D[1], np.linalg.norm(ANCHORS_3D[1] - SOURCE_3D) - 2.0)

        assert_allclose(fitter.residuals(SOURCE_3D, readings), np.zeros(5), atol=1e-12)
        assert_allclose(fitter.residuals(SOURCE_3D, [readings[0], biased]), [0.0, 2.0], atol=1e-12)

    def test_collinear_anchors_are_degenerate(self):
        anchors = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        readings = ranging_readings(np.array([1.0, 1.0]), anchors)

        with pytest.raises(DegenerateSubsetError):
            RangingPositionFitter(2).fit(readings)

    def test_dimension_mismatch(self):
        readings = ranging_readings(SOURCE_3D, ANCHORS_3D[:4])

        with pytest.raises(ValueError):
            RangingPositionFitter(2).fit(readings)

    def test_invalid_dims(self):
        with pytest.raises(ValueError):
            RangingPositionFitter(4)

    def test_minimal_fit_from_initial_position(self):
        fitter = RangingPositionFitter(3, initial_position=SOURCE_3D + 0.5)
        readings = ranging_readings(SOURCE_3D, ANCHORS_3D[:4])

        assert_allclose(fitter.fit(readings), SOURCE_3D, atol=1e-8)

    def test_initial_position_fit_minimizes_range_residuals(self):
        rng = np.random.default_rng(4)
        readings = [
            RangingReading(a, np.linalg.norm(a - SOURCE_3D) + 0.2 * rng.normal())
            for a in ANCHORS_3D
        ]
        closed_form = RangingPositionFitter(3).fit(readings)
        fitter = RangingPositionFitter(3, initial_position=closed_form)

        position = fitter.fit(readings)

        assert np.sum(fitter.residuals(position, readings) ** 2) <= np.sum(
            fitter.residuals(closed_form, readings) ** 2
        ) + 1e-12

    def test_initial_position_dimension_checked(self):
        with pytest.raises(ValueError):
            RangingPositionFitter(2, initial_position=np.zeros(3))

    def test_sample_variances_include_position_covariance(self):
        fitter = RangingPositionFitter(2)
        reading = RangingReading(
            np.array([1.0, 0.0]), 1.0, distance_std=0.5, position_covariance=np.diag([4.0, 1.0])
        )

        with_cov = fitter.sample_variances(np.zeros(2), [reading])
        without_cov = fitter.sample_variances(np.zeros(2), [reading], use_covariances=False)

        assert_allclose(with_cov, [4.25])
        assert_allclose(without_cov, [0.25])

    def test_default_variance(self):
        readings = ranging_readings(SOURCE_3D, ANCHORS_3D)

        assert_allclose(RangingPositionFitter(3).sample_variances(SOURCE_3D, readings), np.ones(5))

    def test_refinement_reduces_noise(self):
        rng = np.random.default_rng(2)
        anchors = rng.uniform(-10.0, 10.0, size=(30, 3))
        readings = [
            RangingReading(a, np.linalg.norm(a - SOURCE_3D) + 0.05 * rng.normal(), distance_std=0.05)
            for a in anchors
        ]
        fitter = RangingPositionFitter(3)
        data = InliersData(np.ones(30, dtype=bool), np.zeros(30), 1.0)

        outcome = refine(fitter, readings, data, SOURCE_3D + 0.5)

        assert np.linalg.norm(outcome.model - SOURCE_3D) < 0.1
        assert outcome.covariance.shape == (3, 3)
        assert np.all(np.linalg.eigvalsh(outcome.covariance) > 0)


class TestRssiPathLossFitter:
    POSITION = np.array([2.0, -1.0])
    ANCHORS = np.array([[5.0, 3.0], [-8.0, 0.0], [2.0, 12.0], [20.0, -1.0]])

    def anchored_fitter(self, **kwargs):
        return RssiPathLossFitter(position=self.POSITION, **kwargs)

    def test_fits_power_and_exponent(self):
        fitter = self.anchored_fitter()
        readings = rssi_readings(self.POSITION, self.ANCHORS, -35.0, 3.1)

        assert fitter.minimum_samples == 2
        assert_allclose(fitter.fit(readings[:2]), [-35.0, 3.1], atol=1e-10)
        assert_allclose(fitter.fit(readings), [-35.0, 3.1], atol=1e-10)

    def test_fits_power_only(self):
        fitter = self.anchored_fitter(
            path_loss_estimation_enabled=False, initial_path_loss_exponent=2.7
        )
        readings = rssi_readings(self.POSITION, self.ANCHORS, -28.0, 2.7)

        assert fitter.minimum_samples == 1
        assert_allclose(fitter.fit(readings[:1]), [-28.0], atol=1e-10)
        assert fitter.unpack(np.array([-28.0])) == (-28.0, 2.7)

    def test_fits_exponent_only(self):
        fitter = self.anchored_fitter(
            transmitted_power_estimation_enabled=False, initial_transmitted_power_dbm=-20.0
        )
        readings = rssi_readings(self.POSITION, self.ANCHORS, -20.0, 3.5)

        assert_allclose(fitter.fit(readings[:1]), [3.5], atol=1e-10)
        assert list(fitter.parameter_blocks) == ["path_loss_exponent"]

    def test_parameter_blocks(self):
        blocks = self.anchored_fitter().parameter_blocks

        assert blocks == {"transmitted_power": slice(0, 1), "path_loss_exponent": slice(1, 2)}

    def test_requires_an_estimated_parameter(self):
        with pytest.raises(ValueError):
            RssiPathLossFitter(
                transmitted_power_estimation_enabled=False, path_loss_estimation_enabled=False
            )

    def test_requires_position(self):
        readings = rssi_readings(self.POSITION, self.ANCHORS, -35.0, 3.1)

        with pytest.raises(ValueError):
            RssiPathLossFitter().fit(readings)

    def test_covariance_must_match_position(self):
        with pytest.raises(ValueError):
            RssiPathLossFitter(position_covariance=np.eye(2))
        with pytest.raises(ValueError):
            RssiPathLossFitter(position=np.zeros(2), position_covariance=np.eye(3))

    def test_reading_at_source(self):
        fitter = self.anchored_fitter()
        readings = [RssiReading(self.POSITION, -30.0), RssiReading(self.ANCHORS[0], -50.0)]

        with pytest.raises(DegenerateSubsetError):
            fitter.fit(readings)
        predicted = fitter.predict(np.array([-30.0, 2.0]), readings)
        assert np.isinf(predicted[0])
        assert np.isfinite(predicted[1])

    def test_anchored_copies_settings(self):
        fitter = RssiPathLossFitter(
            path_loss_estimation_enabled=False, initial_path_loss_exponent=3.0
        )
        cov = 0.1 * np.eye(2)

        anchored = fitter.anchored(fake_result(self.POSITION, cov))

        assert anchored is not fitter
        assert fitter.position is None
        assert_allclose(anchored.position, self.POSITION)
        assert_allclose(anchored.position_covariance, cov)
        assert not anchored.path_loss_estimation_enabled
        assert anchored.initial_path_loss_exponent == 3.0

    def test_sample_variances_include_both_position_covariances(self):
        fitter = RssiPathLossFitter(
            position=np.zeros(2), position_covariance=np.diag([0.5, 0.0])
        )
        reading = RssiReading(np.array([10.0, 0.0]), -50.0, position_covariance=np.diag([1.0, 0.0]))
        slope = -10.0 * 2.0 / (np.log(10.0) * 10.0)

        variances = fitter.sample_variances(np.array([-30.0, 2.0]), [reading])

        assert_allclose(variances, [1.0 + slope**2 * 1.5])
        assert_allclose(
            fitter.sample_variances(np.array([-30.0, 2.0]), [reading], use_covariances=False),
            [1.0],
        )

    def test_rssi_std_sets_variance(self):
        fitter = self.anchored_fitter()
        readings = rssi_readings(self.POSITION, self.ANCHORS, -35.0, 3.1, rssi_std=2.0)

        assert_allclose(fitter.sample_variances(np.array([-35.0, 3.1]), readings), np.full(4, 4.0))

    def test_jacobian_matches_design_matrix(self):
        fitter = self.anchored_fitter()
        readings = rssi_readings(self.POSITION, self.ANCHORS, -35.0, 3.1)
        d = np.linalg.norm(self.ANCHORS - self.POSITION, axis=1)

        J = fitter.jacobian(np.array([-35.0, 3.1]), readings)

        assert_allclose(J, np.column_stack([np.ones(4), -10.0 * np.log10(d)]))
