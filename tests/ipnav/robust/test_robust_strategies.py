"""
Unit tests for subset samplers and candidate scoring rules.
"""

import math

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from ipnav.robust import (
    InlierCountScoring,
    MedianScoring,
    ProsacSampler,
    TruncatedCostScoring,
    UniformSampler,
    required_iterations,
    robust_scale,
)


class TestUniformSampler:
    def test_draws_distinct_indices_in_range(self):
        sampler = UniformSampler(10, np.random.default_rng(0))

        for _ in range(50):
            subset = sampler.draw(4)
            assert len(set(subset.tolist())) == 4
            assert subset.min() >= 0 and subset.max() < 10

    def test_full_subset_is_permutation(self):
        sampler = UniformSampler(5, np.random.default_rng(0))

        assert sorted(sampler.draw(5).tolist()) == [0, 1, 2, 3, 4]

    @pytest.mark.parametrize("subset_size", [0, 11])
    def test_invalid_subset_size(self, subset_size):
        with pytest.raises(ValueError):
            UniformSampler(10).draw(subset_size)

    def test_requires_samples(self):
        with pytest.raises(ValueError):
            UniformSampler(0)

    def test_same_seed_same_draws(self):
        a = UniformSampler(20, np.random.default_rng(3))
        b = UniformSampler(20, np.random.default_rng(3))

        for _ in range(10):
            assert_array_equal(a.draw(3), b.draw(3))


class TestProsacSampler:
    def test_first_draw_uses_best_samples(self):
        scores = np.array([0.1, 0.9, 0.5, 0.8, 0.2, 0.7])
        sampler = ProsacSampler(scores, 3, np.random.default_rng(0))

        assert sorted(sampler.draw(3).tolist()) == [1, 3, 5]

    def test_growth_function_non_decreasing(self):
        sampler = ProsacSampler(np.arange(50.0), 4, np.random.default_rng(0))

        growth = sampler.growth_function
        assert growth[3] == 1
        assert np.all(np.diff(growth) >= 0)

    def test_prefix_grows_and_newest_sample_included(self):
        scores = np.arange(30.0)
        sampler = ProsacSampler(scores, 3, np.random.default_rng(1), convergence_draws=2000)

        for _ in range(200):
            subset = sampler.draw(3)
            if sampler.prefix_size < sampler.num_samples:
                newest = sampler.order[sampler.prefix_size - 1]
                assert newest in subset
                # Every index comes from the current prefix of best samples
                assert np.all(np.isin(subset, sampler.order[: sampler.prefix_size]))

        assert sampler.prefix_size > 3

    def test_uniform_after_convergence_draws(self):
        sampler = ProsacSampler(np.arange(20.0), 2, np.random.default_rng(0), convergence_draws=1)

        sampler.draw(2)
        worst_drawn = False
        for _ in range(200):
            subset = sampler.draw(2)
            assert len(set(subset.tolist())) == 2
            worst_drawn = worst_drawn or 0 in subset
        assert worst_drawn

    def test_equal_scores_keep_sample_order(self):
        sampler = ProsacSampler(np.ones(6), 2)

        assert_array_equal(sampler.order, np.arange(6))

    def test_subset_size_mismatch(self):
        sampler = ProsacSampler(np.arange(10.0), 3)

        with pytest.raises(ValueError):
            sampler.draw(4)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            ProsacSampler(np.ones((3, 3)), 2)
        with pytest.raises(ValueError):
            ProsacSampler(np.ones(3), 4)
        with pytest.raises(ValueError):
            ProsacSampler(np.ones(5), 2, convergence_draws=0)


class TestInlierCountScoring:
    def test_counts_residuals_within_threshold(self):
        score = InlierCountScoring(1.0).score(np.array([0.1, 0.5, 1.0, 2.0]))

        assert score.value == 3
        assert_array_equal(score.inliers, [True, True, True, False])
        assert score.inlier_ratio == pytest.approx(0.75)
        assert score.threshold == 1.0

    def test_more_inliers_is_better(self):
        scoring = InlierCountScoring(1.0)
        few = scoring.score(np.array([0.1, 2.0, 2.0]))
        many = scoring.score(np.array([0.9, 0.9, 2.0]))

        assert scoring.is_better(few, None)
        assert scoring.is_better(many, few)
        assert not scoring.is_better(few, many)

    def test_tie_broken_by_inlier_residuals(self):
        scoring = InlierCountScoring(1.0)
        loose = scoring.score(np.array([0.9, 0.9, 2.0]))
        tight = scoring.score(np.array([0.1, 0.1, 5.0]))

        assert scoring.is_better(tight, loose)
        assert not scoring.is_better(loose, tight)

    def test_nan_residual_is_outlier(self):
        score = InlierCountScoring(1.0).score(np.array([0.0, np.nan]))

        assert_array_equal(score.inliers, [True, False])


class TestTruncatedCostScoring:
    def test_truncated_cost_and_soft_weights(self):
        score = TruncatedCostScoring(1.0).score(np.array([0.0, 0.5, 2.0]))

        assert score.value == pytest.approx(0.0 + 0.25 + 1.0)
        assert_array_equal(score.inliers, [True, True, False])
        assert_allclose(score.weights, [1.0, 0.75, 0.0])

    def test_weight_at_threshold_stays_positive(self):
        score = TruncatedCostScoring(1.0).score(np.array([1.0]))

        assert score.inliers[0]
        assert score.weights[0] > 0.0

    def test_lower_cost_is_better(self):
        scoring = TruncatedCostScoring(1.0)
        good = scoring.score(np.array([0.1, 0.1, 3.0]))
        bad = scoring.score(np.array([0.9, 0.9, 0.9]))

        assert scoring.is_better(good, bad)
        assert not scoring.is_better(bad, good)

    def test_inliers_data_copies_weights(self):
        score = TruncatedCostScoring(1.0).score(np.array([0.0, 0.5]))

        data = score.to_inliers_data()
        score.weights[0] = 0.0

        assert data.weights[0] == 1.0
        assert data.num_inliers == 2


class TestMedianScoring:
    def test_threshold_from_robust_scale(self):
        residuals = np.array([1.0, 1.0, 1.0, 1.0, 1.0, 100.0])

        score = MedianScoring(1e-4, subset_size=1, inlier_factor=1.5).score(residuals)

        assert score.value == pytest.approx(1.0)
        assert score.threshold == pytest.approx(1.5 * 2.9652)
        assert_array_equal(score.inliers, [True] * 5 + [False])

    def test_stop_threshold_is_lower_bound(self):
        residuals = np.zeros(10)

        score = MedianScoring(0.5, subset_size=2, inlier_factor=1.5).score(residuals)

        assert score.threshold == 0.5
        assert score.num_inliers == 10

    def test_converged_below_stop_threshold(self):
        scoring = MedianScoring(0.5, subset_size=1, inlier_factor=1.5)

        assert scoring.is_converged(scoring.score(np.array([0.1, 0.2, 0.3, 50.0])))
        assert not scoring.is_converged(scoring.score(np.array([1.0, 2.0, 3.0, 50.0])))

    def test_poor_candidate_with_all_inliers_keeps_iterating(self):
        scoring = MedianScoring(1e-2, subset_size=2, inlier_factor=1.5)

        score = scoring.score(np.array([3.0, 4.0, 5.0, 4.0, 3.0, 6.0, 5.0, 4.0]))

        assert score.inlier_ratio == 1.0
        assert not scoring.is_converged(score)
        assert scoring.bound_inlier_ratio(score) == 0.5

    def test_bound_ratio_below_breakdown_unchanged(self):
        scoring = MedianScoring(1e-4, subset_size=1, inlier_factor=1.5)

        score = scoring.score(np.array([0.0, 0.0, 0.0, np.inf, np.inf, np.inf, np.inf]))

        assert scoring.bound_inlier_ratio(score) == pytest.approx(3.0 / 7.0)

    def test_lower_median_is_better(self):
        scoring = MedianScoring(1e-4, subset_size=1, inlier_factor=1.5)
        good = scoring.score(np.array([0.1, 0.1, 9.0]))
        bad = scoring.score(np.array([0.5, 0.5, 0.5]))

        assert scoring.is_better(good, bad)
        assert scoring.is_better(good, None)

    def test_infinite_residuals_never_inliers(self):
        scoring = MedianScoring(1e-4, subset_size=1, inlier_factor=1.5)

        score = scoring.score(np.array([np.inf, np.inf, np.inf, 0.0]))

        assert math.isinf(score.threshold)
        assert_array_equal(score.inliers, [False, False, False, True])


class TestRobustScale:
    def test_small_sample_correction(self):
        assert robust_scale(np.full(11, 2.0), 1) == pytest.approx(1.4826 * 1.5 * 2.0)

    def test_no_correction_without_redundancy(self):
        assert robust_scale(np.array([2.0]), 1) == pytest.approx(1.4826 * 2.0)

    def test_empty_residuals(self):
        with pytest.raises(ValueError):
            robust_scale(np.array([]), 1)


class TestRequiredIterations:
    def test_formula(self):
        expected = math.ceil(math.log(0.01) / math.log(1.0 - 0.7 ** 4))

        assert required_iterations(0.99, 0.7, 4, 5000) == expected

    def test_clamped_to_max_iterations(self):
        assert required_iterations(0.99, 0.01, 4, 100) == 100
        assert required_iterations(0.99, 0.0, 4, 100) == 100

    def test_more_confidence_needs_more_iterations(self):
        assert required_iterations(0.999, 0.5, 3, 5000) > required_iterations(0.9, 0.5, 3, 5000)

    def test_all_inliers_needs_one_iteration(self):
        assert required_iterations(0.99, 1.0, 10, 5000) == 1
