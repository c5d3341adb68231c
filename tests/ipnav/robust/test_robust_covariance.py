"""
Unit tests for block-diagonal covariance assembly.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ipnav.robust import BlockDiagonalBuilder, build_block_diagonal


class TestBlockDiagonalBuilder:
    def test_blocks_at_offsets(self):
        P_pos = np.array([[1.0, 0.2], [0.2, 2.0]])

        P = BlockDiagonalBuilder(4).add(2, [[3.0]]).add(0, P_pos).add(3, 4.0).build()

        expected = np.zeros((4, 4))
        expected[:2, :2] = P_pos
        expected[2, 2] = 3.0
        expected[3, 3] = 4.0
        assert_allclose(P, expected)

    def test_uncovered_dimension_raises(self):
        builder = BlockDiagonalBuilder(3).add(0, np.eye(2))

        with pytest.raises(ValueError, match="cover 2 of 3"):
            builder.build()

    def test_overlapping_blocks_raise(self):
        builder = BlockDiagonalBuilder(4).add(0, np.eye(2))

        with pytest.raises(ValueError, match="overlaps"):
            builder.add(1, np.eye(2))

    @pytest.mark.parametrize("offset", [-1, 3])
    def test_block_outside_matrix_raises(self, offset):
        with pytest.raises(ValueError):
            BlockDiagonalBuilder(4).add(offset, np.eye(2))

    def test_non_square_block_raises(self):
        with pytest.raises(ValueError, match="square"):
            BlockDiagonalBuilder(3).add(0, np.ones((2, 3)))

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            BlockDiagonalBuilder(0)


class TestBuildBlockDiagonal:
    def test_consecutive_blocks(self):
        P = build_block_diagonal([np.eye(3) * 0.5, 2.0, np.array([[7.0]])])

        assert P.shape == (5, 5)
        assert_allclose(np.diag(P), [0.5, 0.5, 0.5, 2.0, 7.0])
        assert np.count_nonzero(P - np.diag(np.diag(P))) == 0

    def test_missing_block_gives_none(self):
        assert build_block_diagonal([None, np.eye(2)]) is None
        assert build_block_diagonal([np.eye(2), None]) is None

    def test_empty_gives_none(self):
        assert build_block_diagonal([]) is None
