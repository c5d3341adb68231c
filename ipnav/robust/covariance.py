"""
Block-diagonal covariance assembly.

Estimators that chain several sub-estimations report one covariance matrix
whose diagonal blocks are the covariances of each sub-estimation, e.g.

        ┌ P_pos   0      0     ┐
    P = │ 0       σ²_p   0     │
        └ 0       0      σ²_n  ┘

for position, transmitted power and path-loss exponent. Blocks are placed
at explicit offsets and must tile the diagonal exactly.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import block_diag


class BlockDiagonalBuilder:
    """
    Assemble a block-diagonal matrix from (offset, block) pairs.

    Args:
        size: Dimension of the resulting square matrix.

    Example:
        >>> import numpy as np
        >>> builder = BlockDiagonalBuilder(3)
        >>> builder.add(0, np.eye(2)).add(2, np.array([[4.0]])).build().diagonal().tolist()
        [1.0, 1.0, 4.0]
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"size must be positive, got {size}")
        self.size = size
        self._blocks: List[Tuple[int, np.ndarray]] = []

    def add(self, offset: int, block) -> "BlockDiagonalBuilder":
        """Place a square block with its top-left corner at (offset, offset)."""
        block = np.atleast_2d(np.asarray(block, dtype=float))
        if block.ndim != 2 or block.shape[0] != block.shape[1]:
            raise ValueError(f"Block must be square, got shape {block.shape}")
        if offset < 0 or offset + block.shape[0] > self.size:
            raise ValueError(
                f"Block of size {block.shape[0]} at offset {offset} "
                f"does not fit in a {self.size}x{self.size} matrix"
            )
        for other_offset, other in self._blocks:
            if offset < other_offset + other.shape[0] and other_offset < offset + block.shape[0]:
                raise ValueError(f"Block at offset {offset} overlaps block at offset {other_offset}")
        self._blocks.append((offset, block))
        return self

    def build(self) -> np.ndarray:
        """
        Build the matrix.

        Raises:
            ValueError: If the blocks do not cover every diagonal entry.
        """
        covered = sum(block.shape[0] for _, block in self._blocks)
        if covered != self.size:
            raise ValueError(f"Blocks cover {covered} of {self.size} dimensions")

        ordered = sorted(self._blocks, key=lambda item: item[0])
        return block_diag(*[block for _, block in ordered])


def build_block_diagonal(blocks: Sequence[Optional[np.ndarray]]) -> Optional[np.ndarray]:
    """
    Stack consecutive covariance blocks along the diagonal.

    Args:
        blocks: Square blocks (scalars are accepted as 1x1 variances).

    Returns:
        Block-diagonal matrix, or None if the sequence is empty or any
        block is None.

    Example:
        >>> import numpy as np
        >>> build_block_diagonal([np.eye(2), None]) is None
        True
        >>> build_block_diagonal([np.eye(2), 0.5]).shape
        (3, 3)
    """
    if not blocks or any(block is None for block in blocks):
        return None

    arrays = [np.atleast_2d(np.asarray(block, dtype=float)) for block in blocks]
    builder = BlockDiagonalBuilder(sum(a.shape[0] for a in arrays))
    offset = 0
    for array in arrays:
        builder.add(offset, array)
        offset += array.shape[0]
    return builder.build()
