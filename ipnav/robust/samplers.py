"""
Subset samplers for robust estimators.

Samplers draw the sample indices used to fit each candidate model:

    - UniformSampler: uniform subsets without replacement (RANSAC, LMedS, MSAC)
    - ProsacSampler: progressive sampling from the highest-quality samples
      (PROSAC, PROMedS)

PROSAC (Chum & Matas, 2005) sorts samples by decreasing quality and draws
the t-th subset from the n best samples only, where the prefix size n grows
with t according to the growth function

    T_n   = T_N · Π_{i=0..m-1} (n - i) / (N - i)
    T_n+1 = T_n · (n + 1) / (n + 1 - m)
    T'_n+1 = T'_n + ⌈T_n+1 - T_n⌉

Every subset drawn from prefix n contains the n-th sample plus m - 1 samples
drawn uniformly from the n - 1 better ones. Once the prefix reaches all
samples (or the draw budget T_N is spent) sampling becomes uniform.
"""

import math
from typing import Optional

import numpy as np

DEFAULT_PROSAC_CONVERGENCE_DRAWS = 200000


class Sampler:
    """Base class for subset samplers over num_samples indexed samples."""

    def __init__(self, num_samples: int, rng: Optional[np.random.Generator] = None):
        if num_samples < 1:
            raise ValueError(f"num_samples must be positive, got {num_samples}")
        self.num_samples = num_samples
        self.rng = rng if rng is not None else np.random.default_rng()

    def draw(self, subset_size: int) -> np.ndarray:
        """Draw subset_size distinct sample indices."""
        raise NotImplementedError

    def _check_subset_size(self, subset_size: int) -> None:
        if not 1 <= subset_size <= self.num_samples:
            raise ValueError(
                f"subset_size must be in [1, {self.num_samples}], got {subset_size}"
            )


class UniformSampler(Sampler):
    """Uniform random subsets without replacement."""

    def draw(self, subset_size: int) -> np.ndarray:
        self._check_subset_size(subset_size)
        return self.rng.choice(self.num_samples, size=subset_size, replace=False)


class ProsacSampler(Sampler):
    """
    Progressive sampler ordered by quality scores.

    Args:
        quality_scores: One score per sample, higher means more trustworthy.
        subset_size: Size m of every drawn subset.
        rng: Random generator.
        convergence_draws: Draw budget T_N after which sampling is uniform.

    Example:
        >>> import numpy as np
        >>> scores = np.arange(10, dtype=float)
        >>> sampler = ProsacSampler(scores, 3, np.random.default_rng(0))
        >>> sorted(sampler.draw(3).tolist())  # first draw uses the 3 best samples
        [7, 8, 9]
    """

    def __init__(
        self,
        quality_scores: np.ndarray,
        subset_size: int,
        rng: Optional[np.random.Generator] = None,
        convergence_draws: int = DEFAULT_PROSAC_CONVERGENCE_DRAWS,
    ):
        quality_scores = np.asarray(quality_scores, dtype=float)
        if quality_scores.ndim != 1:
            raise ValueError(f"quality_scores must be 1D, got shape {quality_scores.shape}")
        super().__init__(len(quality_scores), rng)
        self._check_subset_size(subset_size)
        if convergence_draws < 1:
            raise ValueError(f"convergence_draws must be positive, got {convergence_draws}")

        self.subset_size = subset_size
        self.convergence_draws = convergence_draws
        # Stable sort keeps the caller's order among equal scores
        self.order = np.argsort(-quality_scores, kind="stable")
        self.growth_function = self._growth_function()

        self.draws = 0
        self.prefix_size = subset_size

    def _growth_function(self) -> np.ndarray:
        """Compute T'_n for n = 1..N (entry n - 1)."""
        N = self.num_samples
        m = self.subset_size
        growth = np.ones(N, dtype=np.int64)

        T_n = float(self.convergence_draws)
        for i in range(m):
            T_n *= (m - i) / (N - i)

        T_n_prime = 1
        for n in range(m + 1, N + 1):
            T_n_plus1 = T_n * n / (n - m)
            T_n_prime = T_n_prime + math.ceil(T_n_plus1 - T_n)
            growth[n - 1] = T_n_prime
            T_n = T_n_plus1
        return growth

    def draw(self, subset_size: int) -> np.ndarray:
        if subset_size != self.subset_size:
            raise ValueError(
                f"ProsacSampler was built for subsets of {self.subset_size}, got {subset_size}"
            )
        self.draws += 1

        while self.prefix_size < self.num_samples and self.draws > self.growth_function[self.prefix_size - 1]:
            self.prefix_size += 1

        if self.prefix_size >= self.num_samples or self.draws > self.convergence_draws:
            positions = self.rng.choice(self.num_samples, size=subset_size, replace=False)
        else:
            # The newest sample of the prefix is always part of the subset
            head = self.rng.choice(self.prefix_size - 1, size=subset_size - 1, replace=False)
            positions = np.append(head, self.prefix_size - 1)

        return self.order[positions]
