"""
Robust estimation of models from outlier-contaminated samples.

Available components:
    - RobustEstimator: Generic engine (RANSAC, LMedS, MSAC, PROSAC, PROMedS)
    - SequentialRobustEstimator: Two chained robust estimations
    - ModelFitter / LeastSquaresModelFitter / AnchoredModelFitter: Model interface
    - refine: Weighted refinement and covariance propagation
    - BlockDiagonalBuilder / build_block_diagonal: Covariance assembly
"""

from ipnav.robust.covariance import BlockDiagonalBuilder, build_block_diagonal
from ipnav.robust.engine import RobustEstimator
from ipnav.robust.exceptions import (
    DegenerateSubsetError,
    LockedException,
    NotReadyException,
    RefinementError,
    RobustEstimatorError,
    RobustEstimatorException,
)
from ipnav.robust.fitter import (
    AnchoredModelFitter,
    LeastSquaresModelFitter,
    ModelFitter,
    RefinedFit,
)
from ipnav.robust.listener import RobustEstimatorListener
from ipnav.robust.refinement import RefinementOutcome, propagate_covariance, refine
from ipnav.robust.samplers import ProsacSampler, UniformSampler
from ipnav.robust.scoring import (
    InlierCountScoring,
    MedianScoring,
    TruncatedCostScoring,
    required_iterations,
    robust_scale,
)
from ipnav.robust.sequential import SequentialEstimationResult, SequentialRobustEstimator
from ipnav.robust.types import (
    EstimationResult,
    InliersData,
    RobustEstimatorConfig,
    RobustEstimatorMethod,
)

__all__ = [
    # Engine
    "RobustEstimator",
    "RobustEstimatorMethod",
    "RobustEstimatorConfig",
    "RobustEstimatorListener",
    "EstimationResult",
    "InliersData",
    # Fitters
    "ModelFitter",
    "LeastSquaresModelFitter",
    "AnchoredModelFitter",
    "RefinedFit",
    # Strategies
    "UniformSampler",
    "ProsacSampler",
    "InlierCountScoring",
    "TruncatedCostScoring",
    "MedianScoring",
    "required_iterations",
    "robust_scale",
    # Refinement and covariance
    "refine",
    "propagate_covariance",
    "RefinementOutcome",
    "BlockDiagonalBuilder",
    "build_block_diagonal",
    # Sequential composition
    "SequentialRobustEstimator",
    "SequentialEstimationResult",
    # Errors
    "RobustEstimatorError",
    "LockedException",
    "NotReadyException",
    "RobustEstimatorException",
    "DegenerateSubsetError",
    "RefinementError",
]
