"""Exceptions raised by robust estimators.

Argument errors (invalid confidence, mismatched quality scores, ...) are
reported with the built-in ValueError/TypeError. The classes below cover the
remaining failure kinds of an estimation call.
"""


class RobustEstimatorError(Exception):
    """Base class for robust estimator errors."""


class LockedException(RobustEstimatorError):
    """Raised when an estimator is modified or re-run while it is estimating."""

    def __init__(self, message: str = "Estimator is locked while estimating"):
        super().__init__(message)


class NotReadyException(RobustEstimatorError):
    """Raised when estimate() is called without enough data or configuration."""

    def __init__(self, message: str = "Estimator is not ready"):
        super().__init__(message)


class RobustEstimatorException(RobustEstimatorError):
    """Raised when robust estimation fails for a numerical reason."""


class DegenerateSubsetError(RobustEstimatorException):
    """Raised by a fitter when a sample subset has no unique model.

    Robust estimators retry such subsets with a new random draw.
    """


class RefinementError(RobustEstimatorException):
    """Raised when the weighted refinement system is singular or ill-posed."""
