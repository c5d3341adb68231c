"""
Model fitters consumed by robust estimators.

A robust estimator never knows which model it is estimating: it delegates
to a fitter object that

    - fits a candidate model from a (minimal) subset of samples,
    - measures the residual of every sample against a candidate,
    - optionally refines a model over a weighted set of inliers and returns
      the Jacobian at the solution for covariance propagation.

Models are parameter vectors (numpy arrays); samples are opaque to the
estimator and only interpreted by the fitter.

Classes:
    - ModelFitter: Abstract fitter interface
    - LeastSquaresModelFitter: Fitter for observation models y = h(x),
      providing residuals and Levenberg-Marquardt or Gauss-Newton refinement
    - AnchoredModelFitter: Fitter conditioned on a previous estimation
    - RefinedFit: Output of a refinement
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from ipnav.estimators.nonlinear_least_squares import gauss_newton, levenberg_marquardt
from ipnav.robust.exceptions import RefinementError
from ipnav.robust.types import EstimationResult


@dataclass
class RefinedFit:
    """Output of a model refinement.

    Attributes:
        model: Refined model parameters (n,).
        jacobian: Jacobian of the predicted observations w.r.t. the model
            parameters, evaluated at the refined model (m × n).
        residuals: Signed residuals y - h(model) of the refined samples (m,).
    """

    model: np.ndarray
    jacobian: np.ndarray
    residuals: np.ndarray


_REFINE_SOLVERS = {"lm": levenberg_marquardt, "gn": gauss_newton}


class ModelFitter(ABC):
    """Abstract base class for minimal-subset model fitters."""

    #: Inlier threshold (RANSAC, MSAC, PROSAC) and stop threshold on the
    #: median residual (LMedS, PROMedS) used when none is configured.
    #: None falls back to the method default.
    default_threshold: Optional[float] = None
    default_stop_threshold: Optional[float] = None

    @property
    @abstractmethod
    def minimum_samples(self) -> int:
        """Smallest number of samples that determines a unique model."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Number of model parameters."""

    @property
    def parameter_blocks(self) -> Dict[str, slice]:
        """Named groups of model parameters, used to split covariances."""
        return {"parameters": slice(0, self.dimensions)}

    @abstractmethod
    def fit(self, samples: Sequence) -> np.ndarray:
        """
        Fit a model from a subset of samples.

        Args:
            samples: At least minimum_samples samples.

        Returns:
            Model parameter vector (dimensions,).

        Raises:
            DegenerateSubsetError: If the samples do not determine a model
                (e.g. collinear anchors).
        """

    @abstractmethod
    def residuals(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        """Absolute residual of each sample against a model."""

    def sample_variances(
        self, model: np.ndarray, samples: Sequence, use_covariances: bool = True
    ) -> np.ndarray:
        """Measurement variance of each sample at a model (ones by default)."""
        return np.ones(len(samples))

    def refine(
        self, samples: Sequence, weights: np.ndarray, initial_model: np.ndarray
    ) -> RefinedFit:
        """
        Refine a model over weighted samples.

        Raises:
            RefinementError: If refinement is not supported or fails.
        """
        raise RefinementError(f"{type(self).__name__} does not support refinement")


class LeastSquaresModelFitter(ModelFitter):
    """
    Fitter for models observed through a measurement function y = h(x).

    Subclasses provide the observation vector, the predicted observations and
    their Jacobian; residuals and refinement are derived from them.
    Refinement runs Levenberg-Marquardt from the robust candidate, or
    Gauss-Newton when refine_solver is "gn".
    """

    max_refine_iterations: int = 50
    refine_solver: str = "lm"

    @abstractmethod
    def observations(self, samples: Sequence) -> np.ndarray:
        """Observed values y (m,) of the samples."""

    @abstractmethod
    def predict(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        """Predicted observations h(model) (m,) of the samples."""

    @abstractmethod
    def jacobian(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        """Jacobian ∂h/∂model (m × n) of the predicted observations."""

    def residuals(self, model: np.ndarray, samples: Sequence) -> np.ndarray:
        return np.abs(self.observations(samples) - self.predict(model, samples))

    def refine(
        self, samples: Sequence, weights: np.ndarray, initial_model: np.ndarray
    ) -> RefinedFit:
        samples = list(samples)
        weights = np.asarray(weights, dtype=float)
        n = self.dimensions

        if len(samples) < n:
            raise RefinementError(
                f"Refinement needs at least {n} samples, got {len(samples)}"
            )
        if weights.shape != (len(samples),) or not np.all(np.isfinite(weights)):
            raise RefinementError("Refinement weights must be finite, one per sample")

        solver = _REFINE_SOLVERS.get(self.refine_solver)
        if solver is None:
            raise ValueError(
                f"Unknown refine_solver: {self.refine_solver}. Use 'lm' or 'gn'."
            )

        y = self.observations(samples)
        try:
            result = solver(
                lambda x: self.predict(x, samples),
                lambda x: self.jacobian(x, samples),
                y,
                np.asarray(initial_model, dtype=float),
                weights=weights,
                max_iter=self.max_refine_iterations,
            )
        except np.linalg.LinAlgError as e:
            raise RefinementError(f"Singular refinement system: {e}") from e

        if not np.all(np.isfinite(result.x)):
            raise RefinementError("Refinement diverged")

        return RefinedFit(model=result.x, jacobian=result.jacobian, residuals=result.residuals)


class AnchoredModelFitter(ModelFitter):
    """
    Fitter whose model is conditioned on the result of a previous estimation.

    Used by sequential estimators: e.g. a path-loss fitter needs the source
    position robustly estimated from ranging readings as a fixed anchor.
    """

    @abstractmethod
    def anchored(self, result: EstimationResult) -> ModelFitter:
        """Return a fitter anchored at the model (and covariance) of result."""
