"""Robust estimation for indoor positioning, radio-source localization and calibration.

This package contains the reusable components of the project:
- robust: Robust estimator engine (RANSAC, LMedS, MSAC, PROSAC, PROMedS),
  refinement/covariance stage and sequential composition
- estimators: Linear and nonlinear least squares solvers
- rf: Radio readings, path-loss models and radio-source estimators
- sensors: Magnetometer hard-iron calibration
"""

__version__ = "0.1.0"
