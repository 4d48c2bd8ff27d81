"""Torch-CKF: Cubature Kalman filtering in PyTorch.

torch-ckf provides a Cubature Kalman Filter (CKF): a nonlinear Bayesian estimator that
propagates a Gaussian belief (mean + covariance) through nonlinear process and measurement
models with the 2n deterministic points of the spherical-radial cubature rule, instead of
linearizing them (EKF) or using a tuned unscented sigma-point set (UKF).

Key features
------------
- **Any nonlinear system**: the filter only needs ``f(state, control)`` and ``h(state)``.
- **Extended-state correction**: the measurement noise is sampled jointly with the state,
  so it goes through the same cubature transform as the state.
- **Robust numerics**: covariances are repaired (eigenvalue floor) before factorization and
  the Kalman gain relies on a Cholesky solve. Failures raise typed exceptions and never
  leave a half-updated belief.
- **Runs on CPU or GPU**, in any floating dtype (``float64`` recommended).

Getting started
---------------
The core API consists of:
- :class:`~torch_ckf.CubatureKalmanFilter` with :meth:`~torch_ckf.CubatureKalmanFilter.predict`,
  :meth:`~torch_ckf.CubatureKalmanFilter.correct`, :meth:`~torch_ckf.CubatureKalmanFilter.project`
  and :meth:`~torch_ckf.CubatureKalmanFilter.filter`.
- :class:`~torch_ckf.GaussianState` to represent Gaussian beliefs.
- :mod:`torch_ckf.systems` to describe the system (:class:`~torch_ckf.FunctionalSystem`,
  :class:`~torch_ckf.LinearSystem`, or any object with ``f`` and ``h``).

Notes on shapes
---------------
torch-ckf uses column vectors: states, controls and measures have shape ``(dim, 1)``
(flat ``(dim,)`` inputs are accepted). Sets of cubature points are batches of column
vectors ``(n_points, dim, 1)``.
"""

from .cubature_kalman_filter import CubatureKalmanFilter, GaussianState
from .errors import (
    CubatureKalmanFilterError,
    DimensionError,
    NotPositiveDefiniteError,
    SingularMeasurementCovarianceError,
)
from .systems import FunctionalSystem, LinearSystem, System

__all__ = [
    "CubatureKalmanFilter",
    "CubatureKalmanFilterError",
    "DimensionError",
    "FunctionalSystem",
    "GaussianState",
    "LinearSystem",
    "NotPositiveDefiniteError",
    "SingularMeasurementCovarianceError",
    "System",
]
__version__ = "0.1.0"
