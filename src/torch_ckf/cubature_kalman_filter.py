from __future__ import annotations

import contextlib
import copy
import dataclasses
import logging
import math
from typing import Callable, overload

import torch
import torch.linalg

from .cubature import EPSILON, cross_covariance, cubature_moments, cubature_points, cubature_weights
from .cubature import ensure_positive_definite as _ensure_positive_definite
from .errors import (
    DimensionError,
    NotPositiveDefiniteError,
    SingularMeasurementCovarianceError,
    as_column,
    as_matrix,
    check_shape,
)
from .systems import System

logger = logging.getLogger(__name__)


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


@dataclasses.dataclass
class GaussianState:
    """Gaussian belief x ~ N(mean, covariance).

    Vectors are **column vectors** with shape ``(..., dim, 1)``. Leading dimensions are only used
    to stack several beliefs (for instance the beliefs over time returned by
    :meth:`CubatureKalmanFilter.filter`).

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance), computed lazily when needed.
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    @property
    def dim(self) -> int:
        """Dimension of the distribution."""
        return self.mean.shape[-2]

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index the leading (stacking) dimensions."""
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the squared Mahalanobis distance to a measure.

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        The precision is computed (with a Cholesky inverse) and stored on the first call.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance
                Shape: ``(...)``
        """
        diff = self.mean - measure
        if self.precision is None:
            self.precision = torch.cholesky_inverse(torch.linalg.cholesky(self.covariance))
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the Mahalanobis distance to a measure (square root of :meth:`mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Log-likelihood of the given measure under the Gaussian distribution.

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        _, log_det = torch.linalg.slogdet(self.covariance)
        return -0.5 * (self.dim * math.log(2 * math.pi) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Likelihood of the given measure (exponential of :meth:`log_likelihood`)."""
        return self.log_likelihood(measure).exp()


class CubatureKalmanFilter:
    r"""Cubature Kalman filter for nonlinear systems with additive Gaussian noise.

    It estimates the hidden state of the system:

        x_k = f(x_{k-1}, u_k) + w_k,   w_k ~ N(0, Q)
        z_k = h(x_k) + v_k,            v_k ~ N(0, R)

    where ``x_k`` is the state (dimension ``N``), ``u_k`` the control (dimension ``M``) and ``z_k`` the
    measure (dimension ``K``). The belief x_k | z_{1:k} ~ N(mean, covariance) is owned and updated in place
    by the filter: call :meth:`predict` then :meth:`correct` at each time step.

    Gaussians are propagated through ``f`` and ``h`` with the 2n points of the spherical-radial cubature rule
    (see :mod:`torch_ckf.cubature`). During the correction, the measurement noise is sampled jointly with the
    state: cubature points are drawn in the extended space (x, v) of dimension N + K, and each expected measure
    is ``h(x_i) + v_i``. The noise R is therefore already part of the expected-measurement covariance.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(dim, 1)``. Flat vectors ``(dim,)`` are accepted as inputs.
    - A set of points is a batch of column vectors ``(n_points, dim, 1)``.

    Numerical notes:
    - Run in float64 if you can: cubature points are spread by sqrt(n) standard deviations.
    - Before generating points, covariances are symmetrized and, if the Cholesky factorization fails,
      repaired by clipping their eigenvalues to ``epsilon``. Disable ``repair_covariance`` to fail fast instead.
    - The Kalman gain is computed with a Cholesky solve of the expected-measurement covariance.

    Attributes:
        repair_covariance (bool): Repair non positive definite covariances before generating points.
            Default: True
        epsilon (float): Eigenvalue floor used by the repair.
            Default: 1e-9
        vectorized (bool): If True, ``f`` and ``h`` are called once on the whole batch of points
            (``(p, dim, 1)``). Otherwise they are called point by point.
            Default: False
        generator (torch.Generator | None): Random generator used by :meth:`sample`.
            It is never used by :meth:`predict` or :meth:`correct`.
    """

    _REPR_SPLIT_LENGTH = 110
    _TENSORS = (
        "_mean",
        "_covariance",
        "_process_noise",
        "_measurement_noise",
        "_weights",
        "_extended_weights",
        "_cubature_points",
        "_propagated_points",
        "_extended_cubature_points",
        "_expected_measurements",
        "_kalman_gain",
    )

    def __init__(
        self,
        system: System,
        state_dim: int,
        input_dim: int,
        measurement_dim: int,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        mean: torch.Tensor,
        covariance: torch.Tensor,
        *,
        repair_covariance=True,
        epsilon=EPSILON,
        vectorized=False,
        generator: torch.Generator | None = None,
    ) -> None:
        if state_dim < 1 or measurement_dim < 1 or input_dim < 0:
            raise ValueError(
                f"Invalid dimensions: state_dim={state_dim}, input_dim={input_dim}, measurement_dim={measurement_dim}"
            )

        covariance = torch.as_tensor(covariance)
        dtype = covariance.dtype if covariance.is_floating_point() else torch.get_default_dtype()
        device = covariance.device

        self._system = system
        self._state_dim = state_dim
        self._input_dim = input_dim
        self._measure_dim = measurement_dim

        self._mean = as_column("mean", mean, state_dim, dtype=dtype, device=device)
        self._covariance = as_matrix("covariance", covariance, state_dim, state_dim, dtype=dtype, device=device)
        self._process_noise = as_matrix(
            "process_noise", process_noise, state_dim, state_dim, dtype=dtype, device=device
        )
        self._measurement_noise = as_matrix(
            "measurement_noise", measurement_noise, measurement_dim, measurement_dim, dtype=dtype, device=device
        )

        if not torch.allclose(self._covariance, self._covariance.mT):
            raise NotPositiveDefiniteError("Initial covariance is not symmetric")
        if torch.linalg.cholesky_ex(self._covariance)[1].item() != 0:
            raise NotPositiveDefiniteError("Initial covariance is not positive definite")

        self.repair_covariance = repair_covariance
        self.epsilon = epsilon
        self.vectorized = vectorized
        self.generator = generator

        extended_dim = state_dim + measurement_dim
        self._weights = cubature_weights(state_dim, dtype=dtype, device=device)
        self._extended_weights = cubature_weights(extended_dim, dtype=dtype, device=device)

        # Last generated points (zeros until the first predict/correct)
        self._cubature_points = torch.zeros(2 * state_dim, state_dim, 1, dtype=dtype, device=device)
        self._propagated_points = torch.zeros(2 * state_dim, state_dim, 1, dtype=dtype, device=device)
        self._extended_cubature_points = torch.zeros(
            2 * extended_dim, extended_dim, 1, dtype=dtype, device=device
        )
        self._expected_measurements = torch.zeros(2 * extended_dim, measurement_dim, 1, dtype=dtype, device=device)
        self._kalman_gain = torch.zeros(state_dim, measurement_dim, dtype=dtype, device=device)

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable (N)."""
        return self._state_dim

    @property
    def input_dim(self) -> int:
        """Dimension of the control variable (M)."""
        return self._input_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable (K)."""
        return self._measure_dim

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self._mean.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._mean.dtype

    @property
    def system(self) -> System:
        """System model (process and measurement functions)."""
        return self._system

    @property
    def mean(self) -> torch.Tensor:
        """Mean of the current belief. Shape: ``(N, 1)``"""
        return self._mean

    @mean.setter
    def mean(self, mean: torch.Tensor) -> None:
        self._mean = as_column("mean", mean, self.state_dim, dtype=self.dtype, device=self.device)

    @property
    def covariance(self) -> torch.Tensor:
        """Covariance of the current belief. Shape: ``(N, N)``"""
        return self._covariance

    @covariance.setter
    def covariance(self, covariance: torch.Tensor) -> None:
        self._covariance = as_matrix(
            "covariance", covariance, self.state_dim, self.state_dim, dtype=self.dtype, device=self.device
        )

    @property
    def state(self) -> GaussianState:
        """Current belief as a GaussianState."""
        return GaussianState(self._mean, self._covariance)

    @state.setter
    def state(self, state: GaussianState) -> None:
        mean = as_column("mean", state.mean, self.state_dim, dtype=self.dtype, device=self.device)
        covariance = as_matrix(
            "covariance", state.covariance, self.state_dim, self.state_dim, dtype=self.dtype, device=self.device
        )
        self._mean = mean
        self._covariance = covariance

    @property
    def process_noise(self) -> torch.Tensor:
        """Process noise covariance ``Q``. Shape: ``(N, N)``"""
        return self._process_noise

    @process_noise.setter
    def process_noise(self, process_noise: torch.Tensor) -> None:
        self._process_noise = as_matrix(
            "process_noise", process_noise, self.state_dim, self.state_dim, dtype=self.dtype, device=self.device
        )

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Measurement noise covariance ``R``. Shape: ``(K, K)``"""
        return self._measurement_noise

    @measurement_noise.setter
    def measurement_noise(self, measurement_noise: torch.Tensor) -> None:
        self._measurement_noise = as_matrix(
            "measurement_noise",
            measurement_noise,
            self.measure_dim,
            self.measure_dim,
            dtype=self.dtype,
            device=self.device,
        )

    @property
    def cubature_points(self) -> torch.Tensor:
        """Cubature points generated by the last predict. Shape: ``(2N, N, 1)``"""
        return self._cubature_points

    @property
    def propagated_points(self) -> torch.Tensor:
        """Images of :attr:`cubature_points` through ``f``. Shape: ``(2N, N, 1)``"""
        return self._propagated_points

    @property
    def extended_cubature_points(self) -> torch.Tensor:
        """Extended (state + measurement noise) points of the last correct. Shape: ``(2(N+K), N+K, 1)``"""
        return self._extended_cubature_points

    @property
    def expected_measurements(self) -> torch.Tensor:
        """Expected measurement of each extended point of the last correct. Shape: ``(2(N+K), K, 1)``"""
        return self._expected_measurements

    @property
    def kalman_gain(self) -> torch.Tensor:
        """Kalman gain of the last correct. Shape: ``(N, K)``"""
        return self._kalman_gain

    @overload
    def to(self, dtype: torch.dtype) -> CubatureKalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> CubatureKalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        The whole state of the filter is copied as is (belief, noises, last gain and points), without the
        construction checks. The system and the generator are shared (not converted) with the new filter.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            CubatureKalmanFilter: The filter with the right format
        """
        kf = copy.copy(self)
        for name in self._TENSORS:
            setattr(kf, name, getattr(self, name).to(fmt))
        return kf

    def predict(self, control: torch.Tensor | None = None) -> GaussianState:
        """Advance the belief through the process model.

        From the belief N(mu, P), it generates the 2N cubature points X_i, propagates them with
        ``X'_i = f(X_i, u)`` and recombines them:

            mu' = Σ w_i X'_i
            P' = Σ w_i (X'_i - mu')(X'_i - mu')ᵀ + Q

        with w_i = 1 / (2N). The belief of the filter is replaced by N(mu', P').

        Args:
            control (torch.Tensor | None): Control vector ``u``. Can be omitted if ``input_dim == 0``.
                Shape: ``(M, 1)`` or ``(M,)``

        Returns:
            GaussianState: The predicted (prior) belief.
                Shape (mean): ``(N, 1)``
                Shape (covariance): ``(N, N)``

        Raises:
            DimensionError: If the control or the output of ``f`` has a wrong shape.
            NotPositiveDefiniteError: If the current covariance cannot be factorized, or if the predicted
                belief is not finite.
        """
        control = self._as_control(control)

        points = cubature_points(self._mean, self._prepare_covariance(self._covariance))
        propagated = self._evaluate("f(state, control)", self.system.f, points, self.state_dim, control)

        mean, covariance = cubature_moments(propagated, self._weights)
        covariance = covariance + self._process_noise
        if not (torch.isfinite(mean).all() and torch.isfinite(covariance).all()):
            raise NotPositiveDefiniteError("Predicted belief contains non-finite values (check the process model)")

        self._cubature_points = points
        self._propagated_points = propagated
        self._mean = mean
        self._covariance = covariance

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Predict: trace(P) = %.6g", covariance.trace().item())

        return self.state

    def project(self) -> GaussianState:
        """Compute the expected measurement distribution z | ... ~ N(ẑ, S) of the current belief.

        The belief is not modified. Useful to gate measures or to evaluate their likelihood:
        ``kf.project().log_likelihood(measure)``.

        Returns:
            GaussianState: Distribution of the expected measure (measurement noise included).
                Shape (mean): ``(K, 1)``
                Shape (covariance): ``(K, K)``
        """
        return self._extended_transform()[3]

    def correct(self, measurement: torch.Tensor) -> GaussianState:
        """Fuse a new measure into the belief.

        It follows the extended-state cubature update:

        1. Extended belief over (x, v): mean ``[mu; 0]`` and covariance ``blockdiag(P, R)``.
        2. 2(N+K) extended points (x_i, v_i) with weights 1 / (2(N+K)),
           and expected measures ``Z_i = h(x_i) + v_i``.
        3. ẑ = Σ w_i Z_i,  S = Σ w_i (Z_i - ẑ)(Z_i - ẑ)ᵀ (R is not added again),
           P_xz = Σ w_i (x_i - mu)(Z_i - ẑ)ᵀ.
        4. Gain G = P_xz S^{-1} (Cholesky solve).
        5. mu' = mu + G (z - ẑ),  P' = P - G S Gᵀ.

        The belief is left unchanged if an error is raised.

        Args:
            measurement (torch.Tensor): Measure ``z``.
                Shape: ``(K, 1)`` or ``(K,)``

        Returns:
            GaussianState: The updated (posterior) belief.
                Shape (mean): ``(N, 1)``
                Shape (covariance): ``(N, N)``

        Raises:
            DimensionError: If the measure or the output of ``h`` has a wrong shape.
            NotPositiveDefiniteError: If the extended covariance cannot be factorized.
            SingularMeasurementCovarianceError: If S cannot be inverted.
        """
        measurement = as_column("measurement", measurement, self.measure_dim, dtype=self.dtype, device=self.device)

        extended_covariance, points, measurements, projection, cross_cov = self._extended_transform()

        if not torch.isfinite(projection.covariance).all():
            raise SingularMeasurementCovarianceError("Expected-measurement covariance contains non-finite values")

        cholesky, info = torch.linalg.cholesky_ex(projection.covariance)
        if info.item() != 0:
            raise SingularMeasurementCovarianceError(
                "Expected-measurement covariance is singular or not positive definite"
            )

        # Solve S Gᵀ = P_xzᵀ rather than inverting S
        kalman_gain = torch.cholesky_solve(cross_cov.mT, cholesky).mT

        residual = measurement - projection.mean
        mean = self._mean + kalman_gain @ residual
        covariance = extended_covariance[: self.state_dim, : self.state_dim] - (
            kalman_gain @ projection.covariance @ kalman_gain.mT
        )

        self._extended_cubature_points = points
        self._expected_measurements = measurements
        self._kalman_gain = kalman_gain
        self._mean = mean
        self._covariance = 0.5 * (covariance + covariance.mT)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Correct: |z - ẑ| = %.6g, trace(P) = %.6g", residual.norm().item(), self._covariance.trace().item()
            )

        return self.state

    def sample(self, num_samples: int) -> torch.Tensor:
        """Draw samples from the current belief with :attr:`generator`.

        Args:
            num_samples (int): Number of samples to draw.

        Returns:
            torch.Tensor: Samples of the state.
                Shape: ``(num_samples, N, 1)``
        """
        cholesky, info = torch.linalg.cholesky_ex(self._prepare_covariance(self._covariance))
        if info.item() != 0:
            raise NotPositiveDefiniteError("Covariance is not positive definite")

        noise = torch.randn(
            (num_samples, self.state_dim, 1), generator=self.generator, dtype=self.dtype, device=self.device
        )
        return self._mean + cholesky @ noise

    def filter(
        self,
        measures: torch.Tensor,
        controls: torch.Tensor | None = None,
        *,
        update_first=True,
        return_all=False,
    ) -> GaussianState:
        """Run the predict/correct loop over a sequence of measures.

        The belief of the filter is updated along the way: after the call, it holds the last posterior.
        A measure containing a NaN is skipped (no correct step at this timestep).

        Args:
            measures (torch.Tensor): Sequence of measures over time.
                Shape: ``(T, K, 1)``
            controls (torch.Tensor | None): Control applied before each measure. Can be omitted if
                ``input_dim == 0``. With ``update_first``, the first control is not used.
                Shape: ``(T, M, 1)``
            update_first (bool): If True, skip the prediction step on the first timestep, such that the current
                belief is the prior of the first measure.
                Default: True
            return_all (bool): If True, return the posterior belief at every timestep as a single `GaussianState`
                with a leading time dimension. Otherwise, only the last posterior is returned.
                Default: False

        Returns:
            GaussianState: Either the last posterior belief, or all of them.
                Shape (mean): ``([T, ]N, 1)``
                Shape (covariance): ``([T, ]N, N)``
        """
        measures = torch.as_tensor(measures, dtype=self.dtype, device=self.device)
        if controls is not None:
            controls = torch.as_tensor(controls, dtype=self.dtype, device=self.device)
            if controls.shape[0] != measures.shape[0]:
                raise DimensionError("controls", (measures.shape[0], self.input_dim, 1), controls.shape)

        saver = GaussianState(
            torch.empty((measures.shape[0], self.state_dim, 1), dtype=self.dtype, device=self.device),
            torch.empty((measures.shape[0], self.state_dim, self.state_dim), dtype=self.dtype, device=self.device),
        )

        for t, measure in enumerate(measures):
            if t or not update_first:
                self.predict(None if controls is None else controls[t])

            if torch.isnan(measure).any():
                logger.debug("Skipping correct step at t=%d (nan measure)", t)
            else:
                self.correct(measure)

            saver.mean[t] = self._mean
            saver.covariance[t] = self._covariance

        if return_all:
            return saver

        return self.state

    def _as_control(self, control: torch.Tensor | None) -> torch.Tensor:
        if control is None:
            if self.input_dim:
                raise DimensionError("control", (self.input_dim, 1), ())
            return torch.zeros(0, 1, dtype=self.dtype, device=self.device)
        return as_column("control", control, self.input_dim, dtype=self.dtype, device=self.device)

    def _prepare_covariance(self, covariance: torch.Tensor) -> torch.Tensor:
        if self.repair_covariance:
            return _ensure_positive_definite(covariance, self.epsilon)
        return covariance

    def _evaluate(
        self, name: str, function: Callable[..., torch.Tensor], points: torch.Tensor, out_dim: int, *args
    ) -> torch.Tensor:
        """Evaluate a model function on a batch of points and check the output shape."""
        if self.vectorized:
            images = torch.as_tensor(function(points, *args), dtype=self.dtype, device=self.device)
            return check_shape(name, images, (points.shape[0], out_dim, 1))

        return torch.stack(
            [
                as_column(name, function(point, *args), out_dim, dtype=self.dtype, device=self.device)
                for point in points
            ]
        )

    def _extended_transform(
        self,
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, GaussianState, torch.Tensor]:
        """Cubature transform of the belief through ``h`` in the extended (state + noise) space.

        Returns:
            torch.Tensor: Extended covariance blockdiag(P, R) (after repair).
                Shape: ``(N+K, N+K)``
            torch.Tensor: Extended cubature points.
                Shape: ``(2(N+K), N+K, 1)``
            torch.Tensor: Expected measurement of each point.
                Shape: ``(2(N+K), K, 1)``
            GaussianState: Expected measurement distribution N(ẑ, S).
            torch.Tensor: Cross-covariance between the state and the measure.
                Shape: ``(N, K)``
        """
        noise_mean = torch.zeros(self.measure_dim, 1, dtype=self.dtype, device=self.device)
        extended_mean = torch.cat((self._mean, noise_mean))
        extended_covariance = self._prepare_covariance(
            torch.block_diag(self._covariance, self._measurement_noise)
        )

        points = cubature_points(extended_mean, extended_covariance)
        measurements = (
            self._evaluate("h(state)", self.system.h, points[:, : self.state_dim], self.measure_dim)
            + points[:, self.state_dim :]
        )

        mean, covariance = cubature_moments(measurements, self._extended_weights)
        cross_cov = cross_covariance(points, extended_mean, measurements, mean, self._extended_weights)

        return (
            extended_covariance,
            points,
            measurements,
            GaussianState(mean, covariance),
            cross_cov[: self.state_dim],
        )

    def __repr__(self) -> str:
        """Convert the Kalman filter into a readable string."""
        header = (
            f"Cubature Kalman Filter (State dimension: {self.state_dim}, Input dimension: {self.input_dim}, "
            f"Measure dimension: {self.measure_dim})"
        )
        belief = self._repr_pair("Belief: ", ("x", self.mean), ("P", self.covariance))
        noises = self._repr_pair("Noises: ", ("Q", self.process_noise), ("R", self.measurement_noise))

        n_char = max(len(line) for line in (header + "\n" + belief + "\n" + noises).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, belief, noises])

    def _repr_pair(self, title: str, left: tuple[str, torch.Tensor], right: tuple[str, torch.Tensor]) -> str:
        """Format two named tensors side by side (or one below the other if too long)."""
        with printoptions(profile="short", sci_mode=False, linewidth=80):
            left_repr = str(left[1]).split("\n")
            right_repr = str(right[1]).split("\n")

        left_header = f"{title}{left[0]} = "
        right_header = f"{' ' * len(title)}{right[0]} = "
        max_char_left = max(len(line) for line in left_repr)
        max_char_right = max(len(line) for line in right_repr)

        if max_char_left + max_char_right <= self._REPR_SPLIT_LENGTH:  # Single line
            n_lines = max(len(left_repr), len(right_repr))
            left_repr += [""] * (n_lines - len(left_repr))
            right_repr += [""] * (n_lines - len(right_repr))
            left_repr = [line + " " * (max_char_left - len(line)) for line in left_repr]

            headers = [left_header] + [" " * len(left_header)] * (n_lines - 1)
            sep = f"  &  {right[0]} = "
            seps = [sep] + [" " * len(sep)] * (n_lines - 1)
            lines = ["".join(parts).rstrip() for parts in zip(headers, left_repr, seps, right_repr)]
        else:  # Two blocks
            lines = [left_header + left_repr[0]] + [" " * len(left_header) + line for line in left_repr[1:]]
            lines += [""]
            lines += [right_header + right_repr[0]] + [" " * len(right_header) + line for line in right_repr[1:]]

        return "\n".join(lines)
