"""System models consumed by :class:`~torch_ckf.CubatureKalmanFilter`.

The filter only needs two capabilities from a system:

- ``f(state, control) -> state``: the process (transition) model,
- ``h(state) -> measurement``: the measurement model.

Any object exposing them can be used (see :class:`System`), there is no base class to inherit from.
States, controls and measurements are column vectors ``(dim, 1)``. When the filter is built with
``vectorized=True``, ``f`` and ``h`` receive a whole batch of points ``(p, dim, 1)`` at once
(with a single control ``(dim_u, 1)``) and must return a batch as well.
"""

from __future__ import annotations

import dataclasses
from typing import Callable, Protocol, overload, runtime_checkable

import torch


@runtime_checkable
class System(Protocol):
    """Capability set required by the cubature Kalman filter."""

    def f(self, state: torch.Tensor, control: torch.Tensor) -> torch.Tensor:
        """Process model: predict the next state from ``state`` and ``control``."""
        ...

    def h(self, state: torch.Tensor) -> torch.Tensor:
        """Measurement model: expected measurement of ``state``."""
        ...


@dataclasses.dataclass
class FunctionalSystem:
    """System built from a pair of callables.

    Example:
    ```python
        system = FunctionalSystem(
            lambda x, u: x + u,  # Integrator
            lambda x: x.pow(2),  # Squared measurement
        )
    ```

    Attributes:
        process_fn (Callable[[torch.Tensor, torch.Tensor], torch.Tensor]): Process model ``f(x, u)``.
        measurement_fn (Callable[[torch.Tensor], torch.Tensor]): Measurement model ``h(x)``.
    """

    process_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor]
    measurement_fn: Callable[[torch.Tensor], torch.Tensor]

    def f(self, state: torch.Tensor, control: torch.Tensor) -> torch.Tensor:
        return self.process_fn(state, control)

    def h(self, state: torch.Tensor) -> torch.Tensor:
        return self.measurement_fn(state)


class LinearSystem:
    """Linear Gaussian system.

        x_k = F x_{k-1} + B u_k
        z_k = H x_k

    Cubature rules are exact for linear models: the cubature Kalman filter then matches the classic
    Kalman filter equations. ``f`` and ``h`` rely on (batched) matrix products and support ``vectorized=True``.

    Attributes:
        process_matrix (torch.Tensor): Process/Transition matrix ``F``.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``.
            Shape: ``(dim_z, dim_x)``
        control_matrix (torch.Tensor | None): Control matrix ``B``. If None, the control is ignored.
            Shape: ``(dim_x, dim_u)``
    """

    def __init__(
        self,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        control_matrix: torch.Tensor | None = None,
    ) -> None:
        self.process_matrix = process_matrix
        self.measurement_matrix = measurement_matrix
        self.control_matrix = control_matrix

    def f(self, state: torch.Tensor, control: torch.Tensor) -> torch.Tensor:
        if self.control_matrix is None:
            return self.process_matrix @ state
        return self.process_matrix @ state + self.control_matrix @ control

    def h(self, state: torch.Tensor) -> torch.Tensor:
        return self.measurement_matrix @ state

    def __repr__(self) -> str:
        return (
            f"LinearSystem(dim_x={self.process_matrix.shape[-1]}, dim_z={self.measurement_matrix.shape[-2]}, "
            f"dim_u={0 if self.control_matrix is None else self.control_matrix.shape[-1]})"
        )

    @overload
    def to(self, dtype: torch.dtype) -> LinearSystem: ...

    @overload
    def to(self, device: torch.device) -> LinearSystem: ...

    def to(self, fmt):
        """Convert the system matrices to a specific device or dtype."""
        return LinearSystem(
            self.process_matrix.to(fmt),
            self.measurement_matrix.to(fmt),
            self.control_matrix.to(fmt) if self.control_matrix is not None else None,
        )
