"""Exceptions raised by the cubature Kalman filter.

Numerical failures subclass :class:`torch.linalg.LinAlgError` so that code already handling
torch factorization errors keeps working. Shape errors subclass :class:`ValueError`.
"""

from __future__ import annotations

from typing import Sequence

import torch
import torch.linalg


class CubatureKalmanFilterError(Exception):
    """Base class of all the errors raised by torch-ckf."""


class DimensionError(CubatureKalmanFilterError, ValueError):
    """A vector or a matrix does not have the expected shape.

    Attributes:
        name (str): Name of the faulty argument (or model output).
        expected (tuple[int, ...]): Expected shape.
        actual (tuple[int, ...]): Received shape.
    """

    def __init__(self, name: str, expected: Sequence[int], actual: Sequence[int]) -> None:
        self.name = name
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(f"Invalid shape for `{name}`: expected {self.expected}, got {self.actual}")


class NotPositiveDefiniteError(CubatureKalmanFilterError, torch.linalg.LinAlgError):
    """A covariance matrix cannot be Cholesky-factorized (even after repair)."""


class SingularMeasurementCovarianceError(CubatureKalmanFilterError, torch.linalg.LinAlgError):
    """The expected-measurement covariance cannot be inverted during a correct step."""


def check_shape(name: str, tensor: torch.Tensor, expected: Sequence[int]) -> torch.Tensor:
    """Raise a DimensionError if ``tensor`` does not have exactly the ``expected`` shape."""
    if tuple(tensor.shape) != tuple(expected):
        raise DimensionError(name, expected, tensor.shape)
    return tensor


def as_column(name: str, vector, dim: int, *, dtype: torch.dtype, device: torch.device) -> torch.Tensor:
    """Convert ``vector`` into a column vector of shape ``(dim, 1)``.

    Flat vectors ``(dim,)`` and python sequences are accepted.

    Args:
        name (str): Name of the argument (for diagnostics).
        vector (torch.Tensor | Sequence[float] | float): Vector to convert.
        dim (int): Expected dimension.
        dtype (torch.dtype): Dtype of the result.
        device (torch.device): Device of the result.

    Returns:
        torch.Tensor: The column vector
            Shape: ``(dim, 1)``
    """
    tensor = torch.as_tensor(vector, dtype=dtype, device=device)
    if tensor.dim() == 0 and dim == 1:
        return tensor.reshape(1, 1)
    if tensor.dim() == 1 and tensor.shape[0] == dim:
        return tensor[:, None]
    return check_shape(name, tensor, (dim, 1))


def as_matrix(name: str, matrix, rows: int, cols: int, *, dtype: torch.dtype, device: torch.device) -> torch.Tensor:
    """Convert ``matrix`` into a tensor of shape ``(rows, cols)``.

    Scalars are accepted for ``1x1`` matrices.
    """
    tensor = torch.as_tensor(matrix, dtype=dtype, device=device)
    if tensor.dim() == 0 and rows == cols == 1:
        return tensor.reshape(1, 1)
    return check_shape(name, tensor, (rows, cols))
