r"""Spherical-radial cubature rule.

A Gaussian N(m, P) of dimension n is summarized by 2n equally weighted points:

    X_i = m + \sqrt{n} L e_i,   X_{n+i} = m - \sqrt{n} L e_i,   w_i = 1 / (2n)

where L is the lower Cholesky factor of P (P = L Lᵀ). The weighted mean and covariance of these points
are exactly (m, P), and propagating them through a nonlinear function yields a third-degree approximation
of the transformed moments (Arasaratnam & Haykin, "Cubature Kalman Filters", IEEE TAC 2009).

Shape conventions:
- A mean is a column vector ``(n, 1)``.
- A set of points is a batch of column vectors ``(2n, n, 1)``.
"""

from __future__ import annotations

import logging

import torch
import torch.linalg

from .errors import NotPositiveDefiniteError, check_shape

logger = logging.getLogger(__name__)

EPSILON = 1e-9
"""Eigenvalue floor used to repair covariances that are not positive definite."""


def cubature_weights(
    dim: int, *, dtype: torch.dtype | None = None, device: torch.device | None = None
) -> torch.Tensor:
    """Weights of the 2 * dim cubature points (all equal to 1 / (2 * dim)).

    Args:
        dim (int): Dimension of the Gaussian.
        dtype (torch.dtype | None): Dtype of the weights.
        device (torch.device | None): Device of the weights.

    Returns:
        torch.Tensor: Weights
            Shape: ``(2 * dim,)``
    """
    return torch.full((2 * dim,), 1.0 / (2 * dim), dtype=dtype, device=device)


def ensure_positive_definite(covariance: torch.Tensor, epsilon: float = EPSILON) -> torch.Tensor:
    """Return a symmetric positive definite version of ``covariance``.

    The covariance is first symmetrized. If its Cholesky factorization succeeds, it is returned as is.
    Otherwise its eigenvalues are clipped to ``epsilon`` and the matrix is rebuilt as V diag(λ) Vᵀ.

    Args:
        covariance (torch.Tensor): Covariance to repair.
            Shape: ``(n, n)``
        epsilon (float): Floor of the eigenvalues.
            Default: 1e-9

    Returns:
        torch.Tensor: Symmetric positive definite covariance
            Shape: ``(n, n)``

    Raises:
        NotPositiveDefiniteError: If the covariance contains non-finite values or cannot be repaired.
    """
    if not torch.isfinite(covariance).all():
        raise NotPositiveDefiniteError("Covariance contains non-finite values")

    covariance = 0.5 * (covariance + covariance.mT)
    _, info = torch.linalg.cholesky_ex(covariance)
    if info.item() == 0:
        return covariance

    eigenvalues, eigenvectors = torch.linalg.eigh(covariance)
    logger.warning(
        "Covariance is not positive definite (min eigenvalue: %.3e). Clipping eigenvalues to %.1e",
        eigenvalues.min().item(),
        epsilon,
    )
    repaired = eigenvectors @ torch.diag(eigenvalues.clamp_min(epsilon)) @ eigenvectors.mT
    repaired = 0.5 * (repaired + repaired.mT)

    _, info = torch.linalg.cholesky_ex(repaired)
    if info.item() != 0:
        raise NotPositiveDefiniteError(f"Unable to repair the covariance with an eigenvalue floor of {epsilon}")
    return repaired


def cubature_points(mean: torch.Tensor, covariance: torch.Tensor) -> torch.Tensor:
    """Generate the 2n cubature points of N(mean, covariance).

    Args:
        mean (torch.Tensor): Mean of the Gaussian (column vector).
            Shape: ``(n, 1)``
        covariance (torch.Tensor): Symmetric positive definite covariance.
            Shape: ``(n, n)``

    Returns:
        torch.Tensor: Cubature points. The first n points are ``mean + sqrt(n) L[:, i]``,
            the last n are ``mean - sqrt(n) L[:, i]``.
            Shape: ``(2n, n, 1)``

    Raises:
        NotPositiveDefiniteError: If the covariance cannot be Cholesky-factorized.
    """
    dim = mean.shape[0]
    check_shape("mean", mean, (dim, 1))
    check_shape("covariance", covariance, (dim, dim))
    if not torch.isfinite(covariance).all():
        raise NotPositiveDefiniteError("Covariance contains non-finite values")

    cholesky, info = torch.linalg.cholesky_ex(covariance)
    if info.item() != 0:
        raise NotPositiveDefiniteError(
            f"Covariance is not positive definite (leading minor of order {info.item()} is not positive)"
        )

    # Columns of sqrt(n) L, as a batch of column vectors: (n, n, 1)
    spread = (cholesky * dim**0.5).mT[..., None]
    return torch.cat((mean + spread, mean - spread))


def cubature_moments(points: torch.Tensor, weights: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Weighted mean and covariance of a set of points.

    Computes:

        mean = Σ w_i X_i
        cov = Σ w_i (X_i - mean)(X_i - mean)ᵀ

    which is the centered form of Σ w_i X_i X_iᵀ - mean meanᵀ.

    Args:
        points (torch.Tensor): Points to average.
            Shape: ``(p, d, 1)``
        weights (torch.Tensor): Weight of each point.
            Shape: ``(p,)``

    Returns:
        torch.Tensor: Weighted mean
            Shape: ``(d, 1)``
        torch.Tensor: Weighted (symmetric) covariance
            Shape: ``(d, d)``
    """
    mean = (weights[:, None, None] * points).sum(dim=0)
    deviations = points - mean
    covariance = (weights[:, None, None] * deviations @ deviations.mT).sum(dim=0)
    return mean, 0.5 * (covariance + covariance.mT)


def cross_covariance(
    points: torch.Tensor,
    mean: torch.Tensor,
    images: torch.Tensor,
    image_mean: torch.Tensor,
    weights: torch.Tensor,
) -> torch.Tensor:
    """Weighted cross-covariance between points and their images.

        P_xz = Σ w_i (X_i - mean)(Z_i - image_mean)ᵀ

    Args:
        points (torch.Tensor): Points X_i.
            Shape: ``(p, d, 1)``
        mean (torch.Tensor): Mean of the points.
            Shape: ``(d, 1)``
        images (torch.Tensor): Transformed points Z_i.
            Shape: ``(p, k, 1)``
        image_mean (torch.Tensor): Mean of the transformed points.
            Shape: ``(k, 1)``
        weights (torch.Tensor): Weight of each point.
            Shape: ``(p,)``

    Returns:
        torch.Tensor: Cross-covariance
            Shape: ``(d, k)``
    """
    return (weights[:, None, None] * (points - mean) @ (images - image_mean).mT).sum(dim=0)
