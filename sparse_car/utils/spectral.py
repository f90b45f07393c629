"""
CAR log-density computations.

The proper CAR prior for spatial effects phi is

    phi ~ MultivariateNormal(0, [tau * (D - rho * W)]^(-1))

with W the adjacency matrix and D = diag(m) the neighbor counts. Two
evaluations are provided:

    - sparse: uses the edge list for the quadratic form and the eigenvalues
      of D^(-1/2) W D^(-1/2) for the log-determinant, never forming a matrix
    - dense: forms tau * (D - rho * W) and hands it to
      torch.distributions.MultivariateNormal

They agree up to the additive constant n/2 * log(2 pi) - 1/2 * sum(log m).
"""
import math
from typing import Union

import torch

from sparse_car.exceptions import DomainViolation

Scalar = Union[float, torch.Tensor]


def log1m(x: torch.Tensor) -> torch.Tensor:
    """
    Compute log(1 - x) without cancellation for small x.

    Args:
        x: Input values, x < 1

    Returns:
        log(1 - x), -inf at x == 1 and nan for x > 1
    """
    return torch.log1p(-x)


def car_log_det(
    rho: Scalar,
    eigenvalues: torch.Tensor,
    strict: bool = False
) -> torch.Tensor:
    """
    Sum of log(1 - rho * lambda_i), i.e. log det(D - rho W) - log det(D).

    Args:
        rho: Spatial correlation, shape () or (batch,)
        eigenvalues: Eigenvalues of the normalized adjacency (n,)
        strict: Raise DomainViolation instead of returning -inf

    Returns:
        Log-determinant term, shape () or (batch,). Infeasible values of
        rho (1 - rho * lambda_i <= 0 for some i) give -inf.

    Raises:
        DomainViolation: if strict and rho is infeasible
    """
    rho = torch.as_tensor(rho, dtype=eigenvalues.dtype, device=eigenvalues.device)
    x = rho.unsqueeze(-1) * eigenvalues  # (..., n)

    feasible = (x < 1).all(dim=-1)
    if strict and not bool(feasible.all()):
        raise DomainViolation(
            "1 - rho * lambda_i <= 0 for some i; precision matrix is not "
            "positive definite"
        )

    # Clamp infeasible entries so log1m stays finite and gradients stay defined
    safe_x = torch.where(feasible.unsqueeze(-1), x, torch.zeros_like(x))
    log_det = log1m(safe_x).sum(dim=-1)
    return torch.where(feasible, log_det, torch.full_like(log_det, -math.inf))


def sparse_quadratic_form(
    phi: torch.Tensor,
    rho: Scalar,
    edges: torch.Tensor,
    m: torch.Tensor
) -> torch.Tensor:
    """
    Compute phi^T (D - rho W) phi from the edge list.

    Each undirected edge appears once in `edges`, so the off-diagonal part is
    2 * rho * sum_{(i, j) in edges} phi_i * phi_j.

    Args:
        phi: Spatial effects (..., n)
        rho: Spatial correlation, shape () or matching phi's batch shape
        edges: Unique edges (n_edges, 2)
        m: Neighbor counts (n,)

    Returns:
        Quadratic form, shape phi.shape[:-1]
    """
    rho = torch.as_tensor(rho, dtype=phi.dtype, device=phi.device)
    diag_term = (m * phi ** 2).sum(dim=-1)
    edge_term = (phi[..., edges[:, 0]] * phi[..., edges[:, 1]]).sum(dim=-1)
    return diag_term - 2 * rho * edge_term


def sparse_car_log_density(
    phi: torch.Tensor,
    tau: Scalar,
    rho: Scalar,
    edges: torch.Tensor,
    m: torch.Tensor,
    eigenvalues: torch.Tensor,
    strict: bool = False
) -> torch.Tensor:
    """
    Unnormalized CAR log-density using the edge list and eigenvalues.

        n/2 * log(tau) + 1/2 * sum log(1 - rho * lambda_i)
            - tau/2 * [sum m_i phi_i^2 - 2 rho sum_edges phi_i phi_j]

    Args:
        phi: Spatial effects (..., n)
        tau: Precision > 0, shape () or phi.shape[:-1]
        rho: Spatial correlation, shape () or phi.shape[:-1]
        edges: Unique edges (n_edges, 2)
        m: Neighbor counts (n,)
        eigenvalues: Eigenvalues of D^(-1/2) W D^(-1/2) (n,)
        strict: Raise DomainViolation for infeasible rho instead of -inf

    Returns:
        Log-density, shape phi.shape[:-1]

    Example:
        >>> data = precompute_sparse_car(W)
        >>> lp = sparse_car_log_density(phi, 2.0, 0.9, data.edges, data.m, data.eigenvalues)
    """
    n = phi.shape[-1]
    tau = torch.as_tensor(tau, dtype=phi.dtype, device=phi.device)

    log_det = car_log_det(rho, eigenvalues, strict=strict)
    quad_form = sparse_quadratic_form(phi, rho, edges, m)

    return 0.5 * n * torch.log(tau) + 0.5 * log_det - 0.5 * tau * quad_form


def car_precision_matrix(
    tau: Scalar,
    rho: Scalar,
    W: torch.Tensor,
    m: torch.Tensor
) -> torch.Tensor:
    """
    Form tau * (D - rho * W).

    Returns:
        Precision matrix (..., n, n) for batched tau and rho
    """
    tau = torch.as_tensor(tau, dtype=W.dtype, device=W.device)
    rho = torch.as_tensor(rho, dtype=W.dtype, device=W.device)
    D = torch.diag(m)
    return tau[..., None, None] * (D - rho[..., None, None] * W)


def dense_car_log_density(
    phi: torch.Tensor,
    tau: Scalar,
    rho: Scalar,
    W: torch.Tensor,
    m: torch.Tensor
) -> torch.Tensor:
    """
    Normalized CAR log-density from the full precision matrix.

    This is the O(n^3) baseline: the determinant and quadratic form are left
    to torch.distributions.MultivariateNormal.

    Args:
        phi: Spatial effects (..., n)
        tau: Precision > 0
        rho: Spatial correlation
        W: Adjacency matrix (n, n)
        m: Neighbor counts (n,)

    Returns:
        Log-density, shape phi.shape[:-1]. Non positive definite precision
        matrices give -inf.
    """
    Q = car_precision_matrix(tau, rho, W, m)
    batch_shape = torch.broadcast_shapes(Q.shape[:-2], phi.shape[:-1])
    Q = Q.expand(batch_shape + Q.shape[-2:])

    _, info = torch.linalg.cholesky_ex(Q)
    positive_definite = info == 0

    # Substitute the identity where Q is invalid so the distribution can be built
    eye = torch.eye(Q.shape[-1], dtype=Q.dtype, device=Q.device)
    Q_safe = torch.where(positive_definite[..., None, None], Q, eye)

    mvn = torch.distributions.MultivariateNormal(
        loc=torch.zeros_like(phi),
        precision_matrix=Q_safe,
        validate_args=False
    )
    log_density = mvn.log_prob(phi)
    return torch.where(
        positive_definite, log_density, torch.full_like(log_density, -math.inf)
    )


def poisson_log_likelihood(y: torch.Tensor, eta: torch.Tensor) -> torch.Tensor:
    """
    Poisson log-likelihood with log link, dropping the -log(y!) constant.

    Args:
        y: Observed counts (n,)
        eta: Linear predictor (..., n)

    Returns:
        sum_i y_i * eta_i - exp(eta_i), shape eta.shape[:-1]
    """
    return (y * eta - torch.exp(eta)).sum(dim=-1)


def dense_sparse_offset(m: torch.Tensor) -> torch.Tensor:
    """
    Constant separating the two densities: sparse - dense.

    Equals n/2 * log(2 pi) - 1/2 * sum(log m).
    """
    n = m.shape[-1]
    return 0.5 * n * math.log(2 * math.pi) - 0.5 * torch.log(m).sum()
