"""
Poisson CAR model definitions.

This module implements the areal count model

    y_i ~ Poisson(exp(X_i beta + phi_i + log_offset_i))
    phi ~ CAR(tau, rho)
    beta ~ Normal(0, prior_beta_std^2)
    tau ~ Gamma(prior_tau_shape, prior_tau_rate)
    rho ~ Uniform(0, 1)

with two interchangeable evaluations of the CAR prior: a sparse one built
from an edge list and eigenvalues, and a dense one built from the full
precision matrix.
"""
import logging
import math
from typing import Dict, Optional

import torch
import torch.nn as nn

from sparse_car.exceptions import InvalidInput
from sparse_car.utils.data import make_dense_payload, make_sparse_payload
from sparse_car.utils.graph import (
    SparseCARData,
    neighbor_counts,
    precompute_sparse_car,
    validate_adjacency,
)
from sparse_car.utils.spectral import (
    dense_car_log_density,
    poisson_log_likelihood,
    sparse_car_log_density,
)

logger = logging.getLogger(__name__)


class CARModelBase(nn.Module):
    """
    Base class for Poisson CAR models.

    Holds the data as buffers, the priors, and the layout of the unconstrained
    parameter vector used by the samplers:

        theta = [beta (p), log(tau), logit(rho), phi (n)]

    Subclasses provide car_log_density() and data_payload().

    Args:
        W: Adjacency matrix (n_obs, n_obs)
        X: Design matrix (n_obs, n_features)
        y: Observed counts (n_obs,)
        log_offset: Log expected counts (n_obs,). Zeros if None.
        prior_beta_std: Prior std for fixed effects (default: 1.0)
        prior_tau_shape: Gamma prior shape for tau (default: 2.0)
        prior_tau_rate: Gamma prior rate for tau (default: 2.0)
    """

    def __init__(
        self,
        W: torch.Tensor,
        X: torch.Tensor,
        y: torch.Tensor,
        log_offset: Optional[torch.Tensor] = None,
        prior_beta_std: float = 1.0,
        prior_tau_shape: float = 2.0,
        prior_tau_rate: float = 2.0,
    ):
        super().__init__()

        W = validate_adjacency(W)
        X = torch.as_tensor(X, dtype=torch.float64)
        y = torch.as_tensor(y, dtype=torch.float64)
        if X.dim() == 1:
            X = X.unsqueeze(1)
        if log_offset is None:
            log_offset = torch.zeros(W.shape[0], dtype=torch.float64)
        log_offset = torch.as_tensor(log_offset, dtype=torch.float64)

        self.n_obs = W.shape[0]
        self.n_features = X.shape[1]
        self._check_shapes(X, y, log_offset)

        self.register_buffer('X', X)
        self.register_buffer('y', y)
        self.register_buffer('log_offset', log_offset)

        self.prior_beta_std = prior_beta_std
        self.prior_tau_shape = prior_tau_shape
        self.prior_tau_rate = prior_tau_rate

        self._setup_graph(W)

    def _check_shapes(self, X, y, log_offset):
        if X.shape[0] != self.n_obs:
            raise InvalidInput(f"X has {X.shape[0]} rows, expected {self.n_obs}")
        if y.shape != (self.n_obs,):
            raise InvalidInput(f"y has shape {tuple(y.shape)}, expected ({self.n_obs},)")
        if log_offset.shape != (self.n_obs,):
            raise InvalidInput(
                f"log_offset has shape {tuple(log_offset.shape)}, expected ({self.n_obs},)"
            )
        if torch.any(y < 0) or not torch.equal(y, torch.round(y)):
            raise InvalidInput("y must contain non-negative integer counts")

    @property
    def dim(self) -> int:
        """Length of the unconstrained parameter vector."""
        return self.n_features + 2 + self.n_obs

    def unpack(self, theta: torch.Tensor) -> Dict[str, torch.Tensor]:
        """
        Split an unconstrained vector into its blocks.

        Args:
            theta: Unconstrained parameters (..., dim)

        Returns:
            Dictionary with beta, log_tau, logit_rho and phi
        """
        p = self.n_features
        return {
            'beta': theta[..., :p],
            'log_tau': theta[..., p],
            'logit_rho': theta[..., p + 1],
            'phi': theta[..., p + 2:],
        }

    def constrain(self, theta: torch.Tensor) -> Dict[str, torch.Tensor]:
        """
        Map an unconstrained vector to model parameters.

        Returns:
            Dictionary with beta, tau (> 0), rho (in (0, 1)) and phi
        """
        blocks = self.unpack(theta)
        return {
            'beta': blocks['beta'],
            'tau': torch.exp(blocks['log_tau']),
            'rho': torch.sigmoid(blocks['logit_rho']),
            'phi': blocks['phi'],
        }

    def unconstrain(
        self,
        beta: torch.Tensor,
        tau: torch.Tensor,
        rho: torch.Tensor,
        phi: torch.Tensor
    ) -> torch.Tensor:
        """Inverse of constrain()."""
        tau = torch.as_tensor(tau, dtype=torch.float64)
        rho = torch.as_tensor(rho, dtype=torch.float64)
        return torch.cat([
            torch.as_tensor(beta, dtype=torch.float64).reshape(-1),
            torch.log(tau).reshape(1),
            torch.logit(rho).reshape(1),
            torch.as_tensor(phi, dtype=torch.float64).reshape(-1),
        ])

    def linear_predictor(self, beta: torch.Tensor, phi: torch.Tensor) -> torch.Tensor:
        """eta = X beta + phi + log_offset, shape (..., n_obs)."""
        return beta @ self.X.T + phi + self.log_offset

    def log_likelihood(self, beta: torch.Tensor, phi: torch.Tensor) -> torch.Tensor:
        """Poisson log-likelihood of the observed counts."""
        return poisson_log_likelihood(self.y, self.linear_predictor(beta, phi))

    def log_prior(
        self,
        beta: torch.Tensor,
        tau: torch.Tensor,
        rho: torch.Tensor
    ) -> torch.Tensor:
        """
        Log prior for beta, tau and rho.

        The Uniform(0, 1) prior on rho contributes a constant inside (0, 1)
        and -inf outside.
        """
        lp_beta = torch.distributions.Normal(
            torch.tensor(0.0, dtype=torch.float64),
            torch.tensor(self.prior_beta_std, dtype=torch.float64)
        ).log_prob(beta).sum(dim=-1)
        lp_tau = torch.distributions.Gamma(
            torch.tensor(self.prior_tau_shape, dtype=torch.float64),
            torch.tensor(self.prior_tau_rate, dtype=torch.float64),
            validate_args=False
        ).log_prob(tau)
        in_support = (rho > 0) & (rho < 1)
        lp_rho = torch.where(
            in_support, torch.zeros_like(lp_tau), torch.full_like(lp_tau, -math.inf)
        )
        return lp_beta + lp_tau + lp_rho

    def _setup_graph(self, W: torch.Tensor):
        """Store the graph structure of an already validated W. Implemented by subclasses."""
        raise NotImplementedError

    def car_log_density(
        self,
        phi: torch.Tensor,
        tau: torch.Tensor,
        rho: torch.Tensor
    ) -> torch.Tensor:
        """CAR prior log-density of phi. Implemented by subclasses."""
        raise NotImplementedError

    def log_prob(
        self,
        beta: torch.Tensor,
        tau: torch.Tensor,
        rho: torch.Tensor,
        phi: torch.Tensor
    ) -> torch.Tensor:
        """
        Unnormalized log posterior density on the constrained scale.

        Args:
            beta: Fixed effects (..., n_features)
            tau: Precision (...)
            rho: Spatial correlation (...)
            phi: Spatial effects (..., n_obs)

        Returns:
            Log posterior, shape of the batch dimensions
        """
        tau = torch.as_tensor(tau, dtype=torch.float64)
        rho = torch.as_tensor(rho, dtype=torch.float64)
        return (
            self.log_likelihood(beta, phi)
            + self.car_log_density(phi, tau, rho)
            + self.log_prior(beta, tau, rho)
        )

    def forward(self, theta: torch.Tensor) -> torch.Tensor:
        """
        Log posterior on the unconstrained scale, including log-Jacobians.

        Args:
            theta: Unconstrained parameters (..., dim)

        Returns:
            Log density, shape theta.shape[:-1]
        """
        blocks = self.unpack(theta)
        params = self.constrain(theta)

        # d tau / d log_tau = tau;  d rho / d logit_rho = rho * (1 - rho)
        log_jacobian = (
            blocks['log_tau']
            + nn.functional.logsigmoid(blocks['logit_rho'])
            + nn.functional.logsigmoid(-blocks['logit_rho'])
        )
        return self.log_prob(**params) + log_jacobian

    def initial_point(
        self,
        generator: Optional[torch.Generator] = None,
        radius: float = 2.0
    ) -> torch.Tensor:
        """
        Random starting point, uniform on (-radius, radius) in every coordinate
        of the unconstrained space.
        """
        u = torch.rand(self.dim, generator=generator, dtype=torch.float64)
        return radius * (2 * u - 1)

    def data_payload(self) -> dict:
        """Data dictionary for an external inference engine."""
        raise NotImplementedError


class SparseCAR(CARModelBase):
    """
    Poisson CAR model with the sparse CAR density.

    The edge list, neighbor counts and eigenvalues are computed once at
    construction; each density evaluation is O(n + n_edges).

    Args:
        (inherits all args from CARModelBase)

    Example:
        >>> W = create_grid_adjacency(5)
        >>> model = SparseCAR(W, X, y, log_offset)
        >>> theta = model.initial_point()
        >>> lp = model(theta)
    """

    def _setup_graph(self, W):
        car_data = precompute_sparse_car(W, check=False)
        self.register_buffer('edges', car_data.edges)
        self.register_buffer('m', car_data.m)
        self.register_buffer('eigenvalues', car_data.eigenvalues)

        logger.info(
            "Initialized SparseCAR with n=%d, p=%d, %d edges",
            self.n_obs, self.n_features, car_data.n_edges
        )

    @property
    def n_edges(self) -> int:
        return self.edges.shape[0]

    @property
    def car_data(self) -> SparseCARData:
        return SparseCARData(
            n=self.n_obs, edges=self.edges, m=self.m, eigenvalues=self.eigenvalues
        )

    def car_log_density(self, phi, tau, rho):
        return sparse_car_log_density(phi, tau, rho, self.edges, self.m, self.eigenvalues)

    def data_payload(self) -> dict:
        """
        Sparse-form data: W_n, 1-indexed endpoints W1/W2, D_sparse, lambda.
        """
        return make_sparse_payload(self.car_data, self.X, self.y, self.log_offset)


class DenseCAR(CARModelBase):
    """
    Poisson CAR model with the full multivariate normal density.

    Every evaluation builds tau * (D - rho W) and factorizes it, which costs
    O(n^3). Kept as the baseline the sparse model must agree with.

    Args:
        (inherits all args from CARModelBase)
    """

    def _setup_graph(self, W):
        self.register_buffer('W', W)
        self.register_buffer('m', neighbor_counts(W))

        logger.info("Initialized DenseCAR with n=%d, p=%d", self.n_obs, self.n_features)

    def car_log_density(self, phi, tau, rho):
        return dense_car_log_density(phi, tau, rho, self.W, self.m)

    def data_payload(self) -> dict:
        """Dense-form data: W and D = diag(m)."""
        return make_dense_payload(self.W, self.X, self.y, self.log_offset)
