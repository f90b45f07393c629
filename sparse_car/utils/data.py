"""
Data generation, loading and payload utilities for CAR models.
"""
import logging
from typing import Optional, Sequence, Union

import numpy as np
import torch

from sparse_car.exceptions import InvalidInput
from sparse_car.utils.graph import (
    SparseCARData,
    neighbor_counts,
    precompute_sparse_car,
    validate_adjacency,
)
from sparse_car.utils.spectral import car_precision_matrix

logger = logging.getLogger(__name__)


def generate_car_field(
    W: torch.Tensor,
    tau: float = 1.0,
    rho: float = 0.9,
    generator: Optional[torch.Generator] = None
) -> torch.Tensor:
    """
    Exact draw from the proper CAR prior phi ~ N(0, [tau (D - rho W)]^(-1)).

    With Q = L L^T, phi = L^(-T) z has covariance Q^(-1).

    Args:
        W: Adjacency matrix (n, n)
        tau: Precision
        rho: Spatial correlation, must keep Q positive definite
        generator: Torch random generator

    Returns:
        phi: Spatial effects (n,)
    """
    W = validate_adjacency(W)
    Q = car_precision_matrix(tau, rho, W, neighbor_counts(W))
    L, info = torch.linalg.cholesky_ex(Q)
    if info != 0:
        raise InvalidInput(f"Precision matrix is not positive definite for rho={rho}")

    z = torch.randn(W.shape[0], 1, generator=generator, dtype=torch.float64)
    phi = torch.linalg.solve_triangular(L.T, z, upper=True)
    return phi.squeeze(1)


def generate_poisson_car_data(
    W: torch.Tensor,
    n_features: int = 2,
    beta: Optional[torch.Tensor] = None,
    tau: float = 2.0,
    rho: float = 0.9,
    expected_range: Sequence[float] = (2.0, 20.0),
    seed: Optional[int] = None
) -> dict:
    """
    Generate synthetic areal counts with CAR structure.

    Creates data from the model:
        y_i ~ Poisson(E_i * exp(X_i beta + phi_i))
        phi ~ CAR(tau, rho)

    Args:
        W: Adjacency matrix (n, n)
        n_features: Number of covariates (including intercept)
        beta: Fixed effects (if None, intercept 0 and N(0, 0.3^2) slopes)
        tau: CAR precision
        rho: CAR spatial correlation
        expected_range: Expected counts E_i are uniform on this range
        seed: Random seed for reproducibility

    Returns:
        Dictionary containing:
            - y: Observed counts (n,)
            - X: Design matrix (n, n_features), first column intercept
            - log_offset: log(E) (n,)
            - expected: Expected counts E (n,)
            - phi: True spatial effects (n,)
            - beta, tau, rho: True parameters

    Example:
        >>> W = create_grid_adjacency(8)
        >>> data = generate_poisson_car_data(W, seed=1)
        >>> data['y'].shape
        torch.Size([64])
    """
    generator = torch.Generator()
    if seed is not None:
        generator.manual_seed(seed)

    W = validate_adjacency(W)
    n_obs = W.shape[0]

    X = torch.randn(n_obs, n_features, generator=generator, dtype=torch.float64)
    X[:, 0] = 1.0  # Intercept

    if beta is None:
        beta = 0.3 * torch.randn(n_features, generator=generator, dtype=torch.float64)
        beta[0] = 0.0
    beta = torch.as_tensor(beta, dtype=torch.float64)

    low, high = expected_range
    expected = low + (high - low) * torch.rand(n_obs, generator=generator, dtype=torch.float64)
    log_offset = torch.log(expected)

    phi = generate_car_field(W, tau=tau, rho=rho, generator=generator)
    rate = torch.exp(X @ beta + phi + log_offset)
    y = torch.poisson(rate, generator=generator)

    return {
        'y': y,
        'X': X,
        'log_offset': log_offset,
        'expected': expected,
        'phi': phi,
        'beta': beta,
        'tau': tau,
        'rho': rho,
    }


def load_areal_data(
    path: str,
    observed: str = 'observed',
    expected: str = 'expected',
    covariates: Sequence[str] = (),
    delimiter: str = ','
) -> dict:
    """
    Load areal count data from a CSV file with a header row.

    Args:
        path: CSV file, one row per area in adjacency-matrix order
        observed: Column of observed counts
        expected: Column of expected counts (must be positive)
        covariates: Covariate columns; an intercept column is prepended
        delimiter: Field delimiter

    Returns:
        Dictionary with y, X, log_offset and expected tensors

    Example:
        >>> data = load_areal_data('lip.csv', 'O', 'E', covariates=['AFF'])
    """
    table = np.genfromtxt(path, delimiter=delimiter, names=True, dtype=float)
    table = np.atleast_1d(table)
    columns = table.dtype.names

    for name in [observed, expected, *covariates]:
        if name not in columns:
            raise InvalidInput(f"Column '{name}' not found in {path}; columns are {columns}")

    y = torch.as_tensor(table[observed], dtype=torch.float64)
    E = torch.as_tensor(table[expected], dtype=torch.float64)
    if torch.any(E <= 0):
        raise InvalidInput("Expected counts must be positive")

    X = torch.ones(len(y), 1 + len(covariates), dtype=torch.float64)
    for k, name in enumerate(covariates):
        X[:, k + 1] = torch.as_tensor(table[name], dtype=torch.float64)

    logger.info("Loaded %d areas with %d covariate(s) from %s", len(y), len(covariates), path)

    return {'y': y, 'X': X, 'log_offset': torch.log(E), 'expected': E}


def _common_payload(X, y, log_offset) -> dict:
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    return {
        'n': int(X.shape[0]),
        'p': int(X.shape[1]),
        'X': X,
        'y': np.asarray(y).astype(np.int64),
        'log_offset': np.asarray(log_offset, dtype=float),
    }


def make_dense_payload(
    W: Union[torch.Tensor, np.ndarray],
    X,
    y,
    log_offset
) -> dict:
    """
    Data for an engine evaluating the full multivariate normal CAR density.

    Returns:
        Dictionary with n, p, X, y, log_offset, W and D = diag(m)
    """
    W = validate_adjacency(W)
    payload = _common_payload(X, y, log_offset)
    if payload['n'] != W.shape[0]:
        raise InvalidInput(f"X has {payload['n']} rows but W has {W.shape[0]} nodes")
    payload['W'] = W.cpu().numpy()
    payload['D'] = np.diag(neighbor_counts(W).cpu().numpy())
    return payload


def make_sparse_payload(
    W: Union[torch.Tensor, np.ndarray, SparseCARData],
    X,
    y,
    log_offset
) -> dict:
    """
    Data for an engine evaluating the sparse CAR density.

    Args:
        W: Adjacency matrix, or its already computed SparseCARData
        X, y, log_offset: Design matrix, counts and log expected counts

    Returns:
        Dictionary with n, p, X, y, log_offset, W_n (edge count), W1 and W2
        (1-indexed edge endpoints), D_sparse (neighbor counts) and lambda
        (eigenvalues of D^(-1/2) W D^(-1/2))
    """
    car_data = W if isinstance(W, SparseCARData) else precompute_sparse_car(W)
    edges = car_data.edges.cpu().numpy()

    payload = _common_payload(X, y, log_offset)
    if payload['n'] != car_data.n:
        raise InvalidInput(f"X has {payload['n']} rows but W has {car_data.n} nodes")

    payload.update({
        'W_n': int(edges.shape[0]),
        'W1': edges[:, 0].astype(np.int64) + 1,
        'W2': edges[:, 1].astype(np.int64) + 1,
        'D_sparse': car_data.m.cpu().numpy().astype(np.int64),
        'lambda': car_data.eigenvalues.cpu().numpy(),
    })
    return payload
