"""
Graph construction and precomputation utilities for sparse CAR models.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import torch
from scipy.spatial import Delaunay

from sparse_car.exceptions import InvalidInput

logger = logging.getLogger(__name__)

ArrayLike = Union[torch.Tensor, np.ndarray, Sequence]


@dataclass(frozen=True)
class SparseCARData:
    """
    Quantities derived once from an adjacency matrix.

    Attributes:
        n: Number of areal units
        edges: Unique neighbor pairs (i, j) with i < j, shape (n_edges, 2)
        m: Neighbor counts (n,)
        eigenvalues: Spectrum of D^(-1/2) W D^(-1/2) in ascending order (n,)
    """
    n: int
    edges: torch.Tensor
    m: torch.Tensor
    eigenvalues: torch.Tensor

    @property
    def n_edges(self) -> int:
        return self.edges.shape[0]


def validate_adjacency(W: ArrayLike) -> torch.Tensor:
    """
    Check that W is a usable CAR adjacency matrix.

    Args:
        W: Candidate adjacency matrix (n, n)

    Returns:
        W as a float64 tensor

    Raises:
        InvalidInput: if W is not square, empty, not symmetric, not 0/1,
            has a non-zero diagonal, or contains an isolated node
    """
    W = torch.as_tensor(W, dtype=torch.float64)

    if W.dim() != 2 or W.shape[0] != W.shape[1]:
        raise InvalidInput(f"Adjacency matrix must be square, got shape {tuple(W.shape)}")
    if W.shape[0] == 0:
        raise InvalidInput("Adjacency matrix must have at least one node")
    if not torch.all((W == 0) | (W == 1)):
        raise InvalidInput("Adjacency matrix must contain only 0 and 1")
    if not torch.equal(W, W.T):
        raise InvalidInput("Adjacency matrix must be symmetric")
    if torch.any(torch.diagonal(W) != 0):
        raise InvalidInput("Adjacency matrix must have a zero diagonal")

    isolated = torch.nonzero(W.sum(dim=1) == 0).flatten()
    if isolated.numel() > 0:
        raise InvalidInput(
            f"Adjacency matrix has {isolated.numel()} isolated node(s): "
            f"{isolated.tolist()}"
        )

    return W


def neighbor_counts(W: torch.Tensor) -> torch.Tensor:
    """Row sums of W, m[i] = number of neighbors of node i."""
    return W.sum(dim=1)


def edge_list(W: torch.Tensor) -> torch.Tensor:
    """
    Unique undirected edges of W.

    Each pair appears once as (i, j) with i < j, in row-major order.

    Example:
        >>> W = torch.tensor([[0., 1, 0], [1, 0, 1], [0, 1, 0]])
        >>> edge_list(W)
        tensor([[0, 1],
                [1, 2]])
    """
    return torch.nonzero(torch.triu(W, diagonal=1))


def normalized_adjacency_eigenvalues(
    W: torch.Tensor,
    m: Optional[torch.Tensor] = None
) -> torch.Tensor:
    """
    Eigenvalues of D^(-1/2) W D^(-1/2) with D = diag(m).

    Since det(D - rho*W) = det(D) * prod_i (1 - rho*lambda_i), these are all
    the log-determinant of the CAR precision needs. The full spectrum is
    returned, repeated eigenvalues included.

    Args:
        W: Adjacency matrix (n, n)
        m: Neighbor counts (computed from W if None)

    Returns:
        eigenvalues: Ascending eigenvalues (n,), all within [-1, 1]
    """
    if m is None:
        m = neighbor_counts(W)
    invsqrt_m = 1.0 / torch.sqrt(m)
    W_normalized = invsqrt_m.unsqueeze(1) * W * invsqrt_m.unsqueeze(0)
    return torch.linalg.eigvalsh(W_normalized)


def precompute_sparse_car(W: ArrayLike, check: bool = True) -> SparseCARData:
    """
    One-time setup for the sparse CAR density.

    Args:
        W: Adjacency matrix (n, n)
        check: Run validate_adjacency first. Pass False only for a W that
            validate_adjacency already returned

    Returns:
        SparseCARData with edge list, neighbor counts and eigenvalues

    Raises:
        InvalidInput: if W fails validate_adjacency

    Example:
        >>> W = create_grid_adjacency(3)
        >>> data = precompute_sparse_car(W)
        >>> data.n_edges
        12
    """
    if check:
        W = validate_adjacency(W)
    m = neighbor_counts(W)
    edges = edge_list(W)
    eigenvalues = normalized_adjacency_eigenvalues(W, m)

    logger.debug(
        "Precomputed sparse CAR data: n=%d, edges=%d, eigenvalue range [%.4f, %.4f]",
        W.shape[0], edges.shape[0], eigenvalues.min().item(), eigenvalues.max().item()
    )

    return SparseCARData(n=W.shape[0], edges=edges, m=m, eigenvalues=eigenvalues)


def create_grid_adjacency(grid_size: int) -> torch.Tensor:
    """
    Rook adjacency for a square grid.

    Args:
        grid_size: Side length; the grid has grid_size^2 nodes

    Returns:
        W: Adjacency matrix (grid_size^2, grid_size^2)
    """
    if grid_size < 2:
        raise InvalidInput(f"grid_size must be at least 2, got {grid_size}")

    n_nodes = grid_size ** 2
    W = torch.zeros(n_nodes, n_nodes, dtype=torch.float64)

    for i in range(grid_size):
        for j in range(grid_size):
            idx = i * grid_size + j

            # Right neighbor
            if j < grid_size - 1:
                W[idx, idx + 1] = 1
                W[idx + 1, idx] = 1

            # Bottom neighbor
            if i < grid_size - 1:
                W[idx, idx + grid_size] = 1
                W[idx + grid_size, idx] = 1

    return W


def create_adjacency_from_coords(
    coords: ArrayLike,
    adjacency_type: str = 'knn',
    k: int = 5,
    threshold: Optional[float] = None
) -> torch.Tensor:
    """
    Create adjacency matrix from spatial coordinates.

    Args:
        coords: Spatial coordinates (n_nodes, d)
        adjacency_type: 'knn', 'threshold', or 'delaunay'
        k: Number of nearest neighbors (for 'knn')
        threshold: Distance threshold (for 'threshold'); median distance if None

    Returns:
        W: Symmetric 0/1 adjacency matrix (n_nodes, n_nodes)

    Example:
        >>> coords = torch.rand(50, 2)
        >>> W = create_adjacency_from_coords(coords, adjacency_type='delaunay')
    """
    coords = torch.as_tensor(coords, dtype=torch.float64)
    n_nodes = coords.shape[0]

    distances = torch.cdist(coords, coords)

    if adjacency_type == 'knn':
        W = torch.zeros(n_nodes, n_nodes, dtype=torch.float64)
        _, indices = torch.topk(distances, k=k + 1, largest=False, dim=1)  # +1 for self

        for i in range(n_nodes):
            W[i, indices[i, 1:]] = 1

        # Symmetrize: i ~ j if either lists the other
        W = ((W + W.T) > 0).to(torch.float64)

    elif adjacency_type == 'threshold':
        if threshold is None:
            threshold = torch.median(distances[distances > 0]).item()

        W = (distances < threshold).to(torch.float64)
        W.fill_diagonal_(0)

    elif adjacency_type == 'delaunay':
        tri = Delaunay(coords.cpu().numpy())

        W = torch.zeros(n_nodes, n_nodes, dtype=torch.float64)
        for simplex in tri.simplices:
            for a in range(len(simplex)):
                for b in range(a + 1, len(simplex)):
                    W[simplex[a], simplex[b]] = 1
                    W[simplex[b], simplex[a]] = 1
    else:
        raise ValueError(f"Unknown adjacency_type: {adjacency_type}")

    return W


def adjacency_from_neighbor_lists(
    num: Sequence[int],
    adj: Sequence[int]
) -> torch.Tensor:
    """
    Build W from the num/adj format used by GeoBUGS-style areal datasets.

    num[i] is the number of neighbors of area i and adj lists those neighbors
    for every area in turn, 1-indexed.

    Example:
        >>> adjacency_from_neighbor_lists([1, 2, 1], [2, 1, 3, 2])
        tensor([[0., 1., 0.],
                [1., 0., 1.],
                [0., 1., 0.]], dtype=torch.float64)
    """
    num = [int(c) for c in num]
    adj = [int(a) for a in adj]
    if sum(num) != len(adj):
        raise InvalidInput(f"sum(num) = {sum(num)} does not match len(adj) = {len(adj)}")

    n = len(num)
    W = torch.zeros(n, n, dtype=torch.float64)

    start = 0
    for i, count in enumerate(num):
        for j in adj[start:start + count]:
            if not 1 <= j <= n:
                raise InvalidInput(f"Neighbor id {j} of area {i + 1} is outside 1..{n}")
            W[i, j - 1] = 1
        start += count

    return W
