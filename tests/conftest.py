"""
Test configuration and fixtures for sparse CAR models.
"""

import pytest
import torch

from sparse_car.utils import create_grid_adjacency, generate_poisson_car_data


@pytest.fixture(scope="session")
def test_seed():
    """Fixed seed for reproducible tests."""
    return 42


@pytest.fixture
def line_graph():
    """3-node path 0 - 1 - 2."""
    return torch.tensor([
        [0., 1., 0.],
        [1., 0., 1.],
        [0., 1., 0.],
    ], dtype=torch.float64)


@pytest.fixture
def grid_graph():
    """4x4 rook grid, 16 nodes, 24 edges."""
    return create_grid_adjacency(4)


@pytest.fixture
def small_grid_graph():
    """3x3 rook grid, 9 nodes, 12 edges."""
    return create_grid_adjacency(3)


@pytest.fixture
def grid_data(grid_graph, test_seed):
    """Poisson counts simulated on the 4x4 grid."""
    return generate_poisson_car_data(grid_graph, n_features=2, tau=2.0, rho=0.8, seed=test_seed)


@pytest.fixture
def small_grid_data(small_grid_graph, test_seed):
    """Poisson counts simulated on the 3x3 grid."""
    return generate_poisson_car_data(small_grid_graph, n_features=2, tau=2.0, rho=0.8, seed=test_seed)


@pytest.fixture
def parameter_sets():
    """Distinct (tau, rho, phi seed) combinations, all with 0 < rho < 1."""
    return [(0.5, 0.1, 0), (2.0, 0.7, 1), (7.5, 0.99, 2)]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds"
    )
    config.addinivalue_line(
        "markers", "statistical: Tests that verify statistical properties"
    )
    config.addinivalue_line(
        "markers", "numerical: Tests that verify numerical accuracy"
    )
