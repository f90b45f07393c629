"""
Sparse CAR: exact sparse conditional autoregressive models for areal counts

A Python package for Bayesian disease mapping with proper CAR priors, where
the CAR log-density is evaluated from an edge list and precomputed
eigenvalues instead of the full precision matrix.

Main Components:
    - models: Sparse and dense Poisson CAR models
    - inference: Hamiltonian Monte Carlo and variational inference engines
    - utils: Precomputation, densities, data, payloads and diagnostics
    - visualization: Plotting and dense-vs-sparse comparisons
"""
import logging

import torch

__version__ = "0.1.0"
__license__ = "MIT"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from .exceptions import (
    SparseCARError,
    InvalidInput,
    DomainViolation,
)

# Core models
from .models import (
    CARModelBase,
    SparseCAR,
    DenseCAR,
)

# Inference engines
from .inference import (
    SamplerConfig,
    PosteriorSamples,
    HamiltonianMonteCarlo,
    VariationalInference,
)

# Most commonly used utilities (convenient imports)
from .utils import (
    # Precomputation
    precompute_sparse_car,
    create_grid_adjacency,
    adjacency_from_neighbor_lists,
    # Densities
    sparse_car_log_density,
    dense_car_log_density,
    # Data
    generate_poisson_car_data,
    load_areal_data,
    make_dense_payload,
    make_sparse_payload,
    # Diagnostics
    summarize_draws,
    efficiency_table,
)

# Visualization (import the module, not individual functions)
from . import visualization

__all__ = [
    # Version info
    '__version__',
    # Errors
    'SparseCARError',
    'InvalidInput',
    'DomainViolation',
    # Models
    'CARModelBase',
    'SparseCAR',
    'DenseCAR',
    # Inference
    'SamplerConfig',
    'PosteriorSamples',
    'HamiltonianMonteCarlo',
    'VariationalInference',
    # Utils
    'precompute_sparse_car',
    'create_grid_adjacency',
    'adjacency_from_neighbor_lists',
    'sparse_car_log_density',
    'dense_car_log_density',
    'generate_poisson_car_data',
    'load_areal_data',
    'make_dense_payload',
    'make_sparse_payload',
    'summarize_draws',
    'efficiency_table',
    # Submodules
    'visualization',
]


# Package-level configuration
def get_config():
    """Get current package configuration."""
    return {
        'version': __version__,
        'license': __license__,
        'dtype': torch.float64,
    }


def print_info():
    """Print package information."""
    print(f"Sparse CAR v{__version__}")
    print(f"License: {__license__}")
    print("\nAvailable models:")
    print("  - SparseCAR: edge list + eigenvalue CAR density, O(n + edges)")
    print("  - DenseCAR: full precision matrix CAR density, O(n^3)")
