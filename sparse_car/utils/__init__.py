"""
Utility functions for sparse CAR models.

This subpackage contains helper functions organized into modules:
    - graph: Adjacency construction, validation and one-time precomputation
    - spectral: Sparse and dense CAR log-densities
    - data: Synthetic data generation, CSV loading and engine payloads
    - diagnostics: ESS, R-hat, posterior summaries and efficiency tables
"""

# Graph utilities
from .graph import (
    SparseCARData,
    validate_adjacency,
    neighbor_counts,
    edge_list,
    normalized_adjacency_eigenvalues,
    precompute_sparse_car,
    create_grid_adjacency,
    create_adjacency_from_coords,
    adjacency_from_neighbor_lists,
)

# Density utilities
from .spectral import (
    log1m,
    car_log_det,
    sparse_quadratic_form,
    sparse_car_log_density,
    car_precision_matrix,
    dense_car_log_density,
    poisson_log_likelihood,
    dense_sparse_offset,
)

# Data
from .data import (
    generate_car_field,
    generate_poisson_car_data,
    load_areal_data,
    make_dense_payload,
    make_sparse_payload,
)

# Diagnostics
from .diagnostics import (
    compute_effective_sample_size,
    compute_multichain_ess,
    compute_rhat,
    summarize_draws,
    intervals_overlap,
    max_abs_median_difference,
    efficiency_table,
    format_efficiency_table,
)

__all__ = [
    # Graph
    'SparseCARData',
    'validate_adjacency',
    'neighbor_counts',
    'edge_list',
    'normalized_adjacency_eigenvalues',
    'precompute_sparse_car',
    'create_grid_adjacency',
    'create_adjacency_from_coords',
    'adjacency_from_neighbor_lists',
    # Densities
    'log1m',
    'car_log_det',
    'sparse_quadratic_form',
    'sparse_car_log_density',
    'car_precision_matrix',
    'dense_car_log_density',
    'poisson_log_likelihood',
    'dense_sparse_offset',
    # Data
    'generate_car_field',
    'generate_poisson_car_data',
    'load_areal_data',
    'make_dense_payload',
    'make_sparse_payload',
    # Diagnostics
    'compute_effective_sample_size',
    'compute_multichain_ess',
    'compute_rhat',
    'summarize_draws',
    'intervals_overlap',
    'max_abs_median_difference',
    'efficiency_table',
    'format_efficiency_table',
]
