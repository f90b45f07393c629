"""
Quick start example for sparse CAR models.

Simulate Poisson counts on a grid, fit the sparse CAR model with HMC and
print the posterior summary of the hyperparameters.
"""

import logging

from sparse_car import SparseCAR, HamiltonianMonteCarlo, SamplerConfig
from sparse_car.utils import create_grid_adjacency, generate_poisson_car_data

logging.basicConfig(level=logging.INFO, format="%(name)s - %(levelname)s - %(message)s")

# 1. Create spatial graph and generate data
print("Generating data...")
grid_size = 8
W = create_grid_adjacency(grid_size)
data = generate_poisson_car_data(W, n_features=2, tau=2.0, rho=0.9, seed=42)

# 2. Initialize model (eigenvalues and edge list computed here, once)
print("Initializing model...")
model = SparseCAR(W, data['X'], data['y'], data['log_offset'])

# 3. Sample
print("Sampling...")
config = SamplerConfig(n_chains=2, n_warmup=500, n_samples=500, seed=42)
samples = HamiltonianMonteCarlo(model, config).sample(verbose=True)

# 4. Summarize
summary = samples.summary()
print(f"\n{'=' * 56}")
print(f"{'param':<10} {'true':>8} {'median':>8} {'2.5%':>8} {'97.5%':>8} {'rhat':>6}")
truth = {'beta[0]': data['beta'][0].item(), 'beta[1]': data['beta'][1].item(),
         'tau': data['tau'], 'rho': data['rho']}
for name, true_value in truth.items():
    row = summary[name]
    print(f"{name:<10} {true_value:8.3f} {row['median']:8.3f} "
          f"{row['q0.025']:8.3f} {row['q0.975']:8.3f} {row['rhat']:6.3f}")
print(f"{'=' * 56}")
