"""
Visualization functions for CAR models.
"""
import torch
import matplotlib.pyplot as plt
from typing import Optional


def plot_spatial_field(
    values: torch.Tensor,
    grid_size: int,
    title: str = "Spatial Field",
    ax: Optional[plt.Axes] = None,
    **kwargs
):
    """
    Plot spatial field on a grid.

    Args:
        values: Field values (n_obs,), in row-major grid order
        grid_size: Size of square grid
        title: Plot title
        ax: Matplotlib axis (creates new if None)
        **kwargs: Additional arguments for imshow
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 7))

    field = torch.as_tensor(values).reshape(grid_size, grid_size).cpu().numpy()
    im = ax.imshow(field, cmap='RdBu_r', **kwargs)
    ax.set_title(title)
    plt.colorbar(im, ax=ax)

    return ax


def plot_traces(
    draws: torch.Tensor,
    name: str = "",
    ax: Optional[plt.Axes] = None
):
    """
    Trace plot of a scalar parameter, one line per chain.

    Args:
        draws: (n_chains, n_samples) draws
        name: Parameter name for the axis label
        ax: Matplotlib axis
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))

    for chain_id, chain in enumerate(torch.as_tensor(draws).cpu()):
        ax.plot(chain.numpy(), linewidth=0.7, alpha=0.8, label=f"chain {chain_id}")
    ax.set_xlabel('Iteration')
    ax.set_ylabel(name)
    ax.set_title(f'Trace: {name}')
    ax.legend(loc='upper right', fontsize='small')

    return ax


def plot_posterior_comparison(
    draws_a: torch.Tensor,
    draws_b: torch.Tensor,
    label_a: str = 'dense',
    label_b: str = 'sparse',
    name: str = 'phi',
    ax: Optional[plt.Axes] = None
):
    """
    Compare posterior medians and 95% intervals of two fits, component-wise.

    Points on the 1:1 line mean the two model variants agree.

    Args:
        draws_a, draws_b: (n_chains, n_samples, k) draws of the same vector
        label_a, label_b: Axis labels
        name: Parameter name for the title
        ax: Matplotlib axis
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 6))

    flat_a = torch.as_tensor(draws_a).reshape(-1, draws_a.shape[-1]).cpu()
    flat_b = torch.as_tensor(draws_b).reshape(-1, draws_b.shape[-1]).cpu()
    q = torch.tensor([0.025, 0.5, 0.975], dtype=flat_a.dtype)
    qa = torch.quantile(flat_a, q, dim=0).numpy()
    qb = torch.quantile(flat_b.to(flat_a.dtype), q, dim=0).numpy()

    ax.errorbar(
        qa[1], qb[1],
        xerr=[qa[1] - qa[0], qa[2] - qa[1]],
        yerr=[qb[1] - qb[0], qb[2] - qb[1]],
        fmt='o', markersize=3, alpha=0.6, elinewidth=0.5
    )

    lo = min(qa.min(), qb.min())
    hi = max(qa.max(), qb.max())
    ax.plot([lo, hi], [lo, hi], 'k--', linewidth=1)
    ax.set_xlabel(f'{label_a} posterior')
    ax.set_ylabel(f'{label_b} posterior')
    ax.set_title(f'{name}: {label_a} vs {label_b}')
    ax.grid(True, alpha=0.3)

    return ax
