"""
Diagnostic utilities for posterior samples from CAR models.

Draws are stored as tensors of shape (n_chains, n_samples, ...), the layout
returned by the samplers in sparse_car.inference.
"""
import logging
from typing import Dict, List, Sequence

import torch

logger = logging.getLogger(__name__)


def compute_effective_sample_size(
    samples: torch.Tensor,
    axis: int = 0
) -> torch.Tensor:
    """
    Compute effective sample size (ESS) for a single MCMC chain.

    Estimates ESS from the autocorrelation, truncating the sum at the first
    lag where every autocorrelation is negative (Gelman et al., 2013).
    Components with zero variance (a chain that never moved) get NaN.

    Args:
        samples: Sample tensor (n_samples, ...)
        axis: Axis along which samples vary (default: 0)

    Returns:
        ess: Effective sample size for each parameter

    Example:
        >>> ess = compute_effective_sample_size(samples.draws['tau'][0])
    """
    n_samples = samples.shape[axis]

    # Center samples
    samples_centered = samples - samples.mean(dim=axis, keepdim=True)

    def autocorr(x, lag):
        if lag == 0:
            return (x * x).mean(dim=axis)
        x1 = x.narrow(axis, 0, n_samples - lag)
        x2 = x.narrow(axis, lag, n_samples - lag)
        return (x1 * x2).sum(dim=axis) / n_samples

    max_lag = min(n_samples // 2, 1000)
    var0 = autocorr(samples_centered, 0)

    rho = []
    for lag in range(1, max_lag):
        rho_lag = autocorr(samples_centered, lag) / (var0 + 1e-300)

        # Stop when autocorrelation becomes negative
        if (rho_lag < 0).all():
            break
        rho.append(torch.clamp(rho_lag, min=0.0))

    if len(rho) == 0:
        ess = torch.full_like(var0, float(n_samples))
    else:
        rho = torch.stack(rho, dim=0)

        # ESS formula: n / (1 + 2 * sum(rho))
        ess = n_samples / (1 + 2 * rho.sum(dim=0))
        ess = torch.clamp(ess, min=1.0, max=float(n_samples))

    constant = (samples == samples.narrow(axis, 0, 1)).all(dim=axis)
    return torch.where(constant, torch.full_like(ess, float('nan')), ess)


def compute_multichain_ess(draws: torch.Tensor) -> torch.Tensor:
    """
    Total ESS over chains.

    A chain that never moved adds nothing; the total is NaN only when no
    chain moved.

    Args:
        draws: (n_chains, n_samples, ...)

    Returns:
        Sum of per-chain ESS, shape draws.shape[2:]
    """
    per_chain = torch.stack([compute_effective_sample_size(chain, axis=0) for chain in draws])
    total = torch.nansum(per_chain, dim=0)
    stuck = torch.isnan(per_chain).all(dim=0)
    return torch.where(stuck, torch.full_like(total, float('nan')), total)


def compute_rhat(draws: torch.Tensor) -> torch.Tensor:
    """
    Split R-hat (Gelman et al., 2013).

    Each chain is split in half and the between/within variance ratio is
    computed over the 2 * n_chains half-chains. Values near 1 indicate the
    chains agree.

    Args:
        draws: (n_chains, n_samples, ...), n_samples >= 4

    Returns:
        R-hat, shape draws.shape[2:]
    """
    n_samples = draws.shape[1]
    if n_samples < 4:
        raise ValueError(f"Need at least 4 samples per chain, got {n_samples}")

    half = n_samples // 2
    chains = torch.cat([draws[:, :half], draws[:, n_samples - half:]], dim=0)

    chain_means = chains.mean(dim=1)
    chain_vars = chains.var(dim=1)

    between = half * chain_means.var(dim=0)
    within = chain_vars.mean(dim=0)

    var_plus = (half - 1) / half * within + between / half
    return torch.sqrt(var_plus / (within + 1e-300))


def _scalar_components(draws: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    """Flatten vector parameters into named scalars, e.g. beta[0], phi[3]."""
    components = {}
    for name, values in draws.items():
        if values.dim() == 2:
            components[name] = values
        else:
            flat = values.reshape(values.shape[0], values.shape[1], -1)
            for k in range(flat.shape[2]):
                components[f"{name}[{k}]"] = flat[:, :, k]
    return components


def summarize_draws(
    draws: Dict[str, torch.Tensor],
    probs: Sequence[float] = (0.025, 0.5, 0.975)
) -> Dict[str, dict]:
    """
    Posterior summary for every scalar component.

    Args:
        draws: Mapping name -> (n_chains, n_samples, ...) tensor
        probs: Quantiles to report (default: 95% interval and median)

    Returns:
        Mapping component name -> {'mean', 'sd', 'q<p>' ..., 'median', 'ess', 'rhat'}

    Example:
        >>> summary = summarize_draws(samples.draws)
        >>> summary['rho']['median']
    """
    q = torch.tensor(list(probs), dtype=torch.float64)
    summary = {}

    for name, values in _scalar_components(draws).items():
        values = values.to(torch.float64)
        pooled = values.reshape(-1)
        quantiles = torch.quantile(pooled, q)

        row = {
            'mean': pooled.mean().item(),
            'sd': pooled.std().item(),
            'median': pooled.median().item(),
            'ess': compute_multichain_ess(values).item(),
            'rhat': compute_rhat(values).item() if values.shape[1] >= 4 else float('nan'),
        }
        for p, value in zip(probs, quantiles):
            row[f"q{p:g}"] = value.item()
        summary[name] = row

    return summary


def intervals_overlap(
    summary_a: Dict[str, dict],
    summary_b: Dict[str, dict],
    names: List[str],
    lower: str = 'q0.025',
    upper: str = 'q0.975'
) -> Dict[str, bool]:
    """
    Check whether credible intervals of two fits overlap.

    Args:
        summary_a, summary_b: Outputs of summarize_draws
        names: Components to compare, e.g. ['beta[0]', 'tau', 'rho']

    Returns:
        Mapping name -> True if the intervals overlap
    """
    result = {}
    for name in names:
        a, b = summary_a[name], summary_b[name]
        result[name] = a[lower] <= b[upper] and b[lower] <= a[upper]
    return result


def max_abs_median_difference(
    draws_a: torch.Tensor,
    draws_b: torch.Tensor
) -> float:
    """
    Largest absolute difference between posterior medians of two fits.

    Args:
        draws_a, draws_b: (n_chains, n_samples, k) draws of the same vector
    """
    med_a = draws_a.reshape(-1, *draws_a.shape[2:]).median(dim=0).values
    med_b = draws_b.reshape(-1, *draws_b.shape[2:]).median(dim=0).values
    return (med_a - med_b).abs().max().item()


def efficiency_table(results: Dict[str, object]) -> List[dict]:
    """
    Sampling efficiency of competing model variants.

    The effective sample size reported is that of the log density (lp__).
    A fit whose lp__ never changed reports NaN for n_eff and n_eff_per_s.

    Args:
        results: Mapping model name -> PosteriorSamples

    Returns:
        List of rows {'model', 'n_eff', 'elapsed', 'n_eff_per_s'}

    Example:
        >>> table = efficiency_table({'dense': dense_fit, 'sparse': sparse_fit})
    """
    table = []
    for name, fit in results.items():
        n_eff = compute_multichain_ess(fit.draws['lp__']).item()
        elapsed = float(fit.elapsed)
        table.append({
            'model': name,
            'n_eff': n_eff,
            'elapsed': elapsed,
            'n_eff_per_s': n_eff / elapsed if elapsed > 0 else float('inf'),
        })
        logger.info("%s: n_eff=%.1f in %.2fs", name, n_eff, elapsed)
    return table


def format_efficiency_table(table: List[dict]) -> str:
    """Render efficiency_table() rows as aligned text."""
    lines = [f"{'model':<12} {'n_eff':>10} {'elapsed':>10} {'n_eff/s':>10}"]
    for row in table:
        lines.append(
            f"{row['model']:<12} {row['n_eff']:>10.1f} "
            f"{row['elapsed']:>10.2f} {row['n_eff_per_s']:>10.2f}"
        )
    return "\n".join(lines)
