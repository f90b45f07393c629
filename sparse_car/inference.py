"""
Inference methods for CAR models.

This module provides the engines that consume a model's log density:

    - HamiltonianMonteCarlo: multi-chain HMC with step-size and diagonal
      mass-matrix adaptation, used for the dense vs sparse comparison
    - VariationalInference: mean-field Gaussian variational approximation on
      the unconstrained scale, optimized with Adam

Both only need a model exposing `dim`, `initial_point()`, `constrain()` and
a forward pass returning the unconstrained log density.
"""
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import torch
import torch.nn as nn
from joblib import Parallel, delayed

from sparse_car.utils.diagnostics import summarize_draws

logger = logging.getLogger(__name__)


@dataclass
class SamplerConfig:
    """Settings for HamiltonianMonteCarlo."""
    n_chains: int = 4
    n_warmup: int = 1000
    n_samples: int = 1000
    n_leapfrog: int = 16
    initial_step_size: float = 0.1
    target_accept: float = 0.8
    max_init_attempts: int = 100
    seed: int = 0
    n_jobs: int = 1

    def __post_init__(self):
        if self.n_chains < 1:
            raise ValueError(f"n_chains must be positive, got {self.n_chains}")
        if self.n_samples < 1:
            raise ValueError(f"n_samples must be positive, got {self.n_samples}")
        if self.n_leapfrog < 1:
            raise ValueError(f"n_leapfrog must be positive, got {self.n_leapfrog}")
        if not 0 < self.target_accept < 1:
            raise ValueError(f"target_accept must be in (0, 1), got {self.target_accept}")


@dataclass
class PosteriorSamples:
    """
    Posterior draws and run statistics.

    Attributes:
        draws: Mapping parameter name -> tensor (n_chains, n_samples, ...),
            including 'lp__', the unconstrained log density of each draw
        elapsed: Wall-clock seconds for the whole run
        chain_elapsed: Seconds per chain
        acceptance_rate: Mean acceptance probability per chain
        step_size: Adapted step size per chain
        n_divergent: Number of divergent transitions per chain
    """
    draws: Dict[str, torch.Tensor]
    elapsed: float
    chain_elapsed: List[float] = field(default_factory=list)
    acceptance_rate: List[float] = field(default_factory=list)
    step_size: List[float] = field(default_factory=list)
    n_divergent: List[int] = field(default_factory=list)

    @property
    def n_chains(self) -> int:
        return self.draws['lp__'].shape[0]

    @property
    def n_samples(self) -> int:
        return self.draws['lp__'].shape[1]

    def summary(self) -> Dict[str, dict]:
        """Per-component posterior summary, see summarize_draws()."""
        return summarize_draws(self.draws)


def _collect_draws(model, thetas: torch.Tensor, lps: torch.Tensor) -> Dict[str, torch.Tensor]:
    """Constrain stacked unconstrained draws (n_chains, n_samples, dim)."""
    with torch.no_grad():
        draws = {k: v.clone() for k, v in model.constrain(thetas).items()}
    draws['lp__'] = lps
    return draws


class HamiltonianMonteCarlo:
    """
    Hamiltonian Monte Carlo with a fixed number of leapfrog steps.

    During warmup the step size is tuned by dual averaging (Hoffman & Gelman,
    2014) towards `target_accept`, and a diagonal inverse mass matrix is
    estimated from the middle of the warmup draws. Proposals whose energy is
    not finite, which is how the densities signal an infeasible region such
    as 1 - rho * lambda_i <= 0, are rejected and counted as divergent.

    Args:
        model: Model whose forward pass returns the unconstrained log density
        config: SamplerConfig (defaults used if None)

    Example:
        >>> hmc = HamiltonianMonteCarlo(SparseCAR(W, X, y, log_offset))
        >>> samples = hmc.sample()
        >>> samples.summary()['rho']
    """

    # Dual averaging constants
    gamma = 0.05
    t0 = 10.0
    kappa = 0.75
    max_energy_error = 1000.0

    def __init__(self, model, config: Optional[SamplerConfig] = None):
        self.model = model
        self.config = config if config is not None else SamplerConfig()

    def _log_prob_and_grad(self, theta: torch.Tensor):
        theta = theta.detach().requires_grad_(True)
        lp = self.model(theta)
        if not torch.isfinite(lp):
            return lp.detach(), None
        grad, = torch.autograd.grad(lp, theta)
        return lp.detach(), grad

    def _initialize(self, generator: torch.Generator):
        for _ in range(self.config.max_init_attempts):
            theta = self.model.initial_point(generator)
            lp, grad = self._log_prob_and_grad(theta)
            if grad is not None and torch.isfinite(grad).all():
                return theta, lp, grad
        raise RuntimeError(
            f"No finite initial point found in {self.config.max_init_attempts} attempts"
        )

    def _transition(self, theta, lp, grad, step_size, inv_mass, generator):
        """
        One HMC transition.

        Returns:
            (theta, lp, grad, accept_prob, divergent)
        """
        momentum = torch.randn(theta.shape, generator=generator, dtype=theta.dtype) / torch.sqrt(inv_mass)
        energy0 = -lp + 0.5 * (momentum ** 2 * inv_mass).sum()

        q, p, q_grad = theta.clone(), momentum.clone(), grad
        q_lp = lp
        divergent = False

        for _ in range(self.config.n_leapfrog):
            p = p + 0.5 * step_size * q_grad
            q = q + step_size * inv_mass * p
            q_lp, q_grad = self._log_prob_and_grad(q)
            if q_grad is None or not torch.isfinite(q_grad).all():
                divergent = True
                break
            p = p + 0.5 * step_size * q_grad

        if divergent:
            return theta, lp, grad, 0.0, True

        energy1 = -q_lp + 0.5 * (p ** 2 * inv_mass).sum()
        delta = (energy0 - energy1).item()
        if not math.isfinite(delta) or -delta > self.max_energy_error:
            return theta, lp, grad, 0.0, True

        accept_prob = min(1.0, math.exp(delta)) if delta < 0 else 1.0
        u = torch.rand(1, generator=generator, dtype=theta.dtype).item()
        if u < accept_prob:
            return q, q_lp, q_grad, accept_prob, False
        return theta, lp, grad, accept_prob, False

    def run_chain(self, chain_id: int = 0, verbose: bool = False) -> dict:
        """
        Run one chain: warmup with adaptation, then sampling.

        Args:
            chain_id: Offsets the seed so chains are independent
            verbose: Print warmup/sampling progress

        Returns:
            Dictionary with 'theta' (n_samples, dim), 'lp' (n_samples,),
            'accept_rate', 'step_size', 'n_divergent', 'elapsed'
        """
        cfg = self.config
        generator = torch.Generator().manual_seed(cfg.seed + chain_id)
        start = time.perf_counter()

        theta, lp, grad = self._initialize(generator)
        inv_mass = torch.ones_like(theta)

        # Warmup windows: step size only, then mass matrix, then step size
        window_start = int(0.15 * cfg.n_warmup)
        window_end = int(0.75 * cfg.n_warmup)
        window_draws = []

        step_size = cfg.initial_step_size
        mu = math.log(10 * step_size)
        h_bar, log_step_bar, m_iter = 0.0, 0.0, 0

        for it in range(cfg.n_warmup):
            theta, lp, grad, accept_prob, _ = self._transition(
                theta, lp, grad, step_size, inv_mass, generator
            )

            m_iter += 1
            weight = 1.0 / (m_iter + self.t0)
            h_bar = (1 - weight) * h_bar + weight * (cfg.target_accept - accept_prob)
            log_step = mu - math.sqrt(m_iter) / self.gamma * h_bar
            eta = m_iter ** (-self.kappa)
            log_step_bar = eta * log_step + (1 - eta) * log_step_bar
            step_size = math.exp(log_step)

            if window_start <= it < window_end:
                window_draws.append(theta.clone())

            if it == window_end - 1 and len(window_draws) > 1:
                stacked = torch.stack(window_draws)
                n = stacked.shape[0]
                variance = stacked.var(dim=0)
                inv_mass = (n / (n + 5.0)) * variance + 1e-3 * (5.0 / (n + 5.0))
                mu = math.log(10 * step_size)
                h_bar, log_step_bar, m_iter = 0.0, 0.0, 0

            if verbose and (it + 1) % max(1, cfg.n_warmup // 4) == 0:
                print(f"Chain {chain_id} | Warmup {it + 1:5d}/{cfg.n_warmup} | step size: {step_size:.4f}")

        if cfg.n_warmup > 0:
            step_size = math.exp(log_step_bar) if m_iter > 0 else step_size

        thetas = torch.empty(cfg.n_samples, theta.shape[0], dtype=theta.dtype)
        lps = torch.empty(cfg.n_samples, dtype=theta.dtype)
        accept_total, n_divergent = 0.0, 0

        for it in range(cfg.n_samples):
            theta, lp, grad, accept_prob, divergent = self._transition(
                theta, lp, grad, step_size, inv_mass, generator
            )
            thetas[it] = theta
            lps[it] = lp
            accept_total += accept_prob
            n_divergent += int(divergent)

            if verbose and (it + 1) % max(1, cfg.n_samples // 4) == 0:
                print(f"Chain {chain_id} | Sample {it + 1:5d}/{cfg.n_samples}")

        elapsed = time.perf_counter() - start
        if n_divergent > 0:
            logger.warning("Chain %d had %d divergent transitions", chain_id, n_divergent)

        return {
            'theta': thetas,
            'lp': lps,
            'accept_rate': accept_total / cfg.n_samples,
            'step_size': step_size,
            'n_divergent': n_divergent,
            'elapsed': elapsed,
        }

    def sample(self, verbose: bool = False) -> PosteriorSamples:
        """
        Run all chains, in parallel when config.n_jobs != 1.

        Returns:
            PosteriorSamples with draws shaped (n_chains, n_samples, ...)
        """
        cfg = self.config
        logger.info(
            "Sampling %d chain(s) of %s: %d warmup, %d draws, %d leapfrog steps",
            cfg.n_chains, self.model.__class__.__name__, cfg.n_warmup, cfg.n_samples, cfg.n_leapfrog
        )

        start = time.perf_counter()
        chains = Parallel(n_jobs=cfg.n_jobs)(
            delayed(self.run_chain)(chain_id, verbose) for chain_id in range(cfg.n_chains)
        )
        elapsed = time.perf_counter() - start

        thetas = torch.stack([c['theta'] for c in chains])
        lps = torch.stack([c['lp'] for c in chains])

        samples = PosteriorSamples(
            draws=_collect_draws(self.model, thetas, lps),
            elapsed=elapsed,
            chain_elapsed=[c['elapsed'] for c in chains],
            acceptance_rate=[c['accept_rate'] for c in chains],
            step_size=[c['step_size'] for c in chains],
            n_divergent=[c['n_divergent'] for c in chains],
        )

        if verbose:
            print(f"\nSampling complete in {elapsed:.2f}s | "
                  f"accept: {sum(samples.acceptance_rate) / cfg.n_chains:.3f} | "
                  f"divergent: {sum(samples.n_divergent)}")

        return samples


class MeanFieldGaussian(nn.Module):
    """
    q(theta) = N(mu, diag(sigma^2)) over the unconstrained parameters.

    Args:
        dim: Number of unconstrained parameters
        init_mu: Initial mean (zeros if None)
        init_log_sigma: Initial log standard deviation for every coordinate
    """

    def __init__(self, dim: int, init_mu: Optional[torch.Tensor] = None, init_log_sigma: float = -2.0):
        super().__init__()
        if init_mu is None:
            init_mu = torch.zeros(dim, dtype=torch.float64)
        self.mu = nn.Parameter(init_mu.clone().to(torch.float64))
        self.log_sigma = nn.Parameter(torch.full((dim,), init_log_sigma, dtype=torch.float64))

    @property
    def sigma(self) -> torch.Tensor:
        return torch.exp(self.log_sigma)

    def rsample(self, n_samples: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        """Reparameterized draws (n_samples, dim)."""
        eps = torch.randn(n_samples, self.mu.shape[0], generator=generator, dtype=self.mu.dtype)
        return self.mu + self.sigma * eps

    def entropy(self) -> torch.Tensor:
        """Gaussian entropy up to the constant dim/2 * (1 + log 2 pi)."""
        return self.log_sigma.sum()


class VariationalInference:
    """
    Mean-field variational inference for CAR models.

    Maximizes ELBO = E_q[log p(theta, y)] + H[q] with:
    - Adam optimization with learning rate scheduling
    - MC sample ramping during training
    - Progress tracking and diagnostics
    - Gradient clipping for stability

    Args:
        model: CAR model instance (any subclass of CARModelBase)
        n_mc_samples: Initial number of Monte Carlo samples per ELBO estimate
        seed: Seed for the reparameterization noise

    Attributes:
        model: The model being fit
        guide: MeanFieldGaussian variational family
        history: List of dictionaries containing training diagnostics
        optimizer: PyTorch optimizer (created during fit)
        scheduler: Learning rate scheduler (created during fit if use_scheduler=True)
    """

    def __init__(self, model, n_mc_samples: int = 10, seed: int = 0):
        self.model = model
        self.guide = MeanFieldGaussian(model.dim)
        self.n_mc_samples_initial = n_mc_samples
        self.n_mc_samples = n_mc_samples
        self.generator = torch.Generator().manual_seed(seed)
        self.history = []
        self.optimizer = None
        self.scheduler = None
        self.elapsed = 0.0

    def elbo(self) -> torch.Tensor:
        """Monte Carlo estimate of the ELBO."""
        theta = self.guide.rsample(self.n_mc_samples, generator=self.generator)
        log_p = self.model(theta)
        return log_p.mean() + self.guide.entropy()

    def fit(
        self,
        n_iterations: int = 3000,
        learning_rate: float = 0.02,
        n_mc_samples_final: Optional[int] = None,
        warmup_iterations: int = 500,
        use_scheduler: bool = True,
        gradient_clip: float = 5.0,
        verbose: bool = True,
        print_every: int = 100
    ) -> List[Dict]:
        """
        Fit the variational approximation.

        Args:
            n_iterations: Number of optimization iterations
            learning_rate: Initial learning rate
            n_mc_samples_final: Final number of MC samples (ramped up during training).
                              If None, uses 4x the initial number
            warmup_iterations: Number of iterations before ramping up MC samples
            use_scheduler: Whether to use ReduceLROnPlateau scheduler
            gradient_clip: Maximum gradient norm for clipping
            verbose: Whether to print progress
            print_every: Print frequency (in iterations)

        Returns:
            history: List of dictionaries with training diagnostics
        """
        if n_mc_samples_final is None:
            n_mc_samples_final = self.n_mc_samples_initial * 4

        self.optimizer = self._create_optimizer(learning_rate)

        if use_scheduler:
            self.scheduler = torch.optim.lr_scheduler.ReduceLROnPlateau(
                self.optimizer,
                mode='max',  # Maximize ELBO
                factor=0.7,
                patience=150,
                threshold=0.01,
                min_lr=1e-6
            )

        self.history = []
        best_elbo = -float('inf')
        start = time.perf_counter()

        for iteration in range(n_iterations):
            self._update_mc_samples(iteration, n_iterations, warmup_iterations, n_mc_samples_final)

            self.optimizer.zero_grad()

            elbo_value = self.elbo()
            if not torch.isfinite(elbo_value):
                logger.warning("Non-finite ELBO at iteration %d, skipping step", iteration)
                continue

            loss = -elbo_value
            loss.backward()

            torch.nn.utils.clip_grad_norm_(self.guide.parameters(), max_norm=gradient_clip)

            self.optimizer.step()

            if use_scheduler and self.scheduler is not None:
                self.scheduler.step(elbo_value.detach())

            if elbo_value.item() > best_elbo:
                best_elbo = elbo_value.item()

            diagnostics = {
                'elbo': elbo_value.item(),
                'iteration': iteration,
                'n_mc_samples': self.n_mc_samples,
                'learning_rate': self.optimizer.param_groups[0]['lr'],
                'best_elbo': best_elbo,
            }
            with torch.no_grad():
                diagnostics.update(self._get_additional_diagnostics())

            self.history.append(diagnostics)

            if verbose and (iteration % print_every == 0 or iteration == n_iterations - 1):
                self._print_progress(iteration, diagnostics)

        self.elapsed = time.perf_counter() - start

        if verbose:
            print(f"\nTraining complete! Best ELBO: {best_elbo:.2f}")

        return self.history

    def _create_optimizer(self, learning_rate: float) -> torch.optim.Optimizer:
        """
        Adam with a lower learning rate for the log standard deviations,
        which are less stable than the means early on.
        """
        param_groups = [
            {'params': [self.guide.mu], 'lr': learning_rate},
            {'params': [self.guide.log_sigma], 'lr': learning_rate * 0.5},
        ]
        return torch.optim.Adam(param_groups, lr=learning_rate)

    def _update_mc_samples(
        self,
        iteration: int,
        n_iterations: int,
        warmup_iterations: int,
        n_mc_samples_final: int
    ):
        """
        Gradually increase MC samples during training.

        Start with fewer samples for speed, then increase for accuracy.
        """
        if iteration < warmup_iterations:
            self.n_mc_samples = self.n_mc_samples_initial
        else:
            progress = (iteration - warmup_iterations) / max(1, n_iterations - warmup_iterations)
            progress = min(progress, 1.0)

            self.n_mc_samples = int(
                self.n_mc_samples_initial +
                progress * (n_mc_samples_final - self.n_mc_samples_initial)
            )
            self.n_mc_samples = max(1, self.n_mc_samples)

    def _get_additional_diagnostics(self) -> dict:
        """Current tau and rho at the variational mean."""
        params = self.model.constrain(self.guide.mu)
        diagnostics = {}
        if 'tau' in params:
            diagnostics['tau_current'] = params['tau'].item()
        if 'rho' in params:
            diagnostics['rho_current'] = params['rho'].item()
        diagnostics['sigma_mean'] = self.guide.sigma.mean().item()
        return diagnostics

    def _print_progress(self, iteration: int, diagnostics: dict):
        print(f"Iter {iteration:4d} | ELBO: {diagnostics['elbo']:10.2f} | ", end="")
        if 'tau_current' in diagnostics:
            print(f"tau: {diagnostics['tau_current']:6.3f} | ", end="")
        if 'rho_current' in diagnostics:
            print(f"rho: {diagnostics['rho_current']:5.3f} | ", end="")
        print(f"MC: {diagnostics['n_mc_samples']:2d}")

    def sample(self, n_samples: int = 1000) -> PosteriorSamples:
        """
        Draw from the fitted approximation.

        Returns:
            PosteriorSamples with a single chain
        """
        with torch.no_grad():
            thetas = self.guide.rsample(n_samples, generator=self.generator)
            lps = self.model(thetas)
        return PosteriorSamples(
            draws=_collect_draws(self.model, thetas.unsqueeze(0), lps.unsqueeze(0)),
            elapsed=self.elapsed,
            chain_elapsed=[self.elapsed],
        )

    def get_convergence_summary(self) -> dict:
        """
        Get summary of convergence diagnostics.

        Returns:
            Dictionary with convergence metrics
        """
        if not self.history:
            return {}

        elbos = [h['elbo'] for h in self.history]

        return {
            'final_elbo': elbos[-1],
            'best_elbo': max(elbos),
            'elbo_improvement': elbos[-1] - elbos[0],
            'n_iterations': len(elbos),
            'final_learning_rate': self.history[-1]['learning_rate'],
            'converged': self._check_convergence(elbos),
        }

    def _check_convergence(self, elbos: List[float], window: int = 100, threshold: float = 0.1) -> bool:
        if len(elbos) < window:
            return False

        recent_elbos = elbos[-window:]
        return abs(recent_elbos[-1] - recent_elbos[0]) < threshold
