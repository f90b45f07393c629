"""
Unit tests for the sparse and dense CAR log-densities.
"""

import math

import pytest
import torch

from sparse_car.exceptions import DomainViolation
from sparse_car.utils.graph import neighbor_counts, precompute_sparse_car
from sparse_car.utils.spectral import (
    car_log_det,
    car_precision_matrix,
    dense_car_log_density,
    dense_sparse_offset,
    log1m,
    poisson_log_likelihood,
    sparse_car_log_density,
    sparse_quadratic_form,
)


def _random_phi(n, seed):
    generator = torch.Generator().manual_seed(seed)
    return torch.randn(n, generator=generator, dtype=torch.float64)


def _both_densities(W, phi, tau, rho):
    data = precompute_sparse_car(W)
    sparse = sparse_car_log_density(phi, tau, rho, data.edges, data.m, data.eigenvalues)
    dense = dense_car_log_density(phi, tau, rho, W, data.m)
    return sparse, dense


@pytest.mark.numerical
class TestLog1m:
    """log1m(x) = log(1 - x)."""

    def test_matches_direct_log(self):
        x = torch.linspace(-0.9, 0.9, 181, dtype=torch.float64)
        assert torch.allclose(log1m(x), torch.log(1 - x), atol=1e-9, rtol=0)

    def test_stable_near_zero(self):
        x = torch.tensor([1e-10, 1e-14, 1e-17], dtype=torch.float64)
        result = log1m(x)

        # log(1 - x) = -x - x^2/2 - ...; the naive form loses everything at 1e-17
        assert torch.allclose(result, -x, rtol=1e-6, atol=0)
        assert torch.log(1 - x)[2].item() == 0.0
        assert result[2].item() != 0.0

    def test_at_one(self):
        assert log1m(torch.tensor(1.0, dtype=torch.float64)).item() == -math.inf


class TestCarLogDet:
    """sum_i log(1 - rho * lambda_i)."""

    def test_matches_matrix_determinant(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        rho = 0.6

        D = torch.diag(data.m)
        _, logdet_full = torch.linalg.slogdet(D - rho * grid_graph)
        expected = logdet_full - torch.log(data.m).sum()

        assert car_log_det(rho, data.eigenvalues).item() == pytest.approx(expected.item(), abs=1e-10)

    def test_zero_rho(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        assert car_log_det(0.0, data.eigenvalues).item() == 0.0

    def test_infeasible_rho_gives_negative_infinity(self, line_graph):
        eigenvalues = precompute_sparse_car(line_graph).eigenvalues
        # lambda = 1 is in the spectrum, so any rho > 1 makes 1 - rho * lambda < 0
        assert car_log_det(1.2, eigenvalues).item() == -math.inf
        assert car_log_det(-1.5, eigenvalues).item() == -math.inf

    def test_strict_raises_domain_violation(self, line_graph):
        eigenvalues = precompute_sparse_car(line_graph).eigenvalues
        with pytest.raises(DomainViolation):
            car_log_det(1.2, eigenvalues, strict=True)

    def test_strict_passes_feasible(self, line_graph):
        eigenvalues = precompute_sparse_car(line_graph).eigenvalues
        value = car_log_det(0.5, eigenvalues, strict=True)
        assert value.item() == pytest.approx(math.log(1.5) + math.log(0.5))

    def test_batched_rho(self, line_graph):
        eigenvalues = precompute_sparse_car(line_graph).eigenvalues
        rho = torch.tensor([0.0, 0.5, 2.0], dtype=torch.float64)

        values = car_log_det(rho, eigenvalues)
        assert values.shape == (3,)
        assert values[0].item() == 0.0
        assert values[2].item() == -math.inf


class TestSparseQuadraticForm:
    """phi^T (D - rho W) phi from the edge list."""

    @pytest.mark.parametrize("rho", [0.0, 0.3, 0.95])
    def test_matches_dense_quadratic_form(self, grid_graph, rho):
        data = precompute_sparse_car(grid_graph)
        phi = _random_phi(16, seed=3)

        expected = phi @ (torch.diag(data.m) - rho * grid_graph) @ phi
        result = sparse_quadratic_form(phi, rho, data.edges, data.m)

        assert result.item() == pytest.approx(expected.item(), rel=1e-12)

    def test_each_edge_counted_once(self, line_graph):
        data = precompute_sparse_car(line_graph)
        phi = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)

        # sum m phi^2 = 1 + 8 + 9 = 18; edge sum = 1*2 + 2*3 = 8
        result = sparse_quadratic_form(phi, 0.5, data.edges, data.m)
        assert result.item() == pytest.approx(18 - 2 * 0.5 * 8)


@pytest.mark.numerical
class TestSparseVersusDense:
    """The two evaluations differ only by a constant."""

    def test_difference_is_known_constant(self, grid_graph, parameter_sets):
        m = neighbor_counts(grid_graph)
        offset = dense_sparse_offset(m).item()

        for tau, rho, seed in parameter_sets:
            phi = _random_phi(16, seed)
            sparse, dense = _both_densities(grid_graph, phi, tau, rho)
            assert (sparse - dense).item() == pytest.approx(offset, abs=1e-8)

    def test_difference_independent_of_parameters(self, line_graph):
        diff_a = torch.sub(*_both_densities(line_graph, _random_phi(3, 10), 0.3, 0.2))
        diff_b = torch.sub(*_both_densities(line_graph, _random_phi(3, 11), 4.0, -0.8))

        assert diff_a.item() == pytest.approx(diff_b.item(), abs=1e-10)

    def test_batched_evaluation(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        generator = torch.Generator().manual_seed(5)
        phi = torch.randn(4, 16, generator=generator, dtype=torch.float64)
        tau = torch.tensor([0.5, 1.0, 2.0, 3.0], dtype=torch.float64)
        rho = torch.tensor([0.1, 0.5, 0.9, 0.99], dtype=torch.float64)

        sparse = sparse_car_log_density(phi, tau, rho, data.edges, data.m, data.eigenvalues)
        dense = dense_car_log_density(phi, tau, rho, grid_graph, data.m)

        assert sparse.shape == (4,)
        assert dense.shape == (4,)
        for k in range(4):
            single = sparse_car_log_density(phi[k], tau[k], rho[k], data.edges, data.m, data.eigenvalues)
            assert sparse[k].item() == pytest.approx(single.item(), rel=1e-12)
        assert torch.allclose(sparse - dense, torch.full((4,), dense_sparse_offset(data.m).item(),
                                                          dtype=torch.float64), atol=1e-8)

    def test_dense_infeasible_gives_negative_infinity(self, grid_graph):
        m = neighbor_counts(grid_graph)
        phi = _random_phi(16, 0)
        assert dense_car_log_density(phi, 1.0, 1.5, grid_graph, m).item() == -math.inf

    def test_sparse_infeasible_gives_negative_infinity(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        phi = _random_phi(16, 0)
        value = sparse_car_log_density(phi, 1.0, 1.5, data.edges, data.m, data.eigenvalues)
        assert value.item() == -math.inf

    def test_sparse_strict_raises(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        with pytest.raises(DomainViolation):
            sparse_car_log_density(_random_phi(16, 0), 1.0, 1.5, data.edges, data.m,
                                   data.eigenvalues, strict=True)


class TestSpecialCases:
    """Reductions of the sparse density."""

    def test_rho_zero(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        phi = _random_phi(16, 4)
        tau = 1.7

        value = sparse_car_log_density(phi, tau, 0.0, data.edges, data.m, data.eigenvalues)
        expected = 0.5 * 16 * math.log(tau) - 0.5 * tau * (data.m * phi ** 2).sum().item()

        assert value.item() == pytest.approx(expected, rel=1e-12)

    def test_zero_phi_line_graph(self, line_graph):
        data = precompute_sparse_car(line_graph)
        phi = torch.zeros(3, dtype=torch.float64)
        tau, rho = 2.0, 0.5

        value = sparse_car_log_density(phi, tau, rho, data.edges, data.m, data.eigenvalues)
        # eigenvalues {-1, 0, 1}: log(1.5) + log(1) + log(0.5)
        expected = 1.5 * math.log(tau) + 0.5 * (math.log(1.5) + math.log(0.5))

        assert value.item() == pytest.approx(expected, rel=1e-12)

    def test_gradients_are_finite(self, grid_graph):
        data = precompute_sparse_car(grid_graph)
        phi = _random_phi(16, 6).requires_grad_(True)
        tau = torch.tensor(1.5, dtype=torch.float64, requires_grad=True)
        rho = torch.tensor(0.9, dtype=torch.float64, requires_grad=True)

        value = sparse_car_log_density(phi, tau, rho, data.edges, data.m, data.eigenvalues)
        value.backward()

        for tensor in (phi, tau, rho):
            assert torch.isfinite(tensor.grad).all()

    def test_precision_matrix(self, line_graph):
        m = neighbor_counts(line_graph)
        Q = car_precision_matrix(2.0, 0.5, line_graph, m)
        expected = torch.tensor([[2., -1., 0.], [-1., 4., -1.], [0., -1., 2.]], dtype=torch.float64)
        assert torch.allclose(Q, expected)


class TestPoissonLikelihood:

    def test_matches_formula(self):
        y = torch.tensor([0., 3., 7.], dtype=torch.float64)
        eta = torch.tensor([0.1, 1.0, 2.0], dtype=torch.float64)

        expected = sum(yi * ei - math.exp(ei) for yi, ei in zip(y.tolist(), eta.tolist()))
        assert poisson_log_likelihood(y, eta).item() == pytest.approx(expected)

    def test_differs_from_full_poisson_by_constant(self):
        y = torch.tensor([0., 3., 7.], dtype=torch.float64)
        eta = torch.tensor([0.1, 1.0, 2.0], dtype=torch.float64)

        full = torch.distributions.Poisson(torch.exp(eta)).log_prob(y).sum()
        constant = torch.lgamma(y + 1).sum()
        assert poisson_log_likelihood(y, eta).item() == pytest.approx((full + constant).item())
