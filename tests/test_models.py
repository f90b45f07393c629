"""
Unit tests for the Poisson CAR models.
"""

import math

import numpy as np
import pytest
import torch

from sparse_car.exceptions import InvalidInput
from sparse_car import models
from sparse_car.models import DenseCAR, SparseCAR
from sparse_car.utils import graph
from sparse_car.utils.spectral import dense_sparse_offset


def _models(W, data, **kwargs):
    args = (W, data['X'], data['y'], data['log_offset'])
    return SparseCAR(*args, **kwargs), DenseCAR(*args, **kwargs)


def _theta(model, seed):
    generator = torch.Generator().manual_seed(seed)
    return model.initial_point(generator)


class TestConstruction:

    def test_dimensions(self, grid_graph, grid_data):
        sparse, dense = _models(grid_graph, grid_data)

        for model in (sparse, dense):
            assert model.n_obs == 16
            assert model.n_features == 2
            assert model.dim == 2 + 2 + 16
        assert sparse.n_edges == 24

    def test_precomputation_stored_as_buffers(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        buffers = dict(sparse.named_buffers())

        for name in ('edges', 'm', 'eigenvalues', 'X', 'y', 'log_offset'):
            assert name in buffers
        assert 'W' not in buffers
        assert list(sparse.parameters()) == []

    def test_default_log_offset(self, line_graph):
        model = SparseCAR(line_graph, torch.ones(3, 1), torch.tensor([1., 0., 2.]))
        assert torch.equal(model.log_offset, torch.zeros(3, dtype=torch.float64))

    def test_one_dimensional_design(self, line_graph):
        model = SparseCAR(line_graph, torch.ones(3), torch.tensor([1., 0., 2.]))
        assert model.n_features == 1

    def test_rejects_mismatched_rows(self, grid_graph, grid_data):
        with pytest.raises(InvalidInput, match="rows"):
            SparseCAR(grid_graph, grid_data['X'][:10], grid_data['y'], grid_data['log_offset'])

    def test_rejects_mismatched_offset(self, grid_graph, grid_data):
        with pytest.raises(InvalidInput, match="log_offset"):
            DenseCAR(grid_graph, grid_data['X'], grid_data['y'], grid_data['log_offset'][:3])

    def test_rejects_negative_counts(self, line_graph):
        with pytest.raises(InvalidInput, match="non-negative integer"):
            SparseCAR(line_graph, torch.ones(3, 1), torch.tensor([1., -1., 2.]))

    def test_rejects_fractional_counts(self, line_graph):
        with pytest.raises(InvalidInput, match="non-negative integer"):
            SparseCAR(line_graph, torch.ones(3, 1), torch.tensor([1., 0.5, 2.]))

    def test_rejects_invalid_adjacency(self, grid_data):
        W = torch.zeros(16, 16)
        with pytest.raises(InvalidInput):
            SparseCAR(W, grid_data['X'], grid_data['y'], grid_data['log_offset'])

    def test_adjacency_validated_once(self, grid_graph, grid_data, monkeypatch):
        calls = []
        validate = graph.validate_adjacency

        def counting_validate(W):
            calls.append(W)
            return validate(W)

        monkeypatch.setattr(models, 'validate_adjacency', counting_validate)
        monkeypatch.setattr(graph, 'validate_adjacency', counting_validate)

        for cls in (SparseCAR, DenseCAR):
            calls.clear()
            cls(grid_graph, grid_data['X'], grid_data['y'], grid_data['log_offset'])
            assert len(calls) == 1


class TestParameterTransforms:

    def test_constrain_ranges(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        params = sparse.constrain(_theta(sparse, 0))

        assert params['beta'].shape == (2,)
        assert params['phi'].shape == (16,)
        assert params['tau'].item() > 0
        assert 0 < params['rho'].item() < 1

    def test_unconstrain_inverts_constrain(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        theta = _theta(sparse, 1)

        assert torch.allclose(sparse.unconstrain(**sparse.constrain(theta)), theta, atol=1e-12)

    def test_forward_includes_log_jacobian(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        theta = _theta(sparse, 2)
        params = sparse.constrain(theta)

        tau, rho = params['tau'].item(), params['rho'].item()
        log_jacobian = math.log(tau) + math.log(rho * (1 - rho))

        expected = sparse.log_prob(**params).item() + log_jacobian
        assert sparse(theta).item() == pytest.approx(expected, rel=1e-10)

    def test_batched_forward(self, grid_graph, grid_data):
        sparse, dense = _models(grid_graph, grid_data)
        thetas = torch.stack([_theta(sparse, k) for k in range(5)])

        for model in (sparse, dense):
            values = model(thetas)
            assert values.shape == (5,)
            assert values[3].item() == pytest.approx(model(thetas[3]).item(), rel=1e-10)


class TestLogProb:

    def test_sparse_and_dense_differ_by_constant(self, grid_graph, grid_data):
        sparse, dense = _models(grid_graph, grid_data)
        offset = dense_sparse_offset(sparse.m).item()

        for seed in range(3):
            theta = _theta(sparse, seed)
            assert (sparse(theta) - dense(theta)).item() == pytest.approx(offset, abs=1e-8)

    def test_gradients_agree(self, grid_graph, grid_data):
        sparse, dense = _models(grid_graph, grid_data)
        theta = _theta(sparse, 7)

        grads = []
        for model in (sparse, dense):
            t = theta.clone().requires_grad_(True)
            grad, = torch.autograd.grad(model(t), t)
            grads.append(grad)

        assert torch.allclose(grads[0], grads[1], atol=1e-8)

    def test_log_likelihood_uses_offset(self, line_graph):
        y = torch.tensor([1., 0., 2.])
        offset = torch.log(torch.tensor([2., 1., 4.]))
        model = SparseCAR(line_graph, torch.ones(3, 1), y, offset)

        beta = torch.zeros(1, dtype=torch.float64)
        phi = torch.zeros(3, dtype=torch.float64)
        expected = (y.double() * offset.double() - torch.tensor([2., 1., 4.], dtype=torch.float64)).sum()

        assert model.log_likelihood(beta, phi).item() == pytest.approx(expected.item())

    def test_rho_outside_prior_support(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        beta = torch.zeros(2, dtype=torch.float64)

        assert sparse.log_prior(beta, torch.tensor(1.0), torch.tensor(-0.2)).item() == -math.inf
        assert sparse.log_prior(beta, torch.tensor(1.0), torch.tensor(0.5)).item() > -math.inf

    def test_prior_values(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data, prior_beta_std=2.0, prior_tau_shape=3.0,
                            prior_tau_rate=0.5)
        beta = torch.tensor([0.5, -1.0], dtype=torch.float64)
        tau = torch.tensor(1.5, dtype=torch.float64)

        expected = (
            sum(-0.5 * (b / 2.0) ** 2 - math.log(2.0) - 0.5 * math.log(2 * math.pi) for b in (0.5, -1.0))
            + 3.0 * math.log(0.5) + 2.0 * math.log(1.5) - 0.5 * 1.5 - math.lgamma(3.0)
        )
        value = sparse.log_prior(beta, tau, torch.tensor(0.3, dtype=torch.float64))
        assert value.item() == pytest.approx(expected, rel=1e-10)


class TestDataPayload:

    def test_sparse_payload(self, grid_graph, grid_data):
        sparse, _ = _models(grid_graph, grid_data)
        payload = sparse.data_payload()

        assert payload['n'] == 16
        assert payload['p'] == 2
        assert payload['W_n'] == 24
        assert payload['W1'].shape == (24,)
        assert payload['W2'].shape == (24,)
        assert payload['W1'].min() >= 1 and payload['W2'].max() <= 16
        assert np.all(payload['W1'] < payload['W2'])
        assert payload['D_sparse'].sum() == 2 * payload['W_n']
        assert payload['lambda'].shape == (16,)
        assert payload['y'].dtype == np.int64
        assert 'W' not in payload

    def test_sparse_payload_is_one_indexed(self, line_graph):
        model = SparseCAR(line_graph, torch.ones(3, 1), torch.tensor([1., 0., 2.]))
        payload = model.data_payload()

        assert payload['W1'].tolist() == [1, 2]
        assert payload['W2'].tolist() == [2, 3]
        assert payload['D_sparse'].tolist() == [1, 2, 1]

    def test_dense_payload(self, grid_graph, grid_data):
        _, dense = _models(grid_graph, grid_data)
        payload = dense.data_payload()

        np.testing.assert_array_equal(payload['W'], grid_graph.numpy())
        np.testing.assert_array_equal(np.diag(payload['D']), grid_graph.numpy().sum(axis=1))
        assert payload['D'].shape == (16, 16)
        np.testing.assert_allclose(payload['log_offset'], grid_data['log_offset'].numpy())
