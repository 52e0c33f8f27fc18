import math

import pytest
import torch

from hydrodag import ConfigError, ContinuousSolver, DiscreteSolver, SolverError, SolverFailureWarning
from hydrodag.solvers import get_solver


def decay(state, params, t):
    return -params * state


def test_discrete_recurrence():
    u0 = torch.tensor([1.0, 2.0])
    trajectory = DiscreteSolver()(decay, 0.1, u0, torch.arange(6.0))
    assert trajectory.shape == (2, 6)
    assert torch.equal(trajectory[:, 0], u0)
    expected = u0.clone()
    for i in range(1, 6):
        expected = expected + decay(expected, 0.1, None)
        assert torch.equal(trajectory[:, i], expected)


def test_discrete_min_state_clamp():
    solver = DiscreteSolver(min_state=0.0)
    trajectory = solver(lambda u, p, t: -torch.ones_like(u), None, torch.tensor([1.5]), torch.arange(4.0))
    assert torch.equal(trajectory[0], torch.tensor([1.5, 0.5, 0.0, 0.0]))


def test_continuous_matches_analytic_solution():
    t = torch.linspace(0.0, 4.0, 9, dtype=torch.float64)
    u0 = torch.tensor([1.0], dtype=torch.float64)
    trajectory = ContinuousSolver(rtol=1e-8, atol=1e-10)(decay, 0.5, u0, t)
    assert trajectory.shape == (1, 9)
    assert torch.allclose(trajectory[0], torch.exp(-0.5 * t), rtol=1e-6)


def test_continuous_fixed_step_method():
    t = torch.linspace(0.0, 1.0, 5)
    trajectory = ContinuousSolver(method="rk4", step_size=0.05)(decay, 1.0, torch.ones(3), t)
    assert trajectory.shape == (3, 5)
    assert trajectory[0, -1].item() == pytest.approx(math.exp(-1.0), rel=1e-4)


def test_solvers_agree_on_fine_steps():
    rate = 1e-3
    t = torch.arange(200.0, dtype=torch.float64)
    u0 = torch.tensor([5.0], dtype=torch.float64)
    discrete = DiscreteSolver()(decay, rate, u0, t)
    continuous = ContinuousSolver()(decay, rate, u0, t)
    relative = ((discrete - continuous).abs() / continuous.abs()).max()
    assert relative < 1e-3


def test_failure_fills_and_warns():
    def explode(state, params, t):
        return state * float("inf")

    with pytest.warns(SolverFailureWarning):
        trajectory = DiscreteSolver()(explode, None, torch.ones(2, 3), torch.arange(4.0))
    assert trajectory.shape == (2, 3, 4)
    assert torch.equal(trajectory, torch.zeros(2, 3, 4))


def test_failure_fill_value():
    with pytest.warns(SolverFailureWarning):
        trajectory = DiscreteSolver(fill_value=float("nan"))(
            lambda u, p, t: u / 0.0, None, torch.ones(2), torch.arange(3.0)
        )
    assert torch.isnan(trajectory).all()


def test_failure_can_raise():
    with pytest.raises(SolverError):
        DiscreteSolver(on_failure="raise")(
            lambda u, p, t: u * float("nan"), None, torch.ones(1), torch.arange(3.0)
        )


def test_continuous_step_budget_exhausted():
    solver = ContinuousSolver(rtol=1e-12, atol=1e-12, max_num_steps=2)
    with pytest.warns(SolverFailureWarning):
        trajectory = solver(decay, 50.0, torch.ones(2), torch.linspace(0.0, 10.0, 5))
    assert trajectory.shape == (2, 5)
    assert torch.equal(trajectory, torch.zeros(2, 5))


def test_get_solver():
    assert isinstance(get_solver(None), DiscreteSolver)
    assert isinstance(get_solver("continuous"), ContinuousSolver)
    solver = DiscreteSolver(min_state=0.0)
    assert get_solver(solver) is solver
    with pytest.raises(ConfigError):
        get_solver("implicit")
    with pytest.raises(ConfigError):
        DiscreteSolver(on_failure="ignore")


def inflow_decay(state, params, t):
    return 1.0 - params * state


def test_discrete_failure_is_confined_to_failing_nodes():
    rates = torch.tensor([[0.5, float("inf")]])
    with pytest.warns(SolverFailureWarning, match=r"nodes \[1\]"):
        trajectory = DiscreteSolver()(inflow_decay, rates, torch.zeros(1, 2), torch.arange(6.0))
    healthy = DiscreteSolver()(inflow_decay, 0.5, torch.zeros(1), torch.arange(6.0))
    assert torch.equal(trajectory[:, 0], healthy)
    assert torch.equal(trajectory[:, 1], torch.zeros(1, 6))


def test_continuous_non_finite_node_is_filled_alone():
    rates = torch.tensor([[0.5, float("nan")]])
    solver = ContinuousSolver(method="rk4", step_size=0.1)
    t = torch.linspace(0.0, 2.0, 5)
    with pytest.warns(SolverFailureWarning):
        trajectory = solver(decay, rates, torch.ones(1, 2), t)
    healthy = solver(decay, 0.5, torch.ones(1), t)
    assert torch.allclose(trajectory[:, 0], healthy)
    assert torch.equal(trajectory[:, 1], torch.zeros(1, 5))


def test_continuous_retries_nodes_one_by_one():
    rates = torch.tensor([[0.5, 1e4]], dtype=torch.float64)
    solver = ContinuousSolver(rtol=1e-4, atol=1e-4, max_num_steps=100)
    t = torch.linspace(0.0, 5.0, 6, dtype=torch.float64)
    with pytest.warns(SolverFailureWarning, match=r"nodes \[1\]"):
        trajectory = solver(decay, rates, torch.ones(1, 2, dtype=torch.float64), t)
    assert torch.allclose(trajectory[0, 0], torch.exp(-0.5 * t), rtol=1e-3, atol=1e-3)
    assert torch.equal(trajectory[0, 1], torch.zeros(6, dtype=torch.float64))


def test_coupled_nodes_fail_together():
    solver = ContinuousSolver(rtol=1e-4, atol=1e-4, max_num_steps=100)
    rates = torch.tensor([[0.5, 1e4]], dtype=torch.float64)
    t = torch.linspace(0.0, 5.0, 6, dtype=torch.float64)
    with pytest.warns(SolverFailureWarning):
        trajectory = solver(
            decay, rates, torch.ones(1, 2, dtype=torch.float64), t, independent_nodes=False
        )
    assert torch.equal(trajectory, torch.zeros(1, 2, 6, dtype=torch.float64))
