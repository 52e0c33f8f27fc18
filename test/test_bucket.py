import pytest
import torch
from rich.console import Console

from conftest import SNOW_SOIL_PARAMS
from hydrodag import (
    ConfigError,
    ContinuousSolver,
    DiscreteSolver,
    HydroBucket,
    HydroFlux,
    ParameterError,
    ShapeError,
    SolverFailureWarning,
    StateFlux,
)


def test_names(snow_soil):
    assert snow_soil.input_names == ["P", "T", "Ep"]
    assert snow_soil.state_names == ["snow", "soil"]
    assert snow_soil.output_names == ["snowfall", "rainfall", "melt", "evap", "q"]
    assert snow_soil.variable_names[:2] == ["snow", "soil"]
    assert set(snow_soil.param_names) == set(SNOW_SOIL_PARAMS)


def test_discrete_recurrence(reservoir):
    prcp = torch.tensor([[1.0, 0.0, 2.0, 0.0, 0.0]])
    out = reservoir(prcp, {"k": 0.5})
    assert out.shape == (2, 5)
    storage = [0.0]
    for i in range(4):
        storage.append(storage[-1] + prcp[0, i].item() - 0.5 * storage[-1])
    assert torch.allclose(out[0], torch.tensor(storage))
    # outflow is recomputed from the solved storage
    assert torch.allclose(out[1], 0.5 * out[0])


def test_initial_state_override(reservoir):
    out = reservoir(torch.zeros(1, 4), {"k": 0.5}, {"initial_state": {"S": 8.0}})
    assert torch.allclose(out[0], torch.tensor([8.0, 4.0, 2.0, 1.0]))


def test_shapes_single_and_multi_node(snow_soil, forcing):
    single = snow_soil(forcing, SNOW_SOIL_PARAMS)
    assert single.shape == (7, 100)
    multi = snow_soil(forcing.unsqueeze(1).repeat(1, 4, 1), SNOW_SOIL_PARAMS)
    assert multi.shape == (7, 4, 100)


def test_shapes_with_continuous_solver(reservoir):
    out = reservoir(torch.ones(1, 3, 12), {"k": 0.2}, {"solver": ContinuousSolver()})
    assert out.shape == (2, 3, 12)


def test_multi_node_equivalence(snow_soil, forcing):
    single = snow_soil(forcing, SNOW_SOIL_PARAMS)
    multi = snow_soil(forcing.unsqueeze(1).repeat(1, 10, 1), SNOW_SOIL_PARAMS)
    for node in range(10):
        assert torch.equal(multi[:, node], single)


def test_multi_node_parameter_and_state_types(snow_soil, forcing):
    fast = dict(SNOW_SOIL_PARAMS, k=0.2)
    typed = {name: torch.tensor([SNOW_SOIL_PARAMS[name], fast[name]]) for name in SNOW_SOIL_PARAMS}
    states = {"soil": torch.tensor([0.0, 30.0])}
    config = {"ptyidx": [0, 1, 1, 0], "styidx": [1, 0, 1, 0], "initial_state": states}
    multi = snow_soil(forcing.unsqueeze(1).repeat(1, 4, 1), typed, config)
    for node, (ptype, stype) in enumerate(zip(config["ptyidx"], config["styidx"])):
        params = SNOW_SOIL_PARAMS if ptype == 0 else fast
        single = snow_soil(forcing, params, {"initial_state": {"soil": float(states["soil"][stype])}})
        assert torch.equal(multi[:, node], single)


def test_warm_up_continuation(reservoir):
    prcp = torch.rand(1, 30, generator=torch.Generator().manual_seed(0))
    full = reservoir(prcp, {"k": 0.3})
    first = reservoir(prcp[:, :16], {"k": 0.3})
    second = reservoir(
        prcp[:, 15:],
        {"k": 0.3},
        {"time_points": torch.arange(15.0, 30.0), "initial_state": {"S": first[0, -1]}},
    )
    assert torch.allclose(first, full[:, :16])
    assert torch.allclose(second, full[:, 15:])


def test_discrete_and_continuous_agree(reservoir):
    prcp = torch.ones(1, 200, dtype=torch.float64)
    params = {"k": 1e-3}
    discrete = reservoir(prcp, params, {"solver": DiscreteSolver()})
    continuous = reservoir(prcp, params, {"solver": ContinuousSolver(rtol=1e-8, atol=1e-10)})
    relative = ((discrete[:, 1:] - continuous[:, 1:]).abs() / continuous[:, 1:].abs()).max()
    assert relative < 1e-3


def test_deterministic(snow_soil, forcing):
    assert torch.equal(snow_soil(forcing, SNOW_SOIL_PARAMS), snow_soil(forcing, SNOW_SOIL_PARAMS))


def test_stateless_bucket():
    bucket = HydroBucket([HydroFlux(["a"], ["b"], ["k"], lambda v, p: [v[0] * p[0]])])
    out = bucket(torch.arange(6.0).reshape(1, 6), {"k": 2.0})
    assert torch.equal(out, torch.arange(6.0).reshape(1, 6) * 2.0)


def test_solver_failure_keeps_shape():
    bucket = HydroBucket(
        [HydroFlux(["S"], ["q"], (), lambda v, p: [v[0] * 0.0 - float("inf")])],
        [StateFlux.from_balance("S", ["P"], ["q"])],
    )
    with pytest.warns(SolverFailureWarning):
        out = bucket(torch.ones(1, 3, 5))
    assert out.shape == (2, 3, 5)
    assert torch.equal(out[0], torch.zeros(3, 5))


def test_shape_errors(reservoir):
    with pytest.raises(ShapeError):
        reservoir(torch.ones(2, 5), {"k": 0.1})
    with pytest.raises(ShapeError):
        reservoir(torch.ones(5), {"k": 0.1})
    with pytest.raises(ShapeError):
        reservoir(torch.ones(1, 3, 5), {"k": 0.1}, {"styidx": [0, 1]})
    with pytest.raises(ShapeError):
        reservoir(torch.ones(1, 5), {"k": 0.1}, {"time_points": torch.arange(4.0)})


def test_missing_parameter(reservoir):
    with pytest.raises(ParameterError):
        reservoir(torch.ones(1, 5), {})


def test_unknown_config_key(reservoir):
    with pytest.raises(ConfigError):
        reservoir(torch.ones(1, 5), {"k": 0.1}, {"solverr": "discrete"})


def test_summary(snow_soil):
    console = Console(record=True, width=200)
    table = snow_soil.summary(console)
    text = console.export_text()
    assert table.row_count == 5
    assert "snow_soil" in text
    assert "partition" in text


def test_failing_node_leaves_healthy_nodes_intact(reservoir):
    with pytest.warns(SolverFailureWarning):
        multi = reservoir(torch.ones(1, 2, 6), {"k": torch.tensor([0.5, float("inf")])})
    healthy = reservoir(torch.ones(1, 6), {"k": 0.5})
    assert torch.equal(multi[:, 0], healthy)
    assert torch.equal(multi[0, 1], torch.zeros(6))
