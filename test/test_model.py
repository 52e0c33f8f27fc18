import io

import pytest
import torch
from rich.console import Console

from conftest import linear_reservoir
from hydrodag import (
    ConfigError,
    ConstructionError,
    ExpHydro,
    GridAggregation,
    HBV,
    HydroFlux,
    HydroModel,
    HydroRoute,
    StateFlux,
    UndeclaredVariableError,
)
from hydrodag.hydrology import HYDROLOGY_MODELS

FLWDIR = [[1, 4, 8], [1, 4, 4], [1, 1, 2]]


def doubling():
    return HydroFlux(["rain"], ["P"], (), lambda v, p: [2.0 * v[0]], name="doubling")


@pytest.fixture
def exphydro_forcing():
    generator = torch.Generator().manual_seed(7)
    prcp = torch.rand(60, generator=generator) * 8.0
    temp = torch.randn(60, generator=generator) * 6.0
    pet = torch.rand(60, generator=generator) * 2.0
    return torch.stack([prcp, temp, pet], dim=0)


def test_exphydro_run(exphydro_forcing):
    model = ExpHydro()
    params = ExpHydro.default_parameters()
    out = model(exphydro_forcing, params, {"initial_state": {"soilwater": 1300.0}})
    assert out.shape == (len(model.variable_names), 60)
    assert bool(torch.isfinite(out).all())
    series = model.as_dict(out)
    assert torch.allclose(series["flow"], series["baseflow"] + series["surfaceflow"])
    assert series["soilwater"][0].item() == pytest.approx(1300.0)


def test_exphydro_multi_node(exphydro_forcing):
    model = ExpHydro()
    params = ExpHydro.default_parameters()
    single = model(exphydro_forcing, params)
    multi = model(exphydro_forcing.unsqueeze(1).repeat(1, 10, 1), params)
    assert multi.shape == (single.shape[0], 10, 60)
    for node in range(10):
        assert torch.equal(multi[:, node], single)


def test_exphydro_declarations():
    model = ExpHydro()
    assert model.input_names == ["P", "T", "Ep"]
    assert model.state_names == ["snowpack", "soilwater"]
    assert model.execution_order == ["surface", "soil"]
    assert set(model.param_names) == set(ExpHydro.default_parameters())
    assert ExpHydro.parameter_bounds()["Smax"] == (100.0, 2000.0)
    assert HYDROLOGY_MODELS["exphydro"] is ExpHydro


def test_components_are_sorted():
    model = HydroModel([linear_reservoir(), doubling()])
    assert model.execution_order == ["doubling", "reservoir"]
    assert model.input_names == ["rain"]
    assert model.variable_names == ["P", "S", "q"]


def test_model_threads_variables():
    model = HydroModel([linear_reservoir(), doubling()])
    rain = torch.tensor([[1.0, 0.0, 0.0, 0.0]])
    out = model(rain, {"k": 0.5})
    assert torch.allclose(out[0], 2.0 * rain[0])
    assert torch.allclose(out[1], torch.tensor([0.0, 2.0, 1.0, 0.5]))


def test_undeclared_input():
    with pytest.raises(UndeclaredVariableError) as info:
        HydroModel([linear_reservoir()], inputs=["rain"])
    assert "P" in str(info.value)


def test_construction_errors():
    with pytest.raises(ConstructionError):
        HydroModel([linear_reservoir(), linear_reservoir()])
    with pytest.raises(ConstructionError):
        HydroModel([linear_reservoir("a"), linear_reservoir("b")])
    with pytest.raises(ConstructionError):
        HydroModel([StateFlux.from_balance("S", ["P"], ["q"])])
    with pytest.raises(ConstructionError):
        HydroModel([])


def test_component_override():
    model = ExpHydro()
    forcing = torch.zeros(3, 5)
    out = model(forcing, ExpHydro.default_parameters(), {"soil": {"initial_state": {"soilwater": 500.0}}})
    series = model.as_dict(out)
    assert series["soilwater"][0].item() == pytest.approx(500.0)
    assert series["snowpack"][0].item() == 0.0


def test_nested_model_override():
    inner = HydroModel([linear_reservoir()], name="inner")
    outer = HydroModel([inner, doubling()], name="outer")
    assert outer.component_names == ["doubling", "inner", "reservoir"]
    out = outer(
        torch.zeros(1, 3),
        {"k": 0.5},
        {"reservoir": {"initial_state": {"S": 4.0}}},
    )
    assert torch.allclose(outer.as_dict(out)["S"], torch.tensor([4.0, 2.0, 1.0]))


def test_component_without_inputs():
    constant = HydroFlux([], ["P"], ["rate"], lambda v, p: [p[0]], name="constant")
    model = HydroModel([linear_reservoir(), constant], inputs=[])
    out = model(torch.zeros(0, 4), {"rate": 1.0, "k": 0.0})
    assert torch.allclose(model.as_dict(out)["S"], torch.arange(4.0))


def test_unknown_config_key():
    with pytest.raises(ConfigError):
        ExpHydro()(torch.zeros(3, 5), ExpHydro.default_parameters(), {"bogus": 1})


def test_summary_lists_execution_order():
    buffer = io.StringIO()
    ExpHydro().summary(Console(file=buffer, width=200))
    text = buffer.getvalue()
    assert "exphydro" in text
    assert "surface" in text and "soil" in text
    assert "Execution Order" in text


def test_hbv_run(exphydro_forcing):
    model = HBV()
    out = model(exphydro_forcing, HBV.default_parameters(), {"initial_state": {"soilwater": 150.0}})
    assert out.shape == (len(model.variable_names), 60)
    assert bool(torch.isfinite(out).all())
    series = model.as_dict(out)
    assert torch.allclose(series["Qt"], series["q0"] + series["q1"] + series["q2"])


def test_hbv_declarations():
    model = HBV()
    assert model.input_names == ["P", "T", "Ep"]
    assert model.state_names == ["snowpack", "meltwater", "soilwater", "suz", "slz"]
    assert model.execution_order == ["split", "snow", "soil", "zone"]
    assert set(model.param_names) == set(HBV.default_parameters())
    assert HBV.parameter_bounds()["FC"] == (50.0, 500.0)
    assert HYDROLOGY_MODELS["hbv"] is HBV


def channel():
    outflow = HydroFlux(["Sc"], ["qout"], ["kc"], lambda v, p: [p[0] * v[0]], name="channel_outflow")
    storage = StateFlux.from_balance("Sc", ["q"], ["qout"])
    grid = GridAggregation(FLWDIR, [(r, c) for r in range(3) for c in range(3)])
    return HydroRoute([outflow], [storage], grid, name="channel")


def test_bucket_feeds_grid_route():
    route = channel()
    model = HydroModel([route, linear_reservoir()])
    assert model.execution_order == ["reservoir", "channel"]
    assert model.input_names == ["P"]
    assert model.variable_names == ["S", "q", "Sc", "qout"]

    prcp = torch.rand(1, 9, 12, dtype=torch.float64, generator=torch.Generator().manual_seed(5))
    params = {"k": torch.tensor([0.2, 0.6], dtype=torch.float64), "kc": 0.4}
    config = {"ptyidx": [0, 1, 0, 1, 0, 1, 0, 1, 0]}
    out = model(prcp, params, config)
    assert out.shape == (4, 9, 12)
    assert torch.equal(out[2:], route(out[1:2], params, config))
