import pytest
import torch

from hydrodag import HydroBucket, HydroFlux, StateFlux


def linear_reservoir(name="reservoir"):
    """S' = P - k S, q = k S."""
    outflow = HydroFlux(["S"], ["q"], ["k"], lambda v, p: [p[0] * v[0]], name=f"{name}_outflow")
    storage = StateFlux.from_balance("S", ["P"], ["q"])
    return HydroBucket([outflow], [storage], name=name)


def snow_soil_bucket():
    """Two states, three forcings, only exactly rounded arithmetic."""

    def partition(v, p):
        prcp, temp = v
        cold = temp <= p[0]
        return [torch.where(cold, prcp, torch.zeros_like(prcp)), torch.where(cold, torch.zeros_like(prcp), prcp)]

    def snowmelt(v, p):
        snow, temp = v
        return [torch.minimum(snow, p[0] * torch.clamp(temp - p[1], min=0.0))]

    def evaporation(v, p):
        soil, pet = v
        return [pet * torch.clamp(soil / p[0], max=1.0)]

    def runoff(v, p):
        return [p[0] * v[0]]

    fluxes = [
        HydroFlux(["P", "T"], ["snowfall", "rainfall"], ["tmin"], partition, name="partition"),
        HydroFlux(["snow", "T"], ["melt"], ["ddf", "tmax"], snowmelt, name="snowmelt"),
        HydroFlux(["soil", "Ep"], ["evap"], ["smax"], evaporation, name="evaporation"),
        HydroFlux(["soil"], ["q"], ["k"], runoff, name="runoff"),
    ]
    dfluxes = [
        StateFlux.from_balance("snow", ["snowfall"], ["melt"]),
        StateFlux.from_balance("soil", ["rainfall", "melt"], ["evap", "q"]),
    ]
    return HydroBucket(fluxes, dfluxes, name="snow_soil")


SNOW_SOIL_PARAMS = {"tmin": 0.0, "ddf": 2.0, "tmax": 1.0, "smax": 150.0, "k": 0.05}


@pytest.fixture
def reservoir():
    return linear_reservoir()


@pytest.fixture
def snow_soil():
    return snow_soil_bucket()


@pytest.fixture
def forcing():
    """(P, T, Ep) x 100 steps."""
    generator = torch.Generator().manual_seed(42)
    prcp = torch.rand(100, generator=generator) * 10.0
    temp = torch.randn(100, generator=generator) * 5.0 + 2.0
    pet = torch.rand(100, generator=generator) * 3.0
    return torch.stack([prcp, temp, pet], dim=0)
