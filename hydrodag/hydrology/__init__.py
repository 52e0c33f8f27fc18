from .base import HydroComponent
from .bucket import HydroBucket
from .flux import HydroFlux, NeuralFlux, StateFlux
from .implements import HBV, ExpHydro
from .model import HydroModel
from .symbol_toolkit import (
    HydroParameter,
    HydroVariable,
    is_parameter,
    parameters,
    step_func,
    variables,
)

HYDROLOGY_MODELS = {
    "exphydro": ExpHydro,
    "hbv": HBV,
}

__all__ = [
    "HydroComponent",
    "HydroFlux",
    "NeuralFlux",
    "StateFlux",
    "HydroBucket",
    "HydroModel",
    "ExpHydro",
    "HBV",
    "HydroParameter",
    "HydroVariable",
    "variables",
    "parameters",
    "is_parameter",
    "step_func",
    "HYDROLOGY_MODELS",
]
