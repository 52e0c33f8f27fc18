from .config import DEFAULT_CONFIG, normalize_config
from .errors import (
    ArityError,
    ConfigError,
    ConstructionError,
    DependencyCycleError,
    HydroError,
    ParameterError,
    ShapeError,
    SolverError,
    SolverFailureWarning,
    TopologyError,
    UndeclaredVariableError,
)
from .hydrology import (
    HBV,
    ExpHydro,
    HydroBucket,
    HydroFlux,
    HydroModel,
    HydroParameter,
    HydroVariable,
    NeuralFlux,
    StateFlux,
    parameters,
    variables,
)
from .routing import (
    GraphAggregation,
    GridAggregation,
    HydroRoute,
    MuskingumRoute,
    UnitHydrograph,
)
from .solvers import ContinuousSolver, DiscreteSolver

__version__ = "0.1.0"
