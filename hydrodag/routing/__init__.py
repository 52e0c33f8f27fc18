from .aggregation import Aggregation, GraphAggregation, GridAggregation
from .muskingum import MuskingumRoute
from .route import HydroRoute
from .unit_hydrograph import UnitHydrograph

ROUTING_MODELS = {
    "route": HydroRoute,
    "muskingum": MuskingumRoute,
    "unit_hydrograph": UnitHydrograph,
}

__all__ = [
    "Aggregation",
    "GridAggregation",
    "GraphAggregation",
    "HydroRoute",
    "MuskingumRoute",
    "UnitHydrograph",
    "ROUTING_MODELS",
]
