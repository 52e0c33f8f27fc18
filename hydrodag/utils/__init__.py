from .interpolation import INTERPOLATIONS, DirectInterpolation, LinearInterpolation
from .metrics import KGELoss, LogNSELoss, NSELoss, kge, nse, rmse
from .sort import sort_components

__all__ = [
    "INTERPOLATIONS",
    "DirectInterpolation",
    "LinearInterpolation",
    "NSELoss",
    "LogNSELoss",
    "KGELoss",
    "nse",
    "kge",
    "rmse",
    "sort_components",
]
