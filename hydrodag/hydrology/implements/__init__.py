from .exphydro import ExpHydro
from .hbv import HBV

__all__ = ["ExpHydro", "HBV"]
