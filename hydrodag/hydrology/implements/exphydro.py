from typing import Dict, Optional, Tuple

from sympy import Max, Min, exp

from ..bucket import HydroBucket
from ..flux import HydroFlux, StateFlux
from ..model import HydroModel
from ..symbol_toolkit import HydroParameter, step_func, variables

T, Ep, P = variables("T Ep P")
snowfall, rainfall, snowpack, melt = variables("snowfall rainfall snowpack melt")
soilwater, evap, baseflow, surfaceflow, flow = variables(
    "soilwater evap baseflow surfaceflow flow"
)

f = HydroParameter("f", bounds=(0.0, 0.1), default=0.0167, description="Baseflow decline rate", unit="mm-1")
Smax = HydroParameter("Smax", bounds=(100.0, 2000.0), default=1709.46, description="Maximum soil moisture storage", unit="mm")
Qmax = HydroParameter("Qmax", bounds=(10.0, 50.0), default=18.47, description="Maximum baseflow", unit="mm/d")
Df = HydroParameter("Df", bounds=(0.0, 5.0), default=2.674, description="Degree-day factor", unit="mm/degree celsius/d")
Tmax = HydroParameter("Tmax", bounds=(0.0, 3.0), default=0.1757, description="Temperature threshold for snowmelt", unit="celsius")
Tmin = HydroParameter("Tmin", bounds=(-3.0, 0.0), default=-2.093, description="Temperature threshold for snowfall", unit="celsius")


class ExpHydro(HydroModel):
    """
    Exp-Hydro: a snow bucket feeding a soil bucket with exponential baseflow.

    Inputs are precipitation ``P``, temperature ``T`` and potential
    evapotranspiration ``Ep``; the soil bucket's ``flow`` is the simulated
    streamflow.
    """

    PARAMETERS = (f, Smax, Qmax, Df, Tmax, Tmin)

    def __init__(self, name: Optional[str] = "exphydro"):
        surface = HydroBucket(
            fluxes=[
                HydroFlux.from_exprs(
                    [snowfall, rainfall],
                    [step_func(Tmin - T) * P, step_func(T - Tmin) * P],
                ),
                HydroFlux.from_exprs(
                    [melt],
                    [step_func(T - Tmax) * step_func(snowpack) * Min(snowpack, Df * (T - Tmax))],
                ),
            ],
            dfluxes=[StateFlux.from_expr(snowpack, snowfall - melt)],
            name="surface",
        )
        soil = HydroBucket(
            fluxes=[
                HydroFlux.from_exprs(
                    [evap], [step_func(soilwater) * Ep * Min(1.0, soilwater / Smax)]
                ),
                HydroFlux.from_exprs(
                    [baseflow],
                    [step_func(soilwater) * Qmax * exp(-f * Max(0.0, Smax - soilwater))],
                ),
                HydroFlux.from_exprs([surfaceflow], [Max(0.0, soilwater - Smax)]),
                HydroFlux.from_exprs([flow], [baseflow + surfaceflow]),
            ],
            dfluxes=[StateFlux.from_expr(soilwater, (rainfall + melt) - (evap + flow))],
            name="soil",
        )
        super().__init__([surface, soil], name=name, inputs=["P", "T", "Ep"])

    @classmethod
    def parameter_bounds(cls) -> Dict[str, Tuple[float, float]]:
        return {p.name: p.get_bounds() for p in cls.PARAMETERS}

    @classmethod
    def default_parameters(cls) -> Dict[str, float]:
        return {p.name: p.get_default() for p in cls.PARAMETERS}
