from typing import Dict, Optional, Tuple

from sympy import Max, Min

from ..bucket import HydroBucket
from ..flux import HydroFlux, StateFlux
from ..model import HydroModel
from ..symbol_toolkit import HydroParameter, step_func, variables

P, Ep, T = variables("P Ep T")
snowpack, meltwater, soilwater, suz, slz = variables("snowpack meltwater soilwater suz slz")
rainfall, snowfall, melt, refreeze, infil = variables("rainfall snowfall melt refreeze infil")
recharge, excess, evap = variables("recharge excess evap")
perc, q0, q1, q2, Qt = variables("perc q0 q1 q2 Qt")

TT = HydroParameter("TT", bounds=(-1.5, 1.2), default=0.0, description="Temperature threshold for snowfall and melt", unit="celsius")
CFMAX = HydroParameter("CFMAX", bounds=(1.0, 8.0), default=3.5, description="Degree-day melt factor", unit="mm/degree celsius/d")
CWH = HydroParameter("CWH", bounds=(0.0, 0.2), default=0.1, description="Water holding capacity of the snowpack", unit="-")
CFR = HydroParameter("CFR", bounds=(0.0, 0.1), default=0.05, description="Refreezing coefficient", unit="-")
FC = HydroParameter("FC", bounds=(50.0, 500.0), default=250.0, description="Field capacity", unit="mm")
LP = HydroParameter("LP", bounds=(0.3, 1.0), default=0.7, description="Soil moisture fraction above which evaporation is potential", unit="-")
BETA = HydroParameter("BETA", bounds=(1.0, 6.0), default=2.5, description="Recharge shape exponent", unit="-")
PPERC = HydroParameter("PPERC", bounds=(0.0, 3.0), default=1.5, description="Maximum percolation", unit="mm/d")
UZL = HydroParameter("UZL", bounds=(0.0, 70.0), default=20.0, description="Upper zone threshold for quick flow", unit="mm")
k0 = HydroParameter("k0", bounds=(0.05, 0.5), default=0.2, description="Quick flow recession", unit="1/d")
k1 = HydroParameter("k1", bounds=(0.01, 0.3), default=0.05, description="Upper zone recession", unit="1/d")
k2 = HydroParameter("k2", bounds=(0.001, 0.15), default=0.01, description="Lower zone recession", unit="1/d")


def _unit_clamp(expr):
    return Min(Max(expr, 0.0), 1.0)


class HBV(HydroModel):
    """
    HBV: precipitation split, then snow, soil moisture and response routines.

    The response routine drains an upper zone (quick flow above ``UZL`` plus
    a linear recession) and a lower zone fed by percolation; ``Qt`` is the
    simulated streamflow.
    """

    PARAMETERS = (TT, CFMAX, CWH, CFR, FC, LP, BETA, PPERC, UZL, k0, k1, k2)

    def __init__(self, name: Optional[str] = "hbv"):
        split = HydroFlux.from_exprs(
            [snowfall, rainfall],
            [step_func(TT - T) * P, step_func(T - TT) * P],
            name="split",
        )
        snow = HydroBucket(
            fluxes=[
                HydroFlux.from_exprs([melt], [Min(snowpack, Max(0.0, T - TT) * CFMAX)]),
                HydroFlux.from_exprs(
                    [refreeze], [Min(Max(TT - T, 0.0) * CFR * CFMAX, meltwater)]
                ),
                HydroFlux.from_exprs([infil], [Max(0.0, meltwater - snowpack * CWH)]),
            ],
            dfluxes=[
                StateFlux.from_expr(snowpack, snowfall + refreeze - melt),
                StateFlux.from_expr(meltwater, melt - refreeze - infil),
            ],
            name="snow",
        )
        soil = HydroBucket(
            fluxes=[
                HydroFlux.from_exprs(
                    [recharge],
                    [(rainfall + infil) * _unit_clamp(Max(soilwater / FC, 0.0) ** BETA)],
                ),
                HydroFlux.from_exprs([excess], [Max(soilwater - FC, 0.0)]),
                HydroFlux.from_exprs([evap], [_unit_clamp(soilwater / (LP * FC)) * Ep]),
            ],
            dfluxes=[
                StateFlux.from_expr(soilwater, rainfall + infil - (recharge + excess + evap))
            ],
            name="soil",
        )
        zone = HydroBucket(
            fluxes=[
                HydroFlux.from_exprs([perc], [Min(Max(suz, 0.0), PPERC)]),
                HydroFlux.from_exprs([q0], [Max(0.0, suz - UZL) * k0]),
                HydroFlux.from_exprs([q1], [suz * k1]),
                HydroFlux.from_exprs([q2], [slz * k2]),
                HydroFlux.from_exprs([Qt], [q0 + q1 + q2]),
            ],
            dfluxes=[
                StateFlux.from_expr(suz, recharge + excess - (perc + q0 + q1)),
                StateFlux.from_expr(slz, perc - q2),
            ],
            name="zone",
        )
        super().__init__([split, snow, soil, zone], name=name, inputs=["P", "T", "Ep"])

    @classmethod
    def parameter_bounds(cls) -> Dict[str, Tuple[float, float]]:
        return {p.name: p.get_bounds() for p in cls.PARAMETERS}

    @classmethod
    def default_parameters(cls) -> Dict[str, float]:
        return {p.name: p.get_default() for p in cls.PARAMETERS}
