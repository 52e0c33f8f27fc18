import logging
from typing import Any, Dict, List, Optional, Sequence

import torch
import torch.nn as nn

from ..config import resolve_time_points
from ..errors import ConstructionError
from ..utils.params import expand_params, expand_states
from ..utils.sort import check_unique_producers, sort_components
from .base import HydroComponent, check_unique
from .flux import HydroFlux, StateFlux

logger = logging.getLogger(__name__)


def collect_names(fluxes: Sequence, dfluxes: Sequence, produced: set):
    """Unresolved inputs and parameters of a flux set, in first-appearance order."""
    inputs: List[str] = []
    params: List[str] = []
    for flux in list(fluxes) + list(dfluxes):
        for n in flux.input_names:
            if n not in produced and n not in inputs:
                inputs.append(n)
        for n in flux.param_names:
            if n not in params:
                params.append(n)
    return inputs, params


def run_fluxes(
    fluxes: Sequence[HydroFlux],
    env: Dict[str, torch.Tensor],
    flux_params: Sequence[List[torch.Tensor]],
    shape,
) -> None:
    """Evaluates ``fluxes`` in order, writing their outputs into ``env``."""
    for flux, p in zip(fluxes, flux_params):
        outputs = flux.compute([env[n] for n in flux.input_names], p, shape=shape)
        env.update(zip(flux.output_names, outputs))


def run_dfluxes(
    dfluxes: Sequence[StateFlux],
    env: Dict[str, torch.Tensor],
    dflux_params: Sequence[List[torch.Tensor]],
    shape,
) -> torch.Tensor:
    return torch.stack(
        [
            d.compute([env[n] for n in d.input_names], p, shape=shape)
            for d, p in zip(dfluxes, dflux_params)
        ],
        dim=0,
    )


class HydroBucket(HydroComponent):
    """
    A storage compartment made of fluxes and the state fluxes that integrate
    its states.

    Fluxes are sorted once at construction. Calling the bucket solves the
    states with the configured solver, then evaluates every flux over the
    whole series against the solved trajectory.

    Args:
        fluxes (Sequence[HydroFlux]): Instantaneous fluxes, in any order.
        dfluxes (Sequence[StateFlux]): One state flux per state.
        name (str, optional): Component name.
    """

    _prefix = "bucket"

    def __init__(
        self,
        fluxes: Sequence[HydroFlux],
        dfluxes: Sequence[StateFlux] = (),
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        fluxes, dfluxes = list(fluxes), list(dfluxes)
        for f in fluxes:
            if not isinstance(f, HydroFlux):
                raise ConstructionError(f"Bucket fluxes must be HydroFlux, got {type(f).__name__}")
        for d in dfluxes:
            if not isinstance(d, StateFlux):
                raise ConstructionError(f"Bucket dfluxes must be StateFlux, got {type(d).__name__}")
        if not fluxes and not dfluxes:
            raise ConstructionError("A bucket needs at least one flux or state flux.")

        self.state_names = [d.state for d in dfluxes]
        check_unique(self.state_names, "state", self.name)
        producers = check_unique_producers(fluxes, owner=f"bucket '{self.name}'")
        clash = [s for s in self.state_names if s in producers]
        if clash:
            raise ConstructionError(
                f"States {clash} of bucket '{self.name}' are also flux outputs"
            )

        self.fluxes = nn.ModuleList(sort_components(fluxes))
        self.dfluxes = nn.ModuleList(dfluxes)
        self.output_names = [n for f in self.fluxes for n in f.output_names]
        self.input_names, self.param_names = collect_names(
            self.fluxes, self.dfluxes, set(self.output_names) | set(self.state_names)
        )
        logger.debug(
            "Bucket '%s': inputs=%s states=%s outputs=%s",
            self.name,
            self.input_names,
            self.state_names,
            self.output_names,
        )

    @property
    def execution_order(self) -> List[str]:
        return [f.name for f in self.fluxes]

    def _summary_rows(self):
        yield from super()._summary_rows()
        yield "[dim]Execution Order[/dim]", f"[dim]{' → '.join(self.execution_order)}[/dim]"

    def _expand(self, components, params, like, num_nodes, ptyidx):
        return [
            expand_params(params, c.param_names, like, num_nodes=num_nodes, ptyidx=ptyidx)
            for c in components
        ]

    def forward(
        self,
        input: torch.Tensor,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> torch.Tensor:
        """
        Runs the bucket over a forcing series.

        Args:
            input (torch.Tensor): Forcing of shape (var, time) or (var, node, time),
                rows ordered as ``input_names``.
            params (dict): Parameter name -> scalar or per-type vector.
            config (dict): Run configuration, see ``hydrodag.config``.

        Returns:
            torch.Tensor: (n_states + n_outputs, [node,] time), states first.
        """
        config, num_nodes, ptyidx, styidx = self._node_layout(input, config)
        params = params or {}
        flux_params = self._expand(self.fluxes, params, input, num_nodes, ptyidx)
        dflux_params = self._expand(self.dfluxes, params, input, num_nodes, ptyidx)

        env: Dict[str, torch.Tensor] = dict(zip(self.input_names, input.unbind(0)))
        if self.state_names:
            trajectory = self._solve(
                input, config, flux_params, dflux_params, num_nodes, styidx
            )
            env.update(zip(self.state_names, trajectory.unbind(0)))

        if num_nodes is not None:
            flux_params = [[p.unsqueeze(-1) for p in ps] for ps in flux_params]
        run_fluxes(self.fluxes, env, flux_params, input.shape[1:])
        return torch.stack([env[n] for n in self.variable_names], dim=0)

    def _solve(self, input, config, flux_params, dflux_params, num_nodes, styidx):
        time_points = resolve_time_points(config, input.shape[-1], input)
        interpolation = config["interpolation"](input, time_points)
        initial_state = expand_states(
            config["initial_state"], self.state_names, input, num_nodes, styidx
        )
        step_shape = input.shape[1:-1]

        def derivative(state, p, t):
            forcing = interpolation(t)
            env = dict(zip(self.input_names, forcing.unbind(0)))
            env.update(zip(self.state_names, state.unbind(0)))
            run_fluxes(self.fluxes, env, p[0], step_shape)
            return run_dfluxes(self.dfluxes, env, p[1], step_shape)

        return config["solver"](
            derivative, (flux_params, dflux_params), initial_state, time_points
        )
