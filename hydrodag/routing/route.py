import logging
from typing import Any, Dict, Optional, Sequence

import torch
import torch.nn as nn

from ..config import resolve_time_points
from ..errors import ConstructionError, ShapeError
from ..hydrology.base import HydroComponent, check_unique
from ..hydrology.bucket import collect_names, run_dfluxes, run_fluxes
from ..hydrology.flux import HydroFlux, StateFlux
from ..utils.params import expand_params, expand_states
from ..utils.sort import check_unique_producers, sort_components
from .aggregation import Aggregation

logger = logging.getLogger(__name__)


class HydroRoute(HydroComponent):
    """
    Channel routing with storage over a node topology.

    At every step the fluxes turn the channel states into the node outflow,
    the aggregation projects that outflow onto the downstream nodes, and the
    state fluxes see ``inflow`` as the locally generated flow plus the
    projected upstream outflow.

    Args:
        fluxes (Sequence[HydroFlux]): Compute the outflow from the states; they
            read the generated inflow, not the projected one.
        dfluxes (Sequence[StateFlux]): Channel storage balance.
        aggregation (Aggregation): Grid or graph topology.
        inflow (str, optional): Input variable holding the generated flow.
            Defaults to the single unresolved input.
        outflow (str, optional): Flux output routed downstream. Defaults to
            the single flux output.
        areas (optional): Contributing area of every node in km², a scalar or
            an (N,) array. When given, the generated inflow is converted with
            ``24 * 3600 / (area * 1e6) * 1e3``; nodes with zero area generate
            no inflow.
        name (str, optional): Component name.
    """

    _prefix = "route"

    def __init__(
        self,
        fluxes: Sequence[HydroFlux],
        dfluxes: Sequence[StateFlux],
        aggregation: Aggregation,
        inflow: Optional[str] = None,
        outflow: Optional[str] = None,
        areas: Optional[Any] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        fluxes, dfluxes = list(fluxes), list(dfluxes)
        if not fluxes or not dfluxes:
            raise ConstructionError("A route needs fluxes and state fluxes.")
        self.state_names = [d.state for d in dfluxes]
        check_unique(self.state_names, "state", self.name)
        check_unique_producers(fluxes, owner=f"route '{self.name}'")
        self.fluxes = nn.ModuleList(sort_components(fluxes))
        self.dfluxes = nn.ModuleList(dfluxes)
        self.aggregation = aggregation
        self.output_names = [n for f in self.fluxes for n in f.output_names]
        self.input_names, self.param_names = collect_names(
            self.fluxes, self.dfluxes, set(self.output_names) | set(self.state_names)
        )

        if inflow is None:
            if len(self.input_names) != 1:
                raise ConstructionError(
                    f"Route '{self.name}' has inputs {self.input_names}; pass inflow="
                )
            inflow = self.input_names[0]
        if outflow is None:
            if len(self.output_names) != 1:
                raise ConstructionError(
                    f"Route '{self.name}' has outputs {self.output_names}; pass outflow="
                )
            outflow = self.output_names[0]
        if inflow not in self.input_names:
            raise ConstructionError(
                f"Inflow '{inflow}' is not an input of route '{self.name}' {self.input_names}"
            )
        if outflow not in self.output_names:
            raise ConstructionError(
                f"Outflow '{outflow}' is not an output of route '{self.name}' {self.output_names}"
            )
        self.inflow, self.outflow = inflow, outflow
        self.register_buffer("areas", self._check_areas(areas, aggregation.num_nodes))
        logger.debug(
            "Route '%s': %s -> %s over %d nodes",
            self.name,
            self.outflow,
            self.inflow,
            aggregation.num_nodes,
        )

    def _check_areas(self, areas, num_nodes: int) -> Optional[torch.Tensor]:
        if areas is None:
            return None
        areas = torch.as_tensor(areas, dtype=torch.float64).reshape(-1)
        if areas.numel() == 1:
            areas = areas.expand(num_nodes).clone()
        if areas.shape[0] != num_nodes:
            raise ConstructionError(
                f"Route '{self.name}' has {num_nodes} nodes but {areas.shape[0]} areas"
            )
        if bool((areas < 0).any()) or not bool(torch.isfinite(areas).all()):
            raise ConstructionError(f"Route '{self.name}' areas must be finite and non-negative")
        return areas

    def area_coefficients(self, like: torch.Tensor) -> torch.Tensor:
        """Per-node conversion of the generated inflow; zero where the area is zero."""
        areas = self.areas.to(dtype=like.dtype, device=like.device)
        positive = areas > 0
        safe = torch.where(positive, areas, torch.ones_like(areas))
        return torch.where(positive, 24 * 3600 / (safe * 1e6) * 1e3, torch.zeros_like(areas))

    def _summary_rows(self):
        yield from super()._summary_rows()
        yield "Inflow / Outflow", f"{self.inflow} / {self.outflow}"
        yield "Topology", f"{type(self.aggregation).__name__} ({self.aggregation.num_nodes} nodes)"

    def forward(
        self,
        input: torch.Tensor,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> torch.Tensor:
        """
        Routes a (var, node, time) input.

        Returns:
            torch.Tensor: (n_states + n_outputs, node, time), states first.
        """
        config, num_nodes, ptyidx, styidx = self._node_layout(input, config)
        if num_nodes is None:
            raise ShapeError(f"Route '{self.name}' needs a (var, node, time) input.")
        if num_nodes != self.aggregation.num_nodes:
            raise ShapeError(
                f"Route '{self.name}' has {self.aggregation.num_nodes} nodes, "
                f"input has {num_nodes}"
            )
        if self.areas is not None:
            row = self.input_names.index(self.inflow)
            scaled = input[row] * self.area_coefficients(input).unsqueeze(-1)
            input = torch.cat([input[:row], scaled.unsqueeze(0), input[row + 1 :]], dim=0)
        params = params or {}
        flux_params = [
            expand_params(params, f.param_names, input, num_nodes=num_nodes, ptyidx=ptyidx)
            for f in self.fluxes
        ]
        dflux_params = [
            expand_params(params, d.param_names, input, num_nodes=num_nodes, ptyidx=ptyidx)
            for d in self.dfluxes
        ]
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
            env[self.inflow] = env[self.inflow] + self.aggregation(env[self.outflow])
            return run_dfluxes(self.dfluxes, env, p[1], step_shape)

        trajectory = config["solver"](
            derivative,
            (flux_params, dflux_params),
            initial_state,
            time_points,
            independent_nodes=False,
        )
        env = dict(zip(self.input_names, input.unbind(0)))
        env.update(zip(self.state_names, trajectory.unbind(0)))
        flux_params = [[p.unsqueeze(-1) for p in ps] for ps in flux_params]
        run_fluxes(self.fluxes, env, flux_params, input.shape[1:])
        return torch.stack([env[n] for n in self.variable_names], dim=0)
