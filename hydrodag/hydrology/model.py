import logging
from typing import Any, Dict, List, Optional, Sequence

import torch
import torch.nn as nn

from ..errors import ConstructionError, UndeclaredVariableError
from ..utils.sort import check_unique_producers, sort_components
from .base import HydroComponent, as_names, check_unique
from .flux import StateFlux

logger = logging.getLogger(__name__)


class HydroModel(HydroComponent):
    """
    A watershed model composed of fluxes, buckets, routes and nested models.

    Components are ordered so that every producer runs before its consumers.
    The call threads one environment of named series through the components
    and returns the rows of every component's ``variable_names`` stacked in
    execution order.

    Args:
        components (Sequence[HydroComponent]): Components in any order.
        name (str, optional): Model name.
        inputs (Sequence[str], optional): Declared forcing names, also the row
            order of the model input. When given, any component input that is
            neither declared nor produced raises ``UndeclaredVariableError``.
            Otherwise the inputs are the unresolved component inputs in
            first-appearance order.
    """

    _prefix = "model"

    def __init__(
        self,
        components: Sequence[HydroComponent],
        name: Optional[str] = None,
        inputs: Optional[Sequence] = None,
    ):
        super().__init__(name=name)
        components = list(components)
        if not components:
            raise ConstructionError("A model needs at least one component.")
        for c in components:
            if isinstance(c, StateFlux) or not isinstance(c, HydroComponent):
                raise ConstructionError(
                    f"Cannot add {type(c).__name__} to a model; wrap state fluxes in a bucket."
                )
        check_unique([c.name for c in components], "component name", self.name)
        produced = check_unique_producers(components, owner=f"model '{self.name}'")
        self.components = nn.ModuleList(sort_components(components))

        unresolved: List[str] = []
        for c in self.components:
            for n in c.input_names:
                if n not in produced and n not in unresolved:
                    unresolved.append(n)
        if inputs is not None:
            declared = as_names(inputs)
            check_unique(declared, "input", self.name)
            for c in self.components:
                missing = [n for n in c.input_names if n not in produced and n not in declared]
                if missing:
                    raise UndeclaredVariableError(c.name, missing)
            self.input_names = declared
        else:
            self.input_names = unresolved

        self.state_names = [n for c in self.components for n in c.state_names]
        self.output_names = [n for c in self.components for n in c.output_names]
        self.param_names = []
        for c in self.components:
            self.param_names += [n for n in c.param_names if n not in self.param_names]
        logger.debug(
            "Model '%s' execution order: %s", self.name, " -> ".join(self.execution_order)
        )

    @property
    def variable_names(self) -> List[str]:
        return [n for c in self.components for n in c.variable_names]

    @property
    def execution_order(self) -> List[str]:
        return [c.name for c in self.components]

    @property
    def component_names(self) -> List[str]:
        """Names of all components, nested models included."""
        names = []
        for c in self.components:
            names.append(c.name)
            if isinstance(c, HydroModel):
                names += c.component_names
        return names

    def _summary_rows(self):
        yield "Input Variables", ", ".join(self.input_names) or "None"
        yield "State Variables", ", ".join(self.state_names) or "None"
        yield "Parameter Variables", ", ".join(self.param_names) or "None"
        yield "Output Variables", ", ".join(self.output_names) or "None"
        yield "[dim]Execution Order[/dim]", f"[dim]{' → '.join(self.execution_order)}[/dim]"

    def _component_config(self, component, shared, overrides) -> Dict[str, Any]:
        config = dict(shared)
        config.update(overrides.get(component.name, {}))
        if isinstance(component, HydroModel):
            nested = set(component.component_names)
            config.update({k: v for k, v in overrides.items() if k in nested})
        return config

    def forward(
        self,
        input: torch.Tensor,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> torch.Tensor:
        """
        Runs every component in execution order.

        Args:
            input (torch.Tensor): (var, time) or (var, node, time) forcing, rows
                ordered as ``input_names``.
            params (dict): Shared parameter container.
            config (dict): Run configuration shared by all components; a key
                equal to a component name holds overrides for that component.

        Returns:
            torch.Tensor: Rows of ``variable_names``, with the input's trailing shape.
        """
        config = dict(config or {})
        names = set(self.component_names)
        overrides = {k: config.pop(k) for k in list(config) if k in names}
        self._node_layout(input, config)
        params = params or {}

        env: Dict[str, torch.Tensor] = dict(zip(self.input_names, input.unbind(0)))
        outputs = []
        for component in self.components:
            if component.input_names:
                component_input = torch.stack([env[n] for n in component.input_names], dim=0)
            else:
                component_input = input.new_zeros((0, *input.shape[1:]))
            component_config = self._component_config(component, config, overrides)
            output = component(component_input, params, component_config)
            env.update(zip(component.variable_names, output.unbind(0)))
            outputs.append(output)
        return torch.cat(outputs, dim=0)

    def as_dict(self, output: torch.Tensor) -> Dict[str, torch.Tensor]:
        """Splits a model output into ``{variable name: series}``."""
        return dict(zip(self.variable_names, output.unbind(0)))
