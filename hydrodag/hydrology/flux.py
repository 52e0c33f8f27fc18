from typing import Any, Callable, Dict, List, Optional, Sequence

import torch
import torch.nn as nn

from ..config import normalize_config
from ..errors import ArityError, ConstructionError, ShapeError
from ..utils.params import expand_params
from .base import HydroComponent, as_names, check_unique
from .symbol_toolkit import compile_expressions, free_names


def _broadcast_shape(tensors: Sequence[torch.Tensor], shape=None) -> torch.Size:
    shapes = [t.shape for t in tensors]
    if shape is not None:
        shapes.append(torch.Size(shape))
    return torch.broadcast_shapes(*shapes) if shapes else torch.Size()


def _reference(tensors: Sequence[torch.Tensor]) -> Optional[torch.Tensor]:
    return next((t for t in tensors if torch.is_tensor(t)), None)


def _fit(value, shape, ref: Optional[torch.Tensor]) -> torch.Tensor:
    """Casts a callable result to a tensor of the call's broadcast shape."""
    if ref is not None:
        value = torch.as_tensor(value, dtype=ref.dtype, device=ref.device)
    else:
        value = torch.as_tensor(value, dtype=torch.get_default_dtype())
    if value.shape != shape:
        value = torch.broadcast_to(value, shape)
    return value


class HydroFlux(HydroComponent):
    """
    A pure mapping from named inputs and parameters to named outputs.

    Args:
        inputs: Ordered input variable names.
        outputs: Ordered output variable names.
        params: Ordered parameter names, looked up in the parameter container.
        func: ``func(input_values, param_values) -> sequence`` with exactly one
            item per output. Values are tensors of any common broadcastable
            shape, so the same callable serves one sample or a whole
            (node, time) block.
        name: Optional component name.
        probe: Call ``func`` once on unit values to check its arity.

    Raises:
        ConstructionError: Empty or duplicated outputs, or an output that is
            also an input.
        ArityError: ``func`` does not return one value per output.
    """

    _prefix = "flux"

    def __init__(
        self,
        inputs: Sequence,
        outputs: Sequence,
        params: Sequence = (),
        func: Optional[Callable] = None,
        name: Optional[str] = None,
        probe: bool = True,
    ):
        super().__init__(name=name)
        self.input_names = as_names(inputs)
        self.output_names = as_names(outputs)
        self.param_names = as_names(params)
        if not self.output_names:
            raise ConstructionError("A flux must declare at least one output.")
        if func is None:
            raise ConstructionError(f"Flux '{self.name}' has no function.")
        check_unique(self.input_names, "input", self.name)
        check_unique(self.output_names, "output", self.name)
        check_unique(self.param_names, "parameter", self.name)
        overlap = [n for n in self.output_names if n in self.input_names]
        if overlap:
            raise ConstructionError(
                f"Flux '{self.name}' consumes its own outputs {overlap}"
            )
        self.func = func
        if probe:
            self._probe()

    def _probe(self) -> None:
        ones = [torch.ones(1) for _ in self.input_names]
        pones = [torch.ones(1) for _ in self.param_names]
        self._check_arity(self.func(ones, pones))

    def _check_arity(self, result) -> None:
        if not isinstance(result, (list, tuple)):
            raise ArityError(
                f"Flux '{self.name}' must return a sequence of {len(self.output_names)} "
                f"values, got {type(result).__name__}"
            )
        if len(result) != len(self.output_names):
            raise ArityError(
                f"Flux '{self.name}' returned {len(result)} values for "
                f"{len(self.output_names)} outputs {self.output_names}"
            )

    @classmethod
    def from_exprs(
        cls,
        outputs: Sequence,
        exprs: Sequence,
        name: Optional[str] = None,
        nns: Optional[Dict[str, nn.Module]] = None,
    ) -> "HydroFlux":
        """Builds a flux from SymPy expressions; inputs and parameters are
        read from the expressions' free symbols."""
        if not isinstance(exprs, (list, tuple)):
            exprs = [exprs]
        inputs, params = free_names(exprs)
        func = compile_expressions(inputs, params, exprs, nns=nns)
        flux = cls(inputs, outputs, params, func, name=name)
        if nns:
            flux.nns = nn.ModuleDict(nns)
        return flux

    def compute(
        self,
        values: Sequence[torch.Tensor],
        params: Sequence[torch.Tensor],
        shape=None,
    ) -> List[torch.Tensor]:
        """Evaluates the flux on aligned tensors, one per input and parameter."""
        values, params = list(values), list(params)
        result = self.func(values, params)
        self._check_arity(result)
        target = _broadcast_shape(values + params, shape)
        ref = _reference(values + params)
        return [_fit(r, target, ref) for r in result]

    def forward(
        self,
        input: torch.Tensor,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> torch.Tensor:
        """
        Evaluates the flux over a (var,), (var, time) or (var, node, time) input.

        Returns:
            torch.Tensor: ``len(output_names)`` rows with the trailing shape of the input.
        """
        params = params or {}
        if input.dim() == 1:
            if input.shape[0] != len(self.input_names):
                raise ShapeError(
                    f"'{self.name}' expects {len(self.input_names)} inputs, got {input.shape[0]}"
                )
            config = normalize_config(config)
            param_values = expand_params(params, self.param_names, input)
        else:
            config, num_nodes, ptyidx, _ = self._node_layout(input, config)
            param_values = expand_params(
                params, self.param_names, input, num_nodes=num_nodes, ptyidx=ptyidx
            )
            if num_nodes is not None:
                param_values = [p.unsqueeze(-1) for p in param_values]
        outputs = self.compute(input.unbind(0), param_values, shape=input.shape[1:])
        return torch.stack(outputs, dim=0)


class NeuralFlux(HydroFlux):
    """
    A flux computed by a neural network.

    The module maps ``(..., len(inputs))`` to ``(..., len(outputs))``. Its
    weights are the module's own parameters and never looked up in the
    parameter container.
    """

    _prefix = "nnflux"

    def __init__(
        self,
        inputs: Sequence,
        outputs: Sequence,
        module: nn.Module,
        name: Optional[str] = None,
    ):
        super().__init__(inputs, outputs, (), func=self._apply_module, name=name, probe=False)
        if not self.input_names:
            raise ConstructionError(f"Neural flux '{self.name}' needs at least one input.")
        self.module = module
        was_training = module.training
        module.eval()
        with torch.no_grad():
            self._probe()
        module.train(was_training)

    @property
    def nn_param_names(self) -> List[str]:
        return [n for n, _ in self.module.named_parameters()]

    def _apply_module(self, values, params):
        ref = _reference(values)
        weight = next(self.module.parameters(), ref)
        values = torch.broadcast_tensors(*values)
        output = self.module(torch.stack(values, dim=-1).to(dtype=weight.dtype))
        return list(output.to(dtype=ref.dtype).unbind(-1))

    def _summary_rows(self):
        yield from super()._summary_rows()
        yield "Network Parameters", ", ".join(self.nn_param_names) or "None"


class StateFlux(HydroComponent):
    """
    Increment (discrete) or derivative (continuous) of a single state.

    Args:
        state: Name of the state owned by this flux.
        inputs: Names of the fluxes, forcings and states the balance reads.
        params: Parameter names.
        func: ``func(input_values, param_values) -> tensor``.
    """

    _prefix = "dflux"

    def __init__(
        self,
        state,
        inputs: Sequence,
        params: Sequence = (),
        func: Optional[Callable] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        self.state_names = as_names(state)
        if len(self.state_names) != 1:
            raise ConstructionError(
                f"A state flux owns exactly one state, got {self.state_names}"
            )
        if func is None:
            raise ConstructionError(f"State flux '{self.name}' has no function.")
        self.input_names = as_names(inputs)
        self.param_names = as_names(params)
        check_unique(self.input_names, "input", self.name)
        check_unique(self.param_names, "parameter", self.name)
        self.func = func

    @property
    def state(self) -> str:
        return self.state_names[0]

    @classmethod
    def from_balance(
        cls,
        state,
        inflows: Sequence = (),
        outflows: Sequence = (),
        name: Optional[str] = None,
    ) -> "StateFlux":
        """``d state = sum(inflows) - sum(outflows)``."""
        inflows, outflows = as_names(inflows), as_names(outflows)
        n_in = len(inflows)

        def balance(values, params):
            return sum(values[:n_in], 0.0) - sum(values[n_in:], 0.0)

        return cls(state, inflows + outflows, (), balance, name=name)

    @classmethod
    def from_expr(cls, state, expr, name: Optional[str] = None) -> "StateFlux":
        inputs, params = free_names([expr])
        compiled = compile_expressions(inputs, params, [expr])

        def func(values, param_values):
            return compiled(values, param_values)[0]

        return cls(state, inputs, params, func, name=name)

    def compute(
        self,
        values: Sequence[torch.Tensor],
        params: Sequence[torch.Tensor],
        shape=None,
    ) -> torch.Tensor:
        values, params = list(values), list(params)
        result = self.func(values, params)
        if isinstance(result, (list, tuple)):
            if len(result) != 1:
                raise ArityError(
                    f"State flux '{self.name}' must return one value, got {len(result)}"
                )
            result = result[0]
        target = _broadcast_shape(values + params, shape)
        return _fit(result, target, _reference(values + params))

    def forward(self, *args, **kwargs):
        raise TypeError(
            f"State flux '{self.name}' is evaluated by a bucket or route, not called directly."
        )

    def _summary_rows(self):
        yield "State Variable", self.state
        yield "Input Variables", ", ".join(self.input_names) or "None"
        yield "Parameter Variables", ", ".join(self.param_names) or "None"
