import math
from typing import Any, Callable, Dict, Optional, Union

import torch
import torch.nn.functional as F

from ..errors import ConstructionError, ShapeError
from ..hydrology.base import HydroComponent, as_names
from ..utils.params import expand_params


def uh_1_half(t: torch.Tensor, lag: torch.Tensor, exponent: float = 2.5) -> torch.Tensor:
    """S-curve of the GR4J first unit hydrograph, rising over ``lag`` steps."""
    return torch.clamp(t / lag, min=0.0, max=1.0) ** exponent


def uh_2_full(t: torch.Tensor, lag: torch.Tensor, exponent: float = 2.5) -> torch.Tensor:
    """S-curve of the GR4J second unit hydrograph, rising over ``2 * lag`` steps."""
    ratio = torch.clamp(t / lag, min=0.0)
    rising = 0.5 * torch.clamp(ratio, max=1.0) ** exponent
    falling = 1.0 - 0.5 * torch.clamp(2.0 - ratio, min=0.0, max=1.0) ** exponent
    return torch.where(ratio <= 1.0, rising, falling)


UH_SHAPES = {
    "uh_1_half": (uh_1_half, 1.0),
    "uh_2_full": (uh_2_full, 2.0),
}


class UnitHydrograph(HydroComponent):
    """
    Lags a flow series by convolution with a unit hydrograph.

    The ordinates are differences of an S-curve, ``ss(i) - ss(i - 1)`` for
    ``i = 1 .. K``, where ``K`` covers the base time of the largest lag in
    the call; the routed flow is the causal convolution of the inflow with
    the ordinates of its node.

    Args:
        inflow: Input variable.
        outflow: Output variable.
        lag_param: Parameter holding the lag (in time steps).
        shape: ``"uh_1_half"``, ``"uh_2_full"`` or a callable
            ``ss(t, lag) -> tensor``; callables use a base time of ``lag``
            unless ``base_factor`` says otherwise.
        exponent: Exponent of the built-in S-curves.
        base_factor: Base time in multiples of the lag, for callable shapes.
    """

    _prefix = "uh"

    def __init__(
        self,
        inflow,
        outflow,
        lag_param,
        shape: Union[str, Callable] = "uh_1_half",
        exponent: float = 2.5,
        base_factor: float = 1.0,
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        self.input_names = as_names(inflow)
        self.output_names = as_names(outflow)
        self.param_names = as_names(lag_param)
        if len(self.input_names) != 1 or len(self.output_names) != 1 or len(self.param_names) != 1:
            raise ConstructionError("A unit hydrograph has one inflow, one outflow and one lag.")
        if isinstance(shape, str):
            try:
                curve, base_factor = UH_SHAPES[shape]
            except KeyError:
                raise ConstructionError(
                    f"Unknown unit hydrograph shape '{shape}', available: {sorted(UH_SHAPES)}"
                ) from None
            self.s_curve = lambda t, lag: curve(t, lag, exponent)
            self.shape = shape
        elif callable(shape):
            self.s_curve = shape
            self.shape = getattr(shape, "__name__", "custom")
        else:
            raise ConstructionError(f"Unsupported unit hydrograph shape: {shape!r}")
        self.base_factor = base_factor

    def ordinates(self, lag: torch.Tensor) -> torch.Tensor:
        """Ordinates of shape (K, nodes) for a 1-D tensor of lags."""
        if bool((lag <= 0).any()):
            raise ShapeError(f"Unit hydrograph lag must be positive, got {lag.tolist()}")
        length = max(1, math.ceil(float(lag.detach().max()) * self.base_factor))
        steps = torch.arange(0, length + 1, dtype=lag.dtype, device=lag.device).unsqueeze(-1)
        curve = self.s_curve(steps, lag.unsqueeze(0))
        return curve[1:] - curve[:-1]

    def forward(
        self,
        input: torch.Tensor,
        params: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> torch.Tensor:
        """
        Routes a (1, time) or (1, node, time) input.

        Returns:
            torch.Tensor: Same shape as the input, holding the lagged flow.
        """
        config, num_nodes, ptyidx, _ = self._node_layout(input, config)
        (lag,) = expand_params(
            params or {}, self.param_names, input, num_nodes=num_nodes, ptyidx=ptyidx
        )
        flow = input[0] if num_nodes is not None else input
        lag = lag.reshape(-1)
        uh = self.ordinates(lag)
        kernel_size, channels = uh.shape
        # conv1d computes a cross-correlation, hence the flipped kernel
        weight = torch.flip(uh.T, dims=[-1]).unsqueeze(1)
        padded = F.pad(flow.unsqueeze(0), (kernel_size - 1, 0))
        routed = F.conv1d(padded, weight, groups=channels)
        return routed.reshape(input.shape)
