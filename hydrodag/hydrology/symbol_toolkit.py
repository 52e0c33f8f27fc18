import functools
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import sympy
import torch
import torch.nn as nn
from sympy import Function, Symbol
from sympy.printing.pytorch import TorchPrinter
from sympy.utilities.lambdify import lambdify


class HydroVariable(Symbol):
    """A SymPy symbol naming a forcing, flux or state variable."""

    def __new__(cls, name: str, description: str = "", unit: str = "", **assumptions):
        obj = Symbol.__xnew__(cls, name, **assumptions)
        obj._description = description
        obj._unit = unit
        return obj

    def get_description(self) -> str:
        return self._description

    def get_unit(self) -> str:
        return self._unit


class HydroParameter(Symbol):
    """
    A SymPy symbol naming a model parameter.

    Args:
        name (str): Parameter name, also its key in the parameter container.
        bounds (Tuple[float, float], optional): Physical range of the parameter.
        default (float, optional): Default value.
        description (str): Free text description.
        unit (str): Unit string.
    """

    def __new__(
        cls,
        name: str,
        bounds: Optional[Tuple[float, float]] = None,
        default: Optional[float] = None,
        description: str = "",
        unit: str = "",
        **assumptions,
    ):
        obj = Symbol.__xnew__(cls, name, **assumptions)
        obj._bounds = tuple(bounds) if bounds is not None else None
        obj._default = default
        obj._description = description
        obj._unit = unit
        return obj

    def get_bounds(self) -> Optional[Tuple[float, float]]:
        return self._bounds

    def get_default(self) -> Optional[float]:
        return self._default

    def get_description(self) -> str:
        return self._description

    def get_unit(self) -> str:
        return self._unit


def variables(names: str, **kwargs):
    """``variables("prcp temp pet")`` -> tuple of HydroVariable."""
    return sympy.symbols(names, cls=HydroVariable, **kwargs)


def parameters(names: str, **kwargs):
    """``parameters("k x", bounds=(0, 1))`` -> tuple of HydroParameter."""
    return sympy.symbols(names, cls=HydroParameter, **kwargs)


def is_parameter(symbol) -> bool:
    return isinstance(symbol, HydroParameter)


def step_func(x):
    """Smooth step ``(tanh(5x) + 1) / 2`` usable inside expressions."""
    return (sympy.tanh(5 * x) + 1) * sympy.Rational(1, 2)


# Helper function to ensure inputs to min/max are Tensors
def _to_tensor(val, ref=None):
    if torch.is_tensor(val):
        return val
    if torch.is_tensor(ref):
        return torch.as_tensor(val, dtype=ref.dtype, device=ref.device)
    return torch.as_tensor(val)


def _fold(op: Callable, *args):
    ref = next((a for a in args if torch.is_tensor(a)), None)
    return functools.reduce(op, [_to_tensor(a, ref) for a in args])


_TorchMax = Function("_torch_max")
_TorchMin = Function("_torch_min")

# Custom module for lambdify to handle mixed-type min/max
TORCH_EXTEND_MODULE = {
    "_torch_max": lambda *args: _fold(torch.maximum, *args),
    "_torch_min": lambda *args: _fold(torch.minimum, *args),
}


def create_nn_module_wrapper(model: nn.Module) -> Callable:
    """
    Wraps an nn.Module so that it can be called as a SymPy function of several
    scalar-like arguments: the arguments are stacked on the last axis, passed
    through the module and the trailing axis is squeezed.
    """

    def wrapper(*args: torch.Tensor) -> torch.Tensor:
        if not args:
            raise ValueError("Custom nn.Module function was called with no arguments.")
        ref = next((a for a in args if torch.is_tensor(a)), None)
        inputs = torch.stack([torch.atleast_1d(_to_tensor(a, ref)) for a in args], dim=-1)
        return model(inputs).squeeze(-1)

    return wrapper


def _torch_safe(expr):
    expr = sympy.sympify(expr)
    return expr.replace(sympy.Max, _TorchMax).replace(sympy.Min, _TorchMin)


def free_names(exprs: Sequence) -> Tuple[List[str], List[str]]:
    """Splits the free symbols of ``exprs`` into (variable names, parameter names),
    each in first-appearance order."""
    inputs: List[str] = []
    params: List[str] = []
    for expr in exprs:
        symbols = sorted(sympy.sympify(expr).free_symbols, key=lambda s: s.name)
        for s in symbols:
            target = params if is_parameter(s) else inputs
            if s.name not in target:
                target.append(s.name)
    return inputs, params


def compile_expressions(
    inputs: Sequence[str],
    params: Sequence[str],
    exprs: Sequence,
    nns: Optional[Dict[str, nn.Module]] = None,
) -> Callable:
    """
    Compiles SymPy expressions into ``func(input_values, param_values) -> list``.

    Args:
        inputs: Ordered names of the input variables.
        params: Ordered names of the parameters.
        exprs: One expression per output.
        nns: Optional modules callable inside expressions as undefined
            functions of the same name.

    Returns:
        Callable: A function of two sequences of tensors.
    """
    modules = TORCH_EXTEND_MODULE.copy()
    for func_name, module in (nns or {}).items():
        modules[func_name] = create_nn_module_wrapper(module)
    input_symbols = [Symbol(n) for n in inputs]
    param_symbols = [Symbol(n) for n in params]
    # lambdify arguments are plain symbols
    rename = {}
    for expr in exprs:
        for s in sympy.sympify(expr).free_symbols:
            rename[s] = Symbol(s.name)
    plain_exprs = [_torch_safe(sympy.sympify(e).xreplace(rename)) for e in exprs]
    return lambdify(
        [input_symbols, param_symbols],
        plain_exprs,
        modules=[modules, "torch"],
        printer=TorchPrinter({"strict": False, "allow_unknown_functions": True}),
    )
