from typing import Any, Dict, Iterable, List, Optional, Tuple

import torch
import torch.nn as nn
from rich.console import Console
from rich.table import Table
from sympy import Symbol

from ..config import normalize_config
from ..errors import ConstructionError, ShapeError
from ..utils.params import check_index


def as_names(names: Any) -> List[str]:
    """Normalizes a name, a symbol or a sequence of either to a list of strings."""
    if names is None:
        return []
    if isinstance(names, (str, Symbol)):
        names = [names]
    return [n if isinstance(n, str) else n.name for n in names]


def check_unique(names: List[str], what: str, owner: str) -> None:
    seen = set()
    for n in names:
        if n in seen:
            raise ConstructionError(f"Duplicated {what} '{n}' in '{owner}'")
        seen.add(n)


class HydroComponent(nn.Module):
    """
    Common interface of fluxes, buckets, routes and models.

    Every component declares ordered ``input_names``, ``state_names``,
    ``output_names`` and ``param_names``; its call returns the rows of
    ``variable_names`` (states first, then outputs).
    """

    _prefix = "component"

    def __init__(self, name: Optional[str] = None):
        super().__init__()
        self._name = name
        self.input_names: List[str] = []
        self.output_names: List[str] = []
        self.state_names: List[str] = []
        self.param_names: List[str] = []

    @property
    def name(self) -> str:
        if self._name:
            return self._name
        return f"{self._prefix}_" + "_".join(self.state_names + self.output_names)

    @property
    def variable_names(self) -> List[str]:
        return self.state_names + self.output_names

    def _node_layout(
        self, input: torch.Tensor, config: Optional[Dict[str, Any]]
    ) -> Tuple[Dict[str, Any], Optional[int], Optional[torch.Tensor], Optional[torch.Tensor]]:
        """Validates the input against the declared inputs and the node index arrays.

        Returns the normalized config, the node count (``None`` for single node
        calls), ``ptyidx`` and ``styidx``.
        """
        config = normalize_config(config)
        if input.dim() not in (2, 3):
            raise ShapeError(
                f"'{self.name}' expects input of shape (var, time) or (var, node, time), "
                f"got {tuple(input.shape)}"
            )
        if input.shape[0] != len(self.input_names):
            raise ShapeError(
                f"'{self.name}' expects {len(self.input_names)} input rows "
                f"{self.input_names}, got {input.shape[0]}"
            )
        if input.dim() == 2:
            return config, None, None, None
        num_nodes = input.shape[1]
        ptyidx, styidx = config["ptyidx"], config["styidx"]
        if ptyidx is not None:
            ptyidx = check_index(ptyidx, num_nodes, "ptyidx", device=input.device)
        if styidx is not None:
            styidx = check_index(styidx, num_nodes, "styidx", device=input.device)
        return config, num_nodes, ptyidx, styidx

    def _summary_rows(self) -> Iterable[Tuple[str, str]]:
        yield "Input Variables", ", ".join(self.input_names) or "None"
        yield "State Variables", ", ".join(self.state_names) or "None"
        yield "Parameter Variables", ", ".join(self.param_names) or "None"
        yield "Output Variables", ", ".join(self.output_names) or "None"

    def summary(self, console: Optional[Console] = None) -> Table:
        """Prints and returns a rich table of the component's declared names."""
        table = Table(
            title=f"{type(self).__name__} Summary: [bold cyan]{self.name}[/bold cyan]",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Category", style="dim", width=20)
        table.add_column("Variables")
        for category, value in self._summary_rows():
            table.add_row(category, value)
        (console or Console()).print(table)
        return table

    def extra_repr(self) -> str:
        return (
            f"name={self.name!r}, inputs={self.input_names}, "
            f"states={self.state_names}, outputs={self.output_names}"
        )
