import logging
from typing import Any, Dict, List, Sequence, Tuple, Union

import networkx as nx
import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from ..errors import TopologyError

logger = logging.getLogger(__name__)

# D8 code -> (row offset, column offset) of the receiving cell
D8_OFFSETS: Dict[int, Tuple[int, int]] = {
    1: (0, 1),  # E
    2: (1, 1),  # SE
    4: (1, 0),  # S
    8: (1, -1),  # SW
    16: (0, -1),  # W
    32: (-1, -1),  # NW
    64: (-1, 0),  # N
    128: (-1, 1),  # NE
}


def _check_acyclic(graph: nx.DiGraph, what: str) -> None:
    if nx.number_of_selfloops(graph) > 0:
        node = next(nx.selfloop_edges(graph))[0]
        raise TopologyError(f"{what} has a self loop at node {node!r}")
    if not nx.is_directed_acyclic_graph(graph):
        cycle = [u for u, _ in nx.find_cycle(graph)]
        raise TopologyError(f"{what} contains a cycle: {' -> '.join(map(str, cycle))}")


class Aggregation(nn.Module):
    """
    Projects per-node outflow onto the inflow of the receiving nodes.

    ``__call__(outflow)`` takes a tensor whose first axis is the node axis and
    returns a tensor of the same shape.
    """

    num_nodes: int

    @property
    def adjacency(self) -> torch.Tensor:
        """(N, N) matrix with ``A[i, j] = 1`` when node i drains into node j."""
        raise NotImplementedError

    def graph(self) -> nx.DiGraph:
        """The equivalent directed graph over node indices."""
        adjacency = self.adjacency.detach().cpu().numpy()
        return nx.from_numpy_array(adjacency, create_using=nx.DiGraph)


class GridAggregation(Aggregation):
    """
    D8 flow-direction routing on a regular grid.

    Each cell's outflow is moved one cell along its direction code (``1`` E,
    ``2`` SE, ``4`` S, ``8`` SW, ``16`` W, ``32`` NW, ``64`` N, ``128`` NE;
    ``0`` means no outflow). Flow leaving the grid or reaching a cell that is
    not a node is dropped.

    Args:
        flwdir: (rows, cols) integer direction codes.
        positions: One 0-based (row, col) pair per node.

    Raises:
        TopologyError: Unknown codes, positions outside the grid or duplicated,
            or drainage cycles between nodes.
    """

    def __init__(self, flwdir: Any, positions: Sequence[Sequence[int]]):
        super().__init__()
        flwdir = torch.as_tensor(np.asarray(flwdir), dtype=torch.long)
        if flwdir.dim() != 2:
            raise TopologyError(f"flwdir must be 2-D, got shape {tuple(flwdir.shape)}")
        valid = torch.tensor([0] + list(D8_OFFSETS))
        invalid = sorted(set(flwdir[~torch.isin(flwdir, valid)].tolist()))
        if invalid:
            raise TopologyError(f"Invalid D8 direction codes: {invalid}")

        positions = torch.as_tensor(np.asarray(positions), dtype=torch.long).reshape(-1, 2)
        rows, cols = flwdir.shape
        if positions.shape[0] == 0:
            raise TopologyError("A grid aggregation needs at least one node position.")
        out_of_grid = (
            (positions[:, 0] < 0)
            | (positions[:, 0] >= rows)
            | (positions[:, 1] < 0)
            | (positions[:, 1] >= cols)
        )
        if bool(out_of_grid.any()):
            raise TopologyError(
                f"Node positions outside the {rows}x{cols} grid: "
                f"{positions[out_of_grid].tolist()}"
            )
        flat_index = positions[:, 0] * cols + positions[:, 1]
        if torch.unique(flat_index).shape[0] != flat_index.shape[0]:
            raise TopologyError("Node positions must be unique.")

        self.num_nodes = positions.shape[0]
        self.shape = (rows, cols)
        self.codes: List[int] = [c for c in D8_OFFSETS if bool((flwdir == c).any())]
        self.register_buffer("flwdir", flwdir)
        self.register_buffer("positions", positions)
        self.register_buffer("flat_index", flat_index)
        self._downstream = self._build_downstream()
        _check_acyclic(self.graph(), "Flow direction grid")

    def _build_downstream(self) -> List[int]:
        node_at = {tuple(p): k for k, p in enumerate(self.positions.tolist())}
        downstream = []
        for r, c in self.positions.tolist():
            code = int(self.flwdir[r, c])
            if code == 0:
                downstream.append(-1)
                continue
            dr, dc = D8_OFFSETS[code]
            downstream.append(node_at.get((r + dr, c + dc), -1))
        return downstream

    @property
    def adjacency(self) -> torch.Tensor:
        adjacency = torch.zeros(self.num_nodes, self.num_nodes)
        for i, j in enumerate(self._downstream):
            if j >= 0:
                adjacency[i, j] = 1.0
        return adjacency

    def forward(self, outflow: torch.Tensor) -> torch.Tensor:
        rows, cols = self.shape
        values = outflow.movedim(0, -1)
        rest = values.shape[:-1]
        grid = torch.zeros(
            (*rest, rows * cols), dtype=outflow.dtype, device=outflow.device
        ).index_add(len(rest), self.flat_index, values)
        grid = grid.reshape(*rest, rows, cols)
        routed = torch.zeros_like(grid)
        for code in self.codes:
            dr, dc = D8_OFFSETS[code]
            masked = torch.where(self.flwdir == code, grid, torch.zeros_like(grid))
            padded = F.pad(masked, (1 + dc, 1 - dc, 1 + dr, 1 - dr))
            routed = routed + padded[..., 1 : rows + 1, 1 : cols + 1]
        routed = routed.reshape(*rest, rows * cols)[..., self.flat_index]
        return routed.movedim(-1, 0)

    def extra_repr(self) -> str:
        return f"shape={self.shape}, num_nodes={self.num_nodes}"


class GraphAggregation(Aggregation):
    """
    Routing along an explicit river network: ``inflow = Aᵀ · outflow``.

    Args:
        network: A ``networkx.DiGraph`` (nodes in insertion order, edge
            attribute ``weight`` defaulting to 1) or an (N, N) adjacency matrix
            with ``A[i, j]`` the share of node i's outflow reaching node j.

    Raises:
        TopologyError: Non-square or negative adjacency, self loops or cycles.
    """

    def __init__(self, network: Union[nx.DiGraph, Any]):
        super().__init__()
        if isinstance(network, nx.Graph):
            if not network.is_directed():
                raise TopologyError("The river network must be a directed graph.")
            self.node_ids = list(network.nodes)
            adjacency = nx.to_numpy_array(network, nodelist=self.node_ids, weight="weight")
        else:
            adjacency = np.asarray(
                network.detach().cpu() if torch.is_tensor(network) else network,
                dtype=float,
            )
            self.node_ids = list(range(adjacency.shape[0])) if adjacency.ndim == 2 else []
        if adjacency.ndim != 2 or adjacency.shape[0] != adjacency.shape[1]:
            raise TopologyError(
                f"Adjacency must be a square matrix, got shape {adjacency.shape}"
            )
        if (adjacency < 0).any():
            raise TopologyError("Adjacency weights must be non-negative.")
        _check_acyclic(nx.from_numpy_array(adjacency, create_using=nx.DiGraph), "River network")
        self.num_nodes = adjacency.shape[0]
        self.register_buffer("_adjacency", torch.as_tensor(adjacency, dtype=torch.float64))
        logger.debug("Graph aggregation over %d nodes", self.num_nodes)

    @property
    def adjacency(self) -> torch.Tensor:
        return self._adjacency

    def forward(self, outflow: torch.Tensor) -> torch.Tensor:
        adjacency = self._adjacency.to(dtype=outflow.dtype, device=outflow.device)
        return torch.tensordot(adjacency.T, outflow, dims=1)

    def extra_repr(self) -> str:
        return f"num_nodes={self.num_nodes}"
