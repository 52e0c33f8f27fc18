from typing import Any, List, Mapping, Optional, Sequence

import torch

from ..errors import ParameterError, ShapeError


def check_index(index: Any, num_nodes: int, name: str, device=None) -> torch.Tensor:
    """Validates a node -> type index array (``ptyidx`` / ``styidx``)."""
    index = torch.as_tensor(index, device=device)
    if index.dim() != 1 or index.shape[0] != num_nodes:
        raise ShapeError(
            f"'{name}' must be a 1-D array with one entry per node ({num_nodes}), "
            f"got shape {tuple(index.shape)}"
        )
    if index.dtype.is_floating_point or index.dtype == torch.bool:
        raise ShapeError(f"'{name}' must hold integer indices, got {index.dtype}")
    if num_nodes > 0 and int(index.min()) < 0:
        raise ShapeError(f"'{name}' contains negative indices")
    return index.long()


def _expand(
    value: torch.Tensor,
    label: str,
    num_nodes: Optional[int],
    index: Optional[torch.Tensor],
    index_name: str,
) -> torch.Tensor:
    if num_nodes is None:
        if value.numel() != 1:
            raise ShapeError(
                f"{label} must be a scalar for a single-node call, "
                f"got shape {tuple(value.shape)}"
            )
        return value.reshape(())
    if value.numel() == 1:
        return value.reshape(()).expand(num_nodes)
    if value.dim() != 1:
        raise ShapeError(
            f"{label} must be a scalar or a 1-D table of types, got shape {tuple(value.shape)}"
        )
    if index is None:
        if value.shape[0] != num_nodes:
            raise ShapeError(
                f"{label} has {value.shape[0]} values for {num_nodes} nodes "
                f"and no '{index_name}' was given"
            )
        return value
    if num_nodes > 0 and int(index.max()) >= value.shape[0]:
        raise ShapeError(
            f"'{index_name}' refers to type {int(index.max())} but {label} "
            f"only has {value.shape[0]} values"
        )
    return value[index]


def expand_params(
    params: Mapping[str, Any],
    names: Sequence[str],
    like: torch.Tensor,
    num_nodes: Optional[int] = None,
    ptyidx: Optional[torch.Tensor] = None,
) -> List[torch.Tensor]:
    """
    Extracts the named parameters for one call.

    Args:
        params: Mapping of parameter name to a number or tensor. A scalar is
            shared by every node; a 1-D tensor is a per-type table.
        names: Parameter names in the order the callable expects them.
        like: Tensor providing dtype and device.
        num_nodes: Number of nodes, ``None`` for single-node calls.
        ptyidx: Validated node -> parameter type index.

    Returns:
        One 0-d tensor per name (single node) or one ``(num_nodes,)`` tensor
        per name (multi node).
    """
    values = []
    for name in names:
        if name not in params:
            raise ParameterError(
                f"Parameter '{name}' is missing, available: {sorted(params)}"
            )
        value = torch.as_tensor(params[name], dtype=like.dtype, device=like.device)
        values.append(_expand(value, f"Parameter '{name}'", num_nodes, ptyidx, "ptyidx"))
    return values


def expand_states(
    initial_state: Optional[Mapping[str, Any]],
    names: Sequence[str],
    like: torch.Tensor,
    num_nodes: Optional[int] = None,
    styidx: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Builds the stacked initial state, ``(S,)`` or ``(S, num_nodes)``; missing states are zero."""
    initial_state = initial_state or {}
    shape = () if num_nodes is None else (num_nodes,)
    rows = []
    for name in names:
        if name not in initial_state:
            rows.append(torch.zeros(shape, dtype=like.dtype, device=like.device))
            continue
        value = torch.as_tensor(initial_state[name], dtype=like.dtype, device=like.device)
        rows.append(_expand(value, f"Initial state '{name}'", num_nodes, styidx, "styidx"))
    if not rows:
        return torch.zeros((0, *shape), dtype=like.dtype, device=like.device)
    return torch.stack(rows, dim=0)
