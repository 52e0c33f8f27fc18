import logging
from typing import Any, Dict, Optional

import torch

from .errors import ConfigError, ShapeError
from .solvers import get_solver
from .utils.interpolation import INTERPOLATIONS, Interpolation

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "time_points": None,
    "solver": None,
    "interpolation": "direct",
    "ptyidx": None,
    "styidx": None,
    "initial_state": None,
    "delta_t": 1.0,
}


def _resolve_interpolation(interpolation):
    if isinstance(interpolation, str):
        try:
            return INTERPOLATIONS[interpolation]
        except KeyError:
            raise ConfigError(
                f"Unknown interpolation '{interpolation}', "
                f"available: {sorted(INTERPOLATIONS)}"
            ) from None
    if isinstance(interpolation, type) and issubclass(interpolation, Interpolation):
        return interpolation
    raise ConfigError(f"Unsupported interpolation: {interpolation!r}")


def normalize_config(
    config: Optional[Dict[str, Any]] = None, known: Optional[set] = None
) -> Dict[str, Any]:
    """
    Merges a user configuration over the defaults and resolves registry names.

    Args:
        config: User configuration, left untouched.
        known: Extra keys accepted besides the defaults (e.g. component names
            carrying per-component overrides).

    Returns:
        A new dictionary with ``solver`` as a solver instance and
        ``interpolation`` as an interpolation class.
    """
    config = dict(config or {})
    unknown = [k for k in config if k not in DEFAULT_CONFIG and k not in (known or ())]
    if unknown:
        raise ConfigError(
            f"Unknown configuration keys: {unknown}, expected any of {list(DEFAULT_CONFIG)}"
        )
    merged = DEFAULT_CONFIG | config
    merged["solver"] = get_solver(merged["solver"])
    merged["interpolation"] = _resolve_interpolation(merged["interpolation"])
    logger.debug(
        "Resolved solver %r with %s interpolation",
        merged["solver"],
        merged["interpolation"].__name__,
    )
    if merged["initial_state"] is None:
        merged["initial_state"] = {}
    return merged


def resolve_time_points(
    config: Dict[str, Any], num_steps: int, like: torch.Tensor
) -> torch.Tensor:
    """Returns the configured time points, defaulting to ``0 .. T-1``."""
    time_points = config.get("time_points")
    if time_points is None:
        return torch.arange(num_steps, dtype=like.dtype, device=like.device)
    time_points = torch.as_tensor(time_points, dtype=like.dtype, device=like.device)
    if time_points.dim() != 1 or time_points.shape[0] != num_steps:
        raise ShapeError(
            f"Expected {num_steps} time points to match the input, "
            f"got shape {tuple(time_points.shape)}"
        )
    return time_points
