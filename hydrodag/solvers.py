import logging
import warnings
from typing import Any, Callable, List, Optional, Sequence, Union

import torch
from torchdiffeq import odeint

from .errors import ConfigError, SolverError, SolverFailureWarning

logger = logging.getLogger(__name__)

DerivativeFn = Callable[[torch.Tensor, Any, torch.Tensor], torch.Tensor]


def failed_nodes(trajectory: torch.Tensor) -> torch.Tensor:
    """
    Flags the nodes whose trajectory holds a non-finite value.

    The state axis comes first and the time axis last; whatever lies between
    is the node axis. Returns a 0-d mask for single node trajectories and an
    ``(N,)`` mask otherwise.
    """
    finite = torch.isfinite(trajectory)
    if trajectory.dim() < 2:
        return ~finite.all()
    return ~finite.all(dim=-1).all(dim=0)


class BaseSolver:
    """
    Advances a state tensor through an ordered set of time points.

    Subclasses implement ``solve(derivative_fn, params, initial_state, time_points)``
    where ``derivative_fn(state, params, t)`` returns the derivative (continuous) or
    the increment (discrete) with the shape of ``state``. The returned trajectory
    has shape ``(*initial_state.shape, len(time_points))`` and its first column is
    the initial state.

    A state of shape ``(S, N)`` holds ``N`` nodes. Failures are recovered per
    node: only the nodes whose trajectory turned non-finite are replaced, the
    others keep their solution.

    Args:
        on_failure (str): ``"fill"`` replaces failed nodes with ``fill_value``
            and emits a ``SolverFailureWarning``; ``"raise"`` raises ``SolverError``.
        fill_value (float): Sentinel used by ``"fill"``, e.g. ``0.0`` or ``float("nan")``.
    """

    name = "base"

    def __init__(self, on_failure: str = "fill", fill_value: float = 0.0):
        if on_failure not in ("fill", "raise"):
            raise ConfigError(
                f"on_failure must be 'fill' or 'raise', got '{on_failure}'"
            )
        self.on_failure = on_failure
        self.fill_value = fill_value

    def solve(
        self,
        derivative_fn: DerivativeFn,
        params: Any,
        initial_state: torch.Tensor,
        time_points: Union[Sequence[float], torch.Tensor],
        independent_nodes: bool = True,
    ) -> torch.Tensor:
        """
        Args:
            independent_nodes (bool): The nodes of an ``(S, N)`` state do not
                interact, so a node can be solved on its own when the batch
                fails. Routes couple their nodes and pass ``False``.
        """
        raise NotImplementedError

    def __call__(
        self, derivative_fn, params, initial_state, time_points, independent_nodes=True
    ) -> torch.Tensor:
        return self.solve(
            derivative_fn,
            params,
            initial_state,
            time_points,
            independent_nodes=independent_nodes,
        )

    def _report(self, reason: str, nodes: Optional[List[int]] = None) -> None:
        message = f"{type(self).__name__} failed: {reason}"
        if nodes is not None:
            message += f" at nodes {nodes}"
        if self.on_failure == "raise":
            raise SolverError(message)
        logger.warning("%s; filling with %s", message, self.fill_value)
        warnings.warn(message, SolverFailureWarning, stacklevel=4)

    def _recover(
        self, initial_state: torch.Tensor, num_points: int, reason: str
    ) -> torch.Tensor:
        """Fills the whole trajectory, for failures that cannot be told apart per node."""
        self._report(reason)
        return torch.full(
            (*initial_state.shape, num_points),
            self.fill_value,
            dtype=initial_state.dtype,
            device=initial_state.device,
        )

    def _fill_failed(
        self, trajectory: torch.Tensor, reason: str = "non-finite state encountered"
    ) -> torch.Tensor:
        """Replaces the trajectories of the nodes that turned non-finite."""
        failed = failed_nodes(trajectory)
        if not bool(failed.any()):
            return trajectory
        nodes = failed.nonzero().flatten().tolist() if failed.dim() > 0 else None
        self._report(reason, nodes)
        if failed.dim() > 0:
            failed = failed.unsqueeze(-1)
        return torch.where(failed, torch.full_like(trajectory, self.fill_value), trajectory)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(on_failure={self.on_failure!r})"


class DiscreteSolver(BaseSolver):
    """
    Explicit recurrence ``u[i+1] = u[i] + du(u[i], p, t[i])`` over the requested
    time points, without sub-stepping.

    Args:
        min_state (float, optional): Lower clamp applied to the state after each step.
    """

    name = "discrete"

    def __init__(
        self,
        min_state: Optional[float] = None,
        on_failure: str = "fill",
        fill_value: float = 0.0,
    ):
        super().__init__(on_failure=on_failure, fill_value=fill_value)
        self.min_state = min_state

    def solve(self, derivative_fn, params, initial_state, time_points, independent_nodes=True):
        time_points = torch.as_tensor(time_points, device=initial_state.device)
        state = initial_state
        trajectory = [state]
        for t in time_points[:-1]:
            state = state + derivative_fn(state, params, t)
            if self.min_state is not None:
                state = torch.clamp(state, min=self.min_state)
            trajectory.append(state)
        return self._fill_failed(torch.stack(trajectory, dim=-1))


class ContinuousSolver(BaseSolver):
    """
    ODE integration through ``torchdiffeq.odeint``, saving exactly at the
    requested time points.

    When the integrator gives up on a batch of independent nodes, the nodes
    are integrated one at a time and only those that fail again are filled.

    Args:
        method (str): Any torchdiffeq method; adaptive (``"dopri5"``, ``"bosh3"``, ...)
            or fixed grid (``"euler"``, ``"midpoint"``, ``"rk4"``).
        rtol (float): Relative tolerance of adaptive methods.
        atol (float): Absolute tolerance of adaptive methods.
        step_size (float, optional): Step of fixed grid methods.
        max_num_steps (int, optional): Step budget of adaptive methods.
    """

    name = "continuous"

    def __init__(
        self,
        method: str = "dopri5",
        rtol: float = 1e-6,
        atol: float = 1e-6,
        step_size: Optional[float] = None,
        max_num_steps: Optional[int] = None,
        on_failure: str = "fill",
        fill_value: float = 0.0,
    ):
        super().__init__(on_failure=on_failure, fill_value=fill_value)
        self.method = method
        self.rtol = rtol
        self.atol = atol
        self.step_size = step_size
        self.max_num_steps = max_num_steps

    def _options(self) -> Optional[dict]:
        options = {}
        if self.step_size is not None:
            options["step_size"] = self.step_size
        if self.max_num_steps is not None:
            options["max_num_steps"] = self.max_num_steps
        return options or None

    def _integrate(self, func, initial_state, time_points) -> torch.Tensor:
        solution = odeint(
            func,
            initial_state,
            time_points,
            rtol=self.rtol,
            atol=self.atol,
            method=self.method,
            options=self._options(),
        )
        return torch.movedim(solution, 0, -1)

    def solve(self, derivative_fn, params, initial_state, time_points, independent_nodes=True):
        time_points = torch.as_tensor(
            time_points, dtype=initial_state.dtype, device=initial_state.device
        )

        def func(t, state):
            return derivative_fn(state, params, t)

        try:
            trajectory = self._integrate(func, initial_state, time_points)
        except (AssertionError, RuntimeError) as exc:
            # torchdiffeq signals dt underflow and exhausted step budgets this way
            if not independent_nodes or initial_state.dim() < 2:
                return self._recover(initial_state, time_points.shape[0], str(exc))
            logger.debug("Batch integration failed (%s), integrating node by node", exc)
            return self._solve_per_node(derivative_fn, params, initial_state, time_points)
        return self._fill_failed(trajectory)

    def _solve_per_node(self, derivative_fn, params, initial_state, time_points):
        columns = []
        failed = []
        for node in range(initial_state.shape[1]):
            index = torch.tensor([node], device=initial_state.device)

            def func(t, node_state, index=index):
                # the other nodes are held at their initial state
                state = initial_state.index_copy(1, index, node_state.unsqueeze(1))
                return derivative_fn(state, params, t).index_select(1, index).squeeze(1)

            try:
                column = self._integrate(func, initial_state[:, node], time_points)
            except (AssertionError, RuntimeError):
                failed.append(node)
                column = torch.full(
                    (initial_state.shape[0], time_points.shape[0]),
                    float("nan"),
                    dtype=initial_state.dtype,
                    device=initial_state.device,
                )
            columns.append(column)
        trajectory = torch.stack(columns, dim=1)
        reason = "integrator gave up" if failed else "non-finite state encountered"
        return self._fill_failed(trajectory, reason)

    def __repr__(self) -> str:
        return (
            f"ContinuousSolver(method={self.method!r}, rtol={self.rtol}, "
            f"atol={self.atol}, on_failure={self.on_failure!r})"
        )


SOLVERS = {
    "discrete": DiscreteSolver,
    "continuous": ContinuousSolver,
}


def get_solver(solver: Union[None, str, BaseSolver]) -> BaseSolver:
    """Resolves a solver instance from an instance, a registry name or ``None``."""
    if solver is None:
        return DiscreteSolver()
    if isinstance(solver, BaseSolver):
        return solver
    if isinstance(solver, str):
        try:
            return SOLVERS[solver]()
        except KeyError:
            raise ConfigError(
                f"Unknown solver '{solver}', available: {sorted(SOLVERS)}"
            ) from None
    raise ConfigError(f"Unsupported solver: {solver!r}")
