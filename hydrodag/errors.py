from typing import Iterable, List, Optional


class HydroError(Exception):
    """Base class of every error raised by hydrodag."""


class ConstructionError(HydroError, ValueError):
    """A component or model could not be built from its declaration."""


class DependencyCycleError(ConstructionError):
    """Components whose outputs mutually feed each other's inputs."""

    def __init__(self, participants: Iterable[str], message: Optional[str] = None):
        self.participants: List[str] = list(participants)
        if message is None:
            message = (
                "A circular dependency was detected between components: "
                + " -> ".join(self.participants)
            )
        super().__init__(message)


class UndeclaredVariableError(ConstructionError):
    """A component consumes a variable nobody provides."""

    def __init__(self, component: str, variables: Iterable[str]):
        self.component = component
        self.variables: List[str] = list(variables)
        super().__init__(
            f"Component '{component}' requires undeclared variables: {self.variables}"
        )


class ArityError(ConstructionError):
    """A flux callable returned a different number of values than declared."""


class TopologyError(ConstructionError):
    """Invalid routing topology: bad direction codes, cycles or malformed adjacency."""


class ShapeError(HydroError, ValueError):
    """Array shapes or index arrays inconsistent with the call."""


class ParameterError(HydroError, KeyError):
    """A declared parameter is missing from the parameter container."""

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class ConfigError(HydroError, ValueError):
    """Unknown configuration key, solver or interpolation method."""


class SolverError(HydroError, RuntimeError):
    """A solver failed and was configured to raise instead of filling."""


class SolverFailureWarning(RuntimeWarning):
    """Emitted when a failed solve is replaced by a sentinel-filled trajectory."""
