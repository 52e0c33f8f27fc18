import heapq
import logging
from graphlib import CycleError, TopologicalSorter
from typing import Dict, List, Sequence, TypeVar

from ..errors import ConstructionError, DependencyCycleError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def check_unique_producers(components: Sequence, owner: str = "model") -> Dict[str, str]:
    """Maps every produced variable to its producer, rejecting duplicates."""
    producers: Dict[str, str] = {}
    for component in components:
        for var in component.variable_names:
            if var in producers:
                raise ConstructionError(
                    f"Variable '{var}' in {owner} is produced by both "
                    f"'{producers[var]}' and '{component.name}'"
                )
            producers[var] = component.name
    return producers


def sort_components(components: Sequence[T]) -> List[T]:
    """
    Orders components so that producers come before consumers.

    Component X precedes Y when one of X's ``variable_names`` (states and
    outputs) is among Y's ``input_names``. Among components that are ready at
    the same time the one declared first goes first, so the result only
    depends on the declaration order.

    Raises:
        DependencyCycleError: Components feed each other's inputs.
    """
    n = len(components)
    producer_of: Dict[str, int] = {}
    for i, component in enumerate(components):
        for var in component.variable_names:
            producer_of.setdefault(var, i)

    successors: List[List[int]] = [[] for _ in range(n)]
    predecessors: List[List[int]] = [[] for _ in range(n)]
    for j, component in enumerate(components):
        for var in component.input_names:
            i = producer_of.get(var)
            if i is None or i == j or i in predecessors[j]:
                continue
            successors[i].append(j)
            predecessors[j].append(i)

    in_degree = [len(p) for p in predecessors]
    ready = [i for i in range(n) if in_degree[i] == 0]
    heapq.heapify(ready)
    order: List[int] = []
    while ready:
        i = heapq.heappop(ready)
        order.append(i)
        for j in successors[i]:
            in_degree[j] -= 1
            if in_degree[j] == 0:
                heapq.heappush(ready, j)

    if len(order) != n:
        resolved = set(order)
        remaining = [i for i in range(n) if i not in resolved]
        graph = {i: predecessors[i] for i in remaining}
        try:
            TopologicalSorter(graph).prepare()
        except CycleError as exc:
            cycle = exc.args[1]
            raise DependencyCycleError([components[i].name for i in cycle]) from None
        raise DependencyCycleError([components[i].name for i in remaining])

    logger.debug(
        "Resolved execution order: %s", " -> ".join(components[i].name for i in order)
    )
    return [components[i] for i in order]
