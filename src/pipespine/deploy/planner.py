"""
Bring-up planner: dependency validation, cycle detection, topological order.

Pure functions over ``ServiceSpec`` lists. No I/O, no execution: the
sequencer calls ``plan_order()`` before starting anything so that a bad
graph fails fast with zero start attempts.

1. Validate every dependency names a declared service
2. Validate the graph is a DAG (three-color DFS, reports the cycle path)
3. Topologically sort with Kahn's algorithm (stable: declaration order
   breaks ties)
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable

from pipespine.core.errors import ConfigurationError, CyclicDependencyError
from pipespine.core.logging import get_logger
from pipespine.deploy.config import ServiceSpec

logger = get_logger(__name__)


def validate_dependencies(specs: Iterable[ServiceSpec]) -> None:
    """Raise ConfigurationError if a dependency references an unknown service."""
    specs = list(specs)
    names = [s.name for s in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"duplicate service names: {duplicates}")
    known = set(names)
    for spec in specs:
        missing = [dep for dep in spec.depends_on if dep not in known]
        if missing:
            raise ConfigurationError(
                f"service {spec.name!r} depends on unknown services: {missing}"
            ).with_context(service=spec.name)


def find_cycle(specs: Iterable[ServiceSpec]) -> list[str] | None:
    """Return one dependency cycle as a path (first node repeated), or None.

    Uses depth-first search with three-color marking:
    - WHITE (0): Unvisited
    - GRAY (1): On the current path
    - BLACK (2): Finished

    Reaching a GRAY node means the path from it back to itself is a cycle.
    """
    WHITE, GRAY, BLACK = 0, 1, 2

    specs = list(specs)
    graph = {s.name: list(s.depends_on) for s in specs}
    color = {s.name: WHITE for s in specs}
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        color[node] = GRAY
        path.append(node)

        for neighbor in graph.get(node, []):
            if color.get(neighbor) == GRAY:
                cycle_start = path.index(neighbor)
                return path[cycle_start:] + [neighbor]
            if color.get(neighbor) == WHITE:
                result = dfs(neighbor)
                if result:
                    return result

        color[node] = BLACK
        path.pop()
        return None

    for spec in specs:
        if color[spec.name] == WHITE:
            cycle = dfs(spec.name)
            if cycle:
                return cycle
    return None


def plan_order(specs: Iterable[ServiceSpec]) -> list[str]:
    """Return service names so that each follows all of its dependencies.

    Raises:
        ConfigurationError: Unknown or duplicate service names
        CyclicDependencyError: The dependency graph has a cycle
    """
    specs = list(specs)
    validate_dependencies(specs)

    cycle = find_cycle(specs)
    if cycle:
        raise CyclicDependencyError(cycle)

    graph: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {s.name: 0 for s in specs}

    for spec in specs:
        for dep in spec.depends_on:
            graph[dep].append(spec.name)
            in_degree[spec.name] += 1

    queue = deque(s.name for s in specs if in_degree[s.name] == 0)
    order: list[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for dependent in graph[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    logger.debug("planner.ordered", order=order)
    return order


def plan_stages(specs: Iterable[ServiceSpec]) -> list[list[str]]:
    """Group services into stages; every service in a stage may start together.

    A service's stage is one past the deepest stage among its dependencies.
    """
    specs = list(specs)
    order = plan_order(specs)
    deps = {s.name: s.depends_on for s in specs}

    depth: dict[str, int] = {}
    for name in order:
        depth[name] = 1 + max((depth[d] for d in deps[name]), default=-1)

    stages: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for name in order:
        stages[depth[name]].append(name)
    return stages
