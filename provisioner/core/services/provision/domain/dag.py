"""
L1 Domain — DAG utilities (pure).

Graph helpers over a module dependency map ``{id: [dependency ids]}``:
cycle detection (three-color DFS) and a stable topological sort
(Kahn's algorithm with a rank tie-break).
No I/O, no subprocess.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping, Sequence

_WHITE, _GRAY, _BLACK = 0, 1, 2


def canonical_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    """Rotate a cycle so its smallest id comes first (for de-duplication)."""
    if not cycle:
        return ()
    pivot = min(range(len(cycle)), key=lambda i: cycle[i])
    return tuple(cycle[pivot:]) + tuple(cycle[:pivot])


def find_cycles(graph: Mapping[str, Sequence[str]], order: Iterable[str]) -> list[list[str]]:
    """Find dependency cycles with a white/gray/black depth-first walk.

    Each back-edge to a gray (on-stack) node yields the full cycle, from
    that node down the current path. Edges to ids absent from ``graph``
    are ignored (the existence check reports those).

    Args:
        graph: id → dependency ids.
        order: Start nodes in the order to visit them (declaration order),
            which makes the result deterministic.

    Returns:
        Distinct cycles, each listed in dependency order (``a`` depends on
        ``b`` depends on ... depends on ``a``).
    """
    color: dict[str, int] = {node: _WHITE for node in graph}
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    for start in order:
        if color.get(start, _BLACK) != _WHITE:
            continue

        path: list[str] = [start]
        stack: list[tuple[str, Iterable[str]]] = [(start, iter(graph[start]))]
        color[start] = _GRAY

        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                state = color.get(dep)
                if state is None:
                    continue
                if state == _GRAY:
                    cycle = path[path.index(dep):]
                    key = canonical_cycle(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                elif state == _WHITE:
                    color[dep] = _GRAY
                    path.append(dep)
                    stack.append((dep, iter(graph[dep])))
                    advanced = True
                    break
            if not advanced:
                color[node] = _BLACK
                path.pop()
                stack.pop()

    return cycles


def stable_topological_sort(
    nodes: Iterable[str],
    graph: Mapping[str, Sequence[str]],
    rank: Mapping[str, int],
) -> list[str]:
    """Order ``nodes`` so every dependency precedes its dependents.

    Only edges between members of ``nodes`` are considered. Among nodes
    that are ready at the same time, the lowest ``rank`` goes first, so
    the result is a pure function of the input.

    Raises:
        ValueError: If the subgraph contains a cycle.
    """
    members = set(nodes)
    in_degree: dict[str, int] = {n: 0 for n in members}
    dependents: dict[str, list[str]] = {n: [] for n in members}

    for node in members:
        for dep in set(graph.get(node, ())):
            if dep in members and dep != node:
                in_degree[node] += 1
                dependents[dep].append(node)

    ready = [(rank[n], n) for n, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    ordered: list[str] = []
    while ready:
        _, node = heapq.heappop(ready)
        ordered.append(node)
        for successor in dependents[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, (rank[successor], successor))

    if len(ordered) < len(members):
        stuck = sorted(n for n, deg in in_degree.items() if deg > 0)
        raise ValueError(f"Dependency cycle among: {', '.join(stuck)}")

    return ordered
