from __future__ import annotations

import heapq
from typing import Iterable

from .errors import CyclicDependency, DuplicateName, UnknownDependency


class DependencyGraph:
    """Validated, acyclic service dependency graph.

    Nodes keep their declaration order; it is the tie-breaker for the
    topological order so that start order is deterministic.
    """

    def __init__(self) -> None:
        self._deps: dict[str, tuple[str, ...]] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def names(self) -> list[str]:
        return list(self._deps)

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self._deps[name]

    def dependents(self, name: str) -> list[str]:
        return [n for n, deps in self._deps.items() if name in deps]

    def add_all(self, nodes: Iterable[tuple[str, Iterable[str]]]) -> None:
        """Add a batch of nodes; either all are added or none.

        Dependencies may point at nodes declared later in the same batch.
        """
        batch: dict[str, tuple[str, ...]] = {}
        for name, deps in nodes:
            if name in self._deps or name in batch:
                raise DuplicateName(name)
            batch[name] = tuple(dict.fromkeys(deps))

        merged = {**self._deps, **batch}
        for name, deps in batch.items():
            for dep in deps:
                if dep not in merged:
                    raise UnknownDependency(name, dep)

        cycle = _find_cycle(merged)
        if cycle:
            raise CyclicDependency(cycle)
        self._deps = merged

    def add(self, name: str, deps: Iterable[str] = ()) -> None:
        self.add_all([(name, deps)])

    def order(self) -> list[str]:
        """Kahn's algorithm; ready nodes are taken in declaration order."""
        index = {name: i for i, name in enumerate(self._deps)}
        remaining = {name: len(deps) for name, deps in self._deps.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._deps}
        for name, deps in self._deps.items():
            for dep in deps:
                dependents[dep].append(name)

        ready = [(index[n], n) for n, c in remaining.items() if c == 0]
        heapq.heapify(ready)
        out: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            out.append(name)
            for child in dependents[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (index[child], child))
        return out

    def reverse_order(self) -> list[str]:
        return list(reversed(self.order()))


def _find_cycle(deps: dict[str, tuple[str, ...]]) -> list[str] | None:
    """Return one cycle as a path (first node repeated at the end), or None.

    Iterative DFS with white/grey/black colouring, so deep graphs cannot
    overflow the interpreter stack.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {n: WHITE for n in deps}
    for root in deps:
        if colour[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [iter(deps[root])]
        colour[root] = GREY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                colour[path.pop()] = BLACK
                continue
            if nxt not in colour:
                continue
            if colour[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if colour[nxt] == WHITE:
                colour[nxt] = GREY
                path.append(nxt)
                stack.append(iter(deps[nxt]))
    return None
