from __future__ import annotations

import heapq
from typing import Dict, List, Sequence

from .errors import CyclicDependency, ManifestError
from .schemas import ResourceIdentity, ResourceSpec


def resolve_order(specs: Sequence[ResourceSpec]) -> List[ResourceSpec]:
    """Order specs so every resource comes after all of its dependencies.

    Kahn's algorithm; among resources that are ready at the same time the one
    declared first wins, so a given Manifest Set always resolves identically.
    """
    index: Dict[ResourceIdentity, int] = {}
    for i, spec in enumerate(specs):
        if spec.identity in index:
            raise ManifestError("duplicate resource", spec.identity)
        index[spec.identity] = i

    pending: Dict[int, int] = {}
    dependents: Dict[int, List[int]] = {i: [] for i in range(len(specs))}
    for i, spec in enumerate(specs):
        deps = set()
        for dep in spec.depends_on:
            if dep not in index:
                raise ManifestError(f"depends on undeclared resource {dep}", spec.identity)
            deps.add(index[dep])
        pending[i] = len(deps)
        for d in deps:
            dependents[d].append(i)

    ready = [i for i, n in pending.items() if n == 0]
    heapq.heapify(ready)
    ordered: List[ResourceSpec] = []
    while ready:
        i = heapq.heappop(ready)
        ordered.append(specs[i])
        for j in dependents[i]:
            pending[j] -= 1
            if pending[j] == 0:
                heapq.heappush(ready, j)

    if len(ordered) != len(specs):
        raise CyclicDependency(_find_cycle(specs, index, {i for i, n in pending.items() if n > 0}))
    return ordered


def _find_cycle(
    specs: Sequence[ResourceSpec],
    index: Dict[ResourceIdentity, int],
    blocked: set,
) -> List[ResourceIdentity]:
    # Every blocked node still waits on another blocked node, so walking
    # dependency edges inside the blocked set must eventually loop.
    start = min(blocked)
    path: List[int] = []
    position: Dict[int, int] = {}
    node = start
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = next(
            index[d] for d in specs[node].depends_on if index[d] in blocked
        )
    cycle = path[position[node]:]
    return [specs[i].identity for i in cycle]


def dependency_closure(specs: Sequence[ResourceSpec], identity: ResourceIdentity) -> List[ResourceIdentity]:
    """All resources that transitively depend on ``identity``."""
    dependents: Dict[ResourceIdentity, List[ResourceIdentity]] = {}
    for spec in specs:
        for dep in spec.depends_on:
            dependents.setdefault(dep, []).append(spec.identity)

    seen: List[ResourceIdentity] = []
    stack = list(dependents.get(identity, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.append(current)
        stack.extend(dependents.get(current, []))
    return seen
