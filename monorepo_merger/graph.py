from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Sequence, Set, Tuple

from .conflicts import DependencyConflict
from .manifests import DEPENDENCY_KINDS, Manifest

DEFAULT_HOTSPOT_LIMIT = 10


@dataclass
class CrossDependency:
    from_package: str
    to_package: str
    version: str
    kind: str


@dataclass
class CircularDependency:
    cycle: List[str]
    edge_kinds: List[str]


@dataclass
class DependencyHotspot:
    name: str
    dependent_count: int
    has_conflict: bool
    version_ranges: List[str] = field(default_factory=list)


def detect_cross_dependencies(manifests: Sequence[Manifest]) -> List[CrossDependency]:
    internal = {manifest.name for manifest in manifests}
    edges: List[CrossDependency] = []
    for manifest in manifests:
        for kind, deps in manifest.dependency_maps():
            for name, version in deps.items():
                if name in internal and name != manifest.name:
                    edges.append(
                        CrossDependency(
                            from_package=manifest.name,
                            to_package=name,
                            version=version,
                            kind=kind,
                        )
                    )
    return edges


def detect_cycles(cross_deps: Sequence[CrossDependency]) -> List[CircularDependency]:
    """Enumerate every elementary cycle in the cross-dependency graph.

    Parallel edges between two packages collapse to the strongest kind
    (dependencies, then devDependencies, then peerDependencies). Cycles are
    found per strongly connected component, starting from its smallest name,
    so the result does not depend on the order the edges were declared in.
    Each cycle is rotated to start at its smallest name.
    """
    kinds: Dict[Tuple[str, str], str] = {}
    for dep in cross_deps:
        key = (dep.from_package, dep.to_package)
        current = kinds.get(key)
        if current is None or _kind_rank(dep.kind) < _kind_rank(current):
            kinds[key] = dep.kind

    graph: Dict[str, List[str]] = {}
    for source, target in sorted(kinds):
        graph.setdefault(source, []).append(target)
        graph.setdefault(target, [])

    cycles: List[CircularDependency] = []
    signatures: Set[Tuple[str, ...]] = set()
    pending = [component for component in _strongly_connected(graph) if len(component) > 1]
    while pending:
        component = pending.pop()
        start = min(component)
        for path in _cycles_through(start, _subgraph(graph, component)):
            closing = list(zip(path, path[1:] + path[:1]))
            cycle = canonicalize_cycle(path, [kinds[edge] for edge in closing])
            signature = tuple(cycle.cycle)
            if signature not in signatures:
                signatures.add(signature)
                cycles.append(cycle)
        component.discard(start)
        remainder = _subgraph(graph, component)
        pending.extend(part for part in _strongly_connected(remainder) if len(part) > 1)

    cycles.sort(key=lambda cycle: cycle.cycle)
    return cycles


def _kind_rank(kind: str) -> int:
    return DEPENDENCY_KINDS.index(kind) if kind in DEPENDENCY_KINDS else len(DEPENDENCY_KINDS)


def _subgraph(graph: Mapping[str, List[str]], nodes: Set[str]) -> Dict[str, List[str]]:
    return {
        node: [target for target in graph[node] if target in nodes]
        for node in sorted(nodes)
    }


def _strongly_connected(graph: Mapping[str, List[str]]) -> List[Set[str]]:
    """Iterative Tarjan; components come out in reverse topological order."""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    stack: List[str] = []
    on_stack: Set[str] = set()
    components: List[Set[str]] = []

    for root in graph:
        if root in index:
            continue
        index[root] = low[root] = len(index)
        stack.append(root)
        on_stack.add(root)
        work: List[Tuple[str, Iterator[str]]] = [(root, iter(graph[root]))]
        while work:
            node, successors = work[-1]
            descended = False
            for succ in successors:
                if succ not in index:
                    index[succ] = low[succ] = len(index)
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(graph[succ])))
                    descended = True
                    break
                if succ in on_stack:
                    low[node] = min(low[node], index[succ])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component: Set[str] = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                components.append(component)
    return components


def _cycles_through(start: str, graph: Mapping[str, List[str]]) -> Iterator[List[str]]:
    """Johnson's circuit search for cycles through ``start``, without recursion."""
    path = [start]
    blocked = {start}
    blocked_by: Dict[str, Set[str]] = {node: set() for node in graph}
    closed: Set[str] = set()
    work: List[Tuple[str, Iterator[str]]] = [(start, iter(graph[start]))]
    while work:
        node, successors = work[-1]
        descended = False
        for succ in successors:
            if succ == start:
                yield list(path)
                closed.update(path)
            elif succ not in blocked:
                path.append(succ)
                blocked.add(succ)
                closed.discard(succ)
                work.append((succ, iter(graph[succ])))
                descended = True
                break
        if descended:
            continue
        if node in closed:
            _unblock(node, blocked, blocked_by)
        else:
            for succ in graph[node]:
                blocked_by[succ].add(node)
        work.pop()
        path.pop()


def _unblock(node: str, blocked: Set[str], blocked_by: Dict[str, Set[str]]) -> None:
    pending = [node]
    while pending:
        current = pending.pop()
        if current in blocked:
            blocked.discard(current)
            pending.extend(blocked_by[current])
            blocked_by[current].clear()


def canonicalize_cycle(nodes: Sequence[str], kinds: Sequence[str]) -> CircularDependency:
    if not nodes:
        return CircularDependency(cycle=[], edge_kinds=list(kinds))
    offset = min(range(len(nodes)), key=lambda i: nodes[i])
    return CircularDependency(
        cycle=list(nodes[offset:]) + list(nodes[:offset]),
        edge_kinds=list(kinds[offset:]) + list(kinds[:offset]),
    )


def compute_hotspots(
    manifests: Sequence[Manifest],
    conflicts: Sequence[DependencyConflict],
    limit: int = DEFAULT_HOTSPOT_LIMIT,
) -> List[DependencyHotspot]:
    internal = {manifest.name for manifest in manifests}
    conflict_names = {conflict.name for conflict in conflicts}
    dependents: Dict[str, Set[str]] = {}
    ranges: Dict[str, List[str]] = {}

    for manifest in manifests:
        for _, deps in manifest.dependency_maps():
            for name, version in deps.items():
                if name in internal:
                    continue
                dependents.setdefault(name, set()).add(manifest.repo)
                observed = ranges.setdefault(name, [])
                if version not in observed:
                    observed.append(version)

    hotspots = [
        DependencyHotspot(
            name=name,
            dependent_count=len(packages),
            has_conflict=name in conflict_names,
            version_ranges=ranges[name],
        )
        for name, packages in dependents.items()
        if len(packages) >= 2
    ]
    hotspots.sort(key=lambda hotspot: (-hotspot.dependent_count, hotspot.name))
    return hotspots[: max(limit, 0)]
