from __future__ import annotations

from monorepo_merger.conflicts import DependencyConflict
from monorepo_merger.graph import (
    CrossDependency,
    compute_hotspots,
    detect_cross_dependencies,
    detect_cycles,
)
from monorepo_merger.manifests import Manifest


def make_manifest(name: str, *, deps=None, dev=None, peers=None) -> Manifest:
    return Manifest(
        name=name,
        version="1.0.0",
        repo=name,
        path=f"/src/{name}",
        dependencies=deps or {},
        dev_dependencies=dev or {},
        peer_dependencies=peers or {},
    )


def edge(a: str, b: str, kind: str = "dependencies") -> CrossDependency:
    return CrossDependency(from_package=a, to_package=b, version="^1.0.0", kind=kind)


def test_two_package_cycle_is_detected_once() -> None:
    manifests = [
        make_manifest("a", deps={"b": "^1.0.0"}),
        make_manifest("b", deps={"a": "^1.0.0"}),
    ]

    cross = detect_cross_dependencies(manifests)
    cycles = detect_cycles(cross)

    assert len(cross) == 2
    assert len(cycles) == 1
    assert cycles[0].cycle == ["a", "b"]
    assert cycles[0].edge_kinds == ["dependencies", "dependencies"]


def test_cross_dependencies_only_for_merged_packages() -> None:
    manifests = [
        make_manifest("app", deps={"lib": "^1.0.0", "react": "^18.0.0"}, dev={"app": "1.0.0"}),
        make_manifest("lib", peers={"react": "^18.0.0"}),
    ]

    cross = detect_cross_dependencies(manifests)

    assert [(c.from_package, c.to_package, c.kind) for c in cross] == [
        ("app", "lib", "dependencies")
    ]


def test_cycle_is_rotated_to_smallest_name_with_edge_kinds() -> None:
    cycles = detect_cycles(
        [
            edge("c", "a", "devDependencies"),
            edge("a", "b", "dependencies"),
            edge("b", "c", "peerDependencies"),
        ]
    )

    assert len(cycles) == 1
    assert cycles[0].cycle == ["a", "b", "c"]
    assert cycles[0].edge_kinds == ["dependencies", "peerDependencies", "devDependencies"]


def test_cycles_invariant_under_traversal_start() -> None:
    edges = [
        edge("a", "b"),
        edge("b", "c"),
        edge("c", "a"),
        edge("c", "d"),
        edge("d", "e"),
        edge("e", "d", "devDependencies"),
    ]

    forward = detect_cycles(edges)
    backward = detect_cycles(list(reversed(edges)))

    def signatures(cycles):
        return sorted((tuple(c.cycle), tuple(c.edge_kinds)) for c in cycles)

    assert signatures(forward) == signatures(backward)
    assert signatures(forward) == [
        (("a", "b", "c"), ("dependencies", "dependencies", "dependencies")),
        (("d", "e"), ("dependencies", "devDependencies")),
    ]


def test_cycles_reached_through_finished_subtree_are_found() -> None:
    edges = [edge("a", "b"), edge("b", "c"), edge("c", "a"), edge("a", "c")]

    forward = [c.cycle for c in detect_cycles(edges)]
    backward = [c.cycle for c in detect_cycles(list(reversed(edges)))]

    assert forward == [["a", "b", "c"], ["a", "c"]]
    assert backward == forward


def test_parallel_edges_use_strongest_kind() -> None:
    edges = [
        edge("b", "a", "peerDependencies"),
        edge("a", "b", "devDependencies"),
        edge("b", "a", "dependencies"),
    ]

    for ordering in (edges, list(reversed(edges))):
        cycles = detect_cycles(ordering)
        assert len(cycles) == 1
        assert cycles[0].cycle == ["a", "b"]
        assert cycles[0].edge_kinds == ["devDependencies", "dependencies"]


def test_acyclic_graph_has_no_cycles() -> None:
    assert detect_cycles([edge("a", "b"), edge("b", "c"), edge("a", "c")]) == []


def test_long_chain_does_not_hit_recursion_limit() -> None:
    edges = [edge(f"p{i:05d}", f"p{i + 1:05d}") for i in range(5000)]
    edges.append(edge("p05000", "p00000"))

    cycles = detect_cycles(edges)

    assert len(cycles) == 1
    assert cycles[0].cycle[0] == "p00000"
    assert len(cycles[0].cycle) == 5001


def test_hotspots_sorted_and_limited() -> None:
    manifests = [
        make_manifest("a", deps={"react": "^18.0.0", "lodash": "^4.0.0", "zod": "^3.0.0"}),
        make_manifest("b", deps={"react": "^17.0.0", "zod": "^3.0.0"}, dev={"lodash": "^4.0.0"}),
        make_manifest("c", peers={"react": "^18.0.0"}, deps={"a": "^1.0.0", "chalk": "^5.0.0"}),
        make_manifest("d", deps={"a": "^1.0.0"}),
    ]
    conflicts = [DependencyConflict(name="react", severity="major")]

    hotspots = compute_hotspots(manifests, conflicts)

    assert [(h.name, h.dependent_count) for h in hotspots] == [
        ("react", 3),
        ("lodash", 2),
        ("zod", 2),
    ]
    assert hotspots[0].has_conflict
    assert hotspots[0].version_ranges == ["^18.0.0", "^17.0.0"]
    assert all(h.dependent_count >= 2 for h in hotspots)
    assert len(compute_hotspots(manifests, conflicts, limit=1)) == 1


def test_package_declaring_name_in_two_maps_counts_once() -> None:
    manifests = [
        make_manifest("a", deps={"react": "^18.0.0"}, peers={"react": "^18.0.0"}),
        make_manifest("b", dev={"jest": "^29.0.0"}),
    ]

    assert compute_hotspots(manifests, []) == []
