from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from .collisions import DEFAULT_COLLISION_RULES, CollisionRules, FileCollision, detect_file_collisions
from .conflicts import (
    DependencyConflict,
    DependencyWarning,
    collect_dependency_warnings,
    combine_conflicts,
    detect_declared_conflicts,
    detect_peer_conflicts,
    detect_resolved_conflicts,
)
from .graph import (
    DEFAULT_HOTSPOT_LIMIT,
    CircularDependency,
    CrossDependency,
    DependencyHotspot,
    compute_hotspots,
    detect_cross_dependencies,
    detect_cycles,
)
from .manifests import LockfileResolution, Manifest, load_manifests, read_lockfiles
from .risks import RepoRisk, detect_repo_risks

CONFLICT_WEIGHT = 5
COLLISION_WEIGHT = 3
CYCLE_WEIGHT = 10
MAX_COMPLEXITY = 100


@dataclass
class AnalysisResult:
    packages: List[Manifest] = field(default_factory=list)
    conflicts: List[DependencyConflict] = field(default_factory=list)
    cross_dependencies: List[CrossDependency] = field(default_factory=list)
    cycles: List[CircularDependency] = field(default_factory=list)
    hotspots: List[DependencyHotspot] = field(default_factory=list)
    collisions: List[FileCollision] = field(default_factory=list)
    risks: List[RepoRisk] = field(default_factory=list)
    warnings: List[DependencyWarning] = field(default_factory=list)
    package_managers: Dict[str, str] = field(default_factory=dict)
    complexity_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def complexity_score(conflicts: int, collisions: int, cycles: int) -> int:
    score = conflicts * CONFLICT_WEIGHT + collisions * COLLISION_WEIGHT + cycles * CYCLE_WEIGHT
    return min(MAX_COMPLEXITY, score)


def analyze(
    manifests: Sequence[Manifest],
    resolutions: Mapping[str, LockfileResolution] | None = None,
    repos: Sequence[Tuple[str, Path]] = (),
    *,
    hotspot_limit: int = DEFAULT_HOTSPOT_LIMIT,
    collision_rules: CollisionRules = DEFAULT_COLLISION_RULES,
) -> AnalysisResult:
    resolutions = resolutions or {}
    conflicts = combine_conflicts(
        detect_declared_conflicts(manifests),
        detect_resolved_conflicts(resolutions),
        detect_peer_conflicts(manifests, resolutions),
    )
    cross_dependencies = detect_cross_dependencies(manifests)
    cycles = detect_cycles(cross_dependencies)
    collisions = detect_file_collisions(repos, collision_rules) if repos else []
    risks = detect_repo_risks(repos) if repos else []

    result = AnalysisResult(
        packages=list(manifests),
        conflicts=conflicts,
        cross_dependencies=cross_dependencies,
        cycles=cycles,
        hotspots=compute_hotspots(manifests, conflicts, hotspot_limit),
        collisions=collisions,
        risks=risks,
        warnings=collect_dependency_warnings(manifests),
        package_managers={repo: res.package_manager for repo, res in resolutions.items()},
        complexity_score=complexity_score(len(conflicts), len(collisions), len(cycles)),
    )
    logging.info(
        "Analysis: %d package(s), %d conflict(s), %d cycle(s), %d collision(s)",
        len(result.packages),
        len(result.conflicts),
        len(result.cycles),
        len(result.collisions),
    )
    return result


def analyze_repositories(
    repos: Sequence[Tuple[str, Path]],
    *,
    hotspot_limit: int = DEFAULT_HOTSPOT_LIMIT,
    collision_rules: CollisionRules = DEFAULT_COLLISION_RULES,
) -> AnalysisResult:
    """Load manifests and lockfiles for ``(name, path)`` pairs and analyze them."""
    manifests = load_manifests(repos)
    if len(manifests) < len(repos):
        logging.warning(
            "Only %d of %d repositories produced a readable manifest",
            len(manifests),
            len(repos),
        )
    return analyze(
        manifests,
        read_lockfiles(repos),
        repos,
        hotspot_limit=hotspot_limit,
        collision_rules=collision_rules,
    )
