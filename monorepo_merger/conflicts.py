from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .manifests import LockfileResolution, Manifest
from .versions import (
    is_complex_range,
    is_non_semver,
    is_wildcard,
    normalize_version,
    parse_version,
    satisfies,
)

SEVERITY_ORDER = {"major": 0, "minor": 1}

_GIT_SPEC = re.compile(r"^(git\+|github:|gitlab:|bitbucket:)")
_FILE_SPEC = re.compile(r"^(file:|link:)")


@dataclass
class ConflictEntry:
    version: str
    source: str
    kind: str


@dataclass
class DependencyConflict:
    name: str
    versions: List[ConflictEntry] = field(default_factory=list)
    severity: str = "minor"
    confidence: str = "high"
    conflict_source: Optional[str] = None

    def distinct_versions(self) -> List[str]:
        seen: List[str] = []
        for entry in self.versions:
            if entry.version not in seen:
                seen.append(entry.version)
        return seen


@dataclass
class DependencyWarning:
    name: str
    version: str
    source: str
    kind: str
    message: str


def conflict_severity(versions: Sequence[str]) -> str:
    parsed = [p for p in (parse_version(v) for v in versions) if p is not None]
    if len(parsed) < 2:
        # Not enough to compare; treat as the worst case.
        return "major"
    majors = {p.major for p in parsed}
    return "major" if len(majors) > 1 else "minor"


def detect_declared_conflicts(manifests: Sequence[Manifest]) -> List[DependencyConflict]:
    groups: Dict[str, List[ConflictEntry]] = {}
    for manifest in manifests:
        for kind, deps in manifest.dependency_maps():
            for name, version in deps.items():
                groups.setdefault(name, []).append(
                    ConflictEntry(version=version, source=manifest.repo, kind=kind)
                )
    return _conflicts_from_groups(groups, conflict_source="declared")


def detect_resolved_conflicts(
    resolutions: Mapping[str, LockfileResolution],
) -> List[DependencyConflict]:
    groups: Dict[str, List[ConflictEntry]] = {}
    for repo, resolution in resolutions.items():
        for name, version in resolution.resolved.items():
            groups.setdefault(name, []).append(
                ConflictEntry(version=version, source=repo, kind="dependencies")
            )
    return _conflicts_from_groups(groups, conflict_source="resolved")


def _conflicts_from_groups(
    groups: Mapping[str, List[ConflictEntry]],
    *,
    conflict_source: str,
) -> List[DependencyConflict]:
    conflicts: List[DependencyConflict] = []
    for name, entries in groups.items():
        distinct = list(dict.fromkeys(entry.version for entry in entries))
        if len(distinct) < 2:
            continue
        conflicts.append(
            DependencyConflict(
                name=name,
                versions=list(entries),
                severity=conflict_severity(distinct),
                confidence="high",
                conflict_source=conflict_source,
            )
        )
    return conflicts


def detect_peer_conflicts(
    manifests: Sequence[Manifest],
    resolutions: Mapping[str, LockfileResolution],
) -> List[DependencyConflict]:
    """Check every peer range against the best version available before the merge.

    The declaring repository's own lockfile wins; otherwise the first version
    declared anywhere in the merge set is used. Peers with no candidate are
    skipped rather than reported.
    """
    declared: Dict[str, List[str]] = {}
    for manifest in manifests:
        for deps in (manifest.dependencies, manifest.dev_dependencies):
            for name, version in deps.items():
                declared.setdefault(name, []).append(version)

    conflicts: List[DependencyConflict] = []
    for manifest in manifests:
        repo_resolved = resolutions.get(manifest.repo)
        for name, peer_range in manifest.peer_dependencies.items():
            available = _best_available(name, repo_resolved, declared)
            if available is None:
                logging.debug(
                    "No available version for peer %s of %s; skipping", name, manifest.repo
                )
                continue

            complex_range = is_complex_range(peer_range)
            if not complex_range and satisfies(available, peer_range):
                continue
            conflicts.append(
                DependencyConflict(
                    name=name,
                    versions=[
                        ConflictEntry(
                            version=peer_range,
                            source=f"{manifest.repo} (peer)",
                            kind="peerDependencies",
                        ),
                        ConflictEntry(version=available, source="available", kind="dependencies"),
                    ],
                    severity="major",
                    confidence="low" if complex_range else "medium",
                    conflict_source="peer-constraint",
                )
            )
    return conflicts


def _best_available(
    name: str,
    repo_resolved: Optional[LockfileResolution],
    declared: Mapping[str, List[str]],
) -> Optional[str]:
    if repo_resolved is not None and repo_resolved.resolved.get(name):
        return repo_resolved.resolved[name]
    versions = declared.get(name)
    if versions:
        return normalize_version(versions[0])
    return None


def combine_conflicts(
    declared: Sequence[DependencyConflict],
    resolved: Sequence[DependencyConflict],
    peers: Sequence[DependencyConflict],
) -> List[DependencyConflict]:
    by_name: Dict[str, DependencyConflict] = {conflict.name: conflict for conflict in declared}
    for conflict in resolved:
        by_name[conflict.name] = conflict
    combined = list(by_name.values()) + list(peers)
    return sorted(combined, key=lambda conflict: SEVERITY_ORDER.get(conflict.severity, 2))


def collect_dependency_warnings(manifests: Sequence[Manifest]) -> List[DependencyWarning]:
    warnings: List[DependencyWarning] = []
    for manifest in manifests:
        for _, deps in manifest.dependency_maps():
            for name, version in deps.items():
                if version.startswith("workspace:"):
                    continue
                if is_non_semver(version):
                    if _GIT_SPEC.match(version):
                        kind = "git"
                    elif _FILE_SPEC.match(version):
                        kind = "file"
                    else:
                        kind = "url"
                    message = f'Non-semver dependency "{name}": {version} in {manifest.repo}'
                elif is_wildcard(version):
                    kind = "wildcard"
                    message = f'Wildcard dependency "{name}": {version} in {manifest.repo}'
                else:
                    continue
                warnings.append(
                    DependencyWarning(
                        name=name,
                        version=version,
                        source=manifest.repo,
                        kind=kind,
                        message=message,
                    )
                )
    return warnings
