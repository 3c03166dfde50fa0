from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from .collisions import list_root_files

LARGE_FILE_THRESHOLD = 1_000_000


@dataclass
class RepoRisk:
    kind: str
    source: str
    path: str
    detail: str
    severity: str


def detect_repo_risks(
    repos: Sequence[Tuple[str, Path]],
    *,
    large_file_threshold: int = LARGE_FILE_THRESHOLD,
) -> List[RepoRisk]:
    """Report submodules, LFS usage, oversized root files and case-only name clashes."""
    risks: List[RepoRisk] = []
    listings: Dict[str, List[str]] = {}

    for repo, raw_path in repos:
        path = Path(raw_path)
        risks.extend(_submodule_risks(repo, path))
        risks.extend(_lfs_risks(repo, path))
        try:
            files = list_root_files(path)
        except OSError as exc:
            logging.warning("Unable to list files in %s: %s", path, exc)
            continue
        listings[repo] = files
        for filename in files:
            try:
                size = (path / filename).stat().st_size
            except OSError:
                continue
            if size > large_file_threshold:
                risks.append(
                    RepoRisk(
                        kind="large-file",
                        source=repo,
                        path=str(path / filename),
                        detail=f"{size / 1_000_000:.1f} MB",
                        severity="warn",
                    )
                )

    risks.extend(_case_collisions(listings))
    logging.debug("Repository risk scan: %d finding(s)", len(risks))
    return risks


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logging.warning("Unable to read %s: %s", path, exc)
        return None


def _submodule_risks(repo: str, path: Path) -> List[RepoRisk]:
    gitmodules = path / ".gitmodules"
    if not gitmodules.is_file():
        return []
    content = _read_text(gitmodules)
    if content is None:
        return []
    count = content.count("[submodule")
    return [
        RepoRisk(
            kind="submodules",
            source=repo,
            path=str(gitmodules),
            detail=f"{count} submodule(s)",
            severity="error",
        )
    ]


def _lfs_risks(repo: str, path: Path) -> List[RepoRisk]:
    attributes = path / ".gitattributes"
    if not attributes.is_file():
        return []
    content = _read_text(attributes)
    if content is None or "filter=lfs" not in content:
        return []
    patterns = [
        line.split()[0]
        for line in content.splitlines()
        if "filter=lfs" in line and line.split()
    ]
    return [
        RepoRisk(
            kind="lfs",
            source=repo,
            path=str(attributes),
            detail="LFS tracked: " + ", ".join(patterns),
            severity="warn",
        )
    ]


def _case_collisions(listings: Dict[str, List[str]]) -> List[RepoRisk]:
    by_lower: Dict[str, List[Tuple[str, str]]] = {}
    for repo, files in listings.items():
        for filename in files:
            by_lower.setdefault(filename.lower(), []).append((repo, filename))

    risks: List[RepoRisk] = []
    for entries in by_lower.values():
        names = list(dict.fromkeys(filename for _, filename in entries))
        if len(names) < 2:
            continue
        risks.append(
            RepoRisk(
                kind="case-collision",
                source=", ".join(dict.fromkeys(repo for repo, _ in entries)),
                path=names[0],
                detail=" vs ".join(names),
                severity="error",
            )
        )
    return risks
