from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Sequence, Tuple

STRATEGY_PRIORITY = {"merge": 0, "keep-first": 1, "keep-last": 2, "rename": 3, "skip": 4}


@dataclass(frozen=True)
class CollisionRules:
    mergeable: FrozenSet[str] = frozenset(
        {".gitignore", ".npmignore", ".eslintignore", ".prettierignore"}
    )
    keep_first: FrozenSet[str] = frozenset(
        {"LICENSE", "LICENSE.md", "LICENSE.txt", ".editorconfig", ".nvmrc", ".node-version"}
    )
    # Regenerated for the merged workspace.
    skip: FrozenSet[str] = frozenset(
        {
            "package.json",
            "package-lock.json",
            "pnpm-lock.yaml",
            "yarn.lock",
            "pnpm-workspace.yaml",
            ".yarnrc.yml",
            ".yarnrc",
            ".npmrc",
        }
    )
    keep_first_prefixes: Tuple[str, ...] = ("readme",)

    def strategy_for(self, filename: str) -> str:
        if filename in self.skip:
            return "skip"
        if filename in self.mergeable:
            return "merge"
        if filename in self.keep_first:
            return "keep-first"
        if filename.lower().startswith(self.keep_first_prefixes):
            return "keep-first"
        return "rename"


DEFAULT_COLLISION_RULES = CollisionRules()


@dataclass
class FileCollision:
    path: str
    sources: List[str] = field(default_factory=list)
    suggested_strategy: str = "rename"


def list_root_files(repo_path: Path) -> List[str]:
    return sorted(
        item.name
        for item in repo_path.iterdir()
        if item.is_file() and item.name != ".git"
    )


def detect_file_collisions(
    repos: Sequence[Tuple[str, Path]],
    rules: CollisionRules = DEFAULT_COLLISION_RULES,
) -> List[FileCollision]:
    owners: Dict[str, List[str]] = {}
    for repo, path in repos:
        try:
            files = list_root_files(Path(path))
        except OSError as exc:
            logging.warning("Unable to list files in %s: %s", path, exc)
            continue
        for filename in files:
            owners.setdefault(filename, []).append(repo)

    collisions = [
        FileCollision(path=filename, sources=sources, suggested_strategy=rules.strategy_for(filename))
        for filename, sources in owners.items()
        if len(sources) > 1
    ]
    collisions.sort(key=lambda collision: STRATEGY_PRIORITY[collision.suggested_strategy])
    return collisions
