from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import yaml

DEPENDENCY_KINDS = ("dependencies", "devDependencies", "peerDependencies")
MANIFEST_NAME = "package.json"


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    repo: str
    path: str
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)

    def dependency_maps(self) -> Iterator[Tuple[str, Dict[str, str]]]:
        yield "dependencies", self.dependencies
        yield "devDependencies", self.dev_dependencies
        yield "peerDependencies", self.peer_dependencies

    def declared_names(self) -> set[str]:
        names: set[str] = set()
        for _, deps in self.dependency_maps():
            names.update(deps)
        return names


@dataclass
class LockfileResolution:
    package_manager: str
    repo: str
    resolved: Dict[str, str]


def load_manifest(repo_path: Path, repo: str) -> Optional[Manifest]:
    manifest_path = repo_path / MANIFEST_NAME
    if not manifest_path.is_file():
        logging.debug("No %s in %s", MANIFEST_NAME, repo_path)
        return None
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logging.warning("Skipping unreadable manifest %s: %s", manifest_path, exc)
        return None
    if not isinstance(data, dict):
        logging.warning("Skipping manifest %s: top level is not an object", manifest_path)
        return None

    name = data.get("name")
    version = data.get("version")
    return Manifest(
        name=name if isinstance(name, str) and name else repo,
        version=version if isinstance(version, str) and version else "0.0.0",
        repo=repo,
        path=str(repo_path),
        dependencies=_string_map(data.get("dependencies"), manifest_path, "dependencies"),
        dev_dependencies=_string_map(
            data.get("devDependencies"), manifest_path, "devDependencies"
        ),
        peer_dependencies=_string_map(
            data.get("peerDependencies"), manifest_path, "peerDependencies"
        ),
        scripts=_string_map(data.get("scripts"), manifest_path, "scripts"),
    )


def load_manifests(repos: Sequence[Tuple[str, Path]]) -> List[Manifest]:
    manifests: List[Manifest] = []
    for repo, path in repos:
        manifest = load_manifest(Path(path), repo)
        if manifest is not None:
            manifests.append(manifest)
    return manifests


def _string_map(value: object, source: Path, label: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        logging.warning("Ignoring non-object %s in %s", label, source)
        return {}
    cleaned: Dict[str, str] = {}
    for key, item in value.items():
        if isinstance(key, str) and isinstance(item, str):
            cleaned[key] = item
        else:
            logging.debug("Ignoring malformed %s entry %r in %s", label, key, source)
    return cleaned


def read_lockfile(repo_path: Path, repo: str) -> Optional[LockfileResolution]:
    candidates = (
        ("pnpm", "pnpm-lock.yaml", parse_pnpm_lock),
        ("yarn", "yarn.lock", parse_yarn_lock),
        ("npm", "package-lock.json", parse_package_lock),
    )
    for manager, filename, parser in candidates:
        lock_path = repo_path / filename
        if not lock_path.is_file():
            continue
        try:
            content = lock_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logging.warning("Skipping unreadable lockfile %s: %s", lock_path, exc)
            continue
        resolved = parser(content)
        if resolved:
            return LockfileResolution(package_manager=manager, repo=repo, resolved=resolved)
        logging.debug("Lockfile %s yielded no resolutions", lock_path)
    return None


def read_lockfiles(repos: Sequence[Tuple[str, Path]]) -> Dict[str, LockfileResolution]:
    resolutions: Dict[str, LockfileResolution] = {}
    for repo, path in repos:
        resolution = read_lockfile(Path(path), repo)
        if resolution is not None:
            resolutions[repo] = resolution
    return resolutions


def parse_package_lock(content: str) -> Dict[str, str]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}

    result: Dict[str, str] = {}
    packages = data.get("packages")
    if isinstance(packages, dict):
        for key, entry in packages.items():
            if not key.startswith("node_modules/"):
                continue
            name = key[len("node_modules/"):]
            if "node_modules/" in name:
                continue
            if isinstance(entry, dict) and isinstance(entry.get("version"), str):
                result[name] = entry["version"]

    dependencies = data.get("dependencies")
    if not result and isinstance(dependencies, dict):
        for name, entry in dependencies.items():
            if isinstance(entry, dict) and isinstance(entry.get("version"), str):
                result[name] = entry["version"]
    return result


def parse_yarn_lock(content: str) -> Dict[str, str]:
    """Handle both classic (``version "1.2.3"``) and berry (``version: 1.2.3``) entries."""
    result: Dict[str, str] = {}
    current: Optional[str] = None
    for raw in content.splitlines():
        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        if not raw[0].isspace():
            current = _yarn_entry_name(raw.rstrip().rstrip(":"))
            continue
        if current is None:
            continue
        stripped = raw.strip()
        if stripped.startswith("version"):
            value = stripped[len("version"):].lstrip(":").strip().strip("\"'")
            if value:
                result[current] = value
            current = None
    return result


def _yarn_entry_name(header: str) -> Optional[str]:
    first = header.split(",")[0].strip().strip("\"'")
    if not first or first.startswith("__"):
        return None
    index = first.find("@", 1)
    if index <= 0:
        return None
    if "workspace:" in first[index:]:
        return None
    return first[:index]


def parse_pnpm_lock(content: str) -> Dict[str, str]:
    """Read root importer versions (lockfile v6+) or root dependency sections (v5)."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        logging.warning("Skipping unparseable pnpm lockfile: %s", exc)
        return {}
    if not isinstance(data, dict):
        return {}

    root = data
    importers = data.get("importers")
    if isinstance(importers, dict) and isinstance(importers.get("."), dict):
        root = importers["."]

    result: Dict[str, str] = {}
    for section in ("dependencies", "devDependencies"):
        entries = root.get(section)
        if not isinstance(entries, dict):
            continue
        for name, entry in entries.items():
            # v6+ maps to {specifier, version}; v5 maps straight to the version.
            value = entry.get("version") if isinstance(entry, dict) else entry
            if isinstance(name, str) and isinstance(value, (str, int, float)):
                version = _clean_pnpm_version(str(value))
                if version:
                    result[name] = version
    return result


def _clean_pnpm_version(value: str) -> str:
    cleaned = value.strip()
    cleaned = cleaned.split("(", 1)[0]
    return cleaned.split("_", 1)[0].strip()
