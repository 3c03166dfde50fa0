from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from .gitutils import clone_repo, git_rev_parse, has_git_dir, is_bare_repo, is_remote_url
from .workspace import (
    ValidationError,
    copy_tree,
    ensure_outside_sources,
    slug_from_remote,
    unique_name,
)

MANIFEST_NAME = "package.json"


@dataclass
class RepoSource:
    name: str
    path: str
    origin: str
    revision: str | None = None


def acquire_sources(
    specs: Sequence[str],
    sources_dir: Path | None = None,
    *,
    dry_run: bool = False,
    snapshot_local: bool = False,
) -> List[RepoSource]:
    """Resolve each source spec to a local working directory.

    Local directories are used in place unless ``snapshot_local`` is set, in
    which case they are copied into ``sources_dir`` so later edits to the
    originals cannot change what a saved plan copies. Bare repositories and
    remote URLs are cloned into ``sources_dir``; an already populated clone is
    reused.
    """
    if not specs:
        raise ValidationError("At least one source repository is required.")

    sources: List[RepoSource] = []
    taken: set[str] = set()
    for spec in specs:
        source = _acquire_single(
            spec, sources_dir, taken, dry_run=dry_run, snapshot_local=snapshot_local
        )
        taken.add(source.name)
        sources.append(source)
    return sources


def _acquire_single(
    spec: str,
    sources_dir: Path | None,
    taken: set[str],
    *,
    dry_run: bool,
    snapshot_local: bool = False,
) -> RepoSource:
    if is_remote_url(spec):
        name = unique_name(slug_from_remote(spec), taken)
        path = _clone_into(spec, name, sources_dir, dry_run=dry_run)
        if not dry_run:
            _require_manifest(path)
        return RepoSource(name=name, path=str(path), origin=spec, revision=_revision(path))

    local = Path(spec).expanduser().resolve()
    if not local.exists():
        raise ValidationError(f"Source repository path does not exist: {local}")
    if not local.is_dir():
        raise ValidationError(f"Source repository is not a directory: {local}")

    if is_bare_repo(local):
        name = unique_name(slug_from_remote(local.name), taken)
        path = _clone_into(str(local), name, sources_dir, dry_run=dry_run)
        if not dry_run:
            _require_manifest(path)
        return RepoSource(name=name, path=str(path), origin=str(local), revision=_revision(path))

    _require_manifest(local)
    name = unique_name(local.name, taken)
    path = local
    if snapshot_local:
        path = _snapshot_into(local, name, sources_dir, dry_run=dry_run)
    return RepoSource(name=name, path=str(path), origin=str(local), revision=_revision(local))


def _require_manifest(path: Path) -> None:
    if not (path / MANIFEST_NAME).is_file():
        raise ValidationError(f"No {MANIFEST_NAME} found in source repository: {path}")


def _clone_into(origin: str, name: str, sources_dir: Path | None, *, dry_run: bool) -> Path:
    if sources_dir is None:
        raise ValidationError(f"A sources directory is required to clone {origin}")
    destination = sources_dir.expanduser().resolve() / name
    if dry_run:
        logging.info("Dry run: would clone %s -> %s", origin, destination)
        return destination
    if destination.exists() and any(destination.iterdir()):
        logging.info("Source %s already present at %s; reusing.", origin, destination)
        return destination
    destination.parent.mkdir(parents=True, exist_ok=True)
    logging.info("Cloning %s into %s", origin, destination)
    try:
        clone_repo(origin, destination)
    except subprocess.CalledProcessError as exc:
        raise ValidationError(f"git clone failed for {origin}: {exc.stderr.strip()}") from exc
    return destination


def _snapshot_into(origin: Path, name: str, sources_dir: Path | None, *, dry_run: bool) -> Path:
    if sources_dir is None:
        raise ValidationError(f"A sources directory is required to copy {origin}")
    destination = sources_dir.expanduser().resolve() / name
    ensure_outside_sources(destination, [origin])
    if dry_run:
        logging.info("Dry run: would copy %s -> %s", origin, destination)
        return destination
    if destination.exists():
        # Refreshed on every plan.
        shutil.rmtree(destination)
    copied = copy_tree(origin, destination)
    logging.info("Copied %s into %s (%d files)", origin, destination, len(copied))
    return destination


def _revision(path: Path) -> str | None:
    if not path.exists() or not has_git_dir(path):
        return None
    try:
        return git_rev_parse(path)
    except (RuntimeError, OSError) as exc:
        logging.debug("Unable to read HEAD for %s: %s", path, exc)
        return None
