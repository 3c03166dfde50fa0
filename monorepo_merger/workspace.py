from __future__ import annotations

import re
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional


class MergerError(Exception):
    """Base exception for workspace merge errors."""


class ValidationError(MergerError):
    """Input rejected before anything on disk was touched."""


class PlanIntegrityError(MergerError):
    """The plan no longer matches the one recorded in the operation log."""


class ApplyStepError(MergerError):
    def __init__(self, operation_id: str, message: str) -> None:
        super().__init__(f"Operation '{operation_id}' failed: {message}")
        self.operation_id = operation_id


class OperationCancelled(MergerError):
    """Cancellation was requested and observed at a safe point."""


@dataclass(frozen=True)
class TargetPaths:
    root: Path
    packages: Path


LOG_SUFFIX = ".ops.jsonl"
STAGING_INFIX = ".staging-"

# Never copied into a merged package: VCS metadata, installs and build output.
COPY_EXCLUDES = frozenset(
    {"node_modules", ".git", ".pnpm-store", "dist", "build", ".next", ".nuxt", "coverage"}
)


def slug_from_remote(url: str) -> str:
    cleaned = url.strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    cleaned = cleaned.replace(":", "/")
    parts = [segment for segment in cleaned.split("/") if segment]
    if not parts:
        return "package"
    return _sanitize(parts[-1])


def log_path_for(target: Path) -> Path:
    # Sibling of the target, never inside it.
    target = target.expanduser()
    return target.parent / f"{target.name}{LOG_SUFFIX}"


def new_staging_path(target: Path) -> Path:
    return target.parent / f"{target.name}{STAGING_INFIX}{secrets.token_hex(4)}"


def _staging_names(target: Path, suffix: str = "") -> re.Pattern[str]:
    return re.compile(
        rf"^{re.escape(target.name)}{re.escape(STAGING_INFIX)}[0-9a-f]{{8}}{suffix}$"
    )


def find_staging_dirs(target: Path) -> list[Path]:
    """Staging directories left beside ``target`` by unfinished applies."""
    target = target.expanduser().resolve()
    if not target.parent.is_dir():
        return []
    pattern = _staging_names(target)
    return sorted(
        path for path in target.parent.iterdir() if path.is_dir() and pattern.match(path.name)
    )


def staging_artifacts(target: Path) -> list[Path]:
    # Includes logs whose staging directory was already renamed into place.
    target = target.expanduser().resolve()
    if not target.parent.is_dir():
        return []
    pattern = _staging_names(target, f"(?:{re.escape(LOG_SUFFIX)})?")
    return sorted(path for path in target.parent.iterdir() if pattern.match(path.name))


def resolve_target(target: Path, packages_dir: str) -> TargetPaths:
    if not packages_dir or Path(packages_dir).is_absolute() or ".." in Path(packages_dir).parts:
        raise ValidationError(f"Invalid packages directory: {packages_dir!r}")
    root = target.expanduser().resolve()
    if root.exists() and not root.is_dir():
        raise ValidationError(f"Target exists but is not a directory: {root}")
    return TargetPaths(root=root, packages=root / packages_dir)


def ensure_outside_sources(target: Path, sources: Iterable[Path]) -> None:
    resolved = target.expanduser().resolve()
    for source in sources:
        source_root = Path(source).expanduser().resolve()
        if resolved == source_root or source_root in resolved.parents:
            raise ValidationError(
                f"Target {resolved} must not be inside source repository {source_root}"
            )


def ensure_directory(path: Path) -> None:
    if path.exists() and not path.is_dir():
        raise ValidationError(f"Expected a directory at {path}")
    path.mkdir(parents=True, exist_ok=True)


def copy_tree(
    source: Path,
    destination: Path,
    excludes: Iterable[str] = COPY_EXCLUDES,
) -> list[str]:
    """Copy ``source`` into ``destination``, keeping symlinks as links.

    Any file or directory whose name is in ``excludes`` is skipped at every
    depth. Returns the copied regular files relative to ``source``.
    """
    copied: list[str] = []

    def copy_file(src: str, dst: str) -> str:
        copied.append(Path(src).relative_to(source).as_posix())
        return shutil.copy2(src, dst)

    shutil.copytree(
        source,
        destination,
        symlinks=True,
        ignore=shutil.ignore_patterns(*sorted(excludes)),
        copy_function=copy_file,
        dirs_exist_ok=True,
    )
    return sorted(copied)


def _sanitize(value: str) -> str:
    sanitized = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-")
    return sanitized or "package"


def unique_name(name: str, taken: set[str], fallback: Optional[str] = None) -> str:
    candidate = _sanitize(name or fallback or "package")
    if candidate not in taken:
        return candidate
    index = 2
    while f"{candidate}-{index}" in taken:
        index += 1
    return f"{candidate}-{index}"
