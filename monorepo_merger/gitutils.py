from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Sequence, Union

REMOTE_PREFIXES = ("http://", "https://", "ssh://", "git://", "git@", "file://")


def is_bare_repo(path: Path) -> bool:
    path = path.expanduser().resolve()
    head = path / "HEAD"
    objects = path / "objects"
    refs = path / "refs"
    git_dir = path / ".git"
    return head.is_file() and objects.is_dir() and refs.is_dir() and not git_dir.exists()


def has_git_dir(path: Path) -> bool:
    return (path / ".git").exists()


def is_remote_url(value: str) -> bool:
    return value.startswith(REMOTE_PREFIXES)


def run_git(repo: Path, args: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", "-C", str(repo)] + list(args),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


def git_rev_parse(repo: Path) -> str:
    result = run_git(repo, ["rev-parse", "HEAD"])
    if result.returncode != 0:
        raise RuntimeError(f"git rev-parse failed for {repo}: {result.stderr.strip()}")
    return result.stdout.strip()


def clone_repo(source: Union[Path, str], destination: Path) -> None:
    args = ["git", "clone", str(source), str(destination)]
    subprocess.run(
        args,
        check=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
