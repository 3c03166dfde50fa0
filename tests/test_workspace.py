from __future__ import annotations

import os
from pathlib import Path

import pytest

from monorepo_merger.workspace import (
    COPY_EXCLUDES,
    ValidationError,
    copy_tree,
    ensure_directory,
    ensure_outside_sources,
    find_staging_dirs,
    log_path_for,
    new_staging_path,
    resolve_target,
    slug_from_remote,
    staging_artifacts,
    unique_name,
)


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("git@github.com:acme/web-ui.git", "web-ui"),
        ("https://github.com/acme/api-client/", "api-client"),
        ("file:///srv/git/shared utils.git", "shared-utils"),
        ("", "package"),
    ],
)
def test_slug_from_remote(remote: str, expected: str) -> None:
    assert slug_from_remote(remote) == expected


def test_unique_name_appends_counter() -> None:
    taken = {"core", "core-2"}

    assert unique_name("core", taken) == "core-3"
    assert unique_name("ui", taken) == "ui"
    assert unique_name("", taken, fallback="repo") == "repo"


def test_resolve_target_places_log_beside_target(tmp_path: Path) -> None:
    paths = resolve_target(tmp_path / "mono", "packages")

    assert paths.root == (tmp_path / "mono").resolve()
    assert paths.packages == paths.root / "packages"
    assert log_path_for(tmp_path / "mono") == tmp_path / "mono.ops.jsonl"


@pytest.mark.parametrize("packages_dir", ["", "/abs", "../escape", "libs/../../x"])
def test_resolve_target_rejects_bad_packages_dir(tmp_path: Path, packages_dir: str) -> None:
    with pytest.raises(ValidationError):
        resolve_target(tmp_path / "mono", packages_dir)


def test_resolve_target_rejects_file(tmp_path: Path) -> None:
    target = tmp_path / "mono"
    target.write_text("not a directory")

    with pytest.raises(ValidationError):
        resolve_target(target, "packages")


def test_ensure_outside_sources(tmp_path: Path) -> None:
    source = tmp_path / "repo"
    source.mkdir()

    ensure_outside_sources(tmp_path / "mono", [source])
    with pytest.raises(ValidationError):
        ensure_outside_sources(source, [source])
    with pytest.raises(ValidationError):
        ensure_outside_sources(source / "nested" / "mono", [source])


def test_ensure_directory(tmp_path: Path) -> None:
    planned = tmp_path / "a" / "b"

    ensure_directory(planned)
    ensure_directory(planned)
    assert planned.is_dir()

    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(ValidationError):
        ensure_directory(blocker)


def test_copy_tree_skips_git_metadata(tmp_path: Path) -> None:
    source = tmp_path / "repo"
    (source / "src").mkdir(parents=True)
    (source / "src" / "index.js").write_text("export {}\n")
    (source / "package.json").write_text("{}")
    (source / ".git" / "objects").mkdir(parents=True)
    (source / ".git" / "HEAD").write_text("ref: refs/heads/main\n")

    copied = copy_tree(source, tmp_path / "dest")

    assert copied == ["package.json", "src/index.js"]
    assert (tmp_path / "dest" / "src" / "index.js").read_text() == "export {}\n"
    assert not (tmp_path / "dest" / ".git").exists()


def test_copy_tree_skips_installs_and_build_output_at_any_depth(tmp_path: Path) -> None:
    source = tmp_path / "repo"
    (source / "src").mkdir(parents=True)
    (source / "src" / "index.js").write_text("")
    for excluded in sorted(COPY_EXCLUDES - {".git"}):
        (source / excluded).mkdir()
        (source / excluded / "artifact.txt").write_text("")
    (source / "src" / "node_modules" / "lodash").mkdir(parents=True)
    (source / "src" / "node_modules" / "lodash" / "index.js").write_text("")
    (source / "docs" / "build").mkdir(parents=True)
    (source / "docs" / "build" / "index.html").write_text("")
    (source / "docs" / "guide.md").write_text("")

    copied = copy_tree(source, tmp_path / "dest")

    assert copied == ["docs/guide.md", "src/index.js"]
    assert sorted(path.name for path in (tmp_path / "dest").iterdir()) == ["docs", "src"]


def test_copy_tree_honours_custom_excludes(tmp_path: Path) -> None:
    source = tmp_path / "repo"
    (source / "dist").mkdir(parents=True)
    (source / "dist" / "bundle.js").write_text("")
    (source / "fixtures").mkdir()
    (source / "fixtures" / "data.json").write_text("{}")

    copied = copy_tree(source, tmp_path / "dest", excludes={"fixtures"})

    assert copied == ["dist/bundle.js"]


def test_copy_tree_keeps_symlinks_including_dangling_ones(tmp_path: Path) -> None:
    source = tmp_path / "repo"
    (source / "lib").mkdir(parents=True)
    (source / "lib" / "real.js").write_text("module.exports = 1;\n")
    os.symlink("real.js", source / "lib" / "alias.js")
    os.symlink("../missing/cli.js", source / "lib" / "broken.js")
    os.symlink("lib", source / "lib-link")

    copied = copy_tree(source, tmp_path / "dest")

    dest = tmp_path / "dest"
    assert copied == ["lib/real.js"]
    assert os.readlink(dest / "lib" / "alias.js") == "real.js"
    assert (dest / "lib" / "alias.js").read_text() == "module.exports = 1;\n"
    assert (dest / "lib" / "broken.js").is_symlink()
    assert not (dest / "lib" / "broken.js").exists()
    assert (dest / "lib-link").is_symlink()


def test_staging_paths_sit_beside_target(tmp_path: Path) -> None:
    target = tmp_path / "mono"

    first = new_staging_path(target)
    second = new_staging_path(target)

    assert first.parent == tmp_path
    assert first.name.startswith("mono.staging-")
    assert len(first.name) == len("mono.staging-") + 8
    assert first != second
    assert find_staging_dirs(target) == []

    first.mkdir()
    log_path_for(first).write_text("")
    (tmp_path / "mono.staging-notahex!").mkdir()
    (tmp_path / "mono-other.staging-0000aaaa").mkdir()
    orphan = tmp_path / "mono.staging-0000ffff.ops.jsonl"
    orphan.write_text("")

    assert find_staging_dirs(target) == [first]
    assert staging_artifacts(target) == sorted([first, log_path_for(first), orphan])
