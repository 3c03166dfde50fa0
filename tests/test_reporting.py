from __future__ import annotations

from pathlib import Path

from monorepo_merger.analysis import analyze
from monorepo_merger.apply import ApplyResult
from monorepo_merger.collisions import FileCollision
from monorepo_merger.manifests import Manifest
from monorepo_merger.reporting import summarize_apply, summarize_cli, write_markdown_report


def make_manifest(name: str, deps: dict, dev: dict | None = None) -> Manifest:
    return Manifest(
        name=name,
        version="1.0.0",
        repo=name,
        path=f"/src/{name}",
        dependencies=deps,
        dev_dependencies=dev or {},
    )


def sample_result():
    result = analyze(
        [
            make_manifest("web", {"api": "^1.0.0", "lodash": "github:lodash/lodash"}, {"typescript": "^5.0.0"}),
            make_manifest("api", {"web": "^1.0.0"}, {"typescript": "^4.9.0"}),
        ]
    )
    result.collisions.append(
        FileCollision(path=".gitignore", sources=["web", "api"], suggested_strategy="merge")
    )
    return result


def test_summarize_cli_and_markdown(tmp_path: Path) -> None:
    result = sample_result()

    summary = summarize_cli(result)

    assert "Packages: web, api" in summary
    assert "typescript: major/high" in summary
    assert "^5.0.0 (web)" in summary
    assert "- api -> web -> api" in summary
    assert "- .gitignore: web, api -> merge" in summary
    assert "warning:" in summary

    report_path = tmp_path / "report.md"
    write_markdown_report(report_path, result)
    content = report_path.read_text()

    assert content.startswith("# Monorepo Merge Report")
    assert "## Dependency Conflicts" in content
    assert "- **typescript** (major, high confidence)" in content
    assert "## Circular Dependencies" in content
    assert "| typescript | 2 | `^5.0.0`, `^4.9.0` | yes |" in content
    assert "## File Collisions" in content
    assert "## Warnings" in content
    assert "## Repository Risks" not in content


def test_summarize_cli_without_findings() -> None:
    result = analyze([make_manifest("solo", {})])

    summary = summarize_cli(result)

    assert "Packages: solo" in summary
    assert "Complexity score: 0/100" in summary
    assert "Conflicts" not in summary


def test_summarize_apply() -> None:
    result = ApplyResult(
        target="/out/mono",
        log_path="/out/mono.staging-0a1b2c3d.ops.jsonl",
        plan_hash="abc",
        executed=["update-root-manifest"],
        skipped=["copy-web"],
        deferred=["install-deps"],
        staging="/out/mono.staging-0a1b2c3d",
    )

    summary = summarize_apply(result)

    assert "Executed: update-root-manifest" in summary
    assert "Already completed: copy-web" in summary
    assert "Deferred (run manually): install-deps" in summary
    assert "Staging: /out/mono.staging-0a1b2c3d" in summary
    assert "Operation log: /out/mono.staging-0a1b2c3d.ops.jsonl" in summary


def test_summarize_apply_finalized_and_dry_run() -> None:
    finished = ApplyResult(
        target="/out/mono",
        log_path="/out/mono.staging-0a1b2c3d.ops.jsonl",
        plan_hash="abc",
        executed=["copy-web"],
        finalized=True,
    )
    preview = ApplyResult(
        target="/out/mono",
        log_path="/out/mono.staging-0a1b2c3d.ops.jsonl",
        plan_hash="abc",
        planned=["copy-web", "update-root-manifest"],
    )

    finished_summary = summarize_apply(finished)
    preview_summary = summarize_apply(preview)

    assert "operation log removed" in finished_summary
    assert "Operation log:" not in finished_summary
    assert "Would run (dry run): copy-web, update-root-manifest" in preview_summary
    assert "Executed:" not in preview_summary
