from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .analysis import AnalysisResult
from .apply import ApplyResult


def _conflict_line(conflict) -> str:
    versions = ", ".join(
        f"{entry.version} ({entry.source})" for entry in conflict.versions
    )
    tag = f", {conflict.conflict_source}" if conflict.conflict_source else ""
    return f"{conflict.name}: {conflict.severity}/{conflict.confidence}{tag} [{versions}]"


def summarize_cli(result: AnalysisResult) -> str:
    lines: List[str] = []
    lines.append("Merge Analysis Summary")
    lines.append("======================")
    lines.append(f"Packages: {', '.join(m.name for m in result.packages) or 'none'}")
    lines.append(f"Complexity score: {result.complexity_score}/100")
    if result.conflicts:
        lines.append("")
        lines.append(f"Conflicts ({len(result.conflicts)})")
        for conflict in result.conflicts:
            lines.append(f"- {_conflict_line(conflict)}")
    if result.cycles:
        lines.append("")
        lines.append(f"Cycles ({len(result.cycles)})")
        for cycle in result.cycles:
            lines.append(f"- {' -> '.join(cycle.cycle + cycle.cycle[:1])}")
    if result.hotspots:
        lines.append("")
        lines.append("Hotspots")
        for hotspot in result.hotspots:
            marker = " (conflict)" if hotspot.has_conflict else ""
            lines.append(f"- {hotspot.name}: {hotspot.dependent_count} dependents{marker}")
    if result.collisions:
        lines.append("")
        lines.append("File collisions")
        for collision in result.collisions:
            lines.append(
                f"- {collision.path}: {', '.join(collision.sources)} -> {collision.suggested_strategy}"
            )
    if result.risks:
        lines.append("")
        lines.append("Risks")
        for risk in result.risks:
            lines.append(f"- [{risk.severity}] {risk.kind} in {risk.source}: {risk.detail}")
    for warning in result.warnings:
        lines.append(f"warning: {warning.message}")
    return "\n".join(lines)


def summarize_apply(result: ApplyResult) -> str:
    lines = ["Apply Summary", "============="]
    lines.append(f"Target: {result.target}")
    if result.planned:
        lines.append(f"Would run (dry run): {', '.join(result.planned)}")
    else:
        lines.append(f"Executed: {', '.join(result.executed) or 'none'}")
    if result.skipped:
        lines.append(f"Already completed: {', '.join(result.skipped)}")
    if result.deferred:
        lines.append(f"Deferred (run manually): {', '.join(result.deferred)}")
    if result.finalized:
        lines.append("Staging directory moved into place; operation log removed.")
    else:
        lines.append(f"Staging: {result.staging}")
        lines.append(f"Operation log: {result.log_path}")
    return "\n".join(lines)


def write_markdown_report(output_path: Path, result: AnalysisResult) -> None:
    lines = ["# Monorepo Merge Report", ""]
    lines.append(f"Complexity score: **{result.complexity_score}/100**")
    lines.append("")

    lines.append("## Packages")
    lines.append("")
    for manifest in result.packages:
        lines.append(f"- **{manifest.name}** `{manifest.version}` from `{manifest.path}`")
        manager = result.package_managers.get(manifest.repo)
        if manager:
            lines.append(f"  - Lockfile: {manager}")
    lines.append("")

    if result.conflicts:
        lines.append("## Dependency Conflicts")
        lines.append("")
        for conflict in result.conflicts:
            lines.append(
                f"- **{conflict.name}** ({conflict.severity}, {conflict.confidence} confidence)"
            )
            for entry in conflict.versions:
                lines.append(f"  - `{entry.version}` in {entry.source} ({entry.kind})")
        lines.append("")

    if result.cycles:
        lines.append("## Circular Dependencies")
        lines.append("")
        for cycle in result.cycles:
            hops = " → ".join(f"`{name}`" for name in cycle.cycle + cycle.cycle[:1])
            lines.append(f"- {hops} ({', '.join(cycle.edge_kinds)})")
        lines.append("")

    if result.hotspots:
        lines.append("## Hotspots")
        lines.append("")
        lines.append("| Package | Dependents | Ranges | Conflict |")
        lines.append("| --- | --- | --- | --- |")
        for hotspot in result.hotspots:
            ranges = ", ".join(f"`{r}`" for r in hotspot.version_ranges)
            lines.append(
                f"| {hotspot.name} | {hotspot.dependent_count} | {ranges} | "
                f"{'yes' if hotspot.has_conflict else 'no'} |"
            )
        lines.append("")

    if result.collisions:
        lines.append("## File Collisions")
        lines.append("")
        for collision in result.collisions:
            lines.append(
                f"- `{collision.path}` in {', '.join(collision.sources)}: "
                f"{collision.suggested_strategy}"
            )
        lines.append("")

    if result.risks:
        lines.append("## Repository Risks")
        lines.append("")
        for risk in result.risks:
            lines.append(f"- **{risk.kind}** ({risk.severity}) in {risk.source}: {risk.detail}")
        lines.append("")

    if result.warnings:
        lines.append("## Warnings")
        lines.append("")
        for warning in result.warnings:
            lines.append(f"- {warning.message}")

    output_path.write_text("\n".join(lines).rstrip() + "\n")
    logging.info("Wrote report to %s", output_path)
