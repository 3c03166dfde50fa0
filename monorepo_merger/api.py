from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Sequence, Tuple

from .analysis import AnalysisResult, analyze_repositories
from .apply import ApplyResult, apply_plan
from .gitutils import is_remote_url
from .graph import DEFAULT_HOTSPOT_LIMIT
from .hub import OperationContext, OperationHub
from .plan import Plan, PlanSettings, build_plan, load_plan, save_plan
from .sources import RepoSource, acquire_sources
from .workspace import ensure_outside_sources, resolve_target

PLAN_SUFFIX = ".plan.json"
SOURCES_SUFFIX = ".sources"


def default_plan_path(target: Path) -> Path:
    target = target.expanduser().resolve()
    return target.parent / f"{target.name}{PLAN_SUFFIX}"


def default_sources_dir(plan_path: Path) -> Path:
    # Clones and local snapshots live beside the plan that refers to them.
    plan_path = plan_path.expanduser().resolve()
    return plan_path.parent / f"{plan_path.name}{SOURCES_SUFFIX}"


def _repo_pairs(sources: Sequence[RepoSource]) -> list[Tuple[str, Path]]:
    return [(source.name, Path(source.path)) for source in sources]


def run_analyze(
    specs: Sequence[str],
    *,
    sources_dir: Path | None = None,
    hotspot_limit: int = DEFAULT_HOTSPOT_LIMIT,
) -> AnalysisResult:
    sources = acquire_sources(specs, sources_dir)
    logging.info("Analyzing %d source repositories", len(sources))
    return analyze_repositories(_repo_pairs(sources), hotspot_limit=hotspot_limit)


def run_plan(
    specs: Sequence[str],
    target: Path,
    *,
    settings: PlanSettings | None = None,
    sources_dir: Path | None = None,
    plan_file: Path | None = None,
) -> Tuple[Plan, Path]:
    settings = settings or PlanSettings()
    settings.validate()
    paths = resolve_target(target, settings.packages_dir)
    ensure_outside_sources(paths.root, [Path(spec) for spec in specs if not is_remote_url(spec)])
    destination = plan_file or default_plan_path(paths.root)
    sources = acquire_sources(
        specs,
        sources_dir or default_sources_dir(destination),
        snapshot_local=True,
    )
    ensure_outside_sources(paths.root, [Path(source.path) for source in sources])

    analysis = analyze_repositories(_repo_pairs(sources), hotspot_limit=settings.hotspot_limit)
    plan = build_plan(analysis, sources, paths.root, settings)
    save_plan(plan, destination)
    return plan, destination


def run_apply(
    plan_path: Path,
    *,
    run_install: bool = False,
    should_cancel: Callable[[], bool] | None = None,
    dry_run: bool = False,
    resume: bool = False,
) -> ApplyResult:
    plan = load_plan(plan_path)
    logging.info("Applying plan %s to %s", plan_path, plan.target)
    return apply_plan(
        plan,
        run_install=run_install,
        should_cancel=should_cancel,
        dry_run=dry_run,
        resume=resume,
    )


def submit_analyze(hub: OperationHub, specs: Sequence[str], **kwargs: Any) -> str:
    async def work(ctx: OperationContext) -> Dict[str, Any]:
        result = await ctx.run_sync(run_analyze, list(specs), **kwargs)
        return result.to_dict()

    return hub.submit(work)


def submit_plan(hub: OperationHub, specs: Sequence[str], target: Path, **kwargs: Any) -> str:
    async def work(ctx: OperationContext) -> Dict[str, Any]:
        plan, destination = await ctx.run_sync(run_plan, list(specs), target, **kwargs)
        return {"plan_file": str(destination), "plan": plan.to_dict()}

    return hub.submit(work)


def submit_apply(hub: OperationHub, plan_path: Path, **kwargs: Any) -> str:
    async def work(ctx: OperationContext) -> Dict[str, Any]:
        result = await ctx.run_sync(
            run_apply,
            plan_path,
            should_cancel=lambda: ctx.cancelled,
            **kwargs,
        )
        return asdict(result)

    return hub.submit(work)
