from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from .api import run_analyze, run_apply, run_plan
from .apply import cleanup_staging, read_progress
from .graph import DEFAULT_HOTSPOT_LIMIT
from .plan import PACKAGE_MANAGERS, RESOLUTION_POLICIES, PlanSettings
from .reporting import summarize_apply, summarize_cli, write_markdown_report
from .workspace import MergerError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="monorepo-merger",
        description="Merge independent package repositories into one workspace.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_parser = subparsers.add_parser("analyze", help="Report conflicts and merge hazards.")
    _add_source_arguments(analyze_parser)
    analyze_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the analysis as JSON instead of a summary.",
    )
    analyze_parser.add_argument(
        "--report",
        type=Path,
        help="Write a markdown report to this path.",
    )
    analyze_parser.add_argument(
        "--hotspot-limit",
        type=int,
        default=DEFAULT_HOTSPOT_LIMIT,
        help="Maximum number of shared dependencies to list.",
    )

    plan_parser = subparsers.add_parser("plan", help="Analyze sources and write a merge plan.")
    _add_source_arguments(plan_parser)
    _add_plan_arguments(plan_parser)

    apply_parser = subparsers.add_parser("apply", help="Execute (or resume) a merge plan.")
    apply_parser.add_argument(
        "--plan",
        required=True,
        type=Path,
        help="Plan file produced by the plan command.",
    )
    apply_parser.add_argument(
        "--run-install",
        action="store_true",
        help="Run the dependency install step instead of deferring it.",
    )
    apply_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the operations that would run without touching the disk.",
    )
    apply_parser.add_argument(
        "--resume",
        action="store_true",
        help="Fail unless an unfinished apply for this plan's target exists.",
    )

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Remove staging directories and logs left by unfinished applies."
    )
    cleanup_parser.add_argument(
        "--out",
        required=True,
        type=Path,
        help="Target directory whose staging artifacts should be removed.",
    )
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Describe the cleanup without deleting anything.",
    )
    return parser


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "sources",
        nargs="+",
        metavar="SOURCE",
        help="Local directory, bare repository or remote URL (repeatable).",
    )
    parser.add_argument(
        "--sources-dir",
        type=Path,
        help="Where bare or remote sources are cloned; plan also copies local sources here.",
    )


def _add_plan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--out",
        required=True,
        type=Path,
        help="Target directory for the merged workspace.",
    )
    parser.add_argument(
        "--plan-file",
        type=Path,
        help="Where to write the plan (defaults to <out>.plan.json).",
    )
    parser.add_argument(
        "--packages-dir",
        default="packages",
        help="Directory inside the target that holds the merged packages.",
    )
    parser.add_argument(
        "--conflict-strategy",
        choices=RESOLUTION_POLICIES,
        default="highest",
        help="How to pick a version for conflicting declarations.",
    )
    parser.add_argument(
        "--package-manager",
        choices=sorted(PACKAGE_MANAGERS),
        default="pnpm",
        help="Package manager used for scripts and the install step.",
    )
    parser.add_argument(
        "--no-install",
        action="store_true",
        help="Leave the install step out of the plan.",
    )
    parser.add_argument(
        "--hotspot-limit",
        type=int,
        default=DEFAULT_HOTSPOT_LIMIT,
        help="Maximum number of shared dependencies recorded in the plan.",
    )


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def run(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    logging.debug("Arguments: %s", args)

    if args.command == "analyze":
        return _run_analyze(args)
    if args.command == "plan":
        return _run_plan(args)
    if args.command == "apply":
        return _run_apply(args)
    if args.command == "cleanup":
        return _run_cleanup(args)
    raise MergerError(f"Unknown command: {args.command}")


def _run_analyze(args: argparse.Namespace) -> int:
    result = run_analyze(
        args.sources,
        sources_dir=args.sources_dir,
        hotspot_limit=args.hotspot_limit,
    )
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        logging.info("\n%s", summarize_cli(result))
    if args.report:
        write_markdown_report(args.report, result)
    return 0


def _run_plan(args: argparse.Namespace) -> int:
    settings = PlanSettings(
        packages_dir=args.packages_dir,
        conflict_strategy=args.conflict_strategy,
        package_manager=args.package_manager,
        install=not args.no_install,
        hotspot_limit=args.hotspot_limit,
    )
    plan, plan_path = run_plan(
        args.sources,
        args.out,
        settings=settings,
        sources_dir=args.sources_dir,
        plan_file=args.plan_file,
    )
    for decision in plan.decisions:
        logging.info("Decision %s: %s", decision.id, decision.chosen)
    logging.info(
        "Plan ready: %d operation(s), complexity %s/100. Apply with: monorepo-merger apply --plan %s",
        len(plan.operations),
        plan.analysis.get("complexity_score", 0),
        plan_path,
    )
    return 0


def _run_apply(args: argparse.Namespace) -> int:
    result = run_apply(
        args.plan,
        run_install=args.run_install,
        dry_run=args.dry_run,
        resume=args.resume,
    )
    logging.info("\n%s", summarize_apply(result))
    return 0


def _run_cleanup(args: argparse.Namespace) -> int:
    for progress in read_progress(args.out):
        logging.info(
            "%s records %d completed and %d failed operation(s)",
            progress.log_path,
            len(progress.completed),
            len(progress.failed),
        )
    cleanup_staging(args.out, dry_run=args.dry_run)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return run(args)
    except MergerError as exc:
        logging.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        logging.error("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
