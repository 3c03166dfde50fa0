from __future__ import annotations

import json
import logging
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .oplog import OperationLog, OperationLogEntry, now
from .plan import ROOT_MANIFEST, Plan, PlanOperation, plan_hash, validate_plan
from .workspace import (
    ApplyStepError,
    OperationCancelled,
    PlanIntegrityError,
    TargetPaths,
    ValidationError,
    copy_tree,
    ensure_directory,
    ensure_outside_sources,
    find_staging_dirs,
    log_path_for,
    new_staging_path,
    resolve_target,
    staging_artifacts,
)


@dataclass
class ApplyResult:
    target: str
    log_path: str
    plan_hash: str
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    staging: str = ""
    finalized: bool = False


@dataclass
class ApplyProgress:
    staging: str
    log_path: str
    plan_hash: Optional[str]
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def apply_plan(
    plan: Plan,
    *,
    run_install: bool = False,
    should_cancel: Callable[[], bool] | None = None,
    dry_run: bool = False,
    resume: bool = False,
) -> ApplyResult:
    """Build the merged workspace in a staging directory, then rename it into place.

    The staging directory sits beside the target as ``<target>.staging-<nonce>``
    with its operation log next to it. An unfinished staging directory is picked
    up again automatically; ``resume=True`` additionally insists that one exists.
    Operations already recorded as completed are skipped. Cancellation is only
    observed between operations; a step that has started is always finished
    and recorded. The log is removed once the target is in place.
    """
    validate_plan(plan.to_dict())
    paths = resolve_target(Path(plan.target), plan.packages_dir)
    ensure_outside_sources(paths.root, [Path(source.path) for source in plan.sources])
    if paths.root.exists() and any(paths.root.iterdir()):
        raise ValidationError(
            f"Target {paths.root} already exists and is not empty; choose another --out."
        )

    digest = plan_hash(plan)
    staging = _select_staging(paths.root, resume)
    if staging is None:
        staging = new_staging_path(paths.root)
    log = OperationLog(log_path_for(staging))
    if log.entries:
        header = log.header
        if header is None or header.plan_hash != digest:
            raise PlanIntegrityError(
                f"Plan does not match the operation log at {log.path}; "
                "run cleanup before applying a changed plan."
            )
        logging.info(
            "Resuming apply in %s: %d operation(s) already completed",
            staging,
            len(log.completed_ids()),
        )

    _validate_copy_inputs(plan, log)

    result = ApplyResult(
        target=str(paths.root),
        log_path=str(log.path),
        plan_hash=digest,
        staging=str(staging),
    )
    if dry_run:
        return _describe(plan, log, result)

    stage = TargetPaths(root=staging, packages=staging / plan.packages_dir)
    ensure_directory(stage.packages)
    if not log.entries:
        log.write_header(digest)
        logging.info("Starting apply in %s", staging)

    for operation in plan.operations:
        if log.is_completed(operation.id):
            logging.debug("Operation %s already completed; skipping", operation.id)
            result.skipped.append(operation.id)
            continue
        _check_cancel(should_cancel, f"before operation '{operation.id}'")

        if operation.type == "exec" and not run_install:
            logging.info(
                "Deferred %s: run `%s` in %s when ready",
                operation.id,
                " ".join(operation.inputs) or plan.install_command,
                paths.root,
            )
            result.deferred.append(operation.id)
            continue

        _run_operation(operation, plan, stage, log)
        result.executed.append(operation.id)

    _check_cancel(should_cancel, "before finalizing")
    _finalize(staging, paths.root, log)
    result.finalized = True

    logging.info(
        "Apply finished: %d executed, %d skipped, %d deferred",
        len(result.executed),
        len(result.skipped),
        len(result.deferred),
    )
    return result


def _select_staging(target: Path, resume: bool) -> Optional[Path]:
    existing = find_staging_dirs(target)
    if len(existing) > 1:
        names = ", ".join(path.name for path in existing)
        raise ValidationError(
            f"Several unfinished applies found for {target} ({names}); run cleanup first."
        )
    if existing:
        return existing[0]
    if resume:
        raise ValidationError(f"No unfinished apply to resume for {target}")
    return None


def _check_cancel(should_cancel: Callable[[], bool] | None, where: str) -> None:
    if should_cancel is not None and should_cancel():
        raise OperationCancelled(f"Apply cancelled {where}")


def _describe(plan: Plan, log: OperationLog, result: ApplyResult) -> ApplyResult:
    for operation in plan.operations:
        if log.is_completed(operation.id):
            result.skipped.append(operation.id)
            continue
        logging.info("Dry run: would run %s: %s", operation.id, operation.description)
        result.planned.append(operation.id)
    return result


def _finalize(staging: Path, target: Path, log: OperationLog) -> None:
    if target.exists():
        # Checked empty before any work started.
        target.rmdir()
    staging.rename(target)
    logging.info("Moved %s into place at %s", staging.name, target)
    log.path.unlink()


def _validate_copy_inputs(plan: Plan, log: OperationLog) -> None:
    for operation in plan.operations:
        if operation.type != "copy" or log.is_completed(operation.id):
            continue
        for source in operation.inputs:
            if not Path(source).is_dir():
                raise ValidationError(
                    f"Source path not found for {operation.id}: {source}. Regenerate the plan."
                )


def _run_operation(
    operation: PlanOperation,
    plan: Plan,
    paths: TargetPaths,
    log: OperationLog,
) -> None:
    log.append(OperationLogEntry(id=operation.id, status="started", timestamp=now()))
    logging.info("Running %s: %s", operation.id, operation.description)
    start = time.monotonic()
    try:
        outputs = _dispatch(operation, plan, paths)
    except Exception as exc:
        log.append(
            OperationLogEntry(
                id=operation.id,
                status="failed",
                timestamp=now(),
                duration_ms=_elapsed_ms(start),
                error=str(exc),
            )
        )
        raise ApplyStepError(operation.id, str(exc)) from exc
    log.append(
        OperationLogEntry(
            id=operation.id,
            status="completed",
            timestamp=now(),
            outputs=outputs,
            duration_ms=_elapsed_ms(start),
        )
    )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _dispatch(operation: PlanOperation, plan: Plan, paths: TargetPaths) -> List[str]:
    if operation.type == "copy":
        return _copy(operation, paths)
    if operation.type == "write":
        return _write(operation, plan, paths)
    if operation.type == "exec":
        return _exec(operation, plan, paths)
    raise ValueError(f"Unknown operation type: {operation.type}")


def _copy(operation: PlanOperation, paths: TargetPaths) -> List[str]:
    source = Path(operation.inputs[0])
    destination = paths.root / operation.outputs[0]
    if destination.exists():
        # Left over from an interrupted attempt at this same step.
        logging.debug("Removing partial copy at %s", destination)
        shutil.rmtree(destination)
    copied = copy_tree(source, destination)
    logging.debug("Copied %d file(s) from %s to %s", len(copied), source, destination)
    return list(operation.outputs)


def _write(operation: PlanOperation, plan: Plan, paths: TargetPaths) -> List[str]:
    files = {item.relative_path: item.content for item in plan.files}
    for output in operation.outputs:
        destination = paths.root / output
        destination.parent.mkdir(parents=True, exist_ok=True)
        if output == ROOT_MANIFEST:
            existing = _read_json_object(destination)
            merged = merge_root_manifest(existing, plan.root_manifest)
            destination.write_text(json.dumps(merged, indent=2) + "\n")
        elif output in files:
            destination.write_text(files[output])
        else:
            raise ValueError(f"No content in plan for {output}")
    return list(operation.outputs)


def _read_json_object(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def merge_root_manifest(existing: Mapping[str, Any], planned: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``planned`` over ``existing``; workspace members are unioned and sorted."""
    merged: Dict[str, Any] = dict(existing)
    for key, value in planned.items():
        current = merged.get(key)
        if key == "workspaces":
            members = current if isinstance(current, list) else []
            merged[key] = sorted(set(members) | set(value))
        elif isinstance(value, dict) and isinstance(current, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def _exec(operation: PlanOperation, plan: Plan, paths: TargetPaths) -> List[str]:
    command = operation.inputs[0] if operation.inputs else plan.install_command
    logging.info("Executing `%s` in %s", command, paths.root)
    try:
        subprocess.run(
            shlex.split(command),
            cwd=paths.root,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(f"`{command}` exited with {exc.returncode}: {exc.stderr.strip()}") from exc
    return list(operation.outputs)


def read_progress(target: Path) -> List[ApplyProgress]:
    progress: List[ApplyProgress] = []
    for staging in find_staging_dirs(target):
        log = OperationLog(log_path_for(staging))
        header = log.header
        progress.append(
            ApplyProgress(
                staging=str(staging),
                log_path=str(log.path),
                plan_hash=header.plan_hash if header else None,
                completed=log.completed_ids(),
                failed=log.failed_ids(),
            )
        )
    return progress


def cleanup_staging(target: Path, *, dry_run: bool = False) -> List[Path]:
    """Remove staging directories and operation logs left by unfinished applies."""
    artifacts = staging_artifacts(target)
    if not artifacts:
        logging.info("Nothing to clean up beside %s", target)
    for path in artifacts:
        if dry_run:
            logging.info("Dry run: would remove %s", path)
        elif path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
            logging.info("Removed staging directory %s", path)
        else:
            path.unlink()
            logging.info("Removed operation log %s", path)
    return artifacts
