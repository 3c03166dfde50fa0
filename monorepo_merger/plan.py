from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Sequence

from .analysis import AnalysisResult
from .collisions import STRATEGY_PRIORITY
from .graph import DEFAULT_HOTSPOT_LIMIT
from .versions import highest_version, is_non_semver, lowest_version, parse_version
from .workspace import ValidationError

SCHEMA_VERSION = 1
OPERATION_TYPES = ("copy", "write", "exec")
RESOLUTION_POLICIES = ("highest", "lowest", "first")
COMMON_SCRIPTS = ("build", "test", "lint", "typecheck", "dev", "start")
ROOT_MANIFEST = "package.json"


@dataclass(frozen=True)
class PackageManagerCommands:
    install: str
    run_all: str
    run_filtered: str
    lockfile: str


PACKAGE_MANAGERS: Mapping[str, PackageManagerCommands] = MappingProxyType(
    {
        "pnpm": PackageManagerCommands(
            install="pnpm install --ignore-scripts",
            run_all="pnpm -r {script}",
            run_filtered="pnpm --filter {package} {script}",
            lockfile="pnpm-lock.yaml",
        ),
        "yarn": PackageManagerCommands(
            install="yarn install --ignore-scripts",
            run_all="yarn workspaces run {script}",
            run_filtered="yarn workspace {package} {script}",
            lockfile="yarn.lock",
        ),
        "npm": PackageManagerCommands(
            install="npm install --ignore-scripts",
            run_all="npm run {script} -ws",
            run_filtered="npm run {script} -w {package}",
            lockfile="package-lock.json",
        ),
    }
)


@dataclass
class PlanSettings:
    packages_dir: str = "packages"
    conflict_strategy: str = "highest"
    package_manager: str = "pnpm"
    install: bool = True
    hotspot_limit: int = DEFAULT_HOTSPOT_LIMIT

    def validate(self) -> None:
        if self.conflict_strategy not in RESOLUTION_POLICIES:
            raise ValidationError(f"Unknown conflict strategy: {self.conflict_strategy}")
        if self.package_manager not in PACKAGE_MANAGERS:
            raise ValidationError(f"Unknown package manager: {self.package_manager}")


@dataclass
class PlanSource:
    name: str
    path: str


@dataclass
class PlanDecision:
    id: str
    kind: str
    chosen: str
    alternatives: List[str] = field(default_factory=list)


@dataclass
class PlanOperation:
    id: str
    type: str
    description: str
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)


@dataclass
class PlanFile:
    relative_path: str
    content: str


@dataclass
class Plan:
    schema_version: int
    created_at: str
    sources: List[PlanSource]
    target: str
    packages_dir: str
    analysis: Dict[str, Any]
    decisions: List[PlanDecision]
    operations: List[PlanOperation]
    root_manifest: Dict[str, Any]
    files: List[PlanFile]
    install: bool
    install_command: str
    package_manager: str
    # Top-level fields this version does not know about; written back untouched.
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra")
        merged = dict(extra)
        merged.update(data)
        return merged

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        validate_plan(data)
        known = {f.name for f in fields(cls)} - {"extra"}
        return cls(
            schema_version=data["schema_version"],
            created_at=data.get("created_at", ""),
            sources=[PlanSource(name=s["name"], path=s["path"]) for s in data["sources"]],
            target=data["target"],
            packages_dir=data["packages_dir"],
            analysis=dict(data.get("analysis") or {}),
            decisions=[
                PlanDecision(
                    id=d["id"],
                    kind=d["kind"],
                    chosen=d["chosen"],
                    alternatives=list(d.get("alternatives", [])),
                )
                for d in data.get("decisions", [])
            ],
            operations=[
                PlanOperation(
                    id=op["id"],
                    type=op["type"],
                    description=op.get("description", ""),
                    inputs=list(op.get("inputs", [])),
                    outputs=list(op.get("outputs", [])),
                )
                for op in data["operations"]
            ],
            root_manifest=dict(data["root_manifest"]),
            files=[PlanFile(relative_path=f["relative_path"], content=f["content"]) for f in data["files"]],
            install=data["install"],
            install_command=data.get("install_command", ""),
            package_manager=data.get("package_manager", ""),
            extra={key: value for key, value in data.items() if key not in known},
        )


def validate_plan(data: Any) -> None:
    """Raise ValidationError describing the first structural problem in ``data``."""
    if not isinstance(data, Mapping):
        raise ValidationError("Plan document must be a JSON object.")
    if data.get("schema_version") != SCHEMA_VERSION:
        raise ValidationError(
            f"Unsupported plan schema version: {data.get('schema_version')!r}"
        )
    sources = data.get("sources")
    if not isinstance(sources, list) or not sources:
        raise ValidationError("Plan must list at least one source.")
    for source in sources:
        if not isinstance(source, Mapping) or not all(
            isinstance(source.get(key), str) for key in ("name", "path")
        ):
            raise ValidationError(f"Invalid plan source entry: {source!r}")
    if not isinstance(data.get("target"), str) or not data["target"]:
        raise ValidationError("Plan is missing a target directory.")
    if not isinstance(data.get("packages_dir"), str) or not data["packages_dir"]:
        raise ValidationError("Plan is missing a packages directory.")
    if not isinstance(data.get("root_manifest"), Mapping):
        raise ValidationError("Plan root_manifest must be an object.")
    if not isinstance(data.get("install"), bool):
        raise ValidationError("Plan install flag must be a boolean.")
    files = data.get("files")
    if not isinstance(files, list):
        raise ValidationError("Plan files must be a list.")
    for entry in files:
        if not isinstance(entry, Mapping) or not all(
            isinstance(entry.get(key), str) for key in ("relative_path", "content")
        ):
            raise ValidationError(f"Invalid plan file entry: {entry!r}")
    operations = data.get("operations")
    if not isinstance(operations, list):
        raise ValidationError("Plan operations must be a list.")
    seen: set[str] = set()
    for op in operations:
        if not isinstance(op, Mapping) or not isinstance(op.get("id"), str):
            raise ValidationError(f"Invalid plan operation: {op!r}")
        if op["id"] == "header" or op["id"] in seen:
            raise ValidationError(f"Duplicate or reserved operation id: {op['id']}")
        if op.get("type") not in OPERATION_TYPES:
            raise ValidationError(f"Unknown operation type for {op['id']}: {op.get('type')!r}")
        for key in ("inputs", "outputs"):
            value = op.get(key, [])
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValidationError(f"Operation {op['id']} has invalid {key}.")
        seen.add(op["id"])


def plan_hash(plan: Plan | Mapping[str, Any]) -> str:
    data = plan.to_dict() if isinstance(plan, Plan) else plan
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def save_plan(plan: Plan, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(plan.to_dict(), indent=2) + "\n")
    logging.info("Wrote plan to %s", path)


def load_plan(path: Path) -> Plan:
    if not path.is_file():
        raise ValidationError(f"Plan file not found: {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Plan file {path} is not valid JSON: {exc}") from exc
    return Plan.from_dict(data)


def resolve_version(versions: Sequence[str], policy: str) -> str:
    """Pick one version out of ``versions`` according to ``policy``.

    Falls back to the first discovered version when nothing parses or the
    policy is not recognised.
    """
    distinct = list(dict.fromkeys(versions))
    if not distinct:
        raise ValueError("resolve_version needs at least one version")
    parseable = [v for v in distinct if parse_version(v) is not None]
    if not parseable:
        return distinct[0]
    if policy == "highest":
        return highest_version(parseable) or distinct[0]
    if policy == "lowest":
        return lowest_version(parseable) or distinct[0]
    if policy == "first":
        return distinct[0]
    logging.debug("Unknown resolution policy %r; keeping first version", policy)
    return distinct[0]


def build_decisions(analysis: AnalysisResult, policy: str) -> List[PlanDecision]:
    decisions: List[PlanDecision] = []
    taken: set[str] = set()
    for conflict in analysis.conflicts:
        if conflict.conflict_source == "peer-constraint":
            prefix, kind = "peer", "peer-dependency"
        else:
            prefix, kind = "dep", "dependency"
        candidates = conflict.distinct_versions()
        chosen = resolve_version(candidates, policy)
        decisions.append(
            PlanDecision(
                id=_unique_id(f"{prefix}-{conflict.name}", taken),
                kind=kind,
                chosen=chosen,
                alternatives=[v for v in candidates if v != chosen],
            )
        )
    for collision in analysis.collisions:
        strategy = collision.suggested_strategy
        decisions.append(
            PlanDecision(
                id=_unique_id(f"file-{collision.path}", taken),
                kind="file-collision",
                chosen=strategy,
                alternatives=[s for s in STRATEGY_PRIORITY if s != strategy],
            )
        )
    return decisions


def _unique_id(candidate: str, taken: set[str]) -> str:
    result = candidate
    index = 2
    while result in taken:
        result = f"{candidate}-{index}"
        index += 1
    taken.add(result)
    return result


def build_root_manifest(
    analysis: AnalysisResult,
    sources: Sequence[PlanSource],
    decisions: Sequence[PlanDecision],
    *,
    name: str,
    settings: PlanSettings,
) -> Dict[str, Any]:
    commands = PACKAGE_MANAGERS[settings.package_manager]
    manifests = {manifest.repo: manifest for manifest in analysis.packages}
    internal = {manifest.name for manifest in analysis.packages}
    chosen = {
        decision.id[len("dep-"):]: decision.chosen
        for decision in decisions
        if decision.kind == "dependency"
    }

    scripts: Dict[str, str] = {}
    for script in COMMON_SCRIPTS:
        if any(script in manifest.scripts for manifest in analysis.packages):
            scripts[script] = commands.run_all.format(script=script)
    for source in sources:
        manifest = manifests.get(source.name)
        if manifest is None:
            continue
        for script in manifest.scripts:
            scripts[f"{source.name}:{script}"] = commands.run_filtered.format(
                package=manifest.name, script=script
            )

    dependencies: Dict[str, str] = {}
    dev_dependencies: Dict[str, str] = {}
    for manifest in analysis.packages:
        for dep_name, version in manifest.dependencies.items():
            if dep_name not in internal and not is_non_semver(version):
                dependencies.setdefault(dep_name, chosen.get(dep_name, version))
    for manifest in analysis.packages:
        for dep_name, version in manifest.dev_dependencies.items():
            if dep_name in internal or dep_name in dependencies or is_non_semver(version):
                continue
            dev_dependencies.setdefault(dep_name, chosen.get(dep_name, version))

    root: Dict[str, Any] = {
        "name": name,
        "version": "0.0.0",
        "private": True,
        "workspaces": sorted(f"{settings.packages_dir}/{source.name}" for source in sources),
        "scripts": scripts,
    }
    if dependencies:
        root["dependencies"] = dict(sorted(dependencies.items()))
    if dev_dependencies:
        root["devDependencies"] = dict(sorted(dev_dependencies.items()))
    root["engines"] = {"node": ">=18"}
    return root


def build_workspace_files(settings: PlanSettings) -> List[PlanFile]:
    if settings.package_manager != "pnpm":
        return []
    return [
        PlanFile(
            relative_path="pnpm-workspace.yaml",
            content=f"packages:\n  - '{settings.packages_dir}/*'\n",
        )
    ]


def build_operations(
    sources: Sequence[PlanSource],
    files: Sequence[PlanFile],
    settings: PlanSettings,
) -> List[PlanOperation]:
    operations = [
        PlanOperation(
            id=f"copy-{source.name}",
            type="copy",
            description=f"Copy {source.name} into {settings.packages_dir}/{source.name}",
            inputs=[source.path],
            outputs=[f"{settings.packages_dir}/{source.name}"],
        )
        for source in sources
    ]
    operations.append(
        PlanOperation(
            id="update-root-manifest",
            type="write",
            description="Write the root package.json with workspace members",
            inputs=[],
            outputs=[ROOT_MANIFEST],
        )
    )
    if files:
        operations.append(
            PlanOperation(
                id="update-workspace-config",
                type="write",
                description="Write workspace tool configuration",
                inputs=[],
                outputs=[item.relative_path for item in files],
            )
        )
    if settings.install:
        install_command = PACKAGE_MANAGERS[settings.package_manager].install
        operations.append(
            PlanOperation(
                id="install-deps",
                type="exec",
                description=f"Install dependencies with `{install_command}`",
                inputs=[install_command],
                outputs=["node_modules"],
            )
        )
    return operations


def build_plan(
    analysis: AnalysisResult,
    sources: Sequence[PlanSource],
    target: Path,
    settings: PlanSettings | None = None,
) -> Plan:
    settings = settings or PlanSettings()
    settings.validate()
    target = target.expanduser().resolve()
    plan_sources = [PlanSource(name=s.name, path=s.path) for s in sources]
    decisions = build_decisions(analysis, settings.conflict_strategy)
    files = build_workspace_files(settings)
    plan = Plan(
        schema_version=SCHEMA_VERSION,
        created_at=datetime.now(timezone.utc).isoformat(),
        sources=plan_sources,
        target=str(target),
        packages_dir=settings.packages_dir,
        analysis=analysis.to_dict(),
        decisions=decisions,
        operations=build_operations(plan_sources, files, settings),
        root_manifest=build_root_manifest(
            analysis, plan_sources, decisions, name=target.name, settings=settings
        ),
        files=files,
        install=settings.install,
        install_command=PACKAGE_MANAGERS[settings.package_manager].install,
        package_manager=settings.package_manager,
    )
    logging.info(
        "Built plan with %d decision(s) and %d operation(s)",
        len(plan.decisions),
        len(plan.operations),
    )
    return plan
