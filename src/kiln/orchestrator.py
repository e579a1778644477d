"""Build execution for rendered plans.

Each plan gets its own workspace; scripts run in the foreground with an
environment composed per step, and the files that appear in ``$PREFIX`` during
the build are the raw artifacts handed to packaging.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from kiln.backends.base import EnvironmentResolver, ScriptRunner
from kiln.backends.environment import PrefixEnvironmentResolver
from kiln.backends.local import OUTPUT_TAIL, LocalScriptRunner
from kiln.config import ToolConfiguration
from kiln.env_vars import build_env_vars, scoped_environment
from kiln.errors import BuildError, KilnError
from kiln.observability import StructuredLogger
from kiln.packaging.formats.base import OutputArtifact
from kiln.platforms import Platform
from kiln.render.plan import BuildPlan, OutputPlan
from kiln.render.used_variables import script_file_path
from kiln.source import LocalSourceProvider, SourceProvider


@dataclass(frozen=True, slots=True)
class Workspace:
    root: Path

    @classmethod
    def for_plan(cls, plan: BuildPlan, config: ToolConfiguration) -> Workspace:
        digest = plan.digest()[:8]
        return cls(root=config.workspaces_dir / f"{plan.name}_{plan.outputs[0].build_string}_{digest}")

    @property
    def work_dir(self) -> Path:
        return self.root / "work"

    @property
    def host_prefix(self) -> Path:
        return self.root / "host_env"

    @property
    def build_prefix(self) -> Path:
        return self.root / "build_env"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    def create(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
        for path in (self.work_dir, self.host_prefix, self.build_prefix, self.scripts_dir):
            path.mkdir(parents=True, exist_ok=True)

    def remove(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    plan: BuildPlan
    workspace: Workspace
    artifacts: tuple[OutputArtifact, ...] = ()
    error: KilnError | None = None
    output_errors: Mapping[str, KilnError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.output_errors


def execute(
    plan: BuildPlan,
    workspace: Workspace,
    *,
    config: ToolConfiguration,
    source_provider: SourceProvider | None = None,
    resolver: EnvironmentResolver | None = None,
    runner: ScriptRunner | None = None,
    logger: StructuredLogger | None = None,
) -> BuildOutcome:
    """Run every build step of ``plan`` and collect the new files in ``$PREFIX``.

    A failing output script is recorded against that output and the other
    outputs still build, except those requiring a failed sibling. When the
    top-level script fails, or on any other error or cancellation, the
    workspace is removed unless the configuration keeps it and the error
    propagates unchanged.
    """
    source_provider = source_provider or LocalSourceProvider()
    windows = Platform(plan.build_platform).family == "win"
    resolver = resolver or PrefixEnvironmentResolver(windows=windows)
    runner = runner or LocalScriptRunner()
    logger = logger or StructuredLogger()
    variant = _variant_label(plan)

    try:
        workspace.create()
        logger.log(
            operation="build_start",
            variant=variant,
            output=plan.name,
            phase="source",
            message="Materializing sources.",
            extra={"workspace": str(workspace.root)},
        )
        recipe_dir = Path(plan.recipe_dir) if plan.recipe_dir else None
        source_provider.materialize(plan.sources, workspace.work_dir, recipe_dir=recipe_dir)

        path_entries: list[Path] = []
        for output in plan.outputs:
            for entry in resolver.prepare(
                output, prefix=workspace.host_prefix, build_prefix=workspace.build_prefix
            ):
                if entry not in path_entries:
                    path_entries.append(entry)
        before = snapshot_prefix(workspace.host_prefix)

        steps: list[tuple[OutputPlan, tuple[str, ...], str]] = []
        if plan.script:
            steps.append((plan.outputs[0], plan.script, "build"))
        steps.extend((output, output.script, output.name) for output in plan.outputs if output.script)
        failed: dict[str, KilnError] = {}
        for index, (output, lines, label) in enumerate(steps):
            top_level = index == 0 and bool(plan.script)
            if not top_level and _skip_dependent(output, failed, variant=variant, logger=logger):
                continue
            script = _write_script(
                lines,
                workspace=workspace,
                name=f"{index:02d}_{label}",
                recipe_dir=recipe_dir,
                windows=windows,
            )
            exports = build_env_vars(
                plan,
                output,
                prefix=workspace.host_prefix,
                build_prefix=workspace.build_prefix,
                src_dir=workspace.work_dir,
                cpu_count=config.cpu_count,
            )
            env = scoped_environment(exports, path_entries=tuple(path_entries))
            logger.log(
                operation="run_script",
                variant=variant,
                output=output.name,
                phase="build",
                message="Running build script.",
                extra={"script": str(script)},
            )
            result = runner.run(script, cwd=workspace.work_dir, env=env, timeout=config.timeout)
            if result.returncode != 0:
                error = BuildError(
                    f"Build script for `{output.name}` failed with exit code {result.returncode}.",
                    hint="Inspect the captured script output.",
                    context={
                        "output": output.name,
                        "variant": variant,
                        "script": str(script),
                        "returncode": str(result.returncode),
                        "log": result.output[-OUTPUT_TAIL:],
                    },
                    output=result.output,
                )
                if top_level:
                    raise error
                failed[output.name] = error
                logger.log(
                    operation="output_failed",
                    variant=variant,
                    output=output.name,
                    phase="build",
                    level="error",
                    message=error.message,
                    extra={"returncode": result.returncode},
                )
                continue
            logger.log(
                operation="script_complete",
                variant=variant,
                output=output.name,
                phase="build",
                message="Build script finished.",
                extra={"duration": round(result.duration, 3)},
            )

        # scriptless outputs can require each other in any order
        while any(
            _skip_dependent(output, failed, variant=variant, logger=logger)
            for output in plan.outputs
            if not output.script and output.name not in failed
        ):
            pass
        new_files = sorted(snapshot_prefix(workspace.host_prefix) - before)
    except BaseException as exc:
        if isinstance(exc, KilnError):
            exc.context.setdefault("variant", variant)
        if not config.keep_workspace:
            workspace.remove()
        logger.log(
            operation="build_failed",
            variant=variant,
            output=plan.name,
            phase="build",
            level="error",
            message=str(exc) or type(exc).__name__,
        )
        raise

    logger.log(
        operation="build_complete",
        variant=variant,
        output=plan.name,
        phase="build",
        message="Build finished.",
        extra={"files": len(new_files), "failed_outputs": sorted(failed)},
    )
    return BuildOutcome(
        plan=plan,
        workspace=workspace,
        artifacts=tuple(OutputArtifact(path=path) for path in new_files),
        output_errors=failed,
    )


def execute_all(
    plans: Sequence[BuildPlan],
    *,
    config: ToolConfiguration,
    source_provider: SourceProvider | None = None,
    resolver: EnvironmentResolver | None = None,
    runner: ScriptRunner | None = None,
    logger: StructuredLogger | None = None,
) -> list[BuildOutcome]:
    """Build independent plans concurrently, at most ``config.concurrency`` at a time.

    Outcomes come back in ``plans`` order; a failed build does not stop the others.
    """
    logger = logger or StructuredLogger()

    def build_one(plan: BuildPlan) -> BuildOutcome:
        workspace = Workspace.for_plan(plan, config)
        try:
            return execute(
                plan,
                workspace,
                config=config,
                source_provider=source_provider,
                resolver=resolver,
                runner=runner,
                logger=logger,
            )
        except KilnError as exc:
            return BuildOutcome(plan=plan, workspace=workspace, error=exc)

    with ThreadPoolExecutor(max_workers=config.concurrency) as pool:
        return list(pool.map(build_one, plans))


def snapshot_prefix(prefix: Path) -> set[str]:
    """Relative POSIX paths of every file and symlink under ``prefix``."""
    found: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(prefix):
        base = Path(dirpath)
        names = list(filenames)
        names.extend(name for name in dirnames if (base / name).is_symlink())
        for name in names:
            found.add((base / name).relative_to(prefix).as_posix())
    return found


def _write_script(
    lines: tuple[str, ...],
    *,
    workspace: Workspace,
    name: str,
    recipe_dir: Path | None,
    windows: bool,
) -> Path:
    if len(lines) == 1:
        existing = script_file_path(lines[0], recipe_dir)
        if existing is not None:
            return existing
    suffix = ".bat" if windows else ".sh"
    script = workspace.scripts_dir / f"{name}{suffix}"
    header = "@echo on\n" if windows else "set -euo pipefail\n"
    script.write_text(header + "\n".join(lines) + "\n", encoding="utf-8")
    return script


def _skip_dependent(
    output: OutputPlan,
    failed: dict[str, KilnError],
    *,
    variant: str,
    logger: StructuredLogger,
) -> bool:
    """Mark ``output`` failed when one of its requirements names a failed output."""
    requirements = output.requirements
    for dependency in (
        *requirements.build,
        *requirements.host,
        *requirements.run,
        *requirements.run_constraints,
    ):
        if dependency.name == output.name or dependency.name not in failed:
            continue
        failed[output.name] = BuildError(
            f"Skipped `{output.name}` because `{dependency.name}` failed to build.",
            context={"output": output.name, "variant": variant, "dependency": dependency.name},
        )
        logger.log(
            operation="output_skipped",
            variant=variant,
            output=output.name,
            phase="build",
            level="warning",
            message=f"Required output `{dependency.name}` failed.",
        )
        return True
    return False


def _variant_label(plan: BuildPlan) -> str:
    return " ".join(f"{key}={value}" for key, value in plan.variant) or "<default>"


__all__ = ["BuildOutcome", "Workspace", "execute", "execute_all", "snapshot_prefix"]
