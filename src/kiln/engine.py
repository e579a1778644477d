"""End-to-end driver: expand variants, render, build and package a recipe."""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self

from kiln.backends.base import EnvironmentResolver, ScriptRunner
from kiln.config import ToolConfiguration
from kiln.errors import KilnError, PackagingError
from kiln.observability import StructuredLogger
from kiln.orchestrator import execute_all
from kiln.packaging.archive import archive_name
from kiln.packaging.pipeline import PackagingReport, package, package_dir
from kiln.recipe.model import Recipe
from kiln.recipe.parser import load_recipe
from kiln.render.engine import render
from kiln.render.plan import BuildPlan
from kiln.render.used_variables import UsedVariablesSet, find_used_variables
from kiln.source import SourceProvider
from kiln.variants.config import VariantConfig, load_variant_config
from kiln.variants.matrix import VariantAssignment, collapse, expand
from kiln.variants.pins import PackageVersionLookup

DEFAULT_VARIANT_FILES = ("variants.yaml", "conda_build_config.yaml")


@dataclass(frozen=True, slots=True)
class RenderedVariant:
    """One expanded assignment and either its plan or the error rendering it raised."""

    assignment: VariantAssignment
    plan: BuildPlan | None = None
    used: UsedVariablesSet = frozenset()
    error: KilnError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class VariantResult:
    plan: BuildPlan | None
    skipped: bool = False
    error: KilnError | None = None
    report: PackagingReport | None = None
    assignment: VariantAssignment | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.report is None or self.report.ok)

    def to_payload(self) -> dict[str, Any]:
        if self.plan is not None:
            variant = self.plan.variant_dict()
        else:
            variant = {} if self.assignment is None else dict(self.assignment)
        payload: dict[str, Any] = {
            "variant": variant,
            "outputs": [] if self.plan is None else [output.dist_name for output in self.plan.outputs],
            "skipped": self.skipped,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.report is not None:
            payload["packaging"] = self.report.to_payload()
        return payload


@dataclass(frozen=True, slots=True)
class KilnResult:
    variants: tuple[VariantResult, ...]

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.variants)

    @property
    def archives(self) -> tuple[Path, ...]:
        return tuple(
            archive
            for result in self.variants
            if result.report is not None
            for archive in result.report.archives
        )

    def to_payload(self) -> dict[str, Any]:
        return {"variants": [result.to_payload() for result in self.variants]}

    def write_report(self, path: str | Path) -> Path:
        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(
            json.dumps(self.to_payload(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return report_path


@dataclass(slots=True)
class Kiln:
    """Builds every variant of one recipe."""

    recipe: Recipe
    variant_config: VariantConfig = field(default_factory=VariantConfig)
    config: ToolConfiguration = field(default_factory=ToolConfiguration)
    lookup: PackageVersionLookup | None = None
    source_provider: SourceProvider | None = None
    resolver: EnvironmentResolver | None = None
    runner: ScriptRunner | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    @classmethod
    def from_paths(
        cls,
        recipe_path: str | Path,
        *variant_paths: str | Path,
        config: ToolConfiguration | None = None,
        lookup: PackageVersionLookup | None = None,
    ) -> Self:
        """Load a recipe and its variant files.

        Without explicit variant files, ``variants.yaml`` or
        ``conda_build_config.yaml`` next to the recipe is used when present.
        """
        config = config or ToolConfiguration()
        recipe = load_recipe(recipe_path)
        paths = list(variant_paths)
        if not paths and recipe.recipe_dir is not None:
            paths = [
                recipe.recipe_dir / name
                for name in DEFAULT_VARIANT_FILES
                if (recipe.recipe_dir / name).is_file()
            ][:1]
        variant_config = (
            load_variant_config(*paths, platform=config.target_platform) if paths else VariantConfig()
        )
        return cls(recipe=recipe, variant_config=variant_config, config=config, lookup=lookup)

    def used_variables(self) -> UsedVariablesSet:
        return find_used_variables(self.recipe, self.variant_config.keys())

    def variants(self) -> list[VariantAssignment]:
        return expand(
            self.used_variables(),
            self.variant_config,
            lookup=self.lookup,
            platform=str(self.config.target_platform),
        )

    def render(self) -> list[RenderedVariant]:
        """Render every expanded assignment and drop duplicates by their used variables.

        An assignment that fails to render is kept, in order, with its error;
        it takes no part in deduplication and does not stop the others.
        """
        assignments = self.variants()

        def render_one(assignment: VariantAssignment) -> RenderedVariant:
            try:
                plan, used = render(
                    self.recipe,
                    assignment,
                    target_platform=self.config.target_platform,
                    build_platform=self.config.build_platform,
                    lookup=self.lookup,
                )
            except KilnError as exc:
                exc.context.setdefault("variant", assignment.label())
                self.logger.log(
                    operation="render_failed",
                    variant=assignment.label(),
                    phase="render",
                    level="error",
                    message=exc.message,
                    extra={"context": dict(exc.context)},
                )
                return RenderedVariant(assignment=assignment, error=exc)
            return RenderedVariant(assignment=assignment, plan=plan, used=used)

        with ThreadPoolExecutor(max_workers=self.config.concurrency) as pool:
            rendered = list(pool.map(render_one, assignments))

        used: set[str] = set()
        for item in rendered:
            used.update(item.used)
        kept = set(collapse([item.assignment for item in rendered if item.ok], used))
        unique = [item for item in rendered if not item.ok or item.assignment in kept]
        for item in unique:
            if item.plan is None:
                continue
            self.logger.log(
                operation="render",
                variant=item.assignment.label(),
                output=item.plan.name,
                phase="render",
                message="Rendered build plan.",
                extra={"outputs": [output.dist_name for output in item.plan.outputs]},
            )
        self.logger.log(
            operation="render_complete",
            phase="render",
            message="Rendering finished.",
            extra={
                "expanded": len(rendered),
                "unique": len(unique),
                "failed": sum(not item.ok for item in rendered),
                "used": sorted(used),
            },
        )
        return unique

    def build(self) -> KilnResult:
        rendered = self.render()
        results: dict[int, VariantResult] = {}
        pending: list[tuple[int, BuildPlan]] = []
        for index, item in enumerate(rendered):
            if item.plan is None:
                results[index] = VariantResult(plan=None, assignment=item.assignment, error=item.error)
            elif self.config.skip_existing and self._archives_exist(item.plan):
                self.logger.log(
                    operation="skip_existing",
                    variant=item.assignment.label(),
                    output=item.plan.name,
                    phase="build",
                    message="All archives already exist; skipping build.",
                )
                results[index] = VariantResult(plan=item.plan, skipped=True)
            else:
                pending.append((index, item.plan))

        outcomes = execute_all(
            [plan for _, plan in pending],
            config=self.config,
            source_provider=self.source_provider,
            resolver=self.resolver,
            runner=self.runner,
            logger=self.logger,
        )
        for (index, plan), outcome in zip(pending, outcomes, strict=True):
            if outcome.error is not None:
                results[index] = VariantResult(plan=plan, error=outcome.error)
                continue
            try:
                report = package(
                    outcome.artifacts,
                    plan,
                    outcome.workspace,
                    config=self.config,
                    logger=self.logger,
                    failed=outcome.output_errors,
                )
            except PackagingError as exc:
                results[index] = VariantResult(plan=plan, error=exc)
            else:
                results[index] = VariantResult(plan=plan, report=report)
            finally:
                if not self.config.keep_workspace:
                    outcome.workspace.remove()
        return KilnResult(variants=tuple(results[index] for index in range(len(rendered))))

    def _archives_exist(self, plan: BuildPlan) -> bool:
        return all(
            (package_dir(output, self.config) / archive_name(output.dist_name, self.config.archive_format)).exists()
            for output in plan.outputs
        )


__all__ = ["Kiln", "KilnResult", "RenderedVariant", "VariantResult"]
