"""Turn the raw files of one build into package archives, one per output."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kiln.config import ToolConfiguration
from kiln.errors import KilnError, PackagingError
from kiln.observability import StructuredLogger
from kiln.packaging.archive import archive_name, write_archive
from kiln.packaging.formats.base import OutputArtifact
from kiln.packaging.manifest import info_members
from kiln.packaging.partition import partition
from kiln.packaging.prefix import detect_prefix
from kiln.packaging.relink import relink
from kiln.render.plan import BuildPlan, OutputPlan

if TYPE_CHECKING:
    from kiln.orchestrator import Workspace


@dataclass(frozen=True, slots=True)
class OutputReport:
    name: str
    archive: Path | None = None
    files: tuple[OutputArtifact, ...] = ()
    error: KilnError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "archive": None if self.archive is None else str(self.archive),
            "files": [artifact.path for artifact in self.files],
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass(frozen=True, slots=True)
class PackagingReport:
    outputs: tuple[OutputReport, ...]

    @property
    def ok(self) -> bool:
        return all(report.ok for report in self.outputs)

    @property
    def archives(self) -> tuple[Path, ...]:
        return tuple(report.archive for report in self.outputs if report.archive is not None)

    def output(self, name: str) -> OutputReport:
        for report in self.outputs:
            if report.name == name:
                return report
        raise KeyError(name)

    def to_payload(self) -> dict[str, Any]:
        return {"outputs": [report.to_payload() for report in self.outputs]}


def package(
    artifacts: Sequence[OutputArtifact],
    plan: BuildPlan,
    workspace: Workspace,
    *,
    config: ToolConfiguration,
    logger: StructuredLogger | None = None,
    failed: Mapping[str, KilnError] | None = None,
) -> PackagingReport:
    """Partition, relink, scan and archive every output of ``plan``.

    An unclaimed file fails the whole build with ``PackagingError``; after
    partitioning, a failure in one output is recorded in its report and the
    other outputs still get archived. Outputs named in ``failed`` did not
    build: they keep their files in the partition but get no archive.
    """
    logger = logger or StructuredLogger()
    failed = failed or {}
    owned = partition(artifacts, plan.outputs)

    def package_one(output: OutputPlan) -> OutputReport:
        if output.name in failed:
            return OutputReport(name=output.name, files=tuple(owned[output.name]), error=failed[output.name])
        try:
            archive = _package_output(
                output,
                owned[output.name],
                plan=plan,
                prefix=workspace.host_prefix,
                config=config,
                logger=logger,
            )
        except PackagingError as exc:
            exc.context.setdefault("output", output.name)
            logger.log(
                operation="package_failed",
                output=output.name,
                phase="package",
                level="error",
                message=exc.message,
                extra={"context": dict(exc.context)},
            )
            return OutputReport(name=output.name, files=tuple(owned[output.name]), error=exc)
        return OutputReport(name=output.name, archive=archive, files=tuple(owned[output.name]))

    with ThreadPoolExecutor(max_workers=config.concurrency) as pool:
        reports = tuple(pool.map(package_one, plan.outputs))
    return PackagingReport(outputs=reports)


def package_dir(output: OutputPlan, config: ToolConfiguration) -> Path:
    if output.noarch is not None:
        return config.output_dir / "noarch"
    return config.packages_dir


def _package_output(
    output: OutputPlan,
    artifacts: list[OutputArtifact],
    *,
    plan: BuildPlan,
    prefix: Path,
    config: ToolConfiguration,
    logger: StructuredLogger,
) -> Path:
    relinked = relink(
        artifacts,
        prefix=prefix,
        dynamic_linking=output.dynamic_linking,
        logger=logger,
        output=output.name,
    )
    scanned = detect_prefix(
        relinked,
        prefix=prefix,
        ignore=output.prefix_ignore,
        enabled=output.prefix_detection,
    )
    destination = package_dir(output, config) / archive_name(output.dist_name, config.archive_format)
    write_archive(
        destination,
        artifacts=scanned,
        prefix=prefix,
        info=info_members(
            output, plan, scanned, prefix=prefix, timestamp=config.archive_mtime
        ),
        mtime=config.archive_mtime,
        archive_format=config.archive_format,
    )
    logger.log(
        operation="package_complete",
        output=output.name,
        phase="package",
        message="Wrote package archive.",
        extra={"archive": str(destination), "files": len(scanned)},
    )
    return destination


__all__ = ["OutputReport", "PackagingReport", "package", "package_dir"]
