"""Package metadata written under ``info/``."""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from kiln.hashing import file_sha256
from kiln.packaging.formats.base import OutputArtifact
from kiln.platforms import Platform
from kiln.render.plan import BuildPlan, OutputPlan

PATHS_VERSION = 1

_INDEX_ARCH = {"64": "x86_64", "32": "x86"}


def serialize_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def index_json(output: OutputPlan, plan: BuildPlan, *, timestamp: int) -> dict[str, Any]:
    noarch = output.noarch is not None
    platform = Platform(plan.target_platform)
    payload: dict[str, Any] = {
        "name": output.name,
        "version": output.version,
        "build": output.build_string,
        "build_number": output.build_number,
        "depends": [str(dep) for dep in output.requirements.run],
        "constrains": [str(dep) for dep in output.requirements.run_constraints],
        "subdir": "noarch" if noarch else plan.target_platform,
        "timestamp": timestamp * 1000,
    }
    if noarch:
        payload["noarch"] = output.noarch
    else:
        payload["platform"] = None if platform.family == "noarch" else platform.family
        payload["arch"] = _INDEX_ARCH.get(platform.arch or "", platform.arch)
    return payload


def paths_json(artifacts: Sequence[OutputArtifact], *, prefix: Path) -> dict[str, Any]:
    """Per-file records; hashes and sizes are taken from the files as they are now."""
    entries: list[dict[str, Any]] = []
    for artifact in sorted(artifacts, key=lambda item: item.path):
        path = artifact.absolute(prefix)
        entry: dict[str, Any] = {"_path": artifact.path}
        if artifact.kind == "symlink":
            entry["path_type"] = "softlink"
            entry["link_target"] = os.readlink(path)
        else:
            entry["path_type"] = "hardlink"
            entry["sha256"] = file_sha256(path)
            entry["size_in_bytes"] = path.stat().st_size
        if artifact.prefix_placeholder is not None:
            entry["prefix_placeholder"] = artifact.prefix_placeholder
            entry["file_mode"] = artifact.file_mode
        entries.append(entry)
    return {"paths": entries, "paths_version": PATHS_VERSION}


def files_list(artifacts: Sequence[OutputArtifact]) -> str:
    return "".join(f"{path}\n" for path in sorted(artifact.path for artifact in artifacts))


def about_json(output: OutputPlan) -> dict[str, Any]:
    return dict(output.about)


def rendered_json(plan: BuildPlan, output: OutputPlan) -> dict[str, Any]:
    payload = plan.to_payload()
    payload["output"] = output.name
    return payload


def tests_json(output: OutputPlan) -> list[Any]:
    if output.tests is None:
        return []
    if isinstance(output.tests, list):
        return list(output.tests)
    return [output.tests]


def info_members(
    output: OutputPlan,
    plan: BuildPlan,
    artifacts: Sequence[OutputArtifact],
    *,
    prefix: Path,
    timestamp: int,
) -> dict[str, bytes]:
    """All ``info/`` files of one package, keyed by archive path."""
    return {
        "info/index.json": serialize_json(index_json(output, plan, timestamp=timestamp)).encode(),
        "info/paths.json": serialize_json(paths_json(artifacts, prefix=prefix)).encode(),
        "info/files": files_list(artifacts).encode(),
        "info/about.json": serialize_json(about_json(output)).encode(),
        "info/recipe/rendered.json": serialize_json(rendered_json(plan, output)).encode(),
        "info/tests/tests.json": serialize_json(tests_json(output)).encode(),
    }


__all__ = [
    "PATHS_VERSION",
    "about_json",
    "files_list",
    "index_json",
    "info_members",
    "paths_json",
    "rendered_json",
    "serialize_json",
    "tests_json",
]
