"""Environment variables exported to build scripts."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from kiln.hashing import variant_hash
from kiln.platforms import Platform
from kiln.render.plan import BuildPlan, OutputPlan
from kiln.versions import Version


def build_env_vars(
    plan: BuildPlan,
    output: OutputPlan,
    *,
    prefix: Path,
    build_prefix: Path,
    src_dir: Path,
    cpu_count: int,
) -> dict[str, str]:
    """Variables a script for ``output`` sees on top of the inherited environment.

    Later entries win: fixed exports, then every variant variable, then the
    recipe's ``build.env`` (top level first, then the output's own).
    """
    target = Platform(plan.target_platform)
    env: dict[str, str] = {
        "PREFIX": str(prefix),
        "BUILD_PREFIX": str(build_prefix),
        "SRC_DIR": str(src_dir),
        "RECIPE_DIR": plan.recipe_dir or "",
        "PKG_NAME": output.name,
        "PKG_VERSION": output.version,
        "PKG_BUILDNUM": str(output.build_number),
        "PKG_BUILD_STRING": output.build_string,
        "PKG_HASH": variant_hash(
            dict(output.variant),
            target_platform="noarch" if output.noarch else plan.target_platform,
        ),
        "CPU_COUNT": str(cpu_count),
        "SHLIB_EXT": target.shlib_ext,
        "target_platform": plan.target_platform,
        "build_platform": plan.build_platform,
    }
    python = plan.variant_dict().get("python")
    if python:
        env["PY_VER"] = ".".join(Version(python).segments[:2])
    env.update(plan.variant)
    env.update(plan.script_env)
    env.update(output.script_env)
    return env


def scoped_environment(
    exports: Mapping[str, str],
    *,
    base: Mapping[str, str] | None = None,
    path_entries: tuple[Path, ...] = (),
) -> dict[str, str]:
    """Return a fresh environment mapping for one subprocess.

    The process environment is only read, never written, so nothing leaks
    between builds whether the script succeeds or fails.
    """
    env = dict(os.environ if base is None else base)
    env.update(exports)
    if path_entries:
        inherited = env.get("PATH", "")
        entries = [str(entry) for entry in path_entries]
        if inherited:
            entries.append(inherited)
        env["PATH"] = os.pathsep.join(entries)
    return env


__all__ = ["build_env_vars", "scoped_environment"]
