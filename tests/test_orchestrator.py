import os
import shutil
import textwrap
from collections.abc import Mapping
from pathlib import Path

import pytest

from kiln.backends import ScriptResult
from kiln.config import ToolConfiguration
from kiln.env_vars import build_env_vars, scoped_environment
from kiln.errors import BuildError, SourceError
from kiln.observability import StructuredLogger
from kiln.orchestrator import Workspace, execute, execute_all
from kiln.platforms import Platform
from kiln.recipe import parse_recipe
from kiln.render import BuildPlan, render

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="Build scripts need bash.")


@needs_bash
def test_execute_collects_new_prefix_files(tmp_path: Path) -> None:
    plan = _plan(
        tmp_path,
        """
        mkdir -p "$PREFIX/bin" "$PREFIX/lib"
        echo "$PKG_NAME $PKG_VERSION $zlib" > "$PREFIX/bin/info.txt"
        touch "$PREFIX/lib/libfoo.so"
        ln -s libfoo.so "$PREFIX/lib/libfoo.so.1"
        """,
    )
    config = _config(tmp_path)
    workspace = Workspace.for_plan(plan, config)
    logger = StructuredLogger()

    outcome = execute(plan, workspace, config=config, logger=logger)

    assert outcome.ok
    assert [artifact.path for artifact in outcome.artifacts] == [
        "bin/info.txt",
        "lib/libfoo.so",
        "lib/libfoo.so.1",
    ]
    info = (workspace.host_prefix / "bin" / "info.txt").read_text(encoding="utf-8")
    assert info == "foo 1.0 1.3\n"
    assert logger.records_for_operation("build_complete")[0]["extra"] == {"files": 3, "failed_outputs": []}


@needs_bash
def test_failing_script_raises_build_error_and_removes_workspace(tmp_path: Path) -> None:
    plan = _plan(tmp_path, "echo boom\nexit 3\n")
    config = _config(tmp_path)
    workspace = Workspace.for_plan(plan, config)

    with pytest.raises(BuildError) as excinfo:
        execute(plan, workspace, config=config)

    assert excinfo.value.context["returncode"] == "3"
    assert excinfo.value.context["variant"] == "zlib=1.3"
    assert "boom" in excinfo.value.output
    assert not workspace.root.exists()


@needs_bash
def test_keep_workspace_preserves_failed_builds(tmp_path: Path) -> None:
    plan = _plan(tmp_path, "false\n")
    config = _config(tmp_path, keep_workspace=True)
    workspace = Workspace.for_plan(plan, config)

    with pytest.raises(BuildError):
        execute(plan, workspace, config=config)

    assert workspace.scripts_dir.exists()


@needs_bash
def test_build_does_not_touch_the_process_environment(tmp_path: Path) -> None:
    plan = _plan(tmp_path, 'export LEAK=1\necho "$PREFIX" > /dev/null\n')
    config = _config(tmp_path)
    before = dict(os.environ)

    execute(plan, Workspace.for_plan(plan, config), config=config)
    with pytest.raises(BuildError):
        failing = _plan(tmp_path, "exit 1\n")
        execute(failing, Workspace.for_plan(failing, config), config=config)

    assert dict(os.environ) == before


@needs_bash
def test_timeout_kills_the_script(tmp_path: Path) -> None:
    plan = _plan(tmp_path, "sleep 30\n")
    config = _config(tmp_path, timeout=0.5)

    with pytest.raises(BuildError, match="timed out"):
        execute(plan, Workspace.for_plan(plan, config), config=config)


@needs_bash
def test_local_sources_are_copied_into_the_work_dir(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "hello.txt").write_text("hello\n", encoding="utf-8")
    plan = _plan(
        tmp_path,
        'mkdir -p "$PREFIX/share"\ncp vendor/hello.txt "$PREFIX/share/"\n',
        source="source:\n  path: src\n  target_directory: vendor\n",
    )
    config = _config(tmp_path)
    workspace = Workspace.for_plan(plan, config)

    outcome = execute(plan, workspace, config=config)

    assert [artifact.path for artifact in outcome.artifacts] == ["share/hello.txt"]


def test_remote_sources_are_rejected_by_the_local_provider(tmp_path: Path) -> None:
    plan = _plan(tmp_path, "true\n", source="source:\n  url: https://example.invalid/foo.tar.gz\n")
    config = _config(tmp_path)
    workspace = Workspace.for_plan(plan, config)

    with pytest.raises(SourceError) as excinfo:
        execute(plan, workspace, config=config, runner=RecordingRunner())

    assert excinfo.value.context["keys"] == "url"
    assert not workspace.root.exists()


def test_steps_run_with_per_output_environment(tmp_path: Path) -> None:
    recipe = parse_recipe(
        """
recipe:
  name: suite
  version: "2.0"
build:
  script: make
  env:
    SHARED: top
outputs:
  - package:
      name: libsuite
    build:
      script: make install-lib
      env:
        SHARED: lib
  - package:
      name: suite-tools
    build:
      files:
        - bin/
      script: make install-tools
""",
        recipe_dir=tmp_path,
    )
    plan, _ = render(recipe, {}, target_platform="linux-64")
    runner = RecordingRunner()
    config = _config(tmp_path)

    execute(plan, Workspace.for_plan(plan, config), config=config, runner=runner)

    assert [env["PKG_NAME"] for env in runner.envs] == ["libsuite", "libsuite", "suite-tools"]
    assert [env["SHARED"] for env in runner.envs] == ["lib", "lib", "top"]
    assert all(env["CPU_COUNT"] == "2" for env in runner.envs)


def test_failed_output_skips_only_its_dependents(tmp_path: Path) -> None:
    recipe = parse_recipe(
        """
recipe:
  name: suite
  version: "2.0"
outputs:
  - package:
      name: libsuite
    build:
      files:
        - lib/
      script: make install-lib
  - package:
      name: suite-tools
    build:
      files:
        - bin/
      script: make install-tools
    requirements:
      run:
        - ${{ pin_subpackage('libsuite') }}
  - package:
      name: suite-docs
    build:
      files:
        - share/doc/
      script: make install-docs
  - package:
      name: suite
    requirements:
      run:
        - suite-tools
""",
        recipe_dir=tmp_path,
    )
    plan, _ = render(recipe, {}, target_platform="linux-64")
    runner = RecordingRunner(fail={"make install-lib"})
    config = _config(tmp_path)
    workspace = Workspace.for_plan(plan, config)
    logger = StructuredLogger()

    outcome = execute(plan, workspace, config=config, runner=runner, logger=logger)

    assert outcome.error is None
    assert not outcome.ok
    assert sorted(env["PKG_NAME"] for env in runner.envs) == ["libsuite", "suite-docs"]
    assert sorted(outcome.output_errors) == ["libsuite", "suite", "suite-tools"]
    assert all(isinstance(error, BuildError) for error in outcome.output_errors.values())
    assert outcome.output_errors["libsuite"].context["returncode"] == "1"
    assert outcome.output_errors["suite-tools"].context["dependency"] == "libsuite"
    assert outcome.output_errors["suite"].context["dependency"] == "suite-tools"
    assert workspace.root.exists()
    assert len(logger.records_for_operation("output_skipped")) == 2


def test_execute_all_keeps_order_and_isolates_failures(tmp_path: Path) -> None:
    good = _plan(tmp_path, "true\n")
    bad = _plan(tmp_path, "false\n", variant={"zlib": "1.2"})
    config = _config(tmp_path, concurrency=2)

    outcomes = execute_all([bad, good], config=config, runner=RecordingRunner(fail={"false"}))

    assert [outcome.plan for outcome in outcomes] == [bad, good]
    assert not outcomes[0].ok
    assert isinstance(outcomes[0].error, BuildError)
    assert outcomes[1].ok
    assert outcomes[0].workspace != outcomes[1].workspace


def test_build_env_vars(tmp_path: Path) -> None:
    plan = _plan(tmp_path, "true\n", variant={"zlib": "1.3", "python": "3.10.2"}, host="python\n    - zlib")
    output = plan.outputs[0]

    env = build_env_vars(
        plan,
        output,
        prefix=tmp_path / "host",
        build_prefix=tmp_path / "build",
        src_dir=tmp_path / "work",
        cpu_count=4,
    )

    assert env["PREFIX"] == str(tmp_path / "host")
    assert env["PKG_BUILD_STRING"] == output.build_string
    assert output.build_string.endswith(env["PKG_HASH"] + "_0")
    assert env["PY_VER"] == "3.10"
    assert env["SHLIB_EXT"] == ".so"
    assert env["zlib"] == "1.3"
    assert env["RECIPE_DIR"] == str(tmp_path)


def test_scoped_environment_returns_a_fresh_mapping() -> None:
    base = {"PATH": "/usr/bin", "HOME": "/home/builder"}

    env = scoped_environment({"PREFIX": "/p"}, base=base, path_entries=(Path("/p/bin"),))

    assert env["PATH"] == os.pathsep.join(["/p/bin", "/usr/bin"])
    assert env["PREFIX"] == "/p"
    assert base == {"PATH": "/usr/bin", "HOME": "/home/builder"}


class RecordingRunner:
    name = "recording"

    def __init__(self, fail: set[str] | None = None) -> None:
        self.envs: list[dict[str, str]] = []
        self.fail = fail or set()

    def run(
        self,
        script: Path,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None,
    ) -> ScriptResult:
        self.envs.append(dict(env))
        body = script.read_text(encoding="utf-8").splitlines()[1:]
        returncode = 1 if any(line in self.fail for line in body) else 0
        return ScriptResult(returncode=returncode, output="\n".join(body), duration=0.0)


def _config(tmp_path: Path, **overrides: object) -> ToolConfiguration:
    options: dict[str, object] = {
        "output_dir": tmp_path / "out",
        "target_platform": Platform("linux-64"),
        "build_platform": Platform("linux-64"),
        "cpu_count": 2,
    }
    options.update(overrides)
    return ToolConfiguration(**options)  # type: ignore[arg-type]


def _plan(
    tmp_path: Path,
    script: str,
    *,
    variant: dict[str, str] | None = None,
    source: str = "",
    host: str = "zlib",
) -> BuildPlan:
    body = textwrap.indent(textwrap.dedent(script).strip() + "\n", "    ")
    text = (
        'package:\n  name: foo\n  version: "1.0"\n'
        + source
        + "build:\n  script: |\n"
        + body
        + f"requirements:\n  host:\n    - {host}\n"
    )
    recipe = parse_recipe(text, recipe_dir=tmp_path)
    plan, _ = render(recipe, variant or {"zlib": "1.3"}, target_platform="linux-64")
    return plan
