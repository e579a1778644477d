import json
import shutil
import tarfile
from pathlib import Path

import pytest

from kiln.cli import main
from kiln.config import ToolConfiguration
from kiln.engine import Kiln
from kiln.errors import BuildError, RenderError
from kiln.platforms import Platform

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="Build scripts need bash.")

HELLO = """
package:
  name: hello
  version: "1.0"
build:
  script:
    - mkdir -p "$PREFIX/share/hello"
    - echo "$zlib" > "$PREFIX/share/hello/zlib.txt"
requirements:
  host:
    - zlib
"""

PICKY = """
package:
  name: picky
  version: '${{ "1.0" if python == "3.10" else cuda_version }}'
"""

SUITE = """
recipe:
  name: suite
  version: "2.0"
outputs:
  - package:
      name: libsuite
    build:
      files:
        - lib/
      script:
        - mkdir -p "$PREFIX/lib"
        - echo lib > "$PREFIX/lib/suite.txt"
  - package:
      name: suite-docs
    build:
      script:
        - mkdir -p "$PREFIX/share/doc"
        - echo doc > "$PREFIX/share/doc/suite.txt"
        - exit 3
"""

VARIANTS = """
zlib:
  - "1.2"
  - "1.3"
python:
  - "3.10"
  - "3.11"
"""


def test_render_expands_only_used_variables(tmp_path: Path) -> None:
    kiln = Kiln.from_paths(_recipe(tmp_path, HELLO, VARIANTS), config=_config(tmp_path))

    rendered = kiln.render()

    assert [item.plan.variant_dict() for item in rendered] == [{"zlib": "1.2"}, {"zlib": "1.3"}]
    summary = kiln.logger.records_for_operation("render_complete")[0]["extra"]
    assert summary == {"expanded": 2, "unique": 2, "failed": 0, "used": ["zlib"]}


def test_render_collapses_variants_that_render_identically(tmp_path: Path) -> None:
    recipe = """
package:
  name: hello
  version: "1.0"
requirements:
  host:
    - if: win
      then: zlib
"""
    kiln = Kiln.from_paths(_recipe(tmp_path, recipe, VARIANTS), config=_config(tmp_path))

    rendered = kiln.render()

    assert len(rendered) == 1
    assert rendered[0].plan.variant == ()


def test_render_failure_is_isolated_to_its_variant(tmp_path: Path) -> None:
    kiln = Kiln.from_paths(_recipe(tmp_path, PICKY, VARIANTS), config=_config(tmp_path))

    good, bad = kiln.render()

    assert good.ok
    assert good.plan is not None
    assert good.plan.outputs[0].version == "1.0"
    assert bad.plan is None
    assert isinstance(bad.error, RenderError)
    assert bad.error.message == "undefined variable cuda_version"
    assert bad.error.context["variant"] == "python=3.11"
    assert kiln.logger.records_for_operation("render_failed")[0]["variant"] == "python=3.11"
    assert kiln.logger.records_for_operation("render_complete")[0]["extra"]["failed"] == 1


def test_cli_render_prints_good_plans_and_fails_on_bad_ones(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    recipe_dir = _recipe(tmp_path, PICKY, VARIANTS)

    code = main(["render", str(recipe_dir), "--target-platform", "linux-64"])

    captured = capsys.readouterr()
    assert code == 1
    assert [plan["variant"] for plan in json.loads(captured.out)] == [{"python": "3.10"}]
    assert "undefined variable cuda_version" in captured.err


@needs_bash
def test_build_reports_unrenderable_variants_and_builds_the_rest(tmp_path: Path) -> None:
    kiln = Kiln.from_paths(_recipe(tmp_path, PICKY, VARIANTS), config=_config(tmp_path))

    result = kiln.build()

    assert not result.ok
    built, failed = result.variants
    assert built.ok
    assert len(result.archives) == 1
    assert failed.plan is None
    assert isinstance(failed.error, RenderError)
    payload = failed.to_payload()
    assert payload["variant"] == {"python": "3.11"}
    assert payload["outputs"] == []
    assert payload["error"]["code"] == "E_RENDER"


@needs_bash
def test_failed_output_script_keeps_sibling_archives(tmp_path: Path) -> None:
    kiln = Kiln.from_paths(_recipe(tmp_path, SUITE, VARIANTS), config=_config(tmp_path))

    result = kiln.build()

    assert not result.ok
    (variant,) = result.variants
    assert variant.error is None
    assert variant.report is not None
    libsuite = variant.report.output("libsuite")
    docs = variant.report.output("suite-docs")
    assert libsuite.archive is not None and libsuite.archive.exists()
    assert result.archives == (libsuite.archive,)
    assert docs.archive is None
    assert isinstance(docs.error, BuildError)
    assert docs.error.context["returncode"] == "3"
    assert [artifact.path for artifact in docs.files] == ["share/doc/suite.txt"]


def test_explicit_variant_files_replace_discovery(tmp_path: Path) -> None:
    recipe_dir = _recipe(tmp_path, HELLO, VARIANTS)
    override = tmp_path / "override.yaml"
    override.write_text('zlib:\n  - "1.3"\n', encoding="utf-8")

    kiln = Kiln.from_paths(recipe_dir, override, config=_config(tmp_path))

    assert [assignment["zlib"] for assignment in kiln.variants()] == ["1.3"]


@needs_bash
def test_build_packages_every_variant(tmp_path: Path) -> None:
    config = _config(tmp_path)
    kiln = Kiln.from_paths(_recipe(tmp_path, HELLO, VARIANTS), config=config)

    result = kiln.build()

    assert result.ok
    assert len(result.archives) == 2
    assert all(archive.parent == tmp_path / "out" / "linux-64" for archive in result.archives)
    with tarfile.open(result.archives[0]) as tar:
        content = tar.extractfile("share/hello/zlib.txt").read()  # type: ignore[union-attr]
        index = json.load(tar.extractfile("info/index.json"))  # type: ignore[arg-type]
    assert content == b"1.2\n"
    assert index["depends"] == []
    assert not any(config.workspaces_dir.iterdir())


@needs_bash
def test_skip_existing_leaves_archives_untouched(tmp_path: Path) -> None:
    recipe_dir = _recipe(tmp_path, HELLO, VARIANTS)
    first = Kiln.from_paths(recipe_dir, config=_config(tmp_path)).build()
    stamps = [archive.stat().st_mtime_ns for archive in first.archives]

    kiln = Kiln.from_paths(recipe_dir, config=_config(tmp_path, skip_existing=True))
    second = kiln.build()

    assert second.ok
    assert [result.skipped for result in second.variants] == [True, True]
    assert [archive.stat().st_mtime_ns for archive in first.archives] == stamps
    assert len(kiln.logger.records_for_operation("skip_existing")) == 2


@needs_bash
def test_failed_variant_is_reported_without_stopping_others(tmp_path: Path) -> None:
    recipe = HELLO.replace('    - mkdir -p "$PREFIX/share/hello"\n', '    - test "$zlib" != 1.2\n')
    recipe = recipe.replace('echo "$zlib" >', 'mkdir -p "$PREFIX/share/hello" && echo "$zlib" >')
    kiln = Kiln.from_paths(_recipe(tmp_path, recipe, VARIANTS), config=_config(tmp_path))

    result = kiln.build()
    report = json.loads(result.write_report(tmp_path / "report.json").read_text(encoding="utf-8"))

    assert not result.ok
    failed, built = result.variants
    assert isinstance(failed.error, BuildError)
    assert failed.error.context["variant"] == "zlib=1.2"
    assert built.ok
    assert len(result.archives) == 1
    assert report["variants"][0]["error"]["code"] == "E_BUILD"
    assert report["variants"][1]["packaging"]["outputs"][0]["archive"] == str(result.archives[0])


def test_cli_render_prints_plans(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    recipe_dir = _recipe(tmp_path, HELLO, VARIANTS)

    code = main(["render", str(recipe_dir), "--target-platform", "osx-arm64"])

    plans = json.loads(capsys.readouterr().out)
    assert code == 0
    assert [plan["variant"] for plan in plans] == [{"zlib": "1.2"}, {"zlib": "1.3"}]
    assert {plan["target_platform"] for plan in plans} == {"osx-arm64"}


def test_cli_reports_configuration_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    recipe_dir = _recipe(tmp_path, HELLO, VARIANTS)

    code = main(["render", str(recipe_dir), "--target-platform", "plan9-64"])

    assert code == 1
    assert "plan9-64" in capsys.readouterr().err


@needs_bash
def test_cli_build_writes_archives_and_report(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    recipe_dir = _recipe(tmp_path, HELLO, VARIANTS)
    report = tmp_path / "report.json"

    code = main(
        [
            "build",
            str(recipe_dir),
            "--target-platform",
            "linux-64",
            "--output-dir",
            str(tmp_path / "out"),
            "--archive-format",
            "tar.gz",
            "--report",
            str(report),
        ]
    )

    out = capsys.readouterr().out
    assert code == 0
    assert out.count("built ") == 2
    assert sorted(path.name.endswith(".tar.gz") for path in (tmp_path / "out" / "linux-64").iterdir()) == [
        True,
        True,
    ]
    assert len(json.loads(report.read_text(encoding="utf-8"))["variants"]) == 2


def _recipe(tmp_path: Path, recipe: str, variants: str) -> Path:
    recipe_dir = tmp_path / "recipe"
    recipe_dir.mkdir()
    (recipe_dir / "recipe.yaml").write_text(recipe, encoding="utf-8")
    (recipe_dir / "variants.yaml").write_text(variants, encoding="utf-8")
    return recipe_dir


def _config(tmp_path: Path, **overrides: object) -> ToolConfiguration:
    options: dict[str, object] = {
        "output_dir": tmp_path / "out",
        "target_platform": Platform("linux-64"),
        "build_platform": Platform("linux-64"),
    }
    options.update(overrides)
    return ToolConfiguration(**options)  # type: ignore[arg-type]
