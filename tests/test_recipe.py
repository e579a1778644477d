from pathlib import Path

import pytest

from kiln.errors import RecipeError
from kiln.recipe import Conditional, Literal, Sequence, Template, load_recipe, parse_recipe


def test_single_output_recipe_gets_implicit_output() -> None:
    recipe = parse_recipe(
        """
package:
  name: foo
  version: 3.10
build:
  number: 0
"""
    )

    assert not recipe.is_multi_output
    assert len(recipe.outputs) == 1
    assert recipe.outputs[0].implicit
    assert recipe.outputs[0].package is recipe.package
    assert recipe.package.get("version") == Literal("3.10")
    assert recipe.build.get("number") == Literal("0")


def test_templates_and_conditionals_are_parsed_not_evaluated() -> None:
    recipe = parse_recipe(
        """
context:
  name: foo
package:
  name: ${{ name }}
  version: "1.0"
requirements:
  host:
    - if: linux
      then: libgcc
      else: vc
    - python
"""
    )

    assert recipe.package.get("name") == Template("${{ name }}")
    host = recipe.requirements.get("host")
    assert isinstance(host, Sequence)
    assert host.items[0] == Conditional(selector="linux", then=Literal("libgcc"), otherwise=Literal("vc"))


def test_conditional_outputs_keep_their_selector() -> None:
    recipe = parse_recipe(
        """
recipe:
  name: suite
  version: "1.0"
outputs:
  - package:
      name: libfoo
  - if: unix
    then:
      package:
        name: foo-tools
"""
    )

    assert recipe.is_multi_output
    assert [output.selector for output in recipe.outputs] == [None, "unix"]


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("package: {name: a}\nrecipe: {name: b}\n", "both `package` and `recipe`"),
        ("package: {name: a}\nbogus: 1\n", "Unknown top-level recipe keys: bogus."),
        ("package: {version: '1'}\n", "missing `package.name`"),
        ("package: {name: a}\nabout: {true: yes}\n", "mapping keys must be strings"),
        ("recipe: {name: a}\noutputs: []\n", "non-empty list"),
        ("package: {name: a}\nbuild: {script: [{if: linux}]}\n", "missing `then`"),
        (
            "recipe: {name: a}\noutputs:\n  - {if: linux, then: {package: {name: b}}, else: {}}\n",
            "cannot have an `else` branch",
        ),
    ],
)
def test_invalid_recipes_raise_recipe_error(text: str, message: str) -> None:
    with pytest.raises(RecipeError) as excinfo:
        parse_recipe(text)

    assert message in excinfo.value.message


def test_invalid_yaml_reports_source(tmp_path: Path) -> None:
    path = tmp_path / "recipe.yaml"
    path.write_text("package: [unclosed\n", encoding="utf-8")

    with pytest.raises(RecipeError) as excinfo:
        load_recipe(tmp_path)

    assert excinfo.value.context["path"] == str(path)
    assert excinfo.value.hint


def test_load_recipe_records_recipe_dir(tmp_path: Path) -> None:
    (tmp_path / "recipe.yaml").write_text("package: {name: foo, version: '1'}\n", encoding="utf-8")

    recipe = load_recipe(tmp_path / "recipe.yaml")

    assert recipe.recipe_dir == tmp_path


def test_missing_recipe_file() -> None:
    with pytest.raises(RecipeError, match="does not exist"):
        load_recipe("/nonexistent/recipe.yaml")
