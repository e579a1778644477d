import pytest

from kiln.errors import RenderError
from kiln.render.evaluate import (
    Evaluator,
    evaluate_expression,
    evaluate_selector,
    render_template,
)
from kiln.render.expr import Call, Compare, Const, Name, iter_names, parse_expression
from kiln.render.functions import FILTERS


def _evaluator(**variables: str) -> Evaluator:
    return Evaluator(
        variables=variables,
        facts={"linux": True, "osx": False, "win": False, "unix": True, "target_platform": "linux-64"},
        filters=FILTERS,
    )


def test_parse_keeps_dotted_numbers_as_text() -> None:
    node = parse_expression("python >= 3.10")

    assert node == Compare(left=Name("python"), comparisons=((">=", Const("3.10")),))


def test_parse_function_calls_with_keyword_arguments() -> None:
    node = parse_expression("pin_subpackage('libfoo', max_pin='x.x')")

    assert isinstance(node, Call)
    assert node.args == (Const("libfoo"),)
    assert node.kwargs == (("max_pin", Const("x.x")),)


def test_malformed_expression_raises_render_error() -> None:
    with pytest.raises(RenderError) as excinfo:
        parse_expression("python >=")

    assert "malformed expression" in excinfo.value.message
    assert excinfo.value.context["expression"] == "python >="


def test_unknown_character_raises_render_error() -> None:
    with pytest.raises(RenderError, match="unexpected character `@`"):
        parse_expression("python @ 3")


def test_iter_names_covers_every_branch() -> None:
    names = set(iter_names(parse_expression("a if b else (c | lower)")))

    assert names == {"a", "b", "c"}


def test_selector_compares_versions_and_records_reads() -> None:
    evaluator = _evaluator(python="3.10")

    assert evaluate_selector("linux and python >= '3.9'", evaluator)
    assert evaluator.used == {"python"}


def test_short_circuit_skips_unread_branch() -> None:
    evaluator = _evaluator(python="3.10")

    assert not evaluate_selector("win and python == '3.10'", evaluator)
    assert evaluator.used == set()


def test_undefined_variable_is_a_render_error() -> None:
    with pytest.raises(RenderError) as excinfo:
        evaluate_expression("cuda_version ~ '-x'", _evaluator())

    assert excinfo.value.message == "undefined variable cuda_version"
    assert excinfo.value.context["variable"] == "cuda_version"


def test_template_substitution_and_filters() -> None:
    evaluator = _evaluator()
    evaluator.context.update({"name": "foo", "version": "1.2"})

    assert render_template("${{ name }}-${{ version | replace('.', '_') }}", evaluator) == "foo-1_2"
    assert render_template("${{ missing | default('none') }}", evaluator) == "none"
    assert render_template("${{ name | upper }}", evaluator) == "FOO"


def test_single_placeholder_keeps_native_type() -> None:
    evaluator = _evaluator()

    assert render_template("${{ 1 + 2 }}", evaluator) == 3
    assert render_template("${{ ['a', 'b'] }}", evaluator) == ["a", "b"]


def test_membership_operators() -> None:
    evaluator = _evaluator(blas_impl="openblas")

    assert evaluate_selector("blas_impl in ['openblas', 'mkl']", evaluator)
    assert not evaluate_selector("blas_impl not in ['openblas']", evaluator)
