"""Tests for the restricted formula compiler and evaluator."""

from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from models.records import StationConstants
from services.errors import FormulaParseError, FormulaRuntimeError
from services.formula import FormulaEvaluator, compile_formula, substitute_constants, to_scalar

RECORD = {
    "d": datetime(2024, 1, 1, 6, 30, tzinfo=timezone.utc),
    "temperature:outTemp": 283.15,
    "humidity:outHumidity": 80.0,
}


@pytest.fixture()
def evaluator() -> FormulaEvaluator:
    return FormulaEvaluator()


def test_bare_expression_reads_data(evaluator: FormulaEvaluator) -> None:
    value = evaluator.evaluate("data['temperature:outTemp'] - 273.15", RECORD)

    assert value == pytest.approx(10.0)


def test_assigned_lambda_form(evaluator: FormulaEvaluator) -> None:
    value = evaluator.evaluate("val = lambda d: d['temperature:outTemp'] - 273.15", RECORD)

    assert value == pytest.approx(10.0)


def test_lambda_defaults_receive_station_constants(evaluator: FormulaEvaluator) -> None:
    constants = StationConstants(longitude=2.35, latitude=48.85, altitude=35.0)

    value = evaluator.evaluate("lambda data, lat=%latitude%, alt=%altitude%: lat + alt", RECORD, constants)

    assert value == pytest.approx(83.85)


def test_placeholders_default_to_zero_without_station() -> None:
    assert substitute_constants("%longitude% + 1", None) == "(0.0) + 1"


def test_statement_block_with_return(evaluator: FormulaEvaluator) -> None:
    source = """
t = data['temperature:outTemp']
if t > 300:
    return None
total = 0
for offset in [1, 2, 3]:
    total += offset
return t - 273.15 + total
"""

    assert evaluator.evaluate(source, RECORD) == pytest.approx(16.0)


def test_block_without_return_yields_last_expression(evaluator: FormulaEvaluator) -> None:
    assert evaluator.evaluate("x = 2\nx * 21", RECORD) == 42


def test_timestamp_attribute_access(evaluator: FormulaEvaluator) -> None:
    assert evaluator.evaluate("data.d.hour + hour(data.d)", RECORD) == 12


def test_comprehension_and_library_calls(evaluator: FormulaEvaluator) -> None:
    value = evaluator.evaluate("mean([v * 2 for v in [1, 2, 3] if v > 1])", RECORD)

    assert value == pytest.approx(5.0)


@pytest.mark.parametrize(
    "source",
    [
        "__import__('os').system('true')",
        "import os",
        "data.__class__",
        "open('/etc/passwd')",
        "(lambda: 1)()",
        "while True:\n    pass",
        "min = 3",
        "data['a'] = 1",
        "max(*[1, 2])",
    ],
)
def test_constructs_outside_the_grammar_are_rejected(source: str) -> None:
    with pytest.raises(FormulaParseError):
        compile_formula(source)


def test_syntax_error_reports_line() -> None:
    with pytest.raises(FormulaParseError) as excinfo:
        compile_formula("x = 1\ny = (")

    assert excinfo.value.line is not None
    assert "line" in str(excinfo.value)


def test_lambda_extra_parameters_need_defaults() -> None:
    with pytest.raises(FormulaParseError):
        compile_formula("lambda d, lat: lat")


def test_missing_field_raises_runtime_error(evaluator: FormulaEvaluator) -> None:
    with pytest.raises(FormulaRuntimeError):
        evaluator.evaluate("data['pressure:barometer'] * 2", RECORD)


def test_division_by_zero_raises_runtime_error(evaluator: FormulaEvaluator) -> None:
    with pytest.raises(FormulaRuntimeError):
        evaluator.evaluate("1 / 0", RECORD)


def test_sequence_repetition_is_refused(evaluator: FormulaEvaluator) -> None:
    with pytest.raises(FormulaRuntimeError):
        evaluator.evaluate("'a' * 1000", RECORD)


@pytest.mark.parametrize(
    "source",
    [
        "x = 2\n" + "x = x * x\n" * 40 + "return x",
        "s = 'ab'\n" + "s = s + s\n" * 40 + "return len(s)",
        "rows = [1, 2]\n" + "rows += rows\n" * 40 + "return len(rows)",
        "'%s' % data['temperature:outTemp']",
    ],
)
def test_runaway_arithmetic_is_stopped(evaluator: FormulaEvaluator, source: str) -> None:
    with pytest.raises(FormulaRuntimeError):
        evaluator.evaluate(source, RECORD)


def test_large_but_bounded_integers_still_work(evaluator: FormulaEvaluator) -> None:
    assert evaluator.evaluate("x = 2\n" + "x = x * x\n" * 5 + "return x", RECORD) == 2**32


def test_bindings_override_lambda_defaults(evaluator: FormulaEvaluator) -> None:
    value = evaluator.evaluate("lambda rows, target=20: target + len(rows)", [1, 2], bindings={"target": 5})

    assert value == 7


def test_to_scalar_reductions() -> None:
    assert to_scalar(3) == 3.0
    assert to_scalar({"value": 1.5, "state": "comfort"}) == 1.5
    assert to_scalar({"altitude": math.pi / 2, "azimuth": 0.0}) == pytest.approx(90.0)
    assert to_scalar("text") is None
    assert to_scalar([1, 2]) is None
    assert to_scalar(10**400) is None
    assert to_scalar({"value": 2**1024}) is None


def test_evaluate_scalar_filters_non_finite(evaluator: FormulaEvaluator) -> None:
    assert evaluator.evaluate_scalar("nan", RECORD) is None
    assert evaluator.evaluate_scalar("None", RECORD) is None
    assert evaluator.evaluate_scalar("1 + 1", RECORD) == 2.0
