import pytest

from sim_config.errors import ExpressionError
from sim_engine.expressions import ExpressionEvaluator, evaluate_condition, evaluate_equation

REGISTERS = {"temperature": 80.0, "power": 92.0, "vibration": 2.0, "speed": 1500.0}


def test_simple_comparison():
    assert evaluate_condition("temperature > 75", REGISTERS) is True
    assert evaluate_condition("temperature <= 75", REGISTERS) is False
    assert evaluate_condition("speed == 1500", REGISTERS) is True
    assert evaluate_condition("speed != 1500", REGISTERS) is False


def test_and_binds_tighter_than_or():
    # (false && true) || true
    assert evaluate_condition("vibration > 3 && temperature > 70 || power > 90", REGISTERS) is True
    # false && (true || true) only with explicit parentheses
    assert evaluate_condition("vibration > 3 && (temperature > 70 || power > 90)", REGISTERS) is False


def test_negation_and_arithmetic():
    assert evaluate_condition("!(power < 10)", REGISTERS) is True
    assert evaluate_condition("temperature * 2 - 10 > 140", REGISTERS) is True
    assert evaluate_condition("-temperature < 0", REGISTERS) is True
    assert evaluate_condition("speed / 500 + 1 == 4", REGISTERS) is True


def test_unknown_identifier_is_an_error_not_zero():
    with pytest.raises(ExpressionError, match="unknown identifier 'pressure'"):
        evaluate_condition("pressure < 1", REGISTERS)


def test_unknown_identifier_reported_even_when_other_operand_decides():
    with pytest.raises(ExpressionError):
        evaluate_condition("temperature > 0 || pressure > 0", REGISTERS)


@pytest.mark.parametrize("text", [
    "temperature >",
    "temperature > > 3",
    "1 < 2 < 3",
    "__import__('os')",
    "temperature = 5",
])
def test_syntax_errors(text):
    with pytest.raises(ExpressionError):
        evaluate_condition(text, REGISTERS)


@pytest.mark.parametrize("text", [
    "temperature && 5",
    "temperature + 1",
    "(temperature > 1) + 1",
    "!temperature",
])
def test_type_mismatch(text):
    with pytest.raises(ExpressionError):
        evaluate_condition(text, REGISTERS)


def test_division_by_zero():
    with pytest.raises(ExpressionError, match="division by zero"):
        evaluate_condition("power / (speed - 1500) > 1", REGISTERS)


def test_empty_expression():
    with pytest.raises(ExpressionError):
        evaluate_condition("   ", REGISTERS)


def test_equation_with_assignment_prefix():
    assert evaluate_equation("target = source * 1.2 + 10", 10.0) == pytest.approx(22.0)


def test_equation_without_prefix_and_with_target():
    assert evaluate_equation("source * 2", 4.0) == pytest.approx(8.0)
    assert evaluate_equation("target = (source + target) / 2", 10.0, 20.0) == pytest.approx(15.0)


def test_equation_may_only_reference_source_and_target():
    with pytest.raises(ExpressionError, match="temperature"):
        evaluate_equation("target = source + temperature", 1.0)


def test_equation_must_be_numeric():
    with pytest.raises(ExpressionError):
        evaluate_equation("source > 1", 2.0)


def test_parse_cache_reuses_ast():
    evaluator = ExpressionEvaluator()
    first = evaluator.parse("temperature > 75")
    assert evaluator.parse("temperature > 75") is first


def test_parse_cache_is_bounded():
    evaluator = ExpressionEvaluator(cache_size=4)
    for limit in range(10):
        evaluator.parse(f"temperature > {limit}")
    assert evaluator.cache_info().currsize == 4


def test_deeply_nested_expressions_are_rejected():
    evaluator = ExpressionEvaluator()
    with pytest.raises(ExpressionError, match="nested deeper"):
        evaluator.condition("!" * 980 + "(temperature > 0)", {"temperature": 1.0})
    with pytest.raises(ExpressionError, match="nested deeper"):
        evaluator.equation("-" * 990 + "source", 1.0)
    assert evaluator.condition("!" * 10 + "(temperature > 0)", {"temperature": 1.0})


def test_diagnostics_for_configuration_ui():
    evaluator = ExpressionEvaluator()
    assert evaluator.diagnose_condition("temperature > 70 && vibration > 3") is None
    assert "pressure" in evaluator.diagnose_condition("pressure > 3", {"temperature", "vibration"})
    assert evaluator.diagnose_condition("temperature +") is not None
    assert evaluator.diagnose_condition("temperature + 1") is not None
    assert evaluator.diagnose_equation("target = source * 1.2") is None
    assert evaluator.diagnose_equation("target = power * 2") is not None
