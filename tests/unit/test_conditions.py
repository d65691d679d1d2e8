"""
Unit tests for condition rule evaluation.
"""
import pytest

from flow_engine.core import ConditionEvaluator, VariableStore
from flow_engine.models import Logic, Operator, Rule


@pytest.fixture
def store() -> VariableStore:
    store = VariableStore(namespaces={"contact": {"name": "Ana Silva", "email": "  "}})
    store.merge({"age": "20", "count": "10", "city": "Lisbon", "threshold": "18"})
    return store


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


def rule(variable, operator, value=None) -> Rule:
    return Rule(variable=variable, operator=operator, value=value)


class TestCombination:
    """AND/OR over rule lists."""

    def test_empty_and_is_true(self, evaluator, store):
        assert evaluator.evaluate([], Logic.AND, store) is True

    def test_empty_or_is_false(self, evaluator, store):
        assert evaluator.evaluate([], Logic.OR, store) is False

    @pytest.mark.parametrize("single", [
        rule("{{age}}", Operator.GREATER_THAN, "18"),
        rule("{{age}}", Operator.LESS_THAN, "18"),
        rule("city", Operator.EQUALS, "Porto"),
        rule("contact.email", Operator.IS_EMPTY),
        rule("missing", Operator.IS_NOT_EMPTY),
    ])
    def test_single_rule_and_or_agree(self, evaluator, store, single):
        assert evaluator.evaluate([single], Logic.AND, store) == evaluator.evaluate([single], Logic.OR, store)

    def test_and_requires_all(self, evaluator, store):
        rules = [rule("city", Operator.EQUALS, "Lisbon"), rule("{{age}}", Operator.LESS_THAN, "18")]
        assert evaluator.evaluate(rules, Logic.AND, store) is False
        assert evaluator.evaluate(rules, Logic.OR, store) is True

    def test_logic_accepts_plain_strings(self, evaluator, store):
        assert evaluator.evaluate([rule("city", "equals", "Lisbon")], "OR", store) is True


class TestNumericOperators:
    """greater_than / less_than parse operands as numbers."""

    def test_greater_than(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("{{age}}", Operator.GREATER_THAN, "18"), store)

    def test_numeric_not_lexicographic(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("count", Operator.GREATER_THAN, "9"), store)

    def test_value_placeholder(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("age", Operator.GREATER_THAN, "{{threshold}}"), store)

    def test_non_numeric_is_false_not_error(self, evaluator, store):
        assert not evaluator.evaluate_rule(rule("city", Operator.GREATER_THAN, "5"), store)
        assert not evaluator.evaluate_rule(rule("city", Operator.LESS_THAN, "5"), store)

    def test_missing_variable_is_false(self, evaluator, store):
        assert not evaluator.evaluate_rule(rule("{{nope}}", Operator.LESS_THAN, "5"), store)


class TestStringOperators:
    """Case-sensitive string comparisons."""

    @pytest.mark.parametrize("operator,value,expected", [
        (Operator.EQUALS, "Ana Silva", True),
        (Operator.EQUALS, "ana silva", False),
        (Operator.NOT_EQUALS, "Bob", True),
        (Operator.CONTAINS, "Silva", True),
        (Operator.CONTAINS, "silva", False),
        (Operator.NOT_CONTAINS, "Costa", True),
        (Operator.STARTS_WITH, "Ana", True),
        (Operator.ENDS_WITH, "Ana", False),
    ])
    def test_operator(self, evaluator, store, operator, value, expected):
        assert evaluator.evaluate_rule(rule("contact.name", operator, value), store) is expected

    def test_numbers_compared_as_text(self, evaluator):
        store = VariableStore(local={"score": 7})
        assert evaluator.evaluate_rule(rule("score", Operator.EQUALS, 7), store)


class TestEmptinessOperators:
    def test_whitespace_is_empty(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("contact.email", Operator.IS_EMPTY), store)

    def test_missing_is_empty(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("{{contact.phone}}", Operator.IS_EMPTY), store)

    def test_is_not_empty(self, evaluator, store):
        assert evaluator.evaluate_rule(rule("city", Operator.IS_NOT_EMPTY), store)
