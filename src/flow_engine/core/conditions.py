"""
Condition rule evaluation.
"""

import logging
import math
from typing import Any, List, Optional

from ..models.flow import Logic, Operator, Rule
from .resolver import TemplateResolver, UnresolvedPolicy, to_text
from .variables import VariableStore

logger = logging.getLogger(__name__)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


class ConditionEvaluator:
    """
    Evaluates AND/OR rule sets against a variable store.

    An empty rule list is vacuously true under AND and vacuously false
    under OR. A rule never raises: non-numeric operands to a numeric
    comparison make that rule false.
    """

    def __init__(self, resolver: Optional[TemplateResolver] = None):
        self.resolver = resolver or TemplateResolver(UnresolvedPolicy.EMPTY)

    def evaluate(self, rules: List[Rule], logic: Logic, store: VariableStore) -> bool:
        results = (self.evaluate_rule(rule, store) for rule in rules)
        if Logic(logic) == Logic.AND:
            return all(results)
        return any(results)

    def evaluate_rule(self, rule: Rule, store: VariableStore) -> bool:
        left = self.resolver.lookup(rule.variable, store)
        operator = Operator(rule.operator)

        if operator == Operator.IS_EMPTY:
            return _is_empty(left)
        if operator == Operator.IS_NOT_EMPTY:
            return not _is_empty(left)

        right = TemplateResolver(UnresolvedPolicy.EMPTY).resolve(rule.value or "", store)

        if operator in (Operator.GREATER_THAN, Operator.LESS_THAN):
            a, b = _as_number(left), _as_number(right)
            if a is None or b is None:
                logger.debug(f"Non-numeric comparison {rule.variable!r} {operator.value} {right!r}")
                return False
            return a > b if operator == Operator.GREATER_THAN else a < b

        text = to_text(left)
        if operator == Operator.EQUALS:
            return text == right
        if operator == Operator.NOT_EQUALS:
            return text != right
        if operator == Operator.CONTAINS:
            return right in text
        if operator == Operator.NOT_CONTAINS:
            return right not in text
        if operator == Operator.STARTS_WITH:
            return text.startswith(right)
        if operator == Operator.ENDS_WITH:
            return text.endswith(right)
        return False
