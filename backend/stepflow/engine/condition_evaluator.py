"""Condition Evaluator - Safe evaluation of conditional node rules"""
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import ConditionRule, Condition
from ..domain.enums import ConditionOperator
from ..domain.errors import NoMatchingEdgeError
from ..utils.time import coerce_datetime
from ..utils.logger import get_logger

logger = get_logger(__name__)

_TRUTHY_STRINGS = {"true", "yes", "y", "1", "on", "checked"}
_MISSING = object()


class ConditionEvaluator:
    """
    Map runtime facts to an output port

    Rules:
    1. Rules are evaluated in declared order; first match wins
    2. A rule without conditions always matches
    3. No rule matched -> default port, if the node has one
    4. No default -> NoMatchingEdgeError, the caller parks the instance

    Uses a simple DSL - no eval() or exec(). Pure: the same rules and facts
    always yield the same port.
    """

    def evaluate(
        self,
        rules: List[ConditionRule],
        facts: Dict[str, Any],
        default_port: Optional[str] = None
    ) -> str:
        """
        Choose the output port for a fact set

        Args:
            rules: Ordered rules of a conditional node
            facts: Accumulated instance facts
            default_port: Else port used when no rule matches

        Returns:
            Selected port name

        Raises:
            NoMatchingEdgeError: If no rule matches and there is no default
        """
        for index, rule in enumerate(rules):
            if self.rule_matches(rule, facts):
                logger.debug(f"Rule {index} ({rule.label or rule.port}) matched -> {rule.port}")
                return rule.port

        if default_port:
            return default_port

        raise NoMatchingEdgeError(
            "No conditional rule matched and no default port is defined",
            details={"rules_count": len(rules)}
        )

    def rule_matches(self, rule: ConditionRule, facts: Dict[str, Any]) -> bool:
        """Evaluate one rule's condition group"""
        if not rule.conditions:
            return True

        results = [self._evaluate_single(c, facts) for c in rule.conditions]

        if rule.logic == "OR":
            return any(results)
        return all(results)

    def _evaluate_single(self, condition: Condition, facts: Dict[str, Any]) -> bool:
        """Evaluate a single condition"""
        field_value = self.get_fact(condition.fact, facts)
        try:
            return self._compare(field_value, condition.operator, condition.value, condition.value2)
        except (TypeError, ValueError) as e:
            logger.warning(f"Condition on {condition.fact} could not be evaluated: {e}")
            return False  # Fail closed

    @staticmethod
    def get_fact(path: str, facts: Dict[str, Any]) -> Any:
        """
        Get fact value using dot notation

        Example: "forms.intake.budget" -> facts["forms"]["intake"]["budget"]
        An exact key match wins over the dotted walk.
        """
        if path in facts:
            return facts[path]

        value: Any = facts
        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any,
        compare_value2: Any
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQUALS:
            return _values_equal(field_value, compare_value)

        elif operator == ConditionOperator.NOT_EQUALS:
            return not _values_equal(field_value, compare_value)

        elif operator == ConditionOperator.GREATER_THAN:
            return _compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return _compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_THAN_OR_EQUALS:
            return _compare_numeric(field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_THAN_OR_EQUALS:
            return _compare_numeric(field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.BETWEEN:
            return (
                _compare_numeric(field_value, compare_value, lambda a, b: a >= b)
                and _compare_numeric(field_value, compare_value2, lambda a, b: a <= b)
            )

        elif operator == ConditionOperator.CONTAINS:
            return _contains(field_value, compare_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            return not _contains(field_value, compare_value)

        elif operator == ConditionOperator.STARTS_WITH:
            if field_value is None or compare_value is None:
                return False
            return str(field_value).casefold().startswith(str(compare_value).casefold())

        elif operator == ConditionOperator.ENDS_WITH:
            if field_value is None or compare_value is None:
                return False
            return str(field_value).casefold().endswith(str(compare_value).casefold())

        elif operator == ConditionOperator.IN:
            return any(_values_equal(field_value, v) for v in _as_list(compare_value))

        elif operator == ConditionOperator.NOT_IN:
            return not any(_values_equal(field_value, v) for v in _as_list(compare_value))

        elif operator == ConditionOperator.IS_EMPTY:
            return _is_empty(field_value)

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not _is_empty(field_value)

        elif operator == ConditionOperator.IS_TRUE:
            return _is_truthy(field_value)

        elif operator == ConditionOperator.IS_FALSE:
            return not _is_truthy(field_value)

        elif operator == ConditionOperator.BEFORE:
            return _compare_dates(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.AFTER:
            return _compare_dates(field_value, compare_value, lambda a, b: a > b)

        return False


# ============================================================================
# Comparison helpers
# ============================================================================

def _to_number(value: Any) -> Any:
    """Return a float for numbers and numeric strings, else _MISSING"""
    if isinstance(value, bool) or value is None:
        return _MISSING
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return _MISSING
    return _MISSING


def _values_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return _is_truthy(a) == _is_truthy(b)
    num_a, num_b = _to_number(a), _to_number(b)
    if num_a is not _MISSING and num_b is not _MISSING:
        return num_a == num_b
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().casefold() == b.strip().casefold()
    return a == b


def _compare_numeric(a: Any, b: Any, comparator: Callable[[float, float], bool]) -> bool:
    num_a, num_b = _to_number(a), _to_number(b)
    if num_a is _MISSING or num_b is _MISSING:
        return False
    return comparator(num_a, num_b)


def _compare_dates(a: Any, b: Any, comparator: Callable[[Any, Any], bool]) -> bool:
    date_a, date_b = coerce_datetime(a), coerce_datetime(b)
    if date_a is None or date_b is None:
        return False
    return comparator(date_a, date_b)


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, (list, tuple, set)):
        return any(_values_equal(element, item) for element in container)
    if item is None:
        return False
    return str(item).casefold() in str(container).casefold()


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY_STRINGS
    return bool(value)
