"""
Conditional routing unit tests.

Tests cover:
  - Operators (equality, ordering, membership, strings, emptiness, truthiness, dates)
  - Dot-path fact lookup
  - Rule order, AND/OR groups, default port
  - No match without default -> NoMatchingEdgeError
"""
import pytest

from stepflow.domain.errors import NoMatchingEdgeError
from stepflow.domain.models import ConditionRule
from stepflow.engine.condition_evaluator import ConditionEvaluator


def rule(port, *conditions, logic="AND"):
    return ConditionRule.model_validate({
        "port": port,
        "logic": logic,
        "conditions": [
            {"fact": fact, "operator": op, "value": value}
            for fact, op, value in conditions
        ],
    })


@pytest.fixture()
def evaluator():
    return ConditionEvaluator()


# ═════════════════════════════════════════════════════════════════════════
# OPERATORS
# ═════════════════════════════════════════════════════════════════════════

class TestOperators:
    @pytest.mark.parametrize("operator,value,facts,expected", [
        ("EQUALS", "Approve", {"x": "approve"}, True),
        ("EQUALS", 5, {"x": "5"}, True),
        ("NOT_EQUALS", "a", {"x": "b"}, True),
        ("GREATER_THAN", 10000, {"x": 15000}, True),
        ("GREATER_THAN", 10000, {"x": 10000}, False),
        ("GREATER_THAN_OR_EQUALS", 10000, {"x": "10,000"}, True),
        ("LESS_THAN", 3, {"x": 2.5}, True),
        ("LESS_THAN_OR_EQUALS", 3, {"x": 4}, False),
        ("IN", ["high", "critical"], {"x": "HIGH"}, True),
        ("NOT_IN", ["high", "critical"], {"x": "low"}, True),
        ("CONTAINS", "urgent", {"x": "This is URGENT"}, True),
        ("CONTAINS", "b", {"x": ["a", "b"]}, True),
        ("NOT_CONTAINS", "c", {"x": ["a", "b"]}, True),
        ("STARTS_WITH", "fin", {"x": "Finance"}, True),
        ("ENDS_WITH", "ops", {"x": "DevOps"}, True),
        ("IS_EMPTY", None, {"x": "  "}, True),
        ("IS_NOT_EMPTY", None, {"x": [1]}, True),
        ("IS_TRUE", None, {"x": "yes"}, True),
        ("IS_FALSE", None, {"x": False}, True),
        ("BEFORE", "2025-01-01", {"x": "2024-06-30"}, True),
        ("AFTER", "2025-01-01", {"x": "2024-06-30"}, False),
    ])
    def test_operator(self, evaluator, operator, value, facts, expected):
        rules = [rule("match", ("x", operator, value))]
        assert (evaluator.evaluate(rules, facts, "else") == "match") is expected

    def test_between_is_inclusive(self, evaluator):
        rules = [ConditionRule.model_validate({
            "port": "mid",
            "conditions": [{"fact": "x", "operator": "BETWEEN", "value": 10, "value2": 20}],
        })]
        assert evaluator.evaluate(rules, {"x": 10}, "else") == "mid"
        assert evaluator.evaluate(rules, {"x": 20}, "else") == "mid"
        assert evaluator.evaluate(rules, {"x": 21}, "else") == "else"

    def test_operator_names_are_case_insensitive(self, evaluator):
        rules = [rule("match", ("x", "greater_than", 1))]
        assert evaluator.evaluate(rules, {"x": 2}, "else") == "match"

    @pytest.mark.parametrize("operator", [
        "GREATER_THAN", "LESS_THAN", "GREATER_THAN_OR_EQUALS", "LESS_THAN_OR_EQUALS",
    ])
    def test_missing_fact_never_satisfies_ordering(self, evaluator, operator):
        rules = [rule("match", ("budget", operator, 0))]
        assert evaluator.evaluate(rules, {}, "else") == "else"

    def test_non_numeric_fact_fails_ordering(self, evaluator):
        rules = [rule("match", ("budget", "GREATER_THAN", 0))]
        assert evaluator.evaluate(rules, {"budget": "lots"}, "else") == "else"


# ═════════════════════════════════════════════════════════════════════════
# FACT LOOKUP
# ═════════════════════════════════════════════════════════════════════════

class TestFactLookup:
    def test_dot_path(self, evaluator):
        facts = {"approvals": {"finance": "approve"}}
        rules = [rule("ok", ("approvals.finance", "EQUALS", "approve"))]
        assert evaluator.evaluate(rules, facts, "else") == "ok"

    def test_exact_key_wins_over_dot_path(self):
        facts = {"a.b": 1, "a": {"b": 2}}
        assert ConditionEvaluator.get_fact("a.b", facts) == 1

    def test_missing_path_is_none(self):
        assert ConditionEvaluator.get_fact("forms.intake.budget", {"forms": {}}) is None


# ═════════════════════════════════════════════════════════════════════════
# RULE SELECTION
# ═════════════════════════════════════════════════════════════════════════

class TestRuleSelection:
    def test_first_matching_rule_wins(self, evaluator):
        rules = [
            rule("first", ("budget", "GREATER_THAN", 100)),
            rule("second", ("budget", "GREATER_THAN", 10)),
        ]
        assert evaluator.evaluate(rules, {"budget": 500}, "else") == "first"

    def test_default_port_when_nothing_matches(self, evaluator):
        rules = [rule("high", ("budget", "GREATER_THAN", 10000))]
        assert evaluator.evaluate(rules, {"budget": 5}, "low") == "low"

    def test_no_match_without_default_raises(self, evaluator):
        rules = [rule("high", ("budget", "GREATER_THAN", 10000))]
        with pytest.raises(NoMatchingEdgeError):
            evaluator.evaluate(rules, {"budget": 5})

    def test_rule_without_conditions_always_matches(self, evaluator):
        assert evaluator.evaluate([rule("always")], {}, "else") == "always"

    def test_and_requires_all(self, evaluator):
        rules = [rule("both", ("a", "IS_TRUE", None), ("b", "IS_TRUE", None))]
        assert evaluator.evaluate(rules, {"a": True, "b": False}, "else") == "else"

    def test_or_requires_any(self, evaluator):
        rules = [rule("either", ("a", "IS_TRUE", None), ("b", "IS_TRUE", None), logic="or")]
        assert evaluator.evaluate(rules, {"a": False, "b": True}, "else") == "either"

    def test_form_and_approval_facts_share_one_namespace(self, evaluator):
        facts = {"budget": 20000, "last_decision": "reject"}
        rules = [
            rule("rework", ("last_decision", "EQUALS", "reject")),
            rule("high", ("budget", "GREATER_THAN", 10000)),
        ]
        assert evaluator.evaluate(rules, facts, "else") == "rework"

    def test_evaluation_is_deterministic(self, evaluator):
        rules = [
            rule("a", ("x", "IN", [1, 2])),
            rule("b", ("y", "CONTAINS", "z")),
        ]
        facts = {"x": 3, "y": "xyz"}
        results = {evaluator.evaluate(rules, facts, "else") for _ in range(20)}
        assert results == {"b"}
