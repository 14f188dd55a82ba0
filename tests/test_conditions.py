"""Tests for condition parsing and evaluation."""

from __future__ import annotations

import pytest

from crm_workflows.core.conditions import Comparison, Condition, ConditionGroup, parse_condition, resolve_path
from crm_workflows.exceptions import ConditionError, ConfigurationError


@pytest.mark.unit
class TestResolvePath:
    """Tests for dotted path resolution."""

    def test_nested_mapping(self) -> None:
        assert resolve_path({"lead": {"owner": {"name": "Ada"}}}, "lead.owner.name") == "Ada"

    def test_list_index(self) -> None:
        assert resolve_path({"tags": ["vip", "hot"]}, "tags.1") == "hot"

    def test_missing_segment_is_none(self) -> None:
        assert resolve_path({"lead": {}}, "lead.score") is None
        assert resolve_path({"tags": ["vip"]}, "tags.4") is None
        assert resolve_path({"score": 3}, "score.value") is None


@pytest.mark.unit
class TestStringExpressions:
    """Tests for the compact ``<field> <op> <value>`` form."""

    @pytest.mark.parametrize(
        ("expression", "scope", "expected"),
        [
            ("amount > 100", {"amount": 150}, True),
            ("amount > 100", {"amount": 50}, False),
            ("amount >= 100", {"amount": 100}, True),
            ("amount < 100", {"amount": "99.5"}, True),
            ("lead.status == 'qualified'", {"lead": {"status": "qualified"}}, True),
            ("status != 'lost'", {"status": "won"}, True),
            ("email is_not_empty", {"email": "a@example.com"}, True),
            ("email is_empty", {"email": ""}, True),
            ("source in [\"web\", \"ads\"]", {"source": "ads"}, True),
            ("name contains 'corp'", {"name": "Acme corp"}, True),
            ("name starts_with 'Ac'", {"name": "Acme"}, True),
        ],
    )
    def test_evaluate(self, expression: str, scope: dict, expected: bool) -> None:
        assert parse_condition(expression).evaluate(scope) is expected

    def test_missing_field_compares_false(self) -> None:
        """Numeric comparisons against a missing field never hold."""
        assert parse_condition("score > 10").evaluate({}) is False
        assert parse_condition("score < 10").evaluate({}) is False

    def test_numeric_string_equality(self) -> None:
        assert parse_condition("zip == 12345").evaluate({"zip": "12345"}) is True

    @pytest.mark.parametrize(
        "expression",
        ["", "amount >", "amount ~~ 3", "email is_empty 'x'", "source in 'web'", "amount > not-a-literal"],
    )
    def test_malformed(self, expression: str) -> None:
        with pytest.raises(ConditionError):
            parse_condition(expression)

    def test_non_numeric_operand_raises_on_evaluate(self) -> None:
        condition = parse_condition("amount > 100")
        with pytest.raises(ConditionError, match="as a number"):
            condition.evaluate({"amount": "lots"})


@pytest.mark.unit
class TestStructuredConditions:
    """Tests for the dictionary form produced by the workflow editor."""

    def test_comparison(self) -> None:
        condition = parse_condition({"field": "lead.score", "operator": "greater_than_or_equal", "value": 50})

        assert isinstance(condition, Comparison)
        assert condition.evaluate({"lead": {"score": 50}}) is True

    def test_operator_alias(self) -> None:
        condition = parse_condition({"field": "score", "operator": ">", "value": 1})
        assert isinstance(condition, Comparison)
        assert condition.operator == "greater_than"

    def test_all_group(self) -> None:
        condition = parse_condition({"all": [{"field": "status", "value": "new"}, "amount > 100"]})

        assert isinstance(condition, ConditionGroup)
        assert condition.evaluate({"status": "new", "amount": 200}) is True
        assert condition.evaluate({"status": "new", "amount": 20}) is False

    def test_any_group(self) -> None:
        condition = parse_condition({"any": ["amount > 100", "vip == true"]})
        assert condition.evaluate({"amount": 5, "vip": True}) is True
        assert condition.evaluate({"amount": 5, "vip": False}) is False

    def test_logic_conditions_form(self) -> None:
        condition = parse_condition({"logic": "OR", "conditions": ["a == 1", "b == 2"]})
        assert isinstance(condition, ConditionGroup)
        assert condition.logic == "any"

    def test_round_trip_through_dict(self) -> None:
        raw = {
            "all": [
                {"field": "score", "operator": "greater_than", "value": 10},
                {"field": "email", "operator": "is_not_empty"},
            ]
        }
        assert parse_condition(raw).to_dict() == raw

    @pytest.mark.parametrize(
        "raw",
        [
            {"operator": "equals", "value": 1},
            {"field": "score", "operator": "bogus", "value": 1},
            {"field": "score", "operator": "greater_than"},
            {"field": "score", "operator": "in", "value": "x"},
            {"all": []},
            {"logic": "xor", "conditions": ["a == 1"]},
            42,
        ],
    )
    def test_malformed(self, raw: object) -> None:
        with pytest.raises(ConditionError):
            parse_condition(raw)

    def test_condition_error_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_condition({"field": ""})

    def test_base_condition_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            Condition()  # type: ignore[abstract]
