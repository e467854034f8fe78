"""
Unit tests for the condition evaluator.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ConditionEvaluationSkipped
from service_task_engine.app.rules.evaluator import evaluate, evaluate_all
from service_task_engine.app.rules.models import ConditionLogic, RuleCondition
from service_task_engine.app.snapshot import MISSING, EntitySnapshot


def cond(field, operator, value=None):
    return RuleCondition.from_dict({"field": field, "operator": operator, "value": value})


class TestEvaluate:
    """Test cases for single conditions."""

    @pytest.fixture
    def entity(self):
        return EntitySnapshot({
            "type": "payment",
            "amount": {"amount": 12_000_000, "currency": "UGX"},
            "approved": True,
            "count": 1,
            "tags": ["urgent", "vendor"],
            "note": "late delivery reported",
            "lines": [{"sku": "A-1"}, {"sku": "B-2"}],
            "cleared": None,
        })

    def test_eq_matches_nested_path(self, entity):
        assert evaluate(entity, cond("amount.currency", "eq", "UGX")) is True
        assert evaluate(entity, cond("amount.currency", "eq", "KES")) is False

    def test_eq_never_equates_booleans_and_numbers(self, entity):
        assert evaluate(entity, cond("approved", "eq", 1)) is False
        assert evaluate(entity, cond("count", "eq", True)) is False
        assert evaluate(entity, cond("approved", "eq", True)) is True

    def test_numeric_comparisons(self, entity):
        assert evaluate(entity, cond("amount.amount", "gt", 10_000_000)) is True
        assert evaluate(entity, cond("amount.amount", "lt", 10_000_000)) is False
        assert evaluate(entity, cond("amount.amount", "gte", 12_000_000)) is True
        assert evaluate(entity, cond("amount.amount", "lte", 11_999_999)) is False

    def test_numeric_comparisons_reject_non_numbers(self, entity):
        assert evaluate(entity, cond("type", "gt", 5)) is False
        assert evaluate(entity, cond("approved", "gt", 0)) is False
        assert evaluate(entity, cond("amount.amount", "gt", "5")) is False

    def test_in_requires_collection_operand(self, entity):
        assert evaluate(entity, cond("type", "in", ["payment", "transfer"])) is True
        assert evaluate(entity, cond("type", "in", ["expense"])) is False
        assert evaluate(entity, cond("type", "in", "payment")) is False

    def test_nin(self, entity):
        assert evaluate(entity, cond("type", "nin", ["expense"])) is True
        assert evaluate(entity, cond("type", "nin", ["payment"])) is False

    def test_contains_substring_and_membership(self, entity):
        assert evaluate(entity, cond("note", "contains", "delivery")) is True
        assert evaluate(entity, cond("tags", "contains", "urgent")) is True
        assert evaluate(entity, cond("tags", "contains", "routine")) is False
        assert evaluate(entity, cond("count", "contains", 1)) is False

    def test_list_index_path(self, entity):
        assert evaluate(entity, cond("lines.1.sku", "eq", "B-2")) is True

    @pytest.mark.parametrize("operator", ["eq", "ne", "gt", "lt", "gte", "lte", "in", "nin", "contains"])
    def test_missing_field_is_false_for_every_operator(self, entity, operator):
        value = ["x"] if operator in ("in", "nin") else 1
        assert evaluate(entity, cond("does.not.exist", operator, value)) is False

    def test_stored_none_is_a_value(self, entity):
        assert evaluate(entity, cond("cleared", "eq", None)) is True

    def test_unknown_operator_raises(self, entity):
        with pytest.raises(ConditionEvaluationSkipped):
            evaluate(entity, cond("type", "matches", "pay.*"))

    def test_plain_dict_entity(self):
        assert evaluate({"a": {"b": 2}}, cond("a.b", "gte", 2)) is True


class TestEvaluateAll:
    """Test cases for combined conditions."""

    def test_and_requires_all(self):
        conditions = [cond("a", "eq", 1), cond("b", "eq", 2)]
        assert evaluate_all({"a": 1, "b": 2}, conditions, ConditionLogic.AND) is True
        assert evaluate_all({"a": 1, "b": 3}, conditions, ConditionLogic.AND) is False

    def test_or_requires_any(self):
        conditions = [cond("a", "eq", 1), cond("b", "eq", 2)]
        assert evaluate_all({"a": 0, "b": 2}, conditions, "or") is True
        assert evaluate_all({"a": 0, "b": 0}, conditions, "or") is False

    def test_empty_conditions_never_match(self):
        assert evaluate_all({"a": 1}, [], ConditionLogic.AND) is False
        assert evaluate_all({"a": 1}, [], ConditionLogic.OR) is False

    def test_malformed_condition_reported_even_after_or_match(self):
        conditions = [cond("a", "eq", 1), cond("a", "bogus", 1)]
        with pytest.raises(ConditionEvaluationSkipped):
            evaluate_all({"a": 1}, conditions, ConditionLogic.OR)


class TestEntitySnapshot:
    """Test cases for EntitySnapshot path helpers."""

    def test_resolve_through_lists_and_missing(self):
        snap = EntitySnapshot({"lines": [{"sku": "A1"}], "note": None})

        assert snap.resolve("lines.0.sku") == "A1"
        assert snap.resolve("lines.3.sku") is MISSING
        assert snap.resolve("note") is None
        assert snap.resolve("note.text") is MISSING

    def test_flatten(self):
        snap = EntitySnapshot({"amount": {"amount": 5, "currency": "UGX"}, "meta": {}, "id": "x"})

        assert snap.flatten() == {"amount.amount": 5, "amount.currency": "UGX", "meta": {}, "id": "x"}

    def test_identity_helpers(self):
        snap = EntitySnapshot({"entityId": 42, "event_type": "finance.payment", "orgId": "org-9"})

        assert snap.entity_id() == "42"
        assert snap.event_type() == "finance.payment"
        assert snap.org_id() == "org-9"
        assert EntitySnapshot({}).entity_id() is None
        assert EntitySnapshot.of(snap) is snap
