"""
Tests for workflow condition evaluation.
"""

import pytest

from db.domain import ConditionOperator, LogicalOperator, WorkflowCondition
from workflows.conditions import evaluate_condition, evaluate_conditions, resolve_path

CONTEXT = {
    "item": {"sku": "SKU-100", "name": "Steel Bracket", "on_hand": 4, "reorder_point": "10", "tags": ["metal"]},
    "site": {"code": "MPLS"},
    "lines": [{"qty": 3}, {"qty": 9}],
    "note": None,
}


def _cond(field, operator, value=None, logical=LogicalOperator.AND):
    return WorkflowCondition(field=field, operator=ConditionOperator(operator), value=value, logical_operator=logical)


class TestResolvePath:
    def test_nested_dict(self):
        assert resolve_path(CONTEXT, "item.sku") == "SKU-100"

    def test_sequence_index(self):
        assert resolve_path(CONTEXT, "lines.1.qty") == 9

    def test_missing_segments_resolve_to_none(self):
        assert resolve_path(CONTEXT, "item.vendor.name") is None
        assert resolve_path(CONTEXT, "lines.7.qty") is None
        assert resolve_path(CONTEXT, "note.text") is None

    def test_object_attributes(self):
        class Item:
            sku = "SKU-1"

        assert resolve_path({"item": Item()}, "item.sku") == "SKU-1"


class TestOperators:
    @pytest.mark.parametrize(
        ("field", "operator", "value", "expected"),
        [
            ("item.sku", "equals", "SKU-100", True),
            ("item.sku", "not_equals", "SKU-100", False),
            ("item.on_hand", "less_than", 5, True),
            ("item.on_hand", "greater_than", 5, False),
            # numeric strings are compared as numbers
            ("item.reorder_point", "greater_than", 9, True),
            ("item.on_hand", "greater_than", "abc", False),
            ("item.missing", "greater_than", 0, False),
            ("item.name", "contains", "Bracket", True),
            ("item.name", "starts_with", "Steel", True),
            ("item.name", "ends_with", "Steel", False),
            ("item.missing", "contains", "x", False),
            ("site.code", "in", ["MPLS", "STP"], True),
            ("site.code", "not_in", ["MPLS", "STP"], False),
            ("site.code", "in", "MPLS", False),
            ("note", "is_null", None, True),
            ("item.missing", "is_null", None, True),
            ("item.sku", "is_not_null", None, True),
        ],
    )
    def test_operator(self, field, operator, value, expected):
        assert evaluate_condition(_cond(field, operator, value), CONTEXT) is expected


class TestCombination:
    def test_empty_list_is_true(self):
        assert evaluate_conditions([], CONTEXT) is True

    def test_left_to_right_with_previous_operator(self):
        a_false = _cond("item.sku", "equals", "nope", LogicalOperator.AND)
        b_false = _cond("site.code", "equals", "nope", LogicalOperator.OR)
        c_true = _cond("item.on_hand", "less_than", 5)

        # (False and False) or True
        assert evaluate_conditions([a_false, b_false, c_true], CONTEXT) is True

    def test_not_standard_precedence(self):
        a_true = _cond("item.sku", "equals", "SKU-100", LogicalOperator.OR)
        b_true = _cond("site.code", "equals", "MPLS", LogicalOperator.AND)
        c_false = _cond("item.on_hand", "greater_than", 5)

        # (True or True) and False, not True or (True and False)
        assert evaluate_conditions([a_true, b_true, c_false], CONTEXT) is False

    def test_last_condition_operator_is_ignored(self):
        only = _cond("item.sku", "equals", "SKU-100", LogicalOperator.OR)

        assert evaluate_conditions([only], CONTEXT) is True
