"""Tests for condition evaluation."""

import logging

import pytest

from crm_automation.exceptions import UnknownOperatorError
from crm_automation.models.automation import Condition
from crm_automation.services.conditions import MISSING, apply_operator, evaluate, resolve_field


def cond(field, operator, value=None, logic=None):
    return Condition(field=field, operator=operator, value=value, logic=logic)


class TestFold:
    """Left-to-right folding of AND/OR clauses."""

    def test_empty_list_is_true(self):
        assert evaluate([], {"value": 1}) is True

    def test_and_fold(self):
        conditions = [cond("value", "greater_than", 1000), cond("status", "equals", "open", "AND")]
        assert evaluate(conditions, {"value": 1500, "status": "open"}) is True

    def test_or_fold(self):
        """false OR true = true."""
        conditions = [cond("value", "greater_than", 1000), cond("status", "equals", "open", "OR")]
        assert evaluate(conditions, {"value": 500, "status": "open"}) is True

    def test_logic_defaults_to_and(self):
        conditions = [cond("value", "greater_than", 1000), cond("status", "equals", "open")]
        assert evaluate(conditions, {"value": 1500, "status": "closed"}) is False

    def test_first_clause_logic_ignored(self):
        conditions = [cond("status", "equals", "closed", "OR")]
        assert evaluate(conditions, {"status": "open"}) is False

    def test_fold_is_strictly_left_to_right(self):
        # (true OR false) AND false = false
        conditions = [
            cond("a", "equals", 1),
            cond("b", "equals", 1, "OR"),
            cond("c", "equals", 1, "AND"),
        ]
        assert evaluate(conditions, {"a": 1, "b": 0, "c": 0}) is False

    def test_lowercase_logic_accepted(self):
        assert cond("a", "equals", 1, "or").logic == "OR"
        assert cond("a", "equals", 1, "").logic is None


class TestOperators:
    """Operator semantics."""

    def test_missing_field_fails_everything_but_is_empty(self):
        snapshot = {"name": "x"}
        assert evaluate([cond("absent", "equals", None)], snapshot) is False
        assert evaluate([cond("absent", "not_equals", "y")], snapshot) is False
        assert evaluate([cond("absent", "not_contains", "y")], snapshot) is False
        assert evaluate([cond("absent", "is_not_empty")], snapshot) is False
        assert evaluate([cond("absent", "is_empty")], snapshot) is True

    @pytest.mark.parametrize("value", [None, "", []])
    def test_is_empty_values(self, value):
        assert evaluate([cond("field", "is_empty")], {"field": value}) is True
        assert evaluate([cond("field", "is_not_empty")], {"field": value}) is False

    def test_numeric_coercion(self):
        assert evaluate([cond("value", "greater_than", "1000")], {"value": "1500"}) is True
        assert evaluate([cond("value", "less_than_or_equal", 10)], {"value": 10.0}) is True
        assert evaluate([cond("value", "greater_than_or_equal", 11)], {"value": 10}) is False

    def test_non_numeric_is_false(self):
        assert evaluate([cond("value", "greater_than", 1)], {"value": "abc"}) is False
        assert evaluate([cond("value", "less_than", 1)], {"value": None}) is False
        assert evaluate([cond("flag", "greater_than", 0)], {"flag": True}) is False

    def test_equals_numeric_and_string(self):
        assert evaluate([cond("value", "equals", 1500)], {"value": "1500"}) is True
        assert evaluate([cond("status", "equals", "Open")], {"status": "open"}) is False

    def test_contains_is_case_sensitive(self):
        assert evaluate([cond("email", "contains", "example")], {"email": "ada@example.com"}) is True
        assert evaluate([cond("email", "contains", "EXAMPLE")], {"email": "ada@example.com"}) is False
        assert evaluate([cond("email", "not_contains", "acme")], {"email": "ada@example.com"}) is True

    def test_contains_on_list_is_membership(self):
        assert evaluate([cond("tags", "contains", "vip")], {"tags": ["vip", "lead"]}) is True
        assert evaluate([cond("tags", "not_contains", "vip")], {"tags": ["lead"]}) is True

    def test_has_tag_defaults_to_tags_field(self):
        snapshot = {"tags": ["lead"]}
        assert evaluate([cond("", "has_tag", "lead")], snapshot) is True
        assert evaluate([cond("", "not_has_tag", "lead")], snapshot) is False
        assert evaluate([cond("tags", "not_has_tag", "vip")], snapshot) is True


class TestUnknownOperators:
    """Unknown operators fail closed."""

    def test_unknown_operator_makes_list_false(self):
        conditions = [cond("value", "equals", 1), cond("value", "roughly", 1, "OR")]
        assert evaluate(conditions, {"value": 1}) is False

    def test_unknown_operator_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="crm_automation.services.conditions"):
            assert evaluate([cond("value", "roughly", 1)], {"value": 1}) is False
        assert "roughly" in caplog.text

    def test_apply_operator_raises(self):
        with pytest.raises(UnknownOperatorError) as exc_info:
            apply_operator(1, "roughly", 1)
        assert exc_info.value.operator == "roughly"


class TestResolveField:
    """Field path resolution."""

    def test_dotted_path(self):
        assert resolve_field({"custom_fields": {"score": 42}}, "custom_fields.score") == 42

    def test_custom_fields_alias(self):
        assert resolve_field({"custom_fields": {"score": 42}}, "customFields.score") == 42

    def test_entity_prefix_stripped(self):
        assert resolve_field({"email": "a@b.c"}, "contact.email") == "a@b.c"
        assert resolve_field({"stage": "won"}, "deal.stage") == "won"

    def test_entity_prefix_kept_when_key_exists(self):
        snapshot = {"contact": {"email": "nested@b.c"}, "email": "top@b.c"}
        assert resolve_field(snapshot, "contact.email") == "nested@b.c"

    def test_missing_segments(self):
        assert resolve_field({"a": {"b": 1}}, "a.c") is MISSING
        assert resolve_field({"a": 1}, "a.b") is MISSING
        assert resolve_field(None, "a") is MISSING

    def test_unknown_field_is_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="crm_automation.services.conditions"):
            assert evaluate([cond("no_such_field", "equals", "x")], {"status": "open"}) is False
        assert any("no_such_field" in record.getMessage() for record in caplog.records)
