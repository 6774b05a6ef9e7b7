from datetime import date
from decimal import Decimal

import pytest

from approvals.errors import ValidationError
from approvals.services.conditions import (
    Condition,
    ConditionField,
    ConditionOperator,
    ExpenseSnapshot,
    evaluate,
    evaluate_all,
)


def snapshot(**overrides):
    values = dict(
        expense_id=1,
        company_id=1,
        submitter_id=7,
        amount=Decimal("6000.00"),
        currency="USD",
        category_id=3,
        submitter_role="EMPLOYEE",
        vendor="Acme Travel Ltd",
        payment_method="corporate_card",
        date_spent=date(2026, 10, 1),
    )
    values.update(overrides)
    return ExpenseSnapshot(**values)


def cond(field, operator, value):
    return Condition.parse({"field": field, "operator": operator, "value": value})


class TestAmount:
    def test_ordering_operators(self):
        snap = snapshot()
        assert evaluate(cond("amount", "gt", 5000), snap) is True
        assert evaluate(cond("amount", "gt", 6000), snap) is False
        assert evaluate(cond("amount", "gte", "6000"), snap) is True
        assert evaluate(cond("amount", "lt", 6000.01), snap) is True
        assert evaluate(cond("amount", "lte", 5999), snap) is False

    def test_equality_and_membership(self):
        snap = snapshot(amount=Decimal("100"))
        assert evaluate(cond("amount", "eq", 100), snap) is True
        assert evaluate(cond("amount", "ne", 100), snap) is False
        assert evaluate(cond("amount", "in", [50, 100]), snap) is True
        assert evaluate(cond("amount", "not_in", [50, 100]), snap) is False

    def test_uncoercible_value_fails_closed(self):
        assert evaluate(Condition(ConditionField.AMOUNT, ConditionOperator.GT, "lots"), snapshot()) is False
        assert evaluate(Condition(ConditionField.AMOUNT, ConditionOperator.GT, True), snapshot()) is False


class TestDate:
    def test_iso_strings_compare_chronologically(self):
        snap = snapshot()
        assert evaluate(cond("date", "gte", "2026-10-01"), snap) is True
        assert evaluate(cond("date", "lt", "2026-09-30"), snap) is False
        assert evaluate(cond("date", "in", ["2026-10-01", "2026-10-02"]), snap) is True

    def test_missing_date_fails_closed(self):
        assert evaluate(cond("date", "gte", "2000-01-01"), snapshot(date_spent=None)) is False


class TestCategory:
    def test_membership(self):
        snap = snapshot(category_id=3)
        assert evaluate(cond("category", "eq", 3), snap) is True
        assert evaluate(cond("category", "in", ["3", 4]), snap) is True
        assert evaluate(cond("category", "not_in", [4, 5]), snap) is True

    def test_missing_category_never_matches(self):
        snap = snapshot(category_id=None)
        assert evaluate(cond("category", "ne", 3), snap) is False
        assert evaluate(cond("category", "not_in", [3]), snap) is False


class TestText:
    def test_contains_and_starts_with_ignore_case(self):
        snap = snapshot()
        assert evaluate(cond("vendor", "contains", "travel"), snap) is True
        assert evaluate(cond("vendor", "starts_with", "ACME"), snap) is True
        assert evaluate(cond("vendor", "starts_with", "Travel"), snap) is False

    def test_role_and_payment_method(self):
        snap = snapshot()
        assert evaluate(cond("submitter_role", "eq", "EMPLOYEE"), snap) is True
        assert evaluate(cond("submitter_role", "in", ["MANAGER", "ADMIN"]), snap) is False
        assert evaluate(cond("payment_method", "ne", "cash"), snap) is True

    def test_text_operator_on_numeric_field_fails_closed(self):
        condition = Condition(ConditionField.AMOUNT, ConditionOperator.CONTAINS, "60")
        assert evaluate(condition, snapshot()) is False

    def test_missing_vendor_fails_closed(self):
        assert evaluate(cond("vendor", "ne", "Acme"), snapshot(vendor=None)) is False


class TestParse:
    @pytest.mark.parametrize(
        "raw",
        [
            {"field": "colour", "operator": "eq", "value": "red"},
            {"field": "amount", "operator": "between", "value": 1},
            {"field": "amount", "operator": "gt"},
            {"field": "category", "operator": "gt", "value": 1},
            {"field": "vendor", "operator": "in", "value": "Acme"},
            "amount > 5",
        ],
    )
    def test_malformed_conditions_are_rejected(self, raw):
        with pytest.raises(ValidationError):
            Condition.parse(raw)

    def test_round_trips_to_stored_form(self):
        raw = {"field": "category", "operator": "in", "value": [1, 2]}
        assert Condition.parse(raw).to_dict() == raw


def test_all_conditions_must_hold():
    snap = snapshot()
    conditions = [cond("amount", "gt", 5000), cond("vendor", "contains", "acme")]
    assert evaluate_all(conditions, snap) is True
    assert evaluate_all(conditions + [cond("category", "eq", 99)], snap) is False


def test_empty_condition_list_matches():
    assert evaluate_all([], snapshot()) is True
