"""Rule condition evaluation against an expense snapshot.

Conditions are parsed from the JSON stored on ``ApprovalRule.conditions`` into
a closed set of field/operator enums. Evaluation fails closed: any field and
operator pair outside the supported matrix, a missing expense value or a value
that cannot be coerced evaluates to ``False``.

Amounts are compared as plain numbers in the expense's own currency. No
currency conversion happens here, so a rule written for one currency should
only be applied to organizations that submit in that currency.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from approvals.errors import ValidationError

logger = logging.getLogger(__name__)


class ConditionField(enum.Enum):
    AMOUNT = "amount"
    CATEGORY = "category"
    SUBMITTER_ROLE = "submitter_role"
    DATE = "date"
    VENDOR = "vendor"
    PAYMENT_METHOD = "payment_method"


class ConditionOperator(enum.Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"


_ORDERING = {ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE}
_EQUALITY = {ConditionOperator.EQ, ConditionOperator.NE, ConditionOperator.IN, ConditionOperator.NOT_IN}
_TEXT = {ConditionOperator.CONTAINS, ConditionOperator.STARTS_WITH}

SUPPORTED_OPERATORS = {
    ConditionField.AMOUNT: _ORDERING | _EQUALITY,
    ConditionField.DATE: _ORDERING | _EQUALITY,
    ConditionField.CATEGORY: set(_EQUALITY),
    ConditionField.SUBMITTER_ROLE: _EQUALITY | _TEXT,
    ConditionField.VENDOR: _EQUALITY | _TEXT,
    ConditionField.PAYMENT_METHOD: _EQUALITY | _TEXT,
}


@dataclass(frozen=True)
class ExpenseSnapshot:
    """The expense attributes rules may look at, frozen at submission time."""

    expense_id: Optional[int]
    company_id: Optional[int]
    submitter_id: Optional[int]
    amount: Decimal
    currency: str
    category_id: Optional[int] = None
    submitter_role: Optional[str] = None
    vendor: Optional[str] = None
    payment_method: Optional[str] = None
    date_spent: Optional[date] = None

    @classmethod
    def from_expense(cls, expense) -> "ExpenseSnapshot":
        submitter = expense.submitter
        role = submitter.role.value if submitter is not None and submitter.role else None
        return cls(
            expense_id=expense.id,
            company_id=expense.company_id,
            submitter_id=expense.submitter_user_id,
            amount=Decimal(str(expense.amount)),
            currency=expense.currency,
            category_id=expense.category_id,
            submitter_role=role,
            vendor=expense.vendor,
            payment_method=expense.payment_method,
            date_spent=expense.date_spent,
        )

    def value_of(self, field: ConditionField) -> Any:
        return {
            ConditionField.AMOUNT: self.amount,
            ConditionField.CATEGORY: self.category_id,
            ConditionField.SUBMITTER_ROLE: self.submitter_role,
            ConditionField.DATE: self.date_spent,
            ConditionField.VENDOR: self.vendor,
            ConditionField.PAYMENT_METHOD: self.payment_method,
        }[field]


@dataclass(frozen=True)
class Condition:
    field: ConditionField
    operator: ConditionOperator
    value: Any

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "Condition":
        """Build a condition from its stored JSON form, raising ValidationError if malformed."""
        if not isinstance(raw, Mapping):
            raise ValidationError("Condition must be an object.", condition=raw)
        try:
            field = ConditionField(raw.get("field"))
        except ValueError:
            raise ValidationError(f"Unknown condition field '{raw.get('field')}'.", condition=dict(raw)) from None
        try:
            operator = ConditionOperator(raw.get("operator"))
        except ValueError:
            raise ValidationError(
                f"Unknown condition operator '{raw.get('operator')}'.", condition=dict(raw)
            ) from None
        if "value" not in raw or raw["value"] is None:
            raise ValidationError("Condition value is required.", condition=dict(raw))
        if operator not in SUPPORTED_OPERATORS[field]:
            raise ValidationError(
                f"Operator '{operator.value}' is not supported for field '{field.value}'.",
                condition=dict(raw),
            )
        value = raw["value"]
        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(value, (list, tuple, set)):
            raise ValidationError(f"Operator '{operator.value}' expects a list value.", condition=dict(raw))
        return cls(field=field, operator=operator, value=value)

    def to_dict(self) -> dict:
        value = list(self.value) if isinstance(self.value, (set, tuple)) else self.value
        return {"field": self.field.value, "operator": self.operator.value, "value": value}


def evaluate(condition: Condition, snapshot: ExpenseSnapshot) -> bool:
    """Evaluate a single condition. Never raises."""
    field, operator = condition.field, condition.operator
    if operator not in SUPPORTED_OPERATORS.get(field, ()):
        logger.debug(f"Unsupported operator {operator} for field {field}; condition fails closed")
        return False

    actual = snapshot.value_of(field)
    if actual is None:
        return False

    coerce = _COERCERS[field]
    try:
        actual = coerce(actual)
        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            expected = {coerce(item) for item in condition.value}
        else:
            expected = coerce(condition.value)
    except (TypeError, ValueError, InvalidOperation):
        logger.debug(f"Could not coerce value for {field.value} condition; condition fails closed")
        return False

    if operator is ConditionOperator.GT:
        return actual > expected
    if operator is ConditionOperator.GTE:
        return actual >= expected
    if operator is ConditionOperator.LT:
        return actual < expected
    if operator is ConditionOperator.LTE:
        return actual <= expected
    if operator is ConditionOperator.EQ:
        return actual == expected
    if operator is ConditionOperator.NE:
        return actual != expected
    if operator is ConditionOperator.IN:
        return actual in expected
    if operator is ConditionOperator.NOT_IN:
        return actual not in expected
    if operator is ConditionOperator.CONTAINS:
        return expected.lower() in actual.lower()
    if operator is ConditionOperator.STARTS_WITH:
        return actual.lower().startswith(expected.lower())
    return False


def evaluate_all(conditions, snapshot: ExpenseSnapshot) -> bool:
    """AND all conditions together; an empty list matches."""
    return all(evaluate(condition, snapshot) for condition in conditions)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("booleans are not amounts")
    return Decimal(str(value))


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"cannot read {value!r} as a date")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("booleans are not identifiers")
    return int(value)


def _to_text(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{value!r} is not text")
    return value


_COERCERS = {
    ConditionField.AMOUNT: _to_decimal,
    ConditionField.DATE: _to_date,
    ConditionField.CATEGORY: _to_int,
    ConditionField.SUBMITTER_ROLE: _to_text,
    ConditionField.VENDOR: _to_text,
    ConditionField.PAYMENT_METHOD: _to_text,
}
