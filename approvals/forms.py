"""Payload validation for the JSON approval endpoints."""
from __future__ import annotations

from decimal import Decimal

from flask_wtf import FlaskForm
from wtforms import DateTimeField, DecimalField, IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from approvals.models import ApprovalDecision

_DATETIME_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"]


class JsonForm(FlaskForm):
    class Meta:
        csrf = False


class SubmitForm(JsonForm):
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=1000)])


class CancelForm(JsonForm):
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=1000)])


class DecisionForm(JsonForm):
    decision = SelectField(
        "Decision",
        validators=[DataRequired()],
        choices=[(decision.value, decision.value.title()) for decision in ApprovalDecision],
        filters=[lambda value: value.upper() if isinstance(value, str) else value],
    )
    comments = TextAreaField("Comments", validators=[Optional(), Length(max=1000)])


class RuleForm(JsonForm):
    name = StringField("Rule name", validators=[DataRequired(), Length(max=100)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=500)])
    priority = IntegerField("Priority", validators=[InputRequired()], default=0)


class DelegateForm(JsonForm):
    delegator_id = IntegerField("Delegator", validators=[Optional()])
    delegate_id = IntegerField("Delegate", validators=[InputRequired()])
    start_date = DateTimeField("Start", format=_DATETIME_FORMATS, validators=[Optional()])
    end_date = DateTimeField("End", format=_DATETIME_FORMATS, validators=[Optional()])
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=500)])
    amount_limit = DecimalField(
        "Amount limit",
        places=2,
        rounding=None,
        validators=[Optional(), NumberRange(min=Decimal("0.01"))],
    )
