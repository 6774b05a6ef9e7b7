"""Administrative routes."""
from __future__ import annotations

from typing import Any, Dict

from flask import request
from flask_login import current_user, login_required

from approvals import db
from approvals.errors import NotFound
from approvals.forms import DelegateForm, RuleForm
from approvals.models import User, UserRole
from approvals.services import delegation, queries, rules
from approvals.services.approval_engine import approval_engine
from approvals.utils.helpers import form_errors, json_response, parse_datetime_arg, role_required

from . import admin_bp


@admin_bp.route("/rules", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_rules() -> Any:
    include_inactive = request.args.get("include_inactive", "false").lower() in {"1", "true", "yes"}
    items = rules.list_rules(current_user.company_id, include_inactive=include_inactive)
    return json_response({"rules": [rule.to_dict() for rule in items]})


@admin_bp.route("/rules", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_rule() -> Any:
    form = RuleForm()
    if not form.validate():
        raise form_errors(form)
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    rule = rules.create_rule(
        current_user.company_id,
        {
            "name": form.name.data,
            "description": form.description.data,
            "priority": form.priority.data,
            "is_active": payload.get("is_active", True),
            "conditions": payload.get("conditions", []),
            "actions": payload.get("actions", []),
        },
        created_by=current_user.id,
    )
    return json_response({"message": "Rule created.", "rule": rule.to_dict()}, status=201)


@admin_bp.route("/rules/<int:rule_id>", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def rule_detail(rule_id: int) -> Any:
    return json_response({"rule": rules.get_rule(rule_id, current_user.company_id).to_dict()})


@admin_bp.route("/rules/<int:rule_id>", methods=["PUT", "PATCH"])
@login_required
@role_required(UserRole.ADMIN)
def update_rule(rule_id: int) -> Any:
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    allowed = {"name", "description", "priority", "is_active", "conditions", "actions"}
    rule = rules.update_rule(
        rule_id, {key: value for key, value in payload.items() if key in allowed}, current_user.company_id
    )
    return json_response({"message": "Rule updated.", "rule": rule.to_dict()})


@admin_bp.route("/rules/<int:rule_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def delete_rule(rule_id: int) -> Any:
    rules.delete_rule(rule_id, current_user.company_id)
    return json_response({"message": "Rule deleted."})


@admin_bp.route("/rules/defaults", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def default_rules() -> Any:
    return json_response({"rules": rules.default_rules()})


@admin_bp.route("/rules/defaults", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def seed_default_rules() -> Any:
    created = rules.seed_default_rules(current_user.company_id, created_by=current_user.id)
    return json_response({"rules": [rule.to_dict() for rule in created]}, status=201)


@admin_bp.route("/delegates", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_delegates() -> Any:
    active_only = request.args.get("active", "false").lower() in {"1", "true", "yes"}
    delegator_id = request.args.get("delegator_id", type=int)
    items = delegation.list_delegates(current_user.company_id, delegator_id=delegator_id, active_only=active_only)
    return json_response({"delegates": [item.to_dict() for item in items]})


@admin_bp.route("/delegates", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_delegate() -> Any:
    form = DelegateForm()
    if not form.validate():
        raise form_errors(form)
    if form.delegator_id.data is None:
        return json_response({"error": "delegator_id is required."}, status=400)
    category_ids = (request.get_json(silent=True) or {}).get("category_ids")
    created = delegation.create_delegate(
        company_id=current_user.company_id,
        delegator_id=form.delegator_id.data,
        delegate_id=form.delegate_id.data,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
        reason=form.reason.data,
        amount_limit=form.amount_limit.data,
        category_ids=category_ids,
    )
    return json_response({"message": "Delegation created.", "delegate": created.to_dict()}, status=201)


@admin_bp.route("/delegates/<int:delegation_id>/deactivate", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def deactivate_delegate(delegation_id: int) -> Any:
    updated = delegation.deactivate_delegate(delegation_id, company_id=current_user.company_id)
    return json_response({"message": "Delegation deactivated.", "delegate": updated.to_dict()})


@admin_bp.route("/stats", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def approval_stats() -> Any:
    start = parse_datetime_arg(request.args.get("start"), "start")
    end = parse_datetime_arg(request.args.get("end"), "end")
    return json_response({"stats": queries.approval_stats(current_user.company_id, start, end)})


@admin_bp.route("/approvers/<int:user_id>/stats", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def approver_stats(user_id: int) -> Any:
    user = db.session.get(User, user_id)
    if user is None or user.company_id != current_user.company_id:
        raise NotFound("User", user_id)
    start = parse_datetime_arg(request.args.get("start"), "start")
    end = parse_datetime_arg(request.args.get("end"), "end")
    return json_response({"stats": queries.approver_stats(user_id, start, end)})


@admin_bp.route("/tick", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def run_tick() -> Any:
    """Run one escalation pass now."""
    result = approval_engine.tick()
    return json_response(result.to_dict())
