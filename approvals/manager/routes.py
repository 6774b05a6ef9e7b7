"""Approver routes: pending tasks, decisions and personal delegations."""
from __future__ import annotations

from typing import Any

from flask import current_app, request
from flask_login import current_user, login_required

from approvals.errors import ValidationError
from approvals.forms import DecisionForm, DelegateForm
from approvals.services import delegation, queries
from approvals.services.approval_engine import approval_engine
from approvals.utils.helpers import form_errors, json_response, parse_datetime_arg

from . import manager_bp


@manager_bp.route("/tasks/pending", methods=["GET"])
@login_required
def pending_tasks() -> Any:
    """Return pending tasks assigned to the current user, most urgent first."""
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", current_app.config["APPROVAL_PAGE_SIZE"], type=int)
    pagination = queries.pending_tasks(current_user.id, page=page, per_page=per_page)
    return json_response(
        {
            "tasks": [
                {**task.to_dict(), "request": task.approval_request.to_dict()}
                for task in pagination.items
            ],
            "page": pagination.page,
            "per_page": pagination.per_page,
            "total": pagination.total,
            "pages": pagination.pages,
        }
    )


@manager_bp.route("/tasks/<int:task_id>/decide", methods=["POST"])
@login_required
def decide_task(task_id: int) -> Any:
    form = DecisionForm()
    if not form.validate():
        raise form_errors(form)
    approval_request = approval_engine.decide(task_id, form.decision.data, form.comments.data, current_user.id)
    task = next(item for item in approval_request.tasks if item.id == task_id)
    return json_response(
        {
            "message": f"Task {form.decision.data.lower()}.",
            "task": task.to_dict(),
            "request": approval_request.to_dict(include_tasks=True),
        }
    )


@manager_bp.route("/tasks/bulk-decide", methods=["POST"])
@login_required
def bulk_decide() -> Any:
    form = DecisionForm()
    if not form.validate():
        raise form_errors(form)
    task_ids = (request.get_json(silent=True) or {}).get("task_ids")
    if not isinstance(task_ids, list) or not task_ids:
        raise ValidationError("task_ids must be a non-empty list.", field="task_ids")
    if not all(isinstance(task_id, int) and not isinstance(task_id, bool) for task_id in task_ids):
        raise ValidationError("task_ids must contain task ids.", field="task_ids")

    result = approval_engine.bulk_decide(task_ids, form.decision.data, form.comments.data, current_user.id)
    return json_response(result.to_dict())


@manager_bp.route("/stats", methods=["GET"])
@login_required
def my_stats() -> Any:
    start = parse_datetime_arg(request.args.get("start"), "start")
    end = parse_datetime_arg(request.args.get("end"), "end")
    return json_response({"stats": queries.approver_stats(current_user.id, start, end)})


@manager_bp.route("/delegates", methods=["GET"])
@login_required
def my_delegates() -> Any:
    delegates = delegation.list_delegates(current_user.company_id, delegator_id=current_user.id)
    return json_response({"delegates": [item.to_dict() for item in delegates]})


@manager_bp.route("/delegates", methods=["POST"])
@login_required
def create_my_delegate() -> Any:
    """Hand the current user's approvals to a colleague for a while."""
    form = DelegateForm()
    if not form.validate():
        raise form_errors(form)
    category_ids = (request.get_json(silent=True) or {}).get("category_ids")
    created = delegation.create_delegate(
        company_id=current_user.company_id,
        delegator_id=current_user.id,
        delegate_id=form.delegate_id.data,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
        reason=form.reason.data,
        amount_limit=form.amount_limit.data,
        category_ids=category_ids,
    )
    return json_response({"message": "Delegation created.", "delegate": created.to_dict()}, status=201)


@manager_bp.route("/delegates/<int:delegation_id>/deactivate", methods=["POST"])
@login_required
def deactivate_my_delegate(delegation_id: int) -> Any:
    current = delegation.list_delegates(current_user.company_id, delegator_id=current_user.id)
    if delegation_id not in {item.id for item in current}:
        return json_response({"error": "Delegation not found."}, status=404)
    updated = delegation.deactivate_delegate(delegation_id, company_id=current_user.company_id)
    return json_response({"message": "Delegation deactivated.", "delegate": updated.to_dict()})
