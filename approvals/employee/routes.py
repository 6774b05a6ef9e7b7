"""Employee-facing routes."""
from __future__ import annotations

from typing import Any

from flask_login import current_user, login_required

from approvals import db
from approvals.errors import NotFound
from approvals.forms import CancelForm, SubmitForm
from approvals.models import ApprovalRequest, Expense, UserRole
from approvals.services import queries
from approvals.services.approval_engine import approval_engine
from approvals.utils.helpers import form_errors, json_response, role_required

from . import employee_bp

ALL_ROLES = (UserRole.EMPLOYEE, UserRole.MANAGER, UserRole.ADMIN)


def _own_expense(expense_id: int) -> Expense:
    expense = db.session.get(Expense, expense_id)
    if expense is None or expense.submitter_user_id != current_user.id:
        raise NotFound("Expense", expense_id)
    return expense


def _visible_request(request_id: int) -> ApprovalRequest:
    approval_request = queries.get_request(request_id, company_id=current_user.company_id)
    is_approver = any(task.approver_id == current_user.id for task in approval_request.tasks)
    if (
        approval_request.requester_id != current_user.id
        and current_user.role is not UserRole.ADMIN
        and not is_approver
    ):
        raise NotFound("Approval request", request_id)
    return approval_request


@employee_bp.route("/expenses/<int:expense_id>/submit", methods=["POST"])
@login_required
@role_required(*ALL_ROLES)
def submit_expense(expense_id: int) -> Any:
    """Send a draft expense into approval."""
    form = SubmitForm()
    if not form.validate():
        raise form_errors(form)
    expense = _own_expense(expense_id)
    approval_request = approval_engine.submit(expense, requester_id=current_user.id, reason=form.reason.data)
    return json_response(
        {"message": "Expense submitted.", "request": approval_request.to_dict(include_tasks=True)},
        status=201,
    )


@employee_bp.route("/expenses/<int:expense_id>/requests", methods=["GET"])
@login_required
@role_required(*ALL_ROLES)
def expense_requests(expense_id: int) -> Any:
    """All approval cycles of one of the current user's expenses."""
    expense = _own_expense(expense_id)
    return json_response(
        {
            "expense": expense.to_dict(),
            "requests": [item.to_dict(include_tasks=True) for item in expense.approval_requests],
        }
    )


@employee_bp.route("/requests/<int:request_id>", methods=["GET"])
@login_required
@role_required(*ALL_ROLES)
def request_detail(request_id: int) -> Any:
    approval_request = _visible_request(request_id)
    return json_response({"request": approval_request.to_dict(include_tasks=True)})


@employee_bp.route("/requests/<int:request_id>/history", methods=["GET"])
@login_required
@role_required(*ALL_ROLES)
def request_history(request_id: int) -> Any:
    _visible_request(request_id)
    entries = queries.request_history(request_id, company_id=current_user.company_id)
    return json_response({"history": [entry.to_dict() for entry in entries]})


@employee_bp.route("/requests/<int:request_id>/cancel", methods=["POST"])
@login_required
@role_required(*ALL_ROLES)
def cancel_request(request_id: int) -> Any:
    form = CancelForm()
    if not form.validate():
        raise form_errors(form)
    queries.get_request(request_id, company_id=current_user.company_id)
    approval_request = approval_engine.cancel(request_id, current_user.id, reason=form.reason.data)
    return json_response({"message": "Approval request cancelled.", "request": approval_request.to_dict()})
