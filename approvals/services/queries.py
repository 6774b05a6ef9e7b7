"""Read-side queries for approval dashboards and APIs."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy import case, select

from approvals import db
from approvals.errors import NotFound
from approvals.models import (
    ApprovalDecision,
    ApprovalHistory,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalTask,
    ApprovalTaskStatus,
)
from approvals.services import history

logger = logging.getLogger(__name__)

_priority_rank = case(
    *[(ApprovalRequest.priority == priority, priority.rank) for priority in ApprovalPriority],
    else_=0,
)


def get_request(request_id: int, company_id: Optional[int] = None) -> ApprovalRequest:
    approval_request = db.session.get(ApprovalRequest, request_id)
    if approval_request is None or (company_id is not None and approval_request.company_id != company_id):
        raise NotFound("Approval request", request_id)
    return approval_request


def pending_tasks(approver_id: int, page: int = 1, per_page: int = 20):
    """Pending tasks of open requests for one approver, most urgent and oldest first."""
    stmt = (
        select(ApprovalTask)
        .join(ApprovalRequest, ApprovalTask.approval_request_id == ApprovalRequest.id)
        .where(
            ApprovalTask.approver_id == approver_id,
            ApprovalTask.status == ApprovalTaskStatus.PENDING,
            ApprovalRequest.status == ApprovalRequestStatus.PENDING,
        )
        .order_by(_priority_rank.desc(), ApprovalRequest.submitted_at, ApprovalTask.id)
    )
    return db.paginate(stmt, page=page, per_page=per_page, error_out=False)


def request_history(request_id: int, company_id: Optional[int] = None) -> List[ApprovalHistory]:
    get_request(request_id, company_id)
    return history.history_for(request_id)


def approval_stats(company_id: int, start=None, end=None) -> Dict[str, Any]:
    """Request counts by status and priority plus the average time to approval in hours."""
    query = ApprovalRequest.query.filter(ApprovalRequest.company_id == company_id)
    if start is not None:
        query = query.filter(ApprovalRequest.submitted_at >= start)
    if end is not None:
        query = query.filter(ApprovalRequest.submitted_at < end)
    requests = query.all()

    by_status = Counter(item.status.value for item in requests)
    by_priority = Counter(item.priority.value for item in requests)
    approval_hours = [
        (item.completed_at - item.submitted_at).total_seconds() / 3600
        for item in requests
        if item.status is ApprovalRequestStatus.APPROVED and item.completed_at is not None
    ]
    return {
        "total": len(requests),
        "by_status": {status.value: by_status.get(status.value, 0) for status in ApprovalRequestStatus},
        "by_priority": {priority.value: by_priority.get(priority.value, 0) for priority in ApprovalPriority},
        "average_approval_hours": _average(approval_hours),
    }


def approver_stats(approver_id: int, start=None, end=None) -> Dict[str, Any]:
    query = ApprovalTask.query.filter(ApprovalTask.approver_id == approver_id)
    if start is not None:
        query = query.filter(ApprovalTask.created_at >= start)
    if end is not None:
        query = query.filter(ApprovalTask.created_at < end)
    tasks = query.all()

    decisions = Counter(task.decision.value for task in tasks if task.decision is not None)
    statuses = Counter(task.status.value for task in tasks)
    decision_hours = [
        (task.decided_at - task.created_at).total_seconds() / 3600
        for task in tasks
        if task.decided_at is not None
    ]
    return {
        "approver_id": approver_id,
        "total": len(tasks),
        "pending": statuses.get(ApprovalTaskStatus.PENDING.value, 0),
        "expired": statuses.get(ApprovalTaskStatus.EXPIRED.value, 0),
        "skipped": statuses.get(ApprovalTaskStatus.SKIPPED.value, 0),
        "decisions": {decision.value: decisions.get(decision.value, 0) for decision in ApprovalDecision},
        "average_decision_hours": _average(decision_hours),
    }


def _average(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 2)
