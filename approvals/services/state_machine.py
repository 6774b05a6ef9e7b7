"""Lifecycle of one approval request.

PENDING is the only non-terminal status. Every transition goes through
:func:`transition`, which writes exactly one history entry.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from approvals.errors import InvalidTransition
from approvals.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalTaskStatus,
    HistoryAction,
)
from approvals.services import history
from approvals.services.rules import ApprovalPlan
from approvals.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# What happens to still-pending tasks when the request settles
_CLOSING_TASK_STATUS = {
    ApprovalRequestStatus.APPROVED: ApprovalTaskStatus.SKIPPED,
    ApprovalRequestStatus.REJECTED: ApprovalTaskStatus.SKIPPED,
    ApprovalRequestStatus.CANCELLED: ApprovalTaskStatus.SKIPPED,
    ApprovalRequestStatus.EXPIRED: ApprovalTaskStatus.EXPIRED,
}


def ensure_pending(approval_request: ApprovalRequest) -> None:
    if approval_request.status is not ApprovalRequestStatus.PENDING:
        raise InvalidTransition(
            f"Approval request {approval_request.id} is already {approval_request.status.value}.",
            current_status=approval_request.status.value,
            request_id=approval_request.id,
        )


def next_status(approval_request: ApprovalRequest, plan: ApprovalPlan) -> ApprovalRequestStatus:
    """Status the request should have given its tasks' current state.

    Only required tasks take part: one rejection rejects, one return cancels
    the cycle, and the request is approved once no required task is pending
    and no later group with required approvers is left to release.
    """
    required = [task for task in approval_request.tasks if task.is_required]
    if any(task.decision is ApprovalDecision.REJECTED for task in required):
        return ApprovalRequestStatus.REJECTED
    if any(task.decision is ApprovalDecision.RETURNED for task in required):
        return ApprovalRequestStatus.CANCELLED
    if any(task.is_pending for task in required):
        return ApprovalRequestStatus.PENDING

    current_sequence = max((task.sequence for task in approval_request.tasks), default=0)
    group = plan.group_after(current_sequence)
    while group is not None:
        if group.has_required:
            return ApprovalRequestStatus.PENDING
        group = plan.group_after(group.sequence)
    return ApprovalRequestStatus.APPROVED


def transition(
    approval_request: ApprovalRequest,
    to_status: ApprovalRequestStatus,
    action: HistoryAction,
    user_id: Optional[int] = None,
    comments: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
    now=None,
):
    """Move a pending request to ``to_status`` and record it.

    ``to_status`` may be PENDING for actions that leave the request open.
    """
    ensure_pending(approval_request)
    now = now or utcnow()
    from_status = approval_request.status
    entry = history.append(
        approval_request,
        action,
        from_status,
        to_status,
        user_id=user_id,
        comments=comments,
        extra_data=extra_data,
        now=now,
    )
    if to_status.is_terminal:
        _settle(approval_request, to_status, now)
        logger.info(
            f"Approval request {approval_request.id} {from_status.value} -> {to_status.value} ({action.value})"
        )
    return entry


def _settle(approval_request: ApprovalRequest, to_status: ApprovalRequestStatus, now) -> None:
    closing = _CLOSING_TASK_STATUS[to_status]
    for task in approval_request.tasks:
        if task.is_pending:
            task.status = closing
            task.updated_at = now
    approval_request.status = to_status
    approval_request.completed_at = now
    approval_request.updated_at = now
