"""Append-only audit trail for approval requests."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from approvals import db
from approvals.models import (
    ApprovalHistory,
    ApprovalRequest,
    ApprovalRequestStatus,
    HistoryAction,
    HistoryActor,
)
from approvals.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def append(
    approval_request: ApprovalRequest,
    action: HistoryAction,
    from_status: Optional[ApprovalRequestStatus],
    to_status: Optional[ApprovalRequestStatus],
    user_id: Optional[int] = None,
    comments: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
    now=None,
) -> ApprovalHistory:
    """Add a history entry to the current session.

    The entry is committed together with the transition it documents. Entries
    without a user are recorded as acted by the system.
    """
    if approval_request.id is None:
        db.session.flush()

    last_position = (
        db.session.query(func.max(ApprovalHistory.position))
        .filter(ApprovalHistory.approval_request_id == approval_request.id)
        .scalar()
    )
    entry = ApprovalHistory(
        approval_request_id=approval_request.id,
        position=(last_position or 0) + 1,
        user_id=user_id,
        actor=HistoryActor.USER if user_id is not None else HistoryActor.SYSTEM,
        action=action,
        from_status=from_status,
        to_status=to_status,
        comments=comments,
        extra_data=extra_data,
        created_at=now or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    logger.debug(
        f"History #{entry.position} for request {approval_request.id}: {action.value} "
        f"{from_status.value if from_status else None} -> {to_status.value if to_status else None}"
    )
    return entry


def history_for(request_id: int) -> List[ApprovalHistory]:
    return (
        ApprovalHistory.query.filter_by(approval_request_id=request_id)
        .order_by(ApprovalHistory.position)
        .all()
    )
