"""Creates, releases and escalates approval tasks."""
from __future__ import annotations

import logging
from typing import List, Optional

from approvals import db
from approvals.models import (
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalTask,
    ApprovalTaskStatus,
    HistoryAction,
    User,
)
from approvals.services import history
from approvals.services.delegation import DelegationContext, find_delegation
from approvals.services.rules import ApprovalPlan, ApproverGroup
from approvals.utils.timeutils import hours_after, utcnow

logger = logging.getLogger(__name__)

ESCALATE_TO_MANAGER = "manager"
ESCALATE_EXPIRE = "expire"
ESCALATION_POLICIES = (ESCALATE_TO_MANAGER, ESCALATE_EXPIRE)


class TaskScheduler:
    def __init__(self, escalation_policy: str = ESCALATE_TO_MANAGER, default_due_hours: Optional[float] = None):
        if escalation_policy not in ESCALATION_POLICIES:
            raise ValueError(f"Unknown APPROVAL_ESCALATION_POLICY '{escalation_policy}'")
        self.escalation_policy = escalation_policy
        self.default_due_hours = default_due_hours

    # Creation ---------------------------------------------------------------

    def materialize(self, approval_request: ApprovalRequest, group: ApproverGroup, now=None) -> List[ApprovalTask]:
        """Create the tasks of one approver group, applying delegations."""
        now = now or utcnow()
        context = DelegationContext.for_request(approval_request)
        created = []
        for approver in group.approvers:
            task = self._create_task(
                approval_request,
                approver.user_id,
                group.sequence,
                approver.required,
                hours_after(now, group.escalation_time_hours),
                context,
                now,
            )
            if task is not None:
                created.append(task)
        return created

    def advance(self, approval_request: ApprovalRequest, plan: ApprovalPlan, now=None) -> List[ApprovalTask]:
        """Release later groups once no required task of the released ones is pending.

        Groups without required approvers do not hold up the next group, so
        release cascades over them.
        """
        now = now or utcnow()
        created: List[ApprovalTask] = []
        while not any(task.is_pending and task.is_required for task in approval_request.tasks):
            current_sequence = max((task.sequence for task in approval_request.tasks), default=0)
            group = plan.group_after(current_sequence)
            if group is None:
                break
            released = self.materialize(approval_request, group, now)
            logger.info(
                f"Released sequence {group.sequence} of request {approval_request.id} ({len(released)} tasks)"
            )
            created.extend(released)
            if not released:
                break
        return created

    def _create_task(
        self,
        approval_request: ApprovalRequest,
        nominal_approver_id: int,
        sequence: int,
        required: bool,
        due_date,
        context: DelegationContext,
        now,
        escalated_from: Optional[int] = None,
    ) -> Optional[ApprovalTask]:
        delegation = find_delegation(nominal_approver_id, context, now)
        acting_id = delegation.delegate_id if delegation is not None else nominal_approver_id

        if self._has_task(approval_request, acting_id, sequence):
            logger.info(
                f"Approver {acting_id} already holds a task at sequence {sequence} "
                f"of request {approval_request.id}"
            )
            return None

        task = ApprovalTask(
            approval_request=approval_request,
            approver_id=acting_id,
            status=ApprovalTaskStatus.PENDING,
            sequence=sequence,
            is_required=required,
            delegated_from=nominal_approver_id if delegation is not None else None,
            escalated_from=escalated_from,
            due_date=due_date,
            created_at=now,
            updated_at=now,
        )
        db.session.add(task)
        db.session.flush()

        if delegation is not None:
            history.append(
                approval_request,
                HistoryAction.DELEGATED,
                approval_request.status,
                approval_request.status,
                comments=delegation.reason,
                extra_data={
                    "task_id": task.id,
                    "delegated_from": nominal_approver_id,
                    "delegate_id": acting_id,
                    "delegation_id": delegation.id,
                },
                now=now,
            )
        return task

    @staticmethod
    def _has_task(approval_request: ApprovalRequest, approver_id: int, sequence: int) -> bool:
        return any(
            task.approver_id == approver_id and task.sequence == sequence for task in approval_request.tasks
        )

    # Due dates --------------------------------------------------------------

    def refresh_due_date(self, approval_request: ApprovalRequest) -> None:
        pending_dues = [
            task.due_date for task in approval_request.tasks if task.is_pending and task.due_date is not None
        ]
        if pending_dues:
            approval_request.due_date = max(pending_dues)
        else:
            approval_request.due_date = hours_after(approval_request.submitted_at, self.default_due_hours)

    # Escalation -------------------------------------------------------------

    def overdue_tasks(self, approval_request: ApprovalRequest, now) -> List[ApprovalTask]:
        return [
            task
            for task in approval_request.tasks
            if task.is_pending and task.due_date is not None and task.due_date <= now
        ]

    def escalate(self, approval_request: ApprovalRequest, task: ApprovalTask, plan: ApprovalPlan,
                 now=None) -> Optional[ApprovalTask]:
        """Expire an overdue task and hand it to the next eligible approver.

        Returns the replacement task, or ``None`` when nobody is eligible. The
        caller decides what a missing replacement means for the request.
        """
        now = now or utcnow()
        task.status = ApprovalTaskStatus.EXPIRED
        task.updated_at = now

        target_id = self._escalation_target(approval_request, task, plan, now)
        history.append(
            approval_request,
            HistoryAction.ESCALATED,
            ApprovalRequestStatus.PENDING,
            ApprovalRequestStatus.PENDING,
            extra_data={"task_id": task.id, "approver_id": task.approver_id, "escalated_to": target_id},
            now=now,
        )
        if target_id is None:
            logger.warning(f"No escalation target for task {task.id} of request {approval_request.id}")
            return None

        group = plan.group_for(task.sequence)
        hours = group.escalation_time_hours if group is not None else None
        replacement = self._create_task(
            approval_request,
            target_id,
            task.sequence,
            task.is_required,
            hours_after(now, hours),
            DelegationContext.for_request(approval_request),
            now,
            escalated_from=task.id,
        )
        if replacement is not None:
            logger.info(f"Escalated task {task.id} to approver {replacement.approver_id} as task {replacement.id}")
        return replacement

    def _escalation_target(self, approval_request: ApprovalRequest, task: ApprovalTask,
                           plan: ApprovalPlan, now) -> Optional[int]:
        """First eligible candidate, judged by who would actually act after delegation."""
        if self.escalation_policy == ESCALATE_EXPIRE:
            return None

        context = DelegationContext.for_request(approval_request)
        candidates = list(plan.escalation_user_ids)
        approver = db.session.get(User, task.approver_id)
        if approver is not None and approver.manager_id:
            candidates.append(approver.manager_id)

        for candidate_id in candidates:
            if candidate_id in (task.approver_id, approval_request.requester_id):
                continue
            user = db.session.get(User, candidate_id)
            if user is None or not user.is_active or user.company_id != approval_request.company_id:
                continue
            delegation = find_delegation(candidate_id, context, now)
            acting_id = delegation.delegate_id if delegation is not None else candidate_id
            if self._has_task(approval_request, acting_id, task.sequence):
                continue
            return candidate_id
        return None
