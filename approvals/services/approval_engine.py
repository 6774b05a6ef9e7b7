"""Approval engine: inbound operations, locking and transaction boundaries.

Each operation runs as one unit of work: the request transition, its history
entries and any released tasks commit together or not at all. Work on a
single request (or, for submission, a single expense) is serialized through
the lock registry and ``SELECT ... FOR UPDATE`` where the database supports
it. Notifications and expense status updates are dispatched after commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from approvals import db
from approvals.errors import ApprovalError, InvalidTransition, NotFound, ValidationError, ConflictError
from approvals.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRule,
    ApprovalTask,
    ApprovalTaskStatus,
    Expense,
    ExpenseStatus,
    HistoryAction,
    User,
    UserRole,
)
from approvals.services import history
from approvals.services.conditions import ExpenseSnapshot
from approvals.services.locks import LockRegistry
from approvals.services.notifications import (
    REQUEST_SUBMITTED,
    STATUS_CHANGED,
    TASK_ASSIGNED,
    CompositeNotifier,
    ExpenseStatusUpdater,
    LoggingNotifier,
    NotificationEvent,
    build_notifier,
)
from approvals.services.rules import ApprovalPlan, active_rules, match, no_approval_required, no_match_policy_from_config
from approvals.services.scheduler import TaskScheduler
from approvals.services.state_machine import ensure_pending, next_status, transition
from approvals.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

StatusUpdate = Tuple[int, int, ApprovalRequestStatus]


@dataclass
class BulkResult:
    success: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": list(self.success), "failed": list(self.failed)}


@dataclass
class TickResult:
    escalated: List[int] = field(default_factory=list)
    expired: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def request_ids(self) -> List[int]:
        return sorted(set(self.escalated) | set(self.expired))

    def to_dict(self) -> Dict[str, Any]:
        return {"escalated": list(self.escalated), "expired": list(self.expired), "failed": list(self.failed)}


class ApprovalEngine:
    def __init__(
        self,
        notifier=None,
        expense_updater: Optional[ExpenseStatusUpdater] = None,
        no_match_policy: Optional[Callable[[ExpenseSnapshot], ApprovalPlan]] = None,
        scheduler: Optional[TaskScheduler] = None,
        lock_timeout: float = 10.0,
    ):
        self.notifier = notifier or CompositeNotifier([LoggingNotifier()])
        self.expense_updater = expense_updater or ExpenseStatusUpdater()
        self.no_match_policy = no_match_policy or no_approval_required
        self.scheduler = scheduler or TaskScheduler()
        self.locks = LockRegistry(lock_timeout)

    def configure(self, app, mail=None) -> None:
        config = app.config
        self.notifier = build_notifier(config, mail)
        self.no_match_policy = no_match_policy_from_config(config.get("APPROVAL_NO_MATCH_POLICY", "no_approval"))
        self.scheduler = TaskScheduler(
            escalation_policy=config.get("APPROVAL_ESCALATION_POLICY", "manager"),
            default_due_hours=config.get("APPROVAL_DEFAULT_DUE_HOURS"),
        )
        self.locks.timeout = float(config.get("APPROVAL_LOCK_TIMEOUT_SECONDS", 10))

    # Submission -------------------------------------------------------------

    def submit(
        self,
        expense,
        rules: Optional[Iterable[ApprovalRule]] = None,
        requester_id: Optional[int] = None,
        reason: Optional[str] = None,
        now=None,
    ) -> ApprovalRequest:
        """Open an approval request for a draft expense.

        ``rules`` defaults to the active rules of the expense's company.
        """
        expense_id = expense.id if isinstance(expense, Expense) else expense
        now = now or utcnow()
        events: List[NotificationEvent] = []
        updates: List[StatusUpdate] = []

        with self.locks.expense(expense_id):
            try:
                expense = db.session.get(Expense, expense_id, populate_existing=True)
                if expense is None:
                    raise NotFound("Expense", expense_id)
                approval_request = self._open_request(expense, rules, requester_id, reason, now, events, updates)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        self._dispatch(events, updates)
        return approval_request

    def _open_request(self, expense, rules, requester_id, reason, now, events, updates) -> ApprovalRequest:
        pending = ApprovalRequest.query.filter_by(
            expense_id=expense.id, status=ApprovalRequestStatus.PENDING
        ).first()
        if pending is not None:
            raise ConflictError(
                f"Expense {expense.id} already has a pending approval request.", request_id=pending.id
            )
        if expense.status is not ExpenseStatus.DRAFT:
            raise InvalidTransition(
                f"Expense {expense.id} is {expense.status.value} and cannot be submitted.",
                current_status=expense.status.value,
                expense_id=expense.id,
            )

        snapshot = ExpenseSnapshot.from_expense(expense)
        if rules is None:
            rules = active_rules(expense.company_id)
        plan = match(snapshot, rules, now)
        if plan is None:
            plan = self.no_match_policy(snapshot)

        last_cycle = (
            db.session.query(func.max(ApprovalRequest.cycle))
            .filter(ApprovalRequest.expense_id == expense.id)
            .scalar()
        )
        approval_request = ApprovalRequest(
            company_id=expense.company_id,
            expense=expense,
            requester_id=requester_id or expense.submitter_user_id,
            rule_id=plan.rule_id,
            cycle=(last_cycle or 0) + 1,
            status=ApprovalRequestStatus.PENDING,
            priority=plan.priority,
            submitted_at=now,
            total_amount=snapshot.amount,
            currency=snapshot.currency,
            reason=reason,
            plan=plan.to_dict(),
            created_at=now,
            updated_at=now,
        )
        db.session.add(approval_request)
        db.session.flush()

        if plan.auto_approve:
            transition(
                approval_request,
                ApprovalRequestStatus.APPROVED,
                HistoryAction.APPROVED,
                comments="Auto-approved",
                extra_data={"rule_id": plan.rule_id, "auto_approved": True, "cycle": approval_request.cycle},
                now=now,
            )
            logger.info(f"Expense {expense.id} auto-approved by request {approval_request.id}")
            self._settled(approval_request, events, updates)
            return approval_request

        history.append(
            approval_request,
            HistoryAction.SUBMITTED,
            None,
            ApprovalRequestStatus.PENDING,
            user_id=approval_request.requester_id,
            comments=reason,
            extra_data={"rule_id": plan.rule_id, "cycle": approval_request.cycle},
            now=now,
        )
        tasks = self.scheduler.materialize(approval_request, plan.first_group, now)
        tasks.extend(self.scheduler.advance(approval_request, plan, now))
        if next_status(approval_request, plan) is ApprovalRequestStatus.APPROVED:
            # only optional approvers were planned
            transition(
                approval_request,
                ApprovalRequestStatus.APPROVED,
                HistoryAction.APPROVED,
                comments="No required approvers",
                now=now,
            )
            self._settled(approval_request, events, updates)
            return approval_request

        self.scheduler.refresh_due_date(approval_request)
        updates.append((approval_request.id, expense.id, ApprovalRequestStatus.PENDING))
        events.extend(self._assigned_events(approval_request, tasks))
        if plan.notify_user_ids:
            events.append(
                NotificationEvent(
                    kind=REQUEST_SUBMITTED,
                    request_id=approval_request.id,
                    expense_id=expense.id,
                    to_status=ApprovalRequestStatus.PENDING.value,
                    recipient_ids=list(plan.notify_user_ids),
                )
            )
        logger.info(
            f"Approval request {approval_request.id} opened for expense {expense.id} "
            f"with {len(tasks)} task(s), cycle {approval_request.cycle}"
        )
        return approval_request

    # Decisions --------------------------------------------------------------

    def decide(self, task_id: int, decision, comments: Optional[str], acting_user_id: int,
               now=None) -> ApprovalRequest:
        """Record one approver's decision and return the updated request."""
        decision = self._parse_decision(decision)
        now = now or utcnow()
        task = db.session.get(ApprovalTask, task_id)
        if task is None:
            raise NotFound("Approval task", task_id)
        request_id = task.approval_request_id
        events: List[NotificationEvent] = []
        updates: List[StatusUpdate] = []

        with self.locks.request(request_id):
            try:
                approval_request = self._lock_request(request_id)
                task = next(item for item in approval_request.tasks if item.id == task_id)
                self._check_decidable(approval_request, task, acting_user_id)
                plan = ApprovalPlan.from_dict(approval_request.plan or {})

                task.status = ApprovalTaskStatus.COMPLETED
                task.decision = decision
                task.comments = comments
                task.decided_at = now
                task.updated_at = now

                to_status = next_status(approval_request, plan)
                transition(
                    approval_request,
                    to_status,
                    HistoryAction(decision.value),
                    user_id=acting_user_id,
                    comments=comments,
                    extra_data={"task_id": task.id, "sequence": task.sequence, "required": task.is_required},
                    now=now,
                )
                if to_status is ApprovalRequestStatus.PENDING:
                    created = self.scheduler.advance(approval_request, plan, now)
                    self.scheduler.refresh_due_date(approval_request)
                    approval_request.updated_at = now
                    events.extend(self._assigned_events(approval_request, created))
                else:
                    self._settled(approval_request, events, updates)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        logger.info(f"Task {task_id} {decision.value} by user {acting_user_id}")
        self._dispatch(events, updates)
        return approval_request

    def bulk_decide(self, task_ids: Iterable[int], decision, comments: Optional[str],
                    acting_user_id: int, now=None) -> BulkResult:
        """Decide several tasks independently; one failure does not affect the others."""
        result = BulkResult()
        seen = set()
        for task_id in task_ids:
            if task_id in seen:
                continue
            seen.add(task_id)
            try:
                self.decide(task_id, decision, comments, acting_user_id, now=now)
            except ApprovalError as exc:
                result.failed.append({"task_id": task_id, **exc.to_dict()})
            except SQLAlchemyError as exc:
                db.session.rollback()
                logger.error(f"Database error deciding task {task_id}: {exc}")
                result.failed.append({"task_id": task_id, "error": str(exc), "code": "database_error"})
            except Exception as exc:
                db.session.rollback()
                logger.exception(f"Unexpected error deciding task {task_id}")
                result.failed.append({"task_id": task_id, "error": str(exc), "code": "internal_error"})
            else:
                result.success.append(task_id)
        return result

    @staticmethod
    def _parse_decision(decision) -> ApprovalDecision:
        if isinstance(decision, ApprovalDecision):
            return decision
        try:
            return ApprovalDecision(str(decision).upper())
        except ValueError:
            raise ValidationError(
                f"Unknown decision '{decision}'.", allowed=[item.value for item in ApprovalDecision]
            ) from None

    @staticmethod
    def _check_decidable(approval_request: ApprovalRequest, task: ApprovalTask, acting_user_id: int) -> None:
        ensure_pending(approval_request)
        if not task.is_pending:
            raise InvalidTransition(
                f"Approval task {task.id} is already {task.status.value}.",
                current_status=task.status.value,
                task_id=task.id,
            )
        if task.approver_id != acting_user_id:
            raise InvalidTransition(
                f"Approval task {task.id} is not assigned to user {acting_user_id}.",
                current_status=task.status.value,
                task_id=task.id,
            )

    # Cancellation -----------------------------------------------------------

    def cancel(self, request_id: int, acting_user_id: int, reason: Optional[str] = None,
               now=None) -> ApprovalRequest:
        now = now or utcnow()
        events: List[NotificationEvent] = []
        updates: List[StatusUpdate] = []

        with self.locks.request(request_id):
            try:
                approval_request = self._lock_request(request_id)
                ensure_pending(approval_request)
                actor = db.session.get(User, acting_user_id)
                is_admin = (
                    actor is not None
                    and actor.role is UserRole.ADMIN
                    and actor.company_id == approval_request.company_id
                )
                if acting_user_id != approval_request.requester_id and not is_admin:
                    raise InvalidTransition(
                        "Only the requester or an administrator can cancel this request.",
                        current_status=approval_request.status.value,
                        request_id=request_id,
                    )
                transition(
                    approval_request,
                    ApprovalRequestStatus.CANCELLED,
                    HistoryAction.CANCELLED,
                    user_id=acting_user_id,
                    comments=reason,
                    now=now,
                )
                self._settled(approval_request, events, updates)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        self._dispatch(events, updates)
        return approval_request

    # Escalation -------------------------------------------------------------

    def tick(self, now=None) -> TickResult:
        """Escalate overdue tasks and expire overdue requests.

        Safe to run repeatedly: each request is re-read under its lock and
        only still-pending work is touched.
        """
        now = now or utcnow()
        result = TickResult()
        for request_id in self._tick_candidates(now):
            events: List[NotificationEvent] = []
            updates: List[StatusUpdate] = []
            try:
                escalated, expired = self._tick_request(request_id, now, events, updates)
            except (ApprovalError, SQLAlchemyError) as exc:
                logger.error(f"Escalation failed for approval request {request_id}: {exc}")
                entry = {"request_id": request_id}
                entry.update(exc.to_dict() if isinstance(exc, ApprovalError) else {"error": str(exc), "code": "database_error"})
                result.failed.append(entry)
                continue
            except Exception as exc:
                db.session.rollback()
                logger.exception(f"Unexpected error escalating approval request {request_id}")
                result.failed.append({"request_id": request_id, "error": str(exc), "code": "internal_error"})
                continue
            if escalated:
                result.escalated.append(request_id)
            if expired:
                result.expired.append(request_id)
            self._dispatch(events, updates)

        if result.request_ids or result.failed:
            logger.info(
                f"Tick at {now.isoformat()}: {len(result.escalated)} escalated, "
                f"{len(result.expired)} expired, {len(result.failed)} failed"
            )
        return result

    def _tick_candidates(self, now) -> List[int]:
        overdue_tasks = select(ApprovalTask.approval_request_id).where(
            ApprovalTask.status == ApprovalTaskStatus.PENDING,
            ApprovalTask.due_date <= now,
        )
        stmt = (
            select(ApprovalRequest.id)
            .where(
                ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                or_(ApprovalRequest.due_date <= now, ApprovalRequest.id.in_(overdue_tasks)),
            )
            .order_by(ApprovalRequest.id)
        )
        return list(db.session.execute(stmt).scalars())

    def _tick_request(self, request_id: int, now, events, updates) -> Tuple[bool, bool]:
        escalated = expired = False
        with self.locks.request(request_id):
            try:
                approval_request = self._lock_request(request_id)
                if approval_request.status is not ApprovalRequestStatus.PENDING:
                    db.session.rollback()
                    return False, False
                plan = ApprovalPlan.from_dict(approval_request.plan or {})
                created = []

                for task in self.scheduler.overdue_tasks(approval_request, now):
                    if approval_request.status is not ApprovalRequestStatus.PENDING:
                        break
                    escalated = True
                    replacement = self.scheduler.escalate(approval_request, task, plan, now)
                    if replacement is not None:
                        created.append(replacement)
                    elif task.is_required:
                        transition(
                            approval_request,
                            ApprovalRequestStatus.EXPIRED,
                            HistoryAction.EXPIRED,
                            extra_data={"task_id": task.id, "reason": "no_escalation_target"},
                            now=now,
                        )
                        expired = True

                if approval_request.status is ApprovalRequestStatus.PENDING:
                    self.scheduler.refresh_due_date(approval_request)
                    if approval_request.due_date is not None and approval_request.due_date <= now:
                        transition(
                            approval_request,
                            ApprovalRequestStatus.EXPIRED,
                            HistoryAction.EXPIRED,
                            extra_data={"reason": "request_overdue"},
                            now=now,
                        )
                        expired = True
                    else:
                        approval_request.updated_at = now

                if expired:
                    self._settled(approval_request, events, updates)
                else:
                    events.extend(self._assigned_events(approval_request, created))
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
        return escalated, expired

    # Helpers ----------------------------------------------------------------

    @staticmethod
    def _lock_request(request_id: int) -> ApprovalRequest:
        stmt = (
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .with_for_update(of=ApprovalRequest)
            .execution_options(populate_existing=True)
        )
        approval_request = db.session.execute(stmt).scalars().first()
        if approval_request is None:
            raise NotFound("Approval request", request_id)
        return approval_request

    @staticmethod
    def _assigned_events(approval_request: ApprovalRequest, tasks: Iterable[ApprovalTask]) -> List[NotificationEvent]:
        return [
            NotificationEvent(
                kind=TASK_ASSIGNED,
                request_id=approval_request.id,
                expense_id=approval_request.expense_id,
                to_status=approval_request.status.value,
                recipient_ids=[task.approver_id],
                task_id=task.id,
            )
            for task in tasks
        ]

    @staticmethod
    def _settled(approval_request: ApprovalRequest, events, updates) -> None:
        events.append(
            NotificationEvent(
                kind=STATUS_CHANGED,
                request_id=approval_request.id,
                expense_id=approval_request.expense_id,
                to_status=approval_request.status.value,
            )
        )
        updates.append((approval_request.id, approval_request.expense_id, approval_request.status))

    def _dispatch(self, events: Iterable[NotificationEvent], updates: Iterable[StatusUpdate]) -> None:
        for request_id, expense_id, status in updates:
            try:
                with self.locks.expense(expense_id):
                    self.expense_updater.update(expense_id, status, request_id=request_id)
            except Exception as exc:
                db.session.rollback()
                logger.error(f"Failed to update expense {expense_id} to match {status.value}: {exc}")
        for event in events:
            try:
                self.notifier.notify(event)
            except Exception as exc:
                logger.error(f"Failed to send {event.kind} notification for request {event.request_id}: {exc}")


approval_engine = ApprovalEngine()


def init_approval_engine(app, mail=None) -> ApprovalEngine:
    approval_engine.configure(app, mail)
    app.extensions["approval_engine"] = approval_engine
    return approval_engine
