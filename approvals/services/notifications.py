"""Outbound collaborators: approval notifications and expense status updates.

Everything here runs after the approval transaction has committed. Failures
are logged and never undo approval state.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests
from flask import current_app
from flask_mail import Mail, Message

from approvals import db
from approvals.models import ApprovalRequest, ApprovalRequestStatus, Expense, ExpenseStatus, User

logger = logging.getLogger(__name__)

TASK_ASSIGNED = "task_assigned"
REQUEST_SUBMITTED = "request_submitted"
STATUS_CHANGED = "status_changed"


@dataclass
class NotificationEvent:
    kind: str
    request_id: int
    expense_id: int
    to_status: Optional[str] = None
    recipient_ids: List[int] = field(default_factory=list)
    task_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LoggingNotifier:
    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            f"Approval notification {event.kind}: request={event.request_id} expense={event.expense_id} "
            f"status={event.to_status} recipients={event.recipient_ids}"
        )


class EmailNotifier:
    """Plain-text approval emails sent through Flask-Mail."""

    def __init__(self, mail: Optional[Mail] = None):
        self.mail = mail

    def notify(self, event: NotificationEvent) -> None:
        if not self.mail:
            logger.error("Mail service not initialized")
            return
        recipients = self._recipient_emails(event)
        if not recipients:
            logger.debug(f"No email recipients for {event.kind} on request {event.request_id}")
            return

        msg = Message(
            subject=self._subject(event),
            sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
            recipients=recipients,
        )
        msg.body = self._body(event)
        self.mail.send(msg)
        logger.info(f"Approval email for request {event.request_id} sent to {', '.join(recipients)}")

    def _recipient_emails(self, event: NotificationEvent) -> List[str]:
        user_ids = list(event.recipient_ids)
        if event.kind == STATUS_CHANGED:
            expense = db.session.get(Expense, event.expense_id)
            if expense is not None:
                user_ids.append(expense.submitter_user_id)
        if not user_ids:
            return []
        users = User.query.filter(User.id.in_(user_ids), User.is_active.is_(True)).all()
        return sorted({user.email for user in users})

    @staticmethod
    def _subject(event: NotificationEvent) -> str:
        subjects = {
            TASK_ASSIGNED: "Expense awaiting your approval",
            REQUEST_SUBMITTED: "Expense submitted for approval",
        }
        if event.kind in subjects:
            return subjects[event.kind]
        return f"Expense approval {(event.to_status or 'updated').lower()}"

    @staticmethod
    def _body(event: NotificationEvent) -> str:
        if event.kind == TASK_ASSIGNED:
            return (
                f"Expense #{event.expense_id} needs your decision "
                f"(approval request #{event.request_id}, task #{event.task_id})."
            )
        if event.kind == REQUEST_SUBMITTED:
            return f"Expense #{event.expense_id} was submitted for approval (request #{event.request_id})."
        return f"Approval request #{event.request_id} for expense #{event.expense_id} is now {event.to_status}."


class WebhookNotifier:
    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, event: NotificationEvent) -> None:
        response = self.session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        response.raise_for_status()
        logger.info(f"Webhook delivered {event.kind} for request {event.request_id}")


class CompositeNotifier:
    """Fans an event out to every channel; one failing channel does not stop the others."""

    def __init__(self, notifiers: Iterable[Any] = ()):
        self.notifiers = list(notifiers)

    def notify(self, event: NotificationEvent) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(event)
            except Exception as exc:
                logger.error(
                    f"{type(notifier).__name__} failed for {event.kind} on request {event.request_id}: {exc}"
                )


class ExpenseStatusUpdater:
    """Mirrors the approval outcome onto the expense record."""

    STATUS_MAP = {
        ApprovalRequestStatus.PENDING: ExpenseStatus.PENDING_APPROVAL,
        ApprovalRequestStatus.APPROVED: ExpenseStatus.APPROVED,
        ApprovalRequestStatus.REJECTED: ExpenseStatus.REJECTED,
        ApprovalRequestStatus.CANCELLED: ExpenseStatus.DRAFT,
        ApprovalRequestStatus.EXPIRED: ExpenseStatus.DRAFT,
    }

    def update(self, expense_id: int, request_status: ApprovalRequestStatus, request_id: Optional[int] = None) -> None:
        """Set the expense status for ``request_status``.

        With ``request_id`` the write is dropped when it is stale: the request
        has moved on to another status or a newer cycle exists for the expense.
        """
        new_status = self.STATUS_MAP.get(request_status)
        if new_status is None:
            return
        if request_id is not None and self._is_stale(expense_id, request_status, request_id):
            logger.info(
                f"Skipping stale {request_status.value} update for expense {expense_id} from request {request_id}"
            )
            return
        expense = db.session.get(Expense, expense_id)
        if expense is None:
            logger.warning(f"Expense {expense_id} vanished before its status could be set to {new_status.value}")
            return
        expense.status = new_status
        db.session.commit()
        logger.info(f"Expense {expense_id} status set to {new_status.value}")

    @staticmethod
    def _is_stale(expense_id: int, request_status: ApprovalRequestStatus, request_id: int) -> bool:
        approval_request = db.session.get(ApprovalRequest, request_id, populate_existing=True)
        if approval_request is None or approval_request.status is not request_status:
            return True
        latest_id = (
            db.session.query(ApprovalRequest.id)
            .filter(ApprovalRequest.expense_id == expense_id)
            .order_by(ApprovalRequest.cycle.desc(), ApprovalRequest.id.desc())
            .limit(1)
            .scalar()
        )
        return latest_id != request_id


def build_notifier(config, mail: Optional[Mail] = None) -> CompositeNotifier:
    channels = []
    for name in config.get("APPROVAL_NOTIFIERS", ["log"]):
        if name == "log":
            channels.append(LoggingNotifier())
        elif name == "email":
            channels.append(EmailNotifier(mail))
        elif name == "webhook":
            url = config.get("APPROVAL_WEBHOOK_URL")
            if not url:
                raise ValueError("APPROVAL_WEBHOOK_URL must be set to use the webhook notifier")
            channels.append(WebhookNotifier(url, timeout=config.get("APPROVAL_WEBHOOK_TIMEOUT", 5)))
        else:
            raise ValueError(f"Unknown approval notifier '{name}'")
    return CompositeNotifier(channels)
