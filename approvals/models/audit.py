"""Approval audit ledger model."""
from __future__ import annotations

import enum

from sqlalchemy import event

from approvals import db
from approvals.models.approval import ApprovalRequestStatus
from approvals.utils.timeutils import utcnow


class HistoryAction(enum.Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"
    ESCALATED = "ESCALATED"
    DELEGATED = "DELEGATED"
    EXPIRED = "EXPIRED"


class HistoryActor(enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


class AuditLedgerError(RuntimeError):
    """Raised when something tries to rewrite the approval ledger."""


class ApprovalHistory(db.Model):
    __tablename__ = "approval_history"
    __table_args__ = (
        db.UniqueConstraint("approval_request_id", "position", name="uq_approval_history_position"),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    actor = db.Column(db.Enum(HistoryActor, name="approval_history_actor"), nullable=False)
    action = db.Column(db.Enum(HistoryAction, name="approval_history_action"), nullable=False)
    from_status = db.Column(db.Enum(ApprovalRequestStatus, name="approval_request_status"), nullable=True)
    to_status = db.Column(db.Enum(ApprovalRequestStatus, name="approval_request_status"), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    extra_data = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    approval_request = db.relationship("ApprovalRequest", back_populates="history", lazy="select")
    user = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approval_request_id": self.approval_request_id,
            "position": self.position,
            "user_id": self.user_id,
            "actor": self.actor.value if self.actor else None,
            "action": self.action.value if self.action else None,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "comments": self.comments,
            "extra_data": self.extra_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ApprovalHistory request_id={self.approval_request_id} "
            f"#{self.position} action={self.action.value if self.action else None}>"
        )


@event.listens_for(ApprovalHistory, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise AuditLedgerError(f"Approval history entry {target.id} is immutable")


@event.listens_for(ApprovalHistory, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise AuditLedgerError(f"Approval history entry {target.id} cannot be deleted")
