"""Approval-related models."""
from __future__ import annotations

import enum

from approvals import db
from approvals.utils.timeutils import utcnow


class ApprovalRequestStatus(enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalRequestStatus.PENDING


class ApprovalTaskStatus(enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    EXPIRED = "EXPIRED"


class ApprovalDecision(enum.Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class ApprovalPriority(enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ApprovalPriority.LOW: 0,
    ApprovalPriority.NORMAL: 1,
    ApprovalPriority.HIGH: 2,
    ApprovalPriority.URGENT: 3,
}


def _iso(value):
    return value.isoformat() if value else None


class ApprovalRule(db.Model):
    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    priority = db.Column(db.Integer, default=0, nullable=False)
    conditions = db.Column(db.JSON, nullable=False, default=list)
    actions = db.Column(db.JSON, nullable=False, default=list)
    match_count = db.Column(db.Integer, default=0, nullable=False)
    last_matched_at = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = db.relationship("Company", back_populates="approval_rules", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "conditions": self.conditions,
            "actions": self.actions,
            "match_count": self.match_count,
            "last_matched_at": _iso(self.last_matched_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalRule id={self.id} priority={self.priority} name={self.name!r}>"


class ApprovalRequest(db.Model):
    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id", ondelete="SET NULL"), nullable=True)
    cycle = db.Column(db.Integer, default=1, nullable=False)
    status = db.Column(
        db.Enum(ApprovalRequestStatus, name="approval_request_status"),
        nullable=False,
        default=ApprovalRequestStatus.PENDING,
        index=True,
    )
    priority = db.Column(
        db.Enum(ApprovalPriority, name="approval_priority"),
        nullable=False,
        default=ApprovalPriority.NORMAL,
    )
    due_date = db.Column(db.DateTime, nullable=True, index=True)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    total_amount = db.Column(db.Numeric(15, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    plan = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    expense = db.relationship("Expense", back_populates="approval_requests", lazy="joined")
    requester = db.relationship("User", lazy="joined")
    rule = db.relationship("ApprovalRule", lazy="select")
    tasks = db.relationship(
        "ApprovalTask",
        back_populates="approval_request",
        lazy="selectin",
        order_by=lambda: (ApprovalTask.sequence, ApprovalTask.id),
    )
    history = db.relationship(
        "ApprovalHistory",
        back_populates="approval_request",
        lazy="select",
        order_by="ApprovalHistory.position",
    )

    def to_dict(self, include_tasks: bool = False) -> dict:
        payload = {
            "id": self.id,
            "company_id": self.company_id,
            "expense_id": self.expense_id,
            "requester_id": self.requester_id,
            "rule_id": self.rule_id,
            "cycle": self.cycle,
            "status": self.status.value if self.status else None,
            "priority": self.priority.value if self.priority else None,
            "due_date": _iso(self.due_date),
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
            "total_amount": float(self.total_amount) if self.total_amount is not None else None,
            "currency": self.currency,
            "reason": self.reason,
        }
        if include_tasks:
            payload["tasks"] = [task.to_dict() for task in self.tasks]
        return payload

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest id={self.id} expense_id={self.expense_id} "
            f"status={self.status.value if self.status else None}>"
        )


class ApprovalTask(db.Model):
    __tablename__ = "approval_tasks"
    __table_args__ = (
        db.UniqueConstraint(
            "approval_request_id", "approver_id", "sequence", name="uq_approval_task_request_approver_sequence"
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id"), nullable=False, index=True
    )
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(
        db.Enum(ApprovalTaskStatus, name="approval_task_status"),
        nullable=False,
        default=ApprovalTaskStatus.PENDING,
        index=True,
    )
    decision = db.Column(db.Enum(ApprovalDecision, name="approval_decision"), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)
    sequence = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    delegated_from = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    escalated_from = db.Column(db.Integer, db.ForeignKey("approval_tasks.id"), nullable=True)
    due_date = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    approval_request = db.relationship("ApprovalRequest", back_populates="tasks", lazy="joined")
    approver = db.relationship("User", foreign_keys=[approver_id], lazy="joined")

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalTaskStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approval_request_id": self.approval_request_id,
            "approver_id": self.approver_id,
            "status": self.status.value if self.status else None,
            "decision": self.decision.value if self.decision else None,
            "comments": self.comments,
            "decided_at": _iso(self.decided_at),
            "sequence": self.sequence,
            "is_required": self.is_required,
            "delegated_from": self.delegated_from,
            "escalated_from": self.escalated_from,
            "due_date": _iso(self.due_date),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return (
            f"<ApprovalTask id={self.id} request_id={self.approval_request_id} "
            f"approver_id={self.approver_id} seq={self.sequence} "
            f"status={self.status.value if self.status else None}>"
        )


class ApprovalDelegate(db.Model):
    __tablename__ = "approval_delegates"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    delegator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    delegate_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    amount_limit = db.Column(db.Numeric(15, 2), nullable=True)
    category_ids = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    delegator = db.relationship("User", foreign_keys=[delegator_id], lazy="joined")
    delegate = db.relationship("User", foreign_keys=[delegate_id], lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "is_active": self.is_active,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "reason": self.reason,
            "amount_limit": float(self.amount_limit) if self.amount_limit is not None else None,
            "category_ids": self.category_ids,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalDelegate {self.delegator_id}->{self.delegate_id} active={self.is_active}>"
