"""Expense model definitions."""
from __future__ import annotations

import enum

from approvals import db


class ExpenseStatus(enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    company = db.relationship("Company", back_populates="categories", lazy="joined")

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "company_id": self.company_id}

    def __repr__(self) -> str:
        return f"<Category {self.name} company={self.company_id}>"


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    submitter_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    vendor = db.Column(db.String(255), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    description = db.Column(db.Text, nullable=True)
    date_spent = db.Column(db.Date, nullable=False)
    status = db.Column(db.Enum(ExpenseStatus, name="expense_status"), nullable=False, default=ExpenseStatus.DRAFT)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    company = db.relationship("Company", lazy="joined")
    submitter = db.relationship("User", lazy="joined")
    category = db.relationship("Category", lazy="joined")
    approval_requests = db.relationship(
        "ApprovalRequest",
        back_populates="expense",
        lazy="select",
        order_by="ApprovalRequest.cycle",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "submitter_user_id": self.submitter_user_id,
            "category_id": self.category_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "vendor": self.vendor,
            "payment_method": self.payment_method,
            "description": self.description,
            "date_spent": self.date_spent.isoformat() if self.date_spent else None,
            "status": self.status.value if self.status else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Expense id={self.id} status={self.status.value if self.status else None}>"
