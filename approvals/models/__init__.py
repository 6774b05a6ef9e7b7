"""Application data models exposed for easy imports."""
from approvals import db  # noqa: F401
from .company import Company  # noqa: F401
from .user import User, UserRole, EmployeeProfile  # noqa: F401
from .expense import Category, Expense, ExpenseStatus  # noqa: F401
from .approval import (
    ApprovalDecision,
    ApprovalDelegate,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRule,
    ApprovalTask,
    ApprovalTaskStatus,
)  # noqa: F401
from .audit import ApprovalHistory, AuditLedgerError, HistoryAction, HistoryActor  # noqa: F401

__all__ = [
    "db",
    "Company",
    "User",
    "UserRole",
    "EmployeeProfile",
    "Category",
    "Expense",
    "ExpenseStatus",
    "ApprovalDecision",
    "ApprovalDelegate",
    "ApprovalPriority",
    "ApprovalRequest",
    "ApprovalRequestStatus",
    "ApprovalRule",
    "ApprovalTask",
    "ApprovalTaskStatus",
    "ApprovalHistory",
    "AuditLedgerError",
    "HistoryAction",
    "HistoryActor",
]
