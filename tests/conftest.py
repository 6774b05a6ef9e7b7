from datetime import date, datetime
from decimal import Decimal

import pytest
from flask import g, has_app_context
from flask_login import FlaskLoginClient

from approvals import create_app, db
from approvals.models import (
    ApprovalRule,
    Category,
    Company,
    EmployeeProfile,
    Expense,
    ExpenseStatus,
    User,
    UserRole,
)
from approvals.services.approval_engine import ApprovalEngine
from approvals.services.notifications import CompositeNotifier

NOW = datetime(2026, 10, 19, 9, 0, 0)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def kinds(self):
        return [event.kind for event in self.events]


class LoginClient(FlaskLoginClient):
    """Drops the user Flask-Login cached in the shared app context before each request."""

    def open(self, *args, **kwargs):
        if has_app_context():
            g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture
def app():
    app = create_app("testing")
    app.test_client_class = LoginClient
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def company(app):
    company = Company(name="Acme Corp", country="United States", currency_code="USD")
    db.session.add(company)
    db.session.commit()
    return company


@pytest.fixture
def make_user(company):
    counter = {"n": 0}

    def _make(role=UserRole.EMPLOYEE, manager=None, first_name=None, company_id=None, is_active=True):
        counter["n"] += 1
        user = User(
            first_name=first_name or f"{role.value.title()}{counter['n']}",
            last_name="Tester",
            email=f"{role.value.lower()}{counter['n']}@acme.test",
            role=role,
            company_id=company_id or company.id,
            is_active=is_active,
        )
        db.session.add(user)
        db.session.flush()
        if manager is not None:
            db.session.add(EmployeeProfile(user_id=user.id, manager_id=manager.id))
        db.session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN, first_name="Ada")


@pytest.fixture
def manager(make_user, admin):
    return make_user(UserRole.MANAGER, manager=admin, first_name="Max")


@pytest.fixture
def employee(make_user, manager):
    return make_user(UserRole.EMPLOYEE, manager=manager, first_name="Eve")


@pytest.fixture
def category(company):
    category = Category(name="Travel", company_id=company.id)
    db.session.add(category)
    db.session.commit()
    return category


@pytest.fixture
def make_expense(company, employee):
    def _make(amount="6000.00", submitter=None, category=None, vendor=None, payment_method=None,
              currency="USD", date_spent=date(2026, 10, 1)):
        expense = Expense(
            company_id=company.id,
            submitter_user_id=(submitter or employee).id,
            category_id=category.id if category is not None else None,
            amount=Decimal(str(amount)),
            currency=currency,
            vendor=vendor,
            payment_method=payment_method,
            date_spent=date_spent,
            status=ExpenseStatus.DRAFT,
        )
        db.session.add(expense)
        db.session.commit()
        return expense

    return _make


@pytest.fixture
def make_rule(company):
    counter = {"n": 0}

    def _make(conditions, actions, priority=0, name=None, is_active=True, created_at=None):
        counter["n"] += 1
        rule = ApprovalRule(
            company_id=company.id,
            name=name or f"Rule {counter['n']}",
            priority=priority,
            is_active=is_active,
            conditions=conditions,
            actions=actions,
        )
        if created_at is not None:
            rule.created_at = created_at
        db.session.add(rule)
        db.session.commit()
        return rule

    return _make


@pytest.fixture
def manager_rule(make_rule):
    """amount > 5000 needs a manager within 24 hours."""
    return make_rule(
        [{"field": "amount", "operator": "gt", "value": 5000}],
        [{"type": "require_approval", "approverRoles": ["MANAGER"], "escalationTimeHours": 24}],
    )


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def engine(app, recorder):
    return ApprovalEngine(notifier=CompositeNotifier([recorder]))
