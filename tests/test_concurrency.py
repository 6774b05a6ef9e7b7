import threading
from datetime import timedelta

import pytest

from approvals import create_app, db
from approvals.errors import ConflictError, InvalidTransition
from approvals.models import (
    ApprovalHistory,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRule,
    Company,
    EmployeeProfile,
    Expense,
    ExpenseStatus,
    User,
    UserRole,
)
from approvals.services.approval_engine import ApprovalEngine
from approvals.services.history import history_for
from approvals.services.notifications import CompositeNotifier

from .conftest import NOW, RecordingNotifier

TERMINAL = [status for status in ApprovalRequestStatus if status.is_terminal]


@pytest.fixture
def file_app(tmp_path):
    app = create_app("testing", {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'approvals.db'}"})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def scenario(file_app):
    company = Company(name="Parallel Inc", country="Canada", currency_code="CAD")
    db.session.add(company)
    db.session.flush()
    first = User(first_name="Fay", last_name="One", email="fay@parallel.test", role=UserRole.MANAGER,
                 company_id=company.id)
    second = User(first_name="Sam", last_name="Two", email="sam@parallel.test", role=UserRole.MANAGER,
                  company_id=company.id)
    requester = User(first_name="Ray", last_name="Three", email="ray@parallel.test", role=UserRole.EMPLOYEE,
                     company_id=company.id)
    db.session.add_all([first, second, requester])
    db.session.flush()
    db.session.add(EmployeeProfile(user_id=requester.id, manager_id=first.id))
    db.session.add(
        ApprovalRule(
            company_id=company.id,
            name="Two signatures",
            priority=0,
            conditions=[],
            actions=[{"type": "require_approval", "approverUsers": [first.id, second.id]}],
        )
    )
    expense = Expense(company_id=company.id, submitter_user_id=requester.id, amount=900, currency="CAD",
                      date_spent=NOW.date(), status=ExpenseStatus.DRAFT)
    db.session.add(expense)
    db.session.commit()
    return {"first": first.id, "second": second.id, "expense": expense.id}


def run_in_threads(app, *jobs):
    barrier = threading.Barrier(len(jobs))
    outcomes = [None] * len(jobs)

    def worker(index, job):
        with app.app_context():
            barrier.wait()
            try:
                outcomes[index] = job()
            except (InvalidTransition, ConflictError) as exc:
                outcomes[index] = exc
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i, job)) for i, job in enumerate(jobs)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def test_sibling_decisions_produce_one_terminal_entry(file_app, scenario):
    engine = ApprovalEngine(notifier=CompositeNotifier([RecordingNotifier()]))
    approval_request = engine.submit(scenario["expense"], now=NOW)
    tasks = {task.approver_id: task.id for task in approval_request.tasks}
    request_id = approval_request.id

    run_in_threads(
        file_app,
        lambda: engine.decide(tasks[scenario["first"]], "APPROVED", None, scenario["first"], now=NOW),
        lambda: engine.decide(tasks[scenario["second"]], "REJECTED", None, scenario["second"], now=NOW),
    )

    db.session.expire_all()
    approval_request = db.session.get(ApprovalRequest, request_id)
    assert approval_request.status is ApprovalRequestStatus.REJECTED
    terminal_entries = ApprovalHistory.query.filter(
        ApprovalHistory.approval_request_id == request_id,
        ApprovalHistory.to_status.in_(TERMINAL),
    ).count()
    assert terminal_entries == 1
    positions = [entry.position for entry in history_for(request_id)]
    assert positions == list(range(1, len(positions) + 1))


def test_concurrent_submissions_open_one_request(file_app, scenario):
    engine = ApprovalEngine(notifier=CompositeNotifier([RecordingNotifier()]))

    outcomes = run_in_threads(
        file_app,
        lambda: engine.submit(scenario["expense"], now=NOW).id,
        lambda: engine.submit(scenario["expense"], now=NOW).id,
    )

    assert sum(isinstance(outcome, int) for outcome in outcomes) == 1
    assert sum(isinstance(outcome, (ConflictError, InvalidTransition)) for outcome in outcomes) == 1
    db.session.expire_all()
    assert ApprovalRequest.query.filter_by(expense_id=scenario["expense"]).count() == 1


def test_concurrent_ticks_escalate_once(file_app, scenario):
    engine = ApprovalEngine(notifier=CompositeNotifier([RecordingNotifier()]))
    rule = ApprovalRule.query.one()
    rule.actions = [{"type": "require_approval", "approverUsers": [scenario["second"]], "escalationTimeHours": 1}]
    db.session.commit()
    approval_request = engine.submit(scenario["expense"], now=NOW)
    request_id = approval_request.id
    later = NOW + timedelta(hours=2)

    run_in_threads(file_app, lambda: engine.tick(later), lambda: engine.tick(later))

    db.session.expire_all()
    statuses = [entry.action.value for entry in history_for(request_id)]
    assert statuses.count("ESCALATED") == 1
    assert statuses.count("EXPIRED") == 1
