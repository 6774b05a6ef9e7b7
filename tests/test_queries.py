from datetime import timedelta

import pytest

from approvals.errors import NotFound
from approvals.services import queries

from .conftest import NOW


@pytest.fixture
def tiered_rules(make_rule, manager):
    make_rule(
        [{"field": "amount", "operator": "gt", "value": 10000}],
        [{"type": "require_approval", "approverRoles": ["MANAGER"], "priority": "URGENT"}],
        priority=0,
    )
    make_rule([], [{"type": "require_approval", "approverRoles": ["MANAGER"]}], priority=1)


def test_pending_tasks_most_urgent_first(engine, tiered_rules, make_expense, manager):
    normal = engine.submit(make_expense("6000"), now=NOW)
    urgent = engine.submit(make_expense("20000"), now=NOW + timedelta(hours=1))

    page = queries.pending_tasks(manager.id, page=1, per_page=10)

    assert [task.approval_request_id for task in page.items] == [urgent.id, normal.id]
    assert page.total == 2


def test_pending_tasks_paginate_and_hide_decided(engine, tiered_rules, make_expense, manager):
    first = engine.submit(make_expense("6000"), now=NOW)
    engine.submit(make_expense("7000"), now=NOW + timedelta(minutes=5))
    engine.submit(make_expense("8000"), now=NOW + timedelta(minutes=10))
    engine.decide(first.tasks[0].id, "APPROVED", None, manager.id, now=NOW)

    page = queries.pending_tasks(manager.id, page=1, per_page=1)
    assert page.total == 2
    assert page.pages == 2
    assert len(page.items) == 1
    assert queries.pending_tasks(manager.id, page=5, per_page=1).items == []


def test_approval_stats(engine, tiered_rules, make_expense, manager, company):
    approved = engine.submit(make_expense("6000"), now=NOW)
    rejected = engine.submit(make_expense("20000"), now=NOW)
    engine.submit(make_expense("7000"), now=NOW)
    engine.decide(approved.tasks[0].id, "APPROVED", None, manager.id, now=NOW + timedelta(hours=3))
    engine.decide(rejected.tasks[0].id, "REJECTED", None, manager.id, now=NOW + timedelta(hours=1))

    stats = queries.approval_stats(company.id)

    assert stats["total"] == 3
    assert stats["by_status"]["APPROVED"] == 1
    assert stats["by_status"]["REJECTED"] == 1
    assert stats["by_status"]["PENDING"] == 1
    assert stats["by_status"]["EXPIRED"] == 0
    assert stats["by_priority"] == {"LOW": 0, "NORMAL": 2, "HIGH": 0, "URGENT": 1}
    assert stats["average_approval_hours"] == 3.0


def test_approval_stats_date_range(engine, tiered_rules, make_expense, company):
    engine.submit(make_expense("6000"), now=NOW - timedelta(days=40))
    engine.submit(make_expense("7000"), now=NOW)

    stats = queries.approval_stats(company.id, start=NOW - timedelta(days=1), end=NOW + timedelta(days=1))

    assert stats["total"] == 1
    assert stats["average_approval_hours"] is None


def test_approver_stats(engine, tiered_rules, make_expense, manager):
    first = engine.submit(make_expense("6000"), now=NOW)
    second = engine.submit(make_expense("7000"), now=NOW)
    engine.submit(make_expense("8000"), now=NOW)
    engine.decide(first.tasks[0].id, "APPROVED", None, manager.id, now=NOW + timedelta(hours=2))
    engine.decide(second.tasks[0].id, "RETURNED", None, manager.id, now=NOW + timedelta(hours=4))

    stats = queries.approver_stats(manager.id)

    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["decisions"] == {"APPROVED": 1, "REJECTED": 0, "RETURNED": 1}
    assert stats["average_decision_hours"] == 3.0


def test_request_history_scoped_to_company(engine, tiered_rules, make_expense, company):
    approval_request = engine.submit(make_expense("6000"), now=NOW)
    assert len(queries.request_history(approval_request.id, company.id)) == 1
    with pytest.raises(NotFound):
        queries.request_history(approval_request.id, company.id + 1)
