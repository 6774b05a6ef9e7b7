from datetime import timedelta
from decimal import Decimal

import pytest

from approvals import db
from approvals.errors import NotFound, ValidationError
from approvals.models import ApprovalDelegate, HistoryAction, UserRole
from approvals.services import delegation
from approvals.services.delegation import DelegationContext
from approvals.services.history import history_for

from .conftest import NOW


@pytest.fixture
def deputy(make_user):
    return make_user(UserRole.MANAGER, first_name="Dee")


@pytest.fixture
def delegate_factory(company, manager, deputy):
    def _make(**overrides):
        values = dict(
            company_id=company.id,
            delegator_id=manager.id,
            delegate_id=deputy.id,
            start_date=NOW - timedelta(days=1),
            end_date=NOW + timedelta(days=7),
            reason="Annual leave",
        )
        values.update(overrides)
        return delegation.create_delegate(**values)

    return _make


@pytest.fixture
def only_manager_rule(make_rule, manager):
    return make_rule([], [{"type": "require_approval", "approverUsers": [manager.id], "escalationTimeHours": 24}])


def context(company, employee, amount="6000", category_id=None):
    return DelegationContext(
        company_id=company.id, requester_id=employee.id, total_amount=Decimal(amount), category_id=category_id
    )


class TestResolve:
    def test_active_delegation_substitutes(self, company, employee, manager, deputy, delegate_factory):
        delegate_factory()
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == deputy.id

    def test_outside_window(self, company, employee, manager, delegate_factory):
        delegate_factory(start_date=NOW + timedelta(days=1), end_date=NOW + timedelta(days=2))
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == manager.id

    def test_end_date_is_exclusive(self, company, employee, manager, delegate_factory):
        delegate_factory(end_date=NOW)
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == manager.id

    def test_open_ended_delegation(self, company, employee, manager, deputy, delegate_factory):
        delegate_factory(end_date=None)
        later = NOW + timedelta(days=400)
        assert delegation.resolve_approver(manager.id, context(company, employee), later) == deputy.id

    def test_amount_limit(self, company, employee, manager, deputy, delegate_factory):
        delegate_factory(amount_limit=Decimal("10000"))
        assert delegation.resolve_approver(manager.id, context(company, employee, "15000"), NOW) == manager.id
        assert delegation.resolve_approver(manager.id, context(company, employee, "10000"), NOW) == deputy.id

    def test_category_scope(self, company, employee, manager, deputy, category, delegate_factory):
        delegate_factory(category_ids=[category.id])
        assert delegation.resolve_approver(manager.id, context(company, employee, category_id=category.id), NOW) \
            == deputy.id
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == manager.id

    def test_deactivated_delegation(self, company, employee, manager, delegate_factory):
        row = delegate_factory()
        delegation.deactivate_delegate(row.id, company.id)
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == manager.id

    def test_most_recent_delegation_wins(self, company, employee, manager, deputy, make_user, delegate_factory):
        other = make_user(UserRole.MANAGER, first_name="Olly")
        delegate_factory()
        delegate_factory(delegate_id=other.id)
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == other.id

    def test_no_chains(self, company, employee, manager, deputy, admin, delegate_factory):
        delegate_factory()
        delegate_factory(delegator_id=deputy.id, delegate_id=admin.id)
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == deputy.id

    def test_requester_is_never_the_delegate(self, company, employee, manager, delegate_factory):
        delegate_factory(delegate_id=employee.id)
        assert delegation.resolve_approver(manager.id, context(company, employee), NOW) == manager.id


class TestManagement:
    def test_self_delegation_rejected(self, company, manager, delegate_factory):
        with pytest.raises(ValidationError):
            delegate_factory(delegate_id=manager.id)

    def test_end_before_start_rejected(self, delegate_factory):
        with pytest.raises(ValidationError):
            delegate_factory(end_date=NOW - timedelta(days=2))

    def test_foreign_user_rejected(self, delegate_factory):
        with pytest.raises(NotFound):
            delegate_factory(delegate_id=987654)
        assert ApprovalDelegate.query.count() == 0

    def test_list_delegates(self, company, manager, delegate_factory):
        first = delegate_factory()
        second = delegate_factory(reason="Conference")
        delegation.deactivate_delegate(first.id)
        assert delegation.list_delegates(company.id) == [second, first]
        assert delegation.list_delegates(company.id, active_only=True) == [second]
        assert delegation.list_delegates(company.id, delegator_id=manager.id + 1000) == []


class TestTaskCreation:
    def test_delegated_task_and_history(self, engine, only_manager_rule, make_expense, manager, deputy,
                                        delegate_factory):
        row = delegate_factory()
        approval_request = engine.submit(make_expense("6000"), now=NOW)

        task = approval_request.tasks[0]
        assert task.approver_id == deputy.id
        assert task.delegated_from == manager.id
        entries = history_for(approval_request.id)
        assert [entry.action for entry in entries] == [HistoryAction.SUBMITTED, HistoryAction.DELEGATED]
        assert entries[1].extra_data["delegation_id"] == row.id

        engine.decide(task.id, "APPROVED", None, deputy.id, now=NOW)
        assert db.session.get(type(approval_request), approval_request.id).status.value == "APPROVED"

    def test_amount_over_limit_keeps_nominal_approver(self, engine, only_manager_rule, make_expense, manager,
                                                      delegate_factory):
        delegate_factory(amount_limit=Decimal("10000"))
        approval_request = engine.submit(make_expense("15000"), now=NOW)
        task = approval_request.tasks[0]
        assert task.approver_id == manager.id
        assert task.delegated_from is None
        assert [entry.action for entry in history_for(approval_request.id)] == [HistoryAction.SUBMITTED]

    def test_delegate_already_in_group_gets_one_task(self, engine, make_rule, make_expense, manager, deputy,
                                                     delegate_factory):
        make_rule([], [{"type": "require_approval", "approverUsers": [manager.id, deputy.id]}])
        delegate_factory()
        approval_request = engine.submit(make_expense(), now=NOW)
        assert [task.approver_id for task in approval_request.tasks] == [deputy.id]

    def test_escalation_target_is_delegated(self, engine, only_manager_rule, make_expense, manager, admin,
                                            deputy, delegate_factory):
        delegate_factory(delegator_id=admin.id)
        approval_request = engine.submit(make_expense(), now=NOW)
        engine.tick(NOW + timedelta(hours=25))
        pending = [task for task in db.session.get(type(approval_request), approval_request.id).tasks
                   if task.is_pending]
        assert [(task.approver_id, task.delegated_from) for task in pending] == [(deputy.id, admin.id)]
