from datetime import timedelta
from decimal import Decimal

import pytest

from approvals import db
from approvals.errors import NotFound, ValidationError
from approvals.models import ApprovalPriority, ApprovalRule, UserRole
from approvals.services import rules
from approvals.services.conditions import ExpenseSnapshot
from approvals.services.rules import Action, ActionType, ApprovalPlan, RuleDefinition

from .conftest import NOW


def snapshot_for(expense):
    return ExpenseSnapshot.from_expense(expense)


class TestActionParsing:
    def test_require_approval_defaults(self):
        action = Action.parse({"type": "require_approval", "approverRoles": ["manager"]})
        assert action.type is ActionType.REQUIRE_APPROVAL
        assert action.approver_roles == (UserRole.MANAGER,)
        assert action.priority is ApprovalPriority.NORMAL
        assert action.required is True
        assert action.sequence is None

    @pytest.mark.parametrize(
        "raw",
        [
            {"type": "approve_everything"},
            {"type": "require_approval"},
            {"type": "require_approval", "approverRoles": ["CEO"]},
            {"type": "require_approval", "approverRoles": ["MANAGER"], "escalationTimeHours": 0},
            {"type": "require_approval", "approverRoles": ["MANAGER"], "escalationTimeHours": 200},
            {"type": "require_approval", "approverRoles": ["MANAGER"], "priority": "CRITICAL"},
            {"type": "require_approval", "approverRoles": ["MANAGER"], "sequence": 0},
            {"type": "require_approval", "approverRoles": ["MANAGER"], "required": "yes"},
            {"type": "notify"},
        ],
    )
    def test_invalid_actions(self, raw):
        with pytest.raises(ValidationError):
            Action.parse(raw)

    def test_auto_approve_needs_no_approvers(self):
        assert Action.parse({"type": "auto_approve"}).type is ActionType.AUTO_APPROVE

    def test_definition_needs_an_action(self):
        with pytest.raises(ValidationError):
            RuleDefinition.parse([], [])


class TestMatch:
    def test_amount_above_threshold_matches(self, manager_rule, make_expense):
        plan = rules.match(snapshot_for(make_expense("6000")), [manager_rule], NOW)
        assert plan is not None
        assert plan.rule_id == manager_rule.id
        assert len(plan.groups) == 1
        assert plan.groups[0].sequence == 1
        assert plan.groups[0].escalation_time_hours == 24
        assert manager_rule.match_count == 1
        assert manager_rule.last_matched_at == NOW

    def test_amount_below_threshold_has_no_match(self, manager_rule, make_expense):
        assert rules.match(snapshot_for(make_expense("3000")), [manager_rule], NOW) is None
        assert manager_rule.match_count == 0

    def test_lowest_priority_number_wins(self, make_rule, make_expense, admin, manager):
        broad = make_rule([], [{"type": "require_approval", "approverRoles": ["ADMIN"]}], priority=20)
        narrow = make_rule(
            [{"field": "amount", "operator": "gt", "value": 1000}],
            [{"type": "require_approval", "approverRoles": ["MANAGER"]}],
            priority=10,
        )
        plan = rules.match(snapshot_for(make_expense("6000")), [broad, narrow], NOW)
        assert plan.rule_id == narrow.id
        assert broad.match_count == 0

    def test_equal_priority_falls_back_to_creation_order(self, make_rule, make_expense, admin, manager):
        newer = make_rule([], [{"type": "require_approval", "approverRoles": ["ADMIN"]}], created_at=NOW)
        older = make_rule(
            [], [{"type": "require_approval", "approverRoles": ["MANAGER"]}], created_at=NOW - timedelta(days=1)
        )
        plan = rules.match(snapshot_for(make_expense()), [newer, older], NOW)
        assert plan.rule_id == older.id

    def test_inactive_rules_are_ignored(self, make_rule, make_expense, manager):
        rule = make_rule([], [{"type": "require_approval", "approverRoles": ["MANAGER"]}], is_active=False)
        assert rules.match(snapshot_for(make_expense()), [rule], NOW) is None

    def test_malformed_rule_never_matches(self, make_rule, make_expense, manager):
        broken = make_rule([{"field": "mood", "operator": "eq", "value": "happy"}],
                           [{"type": "require_approval", "approverRoles": ["MANAGER"]}], priority=1)
        fallback = make_rule([], [{"type": "auto_approve"}], priority=2)
        plan = rules.match(snapshot_for(make_expense()), [broken, fallback], NOW)
        assert plan.rule_id == fallback.id
        assert plan.auto_approve is True

    def test_auto_approve_short_circuits(self, make_rule, make_expense, manager):
        rule = make_rule(
            [],
            [
                {"type": "require_approval", "approverRoles": ["MANAGER"]},
                {"type": "auto_approve", "priority": "LOW"},
            ],
        )
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert plan.auto_approve is True
        assert plan.groups == []


class TestPlanResolution:
    def test_two_step_plan(self, make_rule, make_expense, manager, admin):
        rule = make_rule(
            [],
            [
                {"type": "require_approval", "approverRoles": ["MANAGER"], "priority": "HIGH"},
                {"type": "require_approval", "approverRoles": ["ADMIN"], "escalationTimeHours": 12},
            ],
        )
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert [group.sequence for group in plan.groups] == [1, 2]
        assert [a.user_id for a in plan.groups[0].approvers] == [manager.id]
        assert [a.user_id for a in plan.groups[1].approvers] == [admin.id]
        assert plan.priority is ApprovalPriority.HIGH

    def test_shared_sequence_merges_and_keeps_shortest_deadline(self, make_rule, make_expense, manager, admin):
        rule = make_rule(
            [],
            [
                {"type": "require_approval", "approverRoles": ["MANAGER"], "escalationTimeHours": 48},
                {
                    "type": "require_approval",
                    "approverUsers": [admin.id],
                    "sequence": 1,
                    "required": False,
                    "escalationTimeHours": 8,
                },
            ],
        )
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert len(plan.groups) == 1
        group = plan.groups[0]
        assert group.escalation_time_hours == 8
        assert {(a.user_id, a.required) for a in group.approvers} == {(manager.id, True), (admin.id, False)}

    def test_inactive_and_foreign_users_are_not_approvers(self, make_rule, make_expense, make_user, manager):
        retired = make_user(UserRole.MANAGER, is_active=False)
        rule = make_rule([], [{"type": "require_approval", "approverUsers": [retired.id, 99999, manager.id]}])
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert [a.user_id for a in plan.groups[0].approvers] == [manager.id]

    def test_submitter_is_not_their_own_approver(self, make_rule, make_expense, manager):
        rule = make_rule([], [{"type": "require_approval", "approverRoles": ["MANAGER"]}])
        with pytest.raises(ValidationError):
            rules.match(snapshot_for(make_expense(submitter=manager)), [rule], NOW)

    def test_escalate_and_notify_targets(self, make_rule, make_expense, manager, admin):
        rule = make_rule(
            [],
            [
                {"type": "require_approval", "approverRoles": ["MANAGER"]},
                {"type": "escalate", "approverUsers": [admin.id]},
                {"type": "notify", "approverRoles": ["ADMIN"]},
            ],
        )
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert plan.escalation_user_ids == [admin.id]
        assert plan.notify_user_ids == [admin.id]
        assert len(plan.groups) == 1

    def test_plan_survives_storage(self, make_rule, make_expense, manager, admin):
        rule = make_rule(
            [],
            [
                {"type": "require_approval", "approverRoles": ["MANAGER"], "escalationTimeHours": 24},
                {"type": "require_approval", "approverRoles": ["ADMIN"], "required": False},
            ],
        )
        plan = rules.match(snapshot_for(make_expense()), [rule], NOW)
        assert ApprovalPlan.from_dict(plan.to_dict()) == plan


class TestNoMatchPolicies:
    def test_no_approval_policy_auto_approves(self, make_expense):
        assert rules.no_approval_required(snapshot_for(make_expense("3000"))).auto_approve is True

    def test_default_approver_uses_configured_roles(self, app, make_expense, manager):
        plan = rules.default_approver(snapshot_for(make_expense("3000")))
        assert [a.user_id for a in plan.groups[0].approvers] == [manager.id]

    def test_default_approver_falls_back_to_submitters_manager(self, app, make_expense, employee, manager):
        app.config["APPROVAL_DEFAULT_APPROVER_ROLES"] = []
        plan = rules.default_approver(snapshot_for(make_expense("3000")))
        assert [a.user_id for a in plan.groups[0].approvers] == [manager.id]

    def test_unknown_policy_name(self):
        with pytest.raises(ValueError):
            rules.no_match_policy_from_config("ask_someone")


class TestRuleManagement:
    payload = {
        "name": "Big tickets",
        "priority": 5,
        "conditions": [{"field": "amount", "operator": "gte", "value": 10000}],
        "actions": [{"type": "require_approval", "approverRoles": ["ADMIN"]}],
    }

    def test_create_update_delete(self, company, admin):
        rule = rules.create_rule(company.id, self.payload, created_by=admin.id)
        assert rule.id is not None
        assert rule.created_by == admin.id

        updated = rules.update_rule(rule.id, {"priority": 1, "is_active": False}, company.id)
        assert updated.priority == 1
        assert updated.is_active is False
        assert rules.list_rules(company.id) == []
        assert rules.list_rules(company.id, include_inactive=True) == [updated]

        rules.delete_rule(rule.id, company.id)
        assert db.session.get(ApprovalRule, rule.id) is None

    def test_invalid_definition_is_rejected(self, company):
        with pytest.raises(ValidationError):
            rules.create_rule(company.id, {**self.payload, "actions": [{"type": "require_approval"}]})
        with pytest.raises(ValidationError):
            rules.create_rule(company.id, {**self.payload, "name": "  "})
        assert ApprovalRule.query.count() == 0

    def test_other_companies_rules_are_not_found(self, company):
        rule = rules.create_rule(company.id, self.payload)
        with pytest.raises(NotFound):
            rules.update_rule(rule.id, {"priority": 3}, company_id=company.id + 1)

    def test_strict_mode_rejects_equal_priorities(self, app, company):
        app.config["APPROVAL_REJECT_EQUAL_PRIORITY_RULES"] = True
        rules.create_rule(company.id, self.payload)
        with pytest.raises(ValidationError):
            rules.create_rule(company.id, {**self.payload, "name": "Twin"})
        inactive = rules.create_rule(company.id, {**self.payload, "name": "Parked", "is_active": False})
        with pytest.raises(ValidationError):
            rules.update_rule(inactive.id, {"is_active": True})

    def test_equal_priorities_allowed_by_default(self, company):
        rules.create_rule(company.id, self.payload)
        rules.create_rule(company.id, {**self.payload, "name": "Twin"})
        assert len(rules.list_rules(company.id)) == 2

    def test_default_rules_are_valid_and_seedable(self, company):
        for payload in rules.default_rules():
            RuleDefinition.parse(payload["conditions"], payload["actions"])
        created = rules.seed_default_rules(company.id)
        assert [rule.priority for rule in created] == [10, 20, 30]

    def test_default_rules_route_small_and_large_expenses(self, company, make_expense, manager, admin):
        rules.seed_default_rules(company.id)
        active = rules.active_rules(company.id)

        small = rules.match(snapshot_for(make_expense("80")), active, NOW)
        assert small.auto_approve is True

        large = rules.match(snapshot_for(make_expense("7500")), active, NOW)
        assert [group.sequence for group in large.groups] == [1, 2]
        assert large.priority is ApprovalPriority.URGENT

        middle = rules.match(snapshot_for(make_expense(Decimal("500"))), active, NOW)
        assert middle is None
