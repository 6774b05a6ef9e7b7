"""Approval rule definitions, rule matching and approver plan resolution."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from flask import current_app

from approvals import db
from approvals.errors import NotFound, ValidationError
from approvals.models import ApprovalPriority, ApprovalRule, User, UserRole
from approvals.services.conditions import Condition, ExpenseSnapshot, evaluate_all
from approvals.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

MIN_ESCALATION_HOURS = 1
MAX_ESCALATION_HOURS = 168


class ActionType(enum.Enum):
    REQUIRE_APPROVAL = "require_approval"
    AUTO_APPROVE = "auto_approve"
    NOTIFY = "notify"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class Action:
    type: ActionType
    approver_roles: Tuple[UserRole, ...] = ()
    approver_users: Tuple[int, ...] = ()
    escalation_time_hours: Optional[float] = None
    priority: ApprovalPriority = ApprovalPriority.NORMAL
    sequence: Optional[int] = None
    required: bool = True

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "Action":
        if not isinstance(raw, Mapping):
            raise ValidationError("Action must be an object.", action=raw)
        try:
            action_type = ActionType(raw.get("type"))
        except ValueError:
            raise ValidationError(f"Unknown action type '{raw.get('type')}'.", action=dict(raw)) from None

        try:
            roles = tuple(UserRole(str(role).upper()) for role in raw.get("approverRoles") or ())
        except ValueError:
            raise ValidationError("Unknown approver role.", action=dict(raw)) from None
        try:
            users = tuple(int(user_id) for user_id in raw.get("approverUsers") or ())
        except (TypeError, ValueError):
            raise ValidationError("Approver users must be user ids.", action=dict(raw)) from None

        hours = raw.get("escalationTimeHours")
        if hours is not None:
            if isinstance(hours, bool) or not isinstance(hours, (int, float)):
                raise ValidationError("escalationTimeHours must be a number.", action=dict(raw))
            if not MIN_ESCALATION_HOURS <= hours <= MAX_ESCALATION_HOURS:
                raise ValidationError(
                    f"escalationTimeHours must be between {MIN_ESCALATION_HOURS} and {MAX_ESCALATION_HOURS}.",
                    action=dict(raw),
                )

        try:
            priority = ApprovalPriority(str(raw.get("priority") or "NORMAL").upper())
        except ValueError:
            raise ValidationError(f"Unknown priority '{raw.get('priority')}'.", action=dict(raw)) from None

        sequence = raw.get("sequence")
        if sequence is not None and (isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 1):
            raise ValidationError("sequence must be a positive integer.", action=dict(raw))

        required = raw.get("required", True)
        if not isinstance(required, bool):
            raise ValidationError("required must be a boolean.", action=dict(raw))

        if action_type in (ActionType.REQUIRE_APPROVAL, ActionType.NOTIFY, ActionType.ESCALATE) and not (
            roles or users
        ):
            raise ValidationError(
                f"Action '{action_type.value}' requires at least one approver role or user.", action=dict(raw)
            )

        return cls(
            type=action_type,
            approver_roles=roles,
            approver_users=users,
            escalation_time_hours=hours,
            priority=priority,
            sequence=sequence,
            required=required,
        )


@dataclass(frozen=True)
class RuleDefinition:
    conditions: Tuple[Condition, ...]
    actions: Tuple[Action, ...]

    @classmethod
    def parse(cls, conditions: Any, actions: Any) -> "RuleDefinition":
        if not isinstance(conditions, (list, tuple)):
            raise ValidationError("Rule conditions must be a list.")
        if not isinstance(actions, (list, tuple)) or not actions:
            raise ValidationError("At least one action is required.")
        return cls(
            conditions=tuple(Condition.parse(item) for item in conditions),
            actions=tuple(Action.parse(item) for item in actions),
        )

    @classmethod
    def from_rule(cls, rule: ApprovalRule) -> "RuleDefinition":
        return cls.parse(rule.conditions or [], rule.actions or [])

    def matches(self, snapshot: ExpenseSnapshot) -> bool:
        return evaluate_all(self.conditions, snapshot)


@dataclass(frozen=True)
class PlannedApprover:
    user_id: int
    required: bool = True


@dataclass
class ApproverGroup:
    sequence: int
    approvers: List[PlannedApprover]
    escalation_time_hours: Optional[float] = None

    @property
    def has_required(self) -> bool:
        return any(approver.required for approver in self.approvers)


@dataclass
class ApprovalPlan:
    """Concrete approver plan for one expense."""

    groups: List[ApproverGroup] = field(default_factory=list)
    priority: ApprovalPriority = ApprovalPriority.NORMAL
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    auto_approve: bool = False
    escalation_user_ids: List[int] = field(default_factory=list)
    notify_user_ids: List[int] = field(default_factory=list)

    @classmethod
    def auto_approved(cls, rule: Optional[ApprovalRule] = None,
                      priority: ApprovalPriority = ApprovalPriority.NORMAL) -> "ApprovalPlan":
        return cls(
            priority=priority,
            rule_id=rule.id if rule is not None else None,
            rule_name=rule.name if rule is not None else None,
            auto_approve=True,
        )

    @property
    def first_group(self) -> Optional[ApproverGroup]:
        return self.groups[0] if self.groups else None

    def group_after(self, sequence: int) -> Optional[ApproverGroup]:
        later = [group for group in self.groups if group.sequence > sequence]
        return later[0] if later else None

    def group_for(self, sequence: int) -> Optional[ApproverGroup]:
        for group in self.groups:
            if group.sequence == sequence:
                return group
        return None

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "priority": self.priority.value,
            "auto_approve": self.auto_approve,
            "escalation_user_ids": list(self.escalation_user_ids),
            "notify_user_ids": list(self.notify_user_ids),
            "groups": [
                {
                    "sequence": group.sequence,
                    "escalation_time_hours": group.escalation_time_hours,
                    "approvers": [
                        {"user_id": approver.user_id, "required": approver.required}
                        for approver in group.approvers
                    ],
                }
                for group in self.groups
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ApprovalPlan":
        return cls(
            groups=[
                ApproverGroup(
                    sequence=group["sequence"],
                    escalation_time_hours=group.get("escalation_time_hours"),
                    approvers=[
                        PlannedApprover(user_id=item["user_id"], required=item.get("required", True))
                        for item in group.get("approvers", [])
                    ],
                )
                for group in payload.get("groups", [])
            ],
            priority=ApprovalPriority(payload.get("priority", "NORMAL")),
            rule_id=payload.get("rule_id"),
            rule_name=payload.get("rule_name"),
            auto_approve=payload.get("auto_approve", False),
            escalation_user_ids=list(payload.get("escalation_user_ids", [])),
            notify_user_ids=list(payload.get("notify_user_ids", [])),
        )


# Matching -------------------------------------------------------------------


def rule_order_key(rule: ApprovalRule):
    """Lower priority first, then older rules, then lower ids."""
    return (rule.priority, rule.created_at, rule.id or 0)


def select_rule(snapshot: ExpenseSnapshot,
                rules: Iterable[ApprovalRule]) -> Optional[Tuple[ApprovalRule, RuleDefinition]]:
    """Return the first active rule whose conditions all hold for the snapshot."""
    for rule in sorted((rule for rule in rules if rule.is_active), key=rule_order_key):
        try:
            definition = RuleDefinition.from_rule(rule)
        except ValidationError as exc:
            logger.warning(f"Skipping malformed approval rule {rule.id}: {exc.message}")
            continue
        if definition.matches(snapshot):
            return rule, definition
    return None


def match(snapshot: ExpenseSnapshot, rules: Iterable[ApprovalRule], now=None) -> Optional[ApprovalPlan]:
    """Select the governing rule and resolve it into an approval plan.

    Updates the matched rule's ``match_count`` and ``last_matched_at`` in the
    current session; the caller commits them together with the request.
    """
    selected = select_rule(snapshot, rules)
    if selected is None:
        logger.info(f"No approval rule matched expense {snapshot.expense_id}")
        return None

    rule, definition = selected
    plan = resolve_plan(rule, definition, snapshot)
    rule.match_count = (rule.match_count or 0) + 1
    rule.last_matched_at = now or utcnow()
    logger.info(f"Approval rule {rule.id} ({rule.name}) matched expense {snapshot.expense_id}")
    return plan


def resolve_plan(rule: Optional[ApprovalRule], definition: RuleDefinition,
                 snapshot: ExpenseSnapshot) -> ApprovalPlan:
    """Turn rule actions into concrete approver groups for the snapshot's organization."""
    priority = max((action.priority for action in definition.actions), key=lambda item: item.rank)

    if any(action.type is ActionType.AUTO_APPROVE for action in definition.actions):
        return ApprovalPlan.auto_approved(rule, priority)

    groups: Dict[int, ApproverGroup] = {}
    escalation_users: List[int] = []
    notify_users: List[int] = []
    position = 0
    for action in definition.actions:
        if action.type is ActionType.ESCALATE:
            escalation_users.extend(resolve_users(snapshot.company_id, action.approver_roles, action.approver_users))
            continue
        if action.type is ActionType.NOTIFY:
            notify_users.extend(resolve_users(snapshot.company_id, action.approver_roles, action.approver_users))
            continue

        position += 1
        sequence = action.sequence or position
        approver_ids = [
            user_id
            for user_id in resolve_users(snapshot.company_id, action.approver_roles, action.approver_users)
            if user_id != snapshot.submitter_id
        ]
        if not approver_ids:
            raise ValidationError(
                f"No active approvers found for sequence {sequence}.",
                rule_id=rule.id if rule is not None else None,
                sequence=sequence,
            )
        group = groups.setdefault(sequence, ApproverGroup(sequence=sequence, approvers=[]))
        _merge_approvers(group, approver_ids, action.required)
        if action.escalation_time_hours is not None:
            current = group.escalation_time_hours
            group.escalation_time_hours = (
                action.escalation_time_hours if current is None else min(current, action.escalation_time_hours)
            )

    if not groups:
        raise ValidationError(
            "Matched rule defines no approval steps.", rule_id=rule.id if rule is not None else None
        )

    return ApprovalPlan(
        groups=[groups[sequence] for sequence in sorted(groups)],
        priority=priority,
        rule_id=rule.id if rule is not None else None,
        rule_name=rule.name if rule is not None else None,
        escalation_user_ids=_unique(escalation_users),
        notify_user_ids=_unique(notify_users),
    )


def resolve_users(company_id: Optional[int], roles: Sequence[UserRole], user_ids: Sequence[int]) -> List[int]:
    """Active users of the organization holding any of ``roles``, unioned with ``user_ids``."""
    resolved: List[int] = []
    if roles:
        role_users = (
            User.query.filter(
                User.company_id == company_id,
                User.role.in_(list(roles)),
                User.is_active.is_(True),
            )
            .order_by(User.id)
            .all()
        )
        resolved.extend(user.id for user in role_users)
    if user_ids:
        explicit = {
            user.id: user
            for user in User.query.filter(User.id.in_(list(user_ids))).all()
        }
        for user_id in user_ids:
            user = explicit.get(user_id)
            if user is None or not user.is_active or user.company_id != company_id:
                logger.warning(f"Ignoring approver {user_id}: not an active member of company {company_id}")
                continue
            resolved.append(user_id)
    return _unique(resolved)


def _merge_approvers(group: ApproverGroup, approver_ids: Iterable[int], required: bool) -> None:
    by_user = {approver.user_id: approver for approver in group.approvers}
    for user_id in approver_ids:
        existing = by_user.get(user_id)
        if existing is None:
            by_user[user_id] = PlannedApprover(user_id=user_id, required=required)
        elif required and not existing.required:
            by_user[user_id] = PlannedApprover(user_id=user_id, required=True)
    group.approvers = list(by_user.values())


def _unique(values: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


# No-match policies ----------------------------------------------------------

NoMatchPolicy = Callable[[ExpenseSnapshot], ApprovalPlan]


def no_approval_required(snapshot: ExpenseSnapshot) -> ApprovalPlan:
    return ApprovalPlan.auto_approved()


def default_approver(snapshot: ExpenseSnapshot) -> ApprovalPlan:
    """Route unmatched expenses to the configured default roles, or the submitter's manager."""
    roles = [UserRole(role.upper()) for role in current_app.config.get("APPROVAL_DEFAULT_APPROVER_ROLES", [])]
    approver_ids = [
        user_id
        for user_id in resolve_users(snapshot.company_id, roles, [])
        if user_id != snapshot.submitter_id
    ]
    if not approver_ids and snapshot.submitter_id is not None:
        submitter = db.session.get(User, snapshot.submitter_id)
        if submitter is not None and submitter.manager_id:
            approver_ids = [submitter.manager_id]
    if not approver_ids:
        raise ValidationError("No default approver is available for this expense.", expense_id=snapshot.expense_id)
    return ApprovalPlan(
        groups=[ApproverGroup(sequence=1, approvers=[PlannedApprover(user_id) for user_id in approver_ids])],
    )


NO_MATCH_POLICIES: Dict[str, NoMatchPolicy] = {
    "no_approval": no_approval_required,
    "default_approver": default_approver,
}


def no_match_policy_from_config(name: str) -> NoMatchPolicy:
    try:
        return NO_MATCH_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown APPROVAL_NO_MATCH_POLICY '{name}'") from None


# Rule management ------------------------------------------------------------


def active_rules(company_id: int) -> List[ApprovalRule]:
    return list_rules(company_id, include_inactive=False)


def list_rules(company_id: int, include_inactive: bool = False) -> List[ApprovalRule]:
    query = ApprovalRule.query.filter_by(company_id=company_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(ApprovalRule.priority, ApprovalRule.created_at, ApprovalRule.id).all()


def get_rule(rule_id: int, company_id: Optional[int] = None) -> ApprovalRule:
    rule = db.session.get(ApprovalRule, rule_id)
    if rule is None or (company_id is not None and rule.company_id != company_id):
        raise NotFound("Approval rule", rule_id)
    return rule


def create_rule(company_id: int, payload: Mapping[str, Any], created_by: Optional[int] = None) -> ApprovalRule:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("Rule name is required.")
    conditions = payload.get("conditions") or []
    actions = payload.get("actions") or []
    RuleDefinition.parse(conditions, actions)

    priority = _validate_priority(payload.get("priority", 0))
    is_active = bool(payload.get("is_active", True))
    if is_active:
        _check_priority_available(company_id, priority)

    rule = ApprovalRule(
        company_id=company_id,
        name=name,
        description=payload.get("description"),
        is_active=is_active,
        priority=priority,
        conditions=list(conditions),
        actions=list(actions),
        created_by=created_by,
    )
    db.session.add(rule)
    db.session.commit()
    logger.info(f"Created approval rule: {rule.id} - {rule.name}")
    return rule


def update_rule(rule_id: int, updates: Mapping[str, Any], company_id: Optional[int] = None) -> ApprovalRule:
    rule = get_rule(rule_id, company_id)

    conditions = updates.get("conditions", rule.conditions)
    actions = updates.get("actions", rule.actions)
    RuleDefinition.parse(conditions, actions)

    name = rule.name
    if "name" in updates:
        name = (updates.get("name") or "").strip()
        if not name:
            raise ValidationError("Rule name is required.")
    priority = _validate_priority(updates["priority"]) if "priority" in updates else rule.priority
    is_active = bool(updates["is_active"]) if "is_active" in updates else rule.is_active
    if is_active and ("priority" in updates or "is_active" in updates):
        _check_priority_available(rule.company_id, priority, exclude_rule_id=rule.id)

    rule.name = name
    if "description" in updates:
        rule.description = updates["description"]
    rule.priority = priority
    rule.is_active = is_active
    rule.conditions = list(conditions)
    rule.actions = list(actions)

    db.session.commit()
    logger.info(f"Updated approval rule: {rule.id} - {rule.name}")
    return rule


def delete_rule(rule_id: int, company_id: Optional[int] = None) -> None:
    rule = get_rule(rule_id, company_id)
    db.session.delete(rule)
    db.session.commit()
    logger.info(f"Deleted approval rule: {rule_id}")


def _validate_priority(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Rule priority must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Rule priority must be an integer.") from None


def _check_priority_available(company_id: int, priority: int, exclude_rule_id: Optional[int] = None) -> None:
    if not current_app.config.get("APPROVAL_REJECT_EQUAL_PRIORITY_RULES"):
        return
    query = ApprovalRule.query.filter_by(company_id=company_id, priority=priority, is_active=True)
    if exclude_rule_id is not None:
        query = query.filter(ApprovalRule.id != exclude_rule_id)
    clash = query.first()
    if clash is not None:
        raise ValidationError(
            f"Active rule '{clash.name}' already uses priority {priority}.", conflicting_rule_id=clash.id
        )


def default_rules() -> List[Dict[str, Any]]:
    """Starter rule set for a new organization. Lower priority numbers are evaluated first."""
    return [
        {
            "name": "Very High Value Expenses",
            "description": "Expenses above 5,000 require admin approval",
            "is_active": True,
            "priority": 10,
            "conditions": [{"field": "amount", "operator": "gt", "value": 5000}],
            "actions": [
                {
                    "type": "require_approval",
                    "approverRoles": ["MANAGER"],
                    "escalationTimeHours": 24,
                    "priority": "HIGH",
                },
                {
                    "type": "require_approval",
                    "approverRoles": ["ADMIN"],
                    "escalationTimeHours": 12,
                    "priority": "URGENT",
                },
            ],
        },
        {
            "name": "High Value Expenses",
            "description": "Expenses above 1,000 require manager approval",
            "is_active": True,
            "priority": 20,
            "conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
            "actions": [
                {
                    "type": "require_approval",
                    "approverRoles": ["MANAGER"],
                    "escalationTimeHours": 24,
                    "priority": "HIGH",
                }
            ],
        },
        {
            "name": "Auto-approve Small Expenses",
            "description": "Expenses of 100 or less are auto-approved",
            "is_active": True,
            "priority": 30,
            "conditions": [{"field": "amount", "operator": "lte", "value": 100}],
            "actions": [{"type": "auto_approve", "priority": "LOW"}],
        },
    ]


def seed_default_rules(company_id: int, created_by: Optional[int] = None) -> List[ApprovalRule]:
    return [create_rule(company_id, payload, created_by) for payload in default_rules()]
