"""Delegate substitution for approvers who are away."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import or_

from approvals import db
from approvals.errors import NotFound, ValidationError
from approvals.models import ApprovalDelegate, User
from approvals.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationContext:
    company_id: int
    requester_id: Optional[int]
    total_amount: Decimal
    category_id: Optional[int] = None

    @classmethod
    def for_request(cls, approval_request) -> "DelegationContext":
        expense = approval_request.expense
        return cls(
            company_id=approval_request.company_id,
            requester_id=approval_request.requester_id,
            total_amount=Decimal(str(approval_request.total_amount)),
            category_id=expense.category_id if expense is not None else None,
        )


def find_delegation(nominal_approver_id: int, context: DelegationContext, now=None) -> Optional[ApprovalDelegate]:
    """Return the delegation that applies to this approver and expense, if any.

    Only one hop is followed. When several delegations qualify the most
    recently created one wins.
    """
    now = now or utcnow()
    candidates = (
        ApprovalDelegate.query.filter(
            ApprovalDelegate.delegator_id == nominal_approver_id,
            ApprovalDelegate.company_id == context.company_id,
            ApprovalDelegate.is_active.is_(True),
            ApprovalDelegate.start_date <= now,
            or_(ApprovalDelegate.end_date.is_(None), ApprovalDelegate.end_date > now),
        )
        .order_by(ApprovalDelegate.created_at.desc(), ApprovalDelegate.id.desc())
        .all()
    )
    for delegation in candidates:
        if delegation.delegate_id == context.requester_id:
            continue
        if delegation.amount_limit is not None and Decimal(str(delegation.amount_limit)) < context.total_amount:
            continue
        if delegation.category_ids and context.category_id not in delegation.category_ids:
            continue
        delegate = delegation.delegate
        if delegate is None or not delegate.is_active:
            continue
        return delegation
    return None


def resolve_approver(nominal_approver_id: int, context: DelegationContext, now=None) -> int:
    delegation = find_delegation(nominal_approver_id, context, now)
    if delegation is None:
        return nominal_approver_id
    logger.info(f"Approver {nominal_approver_id} delegated to {delegation.delegate_id}")
    return delegation.delegate_id


def create_delegate(
    company_id: int,
    delegator_id: int,
    delegate_id: int,
    start_date=None,
    end_date=None,
    reason: Optional[str] = None,
    amount_limit=None,
    category_ids: Optional[Sequence[int]] = None,
) -> ApprovalDelegate:
    if delegator_id == delegate_id:
        raise ValidationError("A user cannot delegate to themselves.")
    start_date = start_date or utcnow()
    if end_date is not None and end_date <= start_date:
        raise ValidationError("Delegation end date must be after its start date.")
    if amount_limit is not None and Decimal(str(amount_limit)) <= 0:
        raise ValidationError("Amount limit must be positive.")

    for user_id in (delegator_id, delegate_id):
        user = db.session.get(User, user_id)
        if user is None or user.company_id != company_id:
            raise NotFound("User", user_id)
        if not user.is_active:
            raise ValidationError(f"User {user_id} is not active.", user_id=user_id)

    delegation = ApprovalDelegate(
        company_id=company_id,
        delegator_id=delegator_id,
        delegate_id=delegate_id,
        start_date=start_date,
        end_date=end_date,
        reason=reason,
        amount_limit=amount_limit,
        category_ids=list(category_ids) if category_ids else None,
        created_at=utcnow(),
    )
    db.session.add(delegation)
    db.session.commit()
    logger.info(f"Created delegation {delegation.id}: {delegator_id} -> {delegate_id}")
    return delegation


def deactivate_delegate(delegation_id: int, company_id: Optional[int] = None) -> ApprovalDelegate:
    delegation = db.session.get(ApprovalDelegate, delegation_id)
    if delegation is None or (company_id is not None and delegation.company_id != company_id):
        raise NotFound("Delegation", delegation_id)
    delegation.is_active = False
    db.session.commit()
    logger.info(f"Deactivated delegation {delegation_id}")
    return delegation


def list_delegates(company_id: int, delegator_id: Optional[int] = None,
                   active_only: bool = False) -> List[ApprovalDelegate]:
    query = ApprovalDelegate.query.filter_by(company_id=company_id)
    if delegator_id is not None:
        query = query.filter_by(delegator_id=delegator_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(ApprovalDelegate.created_at.desc(), ApprovalDelegate.id.desc()).all()
