"""``flask approvals ...`` commands for cron jobs and setup."""
from __future__ import annotations

import logging
from datetime import datetime

import click
from flask.cli import AppGroup

from approvals import db
from approvals.models import ApprovalRule, Company
from approvals.services import rules
from approvals.services.approval_engine import approval_engine

logger = logging.getLogger(__name__)

approvals_cli = AppGroup("approvals", help="Approval workflow maintenance.")


@approvals_cli.command("tick")
@click.option("--now", "now", type=click.DateTime(), default=None, help="Evaluate as of this UTC time.")
def tick_command(now: datetime | None) -> None:
    """Escalate overdue tasks and expire overdue requests."""
    result = approval_engine.tick(now)
    click.echo(
        f"escalated={len(result.escalated)} expired={len(result.expired)} failed={len(result.failed)}"
    )
    for failure in result.failed:
        click.echo(f"request {failure['request_id']}: {failure.get('error')}", err=True)
    if result.failed:
        raise SystemExit(1)


@approvals_cli.command("seed-rules")
@click.option("--company-id", type=int, required=True)
@click.option("--force", is_flag=True, help="Seed even if the company already has rules.")
def seed_rules_command(company_id: int, force: bool) -> None:
    """Install the default approval rules for a company."""
    if db.session.get(Company, company_id) is None:
        raise click.ClickException(f"Company {company_id} not found.")
    if not force and ApprovalRule.query.filter_by(company_id=company_id).count():
        click.echo(f"Company {company_id} already has approval rules; use --force to add the defaults anyway.")
        return
    created = rules.seed_default_rules(company_id)
    click.echo(f"Created {len(created)} approval rules for company {company_id}.")
