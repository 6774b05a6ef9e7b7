"""Create approval workflow tables

Revision ID: 20261019_approval_workflow
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_approval_workflow'
down_revision = None
branch_labels = None
depends_on = None

USER_ROLE = sa.Enum('ADMIN', 'MANAGER', 'EMPLOYEE', name='user_role')
EXPENSE_STATUS = sa.Enum('DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'REJECTED', 'PAID', name='expense_status')
REQUEST_STATUS = sa.Enum('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED', 'EXPIRED', name='approval_request_status')
PRIORITY = sa.Enum('LOW', 'NORMAL', 'HIGH', 'URGENT', name='approval_priority')
TASK_STATUS = sa.Enum('PENDING', 'COMPLETED', 'SKIPPED', 'EXPIRED', name='approval_task_status')
DECISION = sa.Enum('APPROVED', 'REJECTED', 'RETURNED', name='approval_decision')
HISTORY_ACTOR = sa.Enum('USER', 'SYSTEM', name='approval_history_actor')
HISTORY_ACTION = sa.Enum(
    'SUBMITTED', 'APPROVED', 'REJECTED', 'RETURNED', 'CANCELLED', 'ESCALATED', 'DELEGATED', 'EXPIRED',
    name='approval_history_action',
)


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = inspector.get_table_names()

    if 'companies' not in tables:
        op.create_table(
            'companies',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False, unique=True),
            sa.Column('country', sa.String(length=120), nullable=False),
            sa.Column('currency_code', sa.String(length=10), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )

    if 'users' not in tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('first_name', sa.String(length=100), nullable=False),
            sa.Column('last_name', sa.String(length=100), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False, unique=True),
            sa.Column('role', USER_ROLE, nullable=False),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_users_email', 'users', ['email'])
        op.create_index('ix_users_company_id', 'users', ['company_id'])

    if 'employee_profiles' not in tables:
        op.create_table(
            'employee_profiles',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
            sa.Column('manager_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        )

    if 'categories' not in tables:
        op.create_table(
            'categories',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=120), nullable=False),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_categories_company_id', 'categories', ['company_id'])

    if 'expenses' not in tables:
        op.create_table(
            'expenses',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('submitter_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('category_id', sa.Integer(), sa.ForeignKey('categories.id'), nullable=True),
            sa.Column('amount', sa.Numeric(15, 2), nullable=False),
            sa.Column('currency', sa.String(length=10), nullable=False),
            sa.Column('vendor', sa.String(length=255), nullable=True),
            sa.Column('payment_method', sa.String(length=50), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('date_spent', sa.Date(), nullable=False),
            sa.Column('status', EXPENSE_STATUS, nullable=False),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_expenses_company_id', 'expenses', ['company_id'])
        op.create_index('ix_expenses_submitter_user_id', 'expenses', ['submitter_user_id'])

    if 'approval_rules' not in tables:
        op.create_table(
            'approval_rules',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('conditions', sa.JSON(), nullable=False),
            sa.Column('actions', sa.JSON(), nullable=False),
            sa.Column('match_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_matched_at', sa.DateTime(), nullable=True),
            sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_approval_rules_company_id', 'approval_rules', ['company_id'])

    if 'approval_requests' not in tables:
        op.create_table(
            'approval_requests',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('expense_id', sa.Integer(), sa.ForeignKey('expenses.id'), nullable=False),
            sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column(
                'rule_id', sa.Integer(), sa.ForeignKey('approval_rules.id', ondelete='SET NULL'), nullable=True
            ),
            sa.Column('cycle', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('status', REQUEST_STATUS, nullable=False),
            sa.Column('priority', PRIORITY, nullable=False),
            sa.Column('due_date', sa.DateTime(), nullable=True),
            sa.Column('submitted_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('total_amount', sa.Numeric(15, 2), nullable=False),
            sa.Column('currency', sa.String(length=10), nullable=False),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('plan', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_approval_requests_company_id', 'approval_requests', ['company_id'])
        op.create_index('ix_approval_requests_expense_id', 'approval_requests', ['expense_id'])
        op.create_index('ix_approval_requests_requester_id', 'approval_requests', ['requester_id'])
        op.create_index('ix_approval_requests_status', 'approval_requests', ['status'])
        op.create_index('ix_approval_requests_due_date', 'approval_requests', ['due_date'])

    if 'approval_tasks' not in tables:
        op.create_table(
            'approval_tasks',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column(
                'approval_request_id', sa.Integer(), sa.ForeignKey('approval_requests.id'), nullable=False
            ),
            sa.Column('approver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('status', TASK_STATUS, nullable=False),
            sa.Column('decision', DECISION, nullable=True),
            sa.Column('comments', sa.Text(), nullable=True),
            sa.Column('decided_at', sa.DateTime(), nullable=True),
            sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('delegated_from', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('escalated_from', sa.Integer(), sa.ForeignKey('approval_tasks.id'), nullable=True),
            sa.Column('due_date', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint(
                'approval_request_id', 'approver_id', 'sequence', name='uq_approval_task_request_approver_sequence'
            ),
        )
        op.create_index('ix_approval_tasks_approval_request_id', 'approval_tasks', ['approval_request_id'])
        op.create_index('ix_approval_tasks_approver_id', 'approval_tasks', ['approver_id'])
        op.create_index('ix_approval_tasks_status', 'approval_tasks', ['status'])
        op.create_index('ix_approval_tasks_due_date', 'approval_tasks', ['due_date'])

    if 'approval_history' not in tables:
        op.create_table(
            'approval_history',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column(
                'approval_request_id', sa.Integer(), sa.ForeignKey('approval_requests.id'), nullable=False
            ),
            sa.Column('position', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('actor', HISTORY_ACTOR, nullable=False),
            sa.Column('action', HISTORY_ACTION, nullable=False),
            sa.Column('from_status', REQUEST_STATUS, nullable=True),
            sa.Column('to_status', REQUEST_STATUS, nullable=True),
            sa.Column('comments', sa.Text(), nullable=True),
            sa.Column('extra_data', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('approval_request_id', 'position', name='uq_approval_history_position'),
        )
        op.create_index('ix_approval_history_approval_request_id', 'approval_history', ['approval_request_id'])

    if 'approval_delegates' not in tables:
        op.create_table(
            'approval_delegates',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
            sa.Column('delegator_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('delegate_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('amount_limit', sa.Numeric(15, 2), nullable=True),
            sa.Column('category_ids', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_approval_delegates_company_id', 'approval_delegates', ['company_id'])
        op.create_index('ix_approval_delegates_delegator_id', 'approval_delegates', ['delegator_id'])


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = inspector.get_table_names()

    for table in (
        'approval_delegates',
        'approval_history',
        'approval_tasks',
        'approval_requests',
        'approval_rules',
        'expenses',
        'categories',
        'employee_profiles',
        'users',
        'companies',
    ):
        if table in tables:
            op.drop_table(table)
