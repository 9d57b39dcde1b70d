"""initial_schema

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-12 09:14:52.418203+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7e40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. departments (manager_id FK added after users)
    op.create_table('departments',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('code', sa.String(length=50), nullable=False),
    sa.Column('manager_id', sa.UUID(), nullable=True),
    sa.Column('parent_department_id', sa.UUID(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['parent_department_id'], ['departments.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('code', name='uq_department_code')
    )

    # 2. users
    op.create_table('users',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('password_hash', sa.String(length=255), nullable=True),
    sa.Column('first_name', sa.String(length=100), nullable=True),
    sa.Column('last_name', sa.String(length=100), nullable=True),
    sa.Column('role', sa.String(length=50), nullable=False),
    sa.Column('department_id', sa.UUID(), nullable=True),
    sa.Column('supervisor_id', sa.UUID(), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('last_login_at', sa.DateTime(), nullable=True),
    sa.Column('deleted_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['department_id'], ['departments.id'], ),
    sa.ForeignKeyConstraint(['supervisor_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email')
    )
    op.create_index('idx_users_email', 'users', ['email'], unique=False)
    op.create_index('idx_users_role', 'users', ['role'], unique=False)
    op.create_index('idx_users_department', 'users', ['department_id'], unique=False)

    # 3. Deferred FK: departments.manager_id -> users.id
    op.create_foreign_key(
        'fk_departments_manager_id', 'departments', 'users',
        ['manager_id'], ['id']
    )

    # 4. budget codes and their ledger
    op.create_table('budget_codes',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('code', sa.String(length=50), nullable=False),
    sa.Column('name', sa.String(length=100), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('department_id', sa.UUID(), nullable=True),
    sa.Column('budget_type', sa.String(length=20), nullable=False),
    sa.Column('budget_period', sa.String(length=20), nullable=False),
    sa.Column('fiscal_year', sa.Integer(), nullable=False),
    sa.Column('budget_owner', sa.String(length=200), nullable=True),
    sa.Column('total_cents', sa.BigInteger(), nullable=False),
    sa.Column('used_cents', sa.BigInteger(), nullable=False),
    sa.Column('active', sa.Boolean(), nullable=False),
    sa.Column('start_date', sa.Date(), nullable=True),
    sa.Column('end_date', sa.Date(), nullable=True),
    sa.Column('created_by', sa.UUID(), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('total_cents >= 0', name='chk_budget_code_total'),
    sa.CheckConstraint('used_cents >= 0', name='chk_budget_code_used_nonneg'),
    sa.CheckConstraint('used_cents <= total_cents', name='chk_budget_code_used'),
    sa.CheckConstraint(
        "budget_period IN ('monthly', 'quarterly', 'yearly', 'project')",
        name='chk_budget_code_period',
    ),
    sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    sa.ForeignKeyConstraint(['department_id'], ['departments.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('code', name='uq_budget_code')
    )
    op.create_index('idx_budget_codes_department', 'budget_codes', ['department_id', 'active'], unique=False)

    op.create_table('budget_allocations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('budget_code_id', sa.UUID(), nullable=False),
    sa.Column('request_type', sa.String(length=50), nullable=False),
    sa.Column('request_id', sa.UUID(), nullable=False),
    sa.Column('amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('actual_spent_cents', sa.BigInteger(), nullable=False),
    sa.Column('disbursement_count', sa.Integer(), nullable=False),
    sa.Column('balance_returned_cents', sa.BigInteger(), nullable=False),
    sa.Column('allocated_at', sa.DateTime(), nullable=False),
    sa.Column('first_spent_at', sa.DateTime(), nullable=True),
    sa.Column('last_disbursement_at', sa.DateTime(), nullable=True),
    sa.Column('released_at', sa.DateTime(), nullable=True),
    sa.Column('release_reason', sa.Text(), nullable=True),
    sa.Column('allocated_by', sa.UUID(), nullable=True),
    sa.CheckConstraint('amount_cents > 0', name='chk_allocation_amount_positive'),
    sa.CheckConstraint('actual_spent_cents <= amount_cents', name='chk_allocation_spent'),
    sa.CheckConstraint(
        "status IN ('ALLOCATED', 'SPENT', 'RELEASED')",
        name='chk_allocation_status',
    ),
    sa.ForeignKeyConstraint(['budget_code_id'], ['budget_codes.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_allocations_budget', 'budget_allocations', ['budget_code_id', 'status'], unique=False)
    op.create_index('idx_allocations_request', 'budget_allocations', ['request_id'], unique=False)

    op.create_table('budget_ledger_transactions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('budget_code_id', sa.UUID(), nullable=False),
    sa.Column('allocation_id', sa.UUID(), nullable=True),
    sa.Column('type', sa.String(length=20), nullable=False),
    sa.Column('request_id', sa.UUID(), nullable=False),
    sa.Column('amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('balance_before_cents', sa.BigInteger(), nullable=False),
    sa.Column('balance_after_cents', sa.BigInteger(), nullable=False),
    sa.Column('used_after_cents', sa.BigInteger(), nullable=False),
    sa.Column('disbursement_ref', sa.String(length=100), nullable=True),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint(
        "type IN ('RESERVATION', 'DEDUCTION', 'RETURN', 'RELEASE')",
        name='chk_ledger_txn_type',
    ),
    sa.CheckConstraint('amount_cents > 0', name='chk_ledger_txn_amount'),
    sa.ForeignKeyConstraint(['allocation_id'], ['budget_allocations.id'], ),
    sa.ForeignKeyConstraint(['budget_code_id'], ['budget_codes.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('budget_code_id', 'disbursement_ref', name='uq_ledger_disbursement_ref')
    )
    op.create_index('idx_ledger_txn_budget', 'budget_ledger_transactions', ['budget_code_id', 'created_at'], unique=False)
    op.create_index('idx_ledger_txn_request', 'budget_ledger_transactions', ['request_id'], unique=False)

    op.create_table('budget_revisions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('budget_code_id', sa.UUID(), nullable=False),
    sa.Column('previous_cents', sa.BigInteger(), nullable=False),
    sa.Column('requested_cents', sa.BigInteger(), nullable=False),
    sa.Column('change_cents', sa.BigInteger(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=False),
    sa.Column('requested_by', sa.UUID(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('decided_at', sa.DateTime(), nullable=True),
    sa.Column('applied_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('requested_cents > 0', name='chk_revision_requested'),
    sa.CheckConstraint(
        "status IN ('PENDING', 'APPROVED', 'REJECTED')",
        name='chk_revision_status',
    ),
    sa.ForeignKeyConstraint(['budget_code_id'], ['budget_codes.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_revisions_budget', 'budget_revisions', ['budget_code_id', 'status'], unique=False)

    op.create_table('budget_history',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('budget_code_id', sa.UUID(), nullable=False),
    sa.Column('revision_id', sa.UUID(), nullable=True),
    sa.Column('previous_cents', sa.BigInteger(), nullable=False),
    sa.Column('new_cents', sa.BigInteger(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('changed_by', sa.UUID(), nullable=True),
    sa.Column('changed_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['budget_code_id'], ['budget_codes.id'], ),
    sa.ForeignKeyConstraint(['revision_id'], ['budget_revisions.id'], ),
    sa.PrimaryKeyConstraint('id')
    )

    # 5. approval chains (polymorphic over entity_type)
    op.create_table('approval_steps',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.UUID(), nullable=False),
    sa.Column('level', sa.Integer(), nullable=False),
    sa.Column('stage', sa.String(length=50), nullable=False),
    sa.Column('approver_user_id', sa.UUID(), nullable=True),
    sa.Column('approver_name', sa.String(length=200), nullable=False),
    sa.Column('approver_email', sa.String(length=255), nullable=False),
    sa.Column('approver_role', sa.String(length=100), nullable=False),
    sa.Column('approver_department', sa.String(length=200), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('comments', sa.Text(), nullable=True),
    sa.Column('decided_at', sa.DateTime(), nullable=True),
    sa.Column('decided_by', sa.UUID(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('level > 0', name='chk_approval_level_positive'),
    sa.CheckConstraint(
        "status IN ('PENDING', 'APPROVED', 'REJECTED')",
        name='chk_approval_status',
    ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('entity_type', 'entity_id', 'level', name='uq_approval_step_level')
    )
    op.create_index('idx_approval_steps_entity', 'approval_steps', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_approval_steps_approver', 'approval_steps', ['approver_email', 'status'], unique=False)

    # 6. purchase requisitions
    op.create_table('purchase_requisitions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('requisition_number', sa.String(length=50), nullable=False),
    sa.Column('requester_id', sa.UUID(), nullable=False),
    sa.Column('requester_email', sa.String(length=255), nullable=False),
    sa.Column('department_id', sa.UUID(), nullable=False),
    sa.Column('title', sa.String(length=200), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('justification', sa.Text(), nullable=True),
    sa.Column('urgency', sa.String(length=20), nullable=True),
    sa.Column('status', sa.String(length=50), nullable=False),
    sa.Column('total_cents', sa.BigInteger(), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('budget_code_id', sa.UUID(), nullable=True),
    sa.Column('finance_assigned_cents', sa.BigInteger(), nullable=True),
    sa.Column('finance_cost_center', sa.String(length=100), nullable=True),
    sa.Column('finance_comments', sa.Text(), nullable=True),
    sa.Column('finance_decided_by', sa.UUID(), nullable=True),
    sa.Column('finance_decided_at', sa.DateTime(), nullable=True),
    sa.Column('sourcing_type', sa.String(length=50), nullable=True),
    sa.Column('purchase_type', sa.String(length=50), nullable=True),
    sa.Column('assigned_buyer_id', sa.UUID(), nullable=True),
    sa.Column('buyer_assigned_at', sa.DateTime(), nullable=True),
    sa.Column('supply_chain_comments', sa.Text(), nullable=True),
    sa.Column('supply_chain_decided_by', sa.UUID(), nullable=True),
    sa.Column('supply_chain_decided_at', sa.DateTime(), nullable=True),
    sa.Column('head_comments', sa.Text(), nullable=True),
    sa.Column('head_decided_by', sa.UUID(), nullable=True),
    sa.Column('head_decided_at', sa.DateTime(), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('submitted_at', sa.DateTime(), nullable=True),
    sa.Column('approved_at', sa.DateTime(), nullable=True),
    sa.Column('rejected_at', sa.DateTime(), nullable=True),
    sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    sa.Column('deleted_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('total_cents >= 0', name='chk_pr_total'),
    sa.ForeignKeyConstraint(['assigned_buyer_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['budget_code_id'], ['budget_codes.id'], ),
    sa.ForeignKeyConstraint(['department_id'], ['departments.id'], ),
    sa.ForeignKeyConstraint(['requester_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('requisition_number')
    )
    op.create_index('idx_pr_status', 'purchase_requisitions', ['status'], unique=False)
    op.create_index('idx_pr_requester', 'purchase_requisitions', ['requester_id'], unique=False)
    op.create_index('idx_pr_department', 'purchase_requisitions', ['department_id'], unique=False)

    op.create_table('pr_line_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('pr_id', sa.UUID(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('description', sa.Text(), nullable=False),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('measuring_unit', sa.String(length=50), nullable=True),
    sa.Column('category', sa.String(length=50), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('quantity > 0', name='chk_pr_line_qty'),
    sa.CheckConstraint('unit_price_cents > 0', name='chk_pr_line_price'),
    sa.ForeignKeyConstraint(['pr_id'], ['purchase_requisitions.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pr_id', 'line_number', name='uq_pr_line_item')
    )
    op.create_index('idx_pr_items_pr', 'pr_line_items', ['pr_id'], unique=False)

    # 7. project plans
    op.create_table('project_plans',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('plan_number', sa.String(length=50), nullable=False),
    sa.Column('requester_id', sa.UUID(), nullable=False),
    sa.Column('requester_email', sa.String(length=255), nullable=False),
    sa.Column('department_id', sa.UUID(), nullable=False),
    sa.Column('title', sa.String(length=200), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('estimated_cost_cents', sa.BigInteger(), nullable=False),
    sa.Column('start_date', sa.Date(), nullable=True),
    sa.Column('end_date', sa.Date(), nullable=True),
    sa.Column('status', sa.String(length=50), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('submitted_at', sa.DateTime(), nullable=True),
    sa.Column('approved_at', sa.DateTime(), nullable=True),
    sa.Column('rejected_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('estimated_cost_cents >= 0', name='chk_project_plan_cost'),
    sa.ForeignKeyConstraint(['department_id'], ['departments.id'], ),
    sa.ForeignKeyConstraint(['requester_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('plan_number')
    )
    op.create_index('idx_project_plans_status', 'project_plans', ['status'], unique=False)
    op.create_index('idx_project_plans_requester', 'project_plans', ['requester_id'], unique=False)

    # 8. audit log
    op.create_table('audit_logs',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('actor_email', sa.String(length=255), nullable=True),
    sa.Column('action', sa.String(length=100), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.UUID(), nullable=False),
    sa.Column('before_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('after_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('changed_fields', postgresql.ARRAY(sa.Text()), nullable=True),
    sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['actor_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_audit_actor', 'audit_logs', ['actor_id'], unique=False)
    op.create_index('idx_audit_created', 'audit_logs', [sa.text('created_at DESC')], unique=False)


def downgrade() -> None:
    op.drop_index('idx_audit_created', table_name='audit_logs')
    op.drop_index('idx_audit_actor', table_name='audit_logs')
    op.drop_index('idx_audit_entity', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('idx_project_plans_requester', table_name='project_plans')
    op.drop_index('idx_project_plans_status', table_name='project_plans')
    op.drop_table('project_plans')
    op.drop_index('idx_pr_items_pr', table_name='pr_line_items')
    op.drop_table('pr_line_items')
    op.drop_index('idx_pr_department', table_name='purchase_requisitions')
    op.drop_index('idx_pr_requester', table_name='purchase_requisitions')
    op.drop_index('idx_pr_status', table_name='purchase_requisitions')
    op.drop_table('purchase_requisitions')
    op.drop_index('idx_approval_steps_approver', table_name='approval_steps')
    op.drop_index('idx_approval_steps_entity', table_name='approval_steps')
    op.drop_table('approval_steps')
    op.drop_table('budget_history')
    op.drop_index('idx_revisions_budget', table_name='budget_revisions')
    op.drop_table('budget_revisions')
    op.drop_index('idx_ledger_txn_request', table_name='budget_ledger_transactions')
    op.drop_index('idx_ledger_txn_budget', table_name='budget_ledger_transactions')
    op.drop_table('budget_ledger_transactions')
    op.drop_index('idx_allocations_request', table_name='budget_allocations')
    op.drop_index('idx_allocations_budget', table_name='budget_allocations')
    op.drop_table('budget_allocations')
    op.drop_index('idx_budget_codes_department', table_name='budget_codes')
    op.drop_table('budget_codes')
    op.drop_constraint('fk_departments_manager_id', 'departments', type_='foreignkey')
    op.drop_index('idx_users_department', table_name='users')
    op.drop_index('idx_users_role', table_name='users')
    op.drop_index('idx_users_email', table_name='users')
    op.drop_table('users')
    op.drop_table('departments')
