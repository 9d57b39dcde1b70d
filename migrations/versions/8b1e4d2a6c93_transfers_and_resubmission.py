"""transfers_and_resubmission

Revision ID: 8b1e4d2a6c93
Revises: 3f2a9c1d7e40
Create Date: 2026-10-18 10:02:37.551904+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '8b1e4d2a6c93'
down_revision: Union[str, None] = '3f2a9c1d7e40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. approval cycles
    op.add_column('approval_steps', sa.Column('cycle', sa.Integer(), server_default='1', nullable=False))
    op.add_column('approval_steps', sa.Column('archived_at', sa.DateTime(), nullable=True))
    op.drop_constraint('uq_approval_step_level', 'approval_steps', type_='unique')
    op.create_unique_constraint(
        'uq_approval_step_level', 'approval_steps', ['entity_type', 'entity_id', 'cycle', 'level']
    )

    # 2. requisition resubmission
    op.add_column('purchase_requisitions', sa.Column('resubmission_count', sa.Integer(), server_default='0', nullable=False))
    op.add_column('purchase_requisitions', sa.Column('last_resubmitted_at', sa.DateTime(), nullable=True))
    op.create_table('pr_rejections',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('pr_id', sa.UUID(), nullable=False),
    sa.Column('cycle', sa.Integer(), nullable=False),
    sa.Column('previous_status', sa.String(length=50), nullable=False),
    sa.Column('level', sa.Integer(), nullable=True),
    sa.Column('stage', sa.String(length=50), nullable=True),
    sa.Column('rejected_by', sa.UUID(), nullable=True),
    sa.Column('rejector_name', sa.String(length=200), nullable=True),
    sa.Column('rejector_role', sa.String(length=100), nullable=True),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('rejected_at', sa.DateTime(), nullable=True),
    sa.Column('resubmitted_by', sa.UUID(), nullable=True),
    sa.Column('resubmitted_at', sa.DateTime(), nullable=False),
    sa.Column('resubmission_notes', sa.Text(), nullable=True),
    sa.ForeignKeyConstraint(['pr_id'], ['purchase_requisitions.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('pr_id', 'cycle', name='uq_pr_rejection_cycle')
    )

    # 3. budget transfers
    op.create_table('budget_transfers',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('from_budget_code_id', sa.UUID(), nullable=False),
    sa.Column('to_budget_code_id', sa.UUID(), nullable=False),
    sa.Column('amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=False),
    sa.Column('requested_by', sa.UUID(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('decided_by', sa.UUID(), nullable=True),
    sa.Column('decided_at', sa.DateTime(), nullable=True),
    sa.Column('rejection_reason', sa.Text(), nullable=True),
    sa.Column('executed_at', sa.DateTime(), nullable=True),
    sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    sa.Column('version_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint('amount_cents > 0', name='chk_transfer_amount_positive'),
    sa.CheckConstraint('from_budget_code_id <> to_budget_code_id', name='chk_transfer_distinct_codes'),
    sa.CheckConstraint("status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED')", name='chk_transfer_status'),
    sa.ForeignKeyConstraint(['from_budget_code_id'], ['budget_codes.id'], ),
    sa.ForeignKeyConstraint(['to_budget_code_id'], ['budget_codes.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_transfers_from', 'budget_transfers', ['from_budget_code_id', 'status'], unique=False)
    op.create_index('idx_transfers_to', 'budget_transfers', ['to_budget_code_id', 'status'], unique=False)
    op.add_column('budget_history', sa.Column('transfer_id', sa.UUID(), nullable=True))
    op.create_foreign_key(
        'budget_history_transfer_id_fkey', 'budget_history', 'budget_transfers',
        ['transfer_id'], ['id'],
    )

    # 4. audit rows record status transitions directly
    op.drop_column('audit_logs', 'before_state')
    op.drop_column('audit_logs', 'after_state')
    op.drop_column('audit_logs', 'changed_fields')
    op.drop_column('audit_logs', 'action')
    op.alter_column('audit_logs', 'metadata', new_column_name='details')
    op.execute("UPDATE audit_logs SET details = '{}'::jsonb WHERE details IS NULL")
    op.alter_column('audit_logs', 'details', nullable=False)
    op.add_column('audit_logs', sa.Column('from_status', sa.String(length=50), nullable=True))
    op.add_column('audit_logs', sa.Column('to_status', sa.String(length=50), server_default='', nullable=False))
    op.add_column('audit_logs', sa.Column('request_id', sa.String(length=64), nullable=True))
    op.alter_column('audit_logs', 'created_at', nullable=False)

    # 5. unused department hierarchy
    op.drop_column('departments', 'parent_department_id')


def downgrade() -> None:
    op.add_column('departments', sa.Column('parent_department_id', sa.UUID(), nullable=True))
    op.create_foreign_key(None, 'departments', 'departments', ['parent_department_id'], ['id'])

    op.alter_column('audit_logs', 'created_at', nullable=True)
    op.drop_column('audit_logs', 'request_id')
    op.drop_column('audit_logs', 'to_status')
    op.drop_column('audit_logs', 'from_status')
    op.alter_column('audit_logs', 'details', nullable=True)
    op.alter_column('audit_logs', 'details', new_column_name='metadata')
    op.add_column('audit_logs', sa.Column('action', sa.String(length=100), server_default='', nullable=False))
    op.add_column('audit_logs', sa.Column('changed_fields', postgresql.ARRAY(sa.Text()), nullable=True))
    op.add_column('audit_logs', sa.Column('after_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True))
    op.add_column('audit_logs', sa.Column('before_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True))

    op.drop_constraint('budget_history_transfer_id_fkey', 'budget_history', type_='foreignkey')
    op.drop_column('budget_history', 'transfer_id')
    op.drop_index('idx_transfers_to', table_name='budget_transfers')
    op.drop_index('idx_transfers_from', table_name='budget_transfers')
    op.drop_table('budget_transfers')

    op.drop_table('pr_rejections')
    op.drop_column('purchase_requisitions', 'last_resubmitted_at')
    op.drop_column('purchase_requisitions', 'resubmission_count')

    op.drop_constraint('uq_approval_step_level', 'approval_steps', type_='unique')
    op.execute("DELETE FROM approval_steps WHERE cycle > 1")
    op.create_unique_constraint(
        'uq_approval_step_level', 'approval_steps', ['entity_type', 'entity_id', 'level']
    )
    op.drop_column('approval_steps', 'archived_at')
    op.drop_column('approval_steps', 'cycle')
