"""create_invoices

Revision ID: 4c1e8a2f7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e8a2f7b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'invoices',
        sa.Column('id', sa.TEXT(), nullable=False),
        sa.Column('provider_invoice_id', sa.TEXT(), nullable=True),
        sa.Column('workshop_id', sa.TEXT(), nullable=False),
        sa.Column('workshop_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('participant_id', sa.TEXT(), nullable=False),
        sa.Column('participant_name', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.TEXT(), nullable=True),
        sa.Column('payment_id', sa.TEXT(), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('robokassa_op_key', sa.TEXT(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_invoice_id'),
        # Status only moves pending -> paid | cancelled
        sa.CheckConstraint("status IN ('pending', 'paid', 'cancelled')", name='ck_invoices_status'),
    )
    op.create_index('idx_invoices_participant', 'invoices', ['participant_id'])
    op.create_index('idx_invoices_status', 'invoices', ['status'])


def downgrade() -> None:
    op.drop_index('idx_invoices_status', table_name='invoices')
    op.drop_index('idx_invoices_participant', table_name='invoices')
    op.drop_table('invoices')
