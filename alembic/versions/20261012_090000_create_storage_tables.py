"""Create files, file_chunks and payments tables

Revision ID: 20261012_090000
Revises:
Create Date: 2026-10-12 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261012_090000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the storage tables"""

    op.create_table(
        'files',
        sa.Column('file_id', sa.String(), primary_key=True),
        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('file_hash', sa.String(), nullable=False),
        sa.Column('is_chunked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('chunk_size', sa.Integer(), nullable=True),
        sa.Column('total_chunks', sa.Integer(), nullable=True),
        sa.Column('is_complete', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('blob_certificate', sa.String(), nullable=True),
        sa.Column('blob_key', sa.String(), nullable=True),
        sa.Column('expiry', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payer_address', sa.String(), nullable=True),
        sa.Column('payment_amount', sa.String(), nullable=True),
        sa.Column('payment_tx_hash', sa.String(), nullable=True),
        sa.Column('last_balance_check', sa.DateTime(), nullable=True),
        sa.Column('contract_balance', sa.String(), nullable=True),
        sa.Column('renewal_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_renewed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_files_expiry', 'files', ['expiry'])

    op.create_table(
        'file_chunks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('file_id', sa.String(), sa.ForeignKey('files.file_id'), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('certificate', sa.String(), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False),
        sa.Column('chunk_hash', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('file_id', 'chunk_index', name='uq_file_chunks_file_index'),
        sa.CheckConstraint('chunk_index >= 0', name='ck_file_chunks_index_non_negative'),
    )
    op.create_index('ix_file_chunks_file_id', 'file_chunks', ['file_id'])

    op.create_table(
        'payments',
        sa.Column('tx_hash', sa.String(), primary_key=True),
        sa.Column('file_id', sa.String(), sa.ForeignKey('files.file_id'), nullable=False),
        sa.Column('payer_address', sa.String(), nullable=True),
        sa.Column('amount', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False, server_default='refresh'),
        sa.Column('status', sa.String(), nullable=False, server_default='confirmed'),
        sa.Column('renewal_of', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('file_id', 'renewal_of', name='uq_payments_file_renewal'),
    )
    op.create_index('ix_payments_file_id', 'payments', ['file_id'])


def downgrade() -> None:
    """Drop the storage tables"""
    op.drop_index('ix_payments_file_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_file_chunks_file_id', table_name='file_chunks')
    op.drop_table('file_chunks')
    op.drop_index('ix_files_expiry', table_name='files')
    op.drop_table('files')
