"""Index payer addresses and store them lower-cased

Revision ID: 20261014_153000
Revises: 20261012_090000
Create Date: 2026-10-14 15:30:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261014_153000'
down_revision = '20261012_090000'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add payer indexes and normalize existing addresses"""

    with op.batch_alter_table('files') as batch_op:
        batch_op.create_index('ix_files_payer_address', ['payer_address'])

    with op.batch_alter_table('payments') as batch_op:
        batch_op.create_index('ix_payments_payer_address', ['payer_address'])

    # Addresses are compared case-insensitively
    connection = op.get_bind()
    for table in ('files', 'payments'):
        connection.execute(sa.text(
            f"UPDATE {table} SET payer_address = lower(payer_address) "
            "WHERE payer_address IS NOT NULL AND payer_address != lower(payer_address)"
        ))


def downgrade() -> None:
    """Remove payer indexes (addresses stay lower-cased)"""

    with op.batch_alter_table('payments') as batch_op:
        batch_op.drop_index('ix_payments_payer_address')

    with op.batch_alter_table('files') as batch_op:
        batch_op.drop_index('ix_files_payer_address')
