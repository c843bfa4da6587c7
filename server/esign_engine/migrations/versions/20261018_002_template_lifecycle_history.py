"""Add template lifecycle history

Revision ID: 20261018_002_template_lifecycle_history
Revises: 20261018_001_create_signing_tables
Create Date: 2026-10-18 15:30:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_002_template_lifecycle_history'
down_revision = '20261018_001_create_signing_tables'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        'contract_templates',
        sa.Column('lifecycle_history', sa.JSON(), server_default=sa.text("'[]'"), nullable=False),
    )


def downgrade() -> None:
    op.drop_column('contract_templates', 'lifecycle_history')
