"""Create signing tables

Revision ID: 20261018_001_create_signing_tables
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_001_create_signing_tables'
down_revision = None
branch_labels = None
depends_on = None

TEMPLATE_STATUS = sa.Enum('DRAFT', 'REVIEW', 'APPROVED', 'ACTIVE', 'DEPRECATED', 'ARCHIVED', name='templatestatus')
TEMPLATE_CATEGORY = sa.Enum(
    'INVESTMENT_AGREEMENT', 'SERVICE_AGREEMENT', 'PRIVACY_POLICY', 'TERMS_OF_SERVICE', 'NDA', 'CUSTOM',
    name='templatecategory',
)
CONTRACT_STATUS = sa.Enum(
    'DRAFT', 'SENT', 'PARTIALLY_SIGNED', 'FULLY_SIGNED', 'COMPLETED', 'DECLINED', 'EXPIRED', 'VOIDED',
    name='contractstatus',
)
INTEGRATION_PROVIDER = sa.Enum('NATIVE', 'DOCUSIGN', 'ADOBE_SIGN', 'DROPBOX_SIGN', name='integrationprovider')
SIGNER_STATUS = sa.Enum('PENDING', 'SENT', 'OPENED', 'SIGNED', 'DECLINED', 'EXPIRED', name='signerstatus')
SIGNER_TYPE = sa.Enum('SUBSCRIBER', 'ADMIN', 'THIRD_PARTY', name='signertype')
EVENT_STATUS = sa.Enum('PENDING', 'DISPATCHED', 'FAILED', name='eventstatus')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table('contract_templates',
        sa.Column('id', sa.String(length=120), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('family_id', sa.String(length=80), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', TEMPLATE_CATEGORY, nullable=False),
        sa.Column('locale', sa.String(length=16), nullable=False),
        sa.Column('version', sa.String(length=20), nullable=False),
        sa.Column('previous_version_id', sa.String(length=120), nullable=True),
        sa.Column('status', TEMPLATE_STATUS, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_html', sa.Text(), nullable=True),
        sa.Column('variables', sa.JSON(), nullable=False),
        sa.Column('applicable_plans', sa.JSON(), nullable=False),
        sa.Column('applicable_regions', sa.JSON(), nullable=False),
        sa.Column('signing_requirements', sa.JSON(), nullable=False),
        sa.Column('legal', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('created_by_name', sa.String(length=255), nullable=True),
        sa.Column('last_modified_by', sa.String(length=64), nullable=True),
        sa.Column('last_modified_by_name', sa.String(length=255), nullable=True),
        sa.Column('last_modified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_by_name', sa.String(length=255), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approval_notes', sa.Text(), nullable=True),
        sa.Column('published_by', sa.String(length=64), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('times_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_signed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_declined', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_expired', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('average_signing_minutes', sa.Float(), nullable=False, server_default='0'),
        sa.Column('conversion_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f('ix_contract_templates_family_id'), 'contract_templates', ['family_id'], unique=False)

    op.create_table('signed_contracts',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('template_id', sa.String(length=120), nullable=False),
        sa.Column('template_version', sa.String(length=20), nullable=False),
        sa.Column('subscriber_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('language', sa.String(length=16), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', CONTRACT_STATUS, nullable=False),
        sa.Column('content_original', sa.Text(), nullable=False),
        sa.Column('content_html', sa.Text(), nullable=True),
        sa.Column('content_final', sa.Text(), nullable=True),
        sa.Column('placeholder_values', sa.JSON(), nullable=False),
        sa.Column('signing_requirements', sa.JSON(), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('first_opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_hash', sa.String(length=128), nullable=False),
        sa.Column('final_hash', sa.String(length=128), nullable=True),
        sa.Column('hash_algorithm', sa.String(length=16), nullable=False),
        sa.Column('max_views', sa.Integer(), nullable=False),
        sa.Column('current_views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('integration_provider', INTEGRATION_PROVIDER, nullable=False),
        sa.Column('external_id', sa.String(length=120), nullable=True),
        sa.Column('external_status', sa.String(length=64), nullable=True),
        sa.Column('webhook_data', sa.JSON(), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('jurisdiction', sa.String(length=120), nullable=True),
        sa.Column('governing_law', sa.String(length=120), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_by_name', sa.String(length=255), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('voided_by', sa.String(length=64), nullable=True),
        sa.Column('voided_by_name', sa.String(length=255), nullable=True),
        sa.Column('custom_fields', sa.JSON(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
    )
    op.create_index(op.f('ix_signed_contracts_template_id'), 'signed_contracts', ['template_id'], unique=False)
    op.create_index(op.f('ix_signed_contracts_subscriber_id'), 'signed_contracts', ['subscriber_id'], unique=False)
    op.create_index(op.f('ix_signed_contracts_status'), 'signed_contracts', ['status'], unique=False)
    op.create_index(op.f('ix_signed_contracts_external_id'), 'signed_contracts', ['external_id'], unique=False)

    op.create_table('contract_signers',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('contract_id', sa.String(length=36), nullable=False),
        sa.Column('signer_id', sa.String(length=64), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signer_type', SIGNER_TYPE, nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.Column('title', sa.String(length=120), nullable=True),
        sa.Column('company', sa.String(length=255), nullable=True),
        sa.Column('status', SIGNER_STATUS, nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('declined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('decline_reason', sa.Text(), nullable=True),
        sa.Column('signing_token_hash', sa.String(length=128), nullable=True),
        sa.Column('evidence', sa.JSON(), nullable=True),
        sa.Column('signature', sa.JSON(), nullable=True),
        sa.Column('consents', sa.JSON(), nullable=False),
        sa.Column('verification', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['contract_id'], ['signed_contracts.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('contract_id', 'signer_id', name='uq_contract_signer'),
    )
    op.create_index(op.f('ix_contract_signers_contract_id'), 'contract_signers', ['contract_id'], unique=False)
    op.create_index(op.f('ix_contract_signers_email'), 'contract_signers', ['email'], unique=False)

    op.create_table('signer_access_log',
        sa.Column('id', sa.Integer(), nullable=False, primary_key=True, autoincrement=True),
        sa.Column('signer_row_id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=60), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(['signer_row_id'], ['contract_signers.id'], ondelete='CASCADE'),
    )
    op.create_index(op.f('ix_signer_access_log_signer_row_id'), 'signer_access_log', ['signer_row_id'], unique=False)

    op.create_table('event_outbox',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        *_timestamps(),
        sa.Column('contract_id', sa.String(length=36), nullable=True),
        sa.Column('kind', sa.String(length=80), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', EVENT_STATUS, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('channel', sa.String(length=40), nullable=False),
    )
    op.create_index(op.f('ix_event_outbox_contract_id'), 'event_outbox', ['contract_id'], unique=False)
    op.create_index('ix_event_outbox_due', 'event_outbox', ['status', 'next_run_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_event_outbox_due', table_name='event_outbox')
    op.drop_index(op.f('ix_event_outbox_contract_id'), table_name='event_outbox')
    op.drop_table('event_outbox')
    op.drop_index(op.f('ix_signer_access_log_signer_row_id'), table_name='signer_access_log')
    op.drop_table('signer_access_log')
    op.drop_index(op.f('ix_contract_signers_email'), table_name='contract_signers')
    op.drop_index(op.f('ix_contract_signers_contract_id'), table_name='contract_signers')
    op.drop_table('contract_signers')
    op.drop_index(op.f('ix_signed_contracts_external_id'), table_name='signed_contracts')
    op.drop_index(op.f('ix_signed_contracts_status'), table_name='signed_contracts')
    op.drop_index(op.f('ix_signed_contracts_subscriber_id'), table_name='signed_contracts')
    op.drop_index(op.f('ix_signed_contracts_template_id'), table_name='signed_contracts')
    op.drop_table('signed_contracts')
    op.drop_index(op.f('ix_contract_templates_family_id'), table_name='contract_templates')
    op.drop_table('contract_templates')

    bind = op.get_bind()
    for enum in (EVENT_STATUS, SIGNER_TYPE, SIGNER_STATUS, INTEGRATION_PROVIDER, CONTRACT_STATUS, TEMPLATE_CATEGORY, TEMPLATE_STATUS):
        enum.drop(bind, checkfirst=True)
