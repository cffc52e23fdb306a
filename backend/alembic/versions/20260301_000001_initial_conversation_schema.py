"""Initial conversation, lead, CRM, notification and outbox schema

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    Creates the full schema:
    - users, properties: tenants and their websites
    - visitors, conversations, messages: chat sessions with per-conversation
      sequence counter and unique (conversation_id, sequence_number)
    - salesforce_settings, salesforce_exports: encrypted CRM credential,
      trigger rules, field mapping, pending OAuth record, export records
    - notification_logs, email/slack notification settings
    - outbox_jobs: durable background work

WHY:
    The unique sequence constraint is the storage-level guarantee behind the
    atomic counter in careassist/services/sequencer.py.

REFERENCES:
    - careassist/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


conversation_status = sa.Enum('pending', 'active', 'closed', name='conversationstatusenum')
sender_type = sa.Enum('visitor', 'agent', name='sendertypeenum')
export_type = sa.Enum(
    'manual', 'auto_escalation', 'auto_conversation_end', 'auto_insurance', 'auto_phone',
    name='exporttypeenum',
)
notification_channel = sa.Enum('email', 'slack', 'in_app', name='notificationchannelenum')
notification_status = sa.Enum('sent', 'failed', 'skipped', name='notificationstatusenum')
crm_connection_status = sa.Enum('connected', 'disconnected', name='crmconnectionstatusenum')
outbox_status = sa.Enum('pending', 'running', 'succeeded', 'failed', name='outboxstatusenum')


def upgrade() -> None:
    # =========================================================================
    # Tenants
    # =========================================================================
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'properties',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # Conversations
    # =========================================================================
    op.create_table(
        'visitors',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('age', sa.String(), nullable=True),
        sa.Column('occupation', sa.String(), nullable=True),
        sa.Column('addiction_history', sa.Text(), nullable=True),
        sa.Column('drug_of_choice', sa.String(), nullable=True),
        sa.Column('treatment_interest', sa.String(), nullable=True),
        sa.Column('insurance_info', sa.String(), nullable=True),
        sa.Column('urgency_level', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('property_id', 'session_id', name='uq_visitor_session'),
    )
    op.create_index('ix_visitors_property_id', 'visitors', ['property_id'])

    op.create_table(
        'conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False),
        sa.Column('visitor_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('visitors.id'), nullable=False),
        sa.Column('status', conversation_status, nullable=False),
        sa.Column('ai_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('assigned_agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('last_sequence_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ai_queued_preview', sa.Text(), nullable=True),
        sa.Column('ai_queued_at', sa.DateTime(), nullable=True),
        sa.Column('ai_queued_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ai_queued_window_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversations_visitor_id', 'conversations', ['visitor_id'])
    op.create_index('ix_conversations_property_updated', 'conversations', ['property_id', 'updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('sender_type', sender_type, nullable=False),
        sa.Column('sender_id', sa.String(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('conversation_id', 'sequence_number', name='uq_message_conversation_sequence'),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])

    # =========================================================================
    # CRM
    # =========================================================================
    op.create_table(
        'salesforce_settings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('connection_status', crm_connection_status, nullable=False, server_default='disconnected'),
        sa.Column('instance_url', sa.String(), nullable=True),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('token_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        sa.Column('auto_export_on_escalation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_export_on_conversation_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_export_on_insurance_detected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_export_on_phone_detected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('field_mappings', postgresql.JSON(), nullable=True),
        sa.Column('pending_oauth_csrf', sa.String(), nullable=True),
        sa.Column('pending_code_verifier', sa.String(), nullable=True),
        sa.Column('pending_oauth_expires_at', sa.DateTime(), nullable=True),
        sa.Column('consumed_oauth_csrf', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'salesforce_exports',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('salesforce_lead_id', sa.String(), nullable=False),
        sa.Column('export_type', export_type, nullable=False),
        sa.Column('exported_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_salesforce_exports_conversation_id', 'salesforce_exports', ['conversation_id'])

    # =========================================================================
    # Notifications
    # =========================================================================
    op.create_table(
        'notification_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=True),
        sa.Column('notification_type', sa.String(), nullable=False),
        sa.Column('channel', notification_channel, nullable=False),
        sa.Column('recipient', sa.String(), nullable=False),
        sa.Column('status', notification_status, nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_notification_logs_property_created', 'notification_logs', ['property_id', 'created_at'])

    op.create_table(
        'email_notification_settings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('recipients', postgresql.JSON(), nullable=True),
        sa.Column('notify_on_new_conversation', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_escalation', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_phone_submission', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'slack_notification_settings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('property_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('properties.id'), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('webhook_url', sa.String(), nullable=True),
        sa.Column('channel_name', sa.String(), nullable=True),
        sa.Column('notify_on_new_conversation', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_escalation', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_phone_submission', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # Outbox
    # =========================================================================
    op.create_table(
        'outbox_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_name', sa.String(), nullable=False),
        sa.Column('payload', postgresql.JSON(), nullable=False),
        sa.Column('status', outbox_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('available_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_outbox_jobs_status_available', 'outbox_jobs', ['status', 'available_at'])


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('outbox_jobs')
    op.drop_table('slack_notification_settings')
    op.drop_table('email_notification_settings')
    op.drop_table('notification_logs')
    op.drop_table('salesforce_exports')
    op.drop_table('salesforce_settings')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('visitors')
    op.drop_table('properties')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (
        outbox_status, crm_connection_status, notification_status,
        notification_channel, export_type, sender_type, conversation_status,
    ):
        enum_type.drop(bind, checkfirst=True)
