"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

Creates:
- organizations, profiles, team_invitations
- contacts, conversations, messages, message_templates
- webhook_events, refunds, refund_history, payment_intents, invoices
- row-level security policies on tenant tables, keyed on
  app.current_organization_id (see inboxcore.db.set_tenant_context)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

# Tables isolated per organization by RLS. team_invitations is left out:
# invitations are looked up by token before the user has an organization.
RLS_TABLES = [
    'contacts',
    'conversations',
    'messages',
    'message_templates',
    'refunds',
    'payment_intents',
    'invoices',
]


def _id():
    return sa.Column('id', UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _organization_id():
    return sa.Column('organization_id', UUID(as_uuid=True), nullable=False)


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    # =========================================================================
    # ORGANIZATIONS
    # =========================================================================

    op.create_table(
        'organizations',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('whatsapp_business_account_id', sa.String(100), nullable=True),
        sa.Column('whatsapp_phone_number_id', sa.String(100), nullable=True),
        sa.Column('whatsapp_display_number', sa.String(20), nullable=True),
        sa.Column('whatsapp_access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('webhook_verify_token', sa.String(100), nullable=True),
        sa.Column('stripe_customer_id', sa.String(100), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(100), nullable=True),
        sa.Column('subscription_status', sa.String(20), server_default='trial', nullable=False),
        sa.Column('subscription_tier', sa.String(20), server_default='starter', nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('messages_sent_this_month', sa.Integer(), server_default='0', nullable=False),
        sa.Column('settings', JSONB(), server_default='{}', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_organizations_slug'),
        sa.UniqueConstraint('whatsapp_phone_number_id', name='uq_organizations_phone_number_id'),
        sa.UniqueConstraint('stripe_customer_id', name='uq_organizations_stripe_customer'),
    )
    op.create_index('idx_organizations_subscription', 'organizations', ['subscription_status', 'subscription_tier'])

    # =========================================================================
    # PROFILES
    # =========================================================================

    op.create_table(
        'profiles',
        _id(),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), server_default='agent', nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('email', name='uq_profiles_email'),
    )
    op.create_index('ix_profiles_organization_id', 'profiles', ['organization_id'])
    op.create_index('idx_profiles_org_role', 'profiles', ['organization_id', 'role'])

    # =========================================================================
    # CONTACTS
    # =========================================================================

    op.create_table(
        'contacts',
        _id(),
        _organization_id(),
        sa.Column('whatsapp_id', sa.String(32), nullable=False),
        sa.Column('phone_number', sa.String(32), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('tags', ARRAY(sa.String(50)), server_default='{}', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('opted_out_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSONB(), server_default='{}', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('organization_id', 'whatsapp_id', name='uq_contacts_org_whatsapp_id'),
    )
    op.create_index('ix_contacts_organization_id', 'contacts', ['organization_id'])
    op.create_index('idx_contacts_org_last_message', 'contacts', ['organization_id', 'last_message_at'])
    op.execute('CREATE INDEX idx_contacts_tags ON contacts USING gin (tags)')

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    op.create_table(
        'conversations',
        _id(),
        _organization_id(),
        sa.Column('contact_id', UUID(as_uuid=True), nullable=False),
        sa.Column('assigned_to', UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), server_default='open', nullable=False),
        sa.Column('priority', sa.String(20), server_default='medium', nullable=False),
        sa.Column('subject', sa.String(255), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unread_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('first_response_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['contact_id'], ['contacts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['assigned_to'], ['profiles.id'], ondelete='SET NULL'),
        sa.CheckConstraint(
            "status IN ('open', 'pending', 'resolved', 'closed')", name='ck_conversations_status'
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')", name='ck_conversations_priority'
        ),
    )
    op.create_index('ix_conversations_organization_id', 'conversations', ['organization_id'])
    op.create_index('ix_conversations_contact_id', 'conversations', ['contact_id'])
    op.create_index('ix_conversations_assigned_to', 'conversations', ['assigned_to'])
    op.create_index('idx_conversations_org_status', 'conversations', ['organization_id', 'status'])
    op.create_index('idx_conversations_org_last_message', 'conversations', ['organization_id', 'last_message_at'])

    # =========================================================================
    # MESSAGES
    # =========================================================================

    op.create_table(
        'messages',
        _id(),
        _organization_id(),
        sa.Column('conversation_id', UUID(as_uuid=True), nullable=False),
        sa.Column('whatsapp_message_id', sa.String(128), nullable=True),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('sender_type', sa.String(10), nullable=False),
        sa.Column('sender_id', UUID(as_uuid=True), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('message_type', sa.String(20), server_default='text', nullable=False),
        sa.Column('media_url', sa.Text(), nullable=True),
        sa.Column('media_mime_type', sa.String(100), nullable=True),
        sa.Column('template_name', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('is_read', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_payload', JSONB(), server_default='{}', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('whatsapp_message_id', name='uq_messages_whatsapp_message_id'),
        sa.CheckConstraint("direction IN ('inbound', 'outbound')", name='ck_messages_direction'),
    )
    op.create_index('ix_messages_organization_id', 'messages', ['organization_id'])
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('idx_messages_org_conversation', 'messages', ['organization_id', 'conversation_id', 'created_at'])
    op.create_index('idx_messages_org_direction_created', 'messages', ['organization_id', 'direction', 'created_at'])

    # =========================================================================
    # MESSAGE TEMPLATES
    # =========================================================================

    op.create_table(
        'message_templates',
        _id(),
        _organization_id(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(50), server_default='general', nullable=False),
        sa.Column('language', sa.String(10), server_default='en', nullable=False),
        sa.Column('variables', ARRAY(sa.String(50)), server_default='{}', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('whatsapp_template_name', sa.String(100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by'], ['profiles.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('organization_id', 'name', name='uq_message_templates_org_name'),
    )
    op.create_index('ix_message_templates_organization_id', 'message_templates', ['organization_id'])

    # =========================================================================
    # TEAM INVITATIONS
    # =========================================================================

    op.create_table(
        'team_invitations',
        _id(),
        _organization_id(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), server_default='agent', nullable=False),
        sa.Column('token', sa.String(100), nullable=False),
        sa.Column('invited_by', UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invited_by'], ['profiles.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('token', name='uq_team_invitations_token'),
    )
    op.create_index('ix_team_invitations_organization_id', 'team_invitations', ['organization_id'])
    op.create_index('idx_team_invitations_org_email', 'team_invitations', ['organization_id', 'email'])

    # =========================================================================
    # STRIPE WEBHOOK EVENTS
    # =========================================================================

    op.create_table(
        'webhook_events',
        _id(),
        sa.Column('stripe_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_data', JSONB(), server_default='{}', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_retries', sa.Integer(), server_default='3', nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', JSONB(), nullable=True),
        sa.Column('signature_verified', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('processing_duration_ms', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_event_id', name='uq_webhook_events_stripe_event_id'),
    )
    op.create_index('idx_webhook_events_status', 'webhook_events', ['status', 'received_at'])
    op.create_index('idx_webhook_events_type', 'webhook_events', ['event_type'])

    # =========================================================================
    # REFUNDS
    # =========================================================================

    op.create_table(
        'refunds',
        _id(),
        _organization_id(),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('stripe_refund_id', sa.String(255), nullable=True),
        sa.Column('stripe_charge_id', sa.String(255), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), server_default='usd', nullable=False),
        sa.Column('refund_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('reason_details', sa.Text(), nullable=True),
        sa.Column('cancel_subscription', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('requested_by', UUID(as_uuid=True), nullable=False),
        sa.Column('approved_by', UUID(as_uuid=True), nullable=True),
        sa.Column('processed_by', UUID(as_uuid=True), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('metadata', JSONB(), server_default='{}', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('stripe_refund_id', name='uq_refunds_stripe_refund_id'),
        sa.CheckConstraint('amount_cents > 0', name='ck_refunds_amount_positive'),
    )
    op.create_index('ix_refunds_organization_id', 'refunds', ['organization_id'])
    op.create_index('idx_refunds_org_status', 'refunds', ['organization_id', 'status'])
    op.create_index('idx_refunds_charge', 'refunds', ['stripe_charge_id'])

    op.create_table(
        'refund_history',
        _id(),
        sa.Column('refund_id', UUID(as_uuid=True), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('changed_by', UUID(as_uuid=True), nullable=True),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['refund_id'], ['refunds.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_refund_history_refund_id', 'refund_history', ['refund_id'])

    # =========================================================================
    # PAYMENT INTENTS
    # =========================================================================

    op.create_table(
        'payment_intents',
        _id(),
        _organization_id(),
        sa.Column('stripe_payment_intent_id', sa.String(255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), server_default='usd', nullable=False),
        sa.Column('purpose', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(50), server_default='created', nullable=False),
        sa.Column('authentication_required', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('authentication_status', sa.String(20), nullable=True),
        sa.Column('next_action', JSONB(), nullable=True),
        sa.Column('client_secret', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='3', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('succeeded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSONB(), server_default='{}', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('stripe_payment_intent_id', name='uq_payment_intents_stripe_id'),
        sa.CheckConstraint('amount_cents > 0', name='ck_payment_intents_amount_positive'),
    )
    op.create_index('ix_payment_intents_organization_id', 'payment_intents', ['organization_id'])
    op.create_index('idx_payment_intents_org_status', 'payment_intents', ['organization_id', 'status'])

    # =========================================================================
    # INVOICES
    # =========================================================================

    op.create_table(
        'invoices',
        _id(),
        _organization_id(),
        sa.Column('stripe_invoice_id', sa.String(255), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('amount_due_cents', sa.Integer(), server_default='0', nullable=False),
        sa.Column('amount_paid_cents', sa.Integer(), server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='usd', nullable=False),
        sa.Column('status', sa.String(20), server_default='open', nullable=False),
        sa.Column('billing_reason', sa.String(50), nullable=True),
        sa.Column('hosted_invoice_url', sa.Text(), nullable=True),
        sa.Column('invoice_pdf', sa.Text(), nullable=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('stripe_invoice_id', name='uq_invoices_stripe_invoice_id'),
    )
    op.create_index('ix_invoices_organization_id', 'invoices', ['organization_id'])
    op.create_index('idx_invoices_org_created', 'invoices', ['organization_id', 'created_at'])

    # =========================================================================
    # ROW LEVEL SECURITY
    # =========================================================================

    for table in RLS_TABLES:
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(
            f"""
            CREATE POLICY tenant_isolation ON {table}
            USING (organization_id = NULLIF(current_setting('app.current_organization_id', true), '')::uuid)
            WITH CHECK (organization_id = NULLIF(current_setting('app.current_organization_id', true), '')::uuid)
            """
        )


def downgrade():
    for table in reversed(RLS_TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON {table}')
        op.execute(f'ALTER TABLE {table} DISABLE ROW LEVEL SECURITY')

    op.drop_table('invoices')
    op.drop_table('payment_intents')
    op.drop_table('refund_history')
    op.drop_table('refunds')
    op.drop_table('webhook_events')
    op.drop_table('team_invitations')
    op.drop_table('message_templates')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('contacts')
    op.drop_table('profiles')
    op.drop_table('organizations')
