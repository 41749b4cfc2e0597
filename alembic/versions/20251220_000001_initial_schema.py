"""Initial schema: leads, attribution, conversion outbox, bookings, reminders.

Revision ID: 20251220_000001
Revises:
Create Date: 2025-12-20 09:00:00.000000

WHAT:
    Creates every table used by the API and workers:
    - leads, retrieval_tokens
    - attribution_events
    - conversion_events (outbox, unique dedupe_key)
    - bookings (unique selected_start, unique idempotency_key)
    - reminder_jobs, email_sends (unique idempotency_key)
    - phone_verifications, suspicious_events

WHY:
    Cross-request coordination relies on these constraints: conversion
    dedupe, double-booking backstop, booking replay and once-only emails.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20251220_000001'
down_revision = None
branch_labels = None
depends_on = None


ENUM_TYPES = (
    'lead_grade',
    'lead_status',
    'conversion_event_type',
    'conversion_provider',
    'conversion_status',
    'booking_status',
    'calendar_status',
    'reminder_status',
    'email_type',
    'verification_status',
    'suspicious_severity',
)


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('now()'))


def upgrade() -> None:
    # =========================================================================
    # Leads
    # =========================================================================
    op.create_table(
        'leads',
        _uuid_pk(),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone_e164', sa.String(), nullable=False),
        sa.Column('phone_country', sa.String(), nullable=True),
        sa.Column('phone_calling_code', sa.String(), nullable=True),
        sa.Column('whatsapp_same_as_phone', sa.Boolean(), nullable=True),
        sa.Column('whatsapp_e164', sa.String(), nullable=True),
        sa.Column('whatsapp_country', sa.String(), nullable=True),
        sa.Column('whatsapp_calling_code', sa.String(), nullable=True),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('website_url', sa.String(), nullable=True),
        sa.Column('industry', sa.String(), nullable=True),
        sa.Column('industry_other', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('location_area', sa.String(), nullable=True),
        sa.Column('goal_primary', sa.String(), nullable=False),
        sa.Column('budget_currency', sa.String(), nullable=False),
        sa.Column('monthly_budget_range', sa.String(), nullable=False),
        sa.Column('response_within_5_min', sa.Boolean(), nullable=True),
        sa.Column('decision_maker', sa.Boolean(), nullable=True),
        sa.Column('timeline', sa.String(), nullable=False),
        sa.Column('recommended_package', sa.String(), nullable=True),
        sa.Column('lead_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lead_grade', sa.Enum('A', 'B', 'C', 'D', name='lead_grade'), nullable=True),
        sa.Column('status', sa.Enum('new', 'contacted', 'qualified', 'closed', name='lead_status'),
                  nullable=False, server_default='new'),
        sa.Column('consent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('raw_answers', sa.JSON(), nullable=True),
        sa.Column('phone_verified_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    )
    op.create_index('ix_leads_email', 'leads', ['email'])

    op.create_table(
        'retrieval_tokens',
        _uuid_pk(),
        sa.Column('lead_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('leads.id'), nullable=False),
        sa.Column('token_hash', sa.String(), nullable=False, unique=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    # =========================================================================
    # Bookings
    # =========================================================================
    # Unique selected_start is the database backstop against double booking
    # on the fixed slot grid.
    op.create_table(
        'bookings',
        _uuid_pk(),
        sa.Column('lead_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('leads.id'), nullable=False),
        sa.Column('selected_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('selected_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('booking_timezone', sa.String(), nullable=False),
        sa.Column('local_start_display', sa.String(), nullable=True),
        sa.Column('status', sa.Enum('confirmed', 'cancelled', name='booking_status'),
                  nullable=False, server_default='confirmed'),
        sa.Column('customer_name', sa.String(), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('meet_url', sa.String(), nullable=True),
        sa.Column('calendar_event_id', sa.String(), nullable=True),
        sa.Column('calendar_status', sa.Enum('created', 'skipped', 'failed', name='calendar_status'),
                  nullable=True),
        sa.Column('confirmation_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint('selected_start', name='uq_bookings_selected_start'),
        sa.UniqueConstraint('idempotency_key', name='uq_bookings_idempotency_key'),
    )

    op.create_table(
        'reminder_jobs',
        _uuid_pk(),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.Enum('pending', 'processing', 'completed', 'failed', name='reminder_status'),
                  nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_reminder_jobs_status_scheduled', 'reminder_jobs', ['status', 'scheduled_for'])

    op.create_table(
        'email_sends',
        _uuid_pk(),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('email_type', sa.Enum('confirmation', 'reminder', name='email_type'), nullable=False),
        sa.Column('recipient_email', sa.String(), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id'), nullable=True),
        sa.Column('provider_message_id', sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint('idempotency_key', name='uq_email_sends_idempotency_key'),
    )

    # =========================================================================
    # Attribution + conversion outbox
    # =========================================================================
    op.create_table(
        'attribution_events',
        _uuid_pk(),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('utm_content', sa.String(), nullable=True),
        sa.Column('utm_term', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('gbraid', sa.String(), nullable=True),
        sa.Column('wbraid', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('landing_path', sa.String(), nullable=False),
        sa.Column('ip_hash', sa.String(), nullable=True),
        sa.Column('ua_hash', sa.String(), nullable=True),
        sa.Column('lead_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('leads.id'), nullable=True),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id'), nullable=True),
        sa.Column('raw_params', sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_attribution_events_session_id', 'attribution_events', ['session_id'])
    op.create_index('ix_attribution_events_lead', 'attribution_events', ['lead_id', 'created_at'])
    op.create_index('ix_attribution_events_booking', 'attribution_events', ['booking_id', 'created_at'])

    op.create_table(
        'conversion_events',
        _uuid_pk(),
        sa.Column('event_type', sa.Enum(
            'lead_created', 'lead_qualified', 'booking_created', 'booking_confirmed',
            'reminder_sent', 'call_completed', name='conversion_event_type'), nullable=False),
        sa.Column('provider', sa.Enum('google_ads', 'meta_capi', 'internal', name='conversion_provider'),
                  nullable=False),
        sa.Column('lead_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('leads.id'), nullable=True),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id'), nullable=True),
        sa.Column('dedupe_key', sa.String(), nullable=False),
        sa.Column('status', sa.Enum('pending', 'processing', 'sent', 'failed', name='conversion_status'),
                  nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('conversion_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint('dedupe_key', name='uq_conversion_events_dedupe_key'),
    )
    op.create_index('ix_conversion_events_status_created', 'conversion_events', ['status', 'created_at'])

    # =========================================================================
    # Phone verification + abuse tracking
    # =========================================================================
    op.create_table(
        'phone_verifications',
        _uuid_pk(),
        sa.Column('lead_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('leads.id'), nullable=False),
        sa.Column('phone_e164', sa.String(), nullable=False),
        sa.Column('phone_hash', sa.String(), nullable=False),
        sa.Column('otp_hash', sa.String(), nullable=False),
        sa.Column('status', sa.Enum('pending', 'verified', 'expired', 'failed', name='verification_status'),
                  nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider', sa.String(), nullable=True),
        sa.Column('provider_message_id', sa.String(), nullable=True),
        sa.Column('ip_hash', sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_phone_verifications_phone_hash', 'phone_verifications', ['phone_hash'])

    op.create_table(
        'suspicious_events',
        _uuid_pk(),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('severity', sa.Enum('low', 'medium', 'high', name='suspicious_severity'),
                  nullable=False, server_default='low'),
        sa.Column('endpoint', sa.String(), nullable=True),
        sa.Column('ip_hash', sa.String(), nullable=True),
        sa.Column('ua_hash', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table('suspicious_events')
    op.drop_index('ix_phone_verifications_phone_hash', table_name='phone_verifications')
    op.drop_table('phone_verifications')
    op.drop_index('ix_conversion_events_status_created', table_name='conversion_events')
    op.drop_table('conversion_events')
    op.drop_index('ix_attribution_events_booking', table_name='attribution_events')
    op.drop_index('ix_attribution_events_lead', table_name='attribution_events')
    op.drop_index('ix_attribution_events_session_id', table_name='attribution_events')
    op.drop_table('attribution_events')
    op.drop_table('email_sends')
    op.drop_index('ix_reminder_jobs_status_scheduled', table_name='reminder_jobs')
    op.drop_table('reminder_jobs')
    op.drop_table('bookings')
    op.drop_table('retrieval_tokens')
    op.drop_index('ix_leads_email', table_name='leads')
    op.drop_table('leads')

    for enum_name in ENUM_TYPES:
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
