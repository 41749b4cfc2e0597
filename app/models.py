"""SQLAlchemy ORM models and enums.

This module defines the lead, booking and conversion-tracking schema using UUID
primary keys. All timestamps are stored as UTC; display strings for a business
timezone are computed once and stored next to the instant they describe.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Enum,
    Integer,
    ForeignKey,
    Numeric,
    JSON,
    Text,
    Boolean,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class LeadStatusEnum(str, enum.Enum):
    new = "new"
    contacted = "contacted"
    qualified = "qualified"
    closed = "closed"


class LeadGradeEnum(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class ConversionEventTypeEnum(str, enum.Enum):
    lead_created = "lead_created"
    lead_qualified = "lead_qualified"
    booking_created = "booking_created"
    booking_confirmed = "booking_confirmed"
    reminder_sent = "reminder_sent"
    call_completed = "call_completed"


class ConversionProviderEnum(str, enum.Enum):
    google_ads = "google_ads"
    meta_capi = "meta_capi"
    internal = "internal"


class ConversionStatusEnum(str, enum.Enum):
    """Lifecycle: pending -> processing -> sent | failed.

    failed rows are retried while attempts < 3 and retry_after has passed.
    """
    pending = "pending"
    processing = "processing"
    sent = "sent"
    failed = "failed"


class BookingStatusEnum(str, enum.Enum):
    confirmed = "confirmed"
    cancelled = "cancelled"


class CalendarStatusEnum(str, enum.Enum):
    created = "created"
    skipped = "skipped"
    failed = "failed"


class ReminderStatusEnum(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class EmailTypeEnum(str, enum.Enum):
    confirmation = "confirmation"
    reminder = "reminder"


class VerificationStatusEnum(str, enum.Enum):
    pending = "pending"
    verified = "verified"
    expired = "expired"
    failed = "failed"


class SeverityEnum(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


# Leads ---------------------------------------------------------

class Lead(Base):
    """Audit request submitted through the lead form.

    Contact fields are normalized on write (email lower-cased, phone in E.164).
    Score, grade and package are derived from the answers at submission time.
    """
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False, index=True)
    phone_e164 = Column(String, nullable=False)
    phone_country = Column(String, nullable=True)
    phone_calling_code = Column(String, nullable=True)
    whatsapp_same_as_phone = Column(Boolean, nullable=True)
    whatsapp_e164 = Column(String, nullable=True)
    whatsapp_country = Column(String, nullable=True)
    whatsapp_calling_code = Column(String, nullable=True)

    company_name = Column(String, nullable=True)
    website_url = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    industry_other = Column(String, nullable=True)  # Only when industry == "Other"
    country = Column(String, nullable=True)
    city = Column(String, nullable=True)
    location_area = Column(String, nullable=True)

    # Qualification answers
    goal_primary = Column(String, nullable=False)
    budget_currency = Column(String, nullable=False)
    monthly_budget_range = Column(String, nullable=False)
    response_within_5_min = Column(Boolean, nullable=True)
    decision_maker = Column(Boolean, nullable=True)
    timeline = Column(String, nullable=False)

    # Derived at submission
    recommended_package = Column(String, nullable=True)
    lead_score = Column(Integer, nullable=False, default=0)
    lead_grade = Column(Enum(LeadGradeEnum, name="lead_grade"), nullable=True)
    status = Column(Enum(LeadStatusEnum, name="lead_status"), nullable=False, default=LeadStatusEnum.new)

    consent = Column(Boolean, nullable=False, default=False)
    raw_answers = Column(JSON, nullable=True)

    phone_verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    bookings = relationship("Booking", back_populates="lead")

    def __str__(self):
        return f"{self.full_name} <{self.email}>"


class RetrievalToken(Base):
    """Single-use token that lets the thank-you page fetch its lead.

    Only the SHA-256 of the token is stored.
    """
    __tablename__ = "retrieval_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)
    token_hash = Column(String, nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


# Attribution ---------------------------------------------------

class AttributionEvent(Base):
    """Append-only record of marketing parameters seen on an inbound request.

    WHAT: UTM parameters, platform click ids, referrer and landing path
    WHY: Enriches outbound conversions (click ids, landing URL) and keeps an
         audit trail of where each lead came from
    NOTE: ip_hash / ua_hash are SHA-256 digests; raw values are never stored.
    """
    __tablename__ = "attribution_events"
    __table_args__ = (
        Index("ix_attribution_events_lead", "lead_id", "created_at"),
        Index("ix_attribution_events_booking", "booking_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=True)

    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)

    # Platform click identifiers
    gclid = Column(String, nullable=True)
    gbraid = Column(String, nullable=True)
    wbraid = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)

    referrer = Column(Text, nullable=True)
    landing_path = Column(String, nullable=False)

    ip_hash = Column(String, nullable=True)
    ua_hash = Column(String, nullable=True)

    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=True)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=True)

    raw_params = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.session_id} - {self.landing_path} - {self.created_at}"


class ConversionEvent(Base):
    """One unit of work notifying an ad platform of a business event.

    WHAT: Pending/sent/failed record per (entity, event_type, provider)
    WHY: Durable outbox so provider outages never lose a conversion
    INVARIANT: dedupe_key is unique; a row is claimed by one worker per attempt
               via a status-gated conditional update.
    """
    __tablename__ = "conversion_events"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_conversion_events_dedupe_key"),
        Index("ix_conversion_events_status_created", "status", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    event_type = Column(Enum(ConversionEventTypeEnum, name="conversion_event_type"), nullable=False)
    provider = Column(Enum(ConversionProviderEnum, name="conversion_provider"), nullable=False)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=True)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=True)

    dedupe_key = Column(String, nullable=False)

    status = Column(
        Enum(ConversionStatusEnum, name="conversion_status"),
        nullable=False,
        default=ConversionStatusEnum.pending,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    retry_after = Column(DateTime(timezone=True), nullable=True)

    conversion_value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")

    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    provider_response = Column(JSON, nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    external_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.provider} {self.event_type} [{self.status}]"


# Bookings ------------------------------------------------------

class Booking(Base):
    """A confirmed 15-minute consultation slot.

    selected_start/selected_end (UTC) are the only source of truth for time.
    local_start_display is formatted once from them at creation and is what
    every email and page shows.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("selected_start", name="uq_bookings_selected_start"),
        UniqueConstraint("idempotency_key", name="uq_bookings_idempotency_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)

    selected_start = Column(DateTime(timezone=True), nullable=False)
    selected_end = Column(DateTime(timezone=True), nullable=False)
    booking_timezone = Column(String, nullable=False)
    local_start_display = Column(String, nullable=True)

    status = Column(
        Enum(BookingStatusEnum, name="booking_status"),
        nullable=False,
        default=BookingStatusEnum.confirmed,
    )

    # Denormalized from the lead at creation
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)

    # Calendar sync is best-effort
    meet_url = Column(String, nullable=True)
    calendar_event_id = Column(String, nullable=True)
    calendar_status = Column(Enum(CalendarStatusEnum, name="calendar_status"), nullable=True)

    confirmation_sent_at = Column(DateTime(timezone=True), nullable=True)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    idempotency_key = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    lead = relationship("Lead", back_populates="bookings")
    reminder_jobs = relationship("ReminderJob", back_populates="booking")

    def __str__(self):
        return f"{self.customer_name} - {self.local_start_display or self.selected_start}"


class ReminderJob(Base):
    """Scheduled reminder email for a booking (start - 1 hour)."""
    __tablename__ = "reminder_jobs"
    __table_args__ = (
        Index("ix_reminder_jobs_status_scheduled", "status", "scheduled_for"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=False)

    status = Column(
        Enum(ReminderStatusEnum, name="reminder_status"),
        nullable=False,
        default=ReminderStatusEnum.pending,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    booking = relationship("Booking", back_populates="reminder_jobs")

    def __str__(self):
        return f"Reminder {self.booking_id} @ {self.scheduled_for} [{self.status}]"


class EmailSend(Base):
    """Append-only log of transactional emails, used as a send dedupe guard."""
    __tablename__ = "email_sends"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_email_sends_idempotency_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String, nullable=False)
    email_type = Column(Enum(EmailTypeEnum, name="email_type"), nullable=False)
    recipient_email = Column(String, nullable=False)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("bookings.id"), nullable=True)
    provider_message_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


# Phone verification & abuse tracking ---------------------------

class PhoneVerification(Base):
    """OTP challenge for a lead's phone number.

    otp_hash is a bcrypt hash; the code itself is never stored.
    """
    __tablename__ = "phone_verifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id = Column(UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False)
    phone_e164 = Column(String, nullable=False)
    phone_hash = Column(String, nullable=False, index=True)
    otp_hash = Column(String, nullable=False)

    status = Column(
        Enum(VerificationStatusEnum, name="verification_status"),
        nullable=False,
        default=VerificationStatusEnum.pending,
    )
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    provider = Column(String, nullable=True)
    provider_message_id = Column(String, nullable=True)
    ip_hash = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SuspiciousEvent(Base):
    """Abuse signal (rate-limit hits, OTP lockouts, honeypot trips)."""
    __tablename__ = "suspicious_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String, nullable=False)
    severity = Column(Enum(SeverityEnum, name="suspicious_severity"), nullable=False, default=SeverityEnum.low)
    endpoint = Column(String, nullable=True)
    ip_hash = Column(String, nullable=True)
    ua_hash = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.event_type} ({self.severity})"
