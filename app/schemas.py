"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Leads ---------------------------------------------------------

class LeadCreate(BaseModel):
    """Lead form submission.

    Fields are optional at the schema level so that missing or malformed
    answers come back as one {ok: false, error} message from the lead
    service instead of a list of pydantic errors. Unknown keys are kept and
    stored in raw_answers.
    """

    full_name: Optional[str] = Field(default=None, description="Contact full name")
    email: Optional[str] = Field(default=None, description="Contact email")
    phone_e164: Optional[str] = Field(default=None, description="Phone in E.164 (+971501234567)")
    phone_country: Optional[str] = None
    phone_calling_code: Optional[str] = None
    whatsapp_same_as_phone: Optional[bool] = None
    whatsapp_e164: Optional[str] = None
    whatsapp_country: Optional[str] = None
    whatsapp_calling_code: Optional[str] = None

    company_name: Optional[str] = None
    website_url: Optional[str] = None
    industry: Optional[str] = None
    industry_other: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    location_area: Optional[str] = None

    goal_primary: Optional[str] = None
    budget_currency: Optional[str] = Field(default=None, description="AED or USD")
    monthly_budget_range: Optional[str] = Field(default=None, description="Range label, e.g. 2,000-5,000")
    response_within_5_min: Optional[bool] = None
    decision_maker: Optional[bool] = None
    timeline: Optional[str] = Field(default=None, description="immediate, 2weeks, 1month, exploring")
    consent: Optional[bool] = None

    # Anti-bot
    website_hp: Optional[str] = Field(default=None, description="Honeypot, must stay empty")
    form_started_at: Optional[int] = Field(default=None, description="Form render time (epoch ms)")

    # Landing-page params forwarded by the browser (utm_*, gclid, fbclid, ...)
    attribution: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "full_name": "Sara Ahmed",
                "email": "sara@example.com",
                "phone_e164": "+971501234567",
                "goal_primary": "more_leads",
                "budget_currency": "AED",
                "monthly_budget_range": "5,000-10,000",
                "decision_maker": True,
                "response_within_5_min": True,
                "timeline": "immediate",
                "consent": True,
                "attribution": {"utm_source": "google", "gclid": "Cj0KCQ..."},
            }
        },
    )


class LeadCreateResponse(BaseModel):
    ok: bool = True
    lead_id: UUID
    lead_score: int
    lead_grade: str
    recommended_package: str
    retrieval_token: str


class LeadSummary(BaseModel):
    id: UUID
    email: str
    full_name: str
    phone_e164: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeadSummaryResponse(BaseModel):
    ok: bool = True
    lead: LeadSummary


# Slots ---------------------------------------------------------

class SlotOut(BaseModel):
    start: str = Field(description="UTC ISO instant")
    end: str = Field(description="UTC ISO instant")
    label: str = Field(description="Today, 1:00 PM")
    localTime: str = Field(description="1:00 PM")


class SlotsResponse(BaseModel):
    ok: bool = True
    timezone: str
    slots: List[SlotOut]


# Bookings ------------------------------------------------------

class BookingCreate(BaseModel):
    """Booking request for a slot returned by GET /api/slots."""

    lead_id: Optional[str] = None
    booking_start_utc: Optional[str] = None
    booking_end_utc: Optional[str] = None
    booking_timezone: Optional[str] = None
    idempotency_key: Optional[str] = None

    # Attribution forwarded from the booking page
    attribution: Optional[Dict[str, Any]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "lead_id": "3f1c9f8e-1d2b-4c3a-9e8f-7a6b5c4d3e2f",
                "booking_start_utc": "2025-12-23T09:00:00.000Z",
                "booking_end_utc": "2025-12-23T09:15:00.000Z",
                "booking_timezone": "Asia/Dubai",
                "idempotency_key": "a1b2c3",
            }
        }
    }


class BookingCreateResponse(BaseModel):
    ok: bool = True
    booking_id: UUID
    meet_url: Optional[str] = None
    calendar_status: Optional[str] = None
    local_start_display: Optional[str] = None
    email_status: Optional[str] = None


# OTP -----------------------------------------------------------

class OTPSendRequest(BaseModel):
    leadId: Optional[str] = None
    phone: Optional[str] = None
    phoneNumber: Optional[str] = Field(default=None, description="Accepted alias of phone")

    @property
    def phone_e164(self) -> Optional[str]:
        return self.phone or self.phoneNumber


class OTPVerifyRequest(BaseModel):
    verificationId: Optional[str] = None
    otp: Optional[str] = None
