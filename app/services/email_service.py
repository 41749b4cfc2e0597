"""
Transactional Email Service.

WHAT:
    Sends booking confirmation and 1-hour reminder emails through Resend.

WHY:
    The confirmation email is part of the primary booking operation: failures
    are retried and reported. Reminders run from the reminder worker, which
    adds its own retry loop on top.

DESIGN:
    - Resend Python SDK (sync) run in a worker thread per attempt
    - Every attempt goes through with_retry_and_timeout (2 attempts, 10s)
    - HTML + plain text bodies; the date/time shown is the display string
      stored on the booking, passed through verbatim
    - Missing RESEND_API_KEY degrades to a logged no-op (skipped result)

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - app/services/booking_service.py (confirmation)
    - app/services/reminder_service.py (reminder)
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import resend
from resend.exceptions import ResendError

from app.deps import Settings
from app.models import Booking
from app.utils.retry import RetryableError, is_retryable_status, with_retry_and_timeout
from app.utils.timezones import format_local_display, format_local_time

logger = logging.getLogger(__name__)

EMAIL_TIMEOUT_SECONDS = 10.0
MAX_EMAIL_ATTEMPTS = 2
RETRY_BASE_DELAY_SECONDS = 1.0


class EmailDeliveryError(Exception):
    """Email could not be sent (configuration or terminal provider error)."""


@dataclass
class EmailResult:
    success: bool
    email_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    skipped: bool = False


@dataclass
class BookingEmailDetails:
    customer_name: str
    customer_email: str
    date_time: str  # "Tuesday, December 23, 2025 at 1:00 PM"
    end_time: str  # "1:15 PM"
    timezone: str
    booking_id: str
    base_url: str
    meeting_link: Optional[str] = None

    @property
    def ics_link(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/ics?booking_id={self.booking_id}"


def build_booking_email_details(booking: Booking, base_url: str) -> BookingEmailDetails:
    """Email fields for a booking.

    Uses the display string stored at booking time; rows created before it
    was stored fall back to formatting the UTC instant.
    """
    date_time = booking.local_start_display or format_local_display(
        booking.selected_start, booking.booking_timezone
    )
    return BookingEmailDetails(
        customer_name=booking.customer_name,
        customer_email=booking.customer_email,
        date_time=date_time,
        end_time=format_local_time(booking.selected_end, booking.booking_timezone),
        timezone=booking.booking_timezone,
        booking_id=str(booking.id),
        base_url=base_url,
        meeting_link=booking.meet_url,
    )


# =============================================================================
# TEMPLATES
# =============================================================================

EMAIL_SHELL = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif; line-height: 1.6; color: #1f2937; max-width: 600px; margin: 0 auto; padding: 20px;">
{body}
  <div style="margin-top: 32px; padding-top: 24px; border-top: 1px solid #e5e7eb; font-size: 14px; color: #6b7280;">
    <p style="margin: 0;">{signoff}</p>
    <p style="margin: 16px 0 0 0; font-weight: 500;">The {company}</p>
  </div>
</body>
</html>"""


def _meeting_link_html(link: Optional[str], fallback: str) -> str:
    if link:
        safe = html.escape(link, quote=True)
        return (
            '<p style="margin: 24px 0;"><strong>Meeting Link:</strong><br/>'
            f'<a href="{safe}" style="color: #2563eb; text-decoration: underline;">{safe}</a></p>'
        )
    return f'<p style="margin: 24px 0; color: #6b7280;"><strong>Meeting Link:</strong> {fallback}</p>'


def render_confirmation_email(details: BookingEmailDetails, company: str) -> Dict[str, str]:
    """Subject, HTML and text for the booking confirmation."""
    name = html.escape(details.customer_name)
    date_time = html.escape(details.date_time)
    body = f"""
  <div style="background-color: #f3f4f6; padding: 32px; border-radius: 8px; margin-bottom: 24px;">
    <h1 style="margin: 0 0 16px 0; color: #111827; font-size: 24px;">Your Google Ads Audit is Confirmed!</h1>
    <p style="margin: 0; font-size: 16px; color: #4b5563;">Hi {name},</p>
  </div>
  <div style="background-color: #ffffff; border: 1px solid #e5e7eb; border-radius: 8px; padding: 24px; margin-bottom: 24px;">
    <h2 style="margin: 0 0 16px 0; color: #111827; font-size: 18px;">Meeting Details</h2>
    <p style="margin: 16px 0;"><strong>Date &amp; Time:</strong><br/>{date_time} - {html.escape(details.end_time)}</p>
    <p style="margin: 16px 0; color: #6b7280; font-size: 14px;"><strong>Timezone:</strong> {html.escape(details.timezone)}</p>
    {_meeting_link_html(details.meeting_link, "Will be shared shortly before the call.")}
    <div style="margin-top: 24px; padding-top: 24px; border-top: 1px solid #e5e7eb;">
      <a href="{html.escape(details.ics_link, quote=True)}" style="display: inline-block; background-color: #2563eb; color: #ffffff; text-decoration: none; padding: 12px 24px; border-radius: 6px; font-weight: 500;">Add to Calendar</a>
    </div>
  </div>
  <div style="background-color: #fef3c7; border-left: 4px solid #f59e0b; padding: 16px; border-radius: 4px;">
    <p style="margin: 0; font-size: 14px; color: #92400e;"><strong>Reminder:</strong> You'll receive a reminder email 1 hour before the meeting.</p>
  </div>"""

    text = "\n".join([
        f"Hi {details.customer_name},",
        "",
        "Your Google Ads audit call is confirmed.",
        "",
        f"Date & Time: {details.date_time} - {details.end_time}",
        f"Timezone: {details.timezone}",
        f"Meeting Link: {details.meeting_link or 'Will be shared shortly before the call.'}",
        f"Add to calendar: {details.ics_link}",
        "",
        "You'll receive a reminder email 1 hour before the meeting.",
        "Need to reschedule or have questions? Reply to this email.",
        "",
        f"The {company}",
    ])

    return {
        "subject": f"Confirmed: Google Ads Audit Call - {details.date_time}",
        "html": EMAIL_SHELL.format(
            title="Booking Confirmation",
            body=body,
            signoff="Need to reschedule or have questions? Reply to this email.",
            company=html.escape(company),
        ),
        "text": text,
    }


def render_reminder_email(details: BookingEmailDetails, company: str) -> Dict[str, str]:
    """Subject, HTML and text for the 1-hour reminder."""
    name = html.escape(details.customer_name)
    body = f"""
  <div style="background-color: #fef3c7; padding: 32px; border-radius: 8px; margin-bottom: 24px; text-align: center;">
    <h1 style="margin: 0 0 8px 0; color: #111827; font-size: 24px;">Your Meeting Starts in 1 Hour!</h1>
    <p style="margin: 0; font-size: 16px; color: #4b5563;">Google Ads Audit Call</p>
  </div>
  <div style="background-color: #ffffff; border: 1px solid #e5e7eb; border-radius: 8px; padding: 24px; margin-bottom: 24px;">
    <p style="margin: 0 0 16px 0; font-size: 16px;">Hi {name},</p>
    <p style="margin: 0 0 24px 0;">This is a friendly reminder that your Google Ads audit call is coming up soon.</p>
    <div style="background-color: #f9fafb; padding: 16px; border-radius: 6px; margin-bottom: 24px;">
      <p style="margin: 0 0 8px 0;"><strong style="color: #111827;">Date &amp; Time:</strong></p>
      <p style="margin: 0; font-size: 18px; color: #2563eb; font-weight: 500;">{html.escape(details.date_time)}</p>
      <p style="margin: 8px 0 0 0; font-size: 14px; color: #6b7280;">Ends {html.escape(details.end_time)} ({html.escape(details.timezone)})</p>
    </div>
    {_meeting_link_html(details.meeting_link, "Check your confirmation email or we'll send it shortly.")}
    <a href="{html.escape(details.ics_link, quote=True)}" style="color: #2563eb; text-decoration: underline;">Add to Calendar</a>
  </div>"""

    text = "\n".join([
        f"Hi {details.customer_name},",
        "",
        "Your Google Ads audit call starts in 1 hour.",
        "",
        f"Date & Time: {details.date_time}",
        f"Ends: {details.end_time} ({details.timezone})",
        f"Meeting Link: {details.meeting_link or 'Check your confirmation email.'}",
        f"Add to calendar: {details.ics_link}",
        "",
        "Have your Google Ads account ready to share your screen.",
        "",
        f"The {company}",
    ])

    return {
        "subject": "Reminder: Your Google Ads Audit Call in 1 hour",
        "html": EMAIL_SHELL.format(
            title="Meeting Reminder",
            body=body,
            signoff="See you soon!",
            company=html.escape(company),
        ),
        "text": text,
    }


# =============================================================================
# SERVICE
# =============================================================================

def _classify_resend_error(exc: ResendError) -> Exception:
    """Map Resend errors with HTTP 429/5xx codes to RetryableError."""
    try:
        status_code = int(getattr(exc, "code", None))
    except (TypeError, ValueError):
        return exc
    if is_retryable_status(status_code):
        return RetryableError(str(exc), status_code)
    return exc


class EmailService:
    """
    Resend-backed sender for booking emails.

    Usage:
        service = EmailService.from_settings(get_settings())
        result = await service.send_confirmation_email(details)
    """

    def __init__(
        self,
        api_key: Optional[str],
        from_email: str,
        company_name: str = "Audit Team",
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.company_name = company_name

        if api_key:
            resend.api_key = api_key
            logger.info("[EMAIL] Resend client initialized")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            api_key=settings.RESEND_API_KEY,
            from_email=settings.EMAIL_FROM,
            company_name=settings.COMPANY_NAME,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send_confirmation_email(self, details: BookingEmailDetails) -> EmailResult:
        content = render_confirmation_email(details, self.company_name)
        return await self._send(details.customer_email, content, details.booking_id, "confirmation")

    async def send_reminder_email(self, details: BookingEmailDetails) -> EmailResult:
        content = render_reminder_email(details, self.company_name)
        return await self._send(details.customer_email, content, details.booking_id, "reminder")

    async def _deliver_once(self, params: Dict[str, Any]) -> Any:
        try:
            return await asyncio.to_thread(resend.Emails.send, params)
        except ResendError as e:
            raise _classify_resend_error(e) from e

    async def _send(self, to: str, content: Dict[str, str], booking_id: str, kind: str) -> EmailResult:
        if not self.is_configured:
            logger.warning(f"[EMAIL] Resend not configured, skipping {kind} email", extra={"booking_id": booking_id})
            return EmailResult(success=False, error="Email service not configured", skipped=True)

        params = {
            "from": self.from_email,
            "to": [to],
            "subject": content["subject"],
            "html": content["html"],
            "text": content["text"],
        }

        logger.info(f"[EMAIL] Sending {kind} email", extra={"booking_id": booking_id})
        try:
            response = await with_retry_and_timeout(
                lambda: self._deliver_once(params),
                attempts=MAX_EMAIL_ATTEMPTS,
                base_delay=RETRY_BASE_DELAY_SECONDS,
                timeout=EMAIL_TIMEOUT_SECONDS,
                label="EMAIL",
            )
        except RetryableError as e:
            logger.error(f"[EMAIL] {kind} email failed after retries: {e}", extra={"booking_id": booking_id})
            return EmailResult(success=False, error=str(e), retryable=True)
        except Exception as e:
            logger.exception(f"[EMAIL] {kind} email failed: {e}", extra={"booking_id": booking_id})
            return EmailResult(success=False, error=str(e))

        email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        logger.info(f"[EMAIL] {kind} email sent", extra={"booking_id": booking_id, "email_id": email_id})
        return EmailResult(success=True, email_id=email_id)
