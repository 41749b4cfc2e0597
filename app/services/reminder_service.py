"""Reminder Worker.

WHAT:
    Sends the 1-hour reminder email for due ReminderJob rows.

WHY:
    Invocations can overlap (cron every 5 minutes, manual triggers). Each job
    is claimed with a status-gated UPDATE, and the send is guarded twice:
    bookings.reminder_sent_at and the EmailSend key booking-reminder-{id}.
    A job whose reminder already went out is completed without resending.

HOW:
    1. fetch_due_reminders(): status=pending and scheduled_for <= now + 5 min
    2. claim_reminder_job(): pending -> processing, attempts + 1
    3. Booking missing or not confirmed -> failed
    4. Already sent -> completed (skipped)
    5. Send with 3 attempts, linear backoff -> EmailSend + reminder_sent_at
       + completed
    6. Error -> back to pending, or failed once attempts >= 3

REFERENCES:
    - app/services/booking_service.py (creates the jobs)
    - app/services/email_service.py
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.deps import Settings, get_settings
from app.models import (
    Booking,
    BookingStatusEnum,
    EmailSend,
    EmailTypeEnum,
    ReminderJob,
    ReminderStatusEnum,
)
from app.services.booking_service import record_email_send
from app.services.email_service import (
    EmailDeliveryError,
    EmailResult,
    EmailService,
    build_booking_email_details,
)
from app.telemetry import capture_exception
from app.utils.retry import BACKOFF_LINEAR, RetryableError, with_retry_and_timeout

logger = logging.getLogger(__name__)

REMINDER_BATCH_SIZE = 50
REMINDER_LOOKAHEAD = timedelta(minutes=5)
MAX_REMINDER_ATTEMPTS = 3
SEND_ATTEMPTS = 3
SEND_RETRY_BASE_SECONDS = 1.0
STALE_CLAIM_MINUTES = 10


@dataclass
class ReminderRunResult:
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
        }


def reminder_idempotency_key(booking_id) -> str:
    return f"booking-reminder-{booking_id}"


def fetch_due_reminders(db: Session, now: datetime, limit: int = REMINDER_BATCH_SIZE) -> List[ReminderJob]:
    return (
        db.query(ReminderJob)
        .filter(
            ReminderJob.status == ReminderStatusEnum.pending,
            ReminderJob.scheduled_for <= now + REMINDER_LOOKAHEAD,
        )
        .order_by(ReminderJob.scheduled_for.asc())
        .limit(limit)
        .all()
    )


def claim_reminder_job(db: Session, job: ReminderJob, now: datetime) -> bool:
    """pending -> processing for exactly one worker."""
    updated = (
        db.query(ReminderJob)
        .filter(ReminderJob.id == job.id, ReminderJob.status == ReminderStatusEnum.pending)
        .update(
            {
                ReminderJob.status: ReminderStatusEnum.processing,
                ReminderJob.attempts: ReminderJob.attempts + 1,
                ReminderJob.last_attempt_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    if updated != 1:
        logger.info(f"[REMINDERS] Job {job.id} already claimed")
        return False

    db.refresh(job)
    return True


def release_stale_reminder_claims(db: Session, now: datetime) -> int:
    """Return jobs stuck in processing (worker died mid-send) to pending.

    Jobs that already used their last attempt become failed. The EmailSend
    row written on success keeps a released job from sending twice.
    """
    cutoff = now - timedelta(minutes=STALE_CLAIM_MINUTES)
    stale = (
        db.query(ReminderJob)
        .filter(
            ReminderJob.status == ReminderStatusEnum.processing,
            ReminderJob.last_attempt_at < cutoff,
        )
        .all()
    )
    for job in stale:
        retrying = job.attempts < MAX_REMINDER_ATTEMPTS
        job.status = ReminderStatusEnum.pending if retrying else ReminderStatusEnum.failed
        job.error_message = "Processing timed out"
    if stale:
        db.commit()
        logger.warning(f"[REMINDERS] Released {len(stale)} stale claim(s)")
    return len(stale)


def _complete(db: Session, job: ReminderJob, now: datetime) -> None:
    job.status = ReminderStatusEnum.completed
    job.completed_at = now
    job.error_message = None
    db.commit()


def _fail(db: Session, job: ReminderJob, message: str) -> bool:
    """Back to pending while attempts remain. Returns True if it will retry."""
    retrying = job.attempts < MAX_REMINDER_ATTEMPTS
    job.status = ReminderStatusEnum.pending if retrying else ReminderStatusEnum.failed
    job.error_message = message[:1000]
    db.commit()
    return retrying


async def _send_with_retry(email: EmailService, booking: Booking, base_url: str) -> EmailResult:
    details = build_booking_email_details(booking, base_url)

    async def attempt() -> EmailResult:
        result = await email.send_reminder_email(details)
        if result.success:
            return result
        if result.skipped:
            raise EmailDeliveryError(result.error or "Email service not configured")
        # The email service already retries transient errors; anything else
        # gets another round here.
        raise RetryableError(result.error or "Reminder email failed")

    return await with_retry_and_timeout(
        attempt,
        attempts=SEND_ATTEMPTS,
        base_delay=SEND_RETRY_BASE_SECONDS,
        timeout=None,
        backoff=BACKOFF_LINEAR,
        label="REMINDERS",
    )


async def process_reminder_jobs(
    db: Session,
    email_sender: Optional[EmailService] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ReminderRunResult:
    """Process due reminder jobs once.

    Args:
        db: Database session
        email_sender: EmailService override (tests)
        settings: Settings override
        now: Fixed "now" (tests)
        clock: Monotonic clock for duration_ms
    """
    started = clock()
    settings = settings or get_settings()
    email_sender = email_sender or EmailService.from_settings(settings)
    result = ReminderRunResult()

    def _now() -> datetime:
        return now or datetime.now(timezone.utc)

    release_stale_reminder_claims(db, _now())
    jobs = fetch_due_reminders(db, _now())
    if jobs:
        logger.info(f"[REMINDERS] {len(jobs)} due job(s)")

    for job in jobs:
        if not claim_reminder_job(db, job, _now()):
            result.skipped += 1
            continue

        booking = db.get(Booking, job.booking_id)
        if booking is None or booking.status != BookingStatusEnum.confirmed:
            logger.error(f"[REMINDERS] Booking not found or not confirmed for job {job.id}")
            job.status = ReminderStatusEnum.failed
            job.error_message = "Booking not found or not confirmed"
            db.commit()
            result.failed += 1
            continue

        key = reminder_idempotency_key(booking.id)
        already_sent = booking.reminder_sent_at is not None
        if not already_sent and db.query(EmailSend.id).filter(EmailSend.idempotency_key == key).first():
            booking.reminder_sent_at = _now()
            already_sent = True

        if already_sent:
            logger.info(f"[REMINDERS] Reminder already sent for booking {booking.id}")
            _complete(db, job, _now())
            result.skipped += 1
            continue

        try:
            sent = await _send_with_retry(email_sender, booking, settings.SITE_URL)
        except Exception as e:
            db.rollback()
            capture_exception(e, extra={"reminder_job_id": str(job.id), "booking_id": str(booking.id)})
            retrying = _fail(db, job, str(e) or e.__class__.__name__)
            logger.warning(
                f"[REMINDERS] Send failed for job {job.id}: {e}",
                extra={"attempts": job.attempts, "retrying": retrying},
            )
            result.failed += 1
            continue

        record_email_send(db, key, EmailTypeEnum.reminder, booking, sent.email_id)
        booking.reminder_sent_at = _now()
        _complete(db, job, _now())
        logger.info(f"[REMINDERS] Reminder sent for booking {booking.id}", extra={"email_id": sent.email_id})
        result.success += 1

    result.processed = result.success + result.failed + result.skipped
    result.duration_ms = int((clock() - started) * 1000)
    logger.info(
        f"[REMINDERS] Run complete: processed={result.processed} success={result.success} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result
