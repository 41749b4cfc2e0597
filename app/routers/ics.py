"""Calendar file download linked from confirmation and reminder emails."""

import logging
from email.utils import parseaddr
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings
from app.services.booking_service import get_booking
from app.services.ics_service import build_ics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ics", tags=["Calendar"])


@router.get("")
async def download_ics(
    booking_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    if not booking_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing booking_id")

    try:
        booking = get_booking(db, UUID(booking_id))
    except ValueError:
        booking = None
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    organizer_name, organizer_email = parseaddr(settings.EMAIL_FROM)
    content = build_ics(
        booking,
        organizer_email=organizer_email or settings.EMAIL_FROM,
        organizer_name=organizer_name or settings.COMPANY_NAME,
        site_url=settings.SITE_URL,
    )
    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="audit-call-{booking.id}.ics"'},
    )
