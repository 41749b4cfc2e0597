"""Available booking slots."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings
from app.schemas import SlotOut, SlotsResponse
from app.services.slot_service import get_available_slots

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/slots", tags=["Slots"])


@router.get("", response_model=SlotsResponse)
async def list_slots(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SlotsResponse:
    """Next bookable 15-minute slots in the business timezone."""
    try:
        slots = get_available_slots(db, tz_name=settings.BUSINESS_TIMEZONE)
    except ValueError as e:
        # Misconfigured BUSINESS_TIMEZONE
        logger.error(f"[SLOTS] Slot generation failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load slots")

    return SlotsResponse(
        timezone=settings.BUSINESS_TIMEZONE,
        slots=[SlotOut(**slot.to_dict()) for slot in slots],
    )
