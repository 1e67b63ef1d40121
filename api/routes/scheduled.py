"""
Scheduling routes.

Available-slot lookup and manual triggers for the periodic sweeps
(the same jobs the background loops run).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from api.middleware.auth import api_key_auth
from scheduling.calendar_client import CalendarError

from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(api_key_auth)])


# ── Endpoints ─────────────────────────────────────────────────────

@router.get("/slots")
async def available_slots():
    """Currently bookable meeting slots."""
    try:
        slots = await get_services().allocator.available_slots()
    except CalendarError as e:
        logger.error(f"Slot lookup failed: {e}")
        raise HTTPException(status_code=503, detail="Calendar unavailable")
    return {"count": len(slots), "slots": [s.to_dict() for s in slots]}


@router.post("/scheduled/reminders/run")
async def run_reminders():
    """Run both reminder passes now."""
    reminders = get_services().reminders
    day_before = await reminders.run_day_before()
    hour_before = await reminders.run_hour_before()
    return {"day_before": day_before.to_dict(), "hour_before": hour_before.to_dict()}


@router.post("/scheduled/cleanup/run")
async def run_cleanup():
    """Abandon idle conversations now."""
    swept = await get_services().cleanup.run()
    return {"abandoned": swept}
