"""
Analytics API routes.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.middleware.auth import api_key_auth

from ..services import get_services

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/analytics",
    dependencies=[Depends(api_key_auth)],
)


def _parse_day(day: Optional[str]) -> Optional[date]:
    if day is None:
        return None
    try:
        return date.fromisoformat(day)
    except ValueError:
        raise HTTPException(status_code=400, detail="day must be YYYY-MM-DD")


@router.get("")
async def analytics_summary(days: int = Query(7, ge=1, le=365)):
    """Daily records for the last N days plus totals."""
    return await get_services().aggregator.summary(days)


@router.get("/daily")
async def daily_analytics(day: Optional[str] = None):
    """Stored record for one day (default: today), computed on first read."""
    aggregator = get_services().aggregator
    target = _parse_day(day) or aggregator.today()
    record = await aggregator.get_day(target)
    if record is None:
        record = await aggregator.recompute(target)
    return record.to_dict()


@router.post("/recompute")
async def recompute_analytics(day: Optional[str] = None):
    """Recompute one day's record from the stored conversations."""
    aggregator = get_services().aggregator
    record = await aggregator.recompute(_parse_day(day))
    return record.to_dict()
