"""
Conversation listing routes.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.flows.engine import parse_stage
from api.middleware.auth import api_key_auth
from database.models import Conversation
from database.repositories import ConversationRepository
from database.session import get_db
from lead_scoring.scoring_model import LeadScorer

from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(api_key_auth)])


def _scorer() -> LeadScorer:
    return get_services().lead_scorer or LeadScorer()


def _serialize(conv: Conversation) -> Dict[str, Any]:
    score = conv.lead_score or 0
    return {
        "id": conv.id,
        "contact_key": conv.contact_key,
        "display_name": conv.display_name,
        "stage": conv.stage,
        "active": conv.active,
        "name": conv.name,
        "role": conv.role,
        "email": conv.email,
        "lead_score": score,
        "lead_temperature": _scorer().temperature(score).value,
        "appointment": {
            "scheduled": conv.appointment_scheduled,
            "event_id": conv.appointment_event_id,
            "meeting_link": conv.appointment_meeting_link,
            "scheduled_date": conv.appointment_date.isoformat() if conv.appointment_date else None,
            "status": conv.appointment_status,
            "reminder_day_before_sent": conv.reminder_day_before_sent,
            "reminder_hour_before_sent": conv.reminder_hour_before_sent,
        },
        "forwarded": conv.forwarded,
        "last_forwarded_at": conv.last_forwarded_at.isoformat() if conv.last_forwarded_at else None,
        "conversation_started": conv.conversation_started.isoformat() if conv.conversation_started else None,
        "last_activity": conv.last_activity.isoformat() if conv.last_activity else None,
    }


# ── Endpoints ─────────────────────────────────────────────────────

@router.get("/conversations")
async def list_conversations(
    active: Optional[bool] = None,
    stage: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List conversations, most recently active first."""
    if stage is not None:
        parsed = parse_stage(stage)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Unknown stage: {stage}")
        stage = parsed.value

    repo = ConversationRepository(db)
    items = await repo.list(active=active, stage=stage, limit=limit, offset=offset)
    total = await repo.count(active=active, stage=stage)
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "conversations": [_serialize(c) for c in items],
    }


@router.get("/conversations/{contact_key}")
async def get_conversation(contact_key: str, db: AsyncSession = Depends(get_db)):
    """Active (or most recent) conversation for a contact, with its message log."""
    repo = ConversationRepository(db)
    conv = await repo.get_latest(contact_key)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = await repo.get_messages(conv.id)
    data = _serialize(conv)
    data["messages"] = [
        {
            "direction": m.direction,
            "content": m.content,
            "timestamp": m.created_at.isoformat() if m.created_at else None,
            "delivery_status": m.delivery_status,
            "ai_analysis": m.ai_analysis,
        }
        for m in messages
    ]
    return data
