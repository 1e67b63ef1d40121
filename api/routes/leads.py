"""
Lead forwarding routes.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.middleware.auth import api_key_auth
from database.models import Conversation
from database.repositories import ConversationRepository

from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(api_key_auth)])


class TestForwardRequest(BaseModel):
    """Forward a stored contact's payload, or a sample one when omitted."""
    contact_key: Optional[str] = None


def _sample_conversation() -> Conversation:
    now = datetime.utcnow()
    return Conversation(
        contact_key="5511999999999",
        display_name="Lead de Teste",
        stage="OFFER_SLOTS",
        name="Maria Silva",
        role="Diretora Comercial",
        email="maria.silva@example.com",
        lead_score=66,
        appointment_scheduled=False,
        conversation_started=now,
        last_activity=now,
    )


@router.post("/leads/test-forward")
async def test_forward(request: TestForwardRequest):
    """Post a lead payload to the automation webhook and report the result."""
    services = get_services()
    if not services.forwarder.configured:
        raise HTTPException(status_code=400, detail="AUTOMATION_WEBHOOK_URL not configured")

    if request.contact_key:
        async with services.session_factory() as session:
            conv = await ConversationRepository(session).get_latest(request.contact_key)
        if conv is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
    else:
        conv = _sample_conversation()

    payload = services.forwarder.build_payload(conv)
    success = await services.forwarder.post(payload)
    logger.info(f"Test forward for {conv.contact_key}: {'ok' if success else 'failed'}")
    return {"success": success, "payload": payload}
