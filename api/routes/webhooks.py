"""
WhatsApp webhook routes.

GET is Meta's subscription handshake. POST acknowledges immediately and
processes each inbound text message as a background task.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from ..services import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Endpoints ─────────────────────────────────────────────────────

@router.get("/webhook/whatsapp", response_class=PlainTextResponse)
async def verify_whatsapp(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Echo the challenge when the verify token matches."""
    services = get_services()
    if not services.is_ready:
        raise HTTPException(status_code=503, detail="Service not ready")

    challenge = services.channel.verify_channel(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(challenge)


@router.post("/webhook/whatsapp")
async def receive_whatsapp(request: Request, background_tasks: BackgroundTasks):
    """
    Receive inbound messages from the Meta Cloud API.

    Always answers 200 so the transport does not redeliver; the business
    logic runs after the response.
    """
    services = get_services()
    if not services.is_ready:
        logger.error("Inbound webhook received before services were ready")
        return {"status": "unavailable"}

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Ignoring webhook with a non-JSON body")
        return {"status": "ignored"}
    if not isinstance(payload, dict):
        return {"status": "ignored"}

    messages = services.channel.parse_inbound(payload)
    for message in messages:
        background_tasks.add_task(services.orchestrator.process, message)

    if messages:
        logger.info(f"Accepted {len(messages)} inbound message(s)")
    return {"status": "ok", "accepted": len(messages)}
