"""
WhatsApp channel via the Meta Cloud API.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import MessagingChannel, InboundMessage, ChannelResponse

logger = logging.getLogger(__name__)


class MetaCloudWhatsApp(MessagingChannel):
    """WhatsApp via Meta Cloud API."""

    GRAPH_URL = "https://graph.facebook.com"

    def __init__(
        self,
        api_token: str,
        phone_number_id: str,
        verify_token: Optional[str] = None,
        api_version: str = "v18.0",
        timeout: float = 10.0,
    ):
        self.api_token = api_token
        self.phone_number_id = phone_number_id
        self.verify_token = verify_token
        self.base_url = f"{self.GRAPH_URL}/{api_version}"
        self.timeout = timeout

    def verify_channel(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        if mode == "subscribe" and self.verify_token and token == self.verify_token and challenge:
            logger.info("WhatsApp webhook verified")
            return challenge
        logger.warning("WhatsApp webhook verification rejected")
        return None

    def parse_inbound(self, payload: Dict[str, Any]) -> List[InboundMessage]:
        """
        Extract text messages from a Meta webhook payload.

        Payload shape: entry[].changes[].value.{contacts[], messages[]}.
        Status callbacks and non-text messages are ignored.
        """
        inbound: List[InboundMessage] = []
        for entry in payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    if msg.get("type") != "text":
                        continue
                    body = ((msg.get("text") or {}).get("body") or "").strip()
                    sender = msg.get("from")
                    if not body or not sender:
                        continue
                    inbound.append(InboundMessage(
                        contact_key=sender,
                        text=body,
                        message_id=msg.get("id"),
                        display_name=names.get(sender),
                    ))
        return inbound

    async def send_text(self, contact_key: str, text: str) -> ChannelResponse:
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}
        payload = {
            "messaging_product": "whatsapp",
            "to": contact_key,
            "type": "text",
            "text": {"body": text},
        }
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=payload, headers=headers, timeout=self.timeout)
                resp.raise_for_status()
                data = resp.json()
                msg_id = data.get("messages", [{}])[0].get("id")
                return ChannelResponse(success=True, message_id=msg_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Meta WhatsApp send to {contact_key} failed: {e}")
            return ChannelResponse(success=False, error=str(e))

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    f"{self.base_url}/{self.phone_number_id}",
                    headers={"Authorization": f"Bearer {self.api_token}"},
                    timeout=5,
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
