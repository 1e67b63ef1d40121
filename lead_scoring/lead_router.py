"""
Lead forwarding to the downstream automation webhook.

Builds the normalized lead payload and posts it. Failures are logged and
reported as False; nothing is retried in the request path.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

import httpx

from api.middleware.metrics import record_forward

from .scoring_model import LeadScorer

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class LeadForwarder:
    """
    Posts qualified-lead payloads to an automation webhook.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        api_key: Optional[str] = None,
        scorer: Optional[LeadScorer] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize the forwarder.

        Args:
            webhook_url: URL for webhook delivery
            api_key: Sent as X-API-Key when set
            scorer: Scorer used for the temperature label
            timeout: Request timeout in seconds
        """
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.scorer = scorer or LeadScorer()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    def build_payload(self, conv: Any) -> Dict[str, Any]:
        """Normalized lead payload for a conversation."""
        score = conv.lead_score or 0
        return {
            "schema_version": SCHEMA_VERSION,
            "contact_key": conv.contact_key,
            "display_name": conv.display_name,
            "name": conv.name,
            "role": conv.role,
            "email": conv.email,
            "stage": conv.stage,
            "lead_score": score,
            "lead_temperature": self.scorer.temperature(score).value,
            "appointment": {
                "scheduled": bool(conv.appointment_scheduled),
                "event_id": conv.appointment_event_id,
                "meeting_link": conv.appointment_meeting_link,
                "scheduled_date": _iso(conv.appointment_date),
                "status": conv.appointment_status,
            },
            "forwarded_at": datetime.utcnow().isoformat(),
            "conversation_started": _iso(conv.conversation_started),
            "last_activity": _iso(conv.last_activity),
        }

    async def post(self, payload: Dict[str, Any]) -> bool:
        """Deliver a payload. Returns True on a 2xx acknowledgement."""
        if not self.webhook_url:
            logger.warning("No automation webhook configured, lead not forwarded")
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.webhook_url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.error(f"Lead forward error for {payload.get('contact_key')}: {e}")
            record_forward(False)
            return False

        if response.status_code in [200, 201, 202]:
            logger.info(
                "Lead forwarded",
                extra={
                    "contact_key": payload.get("contact_key"),
                    "lead_score": payload.get("lead_score"),
                },
            )
            record_forward(True)
            return True

        logger.error(
            f"Lead forward failed for {payload.get('contact_key')}: "
            f"HTTP {response.status_code} {response.text[:500]}"
        )
        record_forward(False)
        return False

    async def forward(self, conv: Any) -> bool:
        """Forward a conversation's lead payload."""
        return await self.post(self.build_payload(conv))
